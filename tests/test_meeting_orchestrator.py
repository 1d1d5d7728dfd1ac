import asyncio
import unittest

from meeting_agent.agent_providers import AgentConfigError
from meeting_agent.analytics import CallAnalytics
from meeting_agent.caption_aggregator import AggregatorConfig, CaptionAggregator
from meeting_agent.conversation import ConversationLog
from meeting_agent.intent import IntentClassifier
from meeting_agent.mention import MentionConfig, MentionDetector
from meeting_agent.models import (
    AgentReply,
    BehaviorPattern,
    CHANNEL_BOTH,
    CHANNEL_CHAT,
    CaptionFragment,
    ChatMessage,
    MODE_IMMEDIATE,
    PendingMention,
    STATUS_HAND_RAISED,
    STATUS_SENT,
    TriggerConfig,
    now_ms,
)
from meeting_agent.orchestrator import CLOSING_REPLY, MeetingOrchestrator, OrchestratorConfig
from meeting_agent.patterns import get_pattern
from meeting_agent.session import SessionTracker
from meeting_agent.speech_text import CHAT_PREFIX


class _FakeMeeting:
    def __init__(self):
        self.chats = []
        self.reactions = []
        self.hand_calls = []

    async def raise_hand(self):
        self.hand_calls.append("raise")
        return True

    async def lower_hand(self):
        self.hand_calls.append("lower")
        return True

    async def send_reaction(self, kind):
        self.reactions.append(kind)
        return True

    async def send_chat(self, text):
        self.chats.append(text)
        return True


class _FakeSpeech:
    def __init__(self):
        self.is_speaking = False
        self.spoken = []
        self.stops = 0

    async def speak(self, text):
        self.spoken.append(text)
        return True

    async def stop(self):
        self.stops += 1
        self.is_speaking = False


class _FakeAgent:
    type = "fake"

    def __init__(self, reply="Sunny."):
        self.reply = reply
        self.start_results = []
        self.start_calls = 0
        self.messages = []
        self.conversation_id = None
        self.gate = None
        self.before_reply = None
        self.closed = False

    @property
    def is_connected(self):
        return bool(self.conversation_id)

    async def start_conversation(self):
        self.start_calls += 1
        result = self.start_results.pop(0) if self.start_results else "conv-1"
        if isinstance(result, Exception):
            raise result
        self.conversation_id = result
        return result

    async def send_message(self, text, speaker=None, context=None):
        self.messages.append((text, speaker, context))
        if self.gate is not None:
            await self.gate.wait()
        if self.before_reply is not None:
            self.before_reply()
        return AgentReply(text=self.reply, conversation_id=self.conversation_id)

    async def close(self):
        self.closed = True


class _FakeIntentLLM:
    def __init__(self, data):
        self.data = data

    async def complete_json(self, system_prompt, user_prompt, **kwargs):
        return self.data, ""


def _both_pattern():
    return BehaviorPattern(
        id="both-immediate",
        name="Both",
        caption_mention=TriggerConfig(enabled=True, response_channel=CHANNEL_BOTH, behavior_mode=MODE_IMMEDIATE),
        chat_mention=TriggerConfig(enabled=True, response_channel=CHANNEL_CHAT, behavior_mode=MODE_IMMEDIATE),
    )


def _build(pattern=None, *, agent=None, intent_llm=None):
    detector = MentionDetector("Jenny", cfg=MentionConfig(llm_enabled=False))
    meeting = _FakeMeeting()
    speech = _FakeSpeech()
    orch = MeetingOrchestrator(
        OrchestratorConfig(agent_name="Jenny", agent_retry_delay_s=0.0),
        pattern=pattern or _both_pattern(),
        detector=detector,
        aggregator=CaptionAggregator(detector, AggregatorConfig(aggregation_window_s=2.0)),
        intent=IntentClassifier(intent_llm),
        session=SessionTracker(),
        conversation=ConversationLog(),
        analytics=CallAnalytics(),
        meeting=meeting,
        speech=speech,
        agent=agent if agent is not None else _FakeAgent(),
    )
    return orch, meeting, speech


_SEQ = [0]


def _caption(speaker, text):
    _SEQ[0] += 1
    return CaptionFragment(id=f"cap-{_SEQ[0]}", speaker=speaker, text=text, timestamp_ms=now_ms())


class _OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    async def _say(self, orch, speaker, text):
        await orch.handle_caption(_caption(speaker, text))
        orch.aggregator.flush()
        await orch.aggregator.drain()

    async def asyncTearDown(self):
        for orch in getattr(self, "_orchestrators", []):
            await orch.dispose()

    async def _ready(self, *args, **kwargs):
        orch, meeting, speech = _build(*args, **kwargs)
        self._orchestrators = getattr(self, "_orchestrators", []) + [orch]
        orch.reset_for_meeting("m1", "https://teams.example/m1")
        self.assertTrue(await orch.connect_agent())
        return orch, meeting, speech


class TestCaptionFlow(_OrchestratorTestCase):
    async def test_mention_answered_on_both_channels(self):
        orch, meeting, speech = await self._ready()
        await self._say(orch, "Alex", "Hey Jenny, what's the weather?")

        self.assertEqual(speech.spoken, ["Sunny."])
        self.assertEqual(meeting.chats, [CHAT_PREFIX + "Sunny."])
        self.assertEqual(meeting.reactions, ["like"])
        self.assertTrue(orch.session.is_active)
        self.assertEqual(orch.session.speaker, "Alex")

        text, speaker, context = orch.agent.messages[0]
        self.assertEqual(text, "Hey Jenny, what's the weather?")
        self.assertEqual(speaker, "Alex")
        self.assertEqual(context["meeting_id"], "m1")
        self.assertEqual(context["session_speaker"], "Alex")
        self.assertEqual(context["captions"][-1], {"speaker": "Alex", "text": "Hey Jenny, what's the weather?"})

        stats = orch.analytics.get_stats()
        self.assertEqual(stats.total_questions, 1)
        self.assertEqual(stats.total_responses, 1)
        roles = [m.role for m in orch.conversation.messages()]
        self.assertEqual(roles, ["user", "assistant"])

    async def test_follow_up_from_session_speaker_without_name(self):
        orch, meeting, speech = await self._ready()
        await self._say(orch, "Alex", "Hey Jenny, what's the weather?")
        await self._say(orch, "Alex", "and what about tomorrow?")
        self.assertEqual(len(orch.agent.messages), 2)

        await self._say(orch, "Bob", "what about the budget?")
        self.assertEqual(len(orch.agent.messages), 2)

    async def test_end_of_conversation(self):
        orch, meeting, speech = await self._ready()
        await self._say(orch, "Alex", "Hey Jenny, what's the weather?")
        await self._say(orch, "Alex", "Thanks Jenny, that's all I needed")

        self.assertEqual(len(orch.agent.messages), 1)
        self.assertEqual(speech.spoken, ["Sunny.", CLOSING_REPLY])
        self.assertFalse(orch.session.is_active)
        self.assertEqual(orch.analytics.get_stats().total_responses, 2)

    async def test_duplicate_and_own_captions_are_ignored(self):
        orch, meeting, speech = await self._ready()
        frag = _caption("Alex", "Hey Jenny, what time is it?")
        await orch.handle_caption(frag)
        await orch.handle_caption(frag)
        await orch.handle_caption(_caption("Jenny", "It is noon."))
        orch.aggregator.flush()
        await orch.aggregator.drain()
        self.assertEqual(len(orch.agent.messages), 1)
        self.assertEqual(orch.analytics.get_stats().total_captions, 1)

    async def test_speaking_agent_is_interrupted(self):
        orch, meeting, speech = await self._ready()
        speech.is_speaking = True
        await orch.handle_caption(_caption("Bob", "hold on"))
        self.assertEqual(speech.stops, 1)

    async def test_not_connected_only_reacts(self):
        orch, meeting, speech = _build()
        self._orchestrators = [orch]
        orch.reset_for_meeting("m1")
        await self._say(orch, "Alex", "Jenny, can you hear me?")
        self.assertEqual(meeting.reactions, ["like"])
        self.assertEqual(orch.agent.messages, [])

    async def test_pending_mention_timeout_is_processed(self):
        orch, meeting, speech = await self._ready()
        await orch._on_pending_mention_timeout(
            PendingMention(speaker="Alex", caption_text="Hey Jenny", matched_variation="jenny", timestamp=now_ms())
        )
        self.assertEqual(orch.agent.messages[0][0], "Hey Jenny")
        self.assertEqual(speech.spoken, ["Sunny."])

    async def test_misheard_name_with_question_is_answered(self):
        orch, meeting, speech = await self._ready()
        await self._say(orch, "Alex", "Hey Jennie, what's the weather?")
        self.assertEqual(len(orch.agent.messages), 1)
        self.assertEqual(speech.spoken, ["Sunny."])

    async def test_misheard_name_overrides_negative_intent_reply(self):
        orch, meeting, speech = await self._ready(intent_llm=_FakeIntentLLM({"shouldRespond": False, "confidence": 0.2}))
        await self._say(orch, "Alex", "Jennie, what's the weather?")
        self.assertEqual(len(orch.agent.messages), 1)
        self.assertEqual(speech.spoken, ["Sunny."])

    async def test_misheard_pending_mention_timeout_is_processed(self):
        orch, meeting, speech = await self._ready()
        await orch._on_pending_mention_timeout(
            PendingMention(
                speaker="Alex",
                caption_text="Hey Jennie",
                matched_variation="jenny",
                timestamp=now_ms(),
                caption_ids=["cap-x"],
            )
        )
        self.assertEqual(orch.agent.messages[0][0], "Hey Jennie")
        self.assertEqual(speech.spoken, ["Sunny."])

    async def test_agent_conversation_restarts_after_bot_ended_it(self):
        orch, meeting, speech = await self._ready()
        orch.agent.conversation_id = None
        await self._say(orch, "Alex", "Jenny, what's new?")
        self.assertEqual(orch.agent.start_calls, 2)
        self.assertEqual(len(orch.agent.messages), 1)


class TestSingleFlight(_OrchestratorTestCase):
    async def test_second_mention_dropped_while_processing(self):
        agent = _FakeAgent()
        agent.gate = asyncio.Event()
        orch, meeting, speech = await self._ready(agent=agent)

        await orch.handle_caption(_caption("Alex", "Jenny, first question?"))
        orch.aggregator.flush()
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertTrue(orch.behavior.is_processing)

        await orch.handle_caption(_caption("Bob", "Jenny, second question?"))
        orch.aggregator.flush()
        for _ in range(5):
            await asyncio.sleep(0)

        agent.gate.set()
        await orch.aggregator.drain()
        self.assertEqual([m[1] for m in agent.messages], ["Alex"])
        self.assertEqual(speech.spoken, ["Sunny."])


class TestQueuedPattern(_OrchestratorTestCase):
    async def test_hand_raise_then_speak_on_lower(self):
        orch, meeting, speech = await self._ready(get_pattern("polite-queue-voice"))
        await self._say(orch, "Alex", "Jenny, what's the status of the release?")

        self.assertEqual(meeting.hand_calls, ["raise"])
        pending = orch.behavior.get_pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].status, STATUS_HAND_RAISED)
        self.assertEqual(speech.spoken, [])

        await orch.on_hand_raised_state_changed(False)
        self.assertEqual(pending[0].status, STATUS_SENT)
        self.assertEqual(speech.spoken, ["Sunny."])

    async def test_reject_lowers_hand(self):
        orch, meeting, speech = await self._ready(get_pattern("polite-queue-voice"))
        await self._say(orch, "Alex", "Jenny, what's the status of the release?")
        record = orch.behavior.get_pending()[0]
        self.assertTrue(await orch.reject_response(record.id))
        self.assertEqual(meeting.hand_calls, ["raise", "lower"])

    async def test_supervised_approval(self):
        orch, meeting, speech = await self._ready(get_pattern("supervised"))
        await self._say(orch, "Alex", "Jenny, summarize the plan?")
        record = orch.behavior.get_pending()[0]
        self.assertEqual(speech.spoken, [])
        self.assertTrue(await orch.approve_response(record.id))
        self.assertEqual(speech.spoken, ["Sunny."])


class TestChatFlow(_OrchestratorTestCase):
    def _message(self, mid, content, *, sender="Bob", is_own=False):
        return ChatMessage(id=mid, sender_display_name=sender, content=content, is_own=is_own)

    async def test_chat_mention_answered_once(self):
        orch, meeting, speech = await self._ready()
        msg = self._message("c1", "<p>@jenny what's the agenda?</p>")
        await orch.handle_chat_message(msg)
        await orch.handle_chat_message(msg)
        await orch.handle_chat_message(self._message("c2", "@jenny hi", is_own=True))

        self.assertEqual(len(orch.agent.messages), 1)
        self.assertEqual(orch.agent.messages[0][0], "@jenny what's the agenda?")
        self.assertEqual(meeting.chats, [CHAT_PREFIX + "Sunny."])
        self.assertEqual(meeting.reactions, ["like"])

    async def test_chat_without_mention_is_ignored(self):
        orch, meeting, speech = await self._ready()
        await orch.handle_chat_message(self._message("c1", "<p>lunch at noon?</p>"))
        self.assertEqual(orch.agent.messages, [])

    async def test_seen_chat_ids_are_bounded(self):
        orch, meeting, speech = await self._ready()
        orch.cfg.max_seen_chat_ids = 2
        for mid in ("c1", "c2", "c3"):
            await orch.handle_chat_message(self._message(mid, "<p>lunch at noon?</p>"))
        self.assertEqual(list(orch._seen_chat_ids), ["c2", "c3"])

        await orch.handle_chat_message(self._message("c3", "@jenny what's the agenda?"))
        self.assertEqual(orch.agent.messages, [])
        self.assertEqual(len(orch._seen_chat_ids), 2)

    async def test_chat_end_of_conversation(self):
        orch, meeting, speech = await self._ready()
        await orch.handle_chat_message(self._message("c1", "@jenny what's the agenda?"))
        await orch.handle_chat_message(self._message("c2", "@jenny thanks, bye"))
        self.assertEqual(len(orch.agent.messages), 1)
        self.assertEqual(meeting.chats[-1], CHAT_PREFIX + CLOSING_REPLY)
        self.assertFalse(orch.session.is_active)


class TestAutonomousIntent(_OrchestratorTestCase):
    async def test_unnamed_question_accepted_by_intent(self):
        llm = _FakeIntentLLM({"shouldRespond": True, "isEndOfConversation": False, "confidence": 0.9, "reason": "q"})
        orch, meeting, speech = await self._ready(get_pattern("autonomous-voice"), intent_llm=llm)
        orch.session.start_session("Alex")
        await self._say(orch, "Bob", "what's the budget for next quarter?")
        self.assertEqual([m[1] for m in orch.agent.messages], ["Bob"])
        self.assertEqual(meeting.reactions, [])

    async def test_low_confidence_is_ignored(self):
        llm = _FakeIntentLLM({"shouldRespond": True, "isEndOfConversation": False, "confidence": 0.4})
        orch, meeting, speech = await self._ready(get_pattern("autonomous-voice"), intent_llm=llm)
        orch.session.start_session("Alex")
        await self._say(orch, "Bob", "what's the budget for next quarter?")
        self.assertEqual(orch.agent.messages, [])


class TestMeetingLifecycle(_OrchestratorTestCase):
    async def test_reset_only_on_change(self):
        orch, meeting, speech = await self._ready()
        self.assertFalse(orch.reset_for_meeting("m1", "https://teams.example/m1"))
        await self._say(orch, "Alex", "Hey Jenny, what's the weather?")
        self.assertTrue(orch.session.is_active)

        self.assertTrue(orch.reset_for_meeting("m2", "https://teams.example/m2"))
        self.assertEqual(orch.meeting_id, "m2")
        self.assertFalse(orch.session.is_active)
        self.assertEqual(len(orch.conversation), 0)
        self.assertEqual(orch.analytics.get_stats().total_questions, 0)
        self.assertTrue(orch.analytics.is_tracking)

    async def test_late_reply_after_reset_is_discarded(self):
        agent = _FakeAgent()
        orch, meeting, speech = await self._ready(agent=agent)
        agent.before_reply = lambda: orch.reset_for_meeting("m2")
        await orch.handle_chat_message(ChatMessage(id="c1", sender_display_name="Bob", content="@jenny status?"))
        self.assertEqual(meeting.chats, [])
        self.assertEqual(orch.meeting_id, "m2")
        self.assertFalse(orch.behavior.is_processing)

    async def test_reset_cancels_in_flight_pipeline(self):
        agent = _FakeAgent()
        agent.gate = asyncio.Event()
        orch, meeting, speech = await self._ready(agent=agent)
        task = orch.spawn(
            orch.handle_chat_message(ChatMessage(id="c1", sender_display_name="Bob", content="@jenny status?"))
        )
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertTrue(orch.behavior.is_processing)

        orch.reset_for_meeting("m2")
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertFalse(orch.behavior.is_processing)
        self.assertEqual(meeting.chats, [])

    async def test_welcome_sent_once(self):
        orch, meeting, speech = await self._ready()
        self.assertTrue(await orch.send_welcome())
        self.assertFalse(await orch.send_welcome())
        self.assertIn("I'm Jenny", meeting.chats[0])

        orch.reset_for_meeting("m2")
        self.assertTrue(await orch.send_welcome())

    async def test_state_and_dispose(self):
        orch, meeting, speech = await self._ready()
        state = orch.state()
        self.assertEqual(state["meeting_id"], "m1")
        self.assertTrue(state["agent_connected"])
        self.assertEqual(state["pattern"], "both-immediate")
        self.assertFalse(state["session"]["is_active"])
        self.assertEqual(state["queue"]["total"], 0)

        await orch.dispose()
        self.assertTrue(orch.agent.closed)
        self.assertFalse(orch.agent_connected)


class TestAgentConnect(_OrchestratorTestCase):
    async def test_retry_once(self):
        agent = _FakeAgent()
        agent.start_results = [RuntimeError("network"), "conv-2"]
        orch, meeting, speech = _build(agent=agent)
        self._orchestrators = [orch]
        self.assertTrue(await orch.connect_agent())
        self.assertEqual(agent.start_calls, 2)
        self.assertIsNone(orch.agent_error)

    async def test_gives_up_after_second_failure(self):
        agent = _FakeAgent()
        agent.start_results = [RuntimeError("network"), None, "conv-3"]
        orch, meeting, speech = _build(agent=agent)
        self._orchestrators = [orch]
        self.assertFalse(await orch.connect_agent())
        self.assertEqual(agent.start_calls, 2)
        self.assertFalse(orch.agent_connected)
        self.assertTrue(orch.agent_error)

    async def test_config_error_is_not_retried(self):
        agent = _FakeAgent()
        agent.start_results = [AgentConfigError("missing bot_id")]
        orch, meeting, speech = _build(agent=agent)
        self._orchestrators = [orch]
        self.assertFalse(await orch.connect_agent())
        self.assertEqual(agent.start_calls, 1)
        self.assertEqual(orch.agent_error, "missing bot_id")


if __name__ == "__main__":
    unittest.main()
