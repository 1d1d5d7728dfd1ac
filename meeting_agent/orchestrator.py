from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

from meeting_agent.agent_providers import AgentConfigError, AgentProvider
from meeting_agent.analytics import CallAnalytics
from meeting_agent.behavior import BehaviorProcessor
from meeting_agent.caption_aggregator import CaptionAggregator
from meeting_agent.conversation import ConversationLog
from meeting_agent.intent import IntentClassifier, context_from
from meeting_agent.meeting_bridge import MeetingProvider, REACTION_LIKE, SpeechProvider
from meeting_agent.mention import MentionDetector, extract_message_text
from meeting_agent.models import (
    AggregatedCaption,
    BehaviorPattern,
    CHANNEL_CHAT,
    CHANNEL_SPEECH,
    CaptionFragment,
    ChatMessage,
    IntentResult,
    MentionResult,
    PendingMention,
    TriggerContext,
    channel_includes_speech,
    now_ms,
)
from meeting_agent.session import CancellationToken, SessionTracker, StageCancelled

logger = logging.getLogger(__name__)

CLOSING_REPLY = "You're welcome! Let me know if you need anything else."


@dataclass
class OrchestratorConfig:
    agent_name: str
    agent_retry_delay_s: float = 4.0
    caption_history_size: int = 10
    intent_context_lines: int = 5
    stale_pending_s: float = 600.0
    welcome_message_enabled: bool = True
    max_seen_chat_ids: int = 500


class MeetingOrchestrator:
    """
    Wires captions, chat and hand-state events of one meeting to the agent.

    Components are built by the caller and owned here until `dispose()`. Every
    pipeline stage runs under the current meeting's cancellation token; a meeting
    change cancels it so late results from the previous meeting are discarded.
    """

    def __init__(
        self,
        cfg: OrchestratorConfig,
        *,
        pattern: BehaviorPattern,
        detector: MentionDetector,
        aggregator: CaptionAggregator,
        intent: IntentClassifier,
        session: SessionTracker,
        conversation: ConversationLog,
        analytics: CallAnalytics,
        meeting: MeetingProvider,
        speech: SpeechProvider,
        agent: AgentProvider | None = None,
    ):
        self.cfg = cfg
        self.detector = detector
        self.aggregator = aggregator
        self.intent = intent
        self.session = session
        self.conversation = conversation
        self.analytics = analytics
        self.meeting = meeting
        self.speech = speech
        self.agent = agent

        self.behavior = BehaviorProcessor(
            pattern,
            generate_response=self._generate_response,
            speak=self.speech.speak,
            send_chat=self.meeting.send_chat,
            raise_hand=self.meeting.raise_hand,
            lower_hand=self.meeting.lower_hand,
            detector=detector,
            conversation=conversation,
            analytics=analytics,
        )

        self.agent_connected = False
        self.agent_error: Optional[str] = None
        self.meeting_id: Optional[str] = None
        self.meeting_url: Optional[str] = None
        self._token = CancellationToken("initial")
        self._tasks: set[asyncio.Task] = set()
        self._caption_history: deque[dict[str, str]] = deque(maxlen=max(1, int(cfg.caption_history_size)))
        self._last_caption_key: tuple[str, str] | None = None
        self._seen_chat_ids: OrderedDict[str, None] = OrderedDict()
        self._welcome_sent = False
        self._meeting_started = False

        self.session.on_session_ended = self._on_session_ended
        self.aggregator.set_on_aggregated_caption(self._on_aggregated_caption)
        self.aggregator.set_on_pending_mention_timeout(self._on_pending_mention_timeout)

    @property
    def pattern(self) -> BehaviorPattern:
        return self.behavior.pattern

    def set_pattern(self, pattern: BehaviorPattern) -> None:
        self.behavior.set_pattern(pattern)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Runs a pipeline coroutine in the background; cancelled on meeting reset."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, StageCancelled):
            logger.error("Meeting pipeline task failed: %s", exc, exc_info=exc)

    # ----- meeting lifecycle -----

    def reset_for_meeting(self, meeting_id: str | None, meeting_url: str | None = None) -> bool:
        mid = (meeting_id or "").strip() or None
        url = (meeting_url or "").strip() or None
        if self._meeting_started and mid == self.meeting_id and url == self.meeting_url:
            return False

        logger.info("Resetting meeting state (%s -> %s)", self.meeting_id or "-", mid or "-")
        self._token.cancel("meeting changed")
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        self.session.end_session("meeting-changed")
        self.aggregator.reset()
        self.behavior.reset()
        self.conversation.clear()
        self._caption_history.clear()
        self._last_caption_key = None
        self._seen_chat_ids.clear()
        self._welcome_sent = False
        self.analytics.reset()
        self.analytics.start_call()

        self.meeting_id = mid
        self.meeting_url = url
        self._token = CancellationToken(mid or "meeting")
        self._meeting_started = True
        return True

    async def connect_agent(self) -> bool:
        if self.agent is None:
            self.agent_connected = False
            self.agent_error = self.agent_error or "no agent provider configured"
            logger.warning("Cannot connect agent: %s", self.agent_error)
            return False

        for attempt in (1, 2):
            try:
                conv_id = await self.agent.start_conversation()
            except AgentConfigError as e:
                self.agent_connected = False
                self.agent_error = str(e)
                logger.error("Agent configuration error: %s", e)
                return False
            except Exception as e:
                conv_id = None
                logger.warning("Agent connect attempt %s failed: %s", attempt, e)
            if conv_id:
                self.agent_connected = True
                self.agent_error = None
                logger.info("Agent connected (conversation %s)", conv_id)
                return True
            if attempt == 1:
                logger.info("Retrying agent connect in %.1fs", self.cfg.agent_retry_delay_s)
                await asyncio.sleep(float(self.cfg.agent_retry_delay_s))

        self.agent_connected = False
        self.agent_error = "agent did not start a conversation"
        return False

    async def send_welcome(self) -> bool:
        if not self.cfg.welcome_message_enabled or self._welcome_sent or not self.agent_connected:
            return False
        self._welcome_sent = True
        name = self.cfg.agent_name or "AI Agent"
        text = (
            f"\U0001F44B Hi! I'm {name} and I've joined the call. "
            "To ask me something in the chat, just @mention me and I'll respond!"
        )
        try:
            return bool(await self.meeting.send_chat(text))
        except Exception:
            logger.exception("Welcome message failed")
            return False

    def message_context(self) -> dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "session_speaker": self.session.speaker,
            "captions": list(self._caption_history),
        }

    # ----- captions -----

    def _is_own_name(self, speaker: str | None) -> bool:
        return bool(speaker) and speaker.strip().lower() == (self.cfg.agent_name or "").strip().lower()

    async def handle_caption(self, fragment: CaptionFragment) -> None:
        key = (fragment.id, fragment.text)
        if key == self._last_caption_key:
            return
        self._last_caption_key = key
        if self._is_own_name(fragment.speaker):
            return

        self._caption_history.append({"speaker": fragment.speaker, "text": fragment.text})
        self.analytics.track_caption(fragment.speaker, fragment.text, is_final=fragment.is_final)

        if self.speech.is_speaking:
            logger.info("Interrupted by %s", fragment.speaker)
            try:
                await self.speech.stop()
            except Exception:
                logger.exception("Stopping speech failed")

        self.aggregator.add_caption(fragment)

    def _recent_context_lines(self) -> list[str]:
        n = int(self.cfg.intent_context_lines)
        return [f"{c['speaker']}: {c['text']}" for c in list(self._caption_history)[-n:]]

    def _intent_context(self, *, with_captions: bool = True, name_mentioned: bool = False):
        captions = list(self._caption_history)[-int(self.cfg.intent_context_lines):] if with_captions else []
        return context_from(self.cfg.agent_name, self.session, captions, name_mentioned=name_mentioned)

    async def _on_aggregated_caption(self, aggregated: AggregatedCaption, local: MentionResult) -> None:
        token = self._token
        try:
            await self._aggregated_pipeline(aggregated, local, token)
        except StageCancelled:
            logger.debug("Dropped caption from %s after meeting reset", aggregated.speaker)

    async def _aggregated_pipeline(
        self, aggregated: AggregatedCaption, local: MentionResult, token: CancellationToken
    ) -> None:
        token.raise_if_cancelled()
        is_session_speaker = self.session.is_session_speaker(aggregated.speaker)

        mention = local
        if self.detector.llm_enabled and (
            not local.is_mentioned or local.confidence < self.detector.cfg.llm_ambiguous_threshold
        ):
            mention = await self.detector.detect_mention_hybrid(aggregated.text, self._recent_context_lines())
            token.raise_if_cancelled()

        accepted: IntentResult | None = None
        if self.pattern.is_autonomous and self.session.is_active and not mention.is_mentioned and not is_session_speaker:
            result = await self.intent.should_respond_to(aggregated.text, aggregated.speaker, self._intent_context())
            token.raise_if_cancelled()
            if self.intent.passes_autonomous_gate(result):
                logger.info("Intent accepted from %s (%s)", aggregated.speaker, result.reason)
                accepted = result

        if mention.is_mentioned or is_session_speaker or accepted is not None:
            await self._process_caption(aggregated, mention, token, intent_result=accepted)

    async def _on_pending_mention_timeout(self, pending: PendingMention) -> None:
        logger.info("Pending mention timeout, processing anyway")
        aggregated = AggregatedCaption(
            speaker=pending.speaker,
            text=pending.caption_text,
            caption_ids=list(pending.caption_ids),
            start_time=pending.start_time or pending.timestamp,
            end_time=now_ms(),
            speaker_id=pending.speaker_id,
        )
        mention = MentionResult(
            is_mentioned=True,
            matched_variation=pending.matched_variation,
            confidence=1.0,
            fuzzy_match=False,
        )
        token = self._token
        try:
            await self._process_caption(aggregated, mention, token)
        except StageCancelled:
            logger.debug("Dropped pending mention after meeting reset")

    async def _react(self) -> None:
        try:
            await self.meeting.send_reaction(REACTION_LIKE)
        except Exception as e:
            logger.debug("Reaction failed: %s", e)

    async def _process_caption(
        self,
        aggregated: AggregatedCaption,
        mention: MentionResult,
        token: CancellationToken,
        *,
        intent_result: IntentResult | None = None,
    ) -> None:
        if self.behavior.is_processing:
            logger.info("Already processing, skipping: %s", aggregated.text[:30])
            return
        if mention.is_mentioned:
            await self._react()
        if not self.agent_connected:
            if mention.is_mentioned:
                logger.warning("Agent mentioned by %s but not connected", aggregated.speaker)
            return
        trigger = self.pattern.caption_mention
        if not trigger.enabled:
            logger.info("Caption mention ignored: trigger disabled")
            return

        result = intent_result
        if result is None:
            result = await self.intent.should_respond_to(
                aggregated.text, aggregated.speaker, self._intent_context(name_mentioned=mention.is_mentioned)
            )
            token.raise_if_cancelled()

        if result.is_end_of_conversation:
            logger.info("End of conversation from %s (%s)", aggregated.speaker, result.reason)
            self.conversation.add_user(aggregated.speaker, aggregated.text, source="caption")
            if channel_includes_speech(trigger.response_channel):
                await self.behavior.deliver_now(CLOSING_REPLY, CHANNEL_SPEECH)
            else:
                self.conversation.add_assistant(CLOSING_REPLY)
            self.session.end_session("end-of-conversation")
            return
        if not result.should_respond:
            logger.debug("Not responding to %s: %s", aggregated.speaker, result.reason)
            return

        self._begin_turn(aggregated.speaker)
        logger.info("Processing caption from %s (%s)", aggregated.speaker, result.reason)
        self.conversation.add_user(aggregated.speaker, aggregated.text, source="caption")
        await self.behavior.process_caption_mention(aggregated.speaker, aggregated.text, aggregated.speaker_id)
        self.session.touch()

    def _begin_turn(self, speaker: str) -> None:
        if not self.session.is_active:
            self.session.start_session(speaker)
        self.session.touch()
        self.behavior.dismiss_stale(self.cfg.stale_pending_s)
        self.behavior.clear_completed()

    # ----- chat -----

    async def handle_chat_message(self, message: ChatMessage) -> None:
        token = self._token
        try:
            await self._chat_pipeline(message, token)
        except StageCancelled:
            logger.debug("Dropped chat message %s after meeting reset", message.id)

    def _remember_chat_id(self, message_id: str) -> None:
        self._seen_chat_ids[message_id] = None
        while len(self._seen_chat_ids) > max(1, int(self.cfg.max_seen_chat_ids)):
            self._seen_chat_ids.popitem(last=False)

    async def _chat_pipeline(self, message: ChatMessage, token: CancellationToken) -> None:
        if message.is_own or message.id in self._seen_chat_ids:
            return
        if not self.agent_connected:
            return
        self._remember_chat_id(message.id)

        trigger = self.pattern.chat_mention
        if not trigger.enabled:
            return
        mention = self.detector.detect_chat_mention(message.content)
        if not mention.is_mentioned:
            return
        logger.info("Agent @mentioned in chat by %s", message.sender_display_name)
        await self._react()

        author = message.sender_display_name
        text = extract_message_text(message.content)
        result = await self.intent.should_respond_to(
            text, author, self._intent_context(with_captions=False, name_mentioned=True)
        )
        token.raise_if_cancelled()

        if self.session.is_active and result.is_end_of_conversation:
            logger.info("End of conversation from %s (chat): %s", author, result.reason)
            self.conversation.add_user(author, text, source="chat")
            await self.behavior.deliver_now(CLOSING_REPLY, CHANNEL_CHAT)
            self.session.end_session("end-of-conversation")
            return

        self._begin_turn(author)
        self.conversation.add_user(author, text, source="chat")
        await self.behavior.process_chat_mention(message)
        self.session.touch()

    # ----- agent -----

    async def _generate_response(self, ctx: TriggerContext) -> str:
        token = self._token
        if self.agent is None:
            raise RuntimeError("no agent provider configured")
        if not self.agent.is_connected:
            logger.info("Agent conversation closed, starting a new one")
            await self.agent.start_conversation()
            token.raise_if_cancelled()
        reply = await self.agent.send_message(ctx.content, ctx.author, self.message_context())
        token.raise_if_cancelled()
        logger.info("Agent response (%s): %s", ctx.source, (reply.text or "")[:50])
        return reply.text

    # ----- controls -----

    async def approve_response(self, response_id: str) -> bool:
        return await self.behavior.approve_response(response_id)

    async def reject_response(self, response_id: str) -> bool:
        ok = self.behavior.reject_response(response_id)
        if ok:
            await self.behavior.lower_hand_if_idle()
        return ok

    def end_session(self, reason: str = "manual") -> bool:
        return self.session.end_session(reason)

    async def on_hand_raised_state_changed(self, raised: bool) -> None:
        await self.behavior.on_hand_raised_state_changed(raised)

    def _on_session_ended(self, speaker: str, reason: str) -> None:
        logger.info("Session with %s closed: %s", speaker, reason)

    async def end_call(self) -> None:
        self.session.end_session("call-ended")
        self.analytics.end_call()

    async def summary(self, *, include_summary: bool = True) -> dict:
        return await self.analytics.report(include_summary=include_summary)

    def state(self) -> dict[str, Any]:
        s = self.session.snapshot()
        return {
            "meeting_id": self.meeting_id,
            "meeting_url": self.meeting_url,
            "agent_connected": self.agent_connected,
            "agent_error": self.agent_error,
            "pattern": self.pattern.id,
            "is_processing": self.behavior.is_processing,
            "hand_raised": self.behavior.hand_raised,
            "session": {
                "is_active": s.is_active,
                "speaker": s.speaker,
                "started_at": s.started_at,
                "last_activity_at": s.last_activity_at,
            },
            "queue": self.behavior.queue_stats(),
            "conversation": [m.to_dict() for m in self.conversation.messages()[-50:]],
        }

    async def dispose(self) -> None:
        self._token.cancel("disposed")
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.aggregator.dispose()
        self.session.dispose()
        self.behavior.dispose()
        if self.agent is not None:
            try:
                await self.agent.close()
            except Exception:
                logger.exception("Closing agent provider failed")
        self.agent_connected = False
