import unittest

from meeting_agent.intent import ConversationContext, IntentClassifier, IntentConfig, context_from
from meeting_agent.models import IntentResult
from meeting_agent.session import SessionTracker


class _FakeJsonLLM:
    def __init__(self, data=None, raw="", error=None):
        self.data = data or {}
        self.raw = raw
        self.error = error
        self.prompts = []

    async def complete_json(self, system_prompt, user_prompt, **kwargs):
        self.prompts.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        return self.data, self.raw


def _ctx(active=False, speaker=None, captions=None, name_mentioned=False):
    return ConversationContext(
        agent_name="Jenny",
        session_active=active,
        session_speaker=speaker,
        recent_captions=captions or [],
        name_mentioned=name_mentioned,
    )


class TestIntentRules(unittest.TestCase):
    def setUp(self):
        self.classifier = IntentClassifier()

    def test_name_mention_responds(self):
        r = self.classifier.classify_rules("Hey Jenny, what's the weather?", "Alex", _ctx())
        self.assertTrue(r.should_respond)
        self.assertFalse(r.is_end_of_conversation)
        self.assertEqual(r.reason, "Name mentioned")
        self.assertEqual(r.confidence, 0.9)

    def test_confirmed_mention_responds_without_exact_name(self):
        r = self.classifier.classify_rules("Hey Jennie, what's the weather?", "Alex", _ctx(name_mentioned=True))
        self.assertTrue(r.should_respond)
        self.assertEqual(r.reason, "Name mentioned")

    def test_question_from_session_speaker_responds(self):
        r = self.classifier.classify_rules("what about tomorrow?", "Alex", _ctx(True, "Alex"))
        self.assertTrue(r.should_respond)
        self.assertEqual(r.confidence, 0.8)

    def test_question_from_other_speaker_is_ignored(self):
        r = self.classifier.classify_rules("what about tomorrow?", "Bob", _ctx(True, "Alex"))
        self.assertFalse(r.should_respond)

    def test_request_with_filler_from_session_speaker(self):
        r = self.classifier.classify_rules("Okay, now summarize the action items", "Alex", _ctx(True, "Alex"))
        self.assertTrue(r.should_respond)

    def test_farewell_ends_session(self):
        r = self.classifier.classify_rules("Thanks Jenny, that's all I needed", "Alex", _ctx(True, "Alex"))
        self.assertTrue(r.is_end_of_conversation)
        self.assertFalse(r.should_respond)
        self.assertEqual(r.reason, "End of conversation detected")

    def test_thanks_with_follow_up_is_not_end(self):
        r = self.classifier.classify_rules("Thanks! What about next week?", "Alex", _ctx(True, "Alex"))
        self.assertFalse(r.is_end_of_conversation)
        self.assertTrue(r.should_respond)

    def test_acknowledgement_is_not_end(self):
        r = self.classifier.classify_rules("ok got it", "Alex", _ctx(True, "Alex"))
        self.assertFalse(r.is_end_of_conversation)
        self.assertFalse(r.should_respond)

    def test_farewell_outside_session_is_not_end(self):
        r = self.classifier.classify_rules("bye everyone", "Bob", _ctx(True, "Alex"))
        self.assertFalse(r.is_end_of_conversation)

    def test_farewell_inside_word_is_ignored(self):
        r = self.classifier.classify_rules("standbye mode enabled", "Alex", _ctx(True, "Alex"))
        self.assertFalse(r.is_end_of_conversation)


class TestIntentLLM(unittest.IsolatedAsyncioTestCase):
    async def test_without_llm_uses_rules(self):
        classifier = IntentClassifier(None)
        r = await classifier.should_respond_to("Jenny, help", "Alex", _ctx())
        self.assertTrue(r.should_respond)

    async def test_llm_decision(self):
        llm = _FakeJsonLLM({"shouldRespond": True, "isEndOfConversation": False, "reason": "question", "confidence": 0.82})
        classifier = IntentClassifier(llm)
        ctx = _ctx(True, "Alex", [{"speaker": "Alex", "text": "numbers please"}])
        r = await classifier.should_respond_to("and for Q3?", "Alex", ctx)
        self.assertTrue(r.should_respond)
        self.assertAlmostEqual(r.confidence, 0.82)
        self.assertEqual(r.reason, "question")
        self.assertIn("Alex: numbers please", llm.prompts[0][1])

    async def test_llm_end_of_conversation_forces_no_response(self):
        llm = _FakeJsonLLM({"shouldRespond": True, "isEndOfConversation": True, "confidence": 0.9})
        r = await IntentClassifier(llm).should_respond_to("that's all, thanks", "Alex", _ctx(True, "Alex"))
        self.assertTrue(r.is_end_of_conversation)
        self.assertFalse(r.should_respond)

    async def test_llm_cannot_veto_confirmed_mention(self):
        llm = _FakeJsonLLM({"shouldRespond": False, "isEndOfConversation": False, "confidence": 0.3})
        r = await IntentClassifier(llm).should_respond_to("Jennie, status?", "Alex", _ctx(name_mentioned=True))
        self.assertTrue(r.should_respond)

    async def test_llm_end_of_conversation_requires_session_speaker(self):
        llm = _FakeJsonLLM({"shouldRespond": False, "isEndOfConversation": True, "confidence": 0.9})
        r = await IntentClassifier(llm).should_respond_to("bye", "Bob", _ctx(True, "Alex"))
        self.assertFalse(r.is_end_of_conversation)

    async def test_non_json_reply_reads_flags(self):
        llm = _FakeJsonLLM({}, raw='{"shouldRespond": true, "reason": ')
        r = await IntentClassifier(llm).should_respond_to("hmm", "Alex", _ctx())
        self.assertTrue(r.should_respond)
        self.assertEqual(r.confidence, 0.5)

    async def test_llm_error_falls_back_to_rules(self):
        llm = _FakeJsonLLM(error=RuntimeError("down"))
        r = await IntentClassifier(llm).should_respond_to("Thanks, bye", "Alex", _ctx(True, "Alex"))
        self.assertTrue(r.is_end_of_conversation)

    async def test_llm_disabled_by_config(self):
        llm = _FakeJsonLLM(error=AssertionError("should not be called"))
        classifier = IntentClassifier(llm, IntentConfig(llm_enabled=False))
        self.assertFalse(classifier.llm_enabled)
        r = await classifier.should_respond_to("Jenny?", "Alex", _ctx())
        self.assertTrue(r.should_respond)


class TestAutonomousGate(unittest.TestCase):
    def test_threshold(self):
        classifier = IntentClassifier(cfg=IntentConfig(autonomous_confidence_threshold=0.7))
        self.assertTrue(classifier.passes_autonomous_gate(IntentResult(True, 0.7, "")))
        self.assertFalse(classifier.passes_autonomous_gate(IntentResult(True, 0.69, "")))
        self.assertFalse(classifier.passes_autonomous_gate(IntentResult(False, 0.99, "")))

    def test_context_from_session(self):
        session = SessionTracker()
        session.start_session("Alex")
        ctx = context_from("Jenny", session, [{"speaker": "Alex", "text": "hi"}])
        self.assertTrue(ctx.session_active)
        self.assertEqual(ctx.session_speaker, "Alex")
        self.assertEqual(len(ctx.recent_captions), 1)


if __name__ == "__main__":
    unittest.main()
