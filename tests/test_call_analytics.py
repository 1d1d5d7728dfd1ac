import unittest

from meeting_agent.analytics import CallAnalytics, format_duration


class _Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class _FakeTextLLM:
    def __init__(self, reply="", error=None):
        self.reply = reply
        self.error = error
        self.calls = 0

    async def complete_text(self, system_prompt, user_prompt, **kwargs):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.reply


class TestCallAnalytics(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.analytics = CallAnalytics(clock=self.clock)

    def test_stats_and_response_time(self):
        a = self.analytics
        a.start_call()
        a.track_caption("Alex", "Hey Jenny, what's the weather?")
        a.track_caption("Bob", "interim", is_final=False)
        a.track_caption("Bob", "sounds good")
        a.track_question("Alex", "what's the weather?")
        self.clock.now += 3
        a.track_response("Sunny and 22 degrees.")
        self.clock.now += 62
        a.end_call()

        stats = a.get_stats()
        self.assertEqual(stats.total_duration_s, 65)
        self.assertEqual(stats.total_captions, 2)
        self.assertEqual(stats.total_questions, 1)
        self.assertEqual(stats.total_responses, 1)
        self.assertEqual(stats.participant_count, 2)
        self.assertEqual(stats.average_response_time_s, 3)
        self.assertEqual(a.formatted_duration(), "1:05")
        self.assertEqual(a.participants, ["Alex", "Bob"])
        self.assertEqual(a.get_top_questions()[0]["response_time"], "3.0s")
        self.assertFalse(a.is_tracking)

    def test_captions_ignored_before_start(self):
        self.analytics.track_caption("Alex", "hello")
        self.assertEqual(self.analytics.get_stats().total_captions, 0)

    def test_start_call_is_idempotent_while_tracking(self):
        a = self.analytics
        a.start_call()
        a.track_caption("Alex", "hello")
        a.start_call()
        self.assertEqual(a.get_stats().total_captions, 1)

    def test_transcript_lines(self):
        a = self.analytics
        a.start_call()
        a.track_caption("Alex", "hello there")
        line = a.get_transcript()
        self.assertTrue(line.startswith("["))
        self.assertTrue(line.endswith("] Alex: hello there"))

    def test_basic_summary(self):
        a = self.analytics
        a.start_call()
        self.assertIn("No conversation data", a.basic_summary())
        a.track_caption("Alex", "Jenny, what is the status?")
        a.track_question("Alex", "what is the status?")
        a.track_response("All green.")
        summary = a.basic_summary()
        self.assertIn("### Participants", summary)
        self.assertIn('**Alex**: "what is the status?"', summary)
        self.assertIn("All green.", summary)

    def test_format_duration(self):
        self.assertEqual(format_duration(0), "0:00")
        self.assertEqual(format_duration(59), "0:59")
        self.assertEqual(format_duration(3725), "1:02:05")
        self.assertEqual(format_duration(-4), "0:00")


class TestCallSummary(unittest.IsolatedAsyncioTestCase):
    async def test_llm_summary(self):
        llm = _FakeTextLLM("## Executive Summary\nShort call.")
        a = CallAnalytics(llm, clock=_Clock())
        a.start_call()
        a.track_caption("Alex", "hi")
        report = await a.report()
        self.assertEqual(report["summary"], "## Executive Summary\nShort call.")
        self.assertEqual(report["stats"]["participant_list"], ["Alex"])
        self.assertEqual(report["stats"]["duration"], "0:00")

    async def test_llm_failure_falls_back_to_basic_summary(self):
        a = CallAnalytics(_FakeTextLLM(error=RuntimeError("down")), clock=_Clock())
        a.start_call()
        a.track_caption("Alex", "hi")
        summary = await a.generate_summary()
        self.assertIn("## Meeting Overview", summary)

    async def test_report_without_summary_skips_llm(self):
        llm = _FakeTextLLM("x")
        a = CallAnalytics(llm, clock=_Clock())
        a.start_call()
        report = await a.report(include_summary=False)
        self.assertEqual(report["summary"], "")
        self.assertEqual(llm.calls, 0)


if __name__ == "__main__":
    unittest.main()
