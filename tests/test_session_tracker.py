import asyncio
import unittest

from meeting_agent.session import CancellationToken, SessionTracker, StageCancelled


class TestSessionTracker(unittest.TestCase):
    def test_start_and_end(self):
        ended = []
        tracker = SessionTracker(on_session_ended=lambda speaker, reason: ended.append((speaker, reason)))
        self.assertFalse(tracker.is_active)

        self.assertTrue(tracker.start_session("Alex"))
        self.assertTrue(tracker.is_active)
        self.assertEqual(tracker.speaker, "Alex")
        self.assertTrue(tracker.is_session_speaker("Alex"))
        self.assertFalse(tracker.is_session_speaker("Bob"))

        self.assertTrue(tracker.end_session("manual"))
        self.assertFalse(tracker.is_active)
        self.assertIsNone(tracker.speaker)
        self.assertEqual(ended, [("Alex", "manual")])

    def test_second_start_is_ignored(self):
        tracker = SessionTracker()
        tracker.start_session("Alex")
        self.assertFalse(tracker.start_session("Bob"))
        self.assertEqual(tracker.speaker, "Alex")

    def test_end_without_session_does_not_notify(self):
        ended = []
        tracker = SessionTracker(on_session_ended=lambda s, r: ended.append(s))
        self.assertFalse(tracker.end_session())
        self.assertEqual(ended, [])

    def test_blank_speaker_rejected(self):
        self.assertFalse(SessionTracker().start_session("  "))

    def test_snapshot_is_a_copy(self):
        tracker = SessionTracker()
        tracker.start_session("Alex")
        snap = tracker.snapshot()
        tracker.end_session()
        self.assertTrue(snap.is_active)
        self.assertEqual(snap.speaker, "Alex")
        self.assertTrue(snap.in_follow_up_window)

    def test_follow_up_window_follows_session(self):
        tracker = SessionTracker()
        self.assertFalse(tracker.snapshot().in_follow_up_window)
        tracker.start_session("Alex")
        self.assertTrue(tracker.snapshot().in_follow_up_window)
        tracker.end_session("end-of-conversation")
        self.assertFalse(tracker.snapshot().in_follow_up_window)


class TestSessionIdleTimeout(unittest.IsolatedAsyncioTestCase):
    async def test_idle_timeout_ends_session(self):
        ended = []
        tracker = SessionTracker(0.05, on_session_ended=lambda s, r: ended.append(r))
        tracker.start_session("Alex")
        await asyncio.sleep(0.15)
        self.assertFalse(tracker.is_active)
        self.assertEqual(ended, ["idle-timeout"])

    async def test_touch_extends_session(self):
        tracker = SessionTracker(0.1)
        tracker.start_session("Alex")
        for _ in range(3):
            await asyncio.sleep(0.05)
            tracker.touch()
        self.assertTrue(tracker.is_active)
        tracker.dispose()
        self.assertFalse(tracker.is_active)

    async def test_async_end_callback_is_scheduled(self):
        ended = []

        async def on_end(speaker, reason):
            ended.append(speaker)

        tracker = SessionTracker(on_session_ended=on_end)
        tracker.start_session("Alex")
        tracker.end_session("manual")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.assertEqual(ended, ["Alex"])


class TestCancellationToken(unittest.TestCase):
    def test_cancel(self):
        token = CancellationToken("m1")
        token.raise_if_cancelled()
        token.cancel("meeting changed")
        self.assertTrue(token.cancelled)
        with self.assertRaises(StageCancelled) as ctx:
            token.raise_if_cancelled()
        self.assertIn("meeting changed", str(ctx.exception))

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        self.assertEqual(token.reason, "first")


if __name__ == "__main__":
    unittest.main()
