import unittest

from meeting_agent.meeting_bridge import BridgeSpeechProvider, WebSocketMeetingBridge


class _FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


class TestWebSocketMeetingBridge(unittest.IsolatedAsyncioTestCase):
    async def test_commands_without_client_return_false(self):
        bridge = WebSocketMeetingBridge()
        self.assertFalse(bridge.is_attached)
        self.assertFalse(await bridge.send_chat("hello"))
        self.assertFalse(await bridge.raise_hand())
        self.assertFalse(bridge.hand_raised)

    async def test_commands_are_forwarded(self):
        ws = _FakeWebSocket()
        bridge = WebSocketMeetingBridge()
        bridge.attach(ws)

        self.assertTrue(await bridge.send_chat("hello"))
        self.assertTrue(await bridge.raise_hand())
        self.assertTrue(bridge.hand_raised)
        self.assertTrue(await bridge.send_reaction())
        self.assertTrue(await bridge.lower_hand())
        self.assertFalse(bridge.hand_raised)

        self.assertEqual(
            ws.sent,
            [
                {"type": "send_chat", "text": "hello"},
                {"type": "raise_hand"},
                {"type": "reaction", "reaction": "like"},
                {"type": "lower_hand"},
            ],
        )

    async def test_blank_chat_is_not_sent(self):
        ws = _FakeWebSocket()
        bridge = WebSocketMeetingBridge(ws)
        self.assertFalse(await bridge.send_chat("   "))
        self.assertEqual(ws.sent, [])

    async def test_send_failure_returns_false(self):
        bridge = WebSocketMeetingBridge(_FakeWebSocket(fail=True))
        self.assertFalse(await bridge.raise_hand())
        self.assertFalse(bridge.hand_raised)

    async def test_detach_only_current_socket(self):
        first = _FakeWebSocket()
        second = _FakeWebSocket()
        bridge = WebSocketMeetingBridge()
        bridge.attach(first)
        bridge.attach(second)
        bridge.on_hand_state(True)

        bridge.detach(first)
        self.assertTrue(bridge.is_attached)
        self.assertTrue(bridge.hand_raised)

        bridge.detach(second)
        self.assertFalse(bridge.is_attached)
        self.assertFalse(bridge.hand_raised)


class TestBridgeSpeechProvider(unittest.IsolatedAsyncioTestCase):
    async def test_speak_and_stop(self):
        ws = _FakeWebSocket()
        speech = BridgeSpeechProvider(WebSocketMeetingBridge(ws))

        self.assertFalse(await speech.speak(""))
        self.assertTrue(await speech.speak("Sunny today."))
        self.assertTrue(speech.is_speaking)

        await speech.stop()
        self.assertFalse(speech.is_speaking)
        await speech.stop()

        self.assertEqual(ws.sent, [{"type": "speak", "text": "Sunny today."}, {"type": "stop_speaking"}])

    async def test_speech_state_follows_client(self):
        speech = BridgeSpeechProvider(WebSocketMeetingBridge(_FakeWebSocket()))
        speech.on_speech_state(True)
        self.assertTrue(speech.is_speaking)
        speech.on_speech_state(False)
        self.assertFalse(speech.is_speaking)

    async def test_speak_without_client(self):
        speech = BridgeSpeechProvider(WebSocketMeetingBridge())
        self.assertFalse(await speech.speak("hello"))
        self.assertFalse(speech.is_speaking)


if __name__ == "__main__":
    unittest.main()
