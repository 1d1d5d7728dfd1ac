from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)

REACTION_LIKE = "like"


class MeetingProvider(Protocol):
    async def raise_hand(self) -> bool: ...

    async def lower_hand(self) -> bool: ...

    async def send_reaction(self, kind: str) -> bool: ...

    async def send_chat(self, text: str) -> bool: ...


class SpeechProvider(Protocol):
    is_speaking: bool

    async def speak(self, text: str) -> bool: ...

    async def stop(self) -> None: ...


class WebSocketMeetingBridge:
    """
    Forwards meeting commands to the connected meeting client as JSON messages.

    Only one client is attached at a time. Commands sent while no client is
    attached return False.
    """

    def __init__(self, websocket: WebSocket | None = None):
        self._websocket: Optional[WebSocket] = websocket
        self._send_lock = asyncio.Lock()
        self.hand_raised = False

    @property
    def is_attached(self) -> bool:
        return self._websocket is not None

    def attach(self, websocket: WebSocket) -> None:
        if self._websocket is not None and self._websocket is not websocket:
            logger.info("Meeting client replaced by a new connection")
        self._websocket = websocket

    def detach(self, websocket: WebSocket | None = None) -> None:
        if websocket is None or websocket is self._websocket:
            self._websocket = None
            self.hand_raised = False

    async def send(self, payload: dict[str, Any]) -> bool:
        ws = self._websocket
        if ws is None:
            logger.debug("No meeting client attached; dropping %s", payload.get("type"))
            return False
        try:
            async with self._send_lock:
                await ws.send_json(payload)
            return True
        except Exception as e:
            logger.warning("Meeting bridge send failed (%s): %s", payload.get("type"), e)
            return False

    async def raise_hand(self) -> bool:
        ok = await self.send({"type": "raise_hand"})
        if ok:
            self.hand_raised = True
        return ok

    async def lower_hand(self) -> bool:
        ok = await self.send({"type": "lower_hand"})
        if ok:
            self.hand_raised = False
        return ok

    async def send_reaction(self, kind: str = REACTION_LIKE) -> bool:
        return await self.send({"type": "reaction", "reaction": kind})

    async def send_chat(self, text: str) -> bool:
        if not (text or "").strip():
            return False
        return await self.send({"type": "send_chat", "text": text})

    def on_hand_state(self, raised: bool) -> None:
        self.hand_raised = bool(raised)


class BridgeSpeechProvider:
    """Text-to-speech performed by the meeting client; `is_speaking` follows its speech_state events."""

    def __init__(self, bridge: WebSocketMeetingBridge):
        self.bridge = bridge
        self.is_speaking = False

    async def speak(self, text: str) -> bool:
        if not (text or "").strip():
            return False
        ok = await self.bridge.send({"type": "speak", "text": text})
        if ok:
            self.is_speaking = True
        return ok

    async def stop(self) -> None:
        if not self.is_speaking:
            return
        self.is_speaking = False
        await self.bridge.send({"type": "stop_speaking"})

    def on_speech_state(self, speaking: bool) -> None:
        self.is_speaking = bool(speaking)
