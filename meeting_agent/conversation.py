from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ConversationMessage:
    role: str  # "user", "assistant" or "system"
    text: str
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    source: Optional[str] = None  # "caption", "chat" or None

    def to_dict(self) -> dict:
        return asdict(self)


class ConversationLog:
    """
    Transcript of the agent's conversation in the current meeting.

    Upstream callbacks can deliver the same logical event twice; a message whose
    role, text and whole-second timestamp match one added within `dedupe_window_s`
    is dropped.
    """

    def __init__(self, dedupe_window_s: float = 2.0, max_messages: int = 500, *, clock: Callable[[], float] = time.time):
        self.dedupe_window_s = float(dedupe_window_s)
        self.max_messages = int(max_messages)
        self._clock = clock
        self._messages: list[ConversationMessage] = []
        self._recent_keys: dict[str, float] = {}

    @staticmethod
    def _key(role: str, text: str, timestamp: float) -> str:
        return f"{role}:{text}:{int(timestamp)}"

    def _prune_keys(self, now: float) -> None:
        stale = [k for k, ts in self._recent_keys.items() if now - ts >= self.dedupe_window_s]
        for k in stale:
            del self._recent_keys[k]

    def add(self, role: str, text: str, *, timestamp: float | None = None, source: str | None = None) -> ConversationMessage | None:
        now = self._clock()
        ts = now if timestamp is None else float(timestamp)
        self._prune_keys(now)
        key = self._key(role, text, ts)
        if key in self._recent_keys:
            logger.debug("Duplicate message skipped: %s", (text or "")[:50])
            return None
        self._recent_keys[key] = now

        msg = ConversationMessage(role=role, text=text, timestamp=ts, source=source)
        self._messages.append(msg)
        if self.max_messages > 0 and len(self._messages) > self.max_messages:
            del self._messages[: len(self._messages) - self.max_messages]
        return msg

    def add_user(self, speaker: str, text: str, *, source: str = "caption") -> ConversationMessage | None:
        label = "Chat" if source == "chat" else "Caption"
        return self.add("user", f"[{label}] {speaker}: {text}", source=source)

    def add_assistant(self, text: str) -> ConversationMessage | None:
        return self.add("assistant", text)

    def messages(self) -> list[ConversationMessage]:
        return list(self._messages)

    def recent_texts(self, limit: int = 10) -> list[str]:
        return [m.text for m in self._messages[-int(limit):]] if limit > 0 else []

    def clear(self) -> None:
        self._messages.clear()
        self._recent_keys.clear()

    def __len__(self) -> int:
        return len(self._messages)
