from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class StageCancelled(Exception):
    """Raised inside a pipeline stage after the meeting it belongs to was reset."""


class CancellationToken:
    def __init__(self, label: str = ""):
        self.label = label
        self._cancelled = False
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason
            logger.debug("Cancellation token %s cancelled (%s)", self.label or "-", reason or "-")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise StageCancelled(self.reason or "cancelled")


@dataclass
class SessionState:
    is_active: bool = False
    speaker: Optional[str] = None
    started_at: Optional[float] = None
    in_follow_up_window: bool = False
    last_activity_at: Optional[float] = None


class SessionTracker:
    """Single conversational partner: Idle -> Active(speaker) -> Idle."""

    def __init__(
        self,
        idle_timeout_s: float = 120.0,
        *,
        on_session_ended: Callable[[str, str], Any] | None = None,
    ):
        self.idle_timeout_s = float(idle_timeout_s)
        self.on_session_ended = on_session_ended
        self._state = SessionState()
        self._idle_timer: asyncio.TimerHandle | None = None

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def speaker(self) -> str | None:
        return self._state.speaker

    def snapshot(self) -> SessionState:
        return replace(self._state)

    def is_session_speaker(self, name: str | None) -> bool:
        return bool(self._state.is_active and name and name == self._state.speaker)

    def start_session(self, speaker: str) -> bool:
        if self._state.is_active:
            logger.debug("Session already active with %s; ignoring start for %s", self._state.speaker, speaker)
            return False
        name = (speaker or "").strip()
        if not name:
            return False
        now = time.time()
        self._state = SessionState(
            is_active=True,
            speaker=name,
            started_at=now,
            in_follow_up_window=True,
            last_activity_at=now,
        )
        logger.info("Session started with %s", name)
        self._arm_idle_timer()
        return True

    def touch(self) -> None:
        if not self._state.is_active:
            return
        self._state.last_activity_at = time.time()
        self._arm_idle_timer()

    def end_session(self, reason: str = "manual") -> bool:
        self._cancel_idle_timer()
        was_active = self._state.is_active
        speaker = self._state.speaker or ""
        self._state = SessionState()
        if not was_active:
            return False
        logger.info("Session with %s ended (%s)", speaker, reason)
        cb = self.on_session_ended
        if cb is not None:
            try:
                result = cb(speaker, reason)
                if inspect.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("Session-ended callback failed")
        return True

    def dispose(self) -> None:
        self._cancel_idle_timer()
        self._state = SessionState()
        self.on_session_ended = None

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._idle_timer = loop.call_later(self.idle_timeout_s, self._on_idle_timeout)

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle_timeout(self) -> None:
        self._idle_timer = None
        if self._state.is_active:
            logger.info("Session idle for %.0fs", self.idle_timeout_s)
            self.end_session("idle-timeout")
