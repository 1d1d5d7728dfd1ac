from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from meeting_agent.analytics import CallAnalytics
from meeting_agent.conversation import ConversationLog
from meeting_agent.mention import MentionDetector, extract_message_text
from meeting_agent.models import (
    BehaviorPattern,
    ChatMessage,
    MODE_CONTROLLED,
    MODE_IMMEDIATE,
    MODE_QUEUED,
    PendingResponse,
    QueuedOptions,
    STATUS_APPROVED,
    STATUS_DISMISSED,
    STATUS_FAILED,
    STATUS_HAND_RAISED,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_SENDING,
    STATUS_SENT,
    TRIGGER_CAPTION,
    TRIGGER_CHAT,
    TriggerConfig,
    TriggerContext,
    channel_includes_chat,
    channel_includes_speech,
)
from meeting_agent.session import StageCancelled
from meeting_agent.speech_text import format_for_chat, prepare_for_speech

logger = logging.getLogger(__name__)

MAX_PENDING_RECORDS = 20
HISTORY_RETENTION_S = 30 * 60

EVENT_TRIGGER_DETECTED = "trigger-detected"
EVENT_RESPONSE_GENERATED = "response-generated"
EVENT_RESPONSE_QUEUED = "response-queued"
EVENT_RESPONSE_APPROVED = "response-approved"
EVENT_RESPONSE_REJECTED = "response-rejected"
EVENT_RESPONSE_SENDING = "response-sending"
EVENT_RESPONSE_SENT = "response-sent"
EVENT_RESPONSE_FAILED = "response-failed"
EVENT_HAND_RAISED = "hand-raised"
EVENT_HAND_LOWERED = "hand-lowered"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_APPROVED, STATUS_REJECTED, STATUS_HAND_RAISED, STATUS_SENDING, STATUS_DISMISSED},
    STATUS_APPROVED: {STATUS_SENDING, STATUS_DISMISSED},
    STATUS_HAND_RAISED: {STATUS_SENDING, STATUS_PENDING, STATUS_DISMISSED},
    STATUS_SENDING: {STATUS_SENT, STATUS_FAILED},
    STATUS_SENT: {STATUS_DISMISSED},
    STATUS_FAILED: {STATUS_DISMISSED},
    STATUS_REJECTED: {STATUS_DISMISSED},
    STATUS_DISMISSED: set(),
}

# Substrings of agent/service failures that must never be read aloud.
ERROR_SIGNATURES = (
    "an error has occurred",
    "error code:",
    "error:",
    "contentfiltered",
    "content filtered",
    "conversation id:",
    "time (utc):",
    "failed to",
    "exception:",
    "internal server error",
    "rate limit",
    "throttled",
    "timeout",
    "service unavailable",
    "bad request",
    "unauthorized",
    "forbidden",
    "not found",
)


def is_error_response(text: str | None) -> bool:
    if not text:
        return False
    low = text.lower()
    return any(sig in low for sig in ERROR_SIGNATURES)


@dataclass
class BehaviorEvent:
    type: str
    response_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "response_id": self.response_id, "timestamp": self.timestamp, **self.data}


ResponseGenerator = Callable[[TriggerContext], Awaitable[str]]
TextSender = Callable[[str], Awaitable[bool]]
HandAction = Callable[[], Awaitable[bool]]
EventListener = Callable[[BehaviorEvent], Any]


class BehaviorProcessor:
    """
    Decides how a generated agent response reaches the meeting.

    The active pattern's trigger config picks the delivery mode (immediate,
    controlled, queued) and the channel (chat, speech, both). Only one trigger
    is processed at a time; triggers arriving while `is_processing` are dropped.
    """

    def __init__(
        self,
        pattern: BehaviorPattern,
        *,
        generate_response: ResponseGenerator,
        speak: TextSender,
        send_chat: TextSender,
        raise_hand: HandAction,
        lower_hand: HandAction,
        detector: MentionDetector,
        conversation: ConversationLog | None = None,
        analytics: CallAnalytics | None = None,
        max_records: int = MAX_PENDING_RECORDS,
    ):
        self.pattern = pattern
        self._generate = generate_response
        self._speak = speak
        self._send_chat = send_chat
        self._raise_hand = raise_hand
        self._lower_hand = lower_hand
        self.detector = detector
        self.conversation = conversation if conversation is not None else ConversationLog()
        self.analytics = analytics
        self.max_records = max(1, int(max_records))

        self._lock = asyncio.Lock()
        self._records: dict[str, PendingResponse] = {}
        self._listeners: list[EventListener] = []
        self._listener_tasks: set[asyncio.Task] = set()
        self.hand_raised = False
        self._disposed = False

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    def set_pattern(self, pattern: BehaviorPattern) -> None:
        logger.info("Behavior pattern set to %s", pattern.id)
        self.pattern = pattern

    # ----- triggers -----

    async def process_caption_mention(
        self, speaker: str, text: str, speaker_id: str | None = None
    ) -> PendingResponse | None:
        ctx = TriggerContext(
            source=TRIGGER_CAPTION,
            content=text,
            author=speaker,
            author_id=speaker_id,
            recent_captions=self.conversation.recent_texts(10),
        )
        return await self._process_trigger(ctx)

    async def process_chat_mention(self, message: ChatMessage) -> PendingResponse | None:
        ctx = TriggerContext(
            source=TRIGGER_CHAT,
            content=extract_message_text(message.content),
            author=message.sender_display_name,
            author_id=message.sender_id,
            recent_captions=self.conversation.recent_texts(10),
        )
        return await self._process_trigger(ctx)

    def is_mention_of_agent(self, text: str) -> bool:
        return self.detector.is_mention_of_agent(text)

    async def _process_trigger(self, ctx: TriggerContext) -> PendingResponse | None:
        if self._disposed:
            return None
        trigger = self.pattern.trigger_config(ctx.source)
        if not trigger.enabled:
            logger.info("Trigger %s is disabled in pattern %s", ctx.source, self.pattern.id)
            return None
        if self._lock.locked():
            logger.info("Already processing a response; dropping %s from %s", ctx.source, ctx.author)
            return None

        async with self._lock:
            self._emit(EVENT_TRIGGER_DETECTED, data={"source": ctx.source, "content": ctx.content, "author": ctx.author})
            if self.analytics is not None:
                self.analytics.track_question(ctx.author, ctx.content)

            try:
                text = await self._generate(ctx)
            except (asyncio.CancelledError, StageCancelled):
                raise
            except Exception as e:
                logger.exception("Response generation failed for %s", ctx.source)
                self._emit(EVENT_RESPONSE_FAILED, data={"error": str(e)})
                return None
            text = (text or "").strip()
            if not text:
                logger.warning("Agent produced no response for %s from %s", ctx.source, ctx.author)
                return None
            self._emit(EVENT_RESPONSE_GENERATED, data={"response_text": text})

            record = PendingResponse(
                trigger_source=ctx.source,
                trigger_content=ctx.content,
                trigger_author=ctx.author,
                response_text=text,
                response_channel=trigger.response_channel,
                behavior_mode=trigger.behavior_mode,
            )
            return await self._route(record, trigger)

    async def _route(self, record: PendingResponse, trigger: TriggerConfig) -> PendingResponse:
        mode = trigger.behavior_mode
        if mode == MODE_IMMEDIATE:
            record.status = STATUS_SENDING
            ok = await self.deliver_now(record.response_text, record.response_channel)
            record.status = STATUS_SENT if ok else STATUS_FAILED
            record.status_changed_at = time.time()
            if ok:
                self._emit(EVENT_RESPONSE_SENT, record.id, {"channel": record.response_channel})
            else:
                record.error_message = "delivery failed"
                self._emit(EVENT_RESPONSE_FAILED, record.id, {"error": "delivery failed"})
            return record

        self._store(record)
        self._emit(
            EVENT_RESPONSE_QUEUED,
            record.id,
            {"mode": mode, "channel": record.response_channel, "response_text": record.response_text},
        )
        if mode == MODE_CONTROLLED:
            logger.info("Response %s waiting for approval", record.id)
        elif mode == MODE_QUEUED:
            opts = trigger.queued_options or QueuedOptions()
            if opts.auto_raise_hand:
                await self._raise_hand_for(record)
        return record

    async def _raise_hand_for(self, record: PendingResponse) -> None:
        self._transition(record, STATUS_HAND_RAISED)
        try:
            ok = await self._raise_hand()
        except Exception:
            logger.exception("Raising hand failed")
            ok = False
        if not ok:
            logger.warning("Could not raise hand for %s; response stays pending", record.id)
            self._transition(record, STATUS_PENDING)
            return
        self.hand_raised = True
        self._emit(EVENT_HAND_RAISED, record.id)
        logger.info("Hand raised for response %s", record.id)

    # ----- delivery -----

    async def deliver_now(self, text: str, channel: str) -> bool:
        """Sends text on `channel`. Error-like text goes to the log and chat only."""
        error_like = is_error_response(text)
        tasks = []
        if channel_includes_speech(channel):
            if error_like:
                logger.warning("Error-like agent response will not be spoken")
            else:
                tasks.append(self._safe_send(self._speak, prepare_for_speech(text), "speech"))
        if channel_includes_chat(channel):
            tasks.append(self._safe_send(self._send_chat, format_for_chat(text), "chat"))

        self.conversation.add_assistant(text)
        if not tasks:
            return False
        results = await asyncio.gather(*tasks)
        delivered = any(results)
        if delivered and self.analytics is not None:
            self.analytics.track_response(text)
        return delivered

    @staticmethod
    async def _safe_send(sender: TextSender, text: str, label: str) -> bool:
        try:
            return bool(await sender(text))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Delivering response via %s failed", label)
            return False

    async def _send_record(self, record: PendingResponse) -> bool:
        if not self._transition(record, STATUS_SENDING):
            return False
        self._emit(EVENT_RESPONSE_SENDING, record.id, {"channel": record.response_channel})
        ok = await self.deliver_now(record.response_text, record.response_channel)
        if ok:
            self._transition(record, STATUS_SENT)
            self._emit(EVENT_RESPONSE_SENT, record.id)
            logger.info("Response %s delivered via %s", record.id, record.response_channel)
        else:
            self._transition(record, STATUS_FAILED, error="delivery failed")
            self._emit(EVENT_RESPONSE_FAILED, record.id, {"error": "delivery failed"})
        return ok

    async def approve_response(self, response_id: str) -> bool:
        record = self._records.get(response_id)
        if record is None:
            logger.warning("approve: unknown response %s", response_id)
            return False
        if record.status == STATUS_HAND_RAISED:
            # Approving a queued response delivers it without waiting for the hand.
            self._emit(EVENT_RESPONSE_APPROVED, record.id)
            ok = await self._send_record(record)
            await self.lower_hand_if_idle()
            return ok
        if not self._transition(record, STATUS_APPROVED):
            return False
        self._emit(EVENT_RESPONSE_APPROVED, record.id)
        return await self._send_record(record)

    async def lower_hand_if_idle(self) -> bool:
        """Lowers our raised hand once no queued response is waiting on it."""
        if not self.hand_raised or self.next_pending_for_hand() is not None:
            return False
        self.hand_raised = False
        try:
            ok = bool(await self._lower_hand())
        except Exception:
            logger.exception("Lowering hand failed")
            return False
        if ok:
            self._emit(EVENT_HAND_LOWERED)
        return ok

    def reject_response(self, response_id: str) -> bool:
        record = self._records.get(response_id)
        if record is None:
            logger.warning("reject: unknown response %s", response_id)
            return False
        if record.status == STATUS_HAND_RAISED:
            self._transition(record, STATUS_PENDING)
        if not self._transition(record, STATUS_REJECTED):
            return False
        self._emit(EVENT_RESPONSE_REJECTED, record.id)
        return True

    async def on_hand_raised_state_changed(self, raised: bool) -> PendingResponse | None:
        was_raised = self.hand_raised
        self.hand_raised = bool(raised)
        if raised or not was_raised:
            return None

        self._emit(EVENT_HAND_LOWERED)
        record = self.next_pending_for_hand()
        if record is None:
            return None
        trigger = self.pattern.trigger_config(record.trigger_source)
        opts = trigger.queued_options or QueuedOptions()
        if not opts.speak_on_lower:
            self._transition(record, STATUS_PENDING)
            logger.info("Hand lowered; response %s left for manual approval", record.id)
        else:
            logger.info("Hand lowered, delivering queued response %s", record.id)
            await self._send_record(record)
        await self._reraise_for_waiting()
        return record

    async def _reraise_for_waiting(self) -> None:
        # Each lowered event releases one queued response; the rest need the hand back up.
        waiting = self.next_pending_for_hand()
        if waiting is None or self.hand_raised:
            return
        try:
            ok = await self._raise_hand()
        except Exception:
            logger.exception("Raising hand failed")
            ok = False
        if not ok:
            logger.warning("Could not re-raise hand; queued responses stay pending")
            while waiting is not None:
                self._transition(waiting, STATUS_PENDING)
                waiting = self.next_pending_for_hand()
            return
        self.hand_raised = True
        self._emit(EVENT_HAND_RAISED, waiting.id)
        logger.info("Hand raised again for response %s", waiting.id)

    def next_pending_for_hand(self) -> PendingResponse | None:
        for record in self._records.values():
            if record.status == STATUS_HAND_RAISED and record.behavior_mode == MODE_QUEUED:
                return record
        return None

    # ----- store -----

    def _transition(self, record: PendingResponse, status: str, *, error: str | None = None) -> bool:
        allowed = ALLOWED_TRANSITIONS.get(record.status, set())
        if status not in allowed:
            logger.warning("Rejected transition %s -> %s for %s", record.status, status, record.id)
            return False
        record.status = status
        record.status_changed_at = time.time()
        if error is not None:
            record.error_message = error
        return True

    def _store(self, record: PendingResponse) -> None:
        while len(self._records) >= self.max_records:
            victim = next((r for r in self._records.values() if r.is_completed), None)
            if victim is None:
                victim = next(iter(self._records.values()))
                logger.warning("Pending store full; dropping oldest open response %s", victim.id)
            del self._records[victim.id]
        self._records[record.id] = record

    def get(self, response_id: str) -> PendingResponse | None:
        return self._records.get(response_id)

    def get_pending(self, status: str | None = None) -> list[PendingResponse]:
        if status:
            return [r for r in self._records.values() if r.status == status]
        return [r for r in self._records.values() if not r.is_completed]

    def all_records(self) -> list[PendingResponse]:
        return list(self._records.values())

    def dismiss_stale(self, max_age_s: float) -> int:
        now = time.time()
        count = 0
        for record in self._records.values():
            if record.status in (STATUS_PENDING, STATUS_APPROVED, STATUS_HAND_RAISED):
                if now - record.created_at > max_age_s and self._transition(record, STATUS_DISMISSED):
                    count += 1
        if count:
            logger.info("Dismissed %s stale pending response(s)", count)
        return count

    def clear_completed(self, retention_s: float = HISTORY_RETENTION_S) -> int:
        now = time.time()
        stale = [
            r.id for r in self._records.values() if r.is_completed and now - r.status_changed_at > retention_s
        ]
        for rid in stale:
            del self._records[rid]
        return len(stale)

    def queue_stats(self) -> dict[str, int]:
        stats = {s: 0 for s in ALLOWED_TRANSITIONS}
        for record in self._records.values():
            stats[record.status] = stats.get(record.status, 0) + 1
        stats["total"] = len(self._records)
        stats["open"] = len(self.get_pending())
        return stats

    # ----- events -----

    def add_event_listener(self, callback: EventListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _emit(self, event_type: str, response_id: str | None = None, data: dict | None = None) -> None:
        event = BehaviorEvent(type=event_type, response_id=response_id, data=dict(data or {}))
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception:
                logger.exception("Behavior event listener failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)

    # ----- lifecycle -----

    def reset(self) -> None:
        self._records.clear()
        self.hand_raised = False

    def dispose(self) -> None:
        self.reset()
        self._listeners.clear()
        for task in list(self._listener_tasks):
            task.cancel()
        self._listener_tasks.clear()
        self._disposed = True
