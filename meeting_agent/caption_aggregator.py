from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from meeting_agent.mention import MentionDetector, contains_question_or_request
from meeting_agent.models import (
    AggregatedCaption,
    CaptionFragment,
    MentionResult,
    PendingMention,
    now_ms,
)

logger = logging.getLogger(__name__)

AggregatedCallback = Callable[[AggregatedCaption, MentionResult], Any]
PendingTimeoutCallback = Callable[[PendingMention], Any]


@dataclass
class AggregatorConfig:
    # Max gap between fragments of one speaker that still belong to the same utterance.
    aggregation_window_s: float = 2.0
    # How long a bare mention ("Hey Jenny...") waits for its question.
    pending_mention_timeout_s: float = 3.5


@dataclass
class _OpenAggregate:
    speaker: str
    speaker_id: Optional[str]
    ids: list[str] = field(default_factory=list)
    texts: list[str] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0

    def add(self, frag: CaptionFragment) -> None:
        if self.ids and self.ids[-1] == frag.id:
            # Revised partial caption: replace rather than append.
            self.texts[-1] = frag.text
        else:
            self.ids.append(frag.id)
            self.texts.append(frag.text)
        if not self.start_time:
            self.start_time = frag.timestamp_ms
        self.end_time = frag.timestamp_ms

    def build(self) -> AggregatedCaption:
        text = " ".join(" ".join(t.split()) for t in self.texts if t and t.strip())
        return AggregatedCaption(
            speaker=self.speaker,
            text=text,
            caption_ids=list(self.ids),
            start_time=self.start_time,
            end_time=self.end_time,
            speaker_id=self.speaker_id,
        )


class CaptionAggregator:
    """
    Merges streaming caption fragments into per-speaker utterances.

    Finalized utterances are run through the mention detector before being handed to
    the aggregated-caption callback. A mention without a question is parked as a
    pending mention; it is combined with the speaker's next question, or reported
    through the pending-timeout callback once `pending_mention_timeout_s` elapses.
    Timers only run when an asyncio loop is running; without one, call `flush()`.
    """

    def __init__(self, detector: MentionDetector, cfg: AggregatorConfig | None = None):
        self.detector = detector
        self.cfg = cfg or AggregatorConfig()
        self._open: dict[str, _OpenAggregate] = {}
        self._silence_timers: dict[str, asyncio.TimerHandle] = {}
        self._last_speaker: str | None = None
        self._pending: PendingMention | None = None
        self._pending_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._on_aggregated: AggregatedCallback | None = None
        self._on_pending_timeout: PendingTimeoutCallback | None = None
        self._disposed = False

    def set_on_aggregated_caption(self, callback: AggregatedCallback | None) -> None:
        self._on_aggregated = callback

    def set_on_pending_mention_timeout(self, callback: PendingTimeoutCallback | None) -> None:
        self._on_pending_timeout = callback

    @property
    def pending_mention(self) -> PendingMention | None:
        return self._pending

    def has_pending_mention(self) -> bool:
        return self._pending is not None

    @staticmethod
    def contains_question_or_request(text: str) -> bool:
        return contains_question_or_request(text)

    @staticmethod
    def _loop() -> asyncio.AbstractEventLoop | None:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def add_caption(self, fragment: CaptionFragment) -> None:
        if self._disposed:
            return
        speaker = (fragment.speaker or "").strip() or "Unknown"
        if not (fragment.text or "").strip():
            return

        # A different speaker closes everyone else's utterance.
        if self._last_speaker is not None and self._last_speaker != speaker:
            for other in [s for s in self._open if s != speaker]:
                self._finalize(other)
        self._last_speaker = speaker

        window_ms = float(self.cfg.aggregation_window_s) * 1000.0
        current = self._open.get(speaker)
        if current is not None and (fragment.timestamp_ms - current.end_time) >= window_ms:
            self._finalize(speaker)
            current = None
        if current is None:
            current = _OpenAggregate(speaker=speaker, speaker_id=fragment.speaker_id)
            self._open[speaker] = current
        current.add(fragment)
        self._arm_silence_timer(speaker)

    def flush(self) -> None:
        for speaker in list(self._open.keys()):
            self._finalize(speaker)

    async def drain(self) -> None:
        """Waits for callback tasks scheduled by finalized utterances."""
        while True:
            running = [t for t in self._tasks if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    def reset(self) -> None:
        for handle in self._silence_timers.values():
            handle.cancel()
        self._silence_timers.clear()
        self._open.clear()
        self._last_speaker = None
        self._clear_pending()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def dispose(self) -> None:
        self.reset()
        self._on_aggregated = None
        self._on_pending_timeout = None
        self._disposed = True

    def _arm_silence_timer(self, speaker: str) -> None:
        loop = self._loop()
        if loop is None:
            return
        prev = self._silence_timers.pop(speaker, None)
        if prev is not None:
            prev.cancel()
        self._silence_timers[speaker] = loop.call_later(
            float(self.cfg.aggregation_window_s), self._on_silence, speaker
        )

    def _on_silence(self, speaker: str) -> None:
        self._silence_timers.pop(speaker, None)
        if speaker in self._open:
            self._finalize(speaker)

    def _finalize(self, speaker: str) -> None:
        handle = self._silence_timers.pop(speaker, None)
        if handle is not None:
            handle.cancel()
        agg = self._open.pop(speaker, None)
        if agg is None or not agg.ids:
            return
        self._process(agg.build())

    def _process(self, aggregated: AggregatedCaption) -> None:
        mention = self.detector.detect_mention(aggregated.text)
        has_question = contains_question_or_request(aggregated.text)

        if mention.is_mentioned:
            if has_question:
                self._clear_pending()
                self._emit(aggregated, mention)
            else:
                self._set_pending(
                    PendingMention(
                        speaker=aggregated.speaker,
                        caption_text=aggregated.text,
                        matched_variation=mention.matched_variation or "",
                        timestamp=now_ms(),
                        speaker_id=aggregated.speaker_id,
                        caption_ids=list(aggregated.caption_ids),
                        start_time=aggregated.start_time,
                    )
                )
            return

        pending = self._pending
        if pending is not None and pending.speaker == aggregated.speaker:
            if not has_question:
                logger.debug("Pending mention still waiting for a question from %s", aggregated.speaker)
                return
            combined_text = f"{pending.caption_text} {aggregated.text}"
            combined = AggregatedCaption(
                speaker=aggregated.speaker,
                text=combined_text,
                caption_ids=[*pending.caption_ids, *aggregated.caption_ids],
                start_time=pending.start_time or aggregated.start_time,
                end_time=aggregated.end_time,
                speaker_id=aggregated.speaker_id,
            )
            self._clear_pending()
            self._emit(combined, self.detector.detect_mention(combined_text))
            return

        self._emit(aggregated, mention)

    def _set_pending(self, pending: PendingMention) -> None:
        self._clear_pending()
        self._pending = pending
        logger.info("Pending mention from %s, waiting for follow-up question", pending.speaker)
        loop = self._loop()
        if loop is not None:
            self._pending_timer = loop.call_later(
                float(self.cfg.pending_mention_timeout_s), self._on_pending_expired
            )

    def _clear_pending(self) -> None:
        if self._pending_timer is not None:
            self._pending_timer.cancel()
            self._pending_timer = None
        self._pending = None

    def _on_pending_expired(self) -> None:
        self._pending_timer = None
        pending = self._pending
        self._pending = None
        if pending is None:
            return
        logger.info("Pending mention timed out for %s, processing anyway", pending.speaker)
        if self._on_pending_timeout is not None:
            self._dispatch(self._on_pending_timeout, pending)

    def _emit(self, aggregated: AggregatedCaption, mention: MentionResult) -> None:
        if self._on_aggregated is None:
            return
        self._dispatch(self._on_aggregated, aggregated, mention)

    def _dispatch(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Caption aggregation callback failed")
            return
        if not inspect.isawaitable(result):
            return
        loop = self._loop()
        if loop is None:
            logger.warning("Dropping async caption callback: no running event loop")
            if inspect.iscoroutine(result):
                result.close()
            return
        task = asyncio.ensure_future(result)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Caption aggregation callback raised: %s", exc, exc_info=exc)
