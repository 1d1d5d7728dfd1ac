from __future__ import annotations

import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class _CaptionEntry:
    speaker: str
    text: str
    timestamp: float


@dataclass
class _QuestionEntry:
    speaker: str
    text: str
    timestamp: float
    response_time_s: Optional[float] = None


@dataclass
class _ResponseEntry:
    text: str
    timestamp: float


@dataclass
class CallStats:
    total_duration_s: int = 0
    total_captions: int = 0
    total_questions: int = 0
    total_responses: int = 0
    participant_count: int = 0
    average_response_time_s: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _clock_str(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%H:%M:%S")


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


class CallAnalytics:
    def __init__(self, llm_client=None, *, clock=time.time):
        self.llm_client = llm_client
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self.call_start: float | None = None
        self.call_end: float | None = None
        self._captions: list[_CaptionEntry] = []
        self._questions: list[_QuestionEntry] = []
        self._responses: list[_ResponseEntry] = []
        self._participants: dict[str, None] = {}

    @property
    def is_tracking(self) -> bool:
        return self.call_start is not None and self.call_end is None

    def start_call(self) -> None:
        if self.is_tracking:
            logger.debug("Call analytics already started")
            return
        self.reset()
        self.call_start = self._clock()

    def end_call(self) -> None:
        if self.call_start is None:
            logger.warning("Call analytics end requested but no call was started")
            return
        if self.call_end is not None:
            return
        self.call_end = self._clock()
        stats = self.get_stats()
        logger.info(
            "Call ended duration=%ss captions=%s questions=%s responses=%s",
            stats.total_duration_s,
            stats.total_captions,
            stats.total_questions,
            stats.total_responses,
        )

    def track_caption(self, speaker: str, text: str, *, is_final: bool = True, timestamp: float | None = None) -> None:
        if not self.is_tracking or not is_final or not (text or "").strip():
            return
        self._captions.append(_CaptionEntry(speaker, text, self._clock() if timestamp is None else timestamp))
        self._participants.setdefault(speaker, None)

    def track_question(self, speaker: str, text: str, timestamp: float | None = None) -> None:
        self._questions.append(_QuestionEntry(speaker, text, self._clock() if timestamp is None else timestamp))

    def track_response(self, text: str, question_index: int | None = None, timestamp: float | None = None) -> None:
        ts = self._clock() if timestamp is None else timestamp
        self._responses.append(_ResponseEntry(text, ts))
        if question_index is not None and 0 <= question_index < len(self._questions):
            q = self._questions[question_index]
            q.response_time_s = ts - q.timestamp
        elif self._questions and self._questions[-1].response_time_s is None:
            q = self._questions[-1]
            q.response_time_s = ts - q.timestamp

    def get_stats(self) -> CallStats:
        duration = 0
        if self.call_start is not None:
            end = self.call_end if self.call_end is not None else self._clock()
            duration = int(end - self.call_start)
        times = [q.response_time_s for q in self._questions if q.response_time_s is not None]
        avg = int(sum(times) / len(times)) if times else 0
        return CallStats(
            total_duration_s=duration,
            total_captions=len(self._captions),
            total_questions=len(self._questions),
            total_responses=len(self._responses),
            participant_count=len(self._participants),
            average_response_time_s=avg,
        )

    def formatted_duration(self) -> str:
        return format_duration(self.get_stats().total_duration_s)

    @property
    def participants(self) -> list[str]:
        return list(self._participants.keys())

    def get_top_questions(self, limit: int = 5) -> list[dict]:
        out = []
        for idx, q in enumerate(self._questions[: max(0, int(limit))]):
            out.append(
                {
                    "number": idx + 1,
                    "speaker": q.speaker,
                    "text": q.text,
                    "response_time": f"{q.response_time_s:.1f}s" if q.response_time_s else "N/A",
                }
            )
        return out

    def get_transcript(self) -> str:
        return "\n".join(f"[{_clock_str(c.timestamp)}] {c.speaker}: {c.text}" for c in self._captions)

    def basic_summary(self) -> str:
        stats = self.get_stats()
        parts = ["## Meeting Overview\n\n"]
        if stats.total_captions == 0:
            parts.append("*No conversation data was captured during this call.*\n\n")
            return "".join(parts)

        parts.append(
            f"This meeting lasted **{format_duration(stats.total_duration_s)}** with "
            f"**{stats.participant_count}** participant(s). "
            f"There were **{stats.total_captions}** conversational exchanges, "
            f"**{stats.total_questions}** questions asked to the agent, "
            f"and **{stats.total_responses}** responses provided.\n\n"
        )
        if stats.average_response_time_s > 0:
            parts.append(f"*Average agent response time: {stats.average_response_time_s}s*\n\n")

        if self._participants:
            parts.append("### Participants\n\n")
            parts.append("  \n".join(f"- {p}" for p in self._participants))
            parts.append("\n\n")

        if self._questions:
            parts.append("### Questions Asked\n\n")
            for i, q in enumerate(self._questions[:10]):
                rt = f" *({q.response_time_s:.1f}s response)*" if q.response_time_s else ""
                parts.append(f'{i + 1}. **{q.speaker}**: "{q.text}"{rt}\n')
            if len(self._questions) > 10:
                parts.append(f"\n*...and {len(self._questions) - 10} more questions*\n")
            parts.append("\n")

        if self._responses:
            parts.append("### Agent Activity\n\n")
            parts.append(f"The AI agent provided **{stats.total_responses}** response(s) during this call.\n\n")
            parts.append("**Sample Responses:**\n\n")
            for i, r in enumerate(self._responses[:3]):
                preview = r.text if len(r.text) <= 150 else r.text[:150] + "..."
                parts.append(f'> {i + 1}. "{preview}"\n\n')

        parts.append("---\n\n*Summary generated automatically.*\n")
        return "".join(parts)

    async def generate_summary(self) -> str:
        if self.llm_client is None:
            return self.basic_summary()

        stats = self.get_stats()
        conversation = "\n".join(f"{c.speaker}: {c.text}" for c in self._captions[-50:])
        questions = "\n".join(
            f'{i + 1}. [{q.speaker}] at {_clock_str(q.timestamp)}: "{q.text}"' for i, q in enumerate(self._questions)
        )
        responses = "\n\n".join(
            f'{i + 1}. at {_clock_str(r.timestamp)}: "{r.text}"' for i, r in enumerate(self._responses)
        )
        system_prompt = (
            "You are an expert meeting analyst. Write a structured markdown summary of the call with "
            "these ## sections: Executive Summary, Key Topics Discussed, Questions Asked to Agent, "
            "Pending Items, Follow-up Actions, Notable Moments. Use bullet points for lists. "
            "If no questions were asked, say so."
        )
        user_prompt = (
            "CALL STATISTICS:\n"
            f"- Duration: {format_duration(stats.total_duration_s)}\n"
            f"- Participants: {stats.participant_count} ({', '.join(self._participants)})\n"
            f"- Conversational exchanges: {stats.total_captions}\n"
            f"- Questions directed to agent: {stats.total_questions}\n"
            f"- Agent responses delivered: {stats.total_responses}\n"
            f"- Average response time: {str(stats.average_response_time_s) + 's' if stats.average_response_time_s else 'N/A'}\n\n"
            f"TRANSCRIPT:\n{conversation or '(empty)'}\n\n"
            f"QUESTIONS TO AGENT:\n{questions or 'No questions recorded'}\n\n"
            f"AGENT RESPONSES:\n{responses or 'No responses recorded'}"
        )
        try:
            summary = await self.llm_client.complete_text(system_prompt, user_prompt, temperature=0.7, max_tokens=2500)
        except Exception as e:
            logger.error(f"Summary generation failed: {e}")
            return self.basic_summary()
        if not summary:
            logger.warning("LLM returned an empty summary, using basic summary")
            return self.basic_summary()
        return summary

    async def report(self, *, include_summary: bool = True) -> dict:
        stats = self.get_stats()
        return {
            "stats": {
                "duration": format_duration(stats.total_duration_s),
                **stats.to_dict(),
                "participant_list": self.participants,
            },
            "summary": (await self.generate_summary()) if include_summary else "",
            "top_questions": self.get_top_questions(),
            "transcript": self.get_transcript(),
            "call_start": self.call_start,
            "call_end": self.call_end,
        }
