from __future__ import annotations

import logging
from dataclasses import replace

from meeting_agent.models import (
    BehaviorPattern,
    ControlledOptions,
    QueuedOptions,
    TriggerConfig,
    CHANNEL_CHAT,
    CHANNEL_SPEECH,
    MODE_CONTROLLED,
    MODE_IMMEDIATE,
    MODE_QUEUED,
)

logger = logging.getLogger(__name__)

DEFAULT_PATTERN_ID = "supervised"


def _disabled() -> TriggerConfig:
    return TriggerConfig(enabled=False, response_channel=CHANNEL_CHAT, behavior_mode=MODE_IMMEDIATE)


def _immediate(channel: str) -> TriggerConfig:
    return TriggerConfig(enabled=True, response_channel=channel, behavior_mode=MODE_IMMEDIATE)


def _controlled(channel: str) -> TriggerConfig:
    return TriggerConfig(
        enabled=True,
        response_channel=channel,
        behavior_mode=MODE_CONTROLLED,
        controlled_options=ControlledOptions(show_preview=True),
    )


def _queued_voice() -> TriggerConfig:
    return TriggerConfig(
        enabled=True,
        response_channel=CHANNEL_SPEECH,
        behavior_mode=MODE_QUEUED,
        queued_options=QueuedOptions(auto_raise_hand=True, speak_on_lower=True),
    )


def _build_presets() -> dict[str, BehaviorPattern]:
    rows = [
        (
            "autonomous-voice",
            "Autonomous (Voice)",
            "Agent responds immediately via speech to any mention. No human approval needed.",
            _immediate(CHANNEL_SPEECH),
            _immediate(CHANNEL_SPEECH),
        ),
        (
            "autonomous-chat",
            "Autonomous (Chat)",
            "Agent responds immediately via chat to any mention. No human approval needed.",
            _immediate(CHANNEL_CHAT),
            _immediate(CHANNEL_CHAT),
        ),
        (
            "autonomous-mixed",
            "Autonomous (Mixed)",
            "Agent responds in the same channel as the trigger. Voice to voice, chat to chat.",
            _immediate(CHANNEL_SPEECH),
            _immediate(CHANNEL_CHAT),
        ),
        (
            "supervised",
            "Supervised",
            "All responses require controller approval before being sent.",
            _controlled(CHANNEL_SPEECH),
            _controlled(CHANNEL_CHAT),
        ),
        (
            "polite-queue-voice",
            "Polite Queue (Voice)",
            "Agent raises hand when ready to speak. Speaks when hand is lowered (acknowledged).",
            _queued_voice(),
            _queued_voice(),
        ),
        (
            "polite-queue-mixed",
            "Polite Queue (Mixed)",
            "Voice mentions queue with hand raise. Chat mentions respond immediately.",
            _queued_voice(),
            _immediate(CHANNEL_CHAT),
        ),
        (
            "chat-only-supervised",
            "Chat Only (Supervised)",
            "Only responds to chat mentions. Requires controller approval.",
            _disabled(),
            _controlled(CHANNEL_CHAT),
        ),
        (
            "voice-only-autonomous",
            "Voice Only (Autonomous)",
            "Only responds to voice mentions. Responds immediately via speech.",
            _immediate(CHANNEL_SPEECH),
            _disabled(),
        ),
        (
            "silent-observer",
            "Silent Observer",
            "Agent listens to all mentions but does not respond.",
            _disabled(),
            _disabled(),
        ),
    ]
    out: dict[str, BehaviorPattern] = {}
    for pid, name, desc, caption, chat in rows:
        out[pid] = BehaviorPattern(
            id=pid,
            name=name,
            description=desc,
            is_preset=True,
            caption_mention=caption,
            chat_mention=chat,
        )
    return out


PRESET_PATTERNS: dict[str, BehaviorPattern] = _build_presets()


def list_patterns(custom: list | None = None) -> list[BehaviorPattern]:
    patterns = dict(PRESET_PATTERNS)
    for item in custom or []:
        if not isinstance(item, dict):
            continue
        try:
            p = BehaviorPattern.from_dict(item)
        except Exception:
            logger.exception("Skipping malformed custom pattern")
            continue
        # Presets cannot be shadowed by custom entries.
        if not p.id or p.id in PRESET_PATTERNS:
            continue
        patterns[p.id] = p
    return list(patterns.values())


def get_pattern(pattern_id: str | None, custom: list | None = None) -> BehaviorPattern:
    pid = (pattern_id or "").strip()
    for p in list_patterns(custom):
        if p.id == pid:
            # Callers get their own copy so runtime edits never leak into presets.
            return replace(p)
    if pid:
        logger.warning("Unknown behavior pattern %r, using %s", pid, DEFAULT_PATTERN_ID)
    return replace(PRESET_PATTERNS[DEFAULT_PATTERN_ID])
