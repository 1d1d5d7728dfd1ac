from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any


TRIGGER_CAPTION = "caption-mention"
TRIGGER_CHAT = "chat-mention"
TRIGGER_SOURCES = {TRIGGER_CAPTION, TRIGGER_CHAT}

CHANNEL_CHAT = "chat"
CHANNEL_SPEECH = "speech"
CHANNEL_BOTH = "both"
RESPONSE_CHANNELS = {CHANNEL_CHAT, CHANNEL_SPEECH, CHANNEL_BOTH}

MODE_IMMEDIATE = "immediate"
MODE_CONTROLLED = "controlled"
MODE_QUEUED = "queued"
BEHAVIOR_MODES = {MODE_IMMEDIATE, MODE_CONTROLLED, MODE_QUEUED}

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_HAND_RAISED = "hand-raised"
STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_DISMISSED = "dismissed"
COMPLETED_STATUSES = {STATUS_SENT, STATUS_FAILED, STATUS_REJECTED, STATUS_DISMISSED}


def now_ms() -> float:
    return time.time() * 1000.0


def channel_includes_speech(channel: str) -> bool:
    return channel in (CHANNEL_SPEECH, CHANNEL_BOTH)


def channel_includes_chat(channel: str) -> bool:
    return channel in (CHANNEL_CHAT, CHANNEL_BOTH)


@dataclass
class CaptionFragment:
    id: str
    speaker: str
    text: str
    timestamp_ms: float = field(default_factory=now_ms)
    is_final: bool = True
    speaker_id: Optional[str] = None


@dataclass
class AggregatedCaption:
    speaker: str
    text: str
    caption_ids: List[str]
    start_time: float
    end_time: float
    speaker_id: Optional[str] = None


@dataclass
class MentionResult:
    is_mentioned: bool = False
    matched_variation: Optional[str] = None
    confidence: float = 0.0
    fuzzy_match: bool = False
    llm_enhanced: bool = False
    indirect_reference: bool = False


@dataclass
class PendingMention:
    speaker: str
    caption_text: str
    matched_variation: str
    timestamp: float
    speaker_id: Optional[str] = None
    caption_ids: List[str] = field(default_factory=list)
    start_time: float = 0.0


@dataclass
class ChatMessage:
    id: str
    sender_display_name: str
    content: str
    is_own: bool = False
    created_on: float = field(default_factory=time.time)
    sender_id: Optional[str] = None


@dataclass
class IntentResult:
    should_respond: bool
    confidence: float
    reason: str
    is_end_of_conversation: bool = False


@dataclass
class QueuedOptions:
    auto_raise_hand: bool = True
    speak_on_lower: bool = True


@dataclass
class ControlledOptions:
    show_preview: bool = True


@dataclass
class TriggerConfig:
    enabled: bool = False
    response_channel: str = CHANNEL_CHAT
    behavior_mode: str = MODE_IMMEDIATE
    queued_options: Optional[QueuedOptions] = None
    controlled_options: Optional[ControlledOptions] = None

    @classmethod
    def from_dict(cls, data: Any) -> "TriggerConfig":
        if not isinstance(data, dict):
            return cls()
        channel = str(data.get("response_channel") or CHANNEL_CHAT).strip().lower()
        mode = str(data.get("behavior_mode") or MODE_IMMEDIATE).strip().lower()
        queued = data.get("queued_options")
        controlled = data.get("controlled_options")
        return cls(
            enabled=bool(data.get("enabled", False)),
            response_channel=channel if channel in RESPONSE_CHANNELS else CHANNEL_CHAT,
            behavior_mode=mode if mode in BEHAVIOR_MODES else MODE_IMMEDIATE,
            queued_options=(
                QueuedOptions(
                    auto_raise_hand=bool(queued.get("auto_raise_hand", True)),
                    speak_on_lower=bool(queued.get("speak_on_lower", True)),
                )
                if isinstance(queued, dict)
                else None
            ),
            controlled_options=(
                ControlledOptions(show_preview=bool(controlled.get("show_preview", True)))
                if isinstance(controlled, dict)
                else None
            ),
        )


@dataclass
class BehaviorPattern:
    id: str
    name: str
    caption_mention: TriggerConfig
    chat_mention: TriggerConfig
    description: str = ""
    is_preset: bool = False

    def trigger_config(self, source: str) -> TriggerConfig:
        return self.caption_mention if source == TRIGGER_CAPTION else self.chat_mention

    @property
    def is_autonomous(self) -> bool:
        return self.id.startswith("autonomous")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BehaviorPattern":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or data.get("id") or ""),
            description=str(data.get("description") or ""),
            is_preset=False,
            caption_mention=TriggerConfig.from_dict(data.get("caption_mention")),
            chat_mention=TriggerConfig.from_dict(data.get("chat_mention")),
        )


@dataclass
class PendingResponse:
    trigger_source: str
    trigger_content: str
    trigger_author: str
    response_text: str
    response_channel: str
    behavior_mode: str
    id: str = field(default_factory=lambda: f"pr-{uuid.uuid4().hex[:12]}")
    status: str = STATUS_PENDING
    created_at: float = field(default_factory=time.time)
    status_changed_at: float = field(default_factory=time.time)
    error_message: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TriggerContext:
    source: str
    content: str
    author: str
    author_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    recent_captions: List[str] = field(default_factory=list)


@dataclass
class AgentReply:
    text: str
    conversation_id: Optional[str] = None
