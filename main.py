import asyncio
import uvicorn
import json
import os
import socket
import sys
import logging
import uuid
from pathlib import Path
from typing import Optional, Any
import time
from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager, suppress

from meeting_agent.agent_providers import AGENT_PROVIDER_TYPES, AgentConfigError, AgentProvider, create_agent_provider
from meeting_agent.analytics import CallAnalytics
from meeting_agent.behavior import BehaviorEvent
from meeting_agent.caption_aggregator import AggregatorConfig, CaptionAggregator
from meeting_agent.conversation import ConversationLog
from meeting_agent.intent import IntentClassifier, IntentConfig
from meeting_agent.llm import LLMClient
from meeting_agent.meeting_bridge import BridgeSpeechProvider, WebSocketMeetingBridge
from meeting_agent.mention import MentionConfig, MentionDetector
from meeting_agent.models import CaptionFragment, ChatMessage, now_ms
from meeting_agent.orchestrator import MeetingOrchestrator, OrchestratorConfig
from meeting_agent.patterns import DEFAULT_PATTERN_ID, PRESET_PATTERNS, get_pattern, list_patterns
from meeting_agent.session import SessionTracker
from starlette.websockets import WebSocketDisconnect

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Main")
important_logger = logging.getLogger("Main.IMPORTANT")

_IMPORTANT_LAST_BY_KEY: dict[str, float] = {}
_NOISY_LOGGERS = (
    "httpx",
    "openai",
    "meeting_agent.caption_aggregator",
    "uvicorn.access",
)


def _safe_log_value(value: Any, *, max_len: int = 96) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    s = str(value).strip()
    if not s:
        return "-"
    s = " ".join(s.split())
    if len(s) > max_len:
        s = s[: max_len - 3] + "..."
    return s


def log_important(
    event: str,
    *,
    level: int = logging.INFO,
    dedupe_key: str | None = None,
    dedupe_window_s: float = 0.0,
    **fields: Any,
) -> None:
    try:
        ev = _safe_log_value(event, max_len=64)
        if dedupe_key and dedupe_window_s > 0:
            token = f"{ev}|{dedupe_key}"
            now_ts = time.time()
            prev_ts = _IMPORTANT_LAST_BY_KEY.get(token, 0.0)
            if now_ts - prev_ts < float(dedupe_window_s):
                return
            _IMPORTANT_LAST_BY_KEY[token] = now_ts

        if fields:
            parts = [f"{k}={_safe_log_value(v)}" for k, v in sorted(fields.items())]
            important_logger.log(level, f"IMPORTANT {ev} | " + " ".join(parts))
        else:
            important_logger.log(level, f"IMPORTANT {ev}")
    except Exception:
        logger.exception("Failed to emit important log")


# Global State
llm_client: LLMClient | None = None
bridge = WebSocketMeetingBridge()
speech = BridgeSpeechProvider(bridge)
orchestrator: MeetingOrchestrator | None = None
_agent_connect_task: asyncio.Task | None = None


# ============================================
# CONFIGURATION
# ============================================

DEFAULT_CONFIG = {
    # API (LLM used for mention disambiguation, intent and call summaries)
    "api_provider": "openrouter",  # "openrouter", "openai", "azure_openai", "gemini", "github_models", "custom"
    "api_key": "",
    "base_url": "https://openrouter.ai/api/v1",
    "model": "openai/gpt-4o-mini",
    "api_extra_headers": {},  # Optional extra headers passed to the OpenAI-compatible client.
    "api_fallback_enabled": True,
    # Ordered fallback routes (each entry mirrors primary API fields).
    # Example:
    # [{"provider":"openai","api_key":"...","base_url":"https://api.openai.com/v1","model":"gpt-4o-mini","api_extra_headers":{}}]
    "api_routes": [],
    "verbose_logging": False,
    # Agent identity
    "agent_display_name": "AI Agent",
    "agent_name_variations": [],
    # Behavior
    "behavior_pattern": DEFAULT_PATTERN_ID,
    "custom_patterns": [],
    "welcome_message_enabled": True,
    # Caption aggregation
    "caption_aggregation_window_seconds": 2.0,
    "pending_mention_timeout_seconds": 3.5,
    # Detection thresholds
    "fuzzy_match_threshold": 0.75,
    "llm_ambiguous_threshold": 0.85,
    "llm_min_confidence_threshold": 0.5,
    "autonomous_confidence_threshold": 0.7,
    "llm_mention_detection_enabled": True,
    "llm_intent_detection_enabled": True,
    # Session & guards
    "session_idle_timeout_seconds": 120,
    "message_dedupe_window_seconds": 2.0,
    "stale_pending_seconds": 600,
    # Agent backend. "type" is one of "copilot-studio", "copilot-studio-anon", "azure-foundry".
    "agent_provider": {},
    "agent_retry_delay_seconds": 4.0,
}

# Settings that require rebuilding the meeting engine when they change.
_ENGINE_KEYS = (
    "agent_display_name",
    "agent_name_variations",
    "custom_patterns",
    "caption_aggregation_window_seconds",
    "pending_mention_timeout_seconds",
    "fuzzy_match_threshold",
    "llm_ambiguous_threshold",
    "llm_min_confidence_threshold",
    "autonomous_confidence_threshold",
    "llm_mention_detection_enabled",
    "llm_intent_detection_enabled",
    "session_idle_timeout_seconds",
    "message_dedupe_window_seconds",
    "stale_pending_seconds",
    "agent_provider",
    "agent_retry_delay_seconds",
    "welcome_message_enabled",
)

_AGENT_PROVIDER_FIELDS = (
    "direct_line_secret",
    "direct_line_base_url",
    "client_id",
    "client_secret",
    "tenant_id",
    "environment_id",
    "bot_id",
    "token_endpoint",
    "project_endpoint",
    "agent_name",
)


def _get_config_path() -> Path:
    configured = os.environ.get("AI_MEETING_AGENT_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()

    base_dir = os.environ.get("APPDATA") or str(Path.home())
    config_dir = Path(base_dir) / "Meeting Agent"
    return (config_dir / "settings.json").resolve()


_CONFIG_PATH = _get_config_path()

_API_PROVIDER_PRESETS: dict[str, dict[str, Any]] = {
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "model": "openai/gpt-4o-mini",
        "api_key_env": "OPENROUTER_API_KEY",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "OPENAI_API_KEY",
    },
    # Azure OpenAI v1 endpoint; the resource name has to be filled in.
    "azure_openai": {
        "base_url": "",
        "model": "gpt-4o-mini",
        "api_key_env": "AZURE_OPENAI_API_KEY",
    },
    # Gemini via OpenAI-compatible endpoint.
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model": "gemini-2.5-flash",
        "api_key_env": "GEMINI_API_KEY",
    },
    # GitHub Models OpenAI-compatible endpoint.
    "github_models": {
        "base_url": "https://models.github.ai/inference",
        "model": "openai/gpt-4.1-mini",
        "api_key_envs": ["GITHUB_TOKEN", "GH_TOKEN"],
        "api_extra_headers": {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        },
    },
    "custom": {},
}


def _normalize_api_provider(provider: str | None) -> str:
    p = (provider or "").strip().casefold()
    if not p:
        return "custom"
    p = p.replace("-", "_").replace(" ", "_")
    if p in ("azure", "azureopenai", "aoai"):
        p = "azure_openai"
    if p in ("google", "google_ai", "google_gemini"):
        p = "gemini"
    if p in ("github", "github_model", "githubmodels", "gh_models", "gh_model"):
        p = "github_models"
    if p in ("open_router",):
        p = "openrouter"
    if p not in _API_PROVIDER_PRESETS:
        return "custom"
    return p


def _infer_provider_from_base_url(base_url: str | None) -> str:
    u = (base_url or "").strip().casefold()
    if not u:
        return "custom"
    if "openrouter.ai" in u:
        return "openrouter"
    if "api.openai.com" in u:
        return "openai"
    if ".openai.azure.com" in u or ".cognitiveservices.azure.com" in u:
        return "azure_openai"
    if "generativelanguage.googleapis.com" in u:
        return "gemini"
    if "models.github.ai" in u:
        return "github_models"
    return "custom"


def _coerce_headers(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            ks = str(k).strip()
            vs = str(v).strip()
            if ks and vs:
                out[ks] = vs
        return out
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return {}
        try:
            data = json.loads(s)
        except Exception:
            return {}
        return _coerce_headers(data)
    return {}


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except Exception:
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except Exception:
        out = float(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_choice(value: object, choices: set[str], default: str) -> str:
    s = _coerce_str(value, default).lower()
    return s if s in choices else default


def _coerce_string_list(value: object, *, max_items: int = 20, max_len: int = 128) -> list[str]:
    if isinstance(value, str):
        value = [p for p in value.split(",")]
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value:
        s = _coerce_str(item, "", max_len=max_len)
        if s and s not in out:
            out.append(s)
        if len(out) >= max_items:
            break
    return out


def _sanitize_api_route_entry(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None

    base_url_raw = _coerce_str(value.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(value.get("provider"), ""))
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = base_url_raw or str(preset.get("base_url") or "")
    model = _coerce_str(
        value.get("model"),
        str(preset.get("model") or DEFAULT_CONFIG["model"]),
        max_len=512,
    ) or str(DEFAULT_CONFIG["model"])
    api_key = _coerce_str(value.get("api_key"), "", max_len=4096)
    preset_headers = _coerce_headers(preset.get("api_extra_headers"))
    extra_headers = {**preset_headers, **_coerce_headers(value.get("api_extra_headers"))}
    enabled = _coerce_bool(value.get("enabled"), True)

    if not base_url:
        return None

    return {
        "provider": provider,
        "api_key": api_key,
        "base_url": base_url,
        "model": model,
        "api_extra_headers": extra_headers,
        "enabled": enabled,
    }


def _coerce_api_routes_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for raw in value:
        item = _sanitize_api_route_entry(raw)
        if not item:
            continue
        out.append(item)
        if len(out) >= 8:
            break
    return out


def _sanitize_agent_provider(value: object) -> dict[str, object]:
    if not isinstance(value, dict):
        return {}
    kind = _coerce_str(value.get("type"), "", max_len=64).lower().replace("_", "-")
    if kind not in AGENT_PROVIDER_TYPES:
        return {}
    out: dict[str, object] = {"type": kind}
    for key in _AGENT_PROVIDER_FIELDS:
        s = _coerce_str(value.get(key), "", max_len=4096)
        if s:
            out[key] = s
    return out


def _coerce_custom_patterns(value: object) -> list[dict]:
    if not isinstance(value, list):
        return []
    out: list[dict] = []
    seen: set[str] = set()
    for raw in value:
        if not isinstance(raw, dict):
            continue
        pid = _coerce_str(raw.get("id"), "", max_len=64)
        if not pid or pid in PRESET_PATTERNS or pid in seen:
            continue
        seen.add(pid)
        out.append(dict(raw, id=pid))
        if len(out) >= 20:
            break
    return out


def _sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    raw_dict = raw if isinstance(raw, dict) else {}
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if raw_dict:
        src.update(raw_dict)

    provider = _normalize_api_provider(_coerce_str(src.get("api_provider"), str(DEFAULT_CONFIG["api_provider"])))
    base_url_raw = _coerce_str(src.get("base_url"), str(DEFAULT_CONFIG["base_url"]), max_len=2048)
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["api_provider"] = provider
    out["api_key"] = _coerce_str(src.get("api_key"), "", max_len=4096)
    out["base_url"] = base_url_raw or str(DEFAULT_CONFIG["base_url"])
    out["model"] = _coerce_str(src.get("model"), str(DEFAULT_CONFIG["model"]), max_len=512) or str(DEFAULT_CONFIG["model"])
    out["api_extra_headers"] = _coerce_headers(src.get("api_extra_headers"))
    out["api_fallback_enabled"] = _coerce_bool(
        src.get("api_fallback_enabled"),
        bool(DEFAULT_CONFIG["api_fallback_enabled"]),
    )
    out["api_routes"] = _coerce_api_routes_list(src.get("api_routes"))
    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), bool(DEFAULT_CONFIG["verbose_logging"]))

    out["agent_display_name"] = (
        _coerce_str(src.get("agent_display_name"), str(DEFAULT_CONFIG["agent_display_name"]), max_len=128)
        or str(DEFAULT_CONFIG["agent_display_name"])
    )
    out["agent_name_variations"] = _coerce_string_list(src.get("agent_name_variations"))

    custom_patterns = _coerce_custom_patterns(src.get("custom_patterns"))
    out["custom_patterns"] = custom_patterns
    pattern_ids = {p.id for p in list_patterns(custom_patterns)}
    pattern_id = _coerce_str(src.get("behavior_pattern"), DEFAULT_PATTERN_ID, max_len=64)
    out["behavior_pattern"] = pattern_id if pattern_id in pattern_ids else DEFAULT_PATTERN_ID
    out["welcome_message_enabled"] = _coerce_bool(
        src.get("welcome_message_enabled"), bool(DEFAULT_CONFIG["welcome_message_enabled"])
    )

    out["caption_aggregation_window_seconds"] = _coerce_float_in_range(
        src.get("caption_aggregation_window_seconds"), 2.0, min_v=0.5, max_v=10.0
    )
    out["pending_mention_timeout_seconds"] = _coerce_float_in_range(
        src.get("pending_mention_timeout_seconds"), 3.5, min_v=0.5, max_v=30.0
    )
    out["fuzzy_match_threshold"] = _coerce_float_in_range(src.get("fuzzy_match_threshold"), 0.75, min_v=0.5, max_v=1.0)
    out["llm_ambiguous_threshold"] = _coerce_float_in_range(
        src.get("llm_ambiguous_threshold"), 0.85, min_v=0.0, max_v=1.0
    )
    out["llm_min_confidence_threshold"] = _coerce_float_in_range(
        src.get("llm_min_confidence_threshold"), 0.5, min_v=0.0, max_v=1.0
    )
    out["autonomous_confidence_threshold"] = _coerce_float_in_range(
        src.get("autonomous_confidence_threshold"), 0.7, min_v=0.0, max_v=1.0
    )
    out["llm_mention_detection_enabled"] = _coerce_bool(
        src.get("llm_mention_detection_enabled"), bool(DEFAULT_CONFIG["llm_mention_detection_enabled"])
    )
    out["llm_intent_detection_enabled"] = _coerce_bool(
        src.get("llm_intent_detection_enabled"), bool(DEFAULT_CONFIG["llm_intent_detection_enabled"])
    )

    out["session_idle_timeout_seconds"] = _coerce_int_in_range(
        src.get("session_idle_timeout_seconds"), 120, min_v=10, max_v=3600
    )
    out["message_dedupe_window_seconds"] = _coerce_float_in_range(
        src.get("message_dedupe_window_seconds"), 2.0, min_v=0.0, max_v=30.0
    )
    out["stale_pending_seconds"] = _coerce_int_in_range(src.get("stale_pending_seconds"), 600, min_v=30, max_v=86400)

    out["agent_provider"] = _sanitize_agent_provider(src.get("agent_provider"))
    out["agent_retry_delay_seconds"] = _coerce_float_in_range(
        src.get("agent_retry_delay_seconds"), 4.0, min_v=0.0, max_v=60.0
    )
    return out


def _resolve_api_key_for_provider(provider: str, explicit_key: object) -> str:
    api_key = _coerce_str(explicit_key, "", max_len=4096)
    if api_key:
        return api_key

    preset = _API_PROVIDER_PRESETS.get(_normalize_api_provider(provider), {})
    env_name = preset.get("api_key_env")
    if isinstance(env_name, str) and env_name:
        api_key = (os.environ.get(env_name) or "").strip()
        if api_key:
            return api_key

    env_names = preset.get("api_key_envs")
    if isinstance(env_names, list):
        for name in env_names:
            if not isinstance(name, str) or not name:
                continue
            api_key = (os.environ.get(name) or "").strip()
            if api_key:
                return api_key

    return ""


def _effective_api_route_from_values(values: dict[str, object]) -> dict[str, object]:
    base_url_raw = _coerce_str(values.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(values.get("provider"), ""))
    inferred = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred != "custom":
        provider = inferred
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = (
        base_url_raw
        or (preset.get("base_url") if isinstance(preset.get("base_url"), str) else "")
        or str(DEFAULT_CONFIG["base_url"])
    )
    model = (
        _coerce_str(values.get("model"), "", max_len=512)
        or (preset.get("model") if isinstance(preset.get("model"), str) else "")
        or str(DEFAULT_CONFIG["model"])
    )
    preset_headers = _coerce_headers(preset.get("api_extra_headers"))
    extra_headers = {**preset_headers, **_coerce_headers(values.get("api_extra_headers"))}
    api_key = _resolve_api_key_for_provider(provider, values.get("api_key"))
    enabled = _coerce_bool(values.get("enabled"), True)

    return {
        "provider": provider,
        "api_key": api_key,
        "base_url": base_url,
        "model": model,
        "api_extra_headers": extra_headers,
        "enabled": enabled,
    }


def _effective_api_routes(cfg: dict) -> list[dict[str, object]]:
    raw_primary = {
        "provider": cfg.get("api_provider"),
        "api_key": cfg.get("api_key"),
        "base_url": cfg.get("base_url"),
        "model": cfg.get("model"),
        "api_extra_headers": cfg.get("api_extra_headers"),
        "enabled": True,
    }
    candidates: list[dict[str, object]] = [_effective_api_route_from_values(raw_primary)]
    for route in _coerce_api_routes_list(cfg.get("api_routes")):
        candidates.append(_effective_api_route_from_values(route))

    out: list[dict[str, object]] = []
    seen: set[tuple[str, str, str, str, str]] = set()
    for item in candidates:
        if not _coerce_bool(item.get("enabled"), True):
            continue
        api_key = _coerce_str(item.get("api_key"), "", max_len=4096)
        if not api_key:
            continue
        base_url = _coerce_str(item.get("base_url"), "", max_len=2048)
        model = _coerce_str(item.get("model"), "", max_len=512)
        provider = _normalize_api_provider(_coerce_str(item.get("provider"), "custom"))
        headers = _coerce_headers(item.get("api_extra_headers"))
        try:
            hdr_sig = json.dumps(headers, sort_keys=True, separators=(",", ":"))
        except Exception:
            hdr_sig = "{}"
        sig = (provider, base_url, model, api_key, hdr_sig)
        if sig in seen:
            continue
        seen.add(sig)
        out.append(
            {
                "provider": provider,
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": headers,
            }
        )
        if len(out) >= 8:
            break

    return out


def load_config() -> dict:
    loaded: dict = {}
    try:
        if _CONFIG_PATH.is_file():
            data = json.loads(_CONFIG_PATH.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except Exception:
        logger.exception("Failed to load settings file")
    return _sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict) -> None:
    clean_cfg = _sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        _CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = _CONFIG_PATH.with_suffix(_CONFIG_PATH.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(_CONFIG_PATH)
    except Exception:
        logger.exception("Failed to save settings file")
        raise


def _apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging", False))

    # Main logs stay at INFO; verbose mode enables DEBUG details on our loggers.
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    logging.getLogger("meeting_agent").setLevel(level)
    important_logger.setLevel(logging.INFO)

    # In default mode, keep noisy libraries to warnings/errors only.
    noisy_level = logging.INFO if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    log_important(
        "logging.mode",
        dedupe_key=f"verbose={verbose}",
        dedupe_window_s=0.5,
        verbose=verbose,
        noisy_level=("info" if verbose else "warning"),
    )


# Configuration
config = load_config()
_apply_runtime_log_levels(config)


def _public_config(cfg: dict) -> dict:
    """Settings as returned by the API; secrets are masked."""
    out = dict(cfg)
    agent = dict(out.get("agent_provider") or {})
    for key in ("direct_line_secret", "client_secret"):
        if agent.get(key):
            agent[key] = "********"
    out["agent_provider"] = agent
    return out


def _merge_masked_secrets(data: dict, current: dict) -> dict:
    agent = data.get("agent_provider")
    if not isinstance(agent, dict):
        return data
    prev = current.get("agent_provider") or {}
    merged = dict(agent)
    for key in ("direct_line_secret", "client_secret"):
        if merged.get(key) == "********":
            merged[key] = prev.get(key, "")
    return dict(data, agent_provider=merged)


# ============================================
# LLM + MEETING ENGINE
# ============================================

def init_llm_client_from_config() -> None:
    global llm_client

    routes = _effective_api_routes(config)
    if not routes:
        llm_client = None
        log_important(
            "llm.unconfigured",
            level=logging.WARNING,
            dedupe_key="no-api-key",
            dedupe_window_s=30.0,
            provider=config.get("api_provider"),
        )
        return

    fallback_enabled = bool(config.get("api_fallback_enabled", True))
    if not fallback_enabled:
        routes = routes[:1]

    first = routes[0]
    api_key = str(first.get("api_key") or "")
    base_url = str(first.get("base_url") or "")
    model = str(first.get("model") or "")
    extra_headers = _coerce_headers(first.get("api_extra_headers"))
    fallback_routes = []
    for r in routes[1:]:
        fallback_routes.append(
            {
                "provider": str(r.get("provider") or "custom"),
                "api_key": str(r.get("api_key") or ""),
                "base_url": str(r.get("base_url") or ""),
                "model": str(r.get("model") or ""),
                "api_extra_headers": _coerce_headers(r.get("api_extra_headers")),
            }
        )
    signature = {
        "fallback_enabled": fallback_enabled,
        "routes": [
            {
                "provider": str(r.get("provider") or "custom"),
                "base_url": str(r.get("base_url") or ""),
                "model": str(r.get("model") or ""),
                "api_key": str(r.get("api_key") or ""),
                "api_extra_headers": _coerce_headers(r.get("api_extra_headers")),
            }
            for r in routes
        ],
    }

    if llm_client is not None and llm_client.get_config_signature() == signature:
        return

    llm_client = LLMClient(
        api_key=api_key,
        base_url=base_url,
        model=model,
        default_headers=extra_headers,
        fallback_routes=fallback_routes,
        failover_enabled=fallback_enabled,
    )
    llm_client.set_config_signature(signature)
    log_important(
        "llm.configured",
        provider=first.get("provider"),
        model=model,
        base_url=base_url,
        extra_headers=len(extra_headers or {}),
        fallback_enabled=fallback_enabled,
        routes=len(routes),
    )


def _create_agent_from_config(cfg: dict) -> tuple[AgentProvider | None, str | None]:
    settings = cfg.get("agent_provider") or {}
    if not settings:
        log_important("agent.unconfigured", level=logging.WARNING, dedupe_key="no-agent", dedupe_window_s=30.0)
        return None, "no agent provider configured"
    try:
        agent = create_agent_provider(settings)
    except AgentConfigError as e:
        log_important("agent.config_error", level=logging.WARNING, provider=settings.get("type"), error=str(e))
        return None, str(e)
    log_important("agent.configured", provider=agent.type)
    return agent, None


def build_orchestrator(cfg: dict, *, llm=None, agent: AgentProvider | None = None) -> MeetingOrchestrator:
    name = str(cfg.get("agent_display_name") or DEFAULT_CONFIG["agent_display_name"])
    detector = MentionDetector(
        name,
        cfg.get("agent_name_variations") or None,
        cfg=MentionConfig(
            fuzzy_match_threshold=float(cfg["fuzzy_match_threshold"]),
            llm_ambiguous_threshold=float(cfg["llm_ambiguous_threshold"]),
            llm_min_confidence_threshold=float(cfg["llm_min_confidence_threshold"]),
            llm_enabled=bool(cfg["llm_mention_detection_enabled"]),
        ),
        llm_client=llm,
    )
    aggregator = CaptionAggregator(
        detector,
        AggregatorConfig(
            aggregation_window_s=float(cfg["caption_aggregation_window_seconds"]),
            pending_mention_timeout_s=float(cfg["pending_mention_timeout_seconds"]),
        ),
    )
    intent = IntentClassifier(
        llm,
        IntentConfig(
            llm_enabled=bool(cfg["llm_intent_detection_enabled"]),
            autonomous_confidence_threshold=float(cfg["autonomous_confidence_threshold"]),
        ),
    )
    orch = MeetingOrchestrator(
        OrchestratorConfig(
            agent_name=name,
            agent_retry_delay_s=float(cfg["agent_retry_delay_seconds"]),
            stale_pending_s=float(cfg["stale_pending_seconds"]),
            welcome_message_enabled=bool(cfg["welcome_message_enabled"]),
        ),
        pattern=get_pattern(cfg.get("behavior_pattern"), cfg.get("custom_patterns")),
        detector=detector,
        aggregator=aggregator,
        intent=intent,
        session=SessionTracker(float(cfg["session_idle_timeout_seconds"])),
        conversation=ConversationLog(float(cfg["message_dedupe_window_seconds"])),
        analytics=CallAnalytics(llm),
        meeting=bridge,
        speech=speech,
        agent=agent,
    )
    orch.behavior.add_event_listener(_forward_behavior_event)
    return orch


async def _forward_behavior_event(event: BehaviorEvent) -> None:
    await bridge.send({"type": "behavior_event", "event": event.to_dict()})


async def _connect_agent_and_greet(orch: MeetingOrchestrator) -> None:
    ok = await orch.connect_agent()
    log_important(
        "agent.connect",
        level=(logging.INFO if ok else logging.WARNING),
        ok=ok,
        error=orch.agent_error,
    )
    if ok and orch.meeting_id:
        await orch.send_welcome()


def _schedule_agent_connect(orch: MeetingOrchestrator) -> None:
    global _agent_connect_task
    if _agent_connect_task is not None and not _agent_connect_task.done():
        _agent_connect_task.cancel()
    _agent_connect_task = asyncio.create_task(_connect_agent_and_greet(orch))


async def rebuild_orchestrator() -> MeetingOrchestrator:
    global orchestrator
    previous = orchestrator
    meeting = (previous.meeting_id, previous.meeting_url) if previous is not None else (None, None)
    if previous is not None:
        await previous.dispose()

    agent, agent_error = _create_agent_from_config(config)
    orchestrator = build_orchestrator(config, llm=llm_client, agent=agent)
    orchestrator.agent_error = agent_error
    if meeting[0] or meeting[1]:
        orchestrator.reset_for_meeting(*meeting)
    if agent is not None:
        _schedule_agent_connect(orchestrator)
    return orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Server starting...")
    log_important("server.starting")
    init_llm_client_from_config()
    await rebuild_orchestrator()
    yield
    # Shutdown
    logger.info("Shutting down...")
    log_important("server.stopping")
    if _agent_connect_task is not None:
        _agent_connect_task.cancel()
        with suppress(BaseException):
            await _agent_connect_task
    if orchestrator is not None:
        await orchestrator.dispose()


app = FastAPI(lifespan=lifespan)


def _orchestrator_or_error():
    if orchestrator is None:
        return None, JSONResponse({"status": "error", "message": "Meeting engine not ready"}, status_code=503)
    return orchestrator, None


# ============================================
# HTTP ROUTES
# ============================================

@app.get("/api/state")
def api_state():
    orch, err = _orchestrator_or_error()
    if err:
        return err
    return {"status": "ok", "state": orch.state(), "bridge_attached": bridge.is_attached}


@app.get("/api/pending")
def api_list_pending(status: Optional[str] = None):
    orch, err = _orchestrator_or_error()
    if err:
        return err
    return {
        "status": "ok",
        "pending": [r.to_dict() for r in orch.behavior.get_pending(status)],
        "stats": orch.behavior.queue_stats(),
    }


@app.post("/api/pending/{response_id}/approve")
async def api_approve_pending(response_id: str):
    orch, err = _orchestrator_or_error()
    if err:
        return err
    if orch.behavior.get(response_id) is None:
        return JSONResponse({"status": "error", "message": "Unknown response"}, status_code=404)
    ok = await orch.approve_response(response_id)
    log_important("pending.approve", id=response_id, delivered=ok)
    record = orch.behavior.get(response_id)
    return {"status": "ok", "delivered": ok, "response": record.to_dict() if record else None}


@app.post("/api/pending/{response_id}/reject")
async def api_reject_pending(response_id: str):
    orch, err = _orchestrator_or_error()
    if err:
        return err
    if orch.behavior.get(response_id) is None:
        return JSONResponse({"status": "error", "message": "Unknown response"}, status_code=404)
    ok = await orch.reject_response(response_id)
    if not ok:
        return JSONResponse({"status": "error", "message": "Response can no longer be rejected"}, status_code=400)
    log_important("pending.reject", id=response_id)
    return {"status": "ok"}


@app.post("/api/session/end")
def api_end_session():
    orch, err = _orchestrator_or_error()
    if err:
        return err
    ended = orch.end_session("manual")
    return {"status": "ok", "ended": ended}


@app.get("/api/patterns")
def api_list_patterns():
    custom = config.get("custom_patterns") or []
    return {
        "status": "ok",
        "active": config.get("behavior_pattern"),
        "patterns": [p.to_dict() for p in list_patterns(custom)],
    }


@app.post("/api/patterns/{pattern_id}")
def api_select_pattern(pattern_id: str):
    global config
    custom = config.get("custom_patterns") or []
    if pattern_id not in {p.id for p in list_patterns(custom)}:
        return JSONResponse({"status": "error", "message": "Unknown pattern"}, status_code=400)

    config = _sanitize_config_values({"behavior_pattern": pattern_id}, base=config)
    try:
        save_config(config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)
    if orchestrator is not None:
        orchestrator.set_pattern(get_pattern(pattern_id, custom))
    log_important("pattern.selected", pattern=pattern_id)
    return {"status": "ok", "active": pattern_id}


@app.get("/api/analytics")
async def api_analytics(summary: bool = False):
    orch, err = _orchestrator_or_error()
    if err:
        return err
    report = await orch.summary(include_summary=summary)
    return {"status": "ok", "analytics": report}


@app.post("/api/agent/connect")
async def api_connect_agent():
    orch, err = _orchestrator_or_error()
    if err:
        return err
    ok = await orch.connect_agent()
    log_important("agent.connect", level=(logging.INFO if ok else logging.WARNING), ok=ok, error=orch.agent_error)
    if not ok:
        return JSONResponse({"status": "error", "message": orch.agent_error or "Agent connect failed"}, status_code=500)
    return {"status": "ok"}


@app.get("/api/settings")
def get_settings():
    return {"status": "ok", "config": _public_config(config)}


@app.post("/api/settings")
async def update_settings(request: Request):
    global config
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"status": "error", "message": "Invalid JSON"}, status_code=400)

    if not isinstance(data, dict):
        return JSONResponse({"status": "error", "message": "JSON body must be an object"}, status_code=400)

    prev_config = dict(config)
    config = _sanitize_config_values(_merge_masked_secrets(data, config), base=config)
    try:
        save_config(config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)

    _apply_runtime_log_levels(config)
    prev_llm = llm_client
    init_llm_client_from_config()
    changed = [k for k in config.keys() if config.get(k) != prev_config.get(k)]
    changed_list = ",".join(changed[:12]) + (",..." if len(changed) > 12 else "")
    log_important(
        "settings.updated",
        changed_count=len(changed),
        changed_keys=(changed_list or "-"),
    )

    if orchestrator is not None:
        if llm_client is not prev_llm or any(k in _ENGINE_KEYS for k in changed):
            await rebuild_orchestrator()
        elif "behavior_pattern" in changed:
            orchestrator.set_pattern(get_pattern(config.get("behavior_pattern"), config.get("custom_patterns")))

    return {"status": "ok", "config": _public_config(config)}


@app.post("/api/settings/reset")
async def api_reset_settings():
    """Reset settings to defaults and persist to disk."""
    global config

    config = _sanitize_config_values({}, base=DEFAULT_CONFIG)
    try:
        save_config(config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)

    _apply_runtime_log_levels(config)
    init_llm_client_from_config()
    if orchestrator is not None:
        await rebuild_orchestrator()
    log_important("settings.reset")
    return {"status": "ok", "config": _public_config(config)}


# ============================================
# MEETING CLIENT WEBSOCKET
# ============================================

def _caption_from_message(msg: dict) -> CaptionFragment | None:
    text = _coerce_str(msg.get("text"), "", max_len=4000)
    if not text:
        return None
    ts = msg.get("timestamp")
    return CaptionFragment(
        id=_coerce_str(msg.get("id"), "", max_len=256) or uuid.uuid4().hex,
        speaker=_coerce_str(msg.get("speaker"), "Unknown", max_len=256) or "Unknown",
        text=text,
        timestamp_ms=float(ts) if isinstance(ts, (int, float)) else now_ms(),
        is_final=_coerce_bool(msg.get("is_final"), True),
        speaker_id=_coerce_str(msg.get("speaker_id"), "", max_len=256) or None,
    )


def _chat_from_message(msg: dict) -> ChatMessage | None:
    content = _coerce_str(msg.get("content"), "", strip=False, max_len=20000)
    if not content.strip():
        return None
    created = msg.get("created_on")
    return ChatMessage(
        id=_coerce_str(msg.get("id"), "", max_len=256) or uuid.uuid4().hex,
        sender_display_name=_coerce_str(msg.get("sender"), "Unknown", max_len=256) or "Unknown",
        content=content,
        is_own=_coerce_bool(msg.get("is_own"), False),
        created_on=float(created) if isinstance(created, (int, float)) else time.time(),
        sender_id=_coerce_str(msg.get("sender_id"), "", max_len=256) or None,
    )


async def _handle_meeting_event(orch: MeetingOrchestrator, msg: dict) -> None:
    msg_type = msg.get("type")

    if msg_type == "meeting":
        meeting_id = _coerce_str(msg.get("meeting_id"), "", max_len=512)
        meeting_url = _coerce_str(msg.get("meeting_url"), "", max_len=4096)
        if orch.reset_for_meeting(meeting_id, meeting_url):
            log_important("meeting.reset", meeting_id=meeting_id, url=meeting_url)
            if orch.agent_connected:
                await orch.send_welcome()
            elif orch.agent is not None:
                _schedule_agent_connect(orch)
    elif msg_type == "caption":
        fragment = _caption_from_message(msg)
        if fragment is not None:
            await orch.handle_caption(fragment)
    elif msg_type == "chat":
        message = _chat_from_message(msg)
        if message is not None:
            orch.spawn(orch.handle_chat_message(message))
    elif msg_type == "hand_state":
        raised = _coerce_bool(msg.get("raised"), False)
        bridge.on_hand_state(raised)
        orch.spawn(orch.on_hand_raised_state_changed(raised))
    elif msg_type == "speech_state":
        speech.on_speech_state(_coerce_bool(msg.get("speaking"), False))
    elif msg_type == "end_call":
        await orch.end_call()
        log_important("meeting.ended", meeting_id=orch.meeting_id)
    else:
        logger.debug(f"Ignoring meeting event type={msg_type!r}")


@app.websocket("/ws/meeting")
async def meeting_websocket(websocket: WebSocket):
    await websocket.accept()
    logger.info("Meeting client connected")
    log_important("ws.connected")
    bridge.attach(websocket)

    if orchestrator is not None:
        await bridge.send({"type": "status", "state": orchestrator.state()})

    try:
        while True:
            data_text = await websocket.receive_text()
            try:
                msg = json.loads(data_text)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON meeting message")
                continue
            if not isinstance(msg, dict) or orchestrator is None:
                continue
            await _handle_meeting_event(orchestrator, msg)
    except WebSocketDisconnect as e:
        logger.info(f"Meeting client disconnected (code={getattr(e, 'code', None)})")
        log_important("ws.disconnected", code=getattr(e, "code", None))
    except Exception:
        logger.exception("Meeting websocket crashed")
        log_important("ws.crashed", level=logging.ERROR)
    finally:
        bridge.detach(websocket)
        speech.on_speech_state(False)


def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    try:
        server_host = os.environ.get("AI_MEETING_AGENT_HOST", "127.0.0.1")
        preferred_port = int(os.environ.get("AI_MEETING_AGENT_PORT", "8000"))
        server_port = find_available_port(server_host, preferred_port)
        logger.info(f"Starting server on http://{server_host}:{server_port} ...")
        start_server(server_host, server_port)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    except Exception as e:
        logger.exception("Fatal error during startup:")
        print(f"\n\nFATAL ERROR: {e}\n")
        sys.exit(1)
