from openai import AsyncOpenAI
import logging
import json
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass
class LLMEndpoint:
    provider: str
    api_key: str
    base_url: str
    model: str
    headers: dict[str, str] = field(default_factory=dict)
    client: Any = None

    def identity(self) -> tuple:
        return (self.base_url, self.model, self.api_key, tuple(sorted(self.headers.items())))

    def describe(self) -> str:
        return f"{self.provider} {self.base_url} ({self.model})"


def _endpoint_from_route(route: Any) -> LLMEndpoint | None:
    if not isinstance(route, dict):
        return None
    api_key = str(route.get("api_key") or "").strip()
    base_url = str(route.get("base_url") or "").strip()
    model = str(route.get("model") or "").strip()
    if not api_key or not base_url or not model:
        return None

    headers = route.get("api_extra_headers", route.get("default_headers"))
    if not isinstance(headers, dict):
        headers = {}
    headers = {str(k): str(v) for k, v in headers.items()}
    return LLMEndpoint(
        provider=str(route.get("provider") or "custom").strip().lower() or "custom",
        api_key=api_key,
        base_url=base_url,
        model=model,
        headers=headers,
    )


class LLMClient:
    """
    OpenAI-compatible chat client over an ordered list of endpoints.

    With failover enabled a failing request is retried on the next endpoint;
    the endpoint that last answered becomes the active one.
    """

    def __init__(
        self,
        api_key,
        base_url="https://openrouter.ai/api/v1",
        model="openai/gpt-4o-mini",
        default_headers=None,
        *,
        fallback_routes=None,
        failover_enabled: bool = True,
    ):
        self.failover_enabled = bool(failover_enabled)
        self.endpoints: list[LLMEndpoint] = []
        self._active_index = 0
        self._config_signature = None

        primary = {
            "provider": "primary",
            "api_key": api_key,
            "base_url": base_url,
            "model": model,
            "api_extra_headers": default_headers,
        }
        for route in [primary, *(fallback_routes or [])]:
            ep = _endpoint_from_route(route)
            if ep is None or any(cur.identity() == ep.identity() for cur in self.endpoints):
                continue
            ep.client = AsyncOpenAI(api_key=ep.api_key, base_url=ep.base_url, default_headers=ep.headers)
            self.endpoints.append(ep)

        if not self.endpoints:
            raise ValueError("LLMClient requires at least one endpoint with an API key.")

    def set_config_signature(self, sig) -> None:
        self._config_signature = sig

    def get_config_signature(self):
        return self._config_signature

    @property
    def active(self) -> LLMEndpoint:
        return self.endpoints[self._active_index]

    @property
    def base_url(self) -> str:
        return self.active.base_url

    @property
    def model(self) -> str:
        return self.active.model

    async def chat_create(self, **kwargs):
        errors = []
        attempts = self.endpoints if self.failover_enabled else self.endpoints[:1]
        for idx, ep in enumerate(attempts):
            try:
                resp = await ep.client.chat.completions.create(**dict(kwargs, model=ep.model))
            except Exception as e:
                errors.append(f"#{idx + 1} {ep.describe()}: {e}")
                if idx + 1 < len(attempts):
                    logger.warning("LLM endpoint %s failed, trying #%s: %s", ep.describe(), idx + 2, e)
                continue

            if idx != self._active_index:
                logger.warning("LLM failover selected endpoint #%s (%s)", idx + 1, ep.describe())
            self._active_index = idx
            return resp

        raise RuntimeError("All configured LLM APIs failed. " + " | ".join(errors))

    async def complete_text(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        resp = await self.chat_create(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            stream=False,
            **kwargs,
        )
        return extract_chat_content_best_effort(resp)

    async def complete_json(self, system_prompt: str, user_prompt: str, **kwargs) -> tuple[dict, str]:
        """
        Runs a JSON-mode completion. Returns (parsed_object, raw_text); the object is
        empty when the model reply could not be parsed.
        """
        text = await self.complete_text(
            system_prompt,
            user_prompt,
            response_format={"type": "json_object"},
            **kwargs,
        )
        return parse_json_object_best_effort(text), text


def _content_text(content_val: Any) -> str:
    if isinstance(content_val, str):
        return content_val
    if not isinstance(content_val, list):
        return ""

    parts: list[str] = []
    for item in content_val:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict):
            # Some providers nest text under a content block instead of "text".
            txt = item.get("text") or item.get("content")
            if isinstance(txt, str) and txt.strip():
                parts.append(txt)
    return "\n".join(p for p in parts if p)


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def extract_chat_content_best_effort(response_obj: Any) -> str:
    choices = _get(response_obj, "choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = _get(choices[0] or {}, "message")
    if message is None:
        return ""
    return _content_text(_get(message, "content")).strip()


def _loads_dict(s: str) -> dict | None:
    try:
        obj = json.loads(s)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def parse_json_object_best_effort(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.strip():
        return {}

    s = value.strip()
    fenced = _JSON_FENCE_RE.search(s)
    candidates = [s]
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = s.find("{"), s.rfind("}")
    if start != -1 and end > start:
        candidates.append(s[start : end + 1])

    for cand in candidates:
        obj = _loads_dict(cand)
        if obj is not None:
            return obj
    return {}


def json_flag_best_effort(raw_text: str, key: str) -> bool:
    """Reads `"key": true` out of a reply that was not valid JSON."""
    low = (raw_text or "").lower()
    k = key.lower()
    return f'"{k}": true' in low or f'"{k}":true' in low


def clamp_confidence(value: Any, default: float = 0.5) -> float:
    try:
        out = float(value)
    except Exception:
        out = float(default)
    return max(0.0, min(1.0, out))
