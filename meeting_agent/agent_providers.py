from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from meeting_agent.models import AgentReply

logger = logging.getLogger(__name__)

DIRECT_LINE_BASE_URL = "https://directline.botframework.com/v3/directline"
FOUNDRY_API_VERSION = "2025-11-15-preview"
FOUNDRY_SCOPE = "https://ai.azure.com/.default"
POWER_PLATFORM_SCOPE = "https://api.powerplatform.com/.default"
TOKEN_EXPIRY_MARGIN_S = 300.0


class AgentConfigError(ValueError):
    """Provider settings are missing or invalid; retrying will not help."""


class AgentRequestError(RuntimeError):
    pass


def _require(settings: dict, *keys: str, provider: str) -> dict[str, str]:
    out: dict[str, str] = {}
    missing = []
    for key in keys:
        val = str(settings.get(key) or "").strip()
        if not val:
            missing.append(key)
        out[key] = val
    if missing:
        raise AgentConfigError(f"{provider} configuration incomplete: missing {', '.join(missing)}")
    return out


class AgentProvider:
    """Turns a user utterance into an agent reply within one backend conversation."""

    type = "base"

    def __init__(self, *, http_client: httpx.AsyncClient | None = None, timeout_s: float = 30.0):
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s)
        self.conversation_id: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return bool(self.conversation_id)

    async def start_conversation(self) -> Optional[str]:
        raise NotImplementedError

    async def send_message(self, text: str, speaker: str | None = None, context: dict | None = None) -> AgentReply:
        raise NotImplementedError

    async def end_conversation(self) -> None:
        self.conversation_id = None

    async def close(self) -> None:
        await self.end_conversation()
        if self._owns_client:
            await self._http.aclose()

    async def _request_json(self, method: str, url: str, *, token: str | None = None, **kwargs) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        resp = await self._http.request(method, url, headers=headers, **kwargs)
        if resp.status_code >= 400:
            body = resp.text[:300]
            raise AgentRequestError(f"{method} {url} failed: HTTP {resp.status_code} {body}")
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}


class _DirectLineAgentProvider(AgentProvider):
    def __init__(
        self,
        *,
        base_url: str = DIRECT_LINE_BASE_URL,
        poll_interval_s: float = 0.5,
        max_poll_attempts: int = 30,
        user_id: str = "",
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(http_client=http_client)
        self.base_url = base_url.rstrip("/")
        self.poll_interval_s = float(poll_interval_s)
        self.max_poll_attempts = int(max_poll_attempts)
        self.user_id = user_id
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._watermark: Optional[str] = None

    async def _fetch_token(self) -> tuple[str, float]:
        """Returns (token, lifetime_s)."""
        raise NotImplementedError

    async def _ensure_token(self) -> str:
        if not self._token or time.time() >= self._token_expires_at:
            token, lifetime = await self._fetch_token()
            if not token:
                raise AgentRequestError("Direct Line token response did not include a token")
            self._token = token
            self._token_expires_at = time.time() + max(0.0, float(lifetime) - TOKEN_EXPIRY_MARGIN_S)
        return self._token

    def _member_id(self) -> str:
        if self.user_id:
            return self.user_id
        return f"dl_{(self.conversation_id or 'user')[:8]}"

    async def start_conversation(self) -> Optional[str]:
        token = await self._ensure_token()
        data = await self._request_json("POST", f"{self.base_url}/conversations", token=token)
        conv_id = str(data.get("conversationId") or "").strip()
        if not conv_id:
            logger.warning("Direct Line did not return a conversation id")
            return None
        self.conversation_id = conv_id
        if data.get("token"):
            self._token = str(data["token"])
        self._watermark = None

        # conversationUpdate asks the bot for its welcome message.
        try:
            await self._request_json(
                "POST",
                f"{self.base_url}/conversations/{conv_id}/activities",
                token=self._token,
                json={
                    "type": "conversationUpdate",
                    "from": {"id": self._member_id(), "name": "User", "role": "user"},
                    "membersAdded": [{"id": self._member_id(), "name": "User"}],
                },
            )
        except Exception as e:
            logger.warning("conversationUpdate failed, bot may skip its welcome: %s", e)
        logger.info("Direct Line conversation started id=%s", conv_id)
        return conv_id

    async def _poll_activities(self) -> list[dict]:
        url = f"{self.base_url}/conversations/{self.conversation_id}/activities"
        params = {"watermark": self._watermark} if self._watermark else None
        data = await self._request_json("GET", url, token=self._token, params=params)
        if data.get("watermark"):
            self._watermark = str(data["watermark"])
        acts = data.get("activities")
        return acts if isinstance(acts, list) else []

    async def send_message(self, text: str, speaker: str | None = None, context: dict | None = None) -> AgentReply:
        if not self.conversation_id:
            raise AgentRequestError("No active Direct Line conversation")
        activity: dict[str, Any] = {
            "type": "message",
            "from": {"id": self._member_id(), "name": speaker or "User", "role": "user"},
            "text": text,
        }
        if context:
            activity["channelData"] = {"meetingContext": context}
        posted = await self._request_json(
            "POST",
            f"{self.base_url}/conversations/{self.conversation_id}/activities",
            token=self._token,
            json=activity,
        )
        sent_id = str(posted.get("id") or "") if isinstance(posted, dict) else ""

        replies: list[str] = []
        ended = False
        for _ in range(self.max_poll_attempts):
            await asyncio.sleep(self.poll_interval_s)
            for act in await self._poll_activities():
                if not isinstance(act, dict):
                    continue
                sender = act.get("from") or {}
                if (sender.get("role") or "").lower() == "user" or sender.get("id") == self._member_id():
                    continue
                # Greetings and late replies to earlier turns carry another replyToId.
                reply_to = act.get("replyToId")
                if sent_id and reply_to and reply_to != sent_id:
                    continue
                if act.get("type") == "message" and act.get("text"):
                    replies.append(str(act["text"]))
                elif act.get("type") == "endOfConversation":
                    ended = True
            if replies or ended:
                break

        conv_id = self.conversation_id
        if ended:
            logger.info("Bot ended Direct Line conversation %s", conv_id)
            self.conversation_id = None
        if not replies:
            logger.warning("No bot reply after %s polls", self.max_poll_attempts)
        return AgentReply(text="\n\n".join(replies).strip(), conversation_id=conv_id)

    async def end_conversation(self) -> None:
        if self.conversation_id and self._token:
            try:
                await self._request_json(
                    "POST",
                    f"{self.base_url}/conversations/{self.conversation_id}/activities",
                    token=self._token,
                    json={"type": "endOfConversation", "from": {"id": self._member_id(), "role": "user"}},
                )
            except Exception as e:
                logger.debug("endOfConversation not delivered: %s", e)
        self.conversation_id = None
        self._watermark = None


class CopilotStudioAnonAgentProvider(_DirectLineAgentProvider):
    """Copilot Studio over Direct Line using a channel secret (no user sign-in)."""

    type = "copilot-studio-anon"

    def __init__(self, settings: dict, *, http_client: httpx.AsyncClient | None = None):
        req = _require(settings, "direct_line_secret", provider="Copilot Studio (anonymous)")
        super().__init__(
            base_url=str(settings.get("direct_line_base_url") or DIRECT_LINE_BASE_URL),
            poll_interval_s=float(settings.get("poll_interval_s", 0.5)),
            max_poll_attempts=int(settings.get("max_poll_attempts", 30)),
            http_client=http_client,
        )
        self._secret = req["direct_line_secret"]

    async def _fetch_token(self) -> tuple[str, float]:
        data = await self._request_json("POST", f"{self.base_url}/tokens/generate", token=self._secret)
        return str(data.get("token") or ""), float(data.get("expires_in") or 3600)


class CopilotStudioAgentProvider(_DirectLineAgentProvider):
    """
    Copilot Studio agent in an Entra-secured environment. A Power Platform access token
    (client credentials) is exchanged at the agent's Direct Line token endpoint.
    """

    type = "copilot-studio"

    def __init__(self, settings: dict, *, http_client: httpx.AsyncClient | None = None):
        req = _require(
            settings,
            "client_id",
            "tenant_id",
            "environment_id",
            "bot_id",
            provider="Copilot Studio",
        )
        super().__init__(
            base_url=str(settings.get("direct_line_base_url") or DIRECT_LINE_BASE_URL),
            poll_interval_s=float(settings.get("poll_interval_s", 0.5)),
            max_poll_attempts=int(settings.get("max_poll_attempts", 30)),
            http_client=http_client,
        )
        self.client_id = req["client_id"]
        self.tenant_id = req["tenant_id"]
        self.environment_id = req["environment_id"]
        self.bot_id = req["bot_id"]
        self.client_secret = str(settings.get("client_secret") or "").strip()
        self.token_endpoint = str(settings.get("token_endpoint") or "").strip() or (
            f"https://{self.environment_id}.environment.api.powerplatform.com"
            f"/powervirtualagents/botsbyschema/{self.bot_id}/directline/token?api-version=2022-03-01-preview"
        )

    async def _entra_token(self) -> str | None:
        if not self.client_secret:
            return None
        data = await self._request_json(
            "POST",
            f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": POWER_PLATFORM_SCOPE,
            },
        )
        return str(data.get("access_token") or "") or None

    async def _fetch_token(self) -> tuple[str, float]:
        access = await self._entra_token()
        data = await self._request_json("GET", self.token_endpoint, token=access)
        conv_id = str(data.get("conversationId") or "").strip()
        if conv_id:
            logger.debug("Token endpoint pre-allocated conversation %s", conv_id)
        return str(data.get("token") or ""), float(data.get("expires_in") or 3600)


class AzureFoundryAgentProvider(AgentProvider):
    type = "azure-foundry"

    def __init__(self, settings: dict, *, http_client: httpx.AsyncClient | None = None):
        req = _require(
            settings,
            "project_endpoint",
            "agent_name",
            "tenant_id",
            "client_id",
            "client_secret",
            provider="Azure AI Foundry",
        )
        super().__init__(http_client=http_client)
        self.project_endpoint = req["project_endpoint"].rstrip("/")
        self.agent_name = req["agent_name"]
        self.tenant_id = req["tenant_id"]
        self.client_id = req["client_id"]
        self._client_secret = req["client_secret"]
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._ready = False

    @property
    def is_connected(self) -> bool:
        # Foundry conversations are created with the first message.
        return self._ready

    async def _ensure_token(self) -> str:
        if self._token and time.time() < self._token_expires_at:
            return self._token
        data = await self._request_json(
            "POST",
            f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "scope": FOUNDRY_SCOPE,
            },
        )
        token = str(data.get("access_token") or "")
        if not token:
            raise AgentRequestError("Token response did not include an access token")
        lifetime = float(data.get("expires_in") or 3600)
        self._token = token
        self._token_expires_at = time.time() + max(0.0, lifetime - TOKEN_EXPIRY_MARGIN_S)
        return token

    async def start_conversation(self) -> Optional[str]:
        await self._ensure_token()
        self._ready = True
        self.conversation_id = None
        logger.info("Foundry agent %s ready; conversation is created with the first message", self.agent_name)
        return "pending"

    async def send_message(self, text: str, speaker: str | None = None, context: dict | None = None) -> AgentReply:
        token = await self._ensure_token()
        if not self.conversation_id:
            conv = await self._request_json(
                "POST",
                f"{self.project_endpoint}/openai/conversations?api-version={FOUNDRY_API_VERSION}",
                token=token,
                json={},
            )
            self.conversation_id = str(conv.get("id") or "") or None
            logger.info("Created Foundry conversation %s", self.conversation_id)

        body: dict[str, Any] = {
            "conversation": self.conversation_id,
            "input": text,
            "agent": {"name": self.agent_name, "type": "agent_reference"},
        }
        if speaker:
            body["metadata"] = {"speaker": speaker}
        resp = await self._request_json(
            "POST",
            f"{self.project_endpoint}/openai/responses?api-version={FOUNDRY_API_VERSION}",
            token=token,
            json=body,
        )
        return AgentReply(text=self._extract_output_text(resp), conversation_id=self.conversation_id)

    @staticmethod
    def _extract_output_text(resp: Any) -> str:
        if not isinstance(resp, dict):
            return ""
        parts: list[str] = []
        for item in resp.get("output") or []:
            if not isinstance(item, dict):
                continue
            for content in item.get("content") or []:
                if isinstance(content, dict) and content.get("type") == "output_text" and content.get("text"):
                    parts.append(str(content["text"]))
        if parts:
            return "\n".join(parts).strip()
        return str(resp.get("output_text") or "").strip()

    async def end_conversation(self) -> None:
        self.conversation_id = None
        self._ready = False


_PROVIDER_TYPES: dict[str, type[AgentProvider]] = {
    CopilotStudioAgentProvider.type: CopilotStudioAgentProvider,
    CopilotStudioAnonAgentProvider.type: CopilotStudioAnonAgentProvider,
    AzureFoundryAgentProvider.type: AzureFoundryAgentProvider,
}
AGENT_PROVIDER_TYPES = set(_PROVIDER_TYPES)


def create_agent_provider(settings: dict | None, *, http_client: httpx.AsyncClient | None = None) -> AgentProvider:
    s = settings if isinstance(settings, dict) else {}
    kind = str(s.get("type") or "").strip().lower().replace("_", "-")
    cls = _PROVIDER_TYPES.get(kind)
    if cls is None:
        raise AgentConfigError(f"Unknown agent provider type: {kind or '-'}")
    return cls(s, http_client=http_client)
