from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from meeting_agent.llm import clamp_confidence, json_flag_best_effort
from meeting_agent.models import IntentResult

logger = logging.getLogger(__name__)


# Explicit farewells only. Short acknowledgements ("ok", "got it") must not end a session.
END_OF_CONVERSATION_PHRASES = (
    "thank you, bye",
    "thanks, bye",
    "thank you, goodbye",
    "thanks, goodbye",
    "that's all i needed",
    "that's all i need",
    "thats all i needed",
    "thats all i need",
    "that's all for now",
    "thats all for now",
    "talk to you later",
    "see you later",
    "no more questions",
    "nothing else",
    "talk later",
    "see you",
    "good bye",
    "goodbye",
    "bye",
    "i'm done",
    "im done",
    "take care",
)

_QUESTION_WORDS = (
    "what", "who", "where", "when", "why", "how", "which",
    "can", "could", "would", "should", "is", "are", "do", "does",
)

_REQUEST_PHRASES = (
    "tell me", "tell us", "explain", "describe", "show me", "show us",
    "help me", "help us", "find", "search", "give me", "give us",
    "i want", "i need", "i would like", "i'd like",
    "let me know", "get me", "provide", "share",
    "look up", "check", "verify", "confirm",
    "summarize",
)

_IMPERATIVE_VERBS = (
    "tell", "show", "explain", "describe", "find", "get", "give", "help",
    "list", "provide", "share", "check", "look", "search", "summarize",
    "create", "write", "generate", "calculate", "compare", "analyze",
)

_LEADING_FILLERS = (
    "now, ", "now ", "ok, ", "ok ", "okay, ", "okay ", "please ",
    "alright, ", "alright ", "so, ", "so ", "well, ", "well ",
)

_FAREWELL_RES = [
    (phrase, re.compile(r"(?<![a-z'])" + re.escape(phrase) + r"(?![a-z])"))
    for phrase in END_OF_CONVERSATION_PHRASES
]
_SENTENCE_SPLIT_RE = re.compile(r"[.!]\s*")


@dataclass
class ConversationContext:
    agent_name: str
    session_active: bool = False
    session_speaker: str | None = None
    recent_captions: list[dict[str, str]] = field(default_factory=list)
    # Set when the mention detector already confirmed the agent was addressed.
    name_mentioned: bool = False


@dataclass
class IntentConfig:
    llm_enabled: bool = True
    context_lines: int = 5
    # Minimum confidence for answering someone who did not name the agent.
    autonomous_confidence_threshold: float = 0.7


def _strip_fillers(sentence: str) -> str:
    s = sentence.strip()
    # Allow one chained filler, e.g. "now please".
    for _ in range(2):
        for prefix in _LEADING_FILLERS:
            if s.startswith(prefix):
                s = s[len(prefix):].lstrip()
                break
        else:
            break
    return s


def _remove_farewells(text: str) -> tuple[str, bool]:
    found = False
    out = text
    for _, rx in _FAREWELL_RES:
        if rx.search(out):
            found = True
            out = rx.sub(" ", out)
    return out, found


def has_request_or_command(low_text: str) -> bool:
    if any(phrase in low_text for phrase in _REQUEST_PHRASES):
        return True
    for sentence in _SENTENCE_SPLIT_RE.split(low_text):
        s = _strip_fillers(sentence)
        if any(s.startswith(v + " ") for v in _IMPERATIVE_VERBS):
            return True
    return False


def has_question(raw_text: str, low_text: str) -> bool:
    if "?" in raw_text:
        return True
    return any(low_text.startswith(w + " ") for w in _QUESTION_WORDS)


class IntentClassifier:
    """
    Decides whether the agent should answer an utterance and whether it closes the
    current conversation. Uses the LLM when one is configured and falls back to the
    keyword rules on any LLM error.
    """

    def __init__(self, llm_client=None, cfg: IntentConfig | None = None):
        self.llm_client = llm_client
        self.cfg = cfg or IntentConfig()

    @property
    def llm_enabled(self) -> bool:
        return bool(self.cfg.llm_enabled and self.llm_client is not None)

    async def should_respond_to(self, text: str, speaker: str, context: ConversationContext) -> IntentResult:
        if not self.llm_enabled:
            return self.classify_rules(text, speaker, context)
        try:
            return await self._classify_llm(text, speaker, context)
        except Exception as e:
            logger.warning("Intent LLM failed, using rules: %s", e)
            return self.classify_rules(text, speaker, context)

    def classify_rules(self, text: str, speaker: str, context: ConversationContext) -> IntentResult:
        raw = text or ""
        low = raw.lower().strip()
        agent = (context.agent_name or "").lower().strip()
        first_name = agent.split(" ")[0] if agent else ""
        name_mentioned = context.name_mentioned or (
            bool(agent) and (agent in low or (bool(first_name) and first_name in low))
        )

        is_session_speaker = bool(context.session_active and speaker and speaker == context.session_speaker)

        is_eoc = False
        if is_session_speaker:
            # Farewell words are removed first so "that's all I needed" is not read as a request.
            remainder, said_goodbye = _remove_farewells(low)
            follow_up = has_question(remainder, remainder.strip()) or has_request_or_command(remainder)
            is_eoc = said_goodbye and not follow_up

        question = has_question(raw, low)
        request = has_request_or_command(low)
        should = (not is_eoc) and (
            name_mentioned or ((question or request) and (name_mentioned or is_session_speaker))
        )

        if is_eoc:
            reason = "End of conversation detected"
        elif name_mentioned:
            reason = "Name mentioned"
        elif is_session_speaker:
            reason = "Active session speaker"
        elif question:
            reason = "Question detected"
        elif request:
            reason = "Request detected"
        else:
            reason = "No trigger detected"

        confidence = 0.9 if name_mentioned else 0.8 if is_session_speaker else 0.6
        return IntentResult(
            should_respond=should,
            confidence=confidence,
            reason=reason,
            is_end_of_conversation=is_eoc,
        )

    async def _classify_llm(self, text: str, speaker: str, context: ConversationContext) -> IntentResult:
        n = max(1, int(self.cfg.context_lines))
        recent = "\n".join(
            f"{c.get('speaker', '')}: {c.get('text', '')}" for c in (context.recent_captions or [])[-n:]
        )
        system_prompt = (
            f'You are an intent detection system for a voice AI agent named "{context.agent_name}".\n\n'
            "Decide TWO things about the latest message:\n"
            "1. Should the agent respond to it?\n"
            "2. Is it an end-of-conversation message (goodbye, closing thanks, \"that's all\")?\n\n"
            "RESPOND = YES when the agent's name is mentioned, it is a question or a request, a command, "
            "or a follow-up in an ongoing conversation with the agent.\n"
            "RESPOND = NO for cross-talk between other participants, messages directed at someone else, "
            "or background chatter. A bare thanks/goodbye is not a reason to respond.\n\n"
            "END OF CONVERSATION = YES only for explicit farewells or completion statements from the "
            "session speaker during an active session. Short acknowledgements like \"ok\", \"got it\", "
            "\"I see\" are NOT end of conversation. Thanks followed by another question is NOT end of "
            "conversation.\n\n"
            "Current session state:\n"
            f"- Session active: {context.session_active}\n"
            f"- Session speaker: {context.session_speaker or 'none'}\n"
            f"- Current message speaker: {speaker}\n\n"
            'Output ONLY valid JSON: {"shouldRespond": bool, "isEndOfConversation": bool, '
            '"reason": string, "confidence": number 0..1}'
        )
        user_prompt = (
            f"Recent conversation:\n{recent or '(no recent context)'}\n\n"
            f'Latest message from {speaker}:\n"{text}"\n\nAnalyze this message.'
        )
        data, raw = await self.llm_client.complete_json(
            system_prompt,
            user_prompt,
            temperature=0.1,
            max_tokens=150,
        )
        if data:
            should = bool(data.get("shouldRespond"))
            eoc = bool(data.get("isEndOfConversation"))
            reason = str(data.get("reason") or "")
            confidence = clamp_confidence(data.get("confidence"), 0.5)
        else:
            should = json_flag_best_effort(raw, "shouldRespond")
            eoc = json_flag_best_effort(raw, "isEndOfConversation")
            reason = "Parsed from non-JSON response"
            confidence = 0.5

        is_session_speaker = bool(context.session_active and speaker == context.session_speaker)
        if eoc and not is_session_speaker:
            eoc = False
        if eoc:
            should = False
        elif context.name_mentioned:
            should = True
        result = IntentResult(
            should_respond=should,
            confidence=confidence,
            reason=reason,
            is_end_of_conversation=eoc,
        )
        logger.debug("Intent decision for %s: %s", speaker, result)
        return result

    def passes_autonomous_gate(self, result: IntentResult) -> bool:
        return bool(result.should_respond and result.confidence >= float(self.cfg.autonomous_confidence_threshold))


def context_from(
    agent_name: str,
    session: Any,
    recent_captions: list[dict[str, str]] | None = None,
    *,
    name_mentioned: bool = False,
) -> ConversationContext:
    return ConversationContext(
        agent_name=agent_name,
        session_active=bool(getattr(session, "is_active", False)),
        session_speaker=getattr(session, "speaker", None),
        recent_captions=list(recent_captions or []),
        name_mentioned=bool(name_mentioned),
    )
