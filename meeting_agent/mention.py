from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from typing import Iterable

from meeting_agent.llm import clamp_confidence, json_flag_best_effort
from meeting_agent.models import MentionResult

logger = logging.getLogger(__name__)


_MENTION_SPAN_RE = re.compile(
    r'<span[^>]*itemtype="http://schema\.skype\.com/Mention"[^>]*>([^<]+)</span>',
    re.IGNORECASE,
)
_PARA_BREAK_RE = re.compile(r"</p>\s*<p[^>]*>", re.IGNORECASE)
_PARA_TAG_RE = re.compile(r"</?p[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_WORD_STRIP_CHARS = ".,!?;:\"'()[]{}"

_PHONETIC_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"ph"), "f"),
    (re.compile(r"ck"), "k"),
    (re.compile(r"ee"), "i"),
    (re.compile(r"ea"), "e"),
    (re.compile(r"oo"), "u"),
    (re.compile(r"ou"), "ow"),
    (re.compile(r"ie"), "y"),
    (re.compile(r"ey"), "ee"),
    (re.compile(r"y$"), "ie"),
    (re.compile(r"v"), "b"),
    (re.compile(r"th"), "d"),
    (re.compile(r"s$"), "z"),
]

# Frequent speech-to-text confusions for short names and generic agent words.
_COMMON_MISHEARINGS: dict[str, list[str]] = {
    "steve": ["steev", "steven", "steph", "step", "sleeve", "steep"],
    "john": ["jon", "joan", "jean", "jan"],
    "mike": ["mic", "mick", "myke", "bike"],
    "alex": ["alec", "alexis", "elec"],
    "sam": ["san", "psalm", "sham"],
    "max": ["macs", "match"],
    "dan": ["den", "then", "tan"],
    "tom": ["thom", "tim", "tum"],
    "bob": ["bop", "pop", "rob"],
    "jim": ["gym", "gem", "tim"],
    "joe": ["jo", "joey", "show"],
    "ben": ["been", "bin", "pen"],
    "ray": ["rey", "rae", "way"],
    "lee": ["li", "lea", "leigh"],
    "amy": ["aimee", "aim", "emmy"],
    "anna": ["ana", "anya", "hannah"],
    "kate": ["cate", "kay", "kait"],
    "lisa": ["leesa", "liza", "elisa"],
    "sara": ["sarah", "sera", "zara"],
    "emma": ["ema", "emmer", "ima"],
    "copilot": ["co-pilot", "co pilot", "cope pilot", "copy lot"],
    "assistant": ["assist ant", "assistance", "a system"],
    "ai": ["a i", "hey", "ay", "eye"],
    "agent": ["a gent", "aged", "urgent"],
}

_QUESTION_STARTERS = (
    "what", "when", "where", "who", "whom", "whose", "why", "which", "how",
    "can", "could", "would", "should", "will", "is", "are", "do", "does", "did",
    "have", "has", "may", "might", "shall",
)

_REQUEST_PHRASES = (
    "tell me", "explain", "describe", "show me", "help", "find",
    "search", "give me", "i want", "i need", "let me know",
    "can you", "could you", "would you", "please",
)


def strip_html(value: str) -> str:
    text = _TAG_RE.sub("", value or "")
    text = html.unescape(text).replace("\xa0", " ")
    return " ".join(text.split())


def extract_message_text(content: str) -> str:
    """Plain text of a chat message; mention spans keep only the mentioned name."""
    text = _MENTION_SPAN_RE.sub(lambda m: m.group(1), content or "")
    text = _PARA_BREAK_RE.sub(" ", text)
    text = _PARA_TAG_RE.sub("", text)
    return strip_html(text)


def contains_question_or_request(text: str) -> bool:
    raw = text or ""
    if "?" in raw:
        return True
    low = raw.lower().strip()
    for starter in _QUESTION_STARTERS:
        if low.startswith(starter + " "):
            return True
    return any(phrase in low for phrase in _REQUEST_PHRASES)


def generate_name_variations(full_name: str) -> list[str]:
    name = " ".join((full_name or "").lower().split())
    if not name:
        return []
    variations = [name]
    parts = [p for p in name.split(" ") if len(p) > 2]
    for part in parts:
        if part not in variations:
            variations.append(part)
    if len(parts) >= 2:
        combo = f"{parts[0]} {parts[-1][0]}"
        if combo not in variations:
            variations.append(combo)
    return variations


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                cur[j] = prev[j - 1]
            else:
                cur[j] = 1 + min(prev[j], cur[j - 1], prev[j - 1])
        prev = cur
    return prev[-1]


def similarity(a: str, b: str) -> float:
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - (levenshtein_distance(a, b) / max_len)


@dataclass
class MentionConfig:
    fuzzy_match_threshold: float = 0.75
    # Local matches at or above this skip the LLM check entirely.
    llm_ambiguous_threshold: float = 0.85
    # Below this (or no match) the LLM is also asked about indirect references.
    llm_min_confidence_threshold: float = 0.50
    llm_enabled: bool = True
    min_fuzzy_word_len: int = 3


class MentionDetector:
    def __init__(
        self,
        agent_name: str,
        variations: Iterable[str] | None = None,
        *,
        cfg: MentionConfig | None = None,
        llm_client=None,
    ):
        self.cfg = cfg or MentionConfig()
        self.agent_name = (agent_name or "").strip()
        extra = [str(v).lower().strip() for v in (variations or []) if str(v).strip()]
        self.variations = generate_name_variations(self.agent_name)
        for v in extra:
            if v not in self.variations:
                self.variations.append(v)
        self.phonetic_variations = self._build_phonetic_variations(self.variations)
        self.llm_client = llm_client
        logger.debug(
            "Mention detector ready name=%r variations=%s llm=%s",
            self.agent_name,
            self.variations,
            self.llm_enabled,
        )

    @property
    def llm_enabled(self) -> bool:
        return bool(self.cfg.llm_enabled and self.llm_client is not None)

    @staticmethod
    def _build_phonetic_variations(variations: list[str]) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for variation in variations:
            versions = [variation]
            for pattern, repl in _PHONETIC_RULES:
                alt = pattern.sub(repl, variation)
                if alt != variation and alt not in versions:
                    versions.append(alt)
            for alt in _COMMON_MISHEARINGS.get(variation, []):
                if alt not in versions:
                    versions.append(alt)
            out[variation] = versions
        return out

    def detect_mention(self, text: str) -> MentionResult:
        low = (text or "").lower()
        if not low.strip() or not self.variations:
            return MentionResult()

        for variation in self.variations:
            if variation in low:
                return MentionResult(True, variation, 1.0, False)

        for original, versions in self.phonetic_variations.items():
            for alt in versions:
                if alt in low:
                    return MentionResult(True, original, 0.9, True)

        threshold = float(self.cfg.fuzzy_match_threshold)
        for raw_word in low.split():
            word = raw_word.strip(_WORD_STRIP_CHARS)
            if len(word) < int(self.cfg.min_fuzzy_word_len):
                continue
            for variation in self.variations:
                score = similarity(word, variation)
                if score >= threshold:
                    return MentionResult(True, variation, score, True)

        return MentionResult()

    async def detect_mention_hybrid(self, text: str, recent_context: list[str] | None = None) -> MentionResult:
        local = self.detect_mention(text)
        if local.is_mentioned and local.confidence >= float(self.cfg.llm_ambiguous_threshold):
            return local
        if not self.llm_enabled:
            return local

        check_indirect = (not local.is_mentioned) or local.confidence < float(self.cfg.llm_min_confidence_threshold)
        try:
            data = await self._llm_analyze(text, recent_context or [], check_indirect=check_indirect)
        except Exception as e:
            logger.warning("LLM mention check failed, using local result: %s", e)
            return local

        if not data.get("nameDetected"):
            return local
        detected_as = data.get("detectedAs")
        result = MentionResult(
            is_mentioned=True,
            matched_variation=str(detected_as) if detected_as else self.agent_name,
            confidence=clamp_confidence(data.get("confidence"), 0.6),
            fuzzy_match=True,
            llm_enhanced=True,
            indirect_reference=bool(data.get("isIndirectReference")),
        )
        logger.info(
            "LLM detected agent reference as=%r confidence=%.2f indirect=%s",
            result.matched_variation,
            result.confidence,
            result.indirect_reference,
        )
        return result

    async def _llm_analyze(self, text: str, recent_context: list[str], *, check_indirect: bool) -> dict:
        context_str = ""
        if recent_context:
            context_str = "\nRecent conversation:\n" + "\n".join(recent_context[-3:]) + "\n"
        indirect_rule = (
            'Indirect references like "the AI", "the assistant", "the bot", "you" (when clearly '
            'addressing the agent), "hey assistant".'
            if check_indirect
            else "Direct name mentions only."
        )
        system_prompt = (
            f'You are an agent mention detection system. The AI agent\'s name is "{self.agent_name}" '
            f"(variations: {', '.join(self.variations)}).\n\n"
            "Determine if the speaker is trying to address or mention the AI agent.\n\n"
            "DETECT AS MENTIONED when:\n"
            '1. The agent\'s name is used, even if misheard or misspelled.\n'
            f"2. {indirect_rule}\n"
            '3. Wake words like "hey [name]", "ok [name]", "excuse me [name]".\n\n'
            "DO NOT DETECT when:\n"
            "- Talking about AI/assistants in general, not THIS agent\n"
            "- The name is mentioned but clearly talking TO someone else\n"
            "- Casual conversation not involving the agent\n"
            f"{context_str}\n"
            "Output ONLY valid JSON with keys: correctedText (string), nameDetected (boolean), "
            "detectedAs (string or null), isIndirectReference (boolean), confidence (number 0..1), "
            "reasoning (string)."
        )
        data, raw = await self.llm_client.complete_json(
            system_prompt,
            f'Analyze this caption: "{text}"',
            temperature=0.1,
            max_tokens=200,
        )
        if data:
            return data
        detected = json_flag_best_effort(raw, "nameDetected")
        return {
            "nameDetected": detected,
            "detectedAs": self.agent_name if detected else None,
            "isIndirectReference": False,
            "confidence": 0.6 if detected else 0.0,
        }

    def detect_chat_mention(self, content: str) -> MentionResult:
        raw = content or ""
        for m in _MENTION_SPAN_RE.finditer(raw):
            mentioned = html.unescape(m.group(1)).lower().strip()
            if not mentioned:
                continue
            for variation in self.variations:
                if variation in mentioned or mentioned in variation:
                    return MentionResult(True, variation, 1.0, False)

        low = raw.lower()
        for variation in self.variations:
            if f"@{variation}" in low:
                return MentionResult(True, variation, 1.0, False)

        plain = extract_message_text(raw).lower()
        for variation in self.variations:
            if variation in plain:
                return MentionResult(True, variation, 1.0, False)
        return MentionResult()

    def is_mention_of_agent(self, text: str) -> bool:
        return self.detect_mention(text).is_mentioned
