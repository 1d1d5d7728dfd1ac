from __future__ import annotations

import re

_CITATION_RE = re.compile(r"\[(?:doc)?\d+\]", re.IGNORECASE)
_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_URL_RE = re.compile(r"https?://\S+")
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1")
_ITALIC_RE = re.compile(r"(?<![\w*])[*_]([^*_\n]+)[*_](?![\w*])")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*[-*+]\s+", re.MULTILINE)
_CODE_RE = re.compile(r"`{1,3}([^`]*)`{1,3}")
_TAG_RE = re.compile(r"<[^>]+>")

CHAT_PREFIX = "\U0001F916 "  # robot face


def prepare_for_speech(text: str) -> str:
    """Strips citations, links and markdown so TTS reads only prose."""
    s = text or ""
    s = _CITATION_RE.sub("", s)
    s = _MD_LINK_RE.sub(r"\1", s)
    s = _URL_RE.sub("", s)
    s = _CODE_RE.sub(r"\1", s)
    s = _BOLD_RE.sub(r"\2", s)
    s = _ITALIC_RE.sub(r"\1", s)
    s = _HEADING_RE.sub("", s)
    s = _BULLET_RE.sub("", s)
    s = _TAG_RE.sub("", s)
    s = " ".join(s.split())
    return re.sub(r"\s+([.,!?;:])", r"\1", s)


def format_for_chat(text: str) -> str:
    body = (text or "").strip()
    if body.startswith(CHAT_PREFIX):
        return body
    return CHAT_PREFIX + body
