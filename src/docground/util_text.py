from __future__ import annotations

import hashlib
import re

_WHITESPACE_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^\w\s]|_")

PREVIEW_MAX_CHARS = 220


def canonicalize_text(text: str | None) -> str:
    """Line-ending normalization applied before hashing and chunking.

    Offsets of chunks refer to the canonical text, so nothing else is touched.
    """
    if text is None:
        return ""
    return str(text).replace("\r\n", "\n").replace("\r", "\n")


def sha256_hex(text: str | None) -> str:
    return hashlib.sha256(str(text or "").encode("utf-8")).hexdigest()


def to_preview(text: str | None, limit: int = PREVIEW_MAX_CHARS) -> str:
    compact = _WHITESPACE_RE.sub(" ", str(text or "")).strip()
    if len(compact) > limit:
        return compact[: limit - 3] + "..."
    return compact


def normalize_for_match(text: str | None) -> str:
    """Lower-case, letters/digits only, single spaces."""
    if not text:
        return ""
    t = str(text).lower().replace("\r\n", "\n").replace("\r", "\n")
    t = _NON_WORD_RE.sub(" ", t)
    return _WHITESPACE_RE.sub(" ", t).strip()


def tokenize(text: str | None) -> list[str]:
    norm = normalize_for_match(text)
    if not norm:
        return []
    return [tok for tok in norm.split(" ") if len(tok) > 1]
