from __future__ import annotations

import json
from dataclasses import dataclass

from .util_text import canonicalize_text, sha256_hex


def content_fingerprint(content: str | None) -> str:
    return sha256_hex(canonicalize_text(content))


def chunk_text_hash(text: str) -> str:
    return sha256_hex(text)


def chunking_params_fingerprint(
    *, chunk_min: int, chunk_max: int, chunk_overlap: int, model_name: str
) -> str:
    """Fingerprint of everything besides content that shapes stored chunks.

    The embedding model is part of it so switching models re-indexes.
    """
    payload = json.dumps(
        {
            "chunk_min": int(chunk_min),
            "chunk_max": int(chunk_max),
            "chunk_overlap": int(chunk_overlap),
            "model_name": model_name,
        },
        sort_keys=True,
    )
    return sha256_hex(payload)


@dataclass(frozen=True)
class DocFingerprints:
    content: str
    chunking_params: str

    def matches(self, content: str | None, chunking_params: str | None) -> bool:
        return self.content == content and self.chunking_params == chunking_params
