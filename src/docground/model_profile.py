from __future__ import annotations

import re
from typing import Any

from .settings import settings
from .types import ModelProfile

_SIZE_B_RE = re.compile(r"(^|[:/ _-])(\d+(?:\.\d+)?)\s*b(?=$|[:/ _.-])", re.IGNORECASE)
_SIZE_M_RE = re.compile(r"(^|[:/ _-])(\d+(?:\.\d+)?)\s*m(?=$|[:/ _.-])", re.IGNORECASE)


def infer_model_size_billions(model_name: str | None) -> float | None:
    """Parameter count hint from a tag like `qwen3:4b` or `tiny:350m`."""
    raw = str(model_name or "").strip().lower()
    if not raw:
        return None

    m = _SIZE_B_RE.search(raw)
    if m:
        value = float(m.group(2))
        return value if value > 0 else None

    m = _SIZE_M_RE.search(raw)
    if m:
        value = float(m.group(2))
        return value / 1000 if value > 0 else None

    return None


def _num(defaults: Any, name: str, fallback: float) -> float:
    value = getattr(defaults, name, None)
    return float(value) if value else fallback


def get_ask_model_profile(model_name: str | None, defaults: Any = None) -> ModelProfile:
    """Pick ask-pipeline parameters for a generation model.

    Models at or below the small-model threshold get loose mode and smaller
    budgets; larger or unrecognized models get strict mode.
    """
    d = defaults if defaults is not None else settings
    size = infer_model_size_billions(model_name)
    threshold = _num(d, "ask_small_model_max_billions", 4)

    if size is not None and size <= threshold:
        return ModelProfile(
            size_billions=size,
            is_small_model=True,
            recommended_mode="loose",
            top_k=int(_num(d, "ask_small_top_k", 4)),
            max_prompt_chunk_chars=int(_num(d, "ask_small_max_chunk_chars_for_prompt", 1000)),
            num_ctx=int(_num(d, "ask_small_generation_num_ctx", 2048)),
            min_citations_overall=int(_num(d, "ask_small_min_citations_overall", 1)),
        )
    return ModelProfile(
        size_billions=size,
        is_small_model=False,
        recommended_mode="strict",
        top_k=int(_num(d, "ask_top_k", 8)),
        max_prompt_chunk_chars=int(_num(d, "ask_max_chunk_chars_for_prompt", 2000)),
        num_ctx=int(_num(d, "ask_generation_num_ctx", 3072)),
        min_citations_overall=int(_num(d, "ask_min_citations_overall", 2)),
    )
