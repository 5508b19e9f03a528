from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SemanticSettings(BaseSettings):
    """Defaults for indexing, search and ask.

    Environment variables are prefixed with DOCGROUND_.
    """

    model_config = SettingsConfigDict(env_prefix="DOCGROUND_", extra="ignore")

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")
    db_path: str = Field(default="~/.docground/semantic.sqlite", description="Embedding store used by the CLI")

    # --- Embeddings ---
    embedding_model: str = "bge-m3"
    fallback_embedding_model: str = "nomic-embed-text"
    embedding_concurrency: int = Field(default=2, description="Embedding batches in flight")
    embedding_batch_size: int = 8

    # --- Chunking ---
    chunk_target_min_chars: int = 1200
    chunk_target_max_chars: int = 1800
    chunk_overlap_chars: int = 200

    # --- Interactive search ---
    search_top_k: int = 20
    search_rerank_candidate_multiplier: int = 3
    search_snippet_radius: int = 120

    # --- Ask (standard models) ---
    ask_top_k: int = 8
    ask_min_citations_overall: int = 2
    ask_rerank_candidate_multiplier: int = 3
    ask_max_chunk_chars_for_prompt: int = 2000
    ask_generation_num_ctx: int = 3072

    # --- Ask (small models) ---
    ask_small_model_max_billions: float = 4
    ask_small_top_k: int = 4
    ask_small_max_chunk_chars_for_prompt: int = 1000
    ask_small_generation_num_ctx: int = 2048
    ask_small_min_citations_overall: int = 1

    # --- Rerank blend ---
    rerank_w_semantic: float = 0.65
    rerank_w_coverage: float = 0.25
    rerank_w_density: float = 0.08
    rerank_w_phrase: float = 0.02

    # --- Ollama ---
    ollama_base_url: str = Field(default="http://localhost:11434", description="Local only")
    ollama_timeout_s: float = 30.0
    generation_model: str | None = None


settings = SemanticSettings()
