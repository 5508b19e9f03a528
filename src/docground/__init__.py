"""
docground

Local semantic indexing, search and citation-grounded answers over a
document collection, backed by a single SQLite embedding store.
"""

__version__ = "0.1.0"

from .ask_core import ask_question, parse_and_validate_ask_output, retrieve_top_k_chunks
from .errors import SemanticError
from .indexer import IndexResult, run_incremental_indexing
from .search import search_top_k
from .storage_sqlite import SemanticStore, open_store
from .types import Document

__all__ = [
    "__version__",
    "Document",
    "IndexResult",
    "SemanticError",
    "SemanticStore",
    "ask_question",
    "open_store",
    "parse_and_validate_ask_output",
    "retrieve_top_k_chunks",
    "run_incremental_indexing",
    "search_top_k",
]
