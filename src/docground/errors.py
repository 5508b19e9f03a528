from __future__ import annotations

from typing import Any

STORE_OPEN_FAILED = "STORE_OPEN_FAILED"
INDEX_FAILED = "INDEX_FAILED"
INDEX_CANCELLED = "INDEX_CANCELLED"
SEARCH_FAILED = "SEARCH_FAILED"
PARSE_FAILED = "PARSE_FAILED"
ASK_FAILED = "ASK_FAILED"
ASK_CANCELLED = "ASK_CANCELLED"


class SemanticError(Exception):
    """Base error carrying a stable machine-readable code."""

    default_code = "SEMANTIC_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_payload(self) -> dict[str, Any]:
        return {"ok": False, "code": self.code, "message": self.message}


class StoreOpenError(SemanticError):
    default_code = STORE_OPEN_FAILED


class IndexFailedError(SemanticError):
    default_code = INDEX_FAILED


class IndexCancelledError(SemanticError):
    default_code = INDEX_CANCELLED

    def __init__(self, message: str = "Indexing cancelled."):
        super().__init__(message)


class SearchFailedError(SemanticError):
    default_code = SEARCH_FAILED


class AskParseError(SemanticError):
    """Raised when no JSON-shaped answer can be recovered from model output."""

    default_code = PARSE_FAILED


class AskFailedError(SemanticError):
    default_code = ASK_FAILED


class AskCancelledError(SemanticError):
    default_code = ASK_CANCELLED

    def __init__(self, message: str = "Ask request cancelled."):
        super().__init__(message)


class OllamaError(SemanticError):
    default_code = "OLLAMA_ERROR"
