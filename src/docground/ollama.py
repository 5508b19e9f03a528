from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from urllib.parse import urlsplit

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .errors import OllamaError
from .settings import settings

logger = logging.getLogger(__name__)

LOCAL_HOSTS = {"localhost", "127.0.0.1"}
MIN_NUM_CTX = 1024

TransientHttpError = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


def assert_local_base_url(base_url: str | None) -> str:
    """Return `scheme://host[:port]` for a local endpoint or raise OllamaError."""
    raw = str(base_url or "").strip()
    if not raw:
        raise OllamaError("Ollama base URL is empty.", "OLLAMA_INVALID_BASE_URL")
    try:
        parts = urlsplit(raw)
        hostname = parts.hostname
        parts.port  # raises ValueError for a malformed port
    except ValueError as e:
        raise OllamaError("Ollama base URL is invalid.", "OLLAMA_INVALID_BASE_URL") from e
    if parts.scheme not in {"http", "https"} or not hostname:
        raise OllamaError("Ollama base URL is invalid.", "OLLAMA_INVALID_BASE_URL")
    if hostname not in LOCAL_HOSTS:
        raise OllamaError(
            "Only local Ollama endpoints are allowed (localhost/127.0.0.1).", "OLLAMA_NON_LOCAL_BASE_URL"
        )
    return f"{parts.scheme}://{parts.netloc}"


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("error") or body.get("message")
        if detail:
            return str(detail)
    return resp.text or f"HTTP {resp.status_code}"


class OllamaClient:
    """Synchronous client for a local Ollama server.

    One client per process is enough; it is safe to share across the
    embedding threads of an indexing run.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout_s: float | None = None,
        retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = assert_local_base_url(base_url or settings.ollama_base_url)
        timeout = settings.ollama_timeout_s if timeout_s is None else timeout_s
        self.retries = max(1, int(retries))
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout if timeout and timeout > 0 else None),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OllamaClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _send(self, method: str, path: str, body: dict[str, Any] | None = None) -> httpx.Response:
        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential_jitter(initial=0.5, max=5.0),
            retry=retry_if_exception_type(TransientHttpError),
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self._client.request(method, path, json=body)
        except httpx.TimeoutException as e:
            raise OllamaError(
                "Ollama request timed out. Verify local model and try again.", "OLLAMA_TIMEOUT"
            ) from e
        except httpx.HTTPError as e:
            raise OllamaError(
                f"Could not reach Ollama at {self.base_url}. Start Ollama and try again.", "OLLAMA_UNREACHABLE"
            ) from e
        raise OllamaError(f"Could not reach Ollama at {self.base_url}.", "OLLAMA_UNREACHABLE")

    def _request_json(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = self._send(method, path, body)
        if resp.is_error:
            raise OllamaError(f"Ollama request failed: {_error_detail(resp)}", "OLLAMA_HTTP_ERROR")
        try:
            data = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return data if isinstance(data, dict) else {}

    def list_models(self) -> list[str]:
        body = self._request_json("GET", "/api/tags")
        rows = body.get("models") if isinstance(body.get("models"), list) else []
        names = [str((row or {}).get("name") or "").strip() for row in rows if isinstance(row, dict)]
        return [n for n in names if n]

    def is_reachable(self) -> bool:
        try:
            self.list_models()
        except OllamaError as e:
            logger.debug("Ollama not reachable: %s", e.message)
            return False
        return True

    def embed_text(self, model_name: str, prompt: str) -> list[float]:
        model = str(model_name or "").strip()
        if not model:
            raise OllamaError("Embedding model name is empty.", "MODEL_MISSING")
        try:
            body = self._request_json("POST", "/api/embeddings", {"model": model, "prompt": str(prompt or "")})
        except OllamaError as e:
            lower = e.message.lower()
            if e.code == "OLLAMA_HTTP_ERROR" and "model" in lower and "not found" in lower:
                raise OllamaError(
                    f'Model "{model}" is not available locally. Pull it first: ollama pull {model}',
                    "MODEL_NOT_FOUND",
                ) from e
            raise

        vector = body.get("embedding")
        if not isinstance(vector, list) or not vector:
            err = str(body.get("error") or "").lower()
            if "model" in err and "not found" in err:
                raise OllamaError(
                    f'Model "{model}" is not available locally. Pull it first: ollama pull {model}',
                    "MODEL_NOT_FOUND",
                )
            raise OllamaError("Ollama returned an invalid embedding payload.", "INVALID_EMBEDDING_PAYLOAD")
        out: list[float] = []
        for v in vector:
            try:
                out.append(float(v))
            except (TypeError, ValueError):
                out.append(0.0)
        return out

    def embed_many(
        self, texts: Sequence[str], *, model_name: str, concurrency: int | None = None
    ) -> list[list[float]]:
        """Embed `texts` in order, with up to `concurrency` requests in flight."""
        model = str(model_name or "").strip()
        if not model:
            raise OllamaError("Embedding model name is empty.", "MODEL_MISSING")
        items = list(texts or [])
        if not items:
            return []
        workers = max(1, int(concurrency or settings.embedding_concurrency))
        if workers == 1 or len(items) == 1:
            return [self.embed_text(model, t) for t in items]
        with ThreadPoolExecutor(max_workers=min(workers, len(items)), thread_name_prefix="ollama") as pool:
            return list(pool.map(lambda t: self.embed_text(model, t), items))

    def chat(
        self,
        model_name: str,
        system_prompt: str,
        user_prompt: str,
        *,
        json_mode: bool = True,
        num_ctx: int | None = None,
    ) -> str:
        """Single non-streaming chat turn; returns the assistant content.

        Servers that reject `format: json` are retried once without it.
        """
        model = str(model_name or "").strip()
        if not model:
            raise OllamaError("Generation model name is empty.", "MODEL_MISSING")
        body: dict[str, Any] = {
            "model": model,
            "stream": False,
            "options": {"num_ctx": max(MIN_NUM_CTX, int(num_ctx or settings.ask_generation_num_ctx))},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if json_mode:
            body["format"] = "json"

        resp = self._send("POST", "/api/chat", body)
        if resp.is_error and json_mode:
            lower = resp.text.lower()
            if "format" in lower and ("invalid" in lower or "unknown" in lower):
                logger.info("Model %s rejected JSON format; retrying as plain text", model)
                body.pop("format", None)
                resp = self._send("POST", "/api/chat", body)
        if resp.is_error:
            raise OllamaError(f"Generation failed: {_error_detail(resp)}", "OLLAMA_HTTP_ERROR")
        try:
            payload = resp.json()
        except ValueError as e:
            raise OllamaError("Ollama returned a non-JSON chat response.", "OLLAMA_HTTP_ERROR") from e
        message = payload.get("message") if isinstance(payload, dict) else None
        return str((message or {}).get("content") or "")

    def generate(self, model_name: str):
        """Adapt `chat` to the `generate(system, user, *, json_mode, num_ctx)` shape."""

        def _generate(system_prompt: str, user_prompt: str, *, json_mode: bool = True, num_ctx: int | None = None) -> str:
            return self.chat(model_name, system_prompt, user_prompt, json_mode=json_mode, num_ctx=num_ctx)

        return _generate
