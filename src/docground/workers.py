from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import INDEX_CANCELLED, INDEX_FAILED, SEARCH_FAILED, SemanticError
from .indexer import run_incremental_indexing
from .search import SearchRequest, search_top_k

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
    payload: dict[str, Any]


@dataclass(frozen=True)
class Done:
    result: dict[str, Any]


@dataclass(frozen=True)
class Cancelled:
    code: str = INDEX_CANCELLED
    message: str = "Indexing cancelled."


@dataclass(frozen=True)
class Error:
    code: str
    message: str


Message = Union[Progress, Done, Cancelled, Error]
TERMINAL = (Done, Cancelled, Error)


@dataclass
class WorkerHandle:
    """Owner-side view of a background job.

    Messages arrive in order; exactly one of Done, Cancelled or Error ends
    the stream.
    """

    inbox: queue.Queue[Message]
    thread: threading.Thread | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    _terminal: Message | None = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def messages(self, timeout: float | None = None) -> Iterator[Message]:
        if self._terminal is not None:
            return
        while True:
            msg = self.inbox.get(timeout=timeout)
            if isinstance(msg, TERMINAL):
                self._terminal = msg
                yield msg
                return
            yield msg

    def result(self, timeout: float | None = None) -> Message:
        """Drain messages and return the terminal one."""
        for _msg in self.messages(timeout=timeout):
            pass
        if self.thread is not None:
            self.thread.join(timeout=timeout)
        if self._terminal is None:
            raise RuntimeError("worker stream ended without a terminal message")
        return self._terminal


def _start(name: str, target: Callable[[WorkerHandle], None]) -> WorkerHandle:
    inbox: queue.Queue[Message] = queue.Queue()
    handle = WorkerHandle(inbox=inbox)
    handle.thread = threading.Thread(target=target, args=(handle,), name=name, daemon=True)
    handle.thread.start()
    return handle


def start_indexing_worker(**options: Any) -> WorkerHandle:
    """Run run_incremental_indexing on a worker thread.

    `options` are passed through except `should_cancel` and `on_progress`,
    which the worker wires to its cancel flag and message queue.
    """
    options.pop("should_cancel", None)
    options.pop("on_progress", None)

    def _run(handle: WorkerHandle) -> None:
        post = handle.inbox.put
        try:
            result = run_incremental_indexing(
                **options,
                should_cancel=handle.cancel_event.is_set,
                on_progress=lambda payload: post(Progress(dict(payload))),
            )
        except SemanticError as e:
            if e.code == INDEX_CANCELLED:
                post(Cancelled(e.code, e.message))
            else:
                post(Error(e.code or INDEX_FAILED, e.message))
            return
        except Exception as e:
            logger.exception("Indexing worker crashed")
            post(Error(INDEX_FAILED, str(e) or e.__class__.__name__))
            return

        # a cancel that arrived after the last checkpoint still wins
        if handle.cancel_event.is_set():
            post(Cancelled())
        else:
            post(Done(result.to_payload()))

    return _start("docground-index", _run)


def start_search_worker(request: SearchRequest | Mapping[str, Any]) -> WorkerHandle:
    def _run(handle: WorkerHandle) -> None:
        try:
            handle.inbox.put(Done(search_top_k(request)))
        except SemanticError as e:
            handle.inbox.put(Error(e.code or SEARCH_FAILED, e.message))
        except Exception as e:
            logger.exception("Search worker crashed")
            handle.inbox.put(Error(SEARCH_FAILED, str(e) or e.__class__.__name__))

    return _start("docground-search", _run)
