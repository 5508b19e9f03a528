from __future__ import annotations

import glob
import json
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass

from .types import Document

logger = logging.getLogger(__name__)


class Source:
    def iter_documents(self) -> Iterable[Document]:
        raise NotImplementedError


@dataclass
class JSONDocumentsSource(Source):
    """A JSON file holding a list of `{id, title, type, content}` objects.

    A top-level object with a `documents` list is accepted too.
    """

    path: str

    def iter_documents(self) -> Iterable[Document]:
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        rows = data.get("documents", []) if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise ValueError(f"{self.path}: expected a list of documents")
        for row in rows:
            if not isinstance(row, dict) or not row.get("id"):
                logger.warning("%s: skipping entry without id", self.path)
                continue
            yield Document(
                id=str(row["id"]),
                title=str(row.get("title") or "Untitled document"),
                type=str(row.get("type") or "text"),
                content=str(row.get("content") or ""),
            )


@dataclass
class FileGlobSource(Source):
    """Plain-text files matched by a glob; ids are paths relative to `root`."""

    path_glob: str
    root: str | None = None

    def iter_documents(self) -> Iterable[Document]:
        root = self.root or _glob_root(self.path_glob)
        for p in sorted(glob.glob(self.path_glob, recursive=True)):
            if os.path.isdir(p):
                continue
            try:
                with open(p, encoding="utf-8", errors="replace") as f:
                    text = f.read()
            except FileNotFoundError:
                continue
            doc_id = os.path.relpath(p, root).replace(os.sep, "/")
            yield Document(id=doc_id, title=os.path.basename(p), type="text", content=text)


def _glob_root(pattern: str) -> str:
    head = pattern
    while glob.has_magic(head):
        head = os.path.dirname(head)
    return head or "."


def load_documents_json(path: str) -> list[Document]:
    return list(JSONDocumentsSource(path).iter_documents())


def source_for(location: str) -> Source:
    """`*.json` files load as document lists, directories as `**/*.txt` and `**/*.md`, anything else as a glob."""
    if os.path.isfile(location) and location.lower().endswith(".json"):
        return JSONDocumentsSource(location)
    if os.path.isdir(location):
        return _DirectorySource(location)
    return FileGlobSource(path_glob=location)


@dataclass
class _DirectorySource(Source):
    path: str

    def iter_documents(self) -> Iterable[Document]:
        seen: set[str] = set()
        for pattern in ("**/*.txt", "**/*.md"):
            src = FileGlobSource(path_glob=os.path.join(self.path, pattern), root=self.path)
            for doc in src.iter_documents():
                if doc.id not in seen:
                    seen.add(doc.id)
                    yield doc


def collect_documents(locations: Iterable[str]) -> list[Document]:
    docs: list[Document] = []
    for location in locations:
        docs.extend(source_for(location).iter_documents())
    return docs
