from __future__ import annotations

import json

from click.testing import CliRunner

from conftest import FakeEmbedder
from docground.cli import cli
from docground.indexer import run_incremental_indexing


class TestCli:
    """Commands that need no Ollama server."""

    def test_profile(self):
        result = CliRunner().invoke(cli, ["profile", "qwen3:4b"])
        assert result.exit_code == 0
        assert "loose" in result.output

    def test_status(self, db_path):
        run_incremental_indexing(
            db_path=db_path,
            documents=[{"id": "a", "content": "Alpha paragraph. " * 20}],
            embed_many=FakeEmbedder(),
            model_name="toy",
            chunk_min=100,
            chunk_max=150,
        )
        result = CliRunner().invoke(cli, ["status", "--db", db_path])
        assert result.exit_code == 0
        assert "toy" in result.output
        assert "1 indexed documents" in result.output

    def test_status_on_unopenable_store(self, tmp_path):
        result = CliRunner().invoke(cli, ["status", "--db", str(tmp_path)])
        assert result.exit_code == 1
        assert "STORE_OPEN_FAILED" in result.output


class StubOllamaClient:
    instances: list[StubOllamaClient] = []

    def __init__(self, embed_many=None):
        self.embed_many = embed_many or FakeEmbedder()
        self.closed = False
        StubOllamaClient.instances.append(self)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _failing_embedder(texts, *, model_name):
    raise RuntimeError("embedder down")


class TestIndexCommand:
    """`index` with the Ollama client swapped for a stub."""

    def _docs(self, tmp_path):
        path = tmp_path / "docs.json"
        path.write_text(json.dumps([{"id": "a", "title": "A", "content": "Alpha paragraph. " * 40}]))
        return str(path)

    def test_indexes_and_closes_client(self, tmp_path, db_path, monkeypatch):
        StubOllamaClient.instances.clear()
        monkeypatch.setattr("docground.cli.OllamaClient", StubOllamaClient)
        result = CliRunner().invoke(cli, ["index", self._docs(tmp_path), "--db", db_path, "--embedding-model", "toy"])
        assert result.exit_code == 0, result.output
        assert "indexed_docs" in result.output
        assert [c.closed for c in StubOllamaClient.instances] == [True]

    def test_client_closed_on_failure(self, tmp_path, db_path, monkeypatch):
        StubOllamaClient.instances.clear()
        monkeypatch.setattr("docground.cli.OllamaClient", lambda: StubOllamaClient(_failing_embedder))
        result = CliRunner().invoke(cli, ["index", self._docs(tmp_path), "--db", db_path, "--embedding-model", "toy"])
        assert result.exit_code == 1
        assert "INDEX_FAILED" in result.output
        assert [c.closed for c in StubOllamaClient.instances] == [True]
