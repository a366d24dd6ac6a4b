"""
Shared test fixtures: tiny knowledge files and deterministic stand-ins for the
embedding and completion services.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pytest

# Make the package importable without installing it
sys.path.insert(0, str(Path(__file__).parent.parent))

from kbchat.config import Settings
from kbchat.errors import CompletionError
from kbchat.profiles import get_profile
from kbchat.utils.embedding_utils import Embedder
from kbchat.utils.generation import Completer


def make_record(title: str, embedding: Optional[List[float]], summary: str = "", **extra: Any) -> Dict[str, Any]:
    record: Dict[str, Any] = {"title": title, "summary": summary or f"About {title.lower()}."}
    if embedding is not None:
        record["embedding"] = embedding
    record.update(extra)
    return record


class FakeCompleter(Completer):
    """Yields canned chunks and remembers what it was asked."""

    mode = "fake"

    def __init__(self, chunks: Sequence[str] = ("Hello", ", ", "world"), fail_at: Optional[int] = None):
        self.chunks = list(chunks)
        self.fail_at = fail_at
        self.calls: List[Dict[str, Any]] = []

    def stream(self, messages, entries=()):
        self.calls.append({"messages": list(messages), "entries": list(entries)})
        for i, chunk in enumerate(self.chunks):
            if self.fail_at == i:
                raise CompletionError("backend exploded", provider=self.mode)
            yield chunk
        if self.fail_at is not None and self.fail_at >= len(self.chunks):
            raise CompletionError("backend exploded", provider=self.mode)


def make_embedder(table: Dict[str, List[float]], default: Optional[List[float]] = None) -> Embedder:
    """Embedder whose vectors come from ``table`` (keyed by exact text)."""

    def embed_batch(texts: List[str]) -> List[List[float]]:
        out = []
        for t in texts:
            if t in table:
                out.append(table[t])
            elif default is not None:
                out.append(default)
            else:
                raise RuntimeError(f"no fake vector for {t!r}")
        return out

    return Embedder("fake", "fake-model", embed_batch)


@pytest.fixture
def profile():
    return get_profile("v2")


@pytest.fixture
def write_kb(tmp_path):
    """Write ``records`` (or raw text) to a knowledge file and return its path."""

    def _write(records: Any, name: str = "kb.json") -> str:
        path = tmp_path / name
        if isinstance(records, str):
            path.write_text(records, encoding="utf-8")
        else:
            path.write_text(json.dumps(records), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def sample_records() -> List[Dict[str, Any]]:
    return [
        make_record("Printing receipts", [1.0, 0.0]),
        make_record("Adding employees", [0.0, 1.0]),
        make_record("End of day report", [0.9, 0.1]),
    ]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        KB_PATH=str(tmp_path / "kb.json"),
        KB_RAW_PATH=str(tmp_path / "raw.json"),
        COMPLETION_PROVIDER="rules",
        ENV="prod",
    )


def collect(chunks: Iterable[str]) -> str:
    return "".join(chunks)
