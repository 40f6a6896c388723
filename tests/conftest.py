"""Shared fixtures and fakes for the Repolens test suite."""

import asyncio
import hashlib
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from repolens.fetching.base import RepositoryFetcher, RepositoryFile, RepositorySnapshot
from repolens.llm.provider import EmbeddingResult
from repolens.models import CodeChunk, RepositoryRef, RetrievedChunk
from repolens.observability.metrics import MetricsCollector

DIMENSION = 16


def text_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    """Deterministic bag-of-words vector; texts sharing words are similar."""
    vector = [0.0] * dimension
    for word in re.findall(r"\w+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeEmbeddingProvider:
    """In-process provider with scripted failures."""

    def __init__(self, dimension: int = DIMENSION, failures: Optional[List[Exception]] = None, max_batch: Optional[int] = None):
        self.model_id = "fake-embed"
        self.dimension = dimension
        self.failures = list(failures or [])
        self.max_batch = max_batch
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str], input_type: str = "document") -> EmbeddingResult:
        from repolens.llm.exceptions import EmbeddingValidationError

        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        if self.max_batch is not None and len(texts) > self.max_batch:
            raise EmbeddingValidationError(f"Batch of {len(texts)} exceeds {self.max_batch}")
        return EmbeddingResult(
            vectors=[text_vector(text, self.dimension) for text in texts],
            total_tokens=sum(len(text.split()) for text in texts),
        )


class FakeFetcher(RepositoryFetcher):
    """Serves files from a dict, optionally pausing or failing."""

    def __init__(self, files: Dict[str, bytes], list_failures: Optional[List[Exception]] = None,
                 content_failures: Optional[List[Exception]] = None):
        self.files = files
        self.list_failures = list(list_failures or [])
        self.content_failures = list(content_failures or [])
        self.fetched: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.reached_gate = asyncio.Event()

    async def list_files(self, repository: RepositoryRef, ref: Optional[str] = None) -> RepositorySnapshot:
        if self.list_failures:
            raise self.list_failures.pop(0)
        return RepositorySnapshot(
            ref=ref or repository.default_branch,
            revision="abc123",
            files=[RepositoryFile(path=path, size=len(data)) for path, data in self.files.items()],
        )

    async def fetch_content(self, repository: RepositoryRef, path: str, revision: Optional[str] = None) -> bytes:
        if self.content_failures:
            raise self.content_failures.pop(0)
        self.fetched.append(path)
        if self.gate is not None:
            self.reached_gate.set()
            await self.gate.wait()
        return self.files[path]


def make_chunk(
    file_path: str = "src/index.ts",
    start_line: int = 1,
    end_line: int = 10,
    content: str = "export function main() {}",
    language: str = "typescript",
    chunk_type: str = "function",
    symbol_name: Optional[str] = "main",
    repository_id: str = "repo-1",
    embedding: Optional[List[float]] = None,
) -> CodeChunk:
    return CodeChunk(
        repository_id=repository_id,
        file_path=file_path,
        start_line=start_line,
        end_line=end_line,
        content=content,
        language=language,
        chunk_type=chunk_type,
        symbol_name=symbol_name,
        embedding=embedding,
    )


def make_retrieved(score: float = 0.9, **kwargs) -> RetrievedChunk:
    return RetrievedChunk.from_chunk(make_chunk(**kwargs), score)


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    with tempfile.TemporaryDirectory() as directory:
        yield Path(directory)


@pytest.fixture
def metrics():
    """Isolated metrics collector."""
    return MetricsCollector()


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def sample_chunks():
    """Four chunks across three files, most relevant first."""
    return [
        make_retrieved(0.95, file_path="src/index.ts", start_line=1, end_line=10,
                       content="export function main() {\n  return run();\n}", symbol_name="main"),
        make_retrieved(0.85, file_path="src/utils.ts", start_line=5, end_line=15,
                       content="export function helper() {}", symbol_name="helper"),
        make_retrieved(0.75, file_path="src/index.ts", start_line=20, end_line=30,
                       content="export class App {}", chunk_type="class", symbol_name="App"),
        make_retrieved(0.65, file_path="lib/api.ts", start_line=10, end_line=30,
                       content="export async function fetchData() {}", symbol_name="fetchData"),
    ]


class StallingEmbeddingProvider(FakeEmbeddingProvider):
    """Fails the batch holding ``failing_text`` while every other batch hangs."""

    def __init__(self, failing_text: str, error: Exception):
        super().__init__()
        self.failing_text = failing_text
        self.error = error
        self.cancelled = 0
        self._in_flight = asyncio.Event()

    async def embed(self, texts: List[str], input_type: str = "document") -> EmbeddingResult:
        self.calls.append(list(texts))
        if any(self.failing_text in text for text in texts):
            await self._in_flight.wait()
            raise self.error

        self._in_flight.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        raise AssertionError("stalled batch was released")
