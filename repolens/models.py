"""Core data types shared across indexing and retrieval."""

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

CHUNK_TYPES = ("function", "class", "symbol", "other")


@dataclass(frozen=True)
class RepositoryRef:
    """Identity of a connected repository.

    ``full_name`` is ``owner/name`` for hosted repositories; ``local_path``
    is set instead for working trees on disk.
    """
    id: str
    full_name: str
    default_branch: str = "main"
    size: int = 0
    local_path: Optional[str] = None


@dataclass(frozen=True)
class CodeChunk:
    """A contiguous slice of one source file.

    Line numbers are 1-indexed and inclusive. Chunks are never mutated;
    attaching an embedding produces a new instance.
    """
    repository_id: str
    file_path: str
    start_line: int
    end_line: int
    content: str
    language: str
    chunk_type: str = "other"
    symbol_name: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    embedding: Optional[List[float]] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.start_line < 1 or self.end_line < self.start_line:
            raise ValueError(
                f"Invalid line span {self.start_line}-{self.end_line} for {self.file_path}"
            )
        if self.chunk_type not in CHUNK_TYPES:
            raise ValueError(f"Unknown chunk type: {self.chunk_type}")

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.start_line}-{self.end_line}"

    def with_embedding(self, embedding: Sequence[float]) -> "CodeChunk":
        return replace(self, embedding=list(embedding))

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "repository_id": self.repository_id,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "content": self.content,
            "language": self.language,
            "chunk_type": self.chunk_type,
            "symbol_name": self.symbol_name,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeChunk":
        return cls(
            id=data["id"],
            repository_id=data["repository_id"],
            file_path=data["file_path"],
            start_line=data["start_line"],
            end_line=data["end_line"],
            content=data["content"],
            language=data["language"],
            chunk_type=data.get("chunk_type", "other"),
            symbol_name=data.get("symbol_name"),
            embedding=data.get("embedding"),
        )


@dataclass(frozen=True)
class RetrievedChunk:
    """A chunk scored against one query. Never persisted."""
    id: str
    repository_id: str
    file_path: str
    start_line: int
    end_line: int
    content: str
    language: str
    chunk_type: str
    symbol_name: Optional[str]
    score: float

    @classmethod
    def from_chunk(cls, chunk: CodeChunk, score: float) -> "RetrievedChunk":
        return cls(
            id=chunk.id,
            repository_id=chunk.repository_id,
            file_path=chunk.file_path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            content=chunk.content,
            language=chunk.language,
            chunk_type=chunk.chunk_type,
            symbol_name=chunk.symbol_name,
            score=score,
        )

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.start_line}-{self.end_line}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "content": self.content,
            "language": self.language,
            "chunk_type": self.chunk_type,
            "symbol_name": self.symbol_name,
            "score": self.score,
        }


@dataclass(frozen=True)
class Citation:
    """Pointer from an answer back to an exact source range."""
    file: str
    start_line: int
    end_line: int
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "file": self.file,
            "start_line": self.start_line,
            "end_line": self.end_line,
        }
        if self.symbol:
            data["symbol"] = self.symbol
        return data
