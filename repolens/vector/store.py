"""Per-repository vector store backed by FAISS."""

import json
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence

import faiss
import numpy as np

from repolens.exceptions import StorageError
from repolens.models import CodeChunk, RetrievedChunk

logger = logging.getLogger(__name__)

INDEX_FILE = "index.faiss"
CHUNKS_FILE = "chunks.json"
CURRENT_FILE = "CURRENT"


class VectorStoreError(StorageError):
    """Exception for vector store operations."""
    pass


@dataclass(frozen=True)
class _Snapshot:
    """Immutable view of one repository's chunks and their vectors."""
    chunks: List[CodeChunk]
    vectors: np.ndarray
    index: Any

    @property
    def dimension(self) -> int:
        return self.vectors.shape[1] if self.vectors.size else 0


def _safe_dirname(repository_id: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]', '_', repository_id)


class VectorStore:
    """Cosine-similarity search over immutable per-repository snapshots.

    Writers build a complete new snapshot and swap it in under a lock, so a
    reader always sees either the previous set or the new one, never a mix.
    With ``index_path`` set, each snapshot is written to a fresh version
    directory and published by atomically rewriting a ``CURRENT`` pointer.
    """

    def __init__(self, index_path: Optional[Path] = None):
        """Initialize vector store.

        Args:
            index_path: Directory for persisted snapshots; memory only when None
        """
        self.index_path = Path(index_path) if index_path else None
        self._snapshots: Dict[str, _Snapshot] = {}
        self._lock = Lock()

        if self.index_path:
            self.index_path.mkdir(parents=True, exist_ok=True)
            self._load_all()

    # Building

    @staticmethod
    def _build_snapshot(chunks: Sequence[CodeChunk], vectors: Optional[np.ndarray] = None) -> _Snapshot:
        chunks = list(chunks)
        if vectors is None:
            missing = [c.location for c in chunks if c.embedding is None]
            if missing:
                raise VectorStoreError(f"{len(missing)} chunks have no embedding, e.g. {missing[0]}")
            if not chunks:
                vectors = np.zeros((0, 0), dtype=np.float32)
            else:
                dimensions = {len(c.embedding) for c in chunks}
                if len(dimensions) != 1:
                    raise VectorStoreError(f"Mixed embedding dimensions: {sorted(dimensions)}")
                vectors = np.array([c.embedding for c in chunks], dtype=np.float32)
                # Normalize embeddings for cosine similarity
                faiss.normalize_L2(vectors)

        index = None
        if len(chunks):
            index = faiss.IndexFlatIP(vectors.shape[1])
            index.add(vectors)
        return _Snapshot(chunks=chunks, vectors=vectors, index=index)

    def _publish(self, repository_id: str, snapshot: _Snapshot) -> None:
        if self.index_path:
            self._persist(repository_id, snapshot)
        with self._lock:
            self._snapshots[repository_id] = snapshot

    # Writes

    def replace_all(self, repository_id: str, chunks: Sequence[CodeChunk]) -> int:
        """Atomically swap the repository's chunk set for ``chunks``.

        Returns:
            Number of chunks now stored for the repository

        Raises:
            VectorStoreError: Chunks lack embeddings or persisting failed
        """
        try:
            snapshot = self._build_snapshot(chunks)
        except VectorStoreError:
            raise
        except Exception as e:
            raise VectorStoreError(f"Failed to build index for {repository_id}: {e}") from e

        self._publish(repository_id, snapshot)
        logger.info(f"Replaced chunks for {repository_id}: {len(snapshot.chunks)} chunks")
        return len(snapshot.chunks)

    def upsert_chunks(self, repository_id: str, chunks: Sequence[CodeChunk]) -> int:
        """Add chunks, replacing any existing chunk with the same id."""
        if not chunks:
            return self.count(repository_id)

        new_snapshot = self._build_snapshot(chunks)
        with self._lock:
            current = self._snapshots.get(repository_id)

        if current is None or not current.chunks:
            merged = new_snapshot
        else:
            if current.dimension != new_snapshot.dimension:
                raise VectorStoreError(
                    f"Embedding dimension {new_snapshot.dimension} does not match "
                    f"stored dimension {current.dimension}"
                )
            replaced_ids = {c.id for c in new_snapshot.chunks}
            keep = [i for i, c in enumerate(current.chunks) if c.id not in replaced_ids]
            merged = self._build_snapshot(
                [current.chunks[i] for i in keep] + new_snapshot.chunks,
                np.vstack([current.vectors[keep], new_snapshot.vectors]),
            )

        self._publish(repository_id, merged)
        logger.debug(f"Upserted {len(chunks)} chunks for {repository_id}")
        return len(merged.chunks)

    def delete_repository(self, repository_id: str) -> int:
        """Drop every chunk of the repository. Returns how many were removed."""
        with self._lock:
            snapshot = self._snapshots.pop(repository_id, None)

        if self.index_path:
            repo_dir = self.index_path / _safe_dirname(repository_id)
            try:
                if repo_dir.exists():
                    shutil.rmtree(repo_dir)
            except OSError as e:
                raise VectorStoreError(f"Failed to delete index for {repository_id}: {e}") from e

        removed = len(snapshot.chunks) if snapshot else 0
        logger.info(f"Deleted {removed} chunks for {repository_id}")
        return removed

    # Reads

    def count(self, repository_id: str) -> int:
        snapshot = self._snapshots.get(repository_id)
        return len(snapshot.chunks) if snapshot else 0

    def has_chunks(self, repository_id: str) -> bool:
        return self.count(repository_id) > 0

    def get_chunks(self, repository_id: str) -> List[CodeChunk]:
        """Chunks of the published snapshot. The list is shared; do not mutate it."""
        snapshot = self._snapshots.get(repository_id)
        return snapshot.chunks if snapshot else []

    def search(
        self,
        repository_id: str,
        query_vector: Sequence[float],
        k: int,
        predicate: Optional[Callable[[CodeChunk], bool]] = None,
    ) -> List[RetrievedChunk]:
        """Rank the repository's chunks against ``query_vector``.

        Scores are cosine similarities clamped to [0, 1]. Ties are broken by
        ``start_line`` ascending, then file path.

        Args:
            repository_id: Repository to search
            query_vector: Query embedding, any scale
            k: Maximum number of results
            predicate: Optional filter applied before the top-k cut

        Returns:
            Up to ``k`` chunks, best first
        """
        if k <= 0:
            raise ValueError("k must be positive")

        snapshot = self._snapshots.get(repository_id)
        if snapshot is None or snapshot.index is None:
            return []

        query = np.array([query_vector], dtype=np.float32)
        if query.shape[1] != snapshot.dimension:
            raise VectorStoreError(
                f"Query dimension {query.shape[1]} does not match index dimension {snapshot.dimension}"
            )
        faiss.normalize_L2(query)

        scores, indices = snapshot.index.search(query, snapshot.index.ntotal)

        candidates = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0:
                continue
            chunk = snapshot.chunks[idx]
            if predicate is not None and not predicate(chunk):
                continue
            candidates.append(RetrievedChunk.from_chunk(chunk, min(1.0, max(0.0, float(score)))))

        candidates.sort(key=lambda r: (-r.score, r.start_line, r.file_path))
        return candidates[:k]

    def get_stats(self, repository_id: str) -> Dict[str, Any]:
        """Chunk, file, language and chunk-type counts for a repository."""
        snapshot = self._snapshots.get(repository_id)
        chunks = snapshot.chunks if snapshot else []

        languages: Dict[str, int] = {}
        chunk_types: Dict[str, int] = {}
        for chunk in chunks:
            languages[chunk.language] = languages.get(chunk.language, 0) + 1
            chunk_types[chunk.chunk_type] = chunk_types.get(chunk.chunk_type, 0) + 1

        return {
            'repository_id': repository_id,
            'total_chunks': len(chunks),
            'total_files': len({c.file_path for c in chunks}),
            'languages': languages,
            'chunk_types': chunk_types,
            'embedding_dimension': snapshot.dimension if snapshot else 0,
        }

    # Persistence

    def _persist(self, repository_id: str, snapshot: _Snapshot) -> None:
        repo_dir = self.index_path / _safe_dirname(repository_id)
        version = uuid.uuid4().hex
        version_dir = repo_dir / version

        try:
            version_dir.mkdir(parents=True)
            if snapshot.index is not None:
                faiss.write_index(snapshot.index, str(version_dir / INDEX_FILE))
            with open(version_dir / CHUNKS_FILE, 'w', encoding='utf-8') as f:
                json.dump(
                    {
                        'repository_id': repository_id,
                        'chunks': [c.to_dict() for c in snapshot.chunks],
                    },
                    f,
                    ensure_ascii=False,
                )

            pointer_tmp = repo_dir / f"{CURRENT_FILE}.{version}.tmp"
            pointer_tmp.write_text(version, encoding='utf-8')
            os.replace(pointer_tmp, repo_dir / CURRENT_FILE)
        except OSError as e:
            shutil.rmtree(version_dir, ignore_errors=True)
            raise VectorStoreError(f"Failed to save index for {repository_id}: {e}") from e

        # Older versions are unreachable once CURRENT moved
        for entry in repo_dir.iterdir():
            if entry.is_dir() and entry.name != version:
                shutil.rmtree(entry, ignore_errors=True)

        logger.debug(f"Saved {len(snapshot.chunks)} chunks for {repository_id} as version {version}")

    def _load_all(self) -> None:
        for repo_dir in sorted(self.index_path.iterdir()):
            pointer = repo_dir / CURRENT_FILE
            if not repo_dir.is_dir() or not pointer.exists():
                continue
            try:
                repository_id, snapshot = self._load_version(repo_dir / pointer.read_text(encoding='utf-8').strip())
            except (OSError, ValueError, KeyError, RuntimeError) as e:
                logger.error(f"Failed to load index from {repo_dir}: {e}")
                continue
            self._snapshots[repository_id] = snapshot
            logger.info(f"Loaded {len(snapshot.chunks)} chunks for {repository_id}")

    def _load_version(self, version_dir: Path):
        with open(version_dir / CHUNKS_FILE, 'r', encoding='utf-8') as f:
            data = json.load(f)

        chunks = [CodeChunk.from_dict(item) for item in data['chunks']]
        index_file = version_dir / INDEX_FILE
        if not chunks or not index_file.exists():
            return data['repository_id'], self._build_snapshot([])

        index = faiss.read_index(str(index_file))
        vectors = index.reconstruct_n(0, index.ntotal)
        if len(chunks) != index.ntotal:
            raise ValueError(f"{len(chunks)} chunks but {index.ntotal} vectors")
        return data['repository_id'], _Snapshot(chunks=chunks, vectors=vectors, index=index)
