"""Fetcher over a working tree on local disk."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from repolens.fetching.base import RepositoryFetcher, RepositoryFile, RepositorySnapshot
from repolens.fetching.exceptions import FetchError, RepositoryNotFoundError
from repolens.models import RepositoryRef
from repolens.parsing.file_filter import DEFAULT_EXCLUDED_DIRS

logger = logging.getLogger(__name__)


class LocalDirectoryFetcher(RepositoryFetcher):
    """Serve a directory on disk through the fetcher contract.

    The repository's ``local_path`` (or ``full_name`` when unset) is the root.
    Excluded directories are pruned while walking so large ``node_modules``
    trees are never traversed.
    """

    def _root(self, repository: RepositoryRef) -> Path:
        root = Path(repository.local_path or repository.full_name).resolve()
        if not root.is_dir():
            raise RepositoryNotFoundError(f"Repository directory not found: {root}")
        return root

    async def list_files(self, repository: RepositoryRef, ref: Optional[str] = None) -> RepositorySnapshot:
        root = self._root(repository)
        files = await asyncio.to_thread(self._walk, root)
        logger.info(f"Listed {len(files)} files under {root}")
        return RepositorySnapshot(ref=ref or repository.default_branch, revision=None, files=files)

    @staticmethod
    def _walk(root: Path):
        files = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in DEFAULT_EXCLUDED_DIRS)
            for filename in sorted(filenames):
                full_path = Path(dirpath) / filename
                if full_path.is_symlink() or not full_path.is_file():
                    continue
                try:
                    size = full_path.stat().st_size
                except OSError as e:
                    logger.debug(f"Skipping {full_path}: {e}")
                    continue
                files.append(RepositoryFile(
                    path=full_path.relative_to(root).as_posix(),
                    size=size,
                ))
        return files

    async def fetch_content(
        self,
        repository: RepositoryRef,
        path: str,
        revision: Optional[str] = None,
    ) -> bytes:
        root = self._root(repository)
        target = (root / path).resolve()

        try:
            target.relative_to(root)
        except ValueError:
            raise FetchError(f"Path escapes repository root: {path}")

        if not target.is_file():
            raise RepositoryNotFoundError(f"File not found: {path}")

        return await asyncio.to_thread(target.read_bytes)
