"""Dispatch fetches to the local or hosted fetcher per repository."""

from typing import Optional

from repolens.fetching.base import RepositoryFetcher, RepositorySnapshot
from repolens.models import RepositoryRef


class RoutingFetcher(RepositoryFetcher):
    """Repositories with a ``local_path`` are read from disk, the rest remotely."""

    def __init__(self, remote: RepositoryFetcher, local: RepositoryFetcher):
        self.remote = remote
        self.local = local

    def _pick(self, repository: RepositoryRef) -> RepositoryFetcher:
        return self.local if repository.local_path else self.remote

    async def list_files(self, repository: RepositoryRef, ref: Optional[str] = None) -> RepositorySnapshot:
        return await self._pick(repository).list_files(repository, ref)

    async def fetch_content(
        self,
        repository: RepositoryRef,
        path: str,
        revision: Optional[str] = None,
    ) -> bytes:
        return await self._pick(repository).fetch_content(repository, path, revision)

    async def close(self) -> None:
        await self.remote.close()
        await self.local.close()
