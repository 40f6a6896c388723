"""Repository fetcher contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from repolens.models import RepositoryRef


@dataclass(frozen=True)
class RepositoryFile:
    """One blob in a repository listing."""
    path: str
    size: Optional[int] = None
    sha: Optional[str] = None


@dataclass
class RepositorySnapshot:
    """File listing pinned to one resolved revision."""
    ref: str
    revision: Optional[str]
    files: List[RepositoryFile] = field(default_factory=list)
    truncated: bool = False

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]


class RepositoryFetcher(ABC):
    """Read-only access to repository listings and file content."""

    @abstractmethod
    async def list_files(self, repository: RepositoryRef, ref: Optional[str] = None) -> RepositorySnapshot:
        """List every blob at ``ref`` (the default branch when omitted)."""

    @abstractmethod
    async def fetch_content(
        self,
        repository: RepositoryRef,
        path: str,
        revision: Optional[str] = None,
    ) -> bytes:
        """Raw bytes of ``path``, read at ``revision`` when given."""

    async def close(self) -> None:
        """Release network resources."""
