"""Repository identities known to this process."""

from threading import Lock
from typing import Dict, List, Optional

from repolens.models import RepositoryRef


class RepositoryCatalog:
    """Maps repository ids to their hosting identity and default branch.

    Repository management lives outside Repolens; callers register the
    repositories they want indexed.
    """

    def __init__(self, repositories: Optional[List[RepositoryRef]] = None):
        self._repositories: Dict[str, RepositoryRef] = {}
        self._lock = Lock()
        for repository in repositories or []:
            self.register(repository)

    def register(self, repository: RepositoryRef) -> None:
        with self._lock:
            self._repositories[repository.id] = repository

    def remove(self, repository_id: str) -> Optional[RepositoryRef]:
        with self._lock:
            return self._repositories.pop(repository_id, None)

    def get(self, repository_id: str) -> Optional[RepositoryRef]:
        with self._lock:
            return self._repositories.get(repository_id)

    def __call__(self, repository_id: str) -> Optional[RepositoryRef]:
        return self.get(repository_id)

    def list(self) -> List[RepositoryRef]:
        with self._lock:
            return list(self._repositories.values())
