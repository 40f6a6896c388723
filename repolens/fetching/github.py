"""GitHub REST fetcher built on httpx."""

import logging
import time
from collections import deque
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from repolens.fetching.base import RepositoryFetcher, RepositoryFile, RepositorySnapshot
from repolens.fetching.exceptions import (
    FetchAuthenticationError,
    FetchError,
    FetchRateLimitError,
    FetchTimeoutError,
    RepositoryNotFoundError,
    TransientFetchError,
)
from repolens.models import RepositoryRef

logger = logging.getLogger(__name__)

RAW_MEDIA_TYPE = "application/vnd.github.raw+json"
JSON_MEDIA_TYPE = "application/vnd.github+json"


class GitHubFetcher(RepositoryFetcher):
    """List and read repository snapshots through the GitHub REST API.

    The listing resolves ``ref`` to a commit once; content reads use that
    commit sha so a job never mixes files from two revisions.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        max_files: int = 5000,
        rate_limit_warning_threshold: int = 100,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize fetcher.

        Args:
            token: Personal access or installation token
            api_url: API base URL (GitHub Enterprise uses a different host)
            timeout: Per-request timeout in seconds
            max_files: Listing cap; extra files are dropped with a warning
            rate_limit_warning_threshold: Remaining-requests level that triggers a warning
            client: Pre-built client, mainly for tests
        """
        self.max_files = max_files
        self.rate_limit_warning_threshold = rate_limit_warning_threshold

        headers = {"Accept": JSON_MEDIA_TYPE, "X-GitHub-Api-Version": "2022-11-28"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = client or httpx.AsyncClient(
            base_url=api_url.rstrip('/'),
            headers=headers,
            timeout=httpx.Timeout(timeout),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None, accept: Optional[str] = None) -> httpx.Response:
        headers = {"Accept": accept} if accept else None
        try:
            response = await self._client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"GitHub request timed out: {url}") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"GitHub request failed: {e}") from e

        self._check_response(response)
        return response

    def _check_response(self, response: httpx.Response) -> None:
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None and remaining.isdigit():
            if int(remaining) < self.rate_limit_warning_threshold:
                logger.warning(f"GitHub rate limit low: {remaining} requests remaining")

        status = response.status_code
        if status < 400:
            return

        url = str(response.request.url) if response.request else ""

        if status == 429 or (status == 403 and remaining == "0"):
            raise FetchRateLimitError(
                "GitHub rate limit exceeded",
                retry_after=self._retry_after(response),
            )
        if status in (401, 403):
            raise FetchAuthenticationError(f"GitHub denied access ({status}): {url}")
        if status == 404:
            raise RepositoryNotFoundError(f"Not found on GitHub: {url}")
        if status >= 500:
            raise TransientFetchError(f"GitHub server error {status}: {url}")
        raise FetchError(f"GitHub request failed with {status}: {url}")

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("retry-after")
        if retry_after and retry_after.isdigit():
            return float(retry_after)

        reset = response.headers.get("x-ratelimit-reset")
        if reset and reset.isdigit():
            return max(0.0, float(reset) - time.time())
        return None

    async def list_files(self, repository: RepositoryRef, ref: Optional[str] = None) -> RepositorySnapshot:
        ref = ref or repository.default_branch
        owner_repo = repository.full_name

        commit = (await self._get(f"/repos/{owner_repo}/commits/{quote(ref, safe='')}")).json()
        commit_sha = commit["sha"]
        tree_sha = commit["commit"]["tree"]["sha"]

        tree = (await self._get(
            f"/repos/{owner_repo}/git/trees/{tree_sha}", params={"recursive": "1"}
        )).json()

        if tree.get("truncated"):
            logger.info(f"Recursive tree for {owner_repo} truncated, walking sub-trees")
            files = await self._walk_tree(owner_repo, tree_sha)
        else:
            files = self._blobs(tree.get("tree", []), prefix="")

        truncated = len(files) > self.max_files
        if truncated:
            logger.warning(
                f"{owner_repo} has {len(files)} files, keeping the first {self.max_files}"
            )
            files = files[:self.max_files]

        logger.info(f"Listed {len(files)} files in {owner_repo}@{ref} ({commit_sha[:7]})")
        return RepositorySnapshot(ref=ref, revision=commit_sha, files=files, truncated=truncated)

    async def _walk_tree(self, owner_repo: str, root_sha: str) -> List[RepositoryFile]:
        """Breadth-first listing, one request per directory."""
        files: List[RepositoryFile] = []
        pending = deque([("", root_sha)])

        while pending and len(files) <= self.max_files:
            prefix, sha = pending.popleft()
            tree = (await self._get(f"/repos/{owner_repo}/git/trees/{sha}")).json()
            for entry in tree.get("tree", []):
                path = f"{prefix}{entry['path']}"
                if entry.get("type") == "tree":
                    pending.append((f"{path}/", entry["sha"]))
                elif entry.get("type") == "blob":
                    files.append(RepositoryFile(path=path, size=entry.get("size"), sha=entry.get("sha")))
        return files

    @staticmethod
    def _blobs(entries: List[Dict[str, Any]], prefix: str) -> List[RepositoryFile]:
        return [
            RepositoryFile(path=f"{prefix}{entry['path']}", size=entry.get("size"), sha=entry.get("sha"))
            for entry in entries
            if entry.get("type") == "blob"
        ]

    async def fetch_content(
        self,
        repository: RepositoryRef,
        path: str,
        revision: Optional[str] = None,
    ) -> bytes:
        params = {"ref": revision} if revision else None
        response = await self._get(
            f"/repos/{repository.full_name}/contents/{quote(path)}",
            params=params,
            accept=RAW_MEDIA_TYPE,
        )
        return response.content
