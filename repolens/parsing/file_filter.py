"""Decide which repository paths are worth fetching and chunking."""

import re
from pathlib import PurePosixPath
from typing import Iterable, List, Optional, Set

DEFAULT_EXCLUDED_DIRS: Set[str] = {
    'node_modules', '.git', '.svn', '.hg', 'dist', 'build', 'out',
    '.next', '.nuxt', '.output', 'coverage', '__pycache__',
    '.pytest_cache', '.mypy_cache', '.tox', 'venv', '.venv', 'env',
    'virtualenv', 'vendor', 'target', 'Pods', '.gradle', '.idea',
    '.vscode', 'tmp', 'temp', 'logs', '.cache', '.parcel-cache',
    '.turbo', 'storybook-static',
}

DEFAULT_EXCLUDED_PATTERNS = [
    re.compile(r'\.min\.(js|css)$'),
    re.compile(r'\.bundle\.(js|css)$'),
    re.compile(r'\.map$'),
    re.compile(r'\.lock$'),
    re.compile(r'(^|/)package-lock\.json$'),
    re.compile(r'(^|/)pnpm-lock\.yaml$'),
    re.compile(r'\.d\.ts$'),
    re.compile(r'\.generated\.'),
    re.compile(r'\.snap$'),
]

BINARY_EXTENSIONS: Set[str] = {
    '.png', '.jpg', '.jpeg', '.gif', '.bmp', '.ico', '.webp', '.svg', '.avif',
    '.woff', '.woff2', '.ttf', '.otf', '.eot',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.tar', '.gz', '.rar', '.7z', '.bz2',
    '.mp3', '.mp4', '.wav', '.ogg', '.webm', '.avi', '.mov', '.flv',
    '.exe', '.dll', '.so', '.dylib', '.a', '.lib', '.class', '.jar', '.war',
    '.pyc', '.pyo', '.o', '.obj',
    '.db', '.sqlite', '.sqlite3', '.bin', '.dat', '.dump',
}

ALLOWED_HIDDEN_FILES: Set[str] = {'.env.example', '.gitignore', '.dockerignore', '.gitattributes'}


class FileFilter:
    """Path based exclusion rules applied before any content is fetched."""

    def __init__(
        self,
        max_file_bytes: int = 1024 * 1024,
        excluded_dirs: Optional[Iterable[str]] = None,
    ):
        self.max_file_bytes = max_file_bytes
        self.excluded_dirs = set(excluded_dirs) if excluded_dirs is not None else set(DEFAULT_EXCLUDED_DIRS)

    def skip_reason(self, path: str, size: Optional[int] = None) -> Optional[str]:
        """Explain why ``path`` should not be indexed, or return None to keep it.

        Args:
            path: Repository-relative POSIX path
            size: File size in bytes when the listing provides it

        Returns:
            Short reason string, or None when the file is indexable
        """
        posix = PurePosixPath(path)
        parts = posix.parts

        for part in parts[:-1]:
            if part in self.excluded_dirs:
                return f"excluded directory {part}"
            if part.startswith('.'):
                return f"hidden directory {part}"

        name = posix.name
        if name.startswith('.') and name not in ALLOWED_HIDDEN_FILES:
            return "hidden file"

        if posix.suffix.lower() in BINARY_EXTENSIONS:
            return "binary extension"

        for pattern in DEFAULT_EXCLUDED_PATTERNS:
            if pattern.search(path):
                return "generated or lock file"

        if size is not None and size > self.max_file_bytes:
            return f"larger than {self.max_file_bytes} bytes"

        return None

    def should_index(self, path: str, size: Optional[int] = None) -> bool:
        return self.skip_reason(path, size) is None

    def filter_paths(self, paths: Iterable[str]) -> List[str]:
        return [path for path in paths if self.should_index(path)]


def is_binary_content(data: bytes, sample_size: int = 8192) -> bool:
    """Heuristic used by git itself: a NUL byte early in the file means binary."""
    return b'\x00' in data[:sample_size]
