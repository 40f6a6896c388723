"""Grammar registry: file extension to language tag to syntax tree parser."""

import ast
import logging
from functools import lru_cache
from pathlib import PurePosixPath
from threading import Lock
from typing import Any, Callable, Dict, Optional

import tree_sitter_go
import tree_sitter_java
import tree_sitter_javascript
import tree_sitter_rust
import tree_sitter_typescript
from tree_sitter import Language, Parser

from repolens.exceptions import RepolensError

logger = logging.getLogger(__name__)


class ParseError(RepolensError):
    """Source could not be turned into a clean syntax tree."""
    pass


# Languages parsed with tree-sitter; the loader returns the grammar capsule.
TREE_SITTER_LOADERS: Dict[str, Callable[[], Any]] = {
    'javascript': tree_sitter_javascript.language,
    'typescript': tree_sitter_typescript.language_typescript,
    'tsx': tree_sitter_typescript.language_tsx,
    'go': tree_sitter_go.language,
    'rust': tree_sitter_rust.language,
    'java': tree_sitter_java.language,
}

# Python is parsed with the standard library ``ast`` module.
PYTHON_LANGUAGE = 'python'


class GrammarRegistry:
    """Resolve languages from file names and hand out parsers for them.

    Grammars are loaded lazily and cached for the life of the registry.
    Parsers are created per call because tree-sitter parsers keep state.
    """

    EXTENSION_MAP = {
        '.py': 'python',
        '.pyi': 'python',
        '.js': 'javascript',
        '.jsx': 'javascript',
        '.mjs': 'javascript',
        '.cjs': 'javascript',
        '.ts': 'typescript',
        '.mts': 'typescript',
        '.cts': 'typescript',
        '.tsx': 'tsx',
        '.java': 'java',
        '.go': 'go',
        '.rs': 'rust',
        '.cpp': 'cpp',
        '.cc': 'cpp',
        '.cxx': 'cpp',
        '.hpp': 'cpp',
        '.c': 'c',
        '.h': 'c',
        '.cs': 'csharp',
        '.rb': 'ruby',
        '.php': 'php',
        '.swift': 'swift',
        '.kt': 'kotlin',
        '.scala': 'scala',
        '.vue': 'vue',
        '.svelte': 'svelte',
        '.sh': 'bash',
        '.bash': 'bash',
        '.zsh': 'bash',
        '.sql': 'sql',
        '.html': 'html',
        '.htm': 'html',
        '.xml': 'xml',
        '.css': 'css',
        '.scss': 'scss',
        '.less': 'less',
        '.json': 'json',
        '.yaml': 'yaml',
        '.yml': 'yaml',
        '.toml': 'toml',
        '.ini': 'ini',
        '.cfg': 'ini',
        '.md': 'markdown',
        '.mdx': 'markdown',
        '.rst': 'rst',
        '.txt': 'text',
    }

    FILENAME_MAP = {
        'dockerfile': 'dockerfile',
        'makefile': 'makefile',
        'gemfile': 'ruby',
        'rakefile': 'ruby',
    }

    def __init__(self):
        self._languages: Dict[str, Language] = {}
        self._lock = Lock()

    @staticmethod
    def normalize_extension(extension: str) -> str:
        """Lower-case an extension and make sure it has exactly one leading dot."""
        return '.' + extension.strip().lstrip('.').lower()

    def language_for_extension(self, extension: str) -> Optional[str]:
        return self.EXTENSION_MAP.get(self.normalize_extension(extension))

    def language_for_path(self, file_path: str) -> str:
        """Language tag for a path; ``text`` when nothing matches."""
        path = PurePosixPath(file_path)
        if path.suffix:
            language = self.language_for_extension(path.suffix)
            if language:
                return language
        return self.FILENAME_MAP.get(path.name.lower(), 'text')

    def has_grammar(self, language: str) -> bool:
        return language == PYTHON_LANGUAGE or language in TREE_SITTER_LOADERS

    def get_language(self, language: str) -> Optional[Language]:
        """Loaded tree-sitter grammar for ``language`` or None."""
        loader = TREE_SITTER_LOADERS.get(language)
        if loader is None:
            return None

        with self._lock:
            if language not in self._languages:
                self._languages[language] = Language(loader())
                logger.debug(f"Loaded tree-sitter grammar for {language}")
            return self._languages[language]

    def parse(self, language: str, source: str) -> Any:
        """Parse ``source`` and return its syntax tree.

        Returns an ``ast.Module`` for Python and a tree-sitter ``Tree`` for the
        other structural languages.

        Raises:
            ParseError: No grammar exists, or the source does not parse cleanly
        """
        if language == PYTHON_LANGUAGE:
            try:
                return ast.parse(source)
            except (SyntaxError, ValueError, MemoryError, RecursionError) as e:
                raise ParseError(f"Python parse failed: {e.__class__.__name__}: {e}") from e

        grammar = self.get_language(language)
        if grammar is None:
            raise ParseError(f"No grammar registered for {language}")

        tree = Parser(grammar).parse(source.encode('utf-8'))
        if tree.root_node.has_error:
            raise ParseError(f"Syntax errors in {language} source")
        return tree


@lru_cache(maxsize=1)
def get_grammar_registry() -> GrammarRegistry:
    """Process-wide registry so grammars are only loaded once."""
    return GrammarRegistry()
