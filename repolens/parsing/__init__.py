"""Language resolution, file filtering and code chunking."""

from .chunking import CodeChunker, Declaration, PythonAstStrategy, TreeSitterStrategy
from .file_filter import FileFilter, is_binary_content
from .grammars import GrammarRegistry, ParseError, get_grammar_registry

__all__ = [
    "CodeChunker",
    "Declaration",
    "PythonAstStrategy",
    "TreeSitterStrategy",
    "FileFilter",
    "is_binary_content",
    "GrammarRegistry",
    "ParseError",
    "get_grammar_registry",
]
