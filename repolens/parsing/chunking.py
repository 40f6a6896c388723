"""Split source files into semantically bounded chunks.

Each structural language has a strategy that lists the top-level
declarations of a parsed file. Anything the strategies cannot handle
(unknown language, malformed source, no declarations) becomes a single
whole-file chunk.
"""

import ast
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Union

from repolens.models import CodeChunk
from repolens.parsing.file_filter import is_binary_content
from repolens.parsing.grammars import (
    PYTHON_LANGUAGE,
    GrammarRegistry,
    ParseError,
    get_grammar_registry,
)

logger = logging.getLogger(__name__)


@dataclass
class Declaration:
    """Span of one top-level declaration, 1-indexed and inclusive."""
    start_line: int
    end_line: int
    chunk_type: str
    symbol_name: Optional[str]


class ChunkingStrategy(Protocol):
    """Lists top-level declarations of a parsed file."""

    def declarations(self, tree) -> List[Declaration]:
        ...


class PythonAstStrategy:
    """Top-level functions and classes from a Python ``ast.Module``."""

    def declarations(self, tree: ast.Module) -> List[Declaration]:
        found = []
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                chunk_type = 'function'
            elif isinstance(node, ast.ClassDef):
                chunk_type = 'class'
            else:
                continue

            # Decorators belong to the declaration they wrap
            start_line = node.lineno
            if node.decorator_list:
                start_line = min(d.lineno for d in node.decorator_list)

            found.append(Declaration(
                start_line=start_line,
                end_line=node.end_lineno or node.lineno,
                chunk_type=chunk_type,
                symbol_name=node.name,
            ))
        return found


JAVASCRIPT_NODE_TYPES = {
    'function_declaration': 'function',
    'generator_function_declaration': 'function',
    'class_declaration': 'class',
}

TYPESCRIPT_NODE_TYPES = {
    **JAVASCRIPT_NODE_TYPES,
    'abstract_class_declaration': 'class',
    'interface_declaration': 'symbol',
    'type_alias_declaration': 'symbol',
    'enum_declaration': 'symbol',
}

GO_NODE_TYPES = {
    'function_declaration': 'function',
    'method_declaration': 'function',
    'type_declaration': 'symbol',
}

RUST_NODE_TYPES = {
    'function_item': 'function',
    'impl_item': 'class',
    'struct_item': 'symbol',
    'enum_item': 'symbol',
    'trait_item': 'symbol',
}

JAVA_NODE_TYPES = {
    'class_declaration': 'class',
    'record_declaration': 'class',
    'interface_declaration': 'symbol',
    'enum_declaration': 'symbol',
}

# Values of `const x = ...` that make the binding a function or class
_FUNCTION_VALUES = {'arrow_function', 'function_expression', 'function', 'generator_function'}
_CLASS_VALUES = {'class'}


def _node_text(node) -> Optional[str]:
    if node is None or node.text is None:
        return None
    return node.text.decode('utf-8', errors='replace')


def _node_lines(node) -> tuple:
    start_line = node.start_point[0] + 1
    end_row, end_column = node.end_point[0], node.end_point[1]
    # A node ending at column 0 finished on the previous line
    if end_column == 0 and end_row > node.start_point[0]:
        end_row -= 1
    return start_line, end_row + 1


class TreeSitterStrategy:
    """Top-level declarations from a tree-sitter tree."""

    def __init__(self, node_types: Dict[str, str]):
        self.node_types = node_types

    def declarations(self, tree) -> List[Declaration]:
        found = []
        for node in tree.root_node.named_children:
            declaration = self._classify(node, node)
            if declaration is not None:
                found.append(declaration)
        return found

    def _classify(self, node, span_node) -> Optional[Declaration]:
        """Map a node to a declaration spanning ``span_node``."""
        if node.type == 'export_statement':
            inner = node.child_by_field_name('declaration')
            if inner is not None:
                return self._classify(inner, span_node)
            # export default function () {} / export default class {}
            for child in node.named_children:
                if child.type in _FUNCTION_VALUES:
                    return self._declaration(span_node, 'function', 'default')
                if child.type in _CLASS_VALUES:
                    return self._declaration(span_node, 'class', 'default')
            return None

        if node.type in ('lexical_declaration', 'variable_declaration'):
            return self._classify_binding(node, span_node)

        chunk_type = self.node_types.get(node.type)
        if chunk_type is None:
            return None
        return self._declaration(span_node, chunk_type, self._symbol_name(node))

    def _classify_binding(self, node, span_node) -> Optional[Declaration]:
        for declarator in node.named_children:
            if declarator.type != 'variable_declarator':
                continue
            value = declarator.child_by_field_name('value')
            if value is None:
                continue
            name = _node_text(declarator.child_by_field_name('name'))
            if value.type in _FUNCTION_VALUES:
                return self._declaration(span_node, 'function', name)
            if value.type in _CLASS_VALUES:
                return self._declaration(span_node, 'class', name)
        return None

    @staticmethod
    def _symbol_name(node) -> Optional[str]:
        if node.type == 'impl_item':
            type_name = _node_text(node.child_by_field_name('type'))
            trait_name = _node_text(node.child_by_field_name('trait'))
            if trait_name and type_name:
                return f"{trait_name} for {type_name}"
            return type_name

        if node.type == 'type_declaration':
            for spec in node.named_children:
                name = _node_text(spec.child_by_field_name('name'))
                if name:
                    return name
            return None

        return _node_text(node.child_by_field_name('name'))

    @staticmethod
    def _declaration(span_node, chunk_type: str, symbol_name: Optional[str]) -> Declaration:
        start_line, end_line = _node_lines(span_node)
        return Declaration(start_line, end_line, chunk_type, symbol_name)


DEFAULT_STRATEGIES: Dict[str, ChunkingStrategy] = {
    PYTHON_LANGUAGE: PythonAstStrategy(),
    'javascript': TreeSitterStrategy(JAVASCRIPT_NODE_TYPES),
    'typescript': TreeSitterStrategy(TYPESCRIPT_NODE_TYPES),
    'tsx': TreeSitterStrategy(TYPESCRIPT_NODE_TYPES),
    'go': TreeSitterStrategy(GO_NODE_TYPES),
    'rust': TreeSitterStrategy(RUST_NODE_TYPES),
    'java': TreeSitterStrategy(JAVA_NODE_TYPES),
}


class CodeChunker:
    """Turn file content into ``CodeChunk`` objects without embeddings."""

    def __init__(
        self,
        registry: Optional[GrammarRegistry] = None,
        max_file_bytes: int = 1024 * 1024,
        strategies: Optional[Dict[str, ChunkingStrategy]] = None,
    ):
        """Initialize chunker.

        Args:
            registry: Grammar registry; the process-wide one by default
            max_file_bytes: Files above this size are skipped
            strategies: Per-language declaration strategies
        """
        self.registry = registry or get_grammar_registry()
        self.max_file_bytes = max_file_bytes
        self.strategies = strategies if strategies is not None else DEFAULT_STRATEGIES

    def decode(self, file_path: str, content: Union[str, bytes]) -> Optional[str]:
        """Return text for indexable content, or None for binary/oversized input."""
        if isinstance(content, str):
            size = len(content.encode('utf-8'))
            text = content
            if '\x00' in text:
                logger.debug(f"Skipping {file_path}: binary content")
                return None
        else:
            size = len(content)
            if is_binary_content(content):
                logger.debug(f"Skipping {file_path}: binary content")
                return None
            try:
                text = content.decode('utf-8')
            except UnicodeDecodeError:
                logger.debug(f"Skipping {file_path}: not valid UTF-8")
                return None

        if size > self.max_file_bytes:
            logger.debug(f"Skipping {file_path}: {size} bytes exceeds {self.max_file_bytes}")
            return None
        return text

    def chunk(
        self,
        file_path: str,
        content: Union[str, bytes],
        repository_id: str = "",
    ) -> List[CodeChunk]:
        """Chunk one file.

        Args:
            file_path: Repository-relative path, used for language resolution
            content: Raw bytes or decoded text
            repository_id: Owner of the produced chunks

        Returns:
            Chunks in source order; empty for binary, oversized or blank files
        """
        text = self.decode(file_path, content)
        if text is None or not text.strip():
            return []

        language = self.registry.language_for_path(file_path)
        declarations = self._declarations(file_path, language, text)
        if not declarations:
            return [self._whole_file_chunk(file_path, text, language, repository_id)]

        lines = text.split('\n')
        chunks = []
        for declaration in declarations:
            chunks.append(CodeChunk(
                repository_id=repository_id,
                file_path=file_path,
                start_line=declaration.start_line,
                end_line=declaration.end_line,
                content='\n'.join(lines[declaration.start_line - 1:declaration.end_line]),
                language=language,
                chunk_type=declaration.chunk_type,
                symbol_name=declaration.symbol_name,
            ))
        return chunks

    def _declarations(self, file_path: str, language: str, text: str) -> List[Declaration]:
        strategy = self.strategies.get(language)
        if strategy is None or not self.registry.has_grammar(language):
            return []

        try:
            tree = self.registry.parse(language, text)
        except ParseError as e:
            logger.info(f"Falling back to whole-file chunk for {file_path}: {e}")
            return []

        try:
            declarations = strategy.declarations(tree)
        except Exception as e:
            logger.warning(f"Declaration walk failed for {file_path}, using whole-file chunk: {e!r}")
            return []

        return sorted(declarations, key=lambda d: d.start_line)

    @staticmethod
    def _whole_file_chunk(file_path: str, text: str, language: str, repository_id: str) -> CodeChunk:
        line_count = text.count('\n') + (0 if text.endswith('\n') else 1)
        return CodeChunk(
            repository_id=repository_id,
            file_path=file_path,
            start_line=1,
            end_line=max(1, line_count),
            content=text,
            language=language,
            chunk_type='other',
            symbol_name=None,
        )
