"""Retrieval and prompt context assembly."""

from .context import (
    ContextOptions,
    ContextResult,
    EnhancedPrompt,
    build_code_context,
    build_enhanced_system_prompt,
    build_file_context,
    build_minimal_context,
    estimate_tokens,
    extract_citations,
    format_citation,
)
from .hybrid import LexicalIndex, reciprocal_rank_fusion, tokenize
from .reranker import rerank_chunks, rerank_document
from .retriever import Retriever

__all__ = [
    "ContextOptions",
    "ContextResult",
    "EnhancedPrompt",
    "build_code_context",
    "build_enhanced_system_prompt",
    "build_file_context",
    "build_minimal_context",
    "estimate_tokens",
    "extract_citations",
    "format_citation",
    "LexicalIndex",
    "reciprocal_rank_fusion",
    "rerank_chunks",
    "rerank_document",
    "Retriever",
    "tokenize",
]
