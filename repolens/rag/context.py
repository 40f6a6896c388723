"""Assemble retrieved chunks into a token-budgeted prompt context.

Token counts are estimated at four characters per token. Every string
piece below is concatenated without separators, so the length of the
final context is exactly the sum of the pieces chosen during budgeting.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from repolens.models import Citation, RetrievedChunk

CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 30000
MAX_MINIMAL_SYMBOLS = 5

MESSAGES = {
    "fr": {
        "empty": "Aucun code pertinent trouve dans le repository.",
        "header": "## Code source pertinent\n\nJ'ai trouve {count} section(s) de code pertinente(s) dans le repository:\n\n",
        "truncated": "_Note: {included}/{total} sections affichees (limite de tokens atteinte)_\n\n",
        "instructions": (
            "Utilise ces informations pour repondre avec precision.\n"
            "Cite toujours les fichiers avec le format `[chemin:lignes]`."
        ),
        "minimal_empty": "Aucun code pertinent trouve.",
        "minimal_header": "## Fichiers pertinents\n",
        "file_empty": "Aucun contenu trouve pour {path}",
        "file_symbol": "### {type}: `{symbol}` (lignes {start}-{end})",
        "file_lines": "### Lignes {start}-{end}",
    },
    "en": {
        "empty": "No relevant code found in the repository.",
        "header": "## Relevant Source Code\n\nFound {count} relevant code section(s) in the repository:\n\n",
        "truncated": "_Note: Showing {included}/{total} sections (token limit reached)_\n\n",
        "instructions": (
            "Use this information to answer accurately.\n"
            "Always cite files using the format `[path:lines]`."
        ),
        "minimal_empty": "No relevant code found.",
        "minimal_header": "## Relevant Files\n",
        "file_empty": "No content found for {path}",
        "file_symbol": "### {type}: `{symbol}` (lines {start}-{end})",
        "file_lines": "### Lines {start}-{end}",
    },
}


class ContextOptions(BaseModel):
    """Options for ``build_code_context``; accepts camelCase keys too."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    language: Literal["fr", "en"] = Field(default="fr", description="Locale of fixed strings")
    group_by_file: bool = Field(default=True, alias="groupByFile", description="Group chunks under file headers")
    include_scores: bool = Field(default=False, alias="includeScores", description="Show relevance percentages")
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0, alias="maxTokens", description="Token budget")


OptionsLike = Union[ContextOptions, Mapping[str, Any], None]


@dataclass
class ContextResult:
    """Assembled context plus what went into it."""
    context: str
    chunks_included: int
    chunks_total: int
    truncated: bool
    estimated_tokens: int
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "chunks_included": self.chunks_included,
            "chunks_total": self.chunks_total,
            "truncated": self.truncated,
            "estimated_tokens": self.estimated_tokens,
            "files": list(self.files),
        }


@dataclass
class EnhancedPrompt:
    prompt: str
    result: ContextResult


def resolve_options(options: OptionsLike = None, **overrides) -> ContextOptions:
    """Accept a ``ContextOptions``, a plain mapping or nothing, plus keyword overrides."""
    if isinstance(options, ContextOptions):
        if not any(value is not None for value in overrides.values()):
            return options
        data = options.model_dump(exclude_unset=True)
    else:
        data = dict(options or {})
    data.update({key: value for key, value in overrides.items() if value is not None})
    return ContextOptions.model_validate(data)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def format_citation(chunk: RetrievedChunk) -> str:
    """``[path:start-end]`` tag for a chunk."""
    return f"[{chunk.file_path}:{chunk.start_line}-{chunk.end_line}]"


def _relevance_percent(score: float) -> int:
    # Rounds half up
    return int(math.floor(score * 100 + 0.5))


def _format_chunk(chunk: RetrievedChunk, include_scores: bool) -> str:
    lines = [f"### {format_citation(chunk)}"]
    if chunk.symbol_name:
        lines.append(f"**{chunk.chunk_type}**: `{chunk.symbol_name}`")
    else:
        lines.append(f"**{chunk.chunk_type}**")
    if include_scores:
        lines.append(f"_Relevance: {_relevance_percent(chunk.score)}%_")
    lines.append("")
    lines.append(f"```{chunk.language}")
    lines.append(chunk.content)
    lines.append("```")
    return "\n".join(lines) + "\n\n"


def _file_header(file_path: str) -> str:
    return f"## 📄 {file_path}\n\n"


def _footer(messages: Dict[str, str], included: int, total: int, truncated: bool) -> str:
    parts = ["---\n"]
    if truncated:
        parts.append(messages["truncated"].format(included=included, total=total))
    parts.append(messages["instructions"])
    return "".join(parts)


def _first_seen(paths: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(paths))


def build_code_context(chunks: Sequence[RetrievedChunk], options: OptionsLike = None, **overrides) -> ContextResult:
    """Render ``chunks`` into a context block within ``max_tokens``.

    Chunks are taken greedily in the given order (callers pass them sorted
    by relevance) and inclusion stops at the first chunk that would overflow
    the budget. The budget covers the header, every included chunk with its
    file header, and the longest possible footer.

    Args:
        chunks: Retrieved chunks, most relevant first
        options: ``ContextOptions`` or a mapping of its fields
        **overrides: Individual option overrides

    Returns:
        The rendered context and inclusion counts
    """
    opts = resolve_options(options, **overrides)
    messages = MESSAGES[opts.language]
    total = len(chunks)

    if total == 0:
        context = messages["empty"]
        return ContextResult(
            context=context,
            chunks_included=0,
            chunks_total=0,
            truncated=False,
            estimated_tokens=estimate_tokens(context),
            files=[],
        )

    header = messages["header"].format(count=total)
    budget = opts.max_tokens * CHARS_PER_TOKEN
    used = len(header) + len(_footer(messages, total, total, truncated=True))

    included: List[RetrievedChunk] = []
    rendered: List[str] = []
    seen_files = set()

    for chunk in chunks:
        body = _format_chunk(chunk, opts.include_scores)
        cost = len(body)
        if opts.group_by_file and chunk.file_path not in seen_files:
            cost += len(_file_header(chunk.file_path))
        if used + cost > budget:
            break
        used += cost
        included.append(chunk)
        rendered.append(body)
        seen_files.add(chunk.file_path)

    files = _first_seen([chunk.file_path for chunk in included])
    truncated = len(included) < total

    sections: List[str] = []
    if opts.group_by_file:
        for file_path in files:
            sections.append(_file_header(file_path))
            positions = sorted(
                (i for i, c in enumerate(included) if c.file_path == file_path),
                key=lambda i: included[i].start_line,
            )
            sections.extend(rendered[i] for i in positions)
    else:
        sections.extend(rendered)

    context = header + "".join(sections) + _footer(messages, len(included), total, truncated)

    return ContextResult(
        context=context,
        chunks_included=len(included),
        chunks_total=total,
        truncated=truncated,
        estimated_tokens=estimate_tokens(context),
        files=files,
    )


def build_minimal_context(chunks: Sequence[RetrievedChunk], options: OptionsLike = None, **overrides) -> str:
    """File list with up to five symbol names each, no code."""
    messages = MESSAGES[resolve_options(options, **overrides).language]
    if not chunks:
        return messages["minimal_empty"]

    lines = [messages["minimal_header"]]
    for file_path in _first_seen([c.file_path for c in chunks]):
        file_chunks = sorted((c for c in chunks if c.file_path == file_path), key=lambda c: c.start_line)
        symbols = [f"`{c.symbol_name}`" for c in file_chunks if c.symbol_name][:MAX_MINIMAL_SYMBOLS]
        suffix = f": {', '.join(symbols)}" if symbols else ""
        lines.append(f"- **{file_path}**{suffix}")
    return "\n".join(lines)


def build_file_context(
    chunks: Sequence[RetrievedChunk],
    file_path: str,
    options: OptionsLike = None,
    **overrides,
) -> str:
    """Every chunk of one file in line order."""
    messages = MESSAGES[resolve_options(options, **overrides).language]
    file_chunks = sorted((c for c in chunks if c.file_path == file_path), key=lambda c: c.start_line)
    if not file_chunks:
        return messages["file_empty"].format(path=file_path)

    lines = [f"## 📄 {file_path}", ""]
    for chunk in file_chunks:
        if chunk.symbol_name:
            lines.append(messages["file_symbol"].format(
                type=chunk.chunk_type, symbol=chunk.symbol_name, start=chunk.start_line, end=chunk.end_line
            ))
        else:
            lines.append(messages["file_lines"].format(start=chunk.start_line, end=chunk.end_line))
        lines.extend(["", f"```{chunk.language}", chunk.content, "```", ""])
    return "\n".join(lines)


def to_citation(chunk: RetrievedChunk) -> Citation:
    return Citation(
        file=chunk.file_path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        symbol=chunk.symbol_name or None,
    )


def extract_citations(chunks: Sequence[RetrievedChunk]) -> List[Dict[str, Any]]:
    """One citation dict per chunk; ``symbol`` is absent when there is no symbol name."""
    return [to_citation(chunk).to_dict() for chunk in chunks]


def build_enhanced_system_prompt(
    base_prompt: str,
    chunks: Sequence[RetrievedChunk],
    options: OptionsLike = None,
    **overrides,
) -> EnhancedPrompt:
    """Append the code context to a system prompt."""
    result = build_code_context(chunks, options, **overrides)
    return EnhancedPrompt(prompt=f"{base_prompt}\n\n{result.context}", result=result)
