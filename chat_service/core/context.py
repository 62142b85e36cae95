from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from chat_service.core.settings import SETTINGS

UNKNOWN_SOURCE = "unknown"
ELLIPSIS = "..."


@dataclass(frozen=True)
class SearchResult:
    content: str
    source: Optional[str] = None
    score: float = 0.0


def _snippet(text: str, max_chars: int) -> str:
    if len(text) > max_chars:
        return text[:max_chars] + ELLIPSIS
    return text


def build_context(results: Optional[Sequence[SearchResult]], max_chars: int | None = None) -> str:
    # "" tells the generation client there is no retrieval grounding
    if not results:
        return ""
    limit = max_chars if max_chars is not None else SETTINGS.snippet_max_chars
    lines = []
    for index, result in enumerate(results, start=1):
        source = result.source or UNKNOWN_SOURCE
        lines.append(f"[{index}] ({source}) {_snippet(result.content or '', limit)}\n")
    return "".join(lines)
