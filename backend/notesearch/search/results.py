"""Result models shared by the search adapters and the fusion step."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from notesearch.constants import SearchSource


class LexicalHit(BaseModel):
    """A full-text match.

    ``rank`` follows the usual relevance-rank convention: unbounded and
    lower (more negative) is better.
    """

    record_id: str
    title: str = ""
    content: str = ""
    category: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    rank: float


class SemanticHit(BaseModel):
    """A nearest-neighbour match from the vector index.

    ``similarity`` is cosine similarity clamped into [0, 1]. ``content`` is
    the best-matching chunk of the note.
    """

    record_id: str
    similarity: float = Field(ge=0.0, le=1.0)
    title: str = ""
    content: str = ""
    category: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EngineContribution(BaseModel):
    """A single adapter's contribution to a fused result's score."""

    engine: str  # "lexical" or "semantic"
    rank: int  # position within that adapter's list (0-based)
    raw_score: float  # rank or similarity as the adapter reported it
    normalized_score: float  # contribution after normalization/weighting


class MatchExplanation(BaseModel):
    """Explains how a fused result's score was obtained."""

    engines: list[EngineContribution]
    combined_score: float


class SearchResult(BaseModel):
    """A single fused search result.

    Attributes:
        record_id: Work note id.
        title: Title of the work note.
        content_snippet: Leading content (lexical) or best chunk (semantic).
        category: Work note category.
        score: Fused relevance, always within [0, 1].
        source: LEXICAL, SEMANTIC, or HYBRID when both adapters returned it.
    """

    record_id: str
    title: str
    content_snippet: str
    category: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    score: float = Field(ge=0.0, le=1.0)
    source: SearchSource
    match_explanation: MatchExplanation | None = None


def truncate_snippet(text: str | None, max_length: int) -> str:
    """Truncate *text* to at most *max_length* characters with a trailing '...'."""
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."
