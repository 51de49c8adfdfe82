"""Score fusion for hybrid search.

Lexical ranks are unbounded (lower is better) while semantic similarity is
already in [0, 1]. Fusion therefore works in two steps:

1. Normalize each lexical batch to [0, 1] with a pluggable normalizer so
   the best (lowest) rank maps closest to 1.
2. Merge both candidate lists by ``record_id``:

   * a record found by one adapter keeps that adapter's normalized score
     and its single-source tag;
   * a record found by both gets ``w_lex * lex + w_sem * sem`` and is
     tagged ``HYBRID``.

The ``rrf`` strategy replaces step 2 scores with Weighted Reciprocal Rank
Fusion, ``sum(w / (k + position))``, rescaled by ``k + 1`` so a record
ranked first by both adapters scores exactly 1.

Merged results are sorted by score descending, ties broken by
``created_at`` descending (missing dates last) and then ``record_id``
ascending, and truncated to the requested limit.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from notesearch.constants import SearchSource
from notesearch.search.results import (
    EngineContribution,
    LexicalHit,
    MatchExplanation,
    SearchResult,
    SemanticHit,
    truncate_snippet,
)

LexicalNormalizer = Callable[[Sequence[float]], list[float]]


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


# ---------------------------------------------------------------------------
# Lexical rank normalizers
# ---------------------------------------------------------------------------


def reciprocal_normalizer(ranks: Sequence[float]) -> list[float]:
    """Map each rank independently with ``1 - 1 / (1 + max(0, -rank))``.

    Monotonic and batch-independent: rank 0 maps to 0, ranks tending to
    minus infinity approach 1. Positive ranks (worse than any match) map to 0.
    """
    return [_clamp(1.0 - 1.0 / (1.0 + max(0.0, -rank))) for rank in ranks]


def minmax_normalizer(ranks: Sequence[float]) -> list[float]:
    """Min-max scale over the batch: best rank -> 1.0, worst rank -> 0.0.

    A batch of one, or a batch where every rank is equal, maps to 1.0.
    """
    if not ranks:
        return []
    best = min(ranks)
    worst = max(ranks)
    if worst == best:
        return [1.0 for _ in ranks]
    span = worst - best
    return [_clamp((worst - rank) / span) for rank in ranks]


def make_linear_normalizer(scale: float) -> LexicalNormalizer:
    """Linear mapping ``-rank / scale`` clipped to [0, 1].

    Ranks at or below ``-scale`` saturate at 1.0.
    """
    if scale <= 0:
        raise ValueError(f"linear normalizer scale must be positive, got {scale}")

    def _normalize(ranks: Sequence[float]) -> list[float]:
        return [_clamp(-rank / scale) for rank in ranks]

    return _normalize


def get_lexical_normalizer(name: str, linear_scale: float = 10.0) -> LexicalNormalizer:
    """Resolve a normalizer by name ("reciprocal", "minmax" or "linear")."""
    if name == "reciprocal":
        return reciprocal_normalizer
    if name == "minmax":
        return minmax_normalizer
    if name == "linear":
        return make_linear_normalizer(linear_scale)
    raise ValueError(f"Unknown lexical normalizer: {name!r}")


# ---------------------------------------------------------------------------
# Fusion policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FusionPolicy:
    """How lexical and semantic candidates are combined.

    Weights are normalized to sum to 1 so fused scores stay within [0, 1].
    """

    strategy: str = "weighted"
    lexical_weight: float = 0.5
    semantic_weight: float = 0.5
    normalizer: str = "minmax"
    linear_scale: float = 10.0
    rrf_k: int = 60
    snippet_max_length: int = 200

    def __post_init__(self) -> None:
        if self.strategy not in ("weighted", "rrf"):
            raise ValueError(f"Unknown fusion strategy: {self.strategy!r}")
        if self.lexical_weight < 0 or self.semantic_weight < 0:
            raise ValueError("Fusion weights must be non-negative")
        if self.lexical_weight + self.semantic_weight <= 0:
            raise ValueError("At least one fusion weight must be positive")
        if self.rrf_k < 0:
            raise ValueError("rrf_k must be non-negative")
        # Fail fast on an unknown normalizer name
        get_lexical_normalizer(self.normalizer, self.linear_scale)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> FusionPolicy:
        """Build a policy from the merged search parameters."""
        return cls(
            strategy=str(params["fusion_strategy"]),
            lexical_weight=float(params["lexical_weight"]),
            semantic_weight=float(params["semantic_weight"]),
            normalizer=str(params["lexical_normalizer"]),
            linear_scale=float(params["lexical_linear_scale"]),
            rrf_k=int(params["rrf_k"]),
            snippet_max_length=int(params["snippet_max_length"]),
        )

    @property
    def weights(self) -> tuple[float, float]:
        """(lexical, semantic) weights scaled to sum to 1."""
        total = self.lexical_weight + self.semantic_weight
        return self.lexical_weight / total, self.semantic_weight / total


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def _dedupe_lexical(hits: Sequence[LexicalHit]) -> list[LexicalHit]:
    """Keep the best-ranked hit per record, ordered best first."""
    best: dict[str, LexicalHit] = {}
    for hit in hits:
        current = best.get(hit.record_id)
        if current is None or hit.rank < current.rank:
            best[hit.record_id] = hit
    return sorted(best.values(), key=lambda h: h.rank)


def _dedupe_semantic(hits: Sequence[SemanticHit]) -> list[SemanticHit]:
    """Keep the most similar hit per record, ordered best first."""
    best: dict[str, SemanticHit] = {}
    for hit in hits:
        current = best.get(hit.record_id)
        if current is None or hit.similarity > current.similarity:
            best[hit.record_id] = hit
    return sorted(best.values(), key=lambda h: h.similarity, reverse=True)


def sort_results(results: list[SearchResult]) -> list[SearchResult]:
    """Order by score desc, then created_at desc (None last), then record_id asc."""
    ordered = sorted(results, key=lambda r: r.record_id)
    ordered.sort(
        key=lambda r: (r.created_at is not None, r.created_at.timestamp() if r.created_at else 0.0),
        reverse=True,
    )
    ordered.sort(key=lambda r: r.score, reverse=True)
    return ordered


def fuse(
    lexical_hits: Sequence[LexicalHit],
    semantic_hits: Sequence[SemanticHit],
    policy: FusionPolicy | None = None,
    limit: int | None = None,
) -> list[SearchResult]:
    """Merge lexical and semantic candidates into one ranked list.

    Args:
        lexical_hits: Full-text hits in any order.
        semantic_hits: Vector hits in any order.
        policy: Fusion policy; defaults to equal-weight weighted sum.
        limit: Maximum number of results to return (``None`` for all).

    Returns:
        Results sorted by score descending; each ``record_id`` appears once.
    """
    policy = policy or FusionPolicy()
    lexical = _dedupe_lexical(lexical_hits)
    semantic = _dedupe_semantic(semantic_hits)
    w_lex, w_sem = policy.weights

    if policy.strategy == "rrf":
        k = policy.rrf_k
        lex_scores = [(k + 1) * w_lex / (k + position + 1) for position in range(len(lexical))]
        sem_scores = [(k + 1) * w_sem / (k + position + 1) for position in range(len(semantic))]
    else:
        normalize = get_lexical_normalizer(policy.normalizer, policy.linear_scale)
        lex_scores = normalize([hit.rank for hit in lexical])
        sem_scores = [_clamp(hit.similarity) for hit in semantic]

    lex_by_id = {hit.record_id: (position, hit, lex_scores[position]) for position, hit in enumerate(lexical)}
    sem_by_id = {hit.record_id: (position, hit, sem_scores[position]) for position, hit in enumerate(semantic)}

    merged: list[SearchResult] = []
    for record_id in {*lex_by_id, *sem_by_id}:
        lex_entry = lex_by_id.get(record_id)
        sem_entry = sem_by_id.get(record_id)
        contributions: list[EngineContribution] = []

        if lex_entry and sem_entry:
            source = SearchSource.HYBRID
            if policy.strategy == "rrf":
                lex_part, sem_part = lex_entry[2], sem_entry[2]
            else:
                lex_part, sem_part = w_lex * lex_entry[2], w_sem * sem_entry[2]
            score = lex_part + sem_part
        elif lex_entry:
            source = SearchSource.LEXICAL
            lex_part, sem_part = lex_entry[2], 0.0
            score = lex_part
        else:
            source = SearchSource.SEMANTIC
            lex_part, sem_part = 0.0, sem_entry[2]
            score = sem_part

        if lex_entry:
            position, hit, _ = lex_entry
            contributions.append(
                EngineContribution(engine="lexical", rank=position, raw_score=hit.rank, normalized_score=lex_part)
            )
        if sem_entry:
            position, hit, _ = sem_entry
            contributions.append(
                EngineContribution(
                    engine="semantic", rank=position, raw_score=hit.similarity, normalized_score=sem_part
                )
            )

        # Lexical rows carry the full note; semantic rows only the best chunk
        base = lex_entry[1] if lex_entry else sem_entry[1]
        score = _clamp(score)
        merged.append(
            SearchResult(
                record_id=record_id,
                title=base.title,
                content_snippet=truncate_snippet(base.content, policy.snippet_max_length),
                category=base.category,
                created_at=base.created_at,
                updated_at=base.updated_at,
                score=score,
                source=source,
                match_explanation=MatchExplanation(engines=contributions, combined_score=score),
            )
        )

    ordered = sort_results(merged)
    if limit is not None:
        return ordered[: max(limit, 0)]
    return ordered
