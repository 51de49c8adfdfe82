"""Centralized search parameter management.

All fusion and ranking parameters (adapter weights, lexical rank
normalization, similarity floor) live here with their defaults and can be
overridden through the ``SEARCH_PARAMS`` setting (a JSON object).

Usage in search engines::

    from notesearch.search.params import get_search_params
    params = get_search_params()
    score = params["lexical_weight"] * lex_score + params["semantic_weight"] * sem_score
"""

from __future__ import annotations

from typing import Any

from notesearch.config import get_settings

DEFAULT_SEARCH_PARAMS: dict[str, Any] = {
    # Fusion
    "fusion_strategy": "weighted",  # "weighted" | "rrf"
    "lexical_weight": 0.5,
    "semantic_weight": 0.5,
    "rrf_k": 60,
    # Lexical rank -> [0, 1]
    "lexical_normalizer": "minmax",  # "minmax" | "reciprocal" | "linear"
    "lexical_linear_scale": 10.0,
    # FTS field boosting
    "title_weight": 3.0,
    "content_weight": 1.0,
    # Semantic
    "semantic_min_similarity": 0.0,
    # Snippets
    "snippet_max_length": 200,
}


def get_search_params() -> dict[str, Any]:
    """Return current search parameters, merging overrides with defaults.

    Unknown keys in the override are ignored so a stale configuration
    cannot inject parameters the engines never read.
    """
    saved = get_settings().SEARCH_PARAMS
    merged = {**DEFAULT_SEARCH_PARAMS}
    if isinstance(saved, dict):
        for key in DEFAULT_SEARCH_PARAMS:
            if key in saved:
                merged[key] = saved[key]
    return merged
