"""Search query analysis for the full-text adapter.

Korean queries are split into content morphemes with kiwipiepy so that
``예산을`` still finds notes containing ``예산``. Every term becomes a
prefix match in an OR-joined tsquery. The NFC-normalized query text is
kept for the semantic adapter.
"""

from __future__ import annotations

import re
import unicodedata
from functools import lru_cache
from typing import NamedTuple

from kiwipiepy import Kiwi


class QueryAnalysis(NamedTuple):
    """What the lexical and semantic adapters need to know about a query.

    Attributes:
        original: Query exactly as received.
        terms: Morpheme base forms (Korean) followed by whitespace tokens.
        language: "ko", "en" or "mixed".
        tsquery_expr: Expression for ``to_tsquery('simple', ...)``; "" if
            nothing searchable is left.
        normalized: Stripped, NFC-normalized query for embedding.
    """

    original: str
    terms: list[str]
    language: str
    tsquery_expr: str
    normalized: str


# Nouns, proper nouns, verb/adjective stems, foreign words, numbers
_KIWI_CONTENT_TAGS = frozenset({"NNG", "NNP", "VV", "VA", "SL", "SN"})

# Syllables, compatibility jamo and conjoining jamo
_HANGUL = re.compile(r"[\uAC00-\uD7A3\u3131-\u3163\u1100-\u11FF]")
_LATIN = re.compile(r"[A-Za-z]")
_TSQUERY_OPERATORS = re.compile(r"[&|!():*<>'\\]")


@lru_cache(maxsize=1)
def _kiwi() -> Kiwi:
    # One analyzer per process
    return Kiwi()


def _detect_language(text: str) -> str:
    """Classify *text* by script: Hangul only, Latin (or neither), or both."""
    korean = _HANGUL.search(text) is not None
    latin = _LATIN.search(text) is not None
    if korean:
        return "mixed" if latin else "ko"
    return "en"


def _korean_terms(text: str) -> list[str]:
    forms = (token.form for token in _kiwi().tokenize(text) if token.tag in _KIWI_CONTENT_TAGS)
    return list(dict.fromkeys(forms))


def _build_tsquery_expr(terms: list[str]) -> str:
    """OR-join *terms* as lowercase prefix matches, e.g. ``'예산':* | 'kpi':*``.

    tsquery operators inside a term act as word separators, and repeated
    words are emitted once.
    """
    words: dict[str, None] = {}
    for term in terms:
        for word in _TSQUERY_OPERATORS.sub(" ", term).lower().split():
            words.setdefault(word)
    return " | ".join(f"'{word}':*" for word in words)


def analyze_query(query: str) -> QueryAnalysis:
    normalized = unicodedata.normalize("NFC", query.strip())
    if not normalized:
        return QueryAnalysis(original=query, terms=[], language="en", tsquery_expr="", normalized="")

    language = _detect_language(normalized)
    terms = normalized.split()
    if language != "en":
        terms = _korean_terms(normalized) + terms

    return QueryAnalysis(
        original=query,
        terms=terms,
        language=language,
        tsquery_expr=_build_tsquery_expr(terms),
        normalized=normalized,
    )
