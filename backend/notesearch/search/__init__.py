"""Search package: lexical and semantic adapters, score fusion, and the hybrid engine."""

from notesearch.search.embeddings import EmbeddingError, EmbeddingService, PermanentEmbeddingError
from notesearch.search.engine import (
    HybridSearchEngine,
    LexicalSearchEngine,
    RetrievalError,
    SemanticSearchEngine,
)
from notesearch.search.filters import InvalidFilterError, SearchFilters
from notesearch.search.fusion import FusionPolicy, fuse
from notesearch.search.results import LexicalHit, SearchResult, SemanticHit
from notesearch.search.vector_index import VectorIndex, VectorMatch

__all__ = [
    "EmbeddingError",
    "EmbeddingService",
    "FusionPolicy",
    "HybridSearchEngine",
    "InvalidFilterError",
    "LexicalHit",
    "LexicalSearchEngine",
    "PermanentEmbeddingError",
    "RetrievalError",
    "SearchFilters",
    "SearchResult",
    "SemanticHit",
    "SemanticSearchEngine",
    "VectorIndex",
    "VectorMatch",
    "fuse",
]
