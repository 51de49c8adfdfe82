# Embedding generation for work notes and search queries

"""Turn note text and queries into vectors for the pgvector index.

Two backends share one interface:

* OpenAI (default): ``text-embedding-3-small``, chunked by tiktoken tokens.
* A local HTTP embedder (``EMBEDDING_SERVICE_URL``), chunked by characters
  since its tokenizer is unknown.

Failures are split in two. ``PermanentEmbeddingError`` means the provider
rejected the input itself; any other ``EmbeddingError`` is worth retrying.
"""

import logging
from collections.abc import Sequence
from typing import TypeVar

import httpx
import tiktoken
from openai import APIError, AsyncOpenAI, BadRequestError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# Local embedder: statuses that mean "try again later" rather than "bad input"
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

TOKEN_CHUNK_SIZE = 500
TOKEN_CHUNK_OVERLAP = 50
CHAR_CHUNK_SIZE = 2000
CHAR_CHUNK_OVERLAP = 200


class EmbeddingError(Exception):
    """An embedding call failed; the embedding worker retries with backoff."""


class PermanentEmbeddingError(EmbeddingError):
    """The provider rejected the input (e.g. HTTP 400).

    The job still consumes its retry budget and lands in the dead-letter
    queue, where an operator can inspect it.
    """


def _windows(items: Sequence[_T], size: int, overlap: int) -> list[Sequence[_T]]:
    """Slice *items* into windows of *size* that share *overlap* elements."""
    if len(items) <= size:
        return [items]
    step = max(size - overlap, 1)
    windows = []
    for start in range(0, len(items), step):
        windows.append(items[start : start + size])
        if start + size >= len(items):
            break
    return windows


class EmbeddingService:
    """Embed text through OpenAI or a local HTTP embedder.

    Args:
        api_key: OpenAI API key, unused when *local_url* is set.
        model: OpenAI embedding model; also picks the tiktoken encoding.
        dimensions: Requested vector size; must match the index column.
        local_url: Base URL of a local embedder exposing ``POST /embed``.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        local_url: str | None = None,
    ) -> None:
        self._model = model
        self._dimensions = dimensions
        self._local_url = local_url.rstrip("/") if local_url else None
        self._encoding = None

        if self._local_url:
            logger.info("Embedding backend: local service at %s", self._local_url)
            self._client = None
        else:
            self._client = AsyncOpenAI(api_key=api_key)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed_text(self, text: str) -> list[float]:
        """Vector for one string, or ``[]`` when *text* is blank."""
        if not text or not text.strip():
            return []
        vectors = await self._embed([text])
        return vectors[0]

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Vectors for several strings in one request, in input order."""
        if not texts:
            return []
        return await self._embed(texts)

    def chunk_text(
        self,
        text: str,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> list[str]:
        """Split *text* into overlapping chunks small enough to embed.

        Sizes are in tokens for OpenAI and in characters for the local
        embedder. Text that fits in one chunk is returned unchanged.
        """
        if not text or not text.strip():
            return []

        if self._local_url:
            return [
                str(window)
                for window in _windows(
                    text,
                    chunk_size or CHAR_CHUNK_SIZE,
                    overlap if overlap is not None else CHAR_CHUNK_OVERLAP,
                )
            ]

        encoding = self._tokenizer()
        tokens = encoding.encode(text)
        size = chunk_size or TOKEN_CHUNK_SIZE
        if len(tokens) <= size:
            return [text]
        step_overlap = overlap if overlap is not None else TOKEN_CHUNK_OVERLAP
        return [encoding.decode(list(window)) for window in _windows(tokens, size, step_overlap)]

    async def embed_chunks(self, text: str) -> list[tuple[str, list[float]]]:
        """Chunk *text* and pair every chunk with its vector.

        Raises:
            EmbeddingError: If the backend fails or returns the wrong
                number of vectors.
        """
        chunks = self.chunk_text(text)
        if not chunks:
            return []

        vectors = await self.embed_texts(chunks)
        if len(vectors) != len(chunks):
            raise EmbeddingError(f"Expected {len(chunks)} embeddings, got {len(vectors)}")
        return list(zip(chunks, vectors, strict=True))

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def _tokenizer(self):
        if self._encoding is None:
            self._encoding = tiktoken.encoding_for_model(self._model)
        return self._encoding

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        if self._local_url:
            return await self._embed_local(texts)
        return await self._embed_openai(texts)

    async def _embed_openai(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await self._client.embeddings.create(
                input=texts,
                model=self._model,
                dimensions=self._dimensions,
            )
        except BadRequestError as exc:
            logger.error("OpenAI rejected embedding input: %s", exc)
            raise PermanentEmbeddingError(str(exc)) from exc
        except APIError as exc:
            logger.error("OpenAI embedding request failed: %s", exc)
            raise EmbeddingError(str(exc)) from exc

        return [item.embedding for item in sorted(response.data, key=lambda item: item.index)]

    async def _embed_local(self, texts: list[str]) -> list[list[float]]:
        """``POST {local_url}/embed`` with ``{"input", "dimensions"}``, expecting ``{"embeddings": [...]}``."""
        try:
            async with httpx.AsyncClient(timeout=60.0) as client:
                response = await client.post(
                    f"{self._local_url}/embed",
                    json={"input": texts, "dimensions": self._dimensions},
                )
                response.raise_for_status()
                return response.json()["embeddings"]
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error("Local embedder answered %d: %s", status_code, exc)
            if 400 <= status_code < 500 and status_code not in _RETRYABLE_CLIENT_STATUSES:
                raise PermanentEmbeddingError(str(exc)) from exc
            raise EmbeddingError(str(exc)) from exc
        except httpx.RequestError as exc:
            logger.error("Local embedder unreachable: %s", exc)
            raise EmbeddingError(str(exc)) from exc
        except (KeyError, ValueError) as exc:
            raise EmbeddingError(f"Unexpected response from local embedding service: {exc}") from exc


def build_embedding_service(settings) -> EmbeddingService:
    """EmbeddingService configured from application settings."""
    return EmbeddingService(
        api_key=settings.OPENAI_API_KEY,
        model=settings.EMBEDDING_MODEL,
        dimensions=settings.EMBEDDING_DIMENSION,
        local_url=settings.EMBEDDING_SERVICE_URL or None,
    )
