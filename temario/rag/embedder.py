"""
Embedder module: the only component that talks to the embedding provider.

EmbeddingService truncates input to a character budget, calls the provider
under an explicit timeout (retrying transient errors), and never raises:
every failure resolves to an EmbeddingUnavailable sentinel so ingestion can
persist a document without a vector and retrieval can fall back to lexical
scoring.

Also provides the JSON (de)serialization used to store vectors alongside
documents and the cosine similarity used at query time.
"""

import asyncio
import json
import logging
import math
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np
from openai import AsyncOpenAI
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from temario import config
from temario.rag.chunker import clean_text, windows

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

# Provider errors worth another attempt; anything else fails fast
TRANSIENT_ERROR_PATTERNS = [
    "429",
    "500",
    "502",
    "503",
    "504",
    "rate limit",
    "rate_limit",
    "too many requests",
    "overloaded",
    "service unavailable",
    "temporarily unavailable",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "connection error",
]


def _is_transient(error: BaseException) -> bool:
    """Classify provider errors that may succeed on retry."""
    error_type = type(error).__name__.lower()
    if any(x in error_type for x in ["ratelimit", "timeout", "connection", "internalserver"]):
        return True
    error_str = str(error).lower()
    return any(pattern in error_str for pattern in TRANSIENT_ERROR_PATTERNS)


@dataclass(frozen=True)
class EmbeddingUnavailable:
    """Sentinel returned instead of a vector when embedding failed.

    Falsy, so `if vector:` reads naturally at call sites.
    """
    reason: str

    def __bool__(self) -> bool:
        return False


EmbeddingResult = Union[List[float], EmbeddingUnavailable]


class EmbeddingProvider(ABC):
    """Remote embedding backend contract."""

    @abstractmethod
    async def embed(self, texts: List[str], model: str) -> List[List[float]]:
        """Return one vector per input text, in input order.

        Raise on any failure; EmbeddingService turns errors into sentinels.
        """
        raise NotImplementedError


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API via AsyncOpenAI."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        dimensions: Optional[int] = None,
    ):
        self._api_key = api_key
        self._client = client
        self.dimensions = dimensions

    def _get_client(self) -> AsyncOpenAI:
        """Build the AsyncOpenAI client on first use.

        Raises:
            ValueError: If no API key was configured.
        """
        if self._client is None:
            if not self._api_key:
                raise ValueError("OPENAI_API_KEY not configured")
            # Retries and timeouts are handled by EmbeddingService
            self._client = AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    async def embed(self, texts: List[str], model: str) -> List[List[float]]:
        client = self._get_client()
        kwargs = {"model": model, "input": texts}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions

        response = await client.embeddings.create(**kwargs)

        data = getattr(response, "data", None) or []
        if len(data) != len(texts):
            raise ValueError(
                f"Malformed embedding response: expected {len(texts)} vectors, got {len(data)}"
            )
        embeddings = [item.embedding for item in data]

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.info(
                f"[EMBEDDER] Generated {len(embeddings)} embeddings ({model}), "
                f"usage: {usage.total_tokens} tokens"
            )
        return embeddings


def _validate_vector(vector) -> List[float]:
    if not isinstance(vector, (list, tuple)) or not vector:
        raise ValueError("Malformed embedding: empty or not a list")
    values = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("Malformed embedding: non-numeric component")
        value = float(value)
        if not math.isfinite(value):
            raise ValueError("Malformed embedding: non-finite component")
        values.append(value)
    return values


class EmbeddingService:
    """Derives vectors for documents and queries.

    Construct one instance per process (or per test) and pass it to the
    ingestion pipeline and the retrieval engine.

    Args:
        provider: Backend performing the network call.
        model: Embedding model name; stored next to every vector.
        max_input_chars: Input is truncated to this many characters.
        timeout_seconds: Upper bound for one embed call, retries included.
        max_attempts: Attempts for transient provider errors.
        window_overlap: Overlap between windows of over-budget documents.
        max_windows: Windows embedded per document before stopping early.
        cache_size: Query embeddings kept in the LRU cache (0 disables).
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        model: str = DEFAULT_EMBEDDING_MODEL,
        max_input_chars: int = 20000,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        window_overlap: int = 500,
        max_windows: int = 8,
        cache_size: int = 256,
        retry_wait_seconds: float = 0.5,
    ):
        if max_input_chars <= 0:
            raise ValueError("max_input_chars must be positive")
        if window_overlap >= max_input_chars:
            raise ValueError("window_overlap must be smaller than max_input_chars")
        self.provider = provider
        self.model = model
        self.max_input_chars = max_input_chars
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.window_overlap = window_overlap
        self.max_windows = max(1, max_windows)
        self.cache_size = cache_size
        self.retry_wait_seconds = retry_wait_seconds
        self._query_cache: "OrderedDict[str, List[float]]" = OrderedDict()

    @classmethod
    def from_config(cls, provider: Optional[EmbeddingProvider] = None) -> "EmbeddingService":
        """Build a service from temario.config, using OpenAI unless a provider is given."""
        if provider is None:
            provider = OpenAIEmbeddingProvider(
                api_key=config.OPENAI_API_KEY,
                dimensions=config.EMBEDDING_DIMENSIONS,
            )
        return cls(
            provider=provider,
            model=config.EMBEDDING_MODEL,
            max_input_chars=config.EMBEDDING_MAX_INPUT_CHARS,
            timeout_seconds=config.EMBEDDING_TIMEOUT_SECONDS,
            max_attempts=config.EMBEDDING_MAX_ATTEMPTS,
            window_overlap=config.EMBEDDING_WINDOW_OVERLAP,
            max_windows=config.EMBEDDING_MAX_WINDOWS,
            cache_size=config.QUERY_CACHE_SIZE,
        )

    def prepare(self, text: str) -> str:
        """Whitespace-normalize and truncate text to the input budget."""
        return clean_text(text)[:self.max_input_chars]

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed one text.

        Returns:
            The vector, or EmbeddingUnavailable on any failure (never raises).
        """
        prepared = self.prepare(text)
        if not prepared:
            return EmbeddingUnavailable("empty input")

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=self.retry_wait_seconds * 8),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _create():
            return await self.provider.embed([prepared], self.model)

        try:
            vectors = await asyncio.wait_for(_create(), timeout=self.timeout_seconds)
            if not vectors:
                raise ValueError("Malformed embedding response: no vectors")
            vector = _validate_vector(vectors[0])
        except asyncio.TimeoutError:
            logger.warning(
                f"[EMBEDDER] Provider TIMEOUT ({self.timeout_seconds}s) for "
                f"{len(prepared):,} chars, embedding unavailable"
            )
            return EmbeddingUnavailable("timeout")
        except Exception as e:
            logger.warning(f"[EMBEDDER] Embedding unavailable [{type(e).__name__}]: {e}")
            return EmbeddingUnavailable(f"{type(e).__name__}: {e}")

        logger.debug(f"[EMBEDDER] Embedded {len(prepared):,} chars -> {len(vector)}d")
        return vector

    async def embed_query(self, query: str) -> EmbeddingResult:
        """Embed a query, reusing the vector of an identical earlier query."""
        key = self.prepare(query)
        cached = self._query_cache.get(key)
        if cached is not None:
            self._query_cache.move_to_end(key)
            logger.debug(f"[EMBEDDER] Query cache hit: {key[:60]}")
            return list(cached)

        result = await self.embed(query)
        if result and self.cache_size > 0:
            self._query_cache[key] = list(result)
            while len(self._query_cache) > self.cache_size:
                self._query_cache.popitem(last=False)
        return result

    async def embed_document(self, text: str) -> EmbeddingResult:
        """Embed a whole document, windowing texts over the input budget.

        Each window is embedded independently; the document vector is the
        mean of the windows that succeeded. Stops after `max_windows`.
        """
        normalized = clean_text(text)
        if len(normalized) <= self.max_input_chars:
            return await self.embed(normalized)

        vectors = []
        attempted = 0
        for window in windows(normalized, self.max_input_chars, self.window_overlap):
            if attempted >= self.max_windows:
                break
            attempted += 1
            result = await self.embed(window)
            if result:
                vectors.append(result)

        if not vectors:
            return EmbeddingUnavailable(f"all {attempted} windows failed")
        if len({len(v) for v in vectors}) != 1:
            return EmbeddingUnavailable("windows returned vectors of different dimensions")

        logger.info(
            f"[EMBEDDER] Document of {len(normalized):,} chars embedded from "
            f"{len(vectors)}/{attempted} windows"
        )
        return np.mean(np.asarray(vectors, dtype=float), axis=0).tolist()


def serialize_embedding(vector: Sequence[float]) -> str:
    """Serialize a vector for storage as a JSON array of floats."""
    return json.dumps([float(value) for value in vector])


def deserialize_embedding(raw: Union[str, Sequence[float], None]) -> Optional[List[float]]:
    """Inverse of serialize_embedding.

    Accepts a JSON string or an already-decoded sequence. Returns None for
    missing, empty or malformed input instead of raising.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            return None
    try:
        return _validate_vector(raw)
    except (TypeError, ValueError):
        return None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty or zero-norm vectors.

    Raises:
        ValueError: If the vectors have different dimensions.
    """
    if len(a) == 0 or len(b) == 0:
        return 0.0
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)
