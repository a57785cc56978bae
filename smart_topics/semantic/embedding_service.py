"""
Embedding Service - Turn note text into vectors.

Providers:
- OpenAICompatibleEmbeddingProvider: any ``/embeddings`` endpoint speaking the
  OpenAI wire format (OpenAI, BigModel, local gateways).
- LocalHashEmbeddingProvider: deterministic signed-hash token embedding for
  offline and development runs. Selected explicitly, never as a silent fallback.
- SentenceTransformerEmbeddingProvider: in-process sentence-transformers model
  (optional ``local-ai`` extra).

Provider failures are raised as TopicEngineError with a classification so the
batcher can tell "payload too large" (recoverable by splitting) apart from
misconfiguration (fatal).
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import unicodedata
from typing import Any, Protocol

import httpx
import numpy as np
from loguru import logger

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.core.records import present_values

DEFAULT_MAX_CHARS = 8000
MIN_MAX_CHARS = 256
MAX_MAX_CHARS = 12000
LOCAL_EMBEDDING_DIMENSION = 384

_URL_RE = re.compile(r"https?://\S+")
_TOO_LARGE_MARKERS = ("request entity too large", "entity too large", "payload too large", "1210")

CONFIG_HINT = (
    "Check the embedding provider settings: EMBEDDING_BASE_URL, EMBEDDING_API_KEY and "
    "EMBEDDING_MODEL must point at an endpoint that implements /embeddings "
    "(a chat-only base URL will not work)."
)
PAYLOAD_HINT = (
    "Embedding request body is too large: lower EMBEDDING_BATCH_SIZE (e.g. 8 or 4) "
    "and EMBEDDING_MAX_CHARS (e.g. 2500 or 1500)."
)


def clamp_max_chars(max_chars: int | None) -> int:
    """Clamp the embedding character budget to a safe range."""
    if max_chars is None:
        return DEFAULT_MAX_CHARS
    return max(MIN_MAX_CHARS, min(MAX_MAX_CHARS, int(max_chars)))


def build_embedding_text(
    title: str | None,
    excerpt: str | None,
    body: str | None,
    max_chars: int | None = DEFAULT_MAX_CHARS,
) -> str:
    """
    Combine the available note fields into one embedding input.

    Blank fields are skipped; the result is truncated to the character budget.
    """
    text = "\n\n".join(present_values(title, excerpt, body)).strip()
    return text[: clamp_max_chars(max_chars)]


def content_hash(text: str) -> str:
    """Stable sha256 hex digest of the embedding input."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_payload_too_large(message: str, status_code: int | None = None) -> bool:
    """Detect provider rejections caused by request size."""
    if status_code == 413:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _TOO_LARGE_MARKERS)


def default_batch_size(base_url: str, model: str, configured: int | None = None) -> int:
    """
    Pick the number of texts per embedding request.

    An explicit setting wins (clamped to 1..64); otherwise providers known for
    tight payload limits get 8 and everything else 64.
    """
    if configured is not None and configured > 0:
        return max(1, min(64, int(configured)))
    base = (base_url or "").lower()
    name = (model or "").lower()
    if "open.bigmodel.cn" in base or "embedding-3" in name:
        return 8
    return 64


class EmbeddingProvider(Protocol):
    """Anything that can embed a batch of texts."""

    model_name: str

    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...


def _tokenize_for_local_embedding(text: str) -> list[str]:
    cleaned = _URL_RE.sub(" ", (text or "").lower())
    cleaned = "".join(
        " " if unicodedata.category(ch)[0] in ("P", "S") else ch for ch in cleaned
    )
    tokens = [t for t in cleaned.split() if len(t) >= 2]
    return tokens[:4096]


def local_hash_embedding(text: str, dimension: int = LOCAL_EMBEDDING_DIMENSION) -> list[float]:
    """
    Deterministic bag-of-tokens embedding.

    Each token is hashed into one of ``dimension`` buckets with a sign taken
    from the hash; the result is L2-normalized. Texts sharing vocabulary end
    up with high cosine similarity, which is enough for offline runs.
    """
    vector = np.zeros(dimension, dtype=np.float64)
    for token in _tokenize_for_local_embedding(text):
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        n = int.from_bytes(digest[:4], "big")
        sign = 1.0 if n & 1 == 0 else -1.0
        vector[n % dimension] += sign
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector.tolist()


class LocalHashEmbeddingProvider:
    """Offline provider backed by :func:`local_hash_embedding`."""

    def __init__(self, model_name: str = "local-hash", dimension: int = LOCAL_EMBEDDING_DIMENSION):
        self.model_name = model_name
        self.dimension = dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [local_hash_embedding(t, self.dimension) for t in texts]


class OpenAICompatibleEmbeddingProvider:
    """
    HTTP client for OpenAI-compatible ``/embeddings`` endpoints.

    No retries happen here: payload-size failures are handled by the batcher,
    everything else is left to the caller's scheduling policy.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        if not api_key.strip():
            raise TopicEngineError(
                ErrorKind.CONFIGURATION,
                "Embedding API key is not configured",
                hint=CONFIG_HINT,
                details={"base_url": base_url, "model": model_name},
            )
        base = base_url.strip().rstrip("/")
        self.endpoint = base if base.lower().endswith("/embeddings") else f"{base}/embeddings"
        self.base_url = base_url
        self.api_key = api_key.strip()
        self.model_name = model_name
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def _details(self, **extra: Any) -> dict[str, Any]:
        return {"base_url": self.base_url, "model": self.model_name, **extra}

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch of texts.

        Raises:
            TopicEngineError: PAYLOAD_TOO_LARGE, CONFIGURATION or PROVIDER.
        """
        if not texts:
            return []

        try:
            response = await self.client.post(
                self.endpoint,
                json={"model": self.model_name, "input": texts},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.RequestError as e:
            raise TopicEngineError(
                ErrorKind.PROVIDER,
                "Embedding request failed",
                hint="The embedding provider could not be reached; retry later or check EMBEDDING_BASE_URL.",
                details=self._details(raw=str(e)),
            ) from e

        if response.status_code >= 400:
            raw = response.text[:1000]
            status = response.status_code
            logger.warning(f"Embedding API returned {status} for {len(texts)} texts: {raw[:200]}")

            if is_payload_too_large(raw, status):
                raise TopicEngineError(
                    ErrorKind.PAYLOAD_TOO_LARGE,
                    "Embedding request entity too large",
                    hint=PAYLOAD_HINT,
                    details=self._details(status=status, raw=raw, batch_size=len(texts)),
                )
            if status in (401, 403, 404):
                raise TopicEngineError(
                    ErrorKind.CONFIGURATION,
                    "Embedding provider is misconfigured",
                    hint=CONFIG_HINT,
                    details=self._details(status=status, raw=raw),
                )
            raise TopicEngineError(
                ErrorKind.PROVIDER,
                f"Embedding API failed ({status})",
                hint="The embedding provider returned an error; retry the rebuild later.",
                details=self._details(status=status, raw=raw),
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TopicEngineError(
                ErrorKind.PROVIDER,
                "Embedding API returned invalid JSON",
                details=self._details(raw=response.text[:500]),
            ) from e

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            items = []
        # Some providers do not guarantee ordering; honour "index" when present.
        if all(isinstance(item, dict) and isinstance(item.get("index"), int) for item in items):
            items = sorted(items, key=lambda item: item["index"])

        vectors: list[list[float]] = []
        for item in items:
            raw_vector = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(raw_vector, list):
                vectors.append([])
                continue
            values = []
            for x in raw_vector:
                try:
                    value = float(x)
                except (TypeError, ValueError):
                    continue
                if np.isfinite(value):
                    values.append(value)
            vectors.append(values)

        if len(vectors) != len(texts):
            raise TopicEngineError(
                ErrorKind.PROVIDER,
                f"Embedding API returned {len(vectors)} items for {len(texts)} inputs",
                details=self._details(),
            )
        return vectors


class SentenceTransformerEmbeddingProvider:
    """
    In-process embeddings with sentence-transformers.

    The model is lazy-loaded on first use to avoid startup delays; encoding
    runs in a worker thread so the event loop stays responsive.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", model: Any | None = None):
        self.model_name = model_name
        self._model = model

    @property
    def model(self) -> Any:
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise TopicEngineError(
                    ErrorKind.CONFIGURATION,
                    "sentence-transformers is not installed",
                    hint="Install the local-ai extra: pip install 'smart-topics[local-ai]'.",
                    details={"raw": str(e)},
                ) from e
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = self.model
        embeddings = await asyncio.to_thread(
            model.encode, texts, convert_to_numpy=True, show_progress_bar=False
        )
        return [np.asarray(row, dtype=np.float64).tolist() for row in embeddings]


def build_embedding_provider(settings: Any) -> EmbeddingProvider:
    """Create the provider selected by settings."""
    if settings.uses_local_embeddings():
        model_name = settings.embedding_model if settings.embedding_provider == "local" else "local"
        logger.info("Using local hash embeddings")
        return LocalHashEmbeddingProvider(model_name=model_name, dimension=settings.embedding_dimension)
    if settings.embedding_provider == "sentence-transformers":
        return SentenceTransformerEmbeddingProvider(model_name=settings.embedding_model)
    return OpenAICompatibleEmbeddingProvider(
        base_url=settings.embedding_base_url,
        api_key=settings.embedding_api_key,
        model_name=settings.embedding_model,
        timeout_seconds=settings.embedding_timeout_seconds,
    )
