"""Embedding provider implementations and factory.

Provides:
- OpenAIEmbeddingProvider: OpenAI embeddings API (also any OpenAI-compatible endpoint).
- VoyageEmbeddingProvider: Voyage AI REST API, used for the anthropic backend.
- GeminiEmbeddingProvider: Google Generative AI embed_content.
- CustomEmbeddingProvider: generic HTTP embedding service with tolerant response parsing.
- HashEmbeddingProvider: deterministic, non-semantic fallback for backends without an
  embedding API. It flags itself as degraded so retrieval quality loss is observable.
- build_embedding_provider: picks the implementation for a ProviderSettings snapshot.

Timeouts are read from kb_rag.config.settings.
"""
import hashlib
import logging
import math
from typing import Any, List, Optional

import openai
from openai import OpenAI

from kb_rag.config import settings
from kb_rag.exceptions import EmbeddingNotSupportedError, ProviderError
from kb_rag.providers.base import (
    DEFAULT_EMBEDDING_BASE_URLS,
    NON_NATIVE_EMBEDDING_KINDS,
    BackendKind,
    EmbeddingProvider,
    ProviderSettings,
)
from kb_rag.providers.transport import post_json, translate_google_error, translate_sdk_error

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings through the OpenAI SDK; batch requests are native."""

    def __init__(self, config: ProviderSettings, client: Optional[OpenAI] = None):
        self.name = f"{config.kind.value}-embedding"
        self.model = config.effective_embedding_model
        self._dimension = config.effective_dimension
        base_url = config.embedding_base_url or DEFAULT_EMBEDDING_BASE_URLS.get(config.kind) or config.base_url
        self._client = client or OpenAI(
            api_key=config.api_key or "not-set",
            base_url=base_url,
            timeout=settings.EMBEDDING_BATCH_TIMEOUT_SECONDS,
            max_retries=1,
        )

    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> List[float]:
        try:
            resp = self._client.embeddings.create(
                model=self.model, input=[text], timeout=settings.EMBEDDING_TIMEOUT_SECONDS
            )
        except openai.APIError as e:
            raise translate_sdk_error(e, self.name, "embedding") from e
        if not resp.data:
            raise ProviderError(f"{self.name} returned no embedding", backend=self.name)
        return self._check_vector(resp.data[0].embedding)

    def _embed_native_batch(self, texts: List[str]) -> List[List[float]]:
        try:
            resp = self._client.embeddings.create(model=self.model, input=texts)
        except openai.APIError as e:
            raise translate_sdk_error(e, self.name, "batch embedding") from e
        # The API reports each item's position; do not rely on response order
        return [d.embedding for d in sorted(resp.data, key=lambda d: d.index)]


class VoyageEmbeddingProvider(EmbeddingProvider):
    """Voyage AI embeddings (the embedding partner of the anthropic backend)."""

    def __init__(self, config: ProviderSettings):
        self.name = "voyage-embedding"
        self.model = config.effective_embedding_model
        self._dimension = config.effective_dimension
        self._api_key = config.api_key
        self._base_url = (config.embedding_base_url or DEFAULT_EMBEDDING_BASE_URLS[BackendKind.ANTHROPIC]).rstrip("/")

    def dimension(self) -> int:
        return self._dimension

    def _post(self, inputs: List[str], timeout: float) -> List[List[float]]:
        data = post_json(
            f"{self._base_url}/embeddings",
            {"model": self.model, "input": inputs, "input_type": "document"},
            backend=self.name,
            what="embeddings",
            timeout=timeout,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        try:
            items = sorted(data["data"], key=lambda d: d.get("index", 0))
            return [item["embedding"] for item in items]
        except (KeyError, TypeError) as e:
            raise ProviderError(f"{self.name} returned an invalid embedding payload", backend=self.name) from e

    def embed(self, text: str) -> List[float]:
        vectors = self._post([text], settings.EMBEDDING_TIMEOUT_SECONDS)
        if not vectors:
            raise ProviderError(f"{self.name} returned no embedding", backend=self.name)
        return self._check_vector(vectors[0])

    def _embed_native_batch(self, texts: List[str]) -> List[List[float]]:
        return self._post(texts, settings.EMBEDDING_BATCH_TIMEOUT_SECONDS)


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Google Generative AI embeddings via google.generativeai.embed_content."""

    def __init__(self, config: ProviderSettings):
        import google.generativeai as genai

        self.name = "gemini-embedding"
        model = config.effective_embedding_model
        self.model = model if model.startswith("models/") else f"models/{model}"
        self._dimension = config.effective_dimension
        self._genai = genai
        genai.configure(api_key=config.api_key)

    def dimension(self) -> int:
        return self._dimension

    def _call(self, content: Any, timeout: float) -> Any:
        from google.api_core import exceptions as gexc

        try:
            result = self._genai.embed_content(
                model=self.model,
                content=content,
                task_type="retrieval_document",
                request_options={"timeout": timeout},
            )
        except gexc.GoogleAPIError as e:
            raise translate_google_error(e, self.name, "embedding") from e
        try:
            return result["embedding"]
        except (KeyError, TypeError) as e:
            raise ProviderError(f"{self.name} returned an invalid embedding payload", backend=self.name) from e

    def embed(self, text: str) -> List[float]:
        return self._check_vector(self._call(text, settings.EMBEDDING_TIMEOUT_SECONDS))

    def _embed_native_batch(self, texts: List[str]) -> List[List[float]]:
        return list(self._call(texts, settings.EMBEDDING_BATCH_TIMEOUT_SECONDS))


def _extract_vector(data: Any) -> Optional[List[float]]:
    """Find a single vector in the response shapes custom services commonly return."""
    if isinstance(data, list) and data and all(isinstance(x, (int, float)) for x in data):
        return data
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("embedding"), list):
        return data["embedding"]
    if isinstance(data.get("vector"), list):
        return data["vector"]
    if isinstance(data.get("data"), list) and data["data"]:
        first = data["data"][0]
        return first.get("embedding") if isinstance(first, dict) else first
    if isinstance(data.get("embeddings"), list) and data["embeddings"]:
        return data["embeddings"][0]
    return None


class CustomEmbeddingProvider(EmbeddingProvider):
    """Generic HTTP embedding service.

    Single texts go to POST {base}/embeddings; batches try POST {base}/embeddings/batch
    and fall back to sequential calls when that endpoint is missing or fails.
    """

    def __init__(self, config: ProviderSettings):
        self.name = "custom-embedding"
        self.model = config.effective_embedding_model or "custom"
        self._dimension = config.effective_dimension
        self._base_url = (
            config.embedding_base_url or config.base_url or DEFAULT_EMBEDDING_BASE_URLS[BackendKind.CUSTOM]
        ).rstrip("/")
        self._headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}

    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> List[float]:
        data = post_json(
            f"{self._base_url}/embeddings",
            {"model": self.model, "input": text},
            backend=self.name,
            what="embeddings",
            timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
            headers=self._headers,
        )
        vector = _extract_vector(data)
        if vector is None:
            raise ProviderError(f"{self.name} returned an unknown embedding format", backend=self.name)
        return self._check_vector(vector)

    def _embed_native_batch(self, texts: List[str]) -> Optional[List[List[float]]]:
        data = post_json(
            f"{self._base_url}/embeddings/batch",
            {"model": self.model, "input": texts},
            backend=self.name,
            what="batch embeddings",
            timeout=settings.EMBEDDING_BATCH_TIMEOUT_SECONDS,
            headers=self._headers,
        )
        if isinstance(data, dict) and isinstance(data.get("embeddings"), list):
            return data["embeddings"]
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            return [item.get("embedding", item) if isinstance(item, dict) else item for item in data["data"]]
        raise ProviderError(f"{self.name} returned an unknown batch format", backend=self.name)


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic digest-derived vectors for backends with no embedding API.

    Not a semantic embedding: identical texts map to identical vectors, anything
    else is effectively random. degraded is True so callers can surface it.
    """

    degraded = True

    def __init__(self, dimension: int, name: str = "hash-embedding"):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.name = name
        self._dimension = dimension

    def dimension(self) -> int:
        return self._dimension

    def _digest_stream(self, text: str) -> bytes:
        data = text.encode("utf-8")
        out = hashlib.sha256(data).digest() + hashlib.md5(data).digest() + hashlib.sha1(data).digest()
        needed = self._dimension * 2
        counter = 0
        while len(out) < needed:
            out += hashlib.sha256(counter.to_bytes(4, "big") + data).digest()
            counter += 1
        return out[:needed]

    def embed(self, text: str) -> List[float]:
        stream = self._digest_stream(text)
        values = [
            (int.from_bytes(stream[i:i + 2], "big") / 65535.0) * 2.0 - 1.0
            for i in range(0, len(stream), 2)
        ]
        norm = math.sqrt(sum(v * v for v in values))
        if norm > 0:
            values = [v / norm for v in values]
        return values


def build_embedding_provider(config: ProviderSettings) -> EmbeddingProvider:
    """Construct the embedding provider for a provider configuration.

    Args:
        config: Active provider snapshot.

    Returns:
        EmbeddingProvider: Backend-specific implementation.

    Raises:
        EmbeddingNotSupportedError: If the configuration disables embeddings.
    """
    if not config.supports_embedding:
        raise EmbeddingNotSupportedError(config.name)

    kind = config.kind
    if kind in NON_NATIVE_EMBEDDING_KINDS and not config.embedding_base_url:
        logger.warning(
            "Provider %s (%s) has no native embedding API; using degraded hash embeddings",
            config.name, kind.value,
        )
        return HashEmbeddingProvider(config.effective_dimension, name=f"{kind.value}-hash-embedding")
    if kind in (BackendKind.OPENAI, BackendKind.DEEPSEEK):
        return OpenAIEmbeddingProvider(config)
    if kind == BackendKind.ANTHROPIC:
        return VoyageEmbeddingProvider(config)
    if kind == BackendKind.GEMINI:
        return GeminiEmbeddingProvider(config)
    return CustomEmbeddingProvider(config)
