"""Provider capability interfaces and static backend tables.

Defines:
- BackendKind: closed set of supported AI backends.
- ProviderSettings: immutable, decrypted snapshot of a provider configuration that is
  passed explicitly into factories, the indexing job and the retrieval service.
- EmbeddingProvider / ChatProvider: capability interfaces implemented per backend.
- Static default tables (models, endpoints, dimensions) so the embedding dimension is
  known without a network call.
"""
import abc
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from kb_rag.exceptions import EmbeddingCountMismatchError, ProviderError, UnsupportedBackendError

logger = logging.getLogger(__name__)


class BackendKind(str, enum.Enum):
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str) -> "BackendKind":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise UnsupportedBackendError(value) from None


DEFAULT_CHAT_MODELS: Dict[BackendKind, str] = {
    BackendKind.OPENAI: "gpt-4o-mini",
    BackendKind.DEEPSEEK: "deepseek-chat",
    BackendKind.ANTHROPIC: "claude-3-5-haiku-latest",
    BackendKind.GEMINI: "gemini-1.5-flash",
}

DEFAULT_CHAT_BASE_URLS: Dict[BackendKind, str] = {
    BackendKind.OPENAI: "https://api.openai.com/v1",
    BackendKind.DEEPSEEK: "https://api.deepseek.com/v1",
}

# Embedding defaults per backend; custom has none (must be configured explicitly)
DEFAULT_EMBEDDING_MODELS: Dict[BackendKind, str] = {
    BackendKind.OPENAI: "text-embedding-3-small",
    BackendKind.DEEPSEEK: "deepseek-embed",
    BackendKind.GEMINI: "models/embedding-001",
    BackendKind.ANTHROPIC: "voyage-2",
}

DEFAULT_EMBEDDING_BASE_URLS: Dict[BackendKind, str] = {
    BackendKind.OPENAI: "https://api.openai.com/v1",
    BackendKind.ANTHROPIC: "https://api.voyageai.com/v1",
    BackendKind.CUSTOM: "http://localhost:8080",
}

# Ordered: more specific model names first (substring match)
EMBEDDING_DIMENSIONS: List[tuple] = [
    ("text-embedding-3-large", 3072),
    ("text-embedding-3-small", 1536),
    ("text-embedding-ada-002", 1536),
    ("deepseek-embed", 1536),
    ("text-embedding-004", 768),
    ("embedding-001", 768),
    ("voyage-large", 1536),
    ("voyage-code", 1536),
    ("voyage", 1024),
]

DEFAULT_EMBEDDING_DIMENSION = 1536

# Backends without a native embedding API (served by the deterministic fallback)
NON_NATIVE_EMBEDDING_KINDS = {BackendKind.DEEPSEEK}


def dimension_for_model(model: Optional[str]) -> Optional[int]:
    """Look up the embedding dimension of a known model name.

    Args:
        model: Embedding model name (e.g. "text-embedding-3-small").

    Returns:
        Optional[int]: Dimension if the model is in the static table, else None.
    """
    if not model:
        return None
    name = model.lower()
    for needle, dim in EMBEDDING_DIMENSIONS:
        if needle in name:
            return dim
    return None


def resolve_dimension(kind: BackendKind, model: Optional[str], configured: Optional[int] = None) -> int:
    """Resolve the embedding dimension for a (backend, model) pair without network calls.

    An explicitly configured dimension wins; then the static model table; then the
    backend default model; finally DEFAULT_EMBEDDING_DIMENSION.
    """
    if configured:
        return int(configured)
    dim = dimension_for_model(model) or dimension_for_model(DEFAULT_EMBEDDING_MODELS.get(kind))
    return dim or DEFAULT_EMBEDDING_DIMENSION


@dataclass(frozen=True)
class ProviderSettings:
    """Decrypted, immutable view of one provider configuration.

    Attributes:
        name: Display name of the configuration.
        kind: Backend kind driving which implementation is constructed.
        api_key: Plaintext credential (never logged).
        chat_model / base_url: Chat backend model and endpoint.
        embedding_model / embedding_base_url / embedding_dimension: Embedding backend,
            independent of the chat endpoint.
        supports_embedding: Capability flag from the configuration.
        capabilities: Free-form overrides (context_window, max_output, ...).
    """
    name: str
    kind: BackendKind
    api_key: str = field(default="", repr=False)
    chat_model: Optional[str] = None
    base_url: Optional[str] = None
    embedding_model: Optional[str] = None
    embedding_base_url: Optional[str] = None
    embedding_dimension: Optional[int] = None
    supports_embedding: bool = True
    capabilities: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def effective_chat_model(self) -> str:
        return self.chat_model or DEFAULT_CHAT_MODELS.get(self.kind, "")

    @property
    def effective_embedding_model(self) -> str:
        return self.embedding_model or DEFAULT_EMBEDDING_MODELS.get(self.kind) or self.chat_model or ""

    @property
    def effective_dimension(self) -> int:
        return resolve_dimension(self.kind, self.effective_embedding_model, self.embedding_dimension)

    @property
    def max_output_tokens(self) -> Optional[int]:
        value = (self.capabilities or {}).get("max_output")
        return int(value) if value else None


class EmbeddingProvider(abc.ABC):
    """Converts text into fixed-length vectors.

    Subclasses implement embed() and optionally _embed_native_batch(). embed_batch()
    calls the native batch endpoint when present and falls back to sequential
    single-item calls when it fails, then validates count and dimensions.
    """

    name: str = "embedding"
    #: True when vectors are not semantic embeddings (deterministic fallback)
    degraded: bool = False

    @abc.abstractmethod
    def embed(self, text: str) -> List[float]:
        """Embed a single text."""

    @abc.abstractmethod
    def dimension(self) -> int:
        """Vector length produced by this provider (known without a network call)."""

    def _embed_native_batch(self, texts: List[str]) -> Optional[List[List[float]]]:
        """Embed many texts in one upstream call; None when the backend has no batch API."""
        return None

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed texts, preserving input order.

        Args:
            texts: Texts to embed.

        Returns:
            List[List[float]]: One vector per input text, in input order.

        Raises:
            EmbeddingCountMismatchError: If the backend returned a different number of vectors.
            ProviderError: If a sequential fallback call fails.
        """
        if not texts:
            return []
        vectors: Optional[List[List[float]]]
        try:
            vectors = self._embed_native_batch(list(texts))
        except ProviderError as e:
            logger.warning(
                "Batch embedding failed on %s (%s); falling back to %d sequential calls",
                self.name, e, len(texts),
            )
            vectors = None
        if vectors is None:
            vectors = [self.embed(t) for t in texts]
        if len(vectors) != len(texts):
            raise EmbeddingCountMismatchError(len(texts), len(vectors))
        return [self._check_vector(v) for v in vectors]

    def _check_vector(self, vector: List[float]) -> List[float]:
        if len(vector) != self.dimension():
            raise ProviderError(
                f"{self.name} returned a vector of length {len(vector)}, expected {self.dimension()}",
                backend=self.name,
            )
        return [float(x) for x in vector]


class ChatProvider(abc.ABC):
    """Produces text completions for a prompt, whole or as an incremental stream."""

    name: str = "chat"
    supports_streaming: bool = False

    @abc.abstractmethod
    def complete(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> str:
        """Return the whole completion for prompt."""

    def stream(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> Iterator[str]:
        """Yield completion text in arrival order.

        Backends without streaming yield the whole completion once. Closing the
        generator must release the upstream connection.
        """
        text = self.complete(prompt, temperature=temperature, max_tokens=max_tokens)
        if text:
            yield text
