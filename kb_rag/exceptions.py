"""Error taxonomy shared by the indexing job, retrieval service and providers.

- ConfigurationError: needs admin action (no active provider, no embedding support,
  dimension mismatch, unknown backend, unreadable credential). Never retried.
- TransientProviderError: network / timeout / 5xx / rate limiting from an embedding,
  vector store or chat backend. Retried by the indexing job.
- ProviderError: any other upstream failure (bad request, malformed payload).
- DataError: empty chunk set, embedding/chunk count mismatch. Fatal for the run.
- IndexingInProgressError / IndexingClaimLostError: another run holds the entry.
- IndexingTimeoutError: a single run overran INDEX_JOB_TIMEOUT_SECONDS.
"""
from typing import Optional


class RagError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(RagError):
    """Misconfiguration that cannot be fixed by retrying."""


class NoActiveProviderError(ConfigurationError):
    def __init__(self, message: str = "No active AI provider configured"):
        super().__init__(message)


class EmbeddingNotSupportedError(ConfigurationError):
    def __init__(self, provider_name: str):
        super().__init__(f"Provider '{provider_name}' does not support embeddings")
        self.provider_name = provider_name


class DimensionMismatchError(ConfigurationError):
    def __init__(self, embedding_dimension: int, index_dimension: int):
        super().__init__(
            f"Embedding dimension {embedding_dimension} does not match "
            f"vector index dimension {index_dimension}"
        )
        self.embedding_dimension = embedding_dimension
        self.index_dimension = index_dimension


class UnsupportedBackendError(ConfigurationError):
    def __init__(self, kind: str):
        super().__init__(f"Unsupported provider backend: {kind}")
        self.kind = kind


class CredentialError(ConfigurationError):
    """Stored credential could not be decrypted."""


class ProviderError(RagError):
    """Upstream backend failure that is not expected to heal on retry."""

    def __init__(self, message: str, *, backend: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network, timeout, rate limit or 5xx failure; safe to retry."""


class DataError(RagError):
    """Invalid data produced inside a run; fatal for that run."""


class NoChunksError(DataError):
    def __init__(self, entry_id: int):
        super().__init__(f"No valid chunks generated from content of entry {entry_id}")
        self.entry_id = entry_id


class EmbeddingCountMismatchError(DataError):
    def __init__(self, expected: int, got: int):
        super().__init__(f"Embedding count mismatch: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class EntryNotFoundError(DataError):
    def __init__(self, entry_id: int):
        super().__init__(f"Knowledge entry {entry_id} does not exist")
        self.entry_id = entry_id


class IndexingInProgressError(RagError):
    def __init__(self, entry_id: int):
        super().__init__(f"Entry {entry_id} is already being indexed")
        self.entry_id = entry_id


class IndexingClaimLostError(IndexingInProgressError):
    """A newer run reclaimed the entry while this run was still working."""


class IndexingTimeoutError(RagError):
    def __init__(self, entry_id: int, elapsed_seconds: float):
        super().__init__(f"Indexing entry {entry_id} exceeded its time budget ({elapsed_seconds:.0f}s)")
        self.entry_id = entry_id
        self.elapsed_seconds = elapsed_seconds


def is_transient_status(status_code: Optional[int]) -> bool:
    """Whether an HTTP status code should be treated as a transient failure.

    Args:
        status_code: HTTP status returned by an upstream backend.

    Returns:
        bool: True for 408, 409, 429 and any 5xx.
    """
    if status_code is None:
        return True
    return status_code in (408, 409, 429) or status_code >= 500
