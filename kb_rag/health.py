"""Health and compatibility checks for the retrieval stack.

- check_compatibility: gate for enabling retrieval features (active provider,
  embedding support, auto-repair, a real embedding call, vector store health and
  dimension agreement)
- check_embedding_provider / check_vector_store / check_system: connectivity reports
  for the health endpoints
"""
import logging
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from kb_rag.exceptions import NoActiveProviderError, RagError
from kb_rag.providers.base import EmbeddingProvider, ProviderSettings
from kb_rag.providers.embedding import build_embedding_provider
from kb_rag.providers.registry import (
    compatible_providers,
    get_active_provider,
    provider_settings,
    repair_embedding_defaults,
)
from kb_rag.schemas import CompatibilityReport, ComponentStatus, SystemHealth
from kb_rag.utils import elapsed_ms
from kb_rag.vector_store import VectorStore

logger = logging.getLogger(__name__)

EmbedderFactory = Callable[[ProviderSettings], EmbeddingProvider]

PROBE_TEXT = "health check"


def _compatible_hint(db: Session) -> tuple:
    providers = compatible_providers(db)
    if providers:
        names = ", ".join(p["name"] for p in providers)
        return providers, f"Switch to a provider with embedding support: {names}"
    return providers, "Configure a provider with embedding support (openai, gemini, anthropic or custom)"


def check_compatibility(
    db: Session,
    store: VectorStore,
    embedder_factory: EmbedderFactory = build_embedding_provider,
) -> CompatibilityReport:
    """Decide whether retrieval features can be enabled with the current configuration.

    Blank embedding fields of a known backend are auto-filled and committed.

    Args:
        db: Request session; committed when a repair was made.
        store: Vector store to probe.
        embedder_factory: Builds the embedding provider from the active settings.

    Returns:
        CompatibilityReport: One of no_active_provider, no_embedding_support,
            connected or error, with a remediation hint.
    """
    try:
        row = get_active_provider(db)
    except NoActiveProviderError:
        providers, hint = _compatible_hint(db)
        return CompatibilityReport(
            status="no_active_provider",
            can_enable=False,
            message="No active AI provider is configured",
            hint=hint,
            compatible_providers=providers,
        )

    repaired = repair_embedding_defaults(db, row)
    if repaired:
        db.commit()
    provider = {"id": row.id, "name": row.name, "kind": row.kind}

    try:
        config = provider_settings(row)
    except RagError as e:
        return CompatibilityReport(
            status="error", can_enable=False, message=str(e),
            hint="Check the provider kind and stored credential", provider=provider, repaired=repaired,
        )

    if not config.supports_embedding:
        providers, hint = _compatible_hint(db)
        return CompatibilityReport(
            status="no_embedding_support",
            can_enable=False,
            message=f"Provider '{row.name}' does not support embeddings",
            hint=hint,
            provider=provider,
            compatible_providers=providers,
            repaired=repaired,
        )

    degraded = False
    try:
        embedder = embedder_factory(config)
        degraded = embedder.degraded
        vector = embedder.embed(PROBE_TEXT)
        if not vector:
            raise RagError("Embedding provider returned an empty vector")
        store_ok = store.health_check()
        index_dim = store.index_dimension() if store_ok else None
    except RagError as e:
        logger.warning("Compatibility check failed for provider %s: %s", row.name, e)
        return CompatibilityReport(
            status="error", can_enable=False, message=str(e),
            hint="Verify the API key, model names and endpoints of the active provider",
            provider=provider, repaired=repaired, degraded_embedding=degraded,
        )

    if not store_ok:
        return CompatibilityReport(
            status="error", can_enable=False, message=f"Vector store '{store.name}' is not reachable",
            hint="Check the vector store credentials and host", provider=provider, repaired=repaired,
            degraded_embedding=degraded,
        )
    if index_dim and index_dim != len(vector):
        return CompatibilityReport(
            status="error",
            can_enable=False,
            message=f"Embedding dimension {len(vector)} does not match vector index dimension {index_dim}",
            hint="Use an embedding model with the index dimension or recreate the index",
            provider=provider,
            repaired=repaired,
            degraded_embedding=degraded,
        )

    message = "Embedding provider and vector store are connected"
    if degraded:
        message += " (deterministic fallback embeddings: retrieval quality is reduced)"
    return CompatibilityReport(
        status="connected", can_enable=True, message=message, provider=provider,
        repaired=repaired, degraded_embedding=degraded,
    )


def check_embedding_provider(
    db: Session, embedder_factory: EmbedderFactory = build_embedding_provider
) -> ComponentStatus:
    """Probe the active embedding provider with one real embedding call."""
    try:
        config = provider_settings(get_active_provider(db))
    except NoActiveProviderError as e:
        return ComponentStatus(component="embedding", status="no_active_provider", message=str(e))
    except RagError as e:
        return ComponentStatus(component="embedding", status="error", message=str(e))
    if not config.supports_embedding:
        return ComponentStatus(
            component="embedding",
            status="no_embedding_support",
            message=f"Provider '{config.name}' does not support embeddings",
        )

    details = {"provider": config.name, "kind": config.kind.value, "model": config.effective_embedding_model}
    try:
        embedder = embedder_factory(config)
        t0 = time.monotonic()
        vector = embedder.embed(PROBE_TEXT)
    except RagError as e:
        logger.warning("Embedding health check failed: %s", e)
        return ComponentStatus(component="embedding", status="error", message=str(e), details=details)
    details.update(dimension=len(vector), degraded=embedder.degraded, response_ms=elapsed_ms(t0))
    return ComponentStatus(component="embedding", status="connected", message="Embedding provider reachable", details=details)


def check_vector_store(store: VectorStore) -> ComponentStatus:
    """Probe the vector store without mutating it."""
    details = {"backend": store.name}
    t0 = time.monotonic()
    if not store.health_check():
        return ComponentStatus(
            component="vector_store", status="error", message=f"Vector store '{store.name}' is not reachable",
            details=details,
        )
    details["response_ms"] = elapsed_ms(t0)
    try:
        details["dimension"] = store.index_dimension()
    except RagError as e:
        logger.warning("Could not read vector index dimension: %s", e)
    return ComponentStatus(component="vector_store", status="connected", message="Vector store reachable", details=details)


def check_system(
    db: Session,
    store: Optional[VectorStore],
    embedder_factory: EmbedderFactory = build_embedding_provider,
    store_error: str = "",
) -> SystemHealth:
    """Combined health: healthy only when both components are connected."""
    embedding = check_embedding_provider(db, embedder_factory)
    if store is None:
        vector_store = ComponentStatus(component="vector_store", status="error", message=store_error)
    else:
        vector_store = check_vector_store(store)
    healthy = embedding.status == "connected" and vector_store.status == "connected"
    return SystemHealth(status="healthy" if healthy else "unhealthy", embedding=embedding, vector_store=vector_store)
