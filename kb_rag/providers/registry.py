"""Active provider lookup, activation and embedding auto-repair.

The pipeline never reads a global "current provider": callers resolve the active
row here, turn it into an immutable ProviderSettings and pass that explicitly into
the indexing job and the retrieval service.
"""
import logging
from typing import Dict, List

from sqlalchemy.orm import Session

from kb_rag.crypto import decrypt_secret
from kb_rag.exceptions import ConfigurationError, NoActiveProviderError, UnsupportedBackendError
from kb_rag.models import ProviderConfig
from kb_rag.providers.base import (
    DEFAULT_EMBEDDING_MODELS,
    BackendKind,
    ProviderSettings,
    resolve_dimension,
)

logger = logging.getLogger(__name__)


def _supports_embedding(row: ProviderConfig, kind: BackendKind) -> bool:
    if row.supports_embedding is not None:
        return bool(row.supports_embedding)
    # unset flag: known kinds always have an embedding path, custom needs an endpoint
    if kind == BackendKind.CUSTOM:
        return bool(row.embedding_base_url)
    return True


def provider_settings(row: ProviderConfig) -> ProviderSettings:
    """Build the decrypted, immutable snapshot of a provider row.

    Args:
        row: ORM provider configuration.

    Returns:
        ProviderSettings: Snapshot passed to provider factories.

    Raises:
        UnsupportedBackendError: If the row's kind is unknown.
        CredentialError: If the stored credential cannot be decrypted.
    """
    kind = BackendKind.parse(row.kind)
    return ProviderSettings(
        id=row.id,
        name=row.name,
        kind=kind,
        api_key=decrypt_secret(row.api_key),
        chat_model=row.chat_model or None,
        base_url=row.base_url or None,
        embedding_model=row.embedding_model or None,
        embedding_base_url=row.embedding_base_url or None,
        embedding_dimension=row.embedding_dimension or None,
        supports_embedding=_supports_embedding(row, kind),
        capabilities=dict(row.capabilities or {}),
    )


def get_active_provider(db: Session) -> ProviderConfig:
    """Return the active provider row.

    Raises:
        NoActiveProviderError: If no configuration is active.
    """
    row = (
        db.query(ProviderConfig)
        .filter(ProviderConfig.is_active.is_(True))
        .order_by(ProviderConfig.id)
        .first()
    )
    if row is None:
        raise NoActiveProviderError()
    return row


def load_active_settings(db: Session) -> ProviderSettings:
    """Shortcut for provider_settings(get_active_provider(db))."""
    return provider_settings(get_active_provider(db))


def activate_provider(db: Session, provider_id: int) -> ProviderConfig:
    """Make one configuration active and deactivate every other one.

    Both updates run in the caller's transaction so the single-active invariant
    holds at commit time.

    Args:
        db: Session owned by the caller (committed by the caller).
        provider_id: Configuration to activate.

    Returns:
        ProviderConfig: The activated row.
    """
    row = db.get(ProviderConfig, provider_id)
    if row is None:
        raise ConfigurationError(f"Provider {provider_id} does not exist")
    db.query(ProviderConfig).filter(ProviderConfig.id != provider_id).update(
        {ProviderConfig.is_active: False}, synchronize_session="fetch"
    )
    row.is_active = True
    db.flush()
    logger.info("Activated provider id=%d name=%s kind=%s", row.id, row.name, row.kind)
    return row


def repair_embedding_defaults(db: Session, row: ProviderConfig) -> List[str]:
    """Fill blank embedding fields of a known backend from the static defaults.

    Args:
        db: Session owned by the caller; the repair is flushed, not committed.
        row: Provider configuration to repair in place.

    Returns:
        List[str]: Names of the repaired fields (empty when nothing changed).
    """
    try:
        kind = BackendKind.parse(row.kind)
    except UnsupportedBackendError:
        return []

    repaired: List[str] = []
    default_model = DEFAULT_EMBEDDING_MODELS.get(kind)
    if not row.embedding_model and default_model:
        row.embedding_model = default_model
        repaired.append("embedding_model")
    if not row.embedding_dimension and row.embedding_model:
        row.embedding_dimension = resolve_dimension(kind, row.embedding_model)
        repaired.append("embedding_dimension")
    if row.supports_embedding is None and default_model:
        row.supports_embedding = True
        repaired.append("supports_embedding")

    if repaired:
        db.flush()
        logger.info(
            "Auto-repaired embedding config of provider id=%s (%s): %s",
            row.id, kind.value, ", ".join(repaired),
        )
    return repaired


def compatible_providers(db: Session) -> List[Dict]:
    """List configured providers that can produce embeddings.

    Returns:
        List[Dict]: {id, name, kind} for each embedding-capable configuration.
    """
    out: List[Dict] = []
    for row in db.query(ProviderConfig).order_by(ProviderConfig.id).all():
        try:
            kind = BackendKind.parse(row.kind)
        except UnsupportedBackendError:
            continue
        if _supports_embedding(row, kind):
            out.append({"id": row.id, "name": row.name, "kind": kind.value})
    return out
