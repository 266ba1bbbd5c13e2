"""Indexing job: chunk, embed and upsert one knowledge entry.

State machine: pending -> indexing -> completed | failed; any terminal state may
re-enter indexing. Every run is a full replace: the entry's vectors and chunk rows
are removed before new ones are produced, so retrying a failed run is always safe.

Provides:
- claim_entry: atomic transition into `indexing` (one active run per entry)
- IndexingJob: the run itself, with injected session factory, providers and options
- index_entry: worker entrypoint resolving the active provider, with bounded retries
- enqueue_indexing: schedule index_entry on FastAPI BackgroundTasks
- delete_entry: remove an entry together with its vectors
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import BackgroundTasks
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential_jitter,
)

from kb_rag.chunking import chunk_text
from kb_rag.config import settings
from kb_rag.db import SessionFactory, SessionLocal, session_scope
from kb_rag.exceptions import (
    DimensionMismatchError,
    EmbeddingCountMismatchError,
    EntryNotFoundError,
    IndexingClaimLostError,
    IndexingInProgressError,
    IndexingTimeoutError,
    NoChunksError,
    ProviderError,
    RagError,
    TransientProviderError,
)
from kb_rag.models import Chunk, IndexingStatus, KnowledgeEntry
from kb_rag.obs import span
from kb_rag.options import RagOptions, load_rag_options
from kb_rag.providers.base import EmbeddingProvider
from kb_rag.providers.embedding import build_embedding_provider
from kb_rag.providers.registry import get_active_provider, provider_settings, repair_embedding_defaults
from kb_rag.vector_store import VectorItem, VectorStore, build_vector_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexingResult:
    entry_id: int
    chunk_count: int
    vector_ids: List[str] = field(default_factory=list)
    duration_ms: int = 0
    degraded_embedding: bool = False


def vector_id_for(entry_id: int, chunk_id: int) -> str:
    return f"entry_{entry_id}_chunk_{chunk_id}"


def chunk_metadata(entry: KnowledgeEntry, chunk: Chunk) -> dict:
    return {
        "entry_id": entry.id,
        "chunk_id": chunk.id,
        "chunk_index": chunk.chunk_index,
        "title": entry.title,
        "category": entry.category,
        "source_url": entry.source_url,
        "char_count": chunk.char_count,
    }


def claim_entry(db: Session, entry_id: int, now: Optional[datetime] = None) -> datetime:
    """Atomically move an entry into `indexing` and commit.

    The conditional UPDATE only matches entries that are not currently indexing,
    or whose run started more than INDEX_CLAIM_STALE_SECONDS ago (a crashed worker).

    Returns:
        datetime: The claim timestamp; later writes of the run only apply while the
            entry still carries it.

    Raises:
        EntryNotFoundError: If the entry does not exist.
        IndexingInProgressError: If another run holds the entry.
    """
    now = now or datetime.utcnow()
    stale_before = now - timedelta(seconds=settings.INDEX_CLAIM_STALE_SECONDS)
    result = db.execute(
        update(KnowledgeEntry)
        .where(KnowledgeEntry.id == entry_id)
        .where(
            or_(
                KnowledgeEntry.indexing_status != IndexingStatus.INDEXING.value,
                KnowledgeEntry.indexing_started_at.is_(None),
                KnowledgeEntry.indexing_started_at < stale_before,
            )
        )
        .values(indexing_status=IndexingStatus.INDEXING.value, indexing_started_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        if db.get(KnowledgeEntry, entry_id) is None:
            raise EntryNotFoundError(entry_id)
        raise IndexingInProgressError(entry_id)
    db.commit()
    return now


def mark_failed(
    session_factory: Optional[SessionFactory],
    entry_id: int,
    store: Optional[VectorStore] = None,
    claimed_at: Optional[datetime] = None,
) -> bool:
    """Record a failed run: no chunk rows, chunk_count 0, and best-effort vector cleanup.

    With `claimed_at`, nothing is touched unless the entry still carries that claim.

    Returns:
        bool: Whether the failure was recorded.
    """
    try:
        with session_scope(session_factory) as db:
            query = db.query(KnowledgeEntry).filter(KnowledgeEntry.id == entry_id)
            if claimed_at is not None:
                query = query.filter(KnowledgeEntry.indexing_started_at == claimed_at)
            updated = query.update(
                {
                    KnowledgeEntry.indexing_status: IndexingStatus.FAILED.value,
                    KnowledgeEntry.chunk_count: 0,
                    KnowledgeEntry.indexing_started_at: None,
                },
                synchronize_session=False,
            )
            if claimed_at is not None and not updated:
                logger.warning("Entry %d was reclaimed by a newer run; leaving it alone", entry_id)
                return False
            db.query(Chunk).filter(Chunk.entry_id == entry_id).delete(synchronize_session=False)
    except SQLAlchemyError:
        logger.exception("Could not record failed status for entry %d", entry_id)
    if store is not None:
        try:
            store.delete_by_owner(entry_id)
        except RagError as e:
            # the next run's full replace removes whatever is left
            logger.warning("Vector cleanup for failed entry %d did not complete: %s", entry_id, e)
    return True


class IndexingJob:
    """One indexing run over a single entry.

    Args:
        session_factory: Creates the sessions used for the claim, the run transaction
            and the failure record.
        embedder: Embedding provider of the active configuration.
        store: Vector store receiving the chunk vectors.
        options: Options snapshot (chunk size and overlap).
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory],
        embedder: EmbeddingProvider,
        store: VectorStore,
        options: RagOptions,
    ):
        self.session_factory = session_factory or SessionLocal
        self.embedder = embedder
        self.store = store
        self.options = options

    def check_dimensions(self) -> None:
        """Fail before any external write when embedder and index disagree."""
        index_dim = self.store.index_dimension()
        embed_dim = self.embedder.dimension()
        if index_dim and index_dim != embed_dim:
            raise DimensionMismatchError(embed_dim, index_dim)

    def check_deadline(self, entry_id: int, started: float) -> None:
        """Stop a run that overran its budget before it writes to the vector store."""
        elapsed = time.monotonic() - started
        if elapsed > settings.INDEX_JOB_TIMEOUT_SECONDS:
            raise IndexingTimeoutError(entry_id, elapsed)

    def run(self, entry_id: int) -> IndexingResult:
        """Index one entry.

        Returns:
            IndexingResult: Chunk count, vector ids and timing of the run.

        Raises:
            IndexingInProgressError: Another run holds the entry (entry untouched), or
                reclaimed it during this run (IndexingClaimLostError).
            IndexingTimeoutError: The run overran INDEX_JOB_TIMEOUT_SECONDS before the upsert.
            RagError: Any failure after the claim; the entry is left `failed` with no
                chunk rows, and its vectors are removed on a best-effort basis.
        """
        started = time.monotonic()
        with session_scope(self.session_factory) as db:
            claimed_at = claim_entry(db, entry_id)

        step = "check_dimensions"
        db = self.session_factory()
        try:
            with span("indexing.run", {"entry_id": entry_id}):
                self.check_dimensions()

                entry = db.get(KnowledgeEntry, entry_id)
                if entry is None:
                    raise EntryNotFoundError(entry_id)

                step = "clear"
                self.store.delete_by_owner(entry_id)
                db.query(Chunk).filter(Chunk.entry_id == entry_id).delete(synchronize_session=False)

                step = "chunk"
                pieces = chunk_text(entry.body or "", self.options.chunk_size, self.options.chunk_overlap)
                if not pieces:
                    raise NoChunksError(entry_id)

                step = "embed"
                with span("indexing.embed", {"entry_id": entry_id, "chunks": len(pieces)}):
                    vectors = self.embedder.embed_batch(pieces)
                if len(vectors) != len(pieces):
                    raise EmbeddingCountMismatchError(len(pieces), len(vectors))
                self.check_deadline(entry_id, started)

                step = "persist_chunks"
                chunks = [
                    Chunk(entry_id=entry_id, content=piece, char_count=len(piece), chunk_index=i)
                    for i, piece in enumerate(pieces)
                ]
                db.add_all(chunks)
                db.flush()

                step = "upsert"
                items = [
                    VectorItem(vector_id_for(entry_id, c.id), vec, chunk_metadata(entry, c))
                    for c, vec in zip(chunks, vectors)
                ]
                with span("indexing.upsert", {"entry_id": entry_id, "vectors": len(items)}):
                    accepted = self.store.upsert(items)
                if not accepted:
                    raise ProviderError(f"{self.store.name} did not accept the upsert", backend=self.store.name)

                step = "complete"
                for c, item in zip(chunks, items):
                    c.vector_id = item.id
                owned = db.execute(
                    update(KnowledgeEntry)
                    .where(KnowledgeEntry.id == entry_id, KnowledgeEntry.indexing_started_at == claimed_at)
                    .values(
                        indexing_status=IndexingStatus.COMPLETED.value,
                        chunk_count=len(chunks),
                        last_indexed_at=datetime.utcnow(),
                        indexing_started_at=None,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if not owned:
                    raise IndexingClaimLostError(entry_id)
                db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Indexing failed entry_id=%d step=%s: %s", entry_id, step, e, exc_info=True)
            mark_failed(self.session_factory, entry_id, self.store, claimed_at)
            raise
        finally:
            db.close()

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Indexed entry %d: %d chunks in %d ms%s",
            entry_id, len(items), duration_ms, " (degraded embeddings)" if self.embedder.degraded else "",
        )
        return IndexingResult(
            entry_id=entry_id,
            chunk_count=len(items),
            vector_ids=[it.id for it in items],
            duration_ms=duration_ms,
            degraded_embedding=self.embedder.degraded,
        )


def run_with_retry(job: IndexingJob, entry_id: int) -> IndexingResult:
    """Run job with bounded retries on transient provider errors only."""
    retrying = Retrying(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(settings.INDEX_JOB_MAX_ATTEMPTS) | stop_after_delay(settings.INDEX_JOB_TIMEOUT_SECONDS),
        wait=wait_exponential_jitter(initial=1, max=30, jitter=2),
        before_sleep=lambda retry_state: logger.warning(
            "Retrying indexing of entry %d (attempt %d/%d) after transient error: %s",
            entry_id,
            retry_state.attempt_number,
            settings.INDEX_JOB_MAX_ATTEMPTS,
            retry_state.outcome.exception(),
        ),
        reraise=True,
    )
    return retrying(job.run, entry_id)


def index_entry(entry_id: int, session_factory: Optional[SessionFactory] = None) -> Optional[IndexingResult]:
    """Worker entrypoint: index an entry with the active provider.

    Never raises; failures are recorded on the entry and logged.

    Args:
        entry_id: Entry to index.
        session_factory: Session factory; defaults to SessionLocal.

    Returns:
        Optional[IndexingResult]: Result of the successful run, None otherwise.
    """
    factory = session_factory or SessionLocal
    store: Optional[VectorStore] = None
    try:
        with session_scope(factory) as db:
            row = get_active_provider(db)
            repair_embedding_defaults(db, row)
            config = provider_settings(row)
            options = load_rag_options(db)
        embedder = build_embedding_provider(config)
        store = build_vector_store(settings, factory)
        return run_with_retry(IndexingJob(factory, embedder, store, options), entry_id)
    except IndexingInProgressError:
        logger.info("Entry %d is already being indexed; skipping", entry_id)
    except EntryNotFoundError:
        logger.warning("Entry %d disappeared before indexing", entry_id)
    except RagError as e:
        logger.error("Indexing of entry %d failed: %s", entry_id, e)
        if store is None:
            # failed before a run could start (configuration); record it on the entry
            mark_failed(factory, entry_id)
    except SQLAlchemyError:
        logger.exception("Database error while indexing entry %d", entry_id)
    except Exception:
        # untranslated SDK or payload errors must not reach the background runner
        logger.exception("Unexpected error while indexing entry %d", entry_id)
        if store is None:
            mark_failed(factory, entry_id)
    return None


def enqueue_indexing(background_tasks: BackgroundTasks, entry_id: int, session_factory: Optional[SessionFactory] = None) -> None:
    """Schedule indexing after the response has been sent."""
    background_tasks.add_task(index_entry, entry_id, session_factory)


def delete_entry(db: Session, store: VectorStore, entry_id: int) -> bool:
    """Remove an entry's vectors, then the entry (chunk rows cascade).

    Args:
        db: Session owned by the caller (committed by the caller).
        store: Vector store holding the entry's vectors.
        entry_id: Entry to delete.

    Returns:
        bool: False if the entry did not exist.
    """
    entry = db.get(KnowledgeEntry, entry_id)
    if entry is None:
        return False
    store.delete_by_owner(entry_id)
    db.delete(entry)
    db.flush()
    logger.info("Deleted entry %d and its vectors", entry_id)
    return True
