"""Database ORM models.

Defines the persistent entities used by the ingestion and retrieval pipeline:
- KnowledgeEntry: a free-text knowledge entry and its indexing state.
- Chunk: a bounded substring of an entry, exclusively owned by it and pointing at
  its record in the external vector store.
- ProviderConfig: an AI backend configuration (chat + embedding); at most one active.
- RagSetting: key/value runtime overrides for RAG options (see kb_rag.options).
"""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from kb_rag.db import Base


class IndexingStatus(str, enum.Enum):
    """Indexing state machine: pending -> indexing -> completed | failed."""
    PENDING = "pending"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"


class KnowledgeEntry(Base):
    """Knowledge entry created by the content-management collaborator.

    Status, chunk count and timestamps are written only by the indexing job.
    Invariant: indexing_status == completed implies chunk_count > 0 and every chunk
    row of the entry has a vector_id.
    """
    __tablename__ = "knowledge_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(512), nullable=False)
    body = Column(Text, nullable=False, default="")
    category = Column(String(255), nullable=True)
    source_url = Column(String(1024), nullable=True)

    indexing_status = Column(String(16), nullable=False, default=IndexingStatus.PENDING.value)
    chunk_count = Column(Integer, nullable=False, default=0)
    indexing_started_at = Column(DateTime, nullable=True)
    last_indexed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    chunks = relationship(
        "Chunk",
        back_populates="entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Chunk.chunk_index",
    )

    __table_args__ = (Index("idx_entries_status", "indexing_status"),)


class Chunk(Base):
    """Chunk of a knowledge entry, the unit that is embedded and stored.

    Chunks are recreated wholesale on every indexing run; vector_id stays null
    until the vector-store upsert for the run has succeeded.
    """
    __tablename__ = "knowledge_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(
        Integer, ForeignKey("knowledge_entries.id", ondelete="CASCADE"), nullable=False
    )
    content = Column(Text, nullable=False)
    char_count = Column(Integer, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    vector_id = Column(String(128), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    entry = relationship("KnowledgeEntry", back_populates="chunks")

    __table_args__ = (
        Index("idx_chunks_entry", "entry_id"),
        Index("idx_chunks_entry_position", "entry_id", "chunk_index"),
    )


class ProviderConfig(Base):
    """AI backend configuration managed by the provider-configuration collaborator.

    api_key holds the Fernet-encrypted credential (see kb_rag.crypto). The
    embedding endpoint is independent of the chat endpoint. capabilities carries
    free-form overrides such as context_window and max_output.
    """
    __tablename__ = "ai_providers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    kind = Column(String(32), nullable=False)
    chat_model = Column(String(255), nullable=True)
    base_url = Column(String(1024), nullable=True)
    api_key = Column(Text, nullable=True)

    supports_embedding = Column(Boolean, nullable=True)
    embedding_model = Column(String(255), nullable=True)
    embedding_base_url = Column(String(1024), nullable=True)
    embedding_dimension = Column(Integer, nullable=True)
    capabilities = Column(JSON, nullable=True)

    is_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (Index("idx_providers_active", "is_active"),)


class RagSetting(Base):
    """Runtime override for a single RAG option (e.g. rag_top_k = "8")."""
    __tablename__ = "rag_settings"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
