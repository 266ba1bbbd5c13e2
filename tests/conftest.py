"""
Shared test fixtures and configuration for the test suite.

Provides: SQLite in-memory database and session factory, in-memory vector store,
entry/provider builders (fakes live in tests/fakes.py)
Dependencies: pytest, sqlalchemy, cryptography
System role: Test infrastructure and fixture management
"""

import os

from cryptography.fernet import Fernet

# Settings are read at import time; point them at test-safe values first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("VECTOR_STORE_BACKEND", "memory")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", Fernet.generate_key().decode("ascii"))
os.environ.setdefault("LANGFUSE_HOST", "")

from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from kb_rag import vector_store as vector_store_module  # noqa: E402
from kb_rag.db import Base  # noqa: E402
from kb_rag.exceptions import TransientProviderError  # noqa: E402
from kb_rag.models import KnowledgeEntry, ProviderConfig  # noqa: E402
from kb_rag.options import RagOptions, load_rag_options  # noqa: E402
from kb_rag.vector_store import MemoryVectorStore  # noqa: E402


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads, with foreign keys enforced."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(eng, "connect")
    def _enable_fk(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store() -> MemoryVectorStore:
    return MemoryVectorStore()


@pytest.fixture(autouse=True)
def reset_memory_store(monkeypatch):
    """The memory backend is a process-wide singleton; isolate it per test."""
    monkeypatch.setattr(vector_store_module, "_memory_store", None)


@pytest.fixture
def options() -> RagOptions:
    return load_rag_options(None)


@pytest.fixture
def make_entry(session_factory):
    """Create a committed KnowledgeEntry and return its id."""

    def _make(body: str, title: str = "Entry", category: Optional[str] = None, source_url: Optional[str] = None) -> int:
        session = session_factory()
        try:
            entry = KnowledgeEntry(title=title, body=body, category=category, source_url=source_url)
            session.add(entry)
            session.commit()
            return entry.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_provider(session_factory):
    """Create a committed ProviderConfig and return its id."""

    def _make(name: str = "primary", kind: str = "deepseek", active: bool = True, **fields) -> int:
        session = session_factory()
        try:
            row = ProviderConfig(name=name, kind=kind, is_active=active, **fields)
            session.add(row)
            session.commit()
            return row.id
        finally:
            session.close()

    return _make


@pytest.fixture
def transient_error() -> TransientProviderError:
    return TransientProviderError("upstream timed out", backend="fake")
