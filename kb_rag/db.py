"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata base, and helpers:
- init_db: Creates the relational tables. On PostgreSQL with the pgvector backend it
  also ensures the vector extension and the IVFFLAT index over vector_records.embedding.
- session_scope: Context-managed transactional scope for imperative workflows
  (indexing job, provider activation).
- get_db: FastAPI dependency to yield a per-request SQLAlchemy Session.

Configuration is read from kb_rag.config.settings.DATABASE_URL.
"""
from contextlib import contextmanager
from typing import Callable, Generator, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from kb_rag.config import settings

SessionFactory = Callable[[], Session]

# SQLAlchemy setup
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    """Initialize database extensions, tables, and vector indexes.

    Args:
        bind: Engine to initialize; defaults to the module engine.

    This function is idempotent and safe to run multiple times.
    """
    bind = bind or engine
    is_postgres = bind.dialect.name == "postgresql"
    use_pgvector = settings.VECTOR_STORE_BACKEND.lower() == "pgvector"

    if is_postgres and use_pgvector:
        with bind.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()

    # Import models after Base is defined
    from kb_rag import models  # noqa: F401
    from kb_rag import vector_store  # noqa: F401  (registers vector_records)

    Base.metadata.create_all(bind=bind)

    if is_postgres and use_pgvector:
        # ivfflat needs ANALYZE after the first bulk load for good recall
        with bind.connect() as conn:
            conn.execute(
                text(
                    """
                    DO $$
                    BEGIN
                        IF NOT EXISTS (
                            SELECT 1 FROM pg_indexes WHERE indexname = 'idx_vector_records_ivfflat'
                        ) THEN
                            CREATE INDEX idx_vector_records_ivfflat
                            ON vector_records USING ivfflat (embedding vector_cosine_ops)
                            WITH (lists = 100);
                        END IF;
                    END$$;
                    """
                )
            )
            conn.commit()


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Args:
        factory: Session factory to use; defaults to SessionLocal.

    Yields:
        Session: A SQLAlchemy session bound to the configured engine.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator:
    """FastAPI dependency that yields a SQLAlchemy Session.

    Yields:
        Session: A session tied to the current request lifecycle.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> SessionFactory:
    """FastAPI dependency returning the session factory used by background jobs."""
    return SessionLocal
