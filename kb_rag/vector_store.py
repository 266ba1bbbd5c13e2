"""Vector store capability and its backends.

Provides:
- VectorItem / VectorMatch: upsert payload and query result records
- VectorStore: capability interface (upsert, query, delete, delete_by_owner, health_check)
- PineconeVectorStore: Pinecone data-plane REST API via requests
- PgVectorStore: pgvector table (vector_records) in the relational database
- MemoryVectorStore: process-local cosine index for tests and single-process development
- build_vector_store: backend selection from settings.VECTOR_STORE_BACKEND

Every backend returns query matches ordered by descending score, ties broken by
ascending id. delete_by_owner always goes through a metadata filter on entry_id.
"""
import abc
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Column, DateTime, Integer, String, text
from sqlalchemy.exc import SQLAlchemyError

from kb_rag.config import Settings, settings
from kb_rag.db import Base, SessionFactory, session_scope
from kb_rag.exceptions import ConfigurationError, ProviderError, TransientProviderError
from kb_rag.providers.transport import post_json

logger = logging.getLogger(__name__)

OWNER_KEY = "entry_id"


@dataclass(frozen=True)
class VectorItem:
    id: str
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def rank_matches(matches: Iterable[VectorMatch], top_k: Optional[int] = None) -> List[VectorMatch]:
    """Order matches by descending score, then ascending id; keep the first top_k."""
    ranked = sorted(matches, key=lambda m: (-m.score, m.id))
    return ranked[:top_k] if top_k is not None else ranked


def owner_filter(entry_id: int) -> Dict[str, Any]:
    return {OWNER_KEY: {"$eq": entry_id}}


class VectorStore(abc.ABC):
    name: str = "vector-store"

    @abc.abstractmethod
    def upsert(self, items: List[VectorItem]) -> bool:
        """Insert or replace vectors; False when the store did not accept every item."""

    @abc.abstractmethod
    def query(self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        """Nearest neighbours of vector, best first."""

    @abc.abstractmethod
    def delete(self, ids: List[str]) -> bool:
        """Delete vectors by id."""

    @abc.abstractmethod
    def delete_by_owner(self, entry_id: int) -> bool:
        """Delete every vector whose metadata references entry_id."""

    @abc.abstractmethod
    def health_check(self) -> bool:
        """Read-only reachability probe."""

    def index_dimension(self) -> Optional[int]:
        """Dimension of the index, or None when the backend cannot tell."""
        return None


class PineconeVectorStore(VectorStore):
    """Pinecone index accessed through its REST data plane.

    Args:
        api_key: Pinecone API key (sent as the Api-Key header).
        host: Index host URL; built from index name and environment when blank.
        namespace: Optional namespace applied to every call.
    """

    name = "pinecone"

    def __init__(
        self,
        api_key: str,
        host: str = "",
        index_name: str = "",
        environment: str = "",
        namespace: str = "",
        timeout: float = 30.0,
        health_timeout: float = 10.0,
    ):
        if not api_key:
            raise ConfigurationError("PINECONE_API_KEY is not set")
        if not host:
            if not (index_name and environment):
                raise ConfigurationError("Set PINECONE_HOST or both PINECONE_INDEX_NAME and PINECONE_ENVIRONMENT")
            host = f"https://{index_name}-{environment}.svc.pinecone.io"
        if not host.startswith("http"):
            host = f"https://{host}"
        self.host = host.rstrip("/")
        self.namespace = namespace
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._headers = {"Api-Key": api_key}

    def _post(self, path: str, payload: Dict[str, Any], what: str, timeout: Optional[float] = None) -> Any:
        if self.namespace:
            payload = {**payload, "namespace": self.namespace}
        return post_json(
            f"{self.host}{path}",
            payload,
            backend=self.name,
            what=what,
            timeout=timeout or self.timeout,
            headers=self._headers,
        )

    def upsert(self, items: List[VectorItem]) -> bool:
        if not items:
            return True
        vectors = [
            {
                "id": it.id,
                "values": list(it.vector),
                # Pinecone rejects null metadata values
                "metadata": {k: v for k, v in it.metadata.items() if v is not None},
            }
            for it in items
        ]
        data = self._post("/vectors/upsert", {"vectors": vectors}, "upsert")
        upserted = data.get("upsertedCount") if isinstance(data, dict) else None
        if upserted is not None and int(upserted) != len(items):
            logger.error("Pinecone upserted %s of %d vectors", upserted, len(items))
            return False
        return True

    def query(self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        payload: Dict[str, Any] = {
            "vector": list(vector),
            "topK": int(top_k),
            "includeMetadata": True,
            "includeValues": False,
        }
        if filter:
            payload["filter"] = filter
        data = self._post("/query", payload, "query")
        matches = [
            VectorMatch(id=str(m["id"]), score=float(m.get("score", 0.0)), metadata=m.get("metadata") or {})
            for m in (data.get("matches") or [])
        ]
        return rank_matches(matches, top_k)

    def delete(self, ids: List[str]) -> bool:
        if not ids:
            return True
        self._post("/vectors/delete", {"ids": list(ids)}, "delete")
        return True

    def delete_by_owner(self, entry_id: int) -> bool:
        self._post("/vectors/delete", {"filter": owner_filter(entry_id)}, "delete by owner")
        return True

    def describe(self) -> Dict[str, Any]:
        return self._post("/describe_index_stats", {}, "describe_index_stats", timeout=self.health_timeout) or {}

    def health_check(self) -> bool:
        try:
            self.describe()
            return True
        except ProviderError as e:
            logger.warning("Pinecone health check failed: %s", e)
            return False

    def index_dimension(self) -> Optional[int]:
        dim = self.describe().get("dimension")
        return int(dim) if dim else None


class VectorRecord(Base):
    """Row of the pgvector backend; owner entry id is denormalized for delete_by_owner."""
    __tablename__ = "vector_records"

    id = Column(String(128), primary_key=True)
    entry_id = Column(Integer, nullable=True, index=True)
    embedding = Column(Vector(dim=settings.PGVECTOR_DIMENSION), nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


def _owner_from_filter(filter: Optional[Dict[str, Any]]) -> Optional[int]:
    if not filter:
        return None
    cond = filter.get(OWNER_KEY)
    if isinstance(cond, dict):
        cond = cond.get("$eq")
    if cond is None or set(filter) != {OWNER_KEY}:
        raise ProviderError("pgvector store only supports filtering on entry_id", backend="pgvector")
    return int(cond)


class PgVectorStore(VectorStore):
    """Cosine search over the vector_records table (similarity = 1 - distance)."""

    name = "pgvector"

    def __init__(self, session_factory: Optional[SessionFactory] = None, dimension: int = settings.PGVECTOR_DIMENSION):
        self._session_factory = session_factory
        self._dimension = dimension

    def _fail(self, what: str, e: SQLAlchemyError) -> ProviderError:
        logger.error("pgvector %s failed: %s", what, e)
        return TransientProviderError(f"pgvector {what} failed: {type(e).__name__}", backend=self.name)

    def upsert(self, items: List[VectorItem]) -> bool:
        for it in items:
            if len(it.vector) != self._dimension:
                raise ProviderError(
                    f"vector {it.id} has dimension {len(it.vector)}, index expects {self._dimension}",
                    backend=self.name,
                )
        try:
            with session_scope(self._session_factory) as db:
                for it in items:
                    owner = it.metadata.get(OWNER_KEY)
                    db.merge(
                        VectorRecord(
                            id=it.id,
                            entry_id=int(owner) if owner is not None else None,
                            embedding=list(it.vector),
                            meta=dict(it.metadata),
                        )
                    )
        except SQLAlchemyError as e:
            raise self._fail("upsert", e) from e
        return True

    def query(self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        owner = _owner_from_filter(filter)
        qvec = "[" + ",".join(f"{x:.6f}" for x in vector) + "]"
        where = "WHERE entry_id = :owner" if owner is not None else ""
        sql = text(
            f"""
            SELECT id, metadata, (embedding <=> CAST(:qvec AS vector)) AS distance
            FROM vector_records
            {where}
            ORDER BY embedding <=> CAST(:qvec AS vector), id
            LIMIT :limit
            """
        )
        try:
            with session_scope(self._session_factory) as db:
                rows = db.execute(sql, {"qvec": qvec, "limit": int(top_k), "owner": owner}).mappings().all()
        except SQLAlchemyError as e:
            raise self._fail("query", e) from e
        matches = [
            VectorMatch(id=r["id"], score=1.0 - float(r["distance"]), metadata=r["metadata"] or {})
            for r in rows
        ]
        return rank_matches(matches, top_k)

    def delete(self, ids: List[str]) -> bool:
        if not ids:
            return True
        try:
            with session_scope(self._session_factory) as db:
                db.query(VectorRecord).filter(VectorRecord.id.in_(list(ids))).delete(synchronize_session=False)
        except SQLAlchemyError as e:
            raise self._fail("delete", e) from e
        return True

    def delete_by_owner(self, entry_id: int) -> bool:
        try:
            with session_scope(self._session_factory) as db:
                db.query(VectorRecord).filter(VectorRecord.entry_id == entry_id).delete(synchronize_session=False)
        except SQLAlchemyError as e:
            raise self._fail("delete by owner", e) from e
        return True

    def health_check(self) -> bool:
        try:
            with session_scope(self._session_factory) as db:
                db.execute(text("SELECT 1 FROM vector_records LIMIT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("pgvector health check failed: %s", e)
            return False

    def index_dimension(self) -> Optional[int]:
        return self._dimension


def _matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    if not filter:
        return True
    for key, cond in filter.items():
        value = metadata.get(key)
        if isinstance(cond, dict):
            if "$eq" in cond and value != cond["$eq"]:
                return False
            if "$in" in cond and value not in cond["$in"]:
                return False
        elif value != cond:
            return False
    return True


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


class MemoryVectorStore(VectorStore):
    """Thread-safe in-process index. dimension=0 adopts the first upserted vector's length."""

    name = "memory"

    def __init__(self, dimension: int = 0):
        self._dimension = dimension or None
        self._items: Dict[str, VectorItem] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._items)

    def upsert(self, items: List[VectorItem]) -> bool:
        with self._lock:
            for it in items:
                if self._dimension is None:
                    self._dimension = len(it.vector)
                if len(it.vector) != self._dimension:
                    raise ProviderError(
                        f"vector {it.id} has dimension {len(it.vector)}, index expects {self._dimension}",
                        backend=self.name,
                    )
            for it in items:
                self._items[it.id] = VectorItem(it.id, list(it.vector), dict(it.metadata))
        return True

    def query(self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        with self._lock:
            if self._dimension is not None and len(vector) != self._dimension:
                raise ProviderError(
                    f"query vector has dimension {len(vector)}, index expects {self._dimension}",
                    backend=self.name,
                )
            candidates = [it for it in self._items.values() if _matches_filter(it.metadata, filter)]
        matches = [VectorMatch(it.id, _cosine(vector, it.vector), dict(it.metadata)) for it in candidates]
        return rank_matches(matches, top_k)

    def delete(self, ids: List[str]) -> bool:
        with self._lock:
            for i in ids:
                self._items.pop(i, None)
        return True

    def delete_by_owner(self, entry_id: int) -> bool:
        flt = owner_filter(entry_id)
        with self._lock:
            for key in [k for k, it in self._items.items() if _matches_filter(it.metadata, flt)]:
                del self._items[key]
        return True

    def health_check(self) -> bool:
        return True

    def index_dimension(self) -> Optional[int]:
        return self._dimension


_memory_store: Optional[MemoryVectorStore] = None


def build_vector_store(cfg: Settings = settings, session_factory: Optional[SessionFactory] = None) -> VectorStore:
    """Construct the configured vector store backend.

    Args:
        cfg: Settings to read the backend selection and connection fields from.
        session_factory: Session factory for the pgvector backend.

    Returns:
        VectorStore: Backend instance (the memory backend is a process-wide singleton).

    Raises:
        ConfigurationError: If the backend is unknown or incompletely configured.
    """
    global _memory_store
    backend = (cfg.VECTOR_STORE_BACKEND or "").strip().lower()
    if backend == "pinecone":
        return PineconeVectorStore(
            api_key=cfg.PINECONE_API_KEY,
            host=cfg.PINECONE_HOST,
            index_name=cfg.PINECONE_INDEX_NAME,
            environment=cfg.PINECONE_ENVIRONMENT,
            namespace=cfg.PINECONE_NAMESPACE,
            timeout=cfg.VECTOR_TIMEOUT_SECONDS,
            health_timeout=cfg.HEALTH_TIMEOUT_SECONDS,
        )
    if backend == "pgvector":
        return PgVectorStore(session_factory, dimension=cfg.PGVECTOR_DIMENSION)
    if backend == "memory":
        if _memory_store is None:
            _memory_store = MemoryVectorStore(cfg.MEMORY_VECTOR_DIMENSION)
        return _memory_store
    raise ConfigurationError(f"Unknown VECTOR_STORE_BACKEND: {cfg.VECTOR_STORE_BACKEND}")
