"""FastAPI application entrypoint and routes.

Exposes the question-answering endpoints (whole and event-stream), entry indexing
and deletion, and the health/compatibility endpoints. Configures logging and CORS,
and initializes the database schema at startup.
"""
import json
import logging
from typing import Any, Dict, Generator, Optional, Tuple

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from kb_rag.config import settings
from kb_rag.db import SessionFactory, get_db, get_session_factory, init_db
from kb_rag.exceptions import ConfigurationError, RagError
from kb_rag.health import EmbedderFactory, check_compatibility, check_embedding_provider, check_system, check_vector_store
from kb_rag.indexing import delete_entry, enqueue_indexing
from kb_rag.models import KnowledgeEntry
from kb_rag.providers.embedding import build_embedding_provider
from kb_rag.retrieval import AnswerResult, RetrievalService, build_retrieval_service
from kb_rag.schemas import (
    CompatibilityReport,
    ComponentStatus,
    EntryDeleted,
    IndexAccepted,
    QueryRequest,
    QueryResponse,
    SystemHealth,
)
from kb_rag.vector_store import VectorStore, build_vector_store

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

GENERIC_ERROR = "The assistant could not answer right now. Please try again later."
NOT_CONFIGURED = "The knowledge base assistant is not configured."

app = FastAPI(title="Knowledge Base RAG API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database schema and indexes at application startup."""
    init_db()


@app.exception_handler(RagError)
async def rag_error_handler(request: Request, exc: RagError) -> JSONResponse:
    """Turn pipeline errors into generic responses; details stay in the server log."""
    if isinstance(exc, ConfigurationError):
        logger.warning("Request %s rejected: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": NOT_CONFIGURED})
    logger.error("Request %s failed: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


def get_vector_store(factory: SessionFactory = Depends(get_session_factory)) -> VectorStore:
    return build_vector_store(settings, factory)


def get_optional_vector_store(factory: SessionFactory = Depends(get_session_factory)) -> Optional[VectorStore]:
    """Vector store for health endpoints; None when it is not configured."""
    try:
        return build_vector_store(settings, factory)
    except ConfigurationError as e:
        logger.warning("Vector store unavailable: %s", e)
        return None


def get_embedder_factory() -> EmbedderFactory:
    return build_embedding_provider


def get_retrieval_service(factory: SessionFactory = Depends(get_session_factory)) -> RetrievalService:
    return build_retrieval_service(factory)


@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


@app.post("/rag/query", response_model=QueryResponse)
def rag_query(req: QueryRequest, service: RetrievalService = Depends(get_retrieval_service)) -> QueryResponse:
    """Answer a question from the knowledge base.

    Args:
        req: QueryRequest payload.
        service: Retrieval service wired from the active provider.

    Returns:
        QueryResponse: Answer, per-entry sources and retrieval metadata.
    """
    result = service.answer(req.question, user_id=req.user_id, mode=req.mode.value if req.mode else None)
    return QueryResponse(answer=result.answer, sources=result.sources, metadata=result.metadata)


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


def _advance(gen: Generator[str, None, AnswerResult]) -> Tuple[str, Any]:
    try:
        return "chunk", next(gen)
    except StopIteration as stop:
        return "done", stop.value


async def _event_stream(request: Request, gen: Generator[str, None, AnswerResult]):
    try:
        while True:
            if await request.is_disconnected():
                logger.info("Client disconnected; stopping answer stream")
                break
            kind, value = await run_in_threadpool(_advance, gen)
            if kind == "chunk":
                yield _sse({"chunk": value})
                continue
            yield _sse({"done": True, "sources": value.sources, "metadata": value.metadata})
            break
    except RagError as e:
        logger.error("Streaming answer failed: %s", e)
        yield _sse({"error": GENERIC_ERROR})
    finally:
        # closes the chat provider's upstream stream as well
        await run_in_threadpool(gen.close)


@app.post("/rag/query/stream")
def rag_query_stream(
    req: QueryRequest, request: Request, service: RetrievalService = Depends(get_retrieval_service)
) -> StreamingResponse:
    """Stream the answer as server-sent events.

    Emits `data: {"chunk": ...}` events, then `data: {"done": true, "sources": ...,
    "metadata": ...}`, or `data: {"error": ...}` on failure.
    """
    gen = service.iter_answer(req.question, user_id=req.user_id, mode=req.mode.value if req.mode else None)
    return StreamingResponse(
        _event_stream(request, gen),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/entries/{entry_id}/index", response_model=IndexAccepted, status_code=202)
def index_entry_route(
    entry_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    factory: SessionFactory = Depends(get_session_factory),
) -> IndexAccepted:
    """Queue (re-)indexing of an entry; the job runs after the response is sent."""
    if db.get(KnowledgeEntry, entry_id) is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    enqueue_indexing(background_tasks, entry_id, factory)
    return IndexAccepted(entry_id=entry_id)


@app.delete("/entries/{entry_id}", response_model=EntryDeleted)
def delete_entry_route(
    entry_id: int, db: Session = Depends(get_db), store: VectorStore = Depends(get_vector_store)
) -> EntryDeleted:
    """Delete an entry, its chunks and its vectors."""
    if not delete_entry(db, store, entry_id):
        raise HTTPException(status_code=404, detail="Entry not found")
    db.commit()
    return EntryDeleted(entry_id=entry_id, deleted=True)


@app.get("/rag/health/embedding", response_model=ComponentStatus)
def embedding_health(
    db: Session = Depends(get_db), embedder_factory: EmbedderFactory = Depends(get_embedder_factory)
) -> ComponentStatus:
    return check_embedding_provider(db, embedder_factory)


@app.get("/rag/health/vector-store", response_model=ComponentStatus)
def vector_store_health(store: Optional[VectorStore] = Depends(get_optional_vector_store)) -> ComponentStatus:
    if store is None:
        return ComponentStatus(component="vector_store", status="error", message="Vector store is not configured")
    return check_vector_store(store)


@app.get("/rag/health", response_model=SystemHealth)
def system_health(
    db: Session = Depends(get_db),
    store: Optional[VectorStore] = Depends(get_optional_vector_store),
    embedder_factory: EmbedderFactory = Depends(get_embedder_factory),
) -> SystemHealth:
    return check_system(db, store, embedder_factory, store_error="Vector store is not configured")


@app.get("/rag/compatibility", response_model=CompatibilityReport)
def compatibility(
    db: Session = Depends(get_db),
    store: Optional[VectorStore] = Depends(get_optional_vector_store),
    embedder_factory: EmbedderFactory = Depends(get_embedder_factory),
) -> CompatibilityReport:
    if store is None:
        return CompatibilityReport(
            status="error", can_enable=False, message="Vector store is not configured",
            hint="Set VECTOR_STORE_BACKEND and its connection settings",
        )
    return check_compatibility(db, store, embedder_factory)
