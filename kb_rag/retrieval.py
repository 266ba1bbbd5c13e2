"""Retrieval and answer service.

This module implements:
- filter_matches: score threshold and source-host allow-list filtering
- RetrievalService.retrieve: question embedding, vector search, filtering and
  chunk text lookup in the relational store
- RetrievalService.answer / iter_answer / stream_answer: grounded answer, whole or
  streamed, with citations and retrieval metadata
- build_retrieval_service: wiring from the active provider configuration

The empty-evidence policy is decided once per request: restrictive modes return the
configured no-data message without calling the chat provider, permissive mode asks
the chat provider without context.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional

from kb_rag.config import settings
from kb_rag.db import SessionFactory, SessionLocal, session_scope
from kb_rag.exceptions import RagError
from kb_rag.generation import (
    AnswerMode,
    build_context,
    build_fallback_prompt,
    build_prompt,
    is_restrictive,
    resolve_mode,
)
from kb_rag.models import Chunk, KnowledgeEntry
from kb_rag.obs import Trace, span
from kb_rag.options import RagOptions, load_rag_options
from kb_rag.providers.base import ChatProvider, EmbeddingProvider
from kb_rag.providers.chat import build_chat_provider
from kb_rag.providers.embedding import build_embedding_provider
from kb_rag.providers.registry import get_active_provider, provider_settings, repair_embedding_defaults
from kb_rag.utils import chunk_id_from_match, elapsed_ms, is_allowed_url
from kb_rag.vector_store import VectorMatch, VectorStore, build_vector_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Evidence:
    """A retrieved chunk that survived filtering, with its text and source."""
    chunk_id: int
    entry_id: int
    chunk_index: int
    score: float
    content: str
    title: str
    category: Optional[str] = None
    source_url: Optional[str] = None


@dataclass
class Retrieval:
    evidence: List[Evidence]
    candidates: int
    degraded_embedding: bool
    timings_ms: Dict[str, int] = field(default_factory=dict)

    @property
    def top_score(self) -> Optional[float]:
        return max((e.score for e in self.evidence), default=None)


@dataclass
class AnswerResult:
    answer: str
    sources: List[Dict[str, Any]]
    metadata: Dict[str, Any]


def filter_matches(
    matches: Iterable[VectorMatch], min_score: float, allowed_hosts: Iterable[str] = ()
) -> List[VectorMatch]:
    """Drop matches below min_score or from a source host outside the allow-list.

    Args:
        matches: Ranked vector-store matches.
        min_score: Minimum similarity score (inclusive).
        allowed_hosts: Normalized allowed hosts; empty means no host restriction.

    Returns:
        List[VectorMatch]: Surviving matches in their original order.
    """
    allowed = list(allowed_hosts)
    return [
        m for m in matches
        if m.score >= min_score and is_allowed_url(m.metadata.get("source_url"), allowed)
    ]


def build_citations(evidence: List[Evidence]) -> List[Dict[str, Any]]:
    """One citation per entry, in evidence order, carrying the entry's best score."""
    by_entry: Dict[int, Dict[str, Any]] = {}
    for ev in evidence:
        cur = by_entry.get(ev.entry_id)
        if cur is None:
            by_entry[ev.entry_id] = {
                "entry_id": ev.entry_id,
                "title": ev.title,
                "url": ev.source_url,
                "category": ev.category,
                "score": round(ev.score, 4),
            }
        elif ev.score > cur["score"]:
            cur["score"] = round(ev.score, 4)
    return list(by_entry.values())


@dataclass
class _Plan:
    retrieval: Retrieval
    mode: AnswerMode
    prompt: Optional[str]
    context: str
    no_data: bool


class RetrievalService:
    """Answers questions from the knowledge base.

    Args:
        session_factory: Creates the read-only sessions used to load chunk text.
        embedder: Embedding provider used for the question.
        store: Vector store to search.
        chat: Chat provider used for answer synthesis.
        options: Options snapshot for this request.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory],
        embedder: EmbeddingProvider,
        store: VectorStore,
        chat: ChatProvider,
        options: RagOptions,
    ):
        self.session_factory = session_factory or SessionLocal
        self.embedder = embedder
        self.store = store
        self.chat = chat
        self.options = options

    def _load_evidence(self, matches: List[VectorMatch]) -> List[Evidence]:
        ids = {m.id: chunk_id_from_match(m.id, m.metadata) for m in matches}
        wanted = [cid for cid in ids.values() if cid is not None]
        if not wanted:
            return []
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(Chunk, KnowledgeEntry)
                .join(KnowledgeEntry, Chunk.entry_id == KnowledgeEntry.id)
                .filter(Chunk.id.in_(wanted))
                .all()
            )
            found = {
                chunk.id: (chunk.entry_id, chunk.chunk_index, chunk.content, entry.title, entry.category, entry.source_url)
                for chunk, entry in rows
            }

        evidence: List[Evidence] = []
        for m in matches:
            row = found.get(ids[m.id])
            if row is None:
                # vector outlived its chunk row (re-index in flight or leftover)
                logger.debug("Dropping stale vector %s", m.id)
                continue
            entry_id, chunk_index, content, title, category, source_url = row
            evidence.append(
                Evidence(
                    chunk_id=ids[m.id],
                    entry_id=entry_id,
                    chunk_index=chunk_index,
                    score=m.score,
                    content=content,
                    title=title,
                    category=category,
                    source_url=source_url,
                )
            )
        return evidence

    def retrieve(self, question: str, trace: Optional[Trace] = None) -> Retrieval:
        """Embed the question, search the store and keep the evidence that passes filtering.

        Raises:
            RagError: Provider or store failure (logged here, re-raised as-is).
        """
        trace = trace or Trace("rag_retrieve", {"question": question})
        timings: Dict[str, int] = {}
        try:
            t0 = time.monotonic()
            with span("retrieval.embed"):
                qvec = self.embedder.embed(question)
            timings["embed"] = elapsed_ms(t0)
            trace.event("embedded", {"dimension": len(qvec), "degraded": self.embedder.degraded})

            t1 = time.monotonic()
            with span("retrieval.search", {"top_k": self.options.top_k}):
                matches = self.store.query(qvec, self.options.top_k)
            timings["search"] = elapsed_ms(t1)
        except RagError:
            logger.exception("Retrieval failed for question of length %d", len(question))
            raise

        kept = filter_matches(matches, self.options.min_score, self.options.allowed_hosts)
        trace.event("filtered", {"candidates": len(matches), "kept": len(kept), "scores": [m.score for m in matches]})
        evidence = self._load_evidence(kept)
        logger.info(
            "Retrieved %d candidates, %d kept after filtering, %d with chunk text",
            len(matches), len(kept), len(evidence),
        )
        return Retrieval(
            evidence=evidence,
            candidates=len(matches),
            degraded_embedding=self.embedder.degraded,
            timings_ms=timings,
        )

    def _plan(self, question: str, mode: Optional[str], trace: Trace) -> _Plan:
        retrieval = self.retrieve(question, trace)
        resolved = resolve_mode(self.options, mode)
        context = build_context(e.content for e in retrieval.evidence)
        if retrieval.evidence:
            prompt = build_prompt(question, context, resolved, self.options)
            return _Plan(retrieval, resolved, prompt, context, no_data=False)
        if is_restrictive(resolved, self.options):
            return _Plan(retrieval, resolved, None, "", no_data=True)
        return _Plan(retrieval, resolved, build_fallback_prompt(question, self.options), "", no_data=True)

    def _metadata(self, plan: _Plan, user_id: Optional[Any], started: float) -> Dict[str, Any]:
        timings = dict(plan.retrieval.timings_ms)
        timings["total"] = elapsed_ms(started)
        return {
            "items_used": len(plan.retrieval.evidence),
            "candidates": plan.retrieval.candidates,
            "mode": plan.mode.value,
            "top_score": plan.retrieval.top_score,
            "context_length": len(plan.context),
            "degraded_embedding": plan.retrieval.degraded_embedding,
            "no_data": plan.no_data,
            "user_id": user_id,
            "timings_ms": timings,
        }

    def answer(self, question: str, user_id: Optional[Any] = None, mode: Optional[str] = None) -> AnswerResult:
        """Answer a question in one piece.

        Args:
            question: User question.
            user_id: Requesting user, echoed in metadata.
            mode: Optional fidelity override ("normal", "strict", "super_strict").

        Returns:
            AnswerResult: Answer text, per-entry citations and retrieval metadata.
        """
        started = time.monotonic()
        trace = Trace("rag_query", {"question": question, "user_id": user_id, "mode": mode})
        plan = self._plan(question, mode, trace)

        if plan.prompt is None:
            text = self.options.no_data_message
        else:
            t = time.monotonic()
            try:
                with span("retrieval.generate", {"mode": plan.mode.value}):
                    text = self.chat.complete(
                        plan.prompt,
                        temperature=self.options.temperature,
                        max_tokens=self.options.max_output_tokens,
                    )
            except RagError:
                logger.exception("Answer generation failed on %s", self.chat.name)
                raise
            plan.retrieval.timings_ms["generate"] = elapsed_ms(t)
            trace.generation("answer", plan.prompt, text, model=getattr(self.chat, "model", ""))
            if not text and plan.no_data:
                text = self.options.no_data_message

        result = AnswerResult(
            answer=text,
            sources=build_citations(plan.retrieval.evidence),
            metadata=self._metadata(plan, user_id, started),
        )
        trace.end({"items_used": result.metadata["items_used"], "no_data": plan.no_data})
        return result

    def iter_answer(
        self, question: str, user_id: Optional[Any] = None, mode: Optional[str] = None
    ) -> Generator[str, None, AnswerResult]:
        """Stream the answer as text chunks in arrival order.

        The generator's return value (StopIteration.value) is the final AnswerResult.
        Closing the generator early closes the chat provider stream.
        """
        started = time.monotonic()
        trace = Trace("rag_query_stream", {"question": question, "user_id": user_id, "mode": mode})
        plan = self._plan(question, mode, trace)

        parts: List[str] = []
        if plan.prompt is None:
            parts.append(self.options.no_data_message)
            yield self.options.no_data_message
        else:
            t = time.monotonic()
            upstream = self.chat.stream(
                plan.prompt,
                temperature=self.options.temperature,
                max_tokens=self.options.max_output_tokens,
            )
            try:
                for piece in upstream:
                    parts.append(piece)
                    yield piece
            except RagError:
                logger.exception("Streaming generation failed on %s", self.chat.name)
                raise
            finally:
                upstream.close()
            plan.retrieval.timings_ms["generate"] = elapsed_ms(t)
            trace.generation("answer", plan.prompt, "".join(parts), model=getattr(self.chat, "model", ""))

        result = AnswerResult(
            answer="".join(parts),
            sources=build_citations(plan.retrieval.evidence),
            metadata=self._metadata(plan, user_id, started),
        )
        trace.end({"items_used": result.metadata["items_used"], "no_data": plan.no_data})
        return result

    def stream_answer(
        self,
        question: str,
        on_chunk: Callable[[str], Optional[bool]],
        on_complete: Optional[Callable[[AnswerResult], None]] = None,
        user_id: Optional[Any] = None,
        mode: Optional[str] = None,
    ) -> Optional[AnswerResult]:
        """Callback form of iter_answer.

        on_chunk returning False stops consumption (the provider stream is closed) and
        on_complete is not called.

        Returns:
            Optional[AnswerResult]: Final result, or None when the consumer stopped early.
        """
        gen = self.iter_answer(question, user_id=user_id, mode=mode)
        try:
            while True:
                piece = next(gen)
                if on_chunk(piece) is False:
                    return None
        except StopIteration as stop:
            result = stop.value
        finally:
            gen.close()
        if on_complete is not None:
            on_complete(result)
        return result


def build_retrieval_service(session_factory: Optional[SessionFactory] = None) -> RetrievalService:
    """Wire a RetrievalService from the active provider and current options.

    Raises:
        ConfigurationError: No active provider, no embedding support or bad credentials.
    """
    factory = session_factory or SessionLocal
    with session_scope(factory) as db:
        row = get_active_provider(db)
        repair_embedding_defaults(db, row)
        config = provider_settings(row)
        options = load_rag_options(db)
    return RetrievalService(
        factory,
        build_embedding_provider(config),
        build_vector_store(settings, factory),
        build_chat_provider(config),
        options,
    )
