"""
Test suite for the retrieval and answer service.

Tests score and host filtering, evidence lookup, the empty-evidence policy per
fidelity mode, citations, metadata, whole and streamed answers, and error
propagation.

System role: Verification of retrieval-augmented answering
"""

from dataclasses import replace
from typing import List, Optional

import pytest

from kb_rag.exceptions import NoActiveProviderError, ProviderError, TransientProviderError
from kb_rag.indexing import IndexingJob
from kb_rag.models import Chunk, KnowledgeEntry
from kb_rag.retrieval import RetrievalService, build_citations, build_retrieval_service, filter_matches
from kb_rag.vector_store import MemoryVectorStore, VectorMatch
from tests.fakes import FailingEmbedder, FakeChat, FakeEmbedder, StaticStore


@pytest.fixture
def make_chunk(session_factory):
    """Create a chunk row for an existing entry and return its id."""

    def _make(entry_id: int, content: str, chunk_index: int = 0) -> int:
        session = session_factory()
        try:
            chunk = Chunk(entry_id=entry_id, content=content, char_count=len(content), chunk_index=chunk_index)
            session.add(chunk)
            session.commit()
            return chunk.id
        finally:
            session.close()

    return _make


def _match(chunk_id: int, score: float, entry_id: int, source_url: Optional[str] = None) -> VectorMatch:
    return VectorMatch(
        id=f"entry_{entry_id}_chunk_{chunk_id}",
        score=score,
        metadata={"entry_id": entry_id, "chunk_id": chunk_id, "source_url": source_url},
    )


def _service(session_factory, store, options, chat=None, embedder=None, **overrides) -> RetrievalService:
    return RetrievalService(
        session_factory,
        embedder or FakeEmbedder(),
        store,
        chat or FakeChat(),
        replace(options, **overrides),
    )


@pytest.fixture
def scored(make_entry, make_chunk):
    """Three chunks of two entries with vector scores 0.9, 0.4 and 0.1."""
    refunds = make_entry("Refunds take five days.", title="Refunds", category="billing", source_url="https://www.shop.com/refunds")
    shipping = make_entry("Shipping is free.", title="Shipping", source_url="https://other.org/shipping")
    c1 = make_chunk(refunds, "Refunds take five days.")
    c2 = make_chunk(refunds, "Refunds go to the original card.", 1)
    c3 = make_chunk(shipping, "Shipping is free.")
    matches = [
        _match(c1, 0.9, refunds, "https://www.shop.com/refunds"),
        _match(c2, 0.4, refunds, "https://www.shop.com/refunds"),
        _match(c3, 0.1, shipping, "https://other.org/shipping"),
    ]
    return {"refunds": refunds, "shipping": shipping, "chunks": [c1, c2, c3], "matches": matches}


class TestFilterMatches:
    """Test suite for score and host filtering."""

    def test_scenario_min_score_should_keep_only_high_score(self) -> None:
        matches = [_match(1, 0.9, 1), _match(2, 0.4, 1), _match(3, 0.1, 2)]

        kept = filter_matches(matches, min_score=0.5)

        assert [m.score for m in kept] == [0.9]

    def test_min_score_should_be_inclusive(self) -> None:
        assert len(filter_matches([_match(1, 0.5, 1)], min_score=0.5)) == 1

    def test_host_allow_list_should_ignore_www_and_case(self) -> None:
        matches = [
            _match(1, 0.9, 1, "https://WWW.Shop.com/a"),
            _match(2, 0.8, 2, "https://other.org/b"),
            _match(3, 0.7, 3, None),
        ]

        kept = filter_matches(matches, 0.0, ["shop.com"])

        assert [m.id for m in kept] == ["entry_1_chunk_1"]

    def test_empty_allow_list_should_keep_everything(self) -> None:
        matches = [_match(1, 0.9, 1, None), _match(2, 0.8, 2, "https://x.io")]

        assert len(filter_matches(matches, 0.0, [])) == 2


class TestRetrieve:
    """Test suite for RetrievalService.retrieve."""

    def test_scenario_should_keep_one_item_above_threshold(self, session_factory, options, scored) -> None:
        # Arrange
        service = _service(session_factory, StaticStore(scored["matches"]), options, min_score=0.5)

        # Act
        retrieval = service.retrieve("How long do refunds take?")

        # Assert
        assert retrieval.candidates == 3
        assert len(retrieval.evidence) == 1
        assert retrieval.evidence[0].score == 0.9
        assert retrieval.evidence[0].content == "Refunds take five days."
        assert retrieval.evidence[0].title == "Refunds"
        assert retrieval.top_score == 0.9
        assert set(retrieval.timings_ms) == {"embed", "search"}

    def test_should_query_store_with_top_k(self, session_factory, options, scored) -> None:
        store = StaticStore(scored["matches"])

        _service(session_factory, store, options, top_k=2).retrieve("refunds")

        assert store.queries == [{"top_k": 2, "filter": None}]

    def test_stale_vectors_should_be_dropped(self, session_factory, options, scored) -> None:
        matches = scored["matches"] + [_match(9999, 0.95, scored["refunds"])]

        retrieval = _service(session_factory, StaticStore(matches), options).retrieve("refunds")

        assert 9999 not in [e.chunk_id for e in retrieval.evidence]
        assert len(retrieval.evidence) == 3

    def test_chunk_id_should_fall_back_to_vector_id(self, session_factory, options, scored) -> None:
        c1 = scored["chunks"][0]
        match = VectorMatch(id=f"entry_{scored['refunds']}_chunk_{c1}", score=0.8, metadata={})

        retrieval = _service(session_factory, StaticStore([match]), options).retrieve("refunds")

        assert [e.chunk_id for e in retrieval.evidence] == [c1]

    def test_store_failure_should_propagate(self, session_factory, options) -> None:
        store = StaticStore(error=TransientProviderError("pinecone down", backend="pinecone"))

        with pytest.raises(TransientProviderError):
            _service(session_factory, store, options).retrieve("refunds")

    def test_embedding_failure_should_propagate(self, session_factory, options) -> None:
        embedder = FailingEmbedder(ProviderError("quota", backend="fake"))

        with pytest.raises(ProviderError):
            _service(session_factory, StaticStore(), options, embedder=embedder).retrieve("refunds")


class TestAnswer:
    """Test suite for RetrievalService.answer."""

    def test_grounded_answer_should_cite_each_entry_once(self, session_factory, options, scored) -> None:
        # Arrange
        chat = FakeChat(reply="Refunds take five days.")
        service = _service(session_factory, StaticStore(scored["matches"]), options, chat=chat)

        # Act
        result = service.answer("How long do refunds take?", user_id="u-1")

        # Assert
        assert result.answer == "Refunds take five days."
        assert [s["entry_id"] for s in result.sources] == [scored["refunds"], scored["shipping"]]
        assert result.sources[0]["score"] == 0.9
        assert result.sources[0]["url"] == "https://www.shop.com/refunds"
        assert result.metadata["items_used"] == 3
        assert result.metadata["user_id"] == "u-1"
        assert result.metadata["no_data"] is False
        assert result.metadata["context_length"] > 0
        assert "generate" in result.metadata["timings_ms"]
        prompt = chat.prompts[0]
        assert "--- CONTEXT START ---" in prompt
        assert "Refunds go to the original card." in prompt
        assert 'User question: "How long do refunds take?"' in prompt

    def test_restrictive_mode_without_evidence_should_not_call_chat(self, session_factory, options) -> None:
        # Arrange
        chat = FakeChat()
        service = _service(session_factory, StaticStore([]), options, chat=chat, strict_mode=True)

        # Act
        result = service.answer("Unknown topic?")

        # Assert
        assert result.answer == options.no_data_message
        assert result.sources == []
        assert result.metadata["no_data"] is True
        assert result.metadata["items_used"] == 0
        assert chat.prompts == []

    def test_refuse_without_context_should_apply_in_normal_mode(self, session_factory, options) -> None:
        chat = FakeChat()
        service = _service(
            session_factory, StaticStore([]), options, chat=chat,
            strict_mode=False, refuse_without_context=True,
        )

        result = service.answer("Unknown topic?")

        assert result.answer == options.no_data_message
        assert chat.prompts == []

    def test_permissive_mode_without_evidence_should_ask_chat(self, session_factory, options) -> None:
        chat = FakeChat(reply="General answer.")
        service = _service(session_factory, StaticStore([]), options, chat=chat, strict_mode=False)

        result = service.answer("What is a refund?")

        assert result.answer == "General answer."
        assert result.metadata["mode"] == "normal"
        assert result.metadata["no_data"] is True
        assert "No knowledge-base context matched" in chat.prompts[0]

    def test_filtered_out_evidence_should_count_as_empty(self, session_factory, options, scored) -> None:
        chat = FakeChat()
        service = _service(
            session_factory, StaticStore(scored["matches"]), options, chat=chat,
            strict_mode=True, min_score=0.95,
        )

        result = service.answer("refunds")

        assert result.metadata["candidates"] == 3
        assert result.answer == options.no_data_message
        assert chat.prompts == []

    @pytest.mark.parametrize(
        "override,expected",
        [(None, "strict"), ("normal", "normal"), ("super_strict", "super_strict")],
    )
    def test_mode_override_should_select_preamble(self, session_factory, options, scored, override, expected) -> None:
        chat = FakeChat()
        service = _service(
            session_factory, StaticStore(scored["matches"]), options, chat=chat,
            strict_mode=True, super_strict_mode=False,
            normal_preamble="NORMAL", strict_preamble="STRICT {no_data}", super_strict_preamble="VERBATIM {no_data}",
            no_data_message="Nothing found.",
        )

        result = service.answer("refunds", mode=override)

        assert result.metadata["mode"] == expected
        first_line = chat.prompts[0].splitlines()[0]
        assert first_line == {
            "normal": "NORMAL",
            "strict": "STRICT Nothing found.",
            "super_strict": "VERBATIM Nothing found.",
        }[expected]

    def test_chat_failure_should_propagate(self, session_factory, options, scored) -> None:
        chat = FakeChat(error=TransientProviderError("chat timeout", backend="fake"))
        service = _service(session_factory, StaticStore(scored["matches"]), options, chat=chat)

        with pytest.raises(TransientProviderError):
            service.answer("refunds")

    def test_degraded_embedding_should_be_reported(self, session_factory, options, scored) -> None:
        embedder = FakeEmbedder()
        embedder.degraded = True
        service = _service(session_factory, StaticStore(scored["matches"]), options, embedder=embedder)

        assert service.answer("refunds").metadata["degraded_embedding"] is True


class TestStreaming:
    """Test suite for iter_answer and stream_answer."""

    def test_iter_answer_should_yield_pieces_and_return_result(self, session_factory, options, scored) -> None:
        # Arrange
        chat = FakeChat(pieces=["Refunds ", "take ", "five days."])
        service = _service(session_factory, StaticStore(scored["matches"]), options, chat=chat)
        gen = service.iter_answer("refunds")

        # Act
        pieces: List[str] = []
        with pytest.raises(StopIteration) as stop:
            while True:
                pieces.append(next(gen))

        # Assert
        result = stop.value.value
        assert pieces == ["Refunds ", "take ", "five days."]
        assert result.answer == "Refunds take five days."
        assert len(result.sources) == 2
        assert chat.stream_closed is True

    def test_iter_answer_without_evidence_should_yield_no_data_message(self, session_factory, options) -> None:
        chat = FakeChat()
        service = _service(session_factory, StaticStore([]), options, chat=chat, strict_mode=True)

        assert list(service.iter_answer("unknown")) == [options.no_data_message]
        assert chat.prompts == []

    def test_stream_answer_should_deliver_chunks_then_complete(self, session_factory, options, scored) -> None:
        chat = FakeChat(pieces=["a", "b", "c"])
        service = _service(session_factory, StaticStore(scored["matches"]), options, chat=chat)
        received: List[str] = []
        completed = []

        result = service.stream_answer("refunds", received.append, completed.append)

        assert received == ["a", "b", "c"]
        assert completed == [result]
        assert result.answer == "abc"

    def test_consumer_stop_should_close_upstream(self, session_factory, options, scored) -> None:
        # Arrange
        chat = FakeChat(pieces=["a", "b", "c", "d"])
        service = _service(session_factory, StaticStore(scored["matches"]), options, chat=chat)
        received: List[str] = []
        completed = []

        def on_chunk(piece: str) -> bool:
            received.append(piece)
            return len(received) < 2

        # Act
        result = service.stream_answer("refunds", on_chunk, completed.append)

        # Assert
        assert result is None
        assert received == ["a", "b"]
        assert completed == []
        assert chat.yielded == 2
        assert chat.stream_closed is True

    def test_stream_failure_should_propagate_and_close(self, session_factory, options, scored) -> None:
        chat = FakeChat(error=ProviderError("stream broke", backend="fake"))
        service = _service(session_factory, StaticStore(scored["matches"]), options, chat=chat)

        with pytest.raises(ProviderError):
            service.stream_answer("refunds", lambda piece: None)

        assert chat.stream_closed is True


class TestCitations:
    """Test suite for build_citations."""

    def test_should_keep_best_score_per_entry(self, session_factory, options, scored) -> None:
        retrieval = _service(session_factory, StaticStore(scored["matches"]), options).retrieve("refunds")

        citations = build_citations(list(reversed(retrieval.evidence)))

        refunds = next(c for c in citations if c["entry_id"] == scored["refunds"])
        assert refunds["score"] == 0.9
        assert refunds["title"] == "Refunds"
        assert refunds["category"] == "billing"


class TestEndToEnd:
    """Index with the job, then answer from the same in-memory store."""

    def test_indexed_entry_should_be_retrieved(self, session_factory, options, make_entry) -> None:
        # Arrange
        store = MemoryVectorStore()
        embedder = FakeEmbedder(dim=26)
        entry_id = make_entry("Refunds are processed within five business days.", title="Refunds")
        make_entry("zzz yyy xxx www", title="Noise")
        IndexingJob(session_factory, embedder, store, options).run(entry_id)
        chat = FakeChat(reply="Five business days.")
        service = _service(session_factory, store, options, chat=chat, embedder=embedder, min_score=0.3)

        # Act
        result = service.answer("How are refunds processed?")

        # Assert
        assert result.sources[0]["entry_id"] == entry_id
        assert result.sources[0]["title"] == "Refunds"
        assert result.answer == "Five business days."

    def test_build_from_active_provider_should_wire_components(self, session_factory, make_provider) -> None:
        make_provider(kind="deepseek", api_key="sk-test")

        service = build_retrieval_service(session_factory)

        assert service.embedder.degraded is True
        assert service.embedder.dimension() == 1536
        assert isinstance(service.store, MemoryVectorStore)
        assert service.options.top_k >= 1

    def test_build_without_provider_should_raise(self, session_factory) -> None:
        with pytest.raises(NoActiveProviderError):
            build_retrieval_service(session_factory)

    def test_entry_titles_should_come_from_relational_store(self, session_factory, options, scored) -> None:
        session = session_factory()
        session.query(KnowledgeEntry).filter(KnowledgeEntry.id == scored["refunds"]).update({"title": "Renamed"})
        session.commit()
        session.close()

        retrieval = _service(session_factory, StaticStore(scored["matches"]), options).retrieve("refunds")

        assert retrieval.evidence[0].title == "Renamed"
