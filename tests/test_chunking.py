"""
Test suite for text chunking.

Tests size bounds, exact overlap between consecutive chunks, boundary preference,
determinism, normalization and parameter validation.

System role: Verification of the indexing job's chunker
"""

import pytest

from kb_rag.chunking import MAX_CHARS, chunk_sections, chunk_text, normalize_text

PROSE = (
    "Refunds are issued to the original payment method. Processing takes five to ten business days. "
    "If the order was paid with a gift card, the balance is restored instead.\n\n"
    "Exchanges are possible within thirty days of delivery? Items must be unused and in their packaging! "
    "Contact support with the order number to start an exchange.\n\n"
) * 12


def _assert_overlap(chunks, overlap):
    for left, right in zip(chunks, chunks[1:]):
        assert left[-overlap:] == right[:overlap]


class TestChunkText:
    """Test suite for chunk_text."""

    def test_scenario_2500_chars_should_give_three_bounded_overlapping_chunks(self) -> None:
        """A 2,500 character body with size 1024 / overlap 200 yields 3 chunks."""
        # Arrange
        body = "abcdefghi " * 250

        # Act
        chunks = chunk_text(body, 1024, 200)

        # Assert
        assert len(chunks) == 3
        assert all(len(c) <= 1024 for c in chunks)
        assert chunks[0][-200:] == chunks[1][:200]
        _assert_overlap(chunks, 200)

    @pytest.mark.parametrize("size,overlap", [(1024, 200), (300, 50), (120, 119), (64, 1)])
    def test_chunks_should_respect_size_and_overlap(self, size, overlap) -> None:
        chunks = chunk_text(PROSE, size, overlap)

        assert len(chunks) > 1
        assert all(len(c) <= size for c in chunks)
        _assert_overlap(chunks, overlap)

    def test_chunks_should_cover_whole_normalized_text(self) -> None:
        overlap = 100
        chunks = chunk_text(PROSE, 500, overlap)

        rebuilt = chunks[0] + "".join(c[overlap:] for c in chunks[1:])

        assert rebuilt == normalize_text(PROSE)

    def test_should_prefer_paragraph_boundaries(self) -> None:
        chunks = chunk_text(PROSE, 600, 50)

        assert chunks[0].endswith("\n\n")

    def test_break_before_window_tail_should_be_ignored(self) -> None:
        # Arrange: paragraph break ends at offset 700, outside the last fifth of a 1024 window
        body = "x" * 698 + "\n\n" + "word " * 400

        # Act
        chunks = chunk_text(body, 1024, 200)

        # Assert
        assert len(chunks[0]) == 1020
        assert chunks[0].endswith("word ")
        _assert_overlap(chunks, 200)

    def test_should_be_deterministic(self) -> None:
        assert chunk_text(PROSE, 700, 120) == chunk_text(PROSE, 700, 120)

    def test_text_without_whitespace_should_be_hard_cut(self) -> None:
        chunks = chunk_text("x" * 2500, 1000, 100)

        assert [len(c) for c in chunks] == [1000, 1000, 700]
        _assert_overlap(chunks, 100)

    def test_short_text_should_be_single_chunk(self) -> None:
        assert chunk_text("  Short entry body.  ", 1024, 200) == ["Short entry body."]

    @pytest.mark.parametrize("text", ["", "   ", "\n\n\t  \n", None])
    def test_empty_input_should_yield_no_chunks(self, text) -> None:
        assert chunk_text(text, 1024, 200) == []

    @pytest.mark.parametrize("size,overlap", [(100, 0), (100, 100), (100, 150), (0, 10), (100, -1)])
    def test_invalid_parameters_should_raise(self, size, overlap) -> None:
        with pytest.raises(ValueError):
            chunk_text(PROSE, size, overlap)


class TestNormalizeText:
    """Test suite for normalize_text."""

    def test_should_collapse_whitespace_and_strip_controls(self) -> None:
        raw = "  Title\x00\x07 with   spaces\t\tand tabs \r\n\n\n\n\nNext   paragraph  "

        assert normalize_text(raw) == "Title with spaces and tabs\n\nNext paragraph"

    def test_should_cap_input_length(self) -> None:
        assert len(normalize_text("a" * (MAX_CHARS + 10))) == MAX_CHARS


class TestChunkSections:
    """Test suite for paragraph packing."""

    def test_should_pack_paragraphs_up_to_max_size(self) -> None:
        text = "First paragraph.\n\nSecond paragraph.\n\nThird paragraph."

        assert chunk_sections(text, max_size=40) == [
            "First paragraph.\n\nSecond paragraph.",
            "Third paragraph.",
        ]

    def test_oversized_paragraph_should_be_split(self) -> None:
        text = "Intro.\n\n" + ("word " * 100).strip()

        chunks = chunk_sections(text, max_size=120, overlap=20)

        assert chunks[0] == "Intro."
        assert all(len(c) <= 120 for c in chunks)
        assert len(chunks) > 2
