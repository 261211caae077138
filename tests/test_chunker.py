# =============================================================================
# Unit Tests — Chunker Service
# =============================================================================
#
# Character-window chunking. Pure function: no API keys, databases, or
# network calls needed.
# =============================================================================

import math

import pytest

from app.services.chunker import chunk_text


def _reconstruct(chunks: list[str], size: int, overlap: int) -> str:
    """Undo the overlap: each window contributes its first `step` chars."""
    step = size - overlap
    return "".join(c[:step] for c in chunks[:-1]) + (chunks[-1] if chunks else "")


class TestChunkText:
    """Tests for chunk_text()."""

    def test_empty_text_returns_no_chunks(self):
        assert chunk_text("") == []

    def test_short_text_is_single_chunk(self):
        assert chunk_text("hello world") == ["hello world"]

    def test_2500_characters_gives_four_windows(self):
        text = "".join(chr(ord("a") + i % 26) for i in range(2500))
        chunks = chunk_text(text, size=1000, overlap=200)

        assert len(chunks) == 4
        assert [len(c) for c in chunks] == [1000, 1000, 900, 100]
        assert chunks[1] == text[800:1800]
        assert chunks[3] == text[2400:]

    def test_consecutive_windows_share_overlap(self):
        text = "x" * 300 + "y" * 300 + "z" * 300
        chunks = chunk_text(text, size=400, overlap=100)
        for prev, nxt in zip(chunks, chunks[1:]):
            if len(prev) == 400:
                assert prev[-100:] == nxt[:100]

    @pytest.mark.parametrize("length", [1, 799, 800, 801, 1000, 1001, 5000])
    def test_count_and_reconstruction(self, length):
        text = "".join(chr(ord("A") + i % 26) for i in range(length))
        chunks = chunk_text(text, size=1000, overlap=200)

        assert len(chunks) == math.ceil(length / 800)
        assert _reconstruct(chunks, 1000, 200) == text

    def test_overlap_equal_to_size_still_advances(self):
        chunks = chunk_text("abcdefghij", size=4, overlap=4)
        assert chunks == ["abcd", "efgh", "ij"]

    def test_overlap_larger_than_size_still_advances(self):
        chunks = chunk_text("abcdefghij", size=3, overlap=10)
        assert chunks == ["abc", "def", "ghi", "j"]

    def test_zero_overlap_partitions_text(self):
        assert chunk_text("abcdefg", size=3, overlap=0) == ["abc", "def", "g"]

    def test_invalid_size_raises(self):
        with pytest.raises(ValueError):
            chunk_text("abc", size=0)

    def test_negative_overlap_raises(self):
        with pytest.raises(ValueError):
            chunk_text("abc", size=10, overlap=-1)

    def test_deterministic(self):
        text = "The mitochondria is the powerhouse of the cell. " * 50
        assert chunk_text(text, 120, 30) == chunk_text(text, 120, 30)
