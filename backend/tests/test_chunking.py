"""Tests for the chunk splitter."""
import pytest

from portal_uploads.client.chunking import chunk_count, create_chunk_spans, create_chunks


@pytest.mark.parametrize("size,chunk_size", [(1, 4), (4, 4), (5, 4), (17, 4), (2 * 1024 * 1024 + 1, 1024 * 1024)])
def test_spans_cover_input_exactly(size, chunk_size):
    spans = create_chunk_spans(size, chunk_size)
    assert len(spans) == chunk_count(size, chunk_size)
    assert spans[0].start == 0
    assert spans[-1].end == size
    for prev, nxt in zip(spans, spans[1:]):
        assert prev.end == nxt.start
    assert all(s.size == chunk_size for s in spans[:-1])
    assert 0 < spans[-1].size <= chunk_size
    assert [s.index for s in spans] == list(range(len(spans)))


def test_concatenated_chunks_reproduce_input():
    data = bytes(range(256)) * 10
    chunks = create_chunks(data, 300)
    assert b"".join(chunks) == data
    assert len(chunks) == 9


def test_empty_input_has_no_chunks():
    assert chunk_count(0, 1024) == 0
    assert create_chunks(b"", 1024) == []


def test_small_input_is_one_chunk():
    assert create_chunks(b"abc", 1024) == [b"abc"]


def test_chunk_size_must_be_positive():
    with pytest.raises(ValueError):
        chunk_count(10, 0)
