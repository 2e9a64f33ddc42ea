"""Split a byte range into fixed-size chunks."""
from dataclasses import dataclass


@dataclass(frozen=True)
class ChunkSpan:
    index: int
    start: int
    end: int  # exclusive

    @property
    def size(self) -> int:
        return self.end - self.start


def _check(size: int, chunk_size: int) -> None:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if size < 0:
        raise ValueError("size must not be negative")


def chunk_count(size: int, chunk_size: int) -> int:
    """ceil(size / chunk_size); zero for an empty file."""
    _check(size, chunk_size)
    return -(-size // chunk_size)


def create_chunk_spans(size: int, chunk_size: int) -> list[ChunkSpan]:
    """Ordered, contiguous spans covering [0, size); only the last may be short."""
    return [
        ChunkSpan(i, i * chunk_size, min((i + 1) * chunk_size, size))
        for i in range(chunk_count(size, chunk_size))
    ]


def create_chunks(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[span.start:span.end] for span in create_chunk_spans(len(data), chunk_size)]
