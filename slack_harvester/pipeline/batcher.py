"""Fixed-size batching of normalized records."""

from typing import Iterator, Sequence, Tuple, TypeVar

T = TypeVar("T")

MAX_BATCH_SIZE = 25
"""Largest batch `apps.datastore.bulkPut` accepts."""


class Batcher:
    """Split a sequence into consecutive batches of at most `batch_size` items.

    Batching windows over an immutable snapshot taken when `batches` is called,
    so the caller's sequence is never mutated and may be reused afterwards.

    Args:
        batch_size: Items per batch, between 1 and `MAX_BATCH_SIZE`.

    Raises:
        ValueError: If `batch_size` is out of range.
    """

    def __init__(self, batch_size: int = MAX_BATCH_SIZE):
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
        self.batch_size = batch_size

    def batches(self, items: Sequence[T]) -> Iterator[Tuple[T, ...]]:
        snapshot = tuple(items)
        for start in range(0, len(snapshot), self.batch_size):
            yield snapshot[start : start + self.batch_size]

    def count(self, total: int) -> int:
        """Number of batches `total` items produce."""
        return -(-total // self.batch_size)
