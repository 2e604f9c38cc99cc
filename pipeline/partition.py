from typing import Iterator, List, Sequence, TypeVar

from tools.errors import InvalidConfigError

T = TypeVar("T")


def partition(rows: Sequence[T], batch_size: int) -> Iterator[List[T]]:
    """Split rows into consecutive batches of batch_size; the last one may be smaller."""
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise InvalidConfigError(f"batch_size must be a positive integer, got {batch_size!r}")
    return _chunks(rows, batch_size)


def _chunks(rows: Sequence[T], batch_size: int) -> Iterator[List[T]]:
    for start in range(0, len(rows), batch_size):
        yield list(rows[start:start + batch_size])
