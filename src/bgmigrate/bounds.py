"""Batch bounds computation.

Pure functions only. The next range of a migration is derived entirely from
its configured range and the highest value already claimed by one of its
jobs, so the job table is the only cursor and a restarted runner recomputes
exactly the same range.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from bgmigrate.models import BatchRange

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


def next_batch_range(
    min_value: int | None,
    max_value: int | None,
    batch_size: int,
    last_max_value: int | None = None,
) -> BatchRange | None:
    """Return the next ``[start, end]`` range to process, or ``None`` when done.

    ``start`` continues right after *last_max_value* (or at *min_value* for
    the first batch) and ``end`` is capped at *max_value*.

    Examples:
        >>> next_batch_range(1, 100, 30)
        BatchRange(start=1, end=30)
        >>> next_batch_range(1, 100, 30, last_max_value=90)
        BatchRange(start=91, end=100)
        >>> next_batch_range(1, 100, 30, last_max_value=100) is None
        True
    """
    if batch_size <= 0:
        msg = f"batch_size must be positive, got {batch_size}"
        raise ValueError(msg)
    if min_value is None or max_value is None:
        return None

    start = min_value if last_max_value is None else max(last_max_value + 1, min_value)
    if start > max_value:
        return None
    end = min(start + batch_size - 1, max_value)
    return BatchRange(start=start, end=end)


def iter_sub_batches(batch_range: BatchRange, sub_batch_size: int) -> Iterator[BatchRange]:
    """Split *batch_range* into consecutive ranges of at most *sub_batch_size* values."""
    if sub_batch_size <= 0:
        msg = f"sub_batch_size must be positive, got {sub_batch_size}"
        raise ValueError(msg)

    start = batch_range.start
    while start <= batch_range.end:
        end = min(start + sub_batch_size - 1, batch_range.end)
        yield BatchRange(start=start, end=end)
        start = end + 1


def covered_fraction(
    min_value: int | None,
    max_value: int | None,
    ranges: Iterable[BatchRange],
) -> float:
    """Fraction of ``[min_value, max_value]`` covered by *ranges* (0.0 to 1.0).

    Overlapping ranges are counted once. An empty configured range is
    reported as fully covered.
    """
    if min_value is None or max_value is None:
        return 1.0

    total = max_value - min_value + 1
    covered = 0
    cursor = min_value
    for r in sorted(ranges, key=lambda r: r.start):
        start = max(r.start, cursor)
        end = min(r.end, max_value)
        if start > end:
            continue
        covered += end - start + 1
        cursor = end + 1
    return covered / total
