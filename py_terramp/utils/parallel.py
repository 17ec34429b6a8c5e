"""Thread pool helpers shared by the matrix primitives and the engines."""

import math
import os
from typing import List, Optional

from ..config import settings


def resolve_workers(workers: Optional[int] = None) -> int:
    """Return the worker count to use, falling back to settings then the CPU count."""
    if workers is None:
        workers = settings.worker_count
    if workers is None:
        workers = os.cpu_count() or 1
    return max(1, int(workers))


def partition(count: int, parts: int) -> List[range]:
    """
    Split ``range(count)`` into at most ``parts`` contiguous, non-empty ranges.

    Args:
        count: Number of items
        parts: Desired number of partitions

    Returns:
        List of half-open ranges covering ``0..count`` in order
    """
    if count <= 0:
        return []
    parts = max(1, min(parts, count))
    step = math.ceil(count / parts)
    return [range(start, min(start + step, count)) for start in range(0, count, step)]
