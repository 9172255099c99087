"""Helpers for running id-list queries against the database in bounded chunks."""

from __future__ import annotations

from typing import (
    Awaitable,
    Callable,
    Hashable,
    Iterable,
    Iterator,
    List,
    Sequence,
    TypeVar,
)

T = TypeVar("T")
H = TypeVar("H", bound=Hashable)
R = TypeVar("R")

# Oracle caps IN lists at 1000 entries; the same bound keeps every statement
# well below the Postgres wire protocol's 32767 bind parameters.
PARTITION_SIZE = 1000


def partition(inputs: Iterable[T], size: int = PARTITION_SIZE) -> Iterator[List[T]]:
    """Split ``inputs`` into lists of at most ``size`` items, keeping order."""
    if size < 1:
        raise ValueError(f"Partition size must be positive, got {size}")
    chunk: List[T] = []
    for item in inputs:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


async def execute_large_inputs(
    inputs: Iterable[H],
    fn: Callable[[List[H]], Awaitable[Sequence[R]]],
    size: int = PARTITION_SIZE,
) -> List[R]:
    """Call ``fn`` once per partition of the distinct ``inputs`` and concatenate the results."""
    results: List[R] = []
    for chunk in partition(dict.fromkeys(inputs), size):
        results.extend(await fn(chunk))
    return results


async def execute_large_updates(
    inputs: Iterable[H],
    fn: Callable[[List[H]], Awaitable[int]],
    size: int = PARTITION_SIZE,
) -> int:
    """Like :func:`execute_large_inputs` for statements returning a row count."""
    total = 0
    for chunk in partition(dict.fromkeys(inputs), size):
        total += await fn(chunk)
    return total
