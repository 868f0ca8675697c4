"""
Fork-join execution over a fixed multiprocessing pool.

Every parallel phase is expressed as partition -> pure per-shard function ->
associative combine. A failing shard aborts the whole phase.
"""
from __future__ import annotations

import multiprocessing
from functools import reduce
from typing import Any, Callable, List, Sequence, TypeVar

from tqdm import tqdm

from trace_errors import PreconditionError, WorkerFailure

T = TypeVar("T")
R = TypeVar("R")


def partition(items: Sequence[T], num_shards: int) -> List[List[T]]:
    """연속 구간으로 나눕니다. 빈 샤드는 만들지 않습니다."""
    if num_shards < 1:
        raise PreconditionError(f"num_shards must be >= 1, got {num_shards}")
    items = list(items)
    if not items:
        return []
    num_shards = min(num_shards, len(items))
    base, extra = divmod(len(items), num_shards)
    shards, start = [], 0
    for i in range(num_shards):
        size = base + (1 if i < extra else 0)
        shards.append(items[start:start + size])
        start += size
    return shards


def concat(left: List[Any], right: List[Any]) -> List[Any]:
    return left + right


def run_fork_join(
    shard_fn: Callable[[Sequence[T]], R],
    shards: Sequence[Sequence[T]],
    combine: Callable[[R, R], R],
    initial: R,
    workers: int = 1,
    phase: str = "fork-join",
    show_progress: bool = False,
) -> R:
    """
    Runs `shard_fn` on every shard and folds the partial results with
    `combine` in shard order. `shard_fn` must be picklable (a module-level
    function or a functools.partial of one) when workers > 1.
    """
    if workers < 1:
        raise PreconditionError(f"workers must be >= 1, got {workers}")

    partials: List[R] = []
    if workers == 1 or len(shards) <= 1:
        iterable = tqdm(enumerate(shards), total=len(shards), desc=phase) if show_progress else enumerate(shards)
        for i, shard in iterable:
            try:
                partials.append(shard_fn(shard))
            except Exception as e:
                raise WorkerFailure(phase, i, e) from e
    else:
        with multiprocessing.Pool(processes=min(workers, len(shards))) as pool:
            pending = [pool.apply_async(shard_fn, (shard,)) for shard in shards]
            iterable = tqdm(enumerate(pending), total=len(pending), desc=phase) if show_progress else enumerate(pending)
            for i, result in iterable:
                try:
                    partials.append(result.get())
                except Exception as e:
                    pool.terminate()
                    raise WorkerFailure(phase, i, e) from e

    return reduce(combine, partials, initial)
