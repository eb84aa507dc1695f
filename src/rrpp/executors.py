"""Pluggable executors for mapping work over the permutation schedule.

The engine splits the schedule into contiguous chunks and hands a
function plus the chunk list to an executor.  Executors only promise
that ``map`` returns results in input order; they know nothing about
statistics.  Workers read the engine's cached projectors and residual
pools and never mutate them, so no locking is needed.

* :class:`SequentialExecutor` — a plain loop in the calling thread.
* :class:`JoblibExecutor` — ``joblib.Parallel``.  Threads are the
  default: the per-chunk work is dominated by BLAS calls that release
  the GIL, so threads overlap without pickling the cached arrays.
  ``prefer="processes"`` selects the loky worker pool instead.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

from joblib import Parallel, delayed

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@runtime_checkable
class Executor(Protocol):
    """Order-preserving ``map`` over independent work items."""

    @property
    def name(self) -> str: ...

    def map(self, fn: Callable[[T], R], items: Sequence[T]) -> list[R]: ...


@dataclass(frozen=True)
class SequentialExecutor:
    """Run every item in the calling thread."""

    @property
    def name(self) -> str:
        return "sequential"

    def map(self, fn: Callable[[T], R], items: Sequence[T]) -> list[R]:
        return [fn(item) for item in items]


@dataclass(frozen=True)
class JoblibExecutor:
    """Run items on a joblib worker pool.

    Attributes:
        n_jobs: Worker count (``-1`` = all cores).
        prefer: ``"threads"`` or ``"processes"``.
    """

    n_jobs: int = -1
    prefer: str = "threads"

    def __post_init__(self) -> None:
        if self.prefer not in ("threads", "processes"):
            msg = f"prefer must be 'threads' or 'processes', got {self.prefer!r}."
            raise ValueError(msg)

    @property
    def name(self) -> str:
        return f"joblib[{self.prefer}, n_jobs={self.n_jobs}]"

    def map(self, fn: Callable[[T], R], items: Sequence[T]) -> list[R]:
        logger.debug("Dispatching %d item(s) to %s.", len(items), self.name)
        # joblib returns results in submission order.
        return list(Parallel(n_jobs=self.n_jobs, prefer=self.prefer)(
            delayed(fn)(item) for item in items
        ))


def resolve_executor(executor: Executor | str | None = None, n_jobs: int = 1) -> Executor:
    """Return an executor from an instance, a name, or an ``n_jobs`` count.

    Args:
        executor: An :class:`Executor`, ``"sequential"``, ``"threads"``,
            ``"processes"``, or ``None``.
        n_jobs: Used when *executor* is ``None`` or a pool name;
            ``n_jobs == 1`` with ``None`` gives the sequential executor.

    Raises:
        ValueError: If *executor* is an unknown name or *n_jobs* is 0.
    """
    if n_jobs == 0:
        raise ValueError("n_jobs must be a non-zero integer.")
    if executor is None:
        return SequentialExecutor() if n_jobs == 1 else JoblibExecutor(n_jobs)
    if isinstance(executor, str):
        key = executor.strip().lower()
        if key == "sequential":
            return SequentialExecutor()
        if key in ("threads", "processes"):
            return JoblibExecutor(n_jobs if n_jobs != 1 else -1, prefer=key)
        msg = (
            f"Unknown executor {executor!r}. Choose 'sequential', 'threads', "
            f"'processes', or pass an object with a map(fn, items) method."
        )
        raise ValueError(msg)
    if not isinstance(executor, Executor):
        raise TypeError("executor must implement map(fn, items) and name.")
    return executor


def chunk_ranges(total: int, chunk_size: int) -> list[range]:
    """Split ``range(total)`` into contiguous ranges of at most *chunk_size*."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive.")
    return [range(s, min(s + chunk_size, total)) for s in range(0, total, chunk_size)]


def run_with_progress(
    executor: Executor,
    fn: Callable[[Any], Any],
    chunks: Iterable[range],
    total: int,
    progress: Callable[[int, int], None] | None = None,
) -> list[Any]:
    """Map *fn* over *chunks*, reporting ``progress(done, total)`` after each.

    Progress is reported from the calling thread as each executor call
    completes; with a pool the whole chunk list is one call, so the
    callback fires once at the end.
    """
    chunks = list(chunks)
    if progress is None or not isinstance(executor, SequentialExecutor):
        results = executor.map(fn, chunks)
        if progress is not None:
            progress(total, total)
        return results

    results = []
    done = 0
    for chunk in chunks:
        results.append(fn(chunk))
        done += len(chunk)
        progress(done, total)
    return results


__all__ = [
    "Executor",
    "SequentialExecutor",
    "JoblibExecutor",
    "resolve_executor",
    "chunk_ranges",
    "run_with_progress",
]
