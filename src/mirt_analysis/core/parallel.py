"""
Parallel execution collaborators.

Estimators never spawn threads themselves. They hand independent,
side-effect-free tasks to a ParallelExecutor and merge the results on the
calling thread, so the serial and threaded executors produce identical
estimates for identical inputs.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from types import TracebackType
from typing import Any, Self, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class ParallelExecutor(ABC):
    """Runs independent tasks and returns their results in task order."""

    @property
    @abstractmethod
    def n_workers(self) -> int: ...

    @abstractmethod
    def run(self, tasks: Sequence[Callable[[], T]]) -> list[T]: ...

    def map(self, func: Callable[[Any], T], items: Iterable[Any]) -> list[T]:
        return self.run([partial(func, item) for item in items])

    def run_and_merge(
        self,
        tasks: Sequence[Callable[[], T]],
        merge: Callable[[list[T]], R],
    ) -> R:
        """Run tasks, then merge their ordered results on this thread."""
        return merge(self.run(tasks))


class SerialExecutor(ParallelExecutor):
    @property
    def n_workers(self) -> int:
        return 1

    def run(self, tasks: Sequence[Callable[[], T]]) -> list[T]:
        return [task() for task in tasks]


class ThreadPoolParallelExecutor(ParallelExecutor):
    """
    Executor backed by a thread pool.

    Use as a context manager; the pool is shut down on exit. NumPy and the
    numba kernels release the GIL for the heavy array work.
    """

    def __init__(self, max_workers: int = 4) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None

    @property
    def n_workers(self) -> int:
        return self._max_workers

    def __enter__(self) -> Self:
        self._pool = ThreadPoolExecutor(max_workers=self._max_workers)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def run(self, tasks: Sequence[Callable[[], T]]) -> list[T]:
        if self._pool is None:
            raise RuntimeError(
                "ThreadPoolParallelExecutor must be used as a context manager"
            )
        futures = [self._pool.submit(task) for task in tasks]
        return [future.result() for future in futures]


class CancellationToken:
    """Cooperative cancellation flag checked by estimators between cycles."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
