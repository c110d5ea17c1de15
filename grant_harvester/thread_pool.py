"""Worker pools for source runs and scheduled jobs."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Callable, Dict, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class ThreadPoolManager:
    """Own the shared job pool plus lazily created, fixed-size named pools."""

    def __init__(self, default_workers: int = 8) -> None:
        self.default_workers = default_workers
        self._default_executor = ThreadPoolExecutor(max_workers=default_workers, thread_name_prefix="harvester")
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._lock = Lock()

    def get(self, name: str | None = None, max_workers: int | None = None) -> ThreadPoolExecutor:
        """Return the shared pool, or the pool registered under ``name``.

        A named pool is sized on first use; later ``max_workers`` values are
        ignored.
        """

        if name is None:
            return self._default_executor
        with self._lock:
            executor = self._executors.get(name)
            if executor is None:
                executor = ThreadPoolExecutor(
                    max_workers=max_workers or self.default_workers,
                    thread_name_prefix=f"harvester-{name}",
                )
                self._executors[name] = executor
            return executor

    def submit(self, fn: Callable[..., R], *args: object) -> Future[R]:
        return self._default_executor.submit(fn, *args)

    def run_ordered(
        self,
        fn: Callable[[T], R],
        items: Sequence[T],
        *,
        limit: int | None,
        name: str = "sources",
    ) -> list[R]:
        """Run ``fn`` over ``items`` with at most ``limit`` in flight.

        ``limit=None`` gives every item its own worker. Results come back in
        input order regardless of completion order.
        """

        if not items:
            return []
        if limit is None:
            with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix=f"harvester-{name}") as executor:
                futures = [executor.submit(fn, item) for item in items]
                return [future.result() for future in futures]
        executor = self.get(f"{name}-{limit}", max_workers=limit)
        futures = [executor.submit(fn, item) for item in items]
        return [future.result() for future in futures]

    def shutdown(self, wait: bool = False) -> None:
        self._default_executor.shutdown(wait=wait)
        with self._lock:
            for executor in self._executors.values():
                executor.shutdown(wait=wait)
            self._executors.clear()


__all__ = ["ThreadPoolManager"]
