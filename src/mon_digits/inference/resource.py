from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Generic, TypeVar

T = TypeVar("T")


class OnceResource(Generic[T]):
    """Lazily build a value exactly once and share the outcome.

    The first ``get`` runs the factory on the calling thread. Concurrent
    callers block on the same future and receive the same value or the same
    exception. A failure is cached: later calls re-raise it instead of trying
    again.
    """

    def __init__(self, factory: Callable[[], T]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._future: Future[T] | None = None

    @property
    def started(self) -> bool:
        return self._future is not None

    @property
    def ready(self) -> bool:
        fut = self._future
        return fut is not None and fut.done() and fut.exception() is None

    def failure(self) -> BaseException | None:
        fut = self._future
        if fut is None or not fut.done():
            return None
        return fut.exception()

    def peek(self) -> T | None:
        """Return the value if it was built successfully, without triggering a build."""
        return self._future.result() if self.ready and self._future is not None else None

    def get(self, timeout: float | None = None) -> T:
        with self._lock:
            fut = self._future
            owner = fut is None
            if fut is None:
                fut = Future()
                self._future = fut
        if not owner:
            return fut.result(timeout=timeout)
        try:
            value = self._factory()
        except BaseException as exc:
            fut.set_exception(exc)
            raise
        fut.set_result(value)
        return value
