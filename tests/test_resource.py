from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from mon_digits.inference.resource import OnceResource


def test_get_builds_once_under_contention() -> None:
    calls: list[int] = []
    gate = threading.Event()

    def _factory() -> object:
        calls.append(1)
        gate.wait(timeout=2.0)
        return object()

    res: OnceResource[object] = OnceResource(_factory)
    with ThreadPoolExecutor(max_workers=8) as pool:
        futs = [pool.submit(res.get, 5.0) for _ in range(8)]
        time.sleep(0.05)
        gate.set()
        values = [f.result(timeout=5.0) for f in futs]
    assert len(calls) == 1
    assert all(v is values[0] for v in values)
    assert res.ready is True
    assert res.peek() is values[0]
    assert res.failure() is None


def test_failure_is_cached_and_shared() -> None:
    calls: list[int] = []

    def _factory() -> int:
        calls.append(1)
        raise RuntimeError("artifact missing")

    res: OnceResource[int] = OnceResource(_factory)
    with pytest.raises(RuntimeError) as first:
        res.get()
    with pytest.raises(RuntimeError) as second:
        res.get()
    assert first.value is second.value
    assert res.failure() is first.value
    assert len(calls) == 1
    assert res.ready is False
    assert res.peek() is None


def test_waiters_see_owner_failure() -> None:
    gate = threading.Event()

    def _factory() -> int:
        gate.wait(timeout=2.0)
        raise ValueError("bad manifest")

    res: OnceResource[int] = OnceResource(_factory)
    owner = threading.Thread(target=lambda: pytest.raises(ValueError, res.get))
    owner.start()
    while not res.started:
        time.sleep(0.001)
    waiter_errors: list[BaseException] = []

    def _wait() -> None:
        try:
            res.get(timeout=5.0)
        except ValueError as exc:
            waiter_errors.append(exc)

    w = threading.Thread(target=_wait)
    w.start()
    gate.set()
    owner.join(timeout=5.0)
    w.join(timeout=5.0)
    assert len(waiter_errors) == 1
    assert waiter_errors[0] is res.failure()


def test_peek_does_not_trigger_build() -> None:
    calls: list[int] = []

    def _factory() -> int:
        calls.append(1)
        return 7

    res: OnceResource[int] = OnceResource(_factory)
    assert res.peek() is None
    assert res.started is False
    assert calls == []
    assert res.get() == 7
    assert res.peek() == 7


class _Abort(BaseException):
    pass


def test_base_exception_still_resolves_the_build() -> None:
    calls: list[int] = []

    def _factory() -> int:
        calls.append(1)
        raise _Abort()

    res: OnceResource[int] = OnceResource(_factory)
    with pytest.raises(_Abort) as first:
        res.get()
    # later callers see the stored failure instead of waiting on a pending future
    with pytest.raises(_Abort) as second:
        res.get(timeout=1.0)
    assert second.value is first.value
    assert res.failure() is first.value
    assert len(calls) == 1
