"""
Pytest for lazy runtime loading: one load shared by concurrent callers,
timeouts, and retry after a failed load.
"""
from __future__ import annotations

import threading
import time
import types

import pytest

from cardscan.core import runtime
from cardscan.core.errors import RuntimeUnavailableError


@pytest.fixture(autouse=True)
def fresh_runtime():
    runtime.reset_runtime()
    yield
    runtime.reset_runtime()


def test_concurrent_callers_share_one_load():
    calls = []
    gate = threading.Event()
    fake = types.ModuleType("fake_cv")

    def loader():
        calls.append(1)
        gate.wait(5)
        return fake

    results = []
    threads = [threading.Thread(target=lambda: results.append(runtime.acquire_runtime(5, loader)))
               for _ in range(5)]
    for t in threads:
        t.start()
    time.sleep(0.05)
    gate.set()
    for t in threads:
        t.join()

    assert len(calls) == 1
    assert len(results) == 5 and all(r is fake for r in results)
    assert runtime.runtime_ready()
    # cached: loader not consulted again
    assert runtime.acquire_runtime(5, lambda: pytest.fail("reloaded")) is fake


def test_timeout_raises_and_next_call_starts_over():
    gate = threading.Event()
    calls = []

    def slow():
        calls.append(1)
        gate.wait(5)
        return types.ModuleType("slow_cv")

    try:
        with pytest.raises(RuntimeUnavailableError):
            runtime.acquire_runtime(0.05, slow)
        assert not runtime.runtime_ready()
        with pytest.raises(RuntimeUnavailableError):
            runtime.acquire_runtime(0.05, slow)
        assert len(calls) == 2
    finally:
        gate.set()
        for t in threading.enumerate():
            if t.name == "cardscan-runtime":
                t.join(5)


def test_failed_load_is_retried():
    attempts = []
    fake = types.ModuleType("fake_cv")

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise ImportError("libGL.so.1: cannot open shared object file")
        return fake

    with pytest.raises(RuntimeUnavailableError) as err:
        runtime.acquire_runtime(5, flaky)
    assert "libGL" in str(err.value)
    assert runtime.acquire_runtime(5, flaky) is fake
    assert len(attempts) == 2


def test_default_loader_imports_opencv():
    cv = runtime.acquire_runtime()
    assert hasattr(cv, "getPerspectiveTransform")
    assert runtime.runtime_ready()
