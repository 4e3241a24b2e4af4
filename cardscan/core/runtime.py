# cardscan/core/runtime.py
"""
Lazy, process-wide loading of the OpenCV runtime.

The first caller starts the import on a background thread; everyone who
arrives before it finishes waits on the same future. A load that fails or
does not finish within the timeout is forgotten so the next call retries.
"""

from __future__ import annotations
from concurrent.futures import Future, TimeoutError as FutureTimeout
from types import ModuleType
from typing import Callable, Optional
import importlib
import logging
import threading

from cardscan.core.errors import RuntimeUnavailableError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0

_lock = threading.Lock()
_pending: Optional[Future] = None
_runtime: Optional[ModuleType] = None


def _import_opencv() -> ModuleType:
    cv2 = importlib.import_module("cv2")
    # a broken wheel can import but miss the functions we rely on
    for name in ("findContours", "getPerspectiveTransform", "warpPerspective"):
        if not hasattr(cv2, name):
            raise ImportError(f"cv2 is missing {name}")
    return cv2


def _load(fut: Future, loader: Callable[[], ModuleType]) -> None:
    global _runtime, _pending
    try:
        module = loader()
    except BaseException as exc:  # reported to every waiter through the future
        log.warning("[runtime] load failed: %s", exc)
        with _lock:
            if _pending is fut:
                _pending = None
        fut.set_exception(exc)
        return
    with _lock:
        _runtime = module
        if _pending is fut:
            _pending = None
    log.debug("[runtime] ready: %s", getattr(module, "__version__", module.__name__))
    fut.set_result(module)


def acquire_runtime(timeout: float = DEFAULT_TIMEOUT_S,
                    loader: Optional[Callable[[], ModuleType]] = None) -> ModuleType:
    """
    Return the cached runtime module, loading it on first use.

    Raises RuntimeUnavailableError if the load fails or is still running
    after `timeout` seconds.
    """
    global _pending
    if _runtime is not None:
        return _runtime
    with _lock:
        if _runtime is not None:
            return _runtime
        fut = _pending
        if fut is None:
            fut = Future()
            _pending = fut
            t = threading.Thread(target=_load, args=(fut, loader or _import_opencv),
                                 name="cardscan-runtime", daemon=True)
            t.start()
            log.debug("[runtime] loading started")
    try:
        return fut.result(timeout=timeout)
    except FutureTimeout:
        with _lock:
            if _pending is fut:
                _pending = None
        raise RuntimeUnavailableError(f"vision runtime not ready after {timeout:.1f}s")
    except Exception as exc:
        raise RuntimeUnavailableError(f"vision runtime failed to load: {exc}") from exc


def runtime_ready() -> bool:
    return _runtime is not None


def reset_runtime() -> None:
    """Drop the cached handle (tests only; the runtime normally lives for the process)."""
    global _runtime, _pending
    with _lock:
        _runtime = None
        _pending = None
