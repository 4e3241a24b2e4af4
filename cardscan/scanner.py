# cardscan/scanner.py
"""
Public entry points: interactive and automatic card enhancement.

Enhancement is always optional. Every failure path (no card, user cancel,
runtime not available, degenerate geometry) hands back
ScanResult(enhanced=False) and the caller keeps the original photo.

The OpenCV-backed modules are imported only after the runtime has been
acquired, so importing this module stays cheap.
"""

from __future__ import annotations
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple
import logging
import threading
import numpy as np

from cardscan.core.config import merge_cfg
from cardscan.core.contracts import CardQuad, RectificationRequest, ScanResult
from cardscan.core.errors import DegenerateGeometryError, RuntimeUnavailableError, UserCancelledError
from cardscan.core.runtime import acquire_runtime

log = logging.getLogger(__name__)

NOT_FOUND = "not_found"
CANCELLED = "cancelled"
RUNTIME_UNAVAILABLE = "runtime_unavailable"
DEGENERATE = "degenerate_geometry"
FAILED = "failed"

# Drives a RefinementSession (pointer events, drawing) until it is applied or discarded
Presenter = Callable[..., None]

# one refinement session at a time, process-wide
_session_lock = threading.Lock()


def _engine(cfg: Dict):
    acquire_runtime(timeout=float(cfg["runtime"]["timeout_s"]))
    from cardscan.geometry import detect, rectify
    return detect, rectify


def _rectified(photo: np.ndarray, corners: CardQuad, strategy: Optional[str], cfg: Dict) -> ScanResult:
    _, rectify = _engine(cfg)
    out = rectify.rectify(RectificationRequest(image=photo, corners=corners), cfg)
    return ScanResult(enhanced=True, image=out.image, corners=corners, strategy=strategy)


def _unenhanced(reason: str, cfg: Dict, exc: Optional[BaseException] = None) -> ScanResult:
    if exc is None:
        log.info("[scanner] %s; using original", reason)
    else:
        log.warning("[scanner] %s (%s); using original", reason, exc, exc_info=bool(cfg.get("debug")))
    return ScanResult(enhanced=False, reason=reason)


def auto_rectify(photo: np.ndarray, cfg: Optional[Dict] = None) -> ScanResult:
    """Detect and rectify without asking anyone (batch uploads)."""
    cfg = merge_cfg(cfg)
    try:
        detect, _ = _engine(cfg)
        outcome = detect.detect(photo, cfg)
        if not outcome.found:
            return _unenhanced(NOT_FOUND, cfg)
        return _rectified(photo, outcome.corners, outcome.strategy, cfg)
    except RuntimeUnavailableError as exc:
        return _unenhanced(RUNTIME_UNAVAILABLE, cfg, exc)
    except DegenerateGeometryError as exc:
        return _unenhanced(DEGENERATE, cfg, exc)
    except Exception as exc:  # enhancement never breaks the capture flow
        return _unenhanced(FAILED, cfg, exc)


def detect_and_rectify(photo: np.ndarray, presenter: Presenter, cfg: Optional[Dict] = None,
                       surface: Optional[Tuple[int, int]] = None,
                       timeout: Optional[float] = None) -> ScanResult:
    """
    Detect, let the user confirm/adjust the corners, then rectify.

    `presenter(session)` shows the RefinementSession and forwards input to
    it; it may return before the user answers (e.g. when it hands the
    session to a UI thread). We then wait up to `timeout` seconds for
    apply/discard; no answer counts as a cancel.
    """
    cfg = merge_cfg(cfg)
    try:
        detect, _ = _engine(cfg)
        outcome = detect.detect(photo, cfg)
        if not outcome.found:
            return _unenhanced(NOT_FOUND, cfg)

        from cardscan.refine.session import RefinementSession
        with _session_lock:
            session = RefinementSession(photo, outcome.corners, surface=surface, cfg=cfg)
            session.open()
            try:
                presenter(session)
                answer = session.wait(timeout)
            finally:
                session.discard()  # no-op once answered
        corners = answer.require_corners()
        return _rectified(photo, corners, outcome.strategy, cfg)
    except (UserCancelledError, FutureTimeout):
        return _unenhanced(CANCELLED, cfg)
    except RuntimeUnavailableError as exc:
        return _unenhanced(RUNTIME_UNAVAILABLE, cfg, exc)
    except DegenerateGeometryError as exc:
        return _unenhanced(DEGENERATE, cfg, exc)
    except Exception as exc:  # enhancement never breaks the capture flow
        return _unenhanced(FAILED, cfg, exc)


def auto_rectify_batch(photos: Iterable[np.ndarray], cfg: Optional[Dict] = None) -> Iterator[ScanResult]:
    """One photo at a time; full-resolution working copies never overlap."""
    cfg = merge_cfg(cfg)
    for i, photo in enumerate(photos):
        log.debug("[scanner] batch item %d", i)
        yield auto_rectify(photo, cfg)


def detect_and_rectify_batch(photos: Iterable[np.ndarray], presenter: Presenter,
                             cfg: Optional[Dict] = None,
                             surface: Optional[Tuple[int, int]] = None,
                             timeout: Optional[float] = None) -> Iterator[ScanResult]:
    """`timeout` applies to each photo's session separately."""
    cfg = merge_cfg(cfg)
    for photo in photos:
        yield detect_and_rectify(photo, presenter, cfg, surface, timeout)


def encode_result(result: ScanResult, ext: Optional[str] = None, quality: Optional[int] = None,
                  cfg: Optional[Dict] = None) -> Optional[bytes]:
    """
    Encoded bytes of an enhanced result, or None when the original should be kept.
    Raises ValueError for a format OpenCV cannot write.
    """
    if not result.enhanced or result.image is None:
        return None
    cfg = merge_cfg(cfg)
    acquire_runtime(timeout=float(cfg["runtime"]["timeout_s"]))
    from cardscan.io.ingest import encode_image
    rcfg = cfg["rectify"]
    return encode_image(result.image, ext or rcfg["ext"],
                        int(quality if quality is not None else rcfg["quality"]))
