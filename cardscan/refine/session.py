# cardscan/refine/session.py
"""
Human-in-the-loop corner refinement.

A RefinementSession holds the state of one correction pass over one photo:
the scaled preview, four draggable corner handles and the overlay that shows
what will be cropped. It knows nothing about windows or events; a presenter
(see cardscan.refine.highgui) feeds it pointer positions and shows
`session.frame`. The caller blocks on `wait()` until the presenter applies or
discards.

States: IDLE → PRESENTING ⇄ DRAGGING → APPLIED | DISCARDED
"""

from __future__ import annotations
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple
import logging
import threading
import cv2
import numpy as np

from cardscan.core.config import diag_level, merge_cfg
from cardscan.core.contracts import CardQuad, DetectionOutcome
from cardscan.core.errors import UserCancelledError
from cardscan.geometry.detect import order_corners

log = logging.getLogger(__name__)

_CORNER_LABELS = ("TL", "TR", "BR", "BL")


class SessionState(Enum):
    IDLE = "idle"
    PRESENTING = "presenting"
    DRAGGING = "dragging"
    APPLIED = "applied"
    DISCARDED = "discarded"


@dataclass
class SessionOutcome:
    applied: bool
    corners: Optional[CardQuad] = None  # source-image coordinates

    def require_corners(self) -> CardQuad:
        if not self.applied or self.corners is None:
            raise UserCancelledError("Refinement discarded by user.")
        return self.corners


# ----------------------------------------------------------------------------- #
# Drawing helpers                                                               #
# ----------------------------------------------------------------------------- #

def _as_bgr(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
    return img.copy()


def draw_quad(img, quad, color, thickness=2):
    q = np.round(np.asarray(quad, np.float32)).astype(np.int32).reshape(4, 2)
    cv2.polylines(img, [q], True, color, thickness, lineType=cv2.LINE_AA)


def draw_dashed_quad(img: np.ndarray, quad: np.ndarray, color, thickness: int = 2,
                     dash: Sequence[int] = (8, 4)) -> None:
    on, off = float(dash[0]), float(dash[1])
    q = np.asarray(quad, np.float32).reshape(4, 2)
    for i in range(4):
        p0, p1 = q[i], q[(i + 1) % 4]
        length = float(np.linalg.norm(p1 - p0))
        if length < 1e-6:
            continue
        step = (p1 - p0) / length
        t = 0.0
        while t < length:
            a = p0 + step * t
            b = p0 + step * min(t + on, length)
            cv2.line(img, tuple(int(round(v)) for v in a), tuple(int(round(v)) for v in b),
                     color, thickness, lineType=cv2.LINE_AA)
            t += on + off


def dim_outside(img: np.ndarray, quad: np.ndarray, alpha: float = 0.4) -> np.ndarray:
    """Darken everything outside the quad by `alpha` (0 = untouched, 1 = black)."""
    mask = np.zeros(img.shape[:2], np.uint8)
    cv2.fillPoly(mask, [np.round(np.asarray(quad, np.float32)).astype(np.int32).reshape(-1, 1, 2)], 255)
    dimmed = (img.astype(np.float32) * (1.0 - float(alpha))).astype(img.dtype)
    inside = mask > 0
    if img.ndim == 3:
        inside = inside[:, :, None]
    return np.where(inside, img, dimmed)


def draw_detection(frame: np.ndarray, outcome: DetectionOutcome) -> np.ndarray:
    """Visualization of a detection result for debugging and the CLI."""
    vis = _as_bgr(frame)
    if outcome.found:
        draw_quad(vis, outcome.corners.pts, (0, 255, 0), 3)
        for i, (x, y) in enumerate(outcome.corners.pts):
            cv2.circle(vis, (int(round(x)), int(round(y))), 6, (0, 0, 255), -1, lineType=cv2.LINE_AA)
            cv2.putText(vis, _CORNER_LABELS[i], (int(x) + 8, int(y) - 8),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 255), 2, cv2.LINE_AA)
        cv2.putText(vis, outcome.strategy or "", (20, 40),
                    cv2.FONT_HERSHEY_SIMPLEX, 1.0, (0, 255, 0), 2, cv2.LINE_AA)
    else:
        cv2.putText(vis, "NO DETECTION", (20, 40),
                    cv2.FONT_HERSHEY_SIMPLEX, 1.0, (0, 0, 255), 2, cv2.LINE_AA)
    return vis


# ----------------------------------------------------------------------------- #
# Session                                                                       #
# ----------------------------------------------------------------------------- #

class RefinementSession:
    """
    Lets a user confirm or adjust a detected quad on a scaled preview.

    Args:
        image: source photo (never modified).
        corners: detected quad in source coordinates.
        surface: (width, height) of the viewing surface; defaults to cfg.
        cfg: engine config (the "session" section is used).
    """

    def __init__(self, image: np.ndarray, corners: CardQuad,
                 surface: Optional[Tuple[int, int]] = None, cfg: Optional[Dict] = None):
        self.cfg = merge_cfg(cfg)
        scfg = self.cfg["session"]
        self.image = image
        self.source_corners = corners
        self.surface = tuple(int(v) for v in (surface or scfg["surface"]))
        self.handle_radius = float(scfg["handle_radius"])

        self.state = SessionState.IDLE
        self.scale = 1.0
        self.display: Optional[np.ndarray] = None
        self.corners: Optional[np.ndarray] = None  # display coordinates
        self.active: Optional[int] = None
        self.frame: Optional[np.ndarray] = None

        self._grab = np.zeros(2, np.float32)
        self._lock = threading.RLock()
        self._future: Future = Future()

    # -- lifecycle ------------------------------------------------------------

    @property
    def display_size(self) -> Tuple[int, int]:
        if self.display is None:
            return 0, 0
        return int(self.display.shape[1]), int(self.display.shape[0])

    @property
    def done(self) -> bool:
        return self._future.done()

    def open(self) -> np.ndarray:
        """Scale the photo to the surface, place the handles and draw the first frame."""
        with self._lock:
            if self.state is not SessionState.IDLE:
                raise RuntimeError(f"session already {self.state.value}")
            H, W = self.image.shape[:2]
            sw, sh = self.surface
            self.scale = min(sw / float(W), sh / float(H), 1.0)
            dw, dh = max(1, int(round(W * self.scale))), max(1, int(round(H * self.scale)))
            if self.scale < 1.0:
                self.display = cv2.resize(_as_bgr(self.image), (dw, dh), interpolation=cv2.INTER_AREA)
            else:
                self.display = _as_bgr(self.image)
            self.corners = self._clamp(self.source_corners.pts * self.scale)
            self.state = SessionState.PRESENTING
            log.log(diag_level(self.cfg), "[session] open: display %dx%d scale=%.3f", dw, dh, self.scale)
            return self.render()

    def apply(self) -> CardQuad:
        """
        Commit the current handles; returns the quad in source coordinates.

        Raises RuntimeError if the session was not opened or already finished
        (e.g. discarded from another thread).
        """
        with self._lock:
            self._require_open()
            H, W = self.image.shape[:2]
            pts = self.corners / self.scale
            pts[:, 0] = np.clip(pts[:, 0], 0, W - 1)
            pts[:, 1] = np.clip(pts[:, 1], 0, H - 1)
            quad = CardQuad(pts=order_corners(pts))
            self.state = SessionState.APPLIED
            self.active = None
            self._future.set_result(SessionOutcome(applied=True, corners=quad))
        log.log(diag_level(self.cfg), "[session] applied %s", quad.pts.round(1).tolist())
        return quad

    def discard(self) -> None:
        """Use the original photo instead. Safe to call on a finished session."""
        with self._lock:
            if self.done:
                return
            self.state = SessionState.DISCARDED
            self.active = None
            self._future.set_result(SessionOutcome(applied=False))
        log.log(diag_level(self.cfg), "[session] discarded")

    def wait(self, timeout: Optional[float] = None) -> SessionOutcome:
        """Block until apply()/discard(); raises TimeoutError after `timeout` seconds."""
        return self._future.result(timeout=timeout)

    # -- pointer --------------------------------------------------------------

    def handle_at(self, x: float, y: float) -> Optional[int]:
        """Index of the nearest handle within the grab radius, if any."""
        if self.corners is None:
            return None
        d = np.linalg.norm(self.corners - np.array([x, y], np.float32), axis=1)
        i = int(np.argmin(d))
        return i if d[i] <= self.handle_radius else None

    def press(self, x: float, y: float) -> Optional[int]:
        with self._lock:
            if self.state is not SessionState.PRESENTING:
                return None
            i = self.handle_at(x, y)
            if i is None:
                return None
            self.active = i
            self._grab = self.corners[i] - np.array([x, y], np.float32)
            self.state = SessionState.DRAGGING
            self.render()
            return i

    def move(self, x: float, y: float) -> bool:
        with self._lock:
            if self.state is not SessionState.DRAGGING:
                return False
            pos = np.array([x, y], np.float32) + self._grab
            self.corners[self.active] = self._clamp(pos.reshape(1, 2))[0]
            self.render()
            return True

    def release(self) -> None:
        with self._lock:
            if self.state is SessionState.DRAGGING:
                self.state = SessionState.PRESENTING
                self.active = None
                self.render()

    def set_corner(self, index: int, x: float, y: float) -> None:
        """Place one handle directly (display coordinates), e.g. from a keyboard nudge."""
        with self._lock:
            self._require_open()
            self.corners[int(index)] = self._clamp(np.array([[x, y]], np.float32))[0]
            self.render()

    # -- drawing --------------------------------------------------------------

    def render(self) -> np.ndarray:
        """Preview with the exterior dimmed, a dashed outline and the handles."""
        scfg = self.cfg["session"]
        color = tuple(int(v) for v in scfg["line_color"])
        width = int(scfg["line_width"])
        frame = dim_outside(self.display, self.corners, float(scfg["dim_alpha"]))
        draw_dashed_quad(frame, self.corners, color, width, scfg["dash"])
        r = int(round(self.handle_radius))
        for i, (x, y) in enumerate(self.corners):
            center = (int(round(x)), int(round(y)))
            cv2.circle(frame, center, r, (255, 255, 255), -1 if i == self.active else 2, cv2.LINE_AA)
            cv2.circle(frame, center, r, color, 2, cv2.LINE_AA)
        self.frame = frame
        return frame

    # -- internals ------------------------------------------------------------

    def _clamp(self, pts: np.ndarray) -> np.ndarray:
        dw, dh = self.display_size
        q = np.asarray(pts, np.float32).reshape(-1, 2).copy()
        q[:, 0] = np.clip(q[:, 0], 0, dw - 1)
        q[:, 1] = np.clip(q[:, 1], 0, dh - 1)
        return q

    def _require_open(self) -> None:
        if self.state not in (SessionState.PRESENTING, SessionState.DRAGGING):
            raise RuntimeError(f"session is {self.state.value}")
