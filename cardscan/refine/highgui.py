# cardscan/refine/highgui.py
"""
OpenCV window presenter for a RefinementSession.

Drag a corner with the left mouse button, Enter/Space to apply, Esc or "o"
to keep the original photo. Closing the window counts as keeping the original.
Must run on the thread that owns the GUI (the main thread on most platforms).
"""

from __future__ import annotations
from typing import Optional
import logging
import cv2

from cardscan.refine.session import RefinementSession

log = logging.getLogger(__name__)

KEYS_APPLY = (13, 10, 32)        # Enter, Return, Space
KEYS_DISCARD = (27, ord("o"))    # Esc, o


class HighGuiPresenter:
    def __init__(self, window: str = "cardscan", poll_ms: int = 20, timeout_s: Optional[float] = None):
        self.window = window
        self.poll_ms = int(poll_ms)
        self.timeout_s = timeout_s

    def _on_mouse(self, event, x, y, _flags, session: RefinementSession) -> None:
        if event == cv2.EVENT_LBUTTONDOWN:
            session.press(x, y)
        elif event == cv2.EVENT_MOUSEMOVE:
            session.move(x, y)
        elif event == cv2.EVENT_LBUTTONUP:
            session.release()

    def __call__(self, session: RefinementSession) -> None:
        if session.frame is None:
            session.open()
        cv2.namedWindow(self.window, cv2.WINDOW_AUTOSIZE)
        cv2.setMouseCallback(self.window, self._on_mouse, session)
        waited_ms = 0
        try:
            while not session.done:
                cv2.imshow(self.window, session.frame)
                key = cv2.waitKey(self.poll_ms) & 0xFF
                waited_ms += self.poll_ms
                if key in KEYS_APPLY:
                    session.apply()
                elif key in KEYS_DISCARD:
                    session.discard()
                elif cv2.getWindowProperty(self.window, cv2.WND_PROP_VISIBLE) < 1:
                    log.info("[highgui] window closed; keeping original")
                    session.discard()
                elif self.timeout_s is not None and waited_ms >= self.timeout_s * 1000:
                    log.info("[highgui] no answer after %.0fs; keeping original", self.timeout_s)
                    session.discard()
        finally:
            if cv2.getWindowProperty(self.window, cv2.WND_PROP_VISIBLE) >= 1:
                cv2.destroyWindow(self.window)
