"""
Pytest for the corner refinement session (no window needed: pointer events
are fed directly, the way a presenter would).
"""
from __future__ import annotations

import threading
from concurrent.futures import TimeoutError as FutureTimeout

import numpy as np
import pytest

from cardscan.core.contracts import CardQuad, DetectionOutcome
from cardscan.core.errors import UserCancelledError
from cardscan.refine.session import (
    RefinementSession,
    SessionState,
    dim_outside,
    draw_detection,
)

SRC_CORNERS = np.array([[400, 200], [1600, 200], [1600, 800], [400, 800]], np.float32)


def _session(surface=(1000, 800), value=200):
    img = np.full((1000, 2000, 3), value, np.uint8)
    return RefinementSession(img, CardQuad(pts=SRC_CORNERS), surface=surface)


def test_open_scales_to_surface():
    s = _session()
    assert s.state is SessionState.IDLE
    frame = s.open()
    assert s.state is SessionState.PRESENTING
    assert s.scale == pytest.approx(0.5)
    assert s.display_size == (1000, 500)
    assert frame.shape == (500, 1000, 3)
    np.testing.assert_allclose(s.corners, SRC_CORNERS * 0.5)


def test_open_never_upscales():
    s = _session(surface=(4000, 4000))
    s.open()
    assert s.scale == 1.0
    assert s.display_size == (2000, 1000)


def test_open_twice_is_an_error():
    s = _session()
    s.open()
    with pytest.raises(RuntimeError):
        s.open()


def test_drag_moves_one_corner():
    s = _session()
    s.open()
    assert s.press(200, 100) == 0
    assert s.state is SessionState.DRAGGING and s.active == 0
    assert s.move(250, 150)
    s.release()
    assert s.state is SessionState.PRESENTING and s.active is None
    np.testing.assert_allclose(s.corners[0], [250, 150])
    np.testing.assert_allclose(s.corners[1:], SRC_CORNERS[1:] * 0.5)


def test_drag_keeps_grab_offset():
    s = _session()
    s.open()
    assert s.press(205, 103) == 0
    s.move(305, 203)
    np.testing.assert_allclose(s.corners[0], [300, 200])


def test_drag_is_clamped_to_display():
    s = _session()
    s.open()
    s.press(800, 400)
    s.move(5000, -300)
    s.release()
    np.testing.assert_allclose(s.corners[2], [999, 0])


def test_press_away_from_handles_does_nothing():
    s = _session()
    s.open()
    assert s.press(500, 250) is None
    assert s.state is SessionState.PRESENTING
    assert not s.move(600, 300)
    np.testing.assert_allclose(s.corners, SRC_CORNERS * 0.5)


def test_apply_returns_source_coordinates():
    s = _session()
    s.open()
    s.press(200, 100)
    s.move(250, 150)
    s.release()
    quad = s.apply()
    assert s.state is SessionState.APPLIED
    np.testing.assert_allclose(quad.pts[0], [500, 300])
    np.testing.assert_allclose(quad.pts[1:], SRC_CORNERS[1:])
    outcome = s.wait(0)
    assert outcome.applied
    assert outcome.require_corners() is quad


def test_apply_reorders_crossed_handles():
    s = _session()
    s.open()
    # swap TL and TR positions
    s.set_corner(0, 800, 100)
    s.set_corner(1, 200, 100)
    quad = s.apply()
    np.testing.assert_allclose(quad.pts, SRC_CORNERS)


def test_discard_keeps_original():
    s = _session()
    s.open()
    s.discard()
    assert s.state is SessionState.DISCARDED and s.done
    outcome = s.wait(0)
    assert not outcome.applied
    with pytest.raises(UserCancelledError):
        outcome.require_corners()
    s.discard()  # idempotent
    with pytest.raises(RuntimeError):
        s.apply()


def test_pointer_ignored_after_finish():
    s = _session()
    s.open()
    s.apply()
    assert s.press(200, 100) is None
    assert s.state is SessionState.APPLIED


def test_wait_times_out_without_answer():
    s = _session()
    s.open()
    with pytest.raises(FutureTimeout):
        s.wait(0.05)


def test_wait_for_answer_from_other_thread():
    s = _session()
    s.open()
    t = threading.Timer(0.05, s.apply)
    t.start()
    try:
        outcome = s.wait(5)
    finally:
        t.join()
    assert outcome.applied


def test_render_dims_outside_only():
    s = _session(value=200)
    frame = s.open()
    assert frame[20, 20].tolist() == [120, 120, 120]
    assert frame[250, 500].tolist() == [200, 200, 200]
    assert s.image.min() == 200  # source untouched


def test_dim_outside_grayscale():
    img = np.full((100, 100), 100, np.uint8)
    quad = np.array([[20, 20], [80, 20], [80, 80], [20, 80]], np.float32)
    out = dim_outside(img, quad, 0.5)
    assert out[5, 5] == 50 and out[50, 50] == 100


def test_draw_detection_marks_frame():
    img = np.zeros((300, 300, 3), np.uint8)
    vis = draw_detection(img, DetectionOutcome(corners=CardQuad(pts=SRC_CORNERS / 8), strategy="otsu"))
    assert vis.shape == img.shape and vis.any()
    assert not img.any()
    vis_none = draw_detection(img, DetectionOutcome.not_found())
    assert vis_none.any()


def test_discard_from_other_thread_waits_for_apply():
    s = _session()
    s.open()
    resolve = s._future.set_result
    racers = []

    def _resolve_with_discard_racing(outcome):
        t = threading.Thread(target=s.discard)
        racers.append(t)
        t.start()
        t.join(0.1)  # blocked on the session lock until apply() finishes
        resolve(outcome)

    s._future.set_result = _resolve_with_discard_racing
    quad = s.apply()
    for t in racers:
        t.join(5)
    assert not racers[0].is_alive()
    assert s.state is SessionState.APPLIED
    outcome = s.wait(0)
    assert outcome.applied and outcome.corners is quad


def test_apply_after_discard_on_other_thread_fails_cleanly():
    s = _session()
    s.open()
    t = threading.Thread(target=s.discard)
    t.start()
    t.join(5)
    with pytest.raises(RuntimeError):
        s.apply()
    assert s.state is SessionState.DISCARDED
    assert not s.wait(0).applied
