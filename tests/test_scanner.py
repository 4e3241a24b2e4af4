"""
Pytest for the public entry points: every path ends in a ScanResult and
failures leave the caller's photo alone.
"""
from __future__ import annotations

import threading

import numpy as np
import cv2
import pytest

from cardscan import scanner
from cardscan.core.config import CARD_RATIO
from cardscan.core.errors import RuntimeUnavailableError
from cardscan.io.ingest import decode_image
from cardscan.refine.session import RefinementSession


def _card_photo():
    """Red 5:7 card on light grey, ~60% of a 1000x1400 photo."""
    img = np.full((1400, 1000, 3), 200, np.uint8)
    cv2.rectangle(img, (112, 157), (886, 1241), (40, 60, 200), -1)
    return img


def _blank_photo():
    img = np.full((1000, 800, 3), (118, 120, 122), np.uint8)
    cv2.rectangle(img, (200, 200), (559, 703), (121, 122, 124), -1)
    return img


def _apply(session: RefinementSession) -> None:
    session.apply()


def _discard(session: RefinementSession) -> None:
    session.discard()


def _card_body(img: np.ndarray) -> np.ndarray:
    h, w = img.shape[:2]
    return img[h // 3: 2 * h // 3, w // 3: 2 * w // 3]


# ---------- automatic ---------- #

def test_auto_rectify_enhances_card_photo():
    photo = _card_photo()
    before = photo.copy()
    res = scanner.auto_rectify(photo)
    assert res.enhanced and res.reason == ""
    assert res.strategy in ("otsu", "saturation")
    assert res.corners is not None
    out = res.image
    assert out[0, 0].tolist() == [255, 255, 255]
    assert np.all(_card_body(out) == (40, 60, 200))
    assert np.array_equal(photo, before)

    # card area inside the padding keeps the card proportions
    pad = int(round(max(out.shape[:2]) / (1 + 2 * 0.08) * 0.08))
    h, w = out.shape[0] - 2 * pad, out.shape[1] - 2 * pad
    assert w / h == pytest.approx(CARD_RATIO, rel=0.02)


def test_auto_rectify_not_found():
    res = scanner.auto_rectify(_blank_photo())
    assert not res.enhanced
    assert res.reason == scanner.NOT_FOUND
    assert res.image is None


def test_auto_rectify_runtime_unavailable(monkeypatch):
    def _down(timeout=None, loader=None):
        raise RuntimeUnavailableError("no cv2")
    monkeypatch.setattr(scanner, "acquire_runtime", _down)
    res = scanner.auto_rectify(_card_photo())
    assert not res.enhanced and res.reason == scanner.RUNTIME_UNAVAILABLE


def test_auto_rectify_batch_keeps_order():
    results = list(scanner.auto_rectify_batch([_card_photo(), _blank_photo(), _card_photo()]))
    assert [r.enhanced for r in results] == [True, False, True]
    assert results[1].reason == scanner.NOT_FOUND


# ---------- interactive ---------- #

def test_detect_and_rectify_apply():
    res = scanner.detect_and_rectify(_card_photo(), _apply)
    assert res.enhanced
    assert np.all(_card_body(res.image) == (40, 60, 200))


def test_detect_and_rectify_discard_keeps_photo():
    photo = _card_photo()
    before = photo.copy()
    res = scanner.detect_and_rectify(photo, _discard)
    assert not res.enhanced and res.reason == scanner.CANCELLED
    assert res.image is None
    assert photo.tobytes() == before.tobytes()


def test_detect_and_rectify_uses_adjusted_corners():
    auto = scanner.auto_rectify(_card_photo())

    def _drag(session: RefinementSession) -> None:
        x, y = session.corners[0]
        assert session.press(x, y) == 0
        session.move(x + 10, y + 10)
        session.release()
        session.apply()

    res = scanner.detect_and_rectify(_card_photo(), _drag, surface=(800, 800))
    assert res.enhanced
    moved = res.corners.pts[0] - auto.corners.pts[0]
    assert np.all(moved > 10)  # 10 display px at scale < 1
    np.testing.assert_allclose(res.corners.pts[1:], auto.corners.pts[1:], atol=1.0)


def test_detect_and_rectify_answer_from_other_thread():
    timers = []

    def _later(session: RefinementSession) -> None:
        t = threading.Timer(0.05, session.apply)
        timers.append(t)
        t.start()

    res = scanner.detect_and_rectify(_card_photo(), _later, timeout=5)
    for t in timers:
        t.join()
    assert res.enhanced


def test_detect_and_rectify_no_answer_is_cancel():
    res = scanner.detect_and_rectify(_card_photo(), lambda s: None, timeout=0.05)
    assert not res.enhanced and res.reason == scanner.CANCELLED


def test_detect_and_rectify_presenter_error():
    def _boom(session):
        raise RuntimeError("display went away")
    res = scanner.detect_and_rectify(_card_photo(), _boom)
    assert not res.enhanced and res.reason == scanner.FAILED
    # lock released: the next session still runs
    assert scanner.detect_and_rectify(_card_photo(), _apply).enhanced


def test_detect_and_rectify_degenerate_corners():
    def _flatten(session: RefinementSession) -> None:
        for i, x in enumerate((10, 20, 30, 40)):
            session.set_corner(i, x, 10)
        session.apply()
    res = scanner.detect_and_rectify(_card_photo(), _flatten)
    assert not res.enhanced and res.reason == scanner.DEGENERATE


def test_detect_and_rectify_not_found_skips_presenter():
    calls = []
    res = scanner.detect_and_rectify(_blank_photo(), calls.append)
    assert not res.enhanced and res.reason == scanner.NOT_FOUND
    assert calls == []


def test_detect_and_rectify_batch():
    results = list(scanner.detect_and_rectify_batch([_card_photo(), _card_photo()], _apply))
    assert all(r.enhanced for r in results)


# ---------- encoding ---------- #

def test_encode_result():
    res = scanner.auto_rectify(_card_photo())
    jpg = scanner.encode_result(res)
    assert jpg[:2] == b"\xff\xd8"
    assert decode_image(jpg).shape == res.image.shape
    png = scanner.encode_result(res, ext=".png")
    assert png[:4] == b"\x89PNG"
    assert scanner.encode_result(scanner.auto_rectify(_blank_photo())) is None


def test_encode_result_unknown_format():
    res = scanner.auto_rectify(_card_photo())
    with pytest.raises(ValueError):
        scanner.encode_result(res, ext=".foo")


def test_detect_and_rectify_batch_timeout():
    results = list(scanner.detect_and_rectify_batch([_card_photo(), _card_photo()],
                                                    lambda s: None, timeout=0.05))
    assert [r.reason for r in results] == [scanner.CANCELLED, scanner.CANCELLED]
