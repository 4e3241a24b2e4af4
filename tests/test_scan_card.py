"""
Pytest for tools/scan_card.py, run in-process on a synthetic photo.
"""
from __future__ import annotations

import importlib.util
from pathlib import Path

import numpy as np
import cv2
import pytest

from cardscan.io.ingest import load_image, save_image

_CLI = Path(__file__).resolve().parent.parent / "tools" / "scan_card.py"


def _load_cli():
    spec = importlib.util.spec_from_file_location("scan_card", _CLI)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


@pytest.fixture
def photo(tmp_path):
    img = np.full((1400, 1000, 3), 200, np.uint8)
    cv2.rectangle(img, (112, 157), (886, 1241), (40, 60, 200), -1)
    return save_image(tmp_path / "card.png", img)


def test_writes_rectified_card(photo, tmp_path):
    out_dir = tmp_path / "out"
    assert _load_cli().main([str(photo), "--out_dir", str(out_dir), "--ext", "png", "--viz"]) == 0
    card = load_image(out_dir / "card_card.png")
    assert card[0, 0].tolist() == [255, 255, 255]
    assert (out_dir / "card_viz.png").exists()


def test_unknown_ext_rejected_before_processing(photo, tmp_path):
    out_dir = tmp_path / "out"
    with pytest.raises(SystemExit) as err:
        _load_cli().main([str(photo), "--out_dir", str(out_dir), "--ext", ".foo"])
    assert err.value.code == 2
    assert list(out_dir.iterdir()) == []
