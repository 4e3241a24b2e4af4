# cardscan/core/config.py
from __future__ import annotations
from pathlib import Path
from typing import Dict, Optional, Union
import copy
import logging
import os

import yaml

log = logging.getLogger(__name__)

CONFIG_ENV = "CARDSCAN_CONFIG"

# Standard trading card, width / height
CARD_RATIO = 5.0 / 7.0

# Tuned against real card photos; keep them here rather than re-deriving.
DEFAULT_CFG: Dict = {
    "debug": False,

    "detect": {
        "working_max_side": 500,           # longest side of the downsampled copy
        "strategies": ["otsu", "saturation", "edges"],
        "min_contrast": 12.0,              # grey levels between Otsu classes
    },
    "otsu": {"bilateral_d": 9, "sigma_color": 75, "sigma_space": 75, "kernel": 5},
    "saturation": {"close_kernel": 9, "open_kernel": 5},
    "edges": {"blur": 5, "canny_low": 30, "canny_high": 100, "close_kernel": 7},

    "contours": {
        "min_area_ratio": 0.10,
        "max_area_ratio": 0.95,
        "max_bbox_ratio": 0.95,            # bbox over 95% of both dims == image frame
        "epsilons": [0.02, 0.03, 0.04, 0.05],
    },
    "validate": {
        "ratio_min": 0.45,
        "ratio_max": 0.92,
        "max_area_ratio": 0.80,
        "edge_margin": 0.05,               # of min(W, H)
        "max_edge_corners": 2,
    },
    "rectify": {
        "card_ratio": CARD_RATIO,
        "snap_tolerance": 0.15,
        "padding_ratio": 0.08,
        "low_coverage": 0.55,
        "high_coverage": 0.80,
        "expand_low": 0.06,                # coverage < low_coverage
        "expand_mid": 0.03,                # low_coverage <= coverage < high_coverage
        "min_area_px": 16.0,
        "fill": [255, 255, 255],
        "ext": ".jpg",
        "quality": 92,
    },
    "session": {
        "surface": [1280, 800],            # default viewing surface (w, h)
        "handle_radius": 14,
        "dim_alpha": 0.4,
        "line_color": [246, 130, 59],      # BGR
        "line_width": 2,
        "dash": [8, 4],
    },
    "runtime": {"timeout_s": 30.0},
}


def merge_cfg(cfg: Optional[Dict]) -> Dict:
    """Overlay a partial config onto the defaults (nested dicts merged one level deep)."""
    merged = copy.deepcopy(DEFAULT_CFG)
    if not cfg:
        return merged
    for k, v in cfg.items():
        if isinstance(v, dict) and k in merged and isinstance(merged[k], dict):
            merged[k] = {**merged[k], **v}
        else:
            merged[k] = v
    return merged


def load_cfg(path: Union[str, Path, None] = None) -> Dict:
    """
    Load a YAML config and merge it onto the defaults.

    With no path, $CARDSCAN_CONFIG is used if set; otherwise the defaults
    are returned unchanged.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV) or None
    if path is None:
        return merge_cfg(None)
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config at {path} must be a mapping, got {type(data).__name__}")
    log.debug("[config] loaded %s", path)
    return merge_cfg(data)


def diag_level(cfg: Dict) -> int:
    """Log level for diagnostic messages: INFO when cfg['debug'] is on."""
    return logging.INFO if cfg.get("debug") else logging.DEBUG
