# cardscan/geometry/rectify.py
from __future__ import annotations
from typing import Dict, Optional, Tuple
import logging
import cv2
import numpy as np

from cardscan.core.config import diag_level, merge_cfg
from cardscan.core.contracts import CardQuad, RectificationRequest, RectifiedImage
from cardscan.core.errors import DegenerateGeometryError

log = logging.getLogger(__name__)


def quad_coverage(quad: np.ndarray, frame_shape) -> float:
    """Fraction of the frame area covered by the quad."""
    H, W = frame_shape[:2]
    frame_area = float(H * W)
    if frame_area <= 0:
        return 0.0
    return CardQuad(pts=quad).area() / frame_area


def expansion_for_coverage(coverage: float, cfg: Optional[Dict] = None) -> float:
    """
    Radial growth factor for a quad covering `coverage` of the frame.

    Small quads usually sit inside the card's printed border, so they grow
    more; a quad already covering most of the frame is left alone.
    """
    rcfg = merge_cfg(cfg)["rectify"]
    if coverage < float(rcfg["low_coverage"]):
        return float(rcfg["expand_low"])
    if coverage < float(rcfg["high_coverage"]):
        return float(rcfg["expand_mid"])
    return 0.0


def expand_quad(quad: np.ndarray, frame_shape, factor: float) -> np.ndarray:
    """Scale each centroid→corner vector by (1 + factor), clipped to the frame."""
    H, W = frame_shape[:2]
    q = np.asarray(quad, np.float32).reshape(4, 2)
    center = q.mean(axis=0)
    out = (q - center) * (1.0 + float(factor)) + center
    out[:, 0] = np.clip(out[:, 0], 0, W - 1)
    out[:, 1] = np.clip(out[:, 1], 0, H - 1)
    return out.astype(np.float32)


def compute_target_size(quad: np.ndarray, cfg: Optional[Dict] = None) -> Tuple[int, int]:
    """
    Output (W, H) for a TL, TR, BR, BL quad: the longer of each pair of
    opposite edges, snapped to the card ratio when it is already close.
    """
    rcfg = merge_cfg(cfg)["rectify"]
    tl, tr, br, bl = np.asarray(quad, np.float32).reshape(4, 2)
    out_w = int(round(max(np.linalg.norm(tr - tl), np.linalg.norm(br - bl))))
    out_h = int(round(max(np.linalg.norm(bl - tl), np.linalg.norm(br - tr))))
    out_w, out_h = max(1, out_w), max(1, out_h)

    card_ratio = float(rcfg["card_ratio"])
    ratio = min(out_w, out_h) / float(max(out_w, out_h))
    if abs(ratio - card_ratio) < float(rcfg["snap_tolerance"]):
        # snap the shorter side; landscape cards keep their orientation
        if out_w <= out_h:
            out_w = max(1, int(round(out_h * card_ratio)))
        else:
            out_h = max(1, int(round(out_w * card_ratio)))
    return out_w, out_h


def _check_geometry(q: np.ndarray, min_area_px: float) -> None:
    area = abs(cv2.contourArea(q))
    if not np.isfinite(q).all() or area < min_area_px:
        raise DegenerateGeometryError(f"quad area {area:.2f}px² is degenerate")
    # any three corners on one line → projective transform is unstable
    for i in range(4):
        a, b, c = q[i], q[(i + 1) % 4], q[(i + 2) % 4]
        cross = abs(float((b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])))
        scale = float(np.linalg.norm(b - a) * np.linalg.norm(c - a)) + 1e-9
        if cross / scale < 1e-3:
            raise DegenerateGeometryError(f"corners {i}, {(i + 1) % 4}, {(i + 2) % 4} are collinear")


def _homography(src: np.ndarray, out_w: int, out_h: int) -> np.ndarray:
    dst = np.array([[0, 0],
                    [out_w - 1, 0],
                    [out_w - 1, out_h - 1],
                    [0, out_h - 1]], dtype=np.float32)
    try:
        M = cv2.getPerspectiveTransform(src.astype(np.float32), dst)
    except cv2.error as exc:
        raise DegenerateGeometryError(f"homography failed: {exc}") from exc
    if not np.isfinite(M).all() or abs(float(np.linalg.det(M))) < 1e-12:
        raise DegenerateGeometryError("homography is singular")
    return M


def rectify(request: RectificationRequest, cfg: Optional[Dict] = None) -> RectifiedImage:
    """
    Warp the card region of request.image to a flat, padded rectangle.

    Raises DegenerateGeometryError for quads that can't define a stable
    projective transform.
    """
    cfg = merge_cfg(cfg)
    rcfg = cfg["rectify"]
    lvl = diag_level(cfg)
    image = request.image
    q = np.asarray(request.corners.pts, np.float32).reshape(4, 2)
    _check_geometry(q, float(rcfg["min_area_px"]))

    coverage = quad_coverage(q, image.shape)
    factor = expansion_for_coverage(coverage, cfg) if request.expand is None else float(request.expand)
    src = expand_quad(q, image.shape, factor) if factor > 0 else q.copy()

    out_w, out_h = compute_target_size(src, cfg)
    M = _homography(src, out_w, out_h)

    fill = tuple(int(v) for v in rcfg["fill"])
    if image.ndim == 2:
        fill = fill[0]
    elif image.shape[2] == 4:
        fill = fill[:3] + (255,)
    warped = cv2.warpPerspective(image, M, (out_w, out_h), flags=cv2.INTER_LINEAR,
                                 borderMode=cv2.BORDER_CONSTANT, borderValue=fill)

    pad = int(round(max(out_w, out_h) * float(rcfg["padding_ratio"])))
    canvas_shape = (out_h + 2 * pad, out_w + 2 * pad) + tuple(image.shape[2:])
    canvas = np.empty(canvas_shape, dtype=image.dtype)
    canvas[...] = fill
    canvas[pad:pad + out_h, pad:pad + out_w] = warped

    log.log(lvl, "[rectify] coverage=%.3f expand=%.2f card=%dx%d pad=%d",
            coverage, factor, out_w, out_h, pad)
    return RectifiedImage(image=canvas, card_size=(out_w, out_h), pad=pad,
                          expansion=factor, source_quad=CardQuad(pts=src))


def warp_card(image: np.ndarray, quad_xy: np.ndarray, *, expand: Optional[float] = None,
              cfg: Optional[Dict] = None) -> RectifiedImage:
    """Convenience wrapper: rectify a raw (4, 2) quad in image coordinates."""
    return rectify(RectificationRequest(image=image, corners=CardQuad(pts=quad_xy), expand=expand), cfg)
