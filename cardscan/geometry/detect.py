# cardscan/geometry/detect.py
from __future__ import annotations
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math
import cv2
import numpy as np

from cardscan.core.config import diag_level, merge_cfg
from cardscan.core.contracts import CardQuad, DetectionOutcome

log = logging.getLogger(__name__)


# ----------------------------------------------------------------------------- #
# Corner ordering / shape checks                                                #
# ----------------------------------------------------------------------------- #

def order_corners(pts: np.ndarray) -> np.ndarray:
    """
    Order 4 points as: top-left, top-right, bottom-right, bottom-left.
    """
    pts = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    rect = np.zeros((4, 2), dtype=np.float32)

    # smallest sum → top-left, largest sum → bottom-right
    s = pts.sum(axis=1)
    rect[0] = pts[np.argmin(s)]
    rect[2] = pts[np.argmax(s)]

    # smallest y-x → top-right, largest y-x → bottom-left
    diff = pts[:, 1] - pts[:, 0]
    rect[1] = pts[np.argmin(diff)]
    rect[3] = pts[np.argmax(diff)]

    return rect


def _dist(a, b) -> float:
    return math.hypot(float(a[0] - b[0]), float(a[1] - b[1]))


def quad_wh(quad: np.ndarray) -> Tuple[float, float]:
    """Mean width and mean height of an ordered TL, TR, BR, BL quad."""
    tl, tr, br, bl = np.asarray(quad, np.float32).reshape(4, 2)
    w = 0.5 * (_dist(tl, tr) + _dist(bl, br))
    h = 0.5 * (_dist(tl, bl) + _dist(tr, br))
    return w, h


def is_plausible_quad(pts: np.ndarray, frame_shape: Tuple[int, ...], cfg: Optional[Dict] = None) -> bool:
    """Reject quads whose shape, size or placement can't be a card in this frame."""
    cfg = merge_cfg(cfg)
    vcfg = cfg["validate"]
    lvl = diag_level(cfg)
    H, W = frame_shape[:2]
    frame_area = float(H * W)

    pts = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    if not np.isfinite(pts).all():
        log.log(lvl, "[plaus] non-finite pts")
        return False

    w, h = quad_wh(pts)
    if w <= 1e-3 or h <= 1e-3:
        log.log(lvl, "[plaus] degenerate width/height: %.3f %.3f", w, h)
        return False

    ratio = min(w, h) / max(w, h)
    if not (float(vcfg["ratio_min"]) <= ratio <= float(vcfg["ratio_max"])):
        log.log(lvl, "[plaus] ratio %.3f outside (%s, %s)", ratio, vcfg["ratio_min"], vcfg["ratio_max"])
        return False

    area = abs(cv2.contourArea(pts))
    area_ratio = area / frame_area if frame_area > 0 else 1.0
    if area_ratio > float(vcfg["max_area_ratio"]):
        log.log(lvl, "[plaus] area%%=%.3f > %s (image frame?)", area_ratio, vcfg["max_area_ratio"])
        return False

    margin = float(vcfg["edge_margin"]) * min(W, H)
    near_edge = int(np.sum(
        (pts[:, 0] < margin) | (pts[:, 0] > W - margin) |
        (pts[:, 1] < margin) | (pts[:, 1] > H - margin)
    ))
    if near_edge > int(vcfg["max_edge_corners"]):
        log.log(lvl, "[plaus] %d corners hug the frame edge", near_edge)
        return False

    log.log(lvl, "[plaus] ok: ratio=%.3f area%%=%.3f edge_corners=%d", ratio, area_ratio, near_edge)
    return True


def _clip_quad(pts: np.ndarray, frame_shape) -> np.ndarray:
    H, W = frame_shape[:2]
    q = np.asarray(pts, np.float32).reshape(4, 2).copy()
    q[:, 0] = np.clip(q[:, 0], 0, W - 1)
    q[:, 1] = np.clip(q[:, 1], 0, H - 1)
    return q


# ----------------------------------------------------------------------------- #
# Contour → quad                                                                #
# ----------------------------------------------------------------------------- #

def find_best_quad(mask: np.ndarray, cfg: Optional[Dict] = None) -> Optional[np.ndarray]:
    """Pick the best 4-corner polygon from the external contours of a binary mask.

    Strategy:
    - keep contours between min/max area ratio whose bbox isn't the whole frame
    - approxPolyDP at increasing epsilons; keep the largest convex 4-gon
    - otherwise fall back to minAreaRect of the largest kept contour
    Returns an ordered (4, 2) float32 array in mask coordinates, or None.
    """
    cfg = merge_cfg(cfg)
    ccfg = cfg["contours"]
    lvl = diag_level(cfg)
    H, W = mask.shape[:2]
    frame_area = float(H * W)
    min_area = float(ccfg["min_area_ratio"]) * frame_area
    max_area = float(ccfg["max_area_ratio"]) * frame_area
    max_bbox = float(ccfg["max_bbox_ratio"])

    cnts, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not cnts:
        return None

    largest = None
    largest_area = 0.0
    best_quad = None
    best_area = 0.0

    for c in cnts:
        area = float(cv2.contourArea(c))
        if area < min_area or area > max_area:
            continue
        x, y, bw, bh = cv2.boundingRect(c)
        if bw > W * max_bbox and bh > H * max_bbox:
            log.log(lvl, "[contours] skip frame-sized contour: bbox=%dx%d", bw, bh)
            continue

        if area > largest_area:
            largest, largest_area = c, area

        peri = cv2.arcLength(c, True)
        for eps in ccfg["epsilons"]:
            approx = cv2.approxPolyDP(c, float(eps) * peri, True)
            if len(approx) != 4 or not cv2.isContourConvex(approx):
                continue
            if area <= best_area:
                continue
            best_quad = approx.reshape(4, 2).astype(np.float32)
            best_area = area

    if best_quad is not None:
        return order_corners(best_quad)

    if largest is None:
        return None

    log.log(lvl, "[contours] no 4-gon; minAreaRect fallback on area%%=%.3f", largest_area / frame_area)
    box = cv2.boxPoints(cv2.minAreaRect(largest)).astype(np.float32)
    return order_corners(_clip_quad(box, mask.shape))


# ----------------------------------------------------------------------------- #
# Strategies                                                                    #
# ----------------------------------------------------------------------------- #

def _kernel(k: int) -> np.ndarray:
    return cv2.getStructuringElement(cv2.MORPH_RECT, (int(k), int(k)))


def _otsu_contrast(channel: np.ndarray, thresh: float) -> float:
    """Distance between the mean levels of the two Otsu classes."""
    lo = channel[channel <= thresh]
    hi = channel[channel > thresh]
    if lo.size == 0 or hi.size == 0:
        return 0.0
    return float(hi.mean() - lo.mean())


def _valid_quad_from_masks(masks: Sequence[np.ndarray], frame_shape, cfg: Dict) -> Optional[np.ndarray]:
    for mask in masks:
        quad = find_best_quad(mask, cfg)
        if quad is not None and is_plausible_quad(quad, frame_shape, cfg):
            return quad
    return None


class DetectionStrategy:
    """One segmentation heuristic: binary mask(s) → validated quad or None."""
    name = "base"

    def masks(self, frame: np.ndarray, cfg: Dict) -> List[np.ndarray]:
        raise NotImplementedError

    def attempt(self, frame: np.ndarray, cfg: Dict) -> Optional[np.ndarray]:
        return _valid_quad_from_masks(self.masks(frame, cfg), frame.shape, cfg)


class OtsuStrategy(DetectionStrategy):
    """Brightness split; the card may be the lighter or the darker region."""
    name = "otsu"

    def masks(self, frame: np.ndarray, cfg: Dict) -> List[np.ndarray]:
        ocfg = cfg["otsu"]
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame
        smooth = cv2.bilateralFilter(gray, int(ocfg["bilateral_d"]),
                                     float(ocfg["sigma_color"]), float(ocfg["sigma_space"]))
        thr, binary = cv2.threshold(smooth, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        contrast = _otsu_contrast(smooth, thr)
        if contrast < float(cfg["detect"]["min_contrast"]):
            log.log(diag_level(cfg), "[otsu] contrast %.1f too low", contrast)
            return []
        k = _kernel(ocfg["kernel"])
        binary = cv2.morphologyEx(binary, cv2.MORPH_CLOSE, k)
        binary = cv2.morphologyEx(binary, cv2.MORPH_OPEN, k)
        return [binary, cv2.bitwise_not(binary)]


class SaturationStrategy(DetectionStrategy):
    """Cards are usually less saturated than the surface they lie on."""
    name = "saturation"

    def masks(self, frame: np.ndarray, cfg: Dict) -> List[np.ndarray]:
        if frame.ndim != 3:
            return []
        scfg = cfg["saturation"]
        s = cv2.cvtColor(frame, cv2.COLOR_BGR2HSV)[:, :, 1]
        thr, binary = cv2.threshold(s, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
        contrast = _otsu_contrast(s, thr)
        if contrast < float(cfg["detect"]["min_contrast"]):
            log.log(diag_level(cfg), "[saturation] contrast %.1f too low", contrast)
            return []
        binary = cv2.morphologyEx(binary, cv2.MORPH_CLOSE, _kernel(scfg["close_kernel"]))
        binary = cv2.morphologyEx(binary, cv2.MORPH_OPEN, _kernel(scfg["open_kernel"]))
        return [binary]


class EdgeStrategy(DetectionStrategy):
    name = "edges"

    def masks(self, frame: np.ndarray, cfg: Dict) -> List[np.ndarray]:
        ecfg = cfg["edges"]
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame
        k = int(ecfg["blur"]) | 1
        blur = cv2.GaussianBlur(gray, (k, k), 0)
        edges = cv2.Canny(blur, int(ecfg["canny_low"]), int(ecfg["canny_high"]))
        edges = cv2.morphologyEx(edges, cv2.MORPH_CLOSE, _kernel(ecfg["close_kernel"]))
        return [edges]


STRATEGIES: Dict[str, DetectionStrategy] = {
    s.name: s for s in (OtsuStrategy(), SaturationStrategy(), EdgeStrategy())
}


def build_strategies(names: Sequence[str]) -> List[DetectionStrategy]:
    unknown = [n for n in names if n not in STRATEGIES]
    if unknown:
        raise ValueError(f"Unknown detection strategies: {unknown}; known: {sorted(STRATEGIES)}")
    return [STRATEGIES[n] for n in names]


# ----------------------------------------------------------------------------- #
# Public entrypoint                                                              #
# ----------------------------------------------------------------------------- #

def downsample(frame: np.ndarray, max_side: int) -> Tuple[np.ndarray, float]:
    """Return a working copy with its longest side ≤ max_side and the scale applied."""
    H, W = frame.shape[:2]
    longest = max(H, W)
    if longest <= max_side:
        return frame.copy(), 1.0
    scale = float(max_side) / float(longest)
    size = (max(1, int(round(W * scale))), max(1, int(round(H * scale))))
    return cv2.resize(frame, size, interpolation=cv2.INTER_AREA), scale


def detect(frame: np.ndarray, cfg: Optional[Dict] = None) -> DetectionOutcome:
    """
    Run the strategies in order on a downsampled copy of `frame`.

    Returns a DetectionOutcome whose corners (if found) are in `frame`
    coordinates, ordered TL, TR, BR, BL.
    """
    cfg = merge_cfg(cfg)
    if frame is None or frame.size == 0:
        return DetectionOutcome.not_found()

    lvl = diag_level(cfg)
    dcfg = cfg["detect"]
    if frame.ndim == 3 and frame.shape[2] == 4:
        frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
    working, scale = downsample(frame, int(dcfg["working_max_side"]))
    log.log(lvl, "[detect] working copy %dx%d (scale %.3f)", working.shape[1], working.shape[0], scale)

    for strategy in build_strategies(dcfg["strategies"]):
        quad = strategy.attempt(working, cfg)
        if quad is None:
            log.log(lvl, "[detect] %s: no valid quad", strategy.name)
            continue
        pts = _clip_quad(CardQuad(pts=quad).scaled(1.0 / scale).pts, frame.shape)
        pts = order_corners(pts)
        log.log(lvl, "[detect] %s: found %s", strategy.name, pts.round(1).tolist())
        return DetectionOutcome(corners=CardQuad(pts=pts), strategy=strategy.name)

    log.log(lvl, "[detect] no strategy produced a card")
    return DetectionOutcome.not_found()
