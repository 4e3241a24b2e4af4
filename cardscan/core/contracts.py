"""
Core contracts and simple data types shared across stages.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np


@dataclass
class CardQuad:
    """
    The four card corners in one coordinate space (pixels), ordered clockwise:
    [top-left, top-right, bottom-right, bottom-left].

    pts: np.ndarray with shape (4, 2), dtype float32
    """
    pts: np.ndarray

    def __post_init__(self) -> None:
        self.pts = np.asarray(self.pts, dtype=np.float32).reshape(4, 2)

    def as_tuple(self) -> Tuple[Tuple[float, float], Tuple[float, float], Tuple[float, float], Tuple[float, float]]:
        return tuple(map(tuple, self.pts.astype(float)))  # type: ignore[return-value]

    def scaled(self, factor: float) -> "CardQuad":
        """Same quad in a space `factor` times larger (e.g. working -> source)."""
        return CardQuad(pts=self.pts * float(factor))

    def area(self) -> float:
        """Shoelace area, independent of winding."""
        x, y = self.pts[:, 0].astype(np.float64), self.pts[:, 1].astype(np.float64)
        return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


@dataclass
class DetectionOutcome:
    """Result of the strategy pipeline: either found (quad + strategy) or not."""
    corners: Optional[CardQuad] = None
    strategy: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.corners is not None

    @classmethod
    def not_found(cls) -> "DetectionOutcome":
        return cls()


@dataclass
class RectificationRequest:
    image: np.ndarray
    corners: CardQuad
    expand: Optional[float] = None  # overrides the adaptive expansion when set


@dataclass
class RectifiedImage:
    """
    Rectified card on its white padding canvas.

    card_size is the (width, height) of the warped card before padding;
    source_quad is the (possibly expanded) quad that was warped.
    """
    image: np.ndarray
    card_size: Tuple[int, int]
    pad: int
    expansion: float
    source_quad: CardQuad

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


@dataclass
class ScanResult:
    enhanced: bool
    image: Optional[np.ndarray] = None
    corners: Optional[CardQuad] = None
    strategy: Optional[str] = None
    reason: str = ""
