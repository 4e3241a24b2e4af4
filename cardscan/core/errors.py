"""
Exception types raised inside the engine.

None of these escape the public entry points in cardscan.scanner; they are
turned into an unenhanced ScanResult there.
"""

from __future__ import annotations


class ScanError(RuntimeError):
    pass


class RuntimeUnavailableError(ScanError):
    """The OpenCV runtime could not be loaded within its timeout."""


class DegenerateGeometryError(ScanError, ValueError):
    """Quad too small, collinear, or yields a non-invertible homography."""


class UserCancelledError(ScanError):
    pass
