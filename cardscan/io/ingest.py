"""
Simple I/O helpers for reading and writing images (BGR, as OpenCV expects).
"""

from __future__ import annotations
from pathlib import Path
from typing import Union
import cv2
import numpy as np

_QUALITY_FLAGS = {
    ".jpg": cv2.IMWRITE_JPEG_QUALITY,
    ".jpeg": cv2.IMWRITE_JPEG_QUALITY,
    ".webp": cv2.IMWRITE_WEBP_QUALITY,
}


def load_image(path: Union[str, Path]) -> np.ndarray:
    """
    Load an image from disk (BGR).
    Raises FileNotFoundError if not found.
    """
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Could not read image at: {path}")
    return img


def load_grayscale(path: Union[str, Path]) -> np.ndarray:
    """
    Load a grayscale image.
    """
    img = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise FileNotFoundError(f"Could not read image at: {path}")
    return img


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (JPEG, PNG, ...) into a BGR array."""
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
    if img is None:
        raise ValueError("Could not decode image data")
    return img


def normalize_ext(ext: str) -> str:
    """
    ".jpg"-style extension for `ext`.
    Raises ValueError if OpenCV has no writer for it.
    """
    ext = ext if ext.startswith(".") else "." + ext
    ext = ext.lower()
    if len(ext) < 2 or not cv2.haveImageWriter("out" + ext):
        raise ValueError(f"Unsupported image format: {ext}")
    return ext


def encode_image(img: np.ndarray, ext: str = ".jpg", quality: int = 92) -> bytes:
    """Encode to the format named by `ext`; quality applies to JPEG/WebP only."""
    ext = normalize_ext(ext)
    params = []
    if ext in _QUALITY_FLAGS:
        params = [int(_QUALITY_FLAGS[ext]), int(quality)]
    try:
        ok, buf = cv2.imencode(ext, img, params)
    except cv2.error as exc:
        raise ValueError(f"Could not encode image as {ext}: {exc}") from exc
    if not ok:
        raise ValueError(f"Could not encode image as {ext}")
    return buf.tobytes()


def save_image(path: Union[str, Path], img: np.ndarray, quality: int = 92) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_image(img, path.suffix or ".png", quality))
    return path
