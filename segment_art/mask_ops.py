"""Pixel-space mask geometry.

Every function returns a fresh buffer and degrades to a trivial result on
empty or malformed input instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image, ImageFilter

EDGE_THRESHOLD = 200
OUTLINE_COLOR = (0, 150, 255, 255)
DASH_LENGTH = 5
FILL_ALPHA_THRESHOLD = 200


@dataclass(frozen=True)
class BoundingBox:
    """Region bounds as fractions of the image size."""

    xmin: float = 0.0
    ymin: float = 0.0
    xmax: float = 1.0
    ymax: float = 1.0

    @property
    def area(self) -> float:
        return max(0.0, self.xmax - self.xmin) * max(0.0, self.ymax - self.ymin)

    @classmethod
    def from_dict(cls, raw: dict) -> "BoundingBox":
        return cls(
            xmin=float(raw.get("xmin", 0.0)),
            ymin=float(raw.get("ymin", 0.0)),
            xmax=float(raw.get("xmax", 1.0)),
            ymax=float(raw.get("ymax", 1.0)),
        )


FULL_FRAME = BoundingBox()


def mask_intensity(mask: np.ndarray) -> np.ndarray:
    """Reduce a mask of any supported layout to an HxW uint8 intensity grid.

    L masks are used as-is, RGB masks use the red channel (segmenters emit
    R == G == B), and RGBA masks scale red by alpha so transparent pixels count
    as excluded.
    """
    arr = np.asarray(mask)
    if arr.dtype == bool:
        arr = arr.astype(np.uint8) * 255
    if arr.ndim == 3 and arr.shape[2] >= 4:
        red = arr[..., 0].astype(np.uint32)
        alpha = arr[..., 3].astype(np.uint32)
        return ((red * alpha + 127) // 255).astype(np.uint8)
    if arr.ndim == 3 and arr.shape[2] >= 1:
        arr = arr[..., 0]
    if arr.ndim != 2:
        return np.zeros((0, 0), dtype=np.uint8)
    return np.clip(arr, 0, 255).astype(np.uint8)


def bounding_box(mask: np.ndarray) -> BoundingBox:
    """Normalised bounds of every pixel with intensity > 0.

    An empty mask yields the full unit square, which callers must read as
    "bounds unknown" rather than a detection.
    """
    m = mask_intensity(mask)
    if m.size == 0:
        return FULL_FRAME
    ys, xs = np.nonzero(m > 0)
    if ys.size == 0:
        return FULL_FRAME
    h, w = m.shape
    return BoundingBox(
        xmin=float(xs.min()) / w,
        ymin=float(ys.min()) / h,
        xmax=float(xs.max()) / w,
        ymax=float(ys.max()) / h,
    )


def remap_coords(x: int, y: int, image_size: Tuple[int, int], mask_size: Tuple[int, int]) -> Tuple[int, int]:
    """Map image pixel (x, y) to the mask cell sampled for it (nearest neighbour)."""
    iw, ih = image_size
    mw, mh = mask_size
    if iw <= 0 or ih <= 0 or mw <= 0 or mh <= 0:
        return (0, 0)
    mx = min(mw - 1, max(0, (int(x) * mw) // iw))
    my = min(mh - 1, max(0, (int(y) * mh) // ih))
    return (mx, my)


def resample_mask(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    """Sample ``mask`` onto a ``width`` x ``height`` grid using ``floor(x / w * maskW)``."""
    m = mask_intensity(mask)
    width = max(0, int(width))
    height = max(0, int(height))
    if m.size == 0:
        return np.zeros((height, width), dtype=np.uint8)
    mh, mw = m.shape
    if (mh, mw) == (height, width):
        return m
    xs = (np.arange(width, dtype=np.int64) * mw) // max(1, width)
    ys = (np.arange(height, dtype=np.int64) * mh) // max(1, height)
    return m[ys[:, None], xs[None, :]]


def dilate(mask: np.ndarray, iterations: int) -> np.ndarray:
    """Grow bright regions: each pass takes the 3x3 neighbourhood maximum."""
    out = mask_intensity(mask)
    if out.size == 0:
        return out
    steps = max(0, int(iterations))
    if steps == 0:
        return out
    img = Image.fromarray(np.ascontiguousarray(out))
    for _ in range(steps):
        img = img.filter(ImageFilter.MaxFilter(3))
    return np.array(img, dtype=np.uint8)


def gaussian_kernel(radius: int) -> np.ndarray:
    r = max(0, int(radius))
    if r == 0:
        return np.ones(1, dtype=np.float64)
    xs = np.arange(-r, r + 1, dtype=np.float64)
    sigma = r / 3.0
    kernel = np.exp(-(xs * xs) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def _convolve_axis(src: np.ndarray, kernel: np.ndarray, axis: int) -> np.ndarray:
    r = (kernel.size - 1) // 2
    pad = [(0, 0), (0, 0)]
    pad[axis] = (r, r)
    padded = np.pad(src, pad, mode="edge")
    out = np.zeros_like(src, dtype=np.float64)
    n = src.shape[axis]
    for i, weight in enumerate(kernel):
        if axis == 1:
            out += weight * padded[:, i:i + n]
        else:
            out += weight * padded[i:i + n, :]
    # intermediate passes are stored at 8-bit precision
    return np.clip(np.rint(out), 0, 255)


def gaussian_blur(mask: np.ndarray, radius: int) -> np.ndarray:
    """Separable Gaussian blur (horizontal then vertical), sigma = radius / 3."""
    m = mask_intensity(mask)
    r = int(radius)
    if r <= 0 or m.size == 0:
        return m
    kernel = gaussian_kernel(r)
    tmp = _convolve_axis(m.astype(np.float64), kernel, axis=1)
    return _convolve_axis(tmp, kernel, axis=0).astype(np.uint8)


def detect_edges(
    mask: np.ndarray,
    threshold: int = EDGE_THRESHOLD,
    color: Tuple[int, int, int, int] = OUTLINE_COLOR,
) -> np.ndarray:
    """RGBA outline: white pixels with a 4-connected neighbour below ``threshold``."""
    m = mask_intensity(mask)
    h, w = m.shape
    out = np.zeros((h, w, 4), dtype=np.uint8)
    if m.size == 0:
        return out
    p = np.pad(m, 1, mode="edge")
    below = (
        (p[:-2, 1:-1] < threshold)
        | (p[2:, 1:-1] < threshold)
        | (p[1:-1, :-2] < threshold)
        | (p[1:-1, 2:] < threshold)
    )
    out[(m > threshold) & below] = color
    return out


def dashed_outline(outline: np.ndarray, dash_length: int = DASH_LENGTH) -> np.ndarray:
    """Blank every other run of ``dash_length`` columns of an outline."""
    out = np.array(outline, dtype=np.uint8, copy=True)
    if out.ndim != 3 or out.shape[2] < 4 or dash_length <= 0:
        return out
    cols = np.arange(out.shape[1])
    gaps = (cols // int(dash_length)) % 2 == 1
    out[:, gaps, 3] = 0
    return out


def transparency_mask(rgba: np.ndarray, threshold: int = FILL_ALPHA_THRESHOLD) -> np.ndarray:
    """255 where alpha < ``threshold`` (pixels to fill), 0 elsewhere."""
    arr = np.asarray(rgba)
    if arr.ndim != 3 or arr.shape[2] < 4:
        return np.zeros(arr.shape[:2] if arr.ndim >= 2 else (0, 0), dtype=np.uint8)
    return np.where(arr[..., 3] < threshold, 255, 0).astype(np.uint8)


def count_white_black(mask: np.ndarray, threshold: int = 128) -> Tuple[int, int]:
    m = mask_intensity(mask)
    white = int(np.count_nonzero(m > threshold))
    return white, int(m.size) - white
