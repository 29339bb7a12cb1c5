from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from segment_art.errors import InvalidSelectionError
from segment_art.mask_ops import EDGE_THRESHOLD, mask_intensity

Point = Tuple[float, float]
PointsLike = Union[Sequence[Point], Sequence[float]]

MIN_LASSO_POINTS = 3


@dataclass(frozen=True)
class ViewTransform:
    """Maps on-screen (display) coordinates onto native image pixels."""

    native_size: Tuple[int, int]
    display_size: Tuple[float, float]
    display_offset: Tuple[float, float] = (0.0, 0.0)

    @classmethod
    def identity(cls, native_size: Tuple[int, int]) -> "ViewTransform":
        return cls(native_size=native_size, display_size=(float(native_size[0]), float(native_size[1])))

    @classmethod
    def fit(cls, native_size: Tuple[int, int], viewport_size: Tuple[float, float]) -> "ViewTransform":
        """Scale the image to fit the viewport and centre it."""
        nw, nh = native_size
        vw, vh = viewport_size
        scale = min(vw / max(1, nw), vh / max(1, nh))
        dw, dh = nw * scale, nh * scale
        return cls(native_size=native_size, display_size=(dw, dh), display_offset=((vw - dw) / 2.0, (vh - dh) / 2.0))

    @property
    def scale(self) -> Tuple[float, float]:
        """Native pixels per display pixel along x and y."""
        dw, dh = self.display_size
        nw, nh = self.native_size
        return (nw / dw if dw else 1.0, nh / dh if dh else 1.0)

    def to_native(self, point: Point) -> Point:
        sx, sy = self.scale
        ox, oy = self.display_offset
        return ((point[0] - ox) * sx, (point[1] - oy) * sy)

    def contains(self, point: Point) -> bool:
        ox, oy = self.display_offset
        dw, dh = self.display_size
        x = point[0] - ox
        y = point[1] - oy
        return 0 <= x <= dw and 0 <= y <= dh


@dataclass
class LassoSelection:
    """An in-progress freehand polygon in display coordinates."""

    points: List[Point] = field(default_factory=list)

    def add_point(self, x: float, y: float) -> None:
        self.points.append((float(x), float(y)))

    def flat(self) -> List[float]:
        return [c for p in self.points for c in p]

    def clear(self) -> None:
        self.points.clear()


def as_point_pairs(points: PointsLike) -> List[Point]:
    """Accept ``[(x, y), ...]`` or a flat ``[x0, y0, x1, y1, ...]`` list."""
    items = list(points)
    if not items:
        return []
    if isinstance(items[0], (int, float, np.integer, np.floating)):
        return [(float(items[i]), float(items[i + 1])) for i in range(0, len(items) - 1, 2)]
    return [(float(p[0]), float(p[1])) for p in items]


def polygon_mask(shape_hw: Tuple[int, int], points_xy: Sequence[Point]) -> np.ndarray:
    """Rasterise a closed polygon: a pixel is inside when its centre is (even-odd rule)."""
    h, w = shape_hw
    out = np.zeros((max(0, h), max(0, w)), dtype=np.uint8)
    if h <= 0 or w <= 0 or len(points_xy) < 3:
        return out

    pts = np.asarray(points_xy, dtype=np.float64)
    x0, y0 = pts[:, 0], pts[:, 1]
    x1, y1 = np.roll(x0, -1), np.roll(y0, -1)

    row_lo = max(0, int(np.floor(y0.min())))
    row_hi = min(h, int(np.ceil(y0.max())) + 1)
    centers_x = np.arange(w, dtype=np.float64) + 0.5

    for row in range(row_lo, row_hi):
        yc = row + 0.5
        crosses = ((y0 <= yc) & (yc < y1)) | ((y1 <= yc) & (yc < y0))
        if not np.any(crosses):
            continue
        ex0, ey0, ex1, ey1 = x0[crosses], y0[crosses], x1[crosses], y1[crosses]
        xs = np.sort(ex0 + (yc - ey0) / (ey1 - ey0) * (ex1 - ex0))
        counts = np.searchsorted(xs, centers_x, side="right")
        out[row, counts % 2 == 1] = 255
    return out


def lasso_mask(points: PointsLike, view: ViewTransform) -> np.ndarray:
    """Native-resolution mask for a lasso drawn in display coordinates."""
    pairs = as_point_pairs(points)
    if len(set(pairs)) < MIN_LASSO_POINTS:
        raise InvalidSelectionError(
            f"A lasso needs at least {MIN_LASSO_POINTS} distinct points, got {len(set(pairs))}"
        )
    native = [view.to_native(p) for p in pairs]
    nw, nh = view.native_size
    mask = polygon_mask((nh, nw), native)
    if not np.any(mask):
        raise InvalidSelectionError("The lasso encloses no pixels of the image")
    return mask


def hit_test_regions(
    masks: Sequence[Optional[np.ndarray]],
    point: Point,
    view: ViewTransform,
    threshold: int = EDGE_THRESHOLD,
) -> Optional[int]:
    """Index of the region under a display-space point, or ``None``.

    Regions are tested last-to-first so small parts listed after large ones win.
    """
    if not view.contains(point):
        return None
    ox, oy = view.display_offset
    dw, dh = view.display_size
    if dw <= 0 or dh <= 0:
        return None
    fx = (point[0] - ox) / dw
    fy = (point[1] - oy) / dh

    for index in range(len(masks) - 1, -1, -1):
        raw = masks[index]
        if raw is None:
            continue
        m = mask_intensity(raw)
        if m.size == 0:
            continue
        mh, mw = m.shape
        mx = int(np.floor(fx * mw))
        my = int(np.floor(fy * mh))
        if 0 <= mx < mw and 0 <= my < mh and m[my, mx] > threshold:
            return index
    return None
