"""Rasterise brush strokes into a native-resolution intensity mask.

Each stroke is rendered to its own coverage grid, then composited onto a running
paint layer: ``normal`` strokes use source-over, ``erase`` strokes use
destination-out. The mask is the paint layer's coverage scaled to 0..255.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

from segment_art.errors import InvalidSelectionError, PreconditionError
from segment_art.selection import Point, ViewTransform
from segment_art.state import BrushSettings

BRUSH_TYPES = ("normal", "soft", "stroke")
BRUSH_MODES = ("normal", "erase")


@dataclass
class BrushStroke:
    settings: BrushSettings
    # native image coordinates
    points: List[Point] = field(default_factory=list)


def _dab_positions(points: List[Point], step: float) -> List[Point]:
    if not points:
        return []
    out = [points[0]]
    carry = 0.0
    for (ax, ay), (bx, by) in zip(points, points[1:]):
        seg = math.hypot(bx - ax, by - ay)
        if seg <= 0:
            continue
        dist = step - carry
        while dist <= seg:
            t = dist / seg
            out.append((ax + (bx - ax) * t, ay + (by - ay) * t))
            dist += step
        carry = seg - (dist - step)
    return out


def _disk_coverage(shape_hw: Tuple[int, int], centers: List[Point], radius: float) -> np.ndarray:
    h, w = shape_hw
    img = Image.new("L", (w, h), 0)
    draw = ImageDraw.Draw(img)
    for cx, cy in centers:
        draw.ellipse([cx - radius, cy - radius, cx + radius, cy + radius], fill=255)
    return np.asarray(img, dtype=np.float32) / 255.0


def _line_coverage(shape_hw: Tuple[int, int], points: List[Point], width: float) -> np.ndarray:
    h, w = shape_hw
    img = Image.new("L", (w, h), 0)
    draw = ImageDraw.Draw(img)
    radius = width / 2.0
    if len(points) > 1:
        draw.line([c for p in points for c in p], fill=255, width=max(1, int(round(width))), joint="curve")
    # round caps and joins
    for cx, cy in points:
        draw.ellipse([cx - radius, cy - radius, cx + radius, cy + radius], fill=255)
    return np.asarray(img, dtype=np.float32) / 255.0


def _soft_coverage(shape_hw: Tuple[int, int], centers: List[Point], radius: float, hardness: float) -> np.ndarray:
    h, w = shape_hw
    out = np.zeros((h, w), dtype=np.float32)
    if radius <= 0:
        return out
    inner = min(1.0, max(0.0, hardness))
    for cx, cy in centers:
        x0 = max(0, int(math.floor(cx - radius)))
        x1 = min(w, int(math.ceil(cx + radius)) + 1)
        y0 = max(0, int(math.floor(cy - radius)))
        y1 = min(h, int(math.ceil(cy + radius)) + 1)
        if x1 <= x0 or y1 <= y0:
            continue
        xs = np.arange(x0, x1, dtype=np.float32) - cx
        ys = np.arange(y0, y1, dtype=np.float32) - cy
        d = np.sqrt(xs[None, :] ** 2 + ys[:, None] ** 2) / radius
        if inner >= 1.0:
            dab = (d <= 1.0).astype(np.float32)
        else:
            dab = np.clip((1.0 - d) / (1.0 - inner), 0.0, 1.0)
        np.maximum(out[y0:y1, x0:x1], dab, out=out[y0:y1, x0:x1])
    return out


class BrushMaskBuilder:
    def __init__(self, view: ViewTransform):
        self.view = view
        nw, nh = view.native_size
        self._shape = (int(nh), int(nw))
        self._alpha = np.zeros(self._shape, dtype=np.float32)
        self._color = np.zeros(self._shape + (3,), dtype=np.float32)
        self.strokes: List[BrushStroke] = []
        self._current: Optional[BrushStroke] = None

    @property
    def drawing(self) -> bool:
        return self._current is not None

    def begin_stroke(self, point: Point, settings: BrushSettings) -> np.ndarray:
        if settings.mode not in BRUSH_MODES:
            raise ValueError(f"Unknown brush mode: {settings.mode}")
        if settings.brush_type not in BRUSH_TYPES:
            raise ValueError(f"Unknown brush type: {settings.brush_type}")
        if self._current is not None:
            self.end_stroke()
        self._current = BrushStroke(settings=settings, points=[self.view.to_native(point)])
        self.strokes.append(self._current)
        return self.snapshot()

    def extend_stroke(self, point: Point) -> np.ndarray:
        """Append a drag sample and return the live mask preview."""
        if self._current is None:
            raise PreconditionError("No brush stroke in progress")
        self._current.points.append(self.view.to_native(point))
        return self.snapshot()

    def end_stroke(self) -> np.ndarray:
        if self._current is not None:
            self._alpha, self._color = self._composite(self._current, self._alpha, self._color)
            self._current = None
        return self.snapshot()

    def snapshot(self) -> np.ndarray:
        alpha, _ = self._layers()
        return np.clip(np.rint(alpha * 255.0), 0, 255).astype(np.uint8)

    def commit_mask(self) -> np.ndarray:
        """Finish any open stroke and return the mask to extract with."""
        mask = self.end_stroke()
        if not np.any(mask):
            raise InvalidSelectionError("The brush mask is empty")
        return mask

    def render_rgba(self) -> np.ndarray:
        """Coloured preview of the paint layer."""
        alpha, color = self._layers()
        out = np.zeros(self._shape + (4,), dtype=np.uint8)
        safe = np.maximum(alpha, 1e-6)[..., None]
        out[..., :3] = np.clip(np.rint(color / safe), 0, 255).astype(np.uint8)
        out[..., 3] = np.clip(np.rint(alpha * 255.0), 0, 255).astype(np.uint8)
        out[alpha <= 0, :3] = 0
        return out

    def clear(self) -> None:
        self._alpha.fill(0.0)
        self._color.fill(0.0)
        self.strokes.clear()
        self._current = None

    def _layers(self) -> Tuple[np.ndarray, np.ndarray]:
        if self._current is None:
            return self._alpha, self._color
        return self._composite(self._current, self._alpha, self._color)

    def _brush_width(self, settings: BrushSettings) -> float:
        sx, sy = self.view.scale
        return max(1.0, float(settings.size) * (sx + sy) / 2.0)

    def _coverage(self, stroke: BrushStroke) -> np.ndarray:
        s = stroke.settings
        width = self._brush_width(s)
        if s.brush_type == "soft":
            step = max(1.0, float(s.spacing) * width)
            cov = _soft_coverage(self._shape, _dab_positions(stroke.points, step), width / 2.0, float(s.hardness))
        elif s.brush_type == "stroke":
            step = max(1.0, float(s.spacing) * width)
            cov = _disk_coverage(self._shape, _dab_positions(stroke.points, step), width / 2.0)
        else:
            cov = _line_coverage(self._shape, stroke.points, width)
        return cov * float(min(1.0, max(0.0, s.opacity)))

    def _composite(
        self,
        stroke: BrushStroke,
        alpha: np.ndarray,
        color: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        cov = self._coverage(stroke)
        keep = (1.0 - cov)
        if stroke.settings.mode == "erase":
            return alpha * keep, color * keep[..., None]
        rgb = np.asarray(stroke.settings.color, dtype=np.float32)[:3]
        new_alpha = cov + alpha * keep
        new_color = rgb[None, None, :] * cov[..., None] + color * keep[..., None]
        return new_alpha, new_color
