from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from segment_art.errors import PreconditionError
from segment_art.io import freeze
from segment_art.state import Layer

logger = logging.getLogger(__name__)

BASE_LAYER_NAME = "Base Image"


def pil_to_np_rgba(img: Image.Image) -> np.ndarray:
    arr = np.array(img.convert("RGBA"), dtype=np.uint8)
    if arr.ndim != 3 or arr.shape[2] != 4:
        raise ValueError("Expected RGBA image")
    return arr


def np_rgba_to_pil(arr: np.ndarray) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(arr, dtype=np.uint8))


def _blend(base: np.ndarray, top: np.ndarray) -> np.ndarray:
    """Source-over of ``top`` onto ``base``, both straight-alpha RGBA."""
    base_rgb = base[..., :3].astype(np.float32) / 255.0
    top_rgb = top[..., :3].astype(np.float32) / 255.0
    base_a = base[..., 3:4].astype(np.float32) / 255.0
    top_a = top[..., 3:4].astype(np.float32) / 255.0

    out_a = top_a + base_a * (1.0 - top_a)
    premul_top = top_rgb * top_a
    premul_base = base_rgb * base_a
    out_premul = premul_top + premul_base * (1.0 - top_a)
    out_rgb = np.where(out_a > 0, out_premul / np.maximum(out_a, 1e-6), 0.0)

    out = np.empty_like(base)
    out[..., :3] = np.clip(np.rint(out_rgb * 255.0), 0, 255).astype(np.uint8)
    out[..., 3] = np.clip(np.rint(out_a[..., 0] * 255.0), 0, 255).astype(np.uint8)
    return out


def _place(canvas_hw: Tuple[int, int], arr: np.ndarray, x: int, y: int) -> Optional[np.ndarray]:
    """Copy ``arr`` into a transparent canvas-sized tile at (x, y), clipped to the canvas."""
    out_h, out_w = canvas_hw
    h, w = arr.shape[:2]
    x0 = max(0, x)
    y0 = max(0, y)
    x1 = min(out_w, x + w)
    y1 = min(out_h, y + h)
    if x1 <= x0 or y1 <= y0:
        return None

    tile = np.zeros((out_h, out_w, 4), dtype=np.uint8)
    sx0 = x0 - x
    sy0 = y0 - y
    tile[y0:y1, x0:x1] = arr[sy0:sy0 + (y1 - y0), sx0:sx0 + (x1 - x0)]
    return tile


def _with_opacity(arr: np.ndarray, opacity: float) -> np.ndarray:
    if opacity >= 1.0:
        return arr
    out = arr.copy()
    a = out[..., 3].astype(np.float32)
    out[..., 3] = np.clip(np.rint(a * max(0.0, float(opacity))), 0, 255).astype(np.uint8)
    return out


def composite_layers(
    layers: Sequence[Layer],
    canvas_size: Tuple[int, int],
    respect_visibility: bool = True,
    respect_opacity: bool = True,
    origin: Tuple[int, int] = (0, 0),
) -> np.ndarray:
    """Draw ``layers`` bottom to top onto a transparent canvas of ``canvas_size`` (w, h)."""
    out_w, out_h = canvas_size
    canvas = np.zeros((out_h, out_w, 4), dtype=np.uint8)
    ox, oy = origin

    for layer in layers:
        if respect_visibility and not layer.visible:
            continue
        arr = _with_opacity(layer.image, layer.opacity) if respect_opacity else layer.image
        tile = _place((out_h, out_w), arr, int(layer.x) - ox, int(layer.y) - oy)
        if tile is None:
            continue
        canvas = _blend(canvas, tile)

    return canvas


class LayerStack:
    """Ordered layers, bottom (index 0, the base image) to top.

    The base layer is structural: it can be replaced in content but never moved,
    deleted or merged.
    """

    def __init__(self) -> None:
        self._layers: List[Layer] = []
        self._cache: Dict[str, Image.Image] = {}

    def __len__(self) -> int:
        return len(self._layers)

    def __iter__(self):
        return iter(list(self._layers))

    @property
    def layers(self) -> List[Layer]:
        return list(self._layers)

    @property
    def base(self) -> Optional[Layer]:
        if self._layers and self._layers[0].is_base_layer:
            return self._layers[0]
        return None

    @property
    def canvas_size(self) -> Tuple[int, int]:
        base = self._require_base()
        return base.size

    def _require_base(self) -> Layer:
        base = self.base
        if base is None:
            raise PreconditionError("No image loaded")
        return base

    def index_of(self, layer_id: str) -> int:
        for i, layer in enumerate(self._layers):
            if layer.layer_id == layer_id:
                return i
        raise PreconditionError(f"Unknown layer id: {layer_id}")

    def get(self, layer_id: str) -> Layer:
        return self._layers[self.index_of(layer_id)]

    def _invalidate(self, layer_id: Optional[str] = None) -> None:
        if layer_id is None:
            self._cache.clear()
        else:
            self._cache.pop(layer_id, None)

    def layer_image(self, layer_id: str) -> Image.Image:
        """PIL render of a layer's pixels, cached by layer id."""
        img = self._cache.get(layer_id)
        if img is None:
            img = np_rgba_to_pil(self.get(layer_id).image)
            self._cache[layer_id] = img
        return img

    # Structure

    def set_base(self, image: np.ndarray, name: str = BASE_LAYER_NAME) -> Layer:
        """Start a new document: the stack holds only the base layer afterwards."""
        base = Layer(name=name, image=freeze(np.array(image, dtype=np.uint8)), kind="base", is_base_layer=True)
        self._layers = [base]
        self._invalidate()
        return base

    def replace_base_image(self, image: np.ndarray) -> Layer:
        base = self._require_base()
        arr = np.asarray(image)
        if arr.shape != base.image.shape:
            raise PreconditionError(f"Base image shape {arr.shape} does not match {base.image.shape}")
        if arr.flags.writeable:
            arr = freeze(np.array(arr, dtype=np.uint8))
        new_base = base.clone()
        new_base.image = arr
        self._layers[0] = new_base
        self._invalidate(base.layer_id)
        return new_base

    def append(self, layer: Layer) -> Layer:
        self._require_base()
        if layer.is_base_layer:
            raise PreconditionError("A document has exactly one base layer")
        if any(l.layer_id == layer.layer_id for l in self._layers):
            raise PreconditionError(f"Duplicate layer id: {layer.layer_id}")
        if layer.image.flags.writeable:
            layer.image = freeze(np.array(layer.image, dtype=np.uint8))
        self._layers.append(layer)
        return layer

    def remove(self, layer_id: str) -> Layer:
        idx = self.index_of(layer_id)
        layer = self._layers[idx]
        if layer.is_base_layer:
            raise PreconditionError("The base layer cannot be deleted")
        if layer.locked:
            raise PreconditionError(f"Layer '{layer.name}' is locked")
        del self._layers[idx]
        self._invalidate(layer_id)
        return layer

    def move(self, layer_id: str, to_index: int) -> None:
        idx = self.index_of(layer_id)
        if self._layers[idx].is_base_layer:
            raise PreconditionError("The base layer cannot be reordered")
        if to_index < 1 or to_index >= len(self._layers):
            raise PreconditionError(f"Target index {to_index} is outside 1..{len(self._layers) - 1}")
        layer = self._layers.pop(idx)
        self._layers.insert(to_index, layer)

    def merge(self, layer_ids: Iterable[str]) -> Layer:
        """Flatten the selected layers into one, placed where the topmost of them was."""
        ids = list(dict.fromkeys(layer_ids))
        if len(ids) < 2:
            raise PreconditionError(f"Merging needs at least 2 layers, got {len(ids)}")
        indices = sorted(self.index_of(i) for i in ids)
        selected = [self._layers[i] for i in indices]
        for layer in selected:
            if layer.is_base_layer:
                raise PreconditionError("The base layer cannot be merged")
            if layer.locked:
                raise PreconditionError(f"Layer '{layer.name}' is locked")

        bottom = selected[0]
        canvas = np.zeros((bottom.height, bottom.width, 4), dtype=np.uint8)
        for layer in selected:
            arr = pil_to_np_rgba(self.layer_image(layer.layer_id))
            tile = _place(canvas.shape[:2], arr, layer.x - bottom.x, layer.y - bottom.y)
            if tile is not None:
                canvas = _blend(canvas, tile)

        extracted = sum(1 for l in self._layers if not l.is_base_layer)
        merged = Layer(
            name=f"Merged Layer {extracted + 1}",
            image=freeze(canvas),
            kind="merged",
            x=bottom.x,
            y=bottom.y,
        )
        insert_at = indices[-1] - (len(indices) - 1)
        for i in reversed(indices):
            self._invalidate(self._layers[i].layer_id)
            del self._layers[i]
        self._layers.insert(insert_at, merged)
        logger.info("Merged %d layers into '%s'", len(selected), merged.name)
        return merged

    # Non-pixel fields

    def set_visibility(self, layer_id: str, visible: bool) -> None:
        self.get(layer_id).visible = bool(visible)

    def set_opacity(self, layer_id: str, opacity: float) -> None:
        self.get(layer_id).opacity = min(1.0, max(0.0, float(opacity)))

    def rename(self, layer_id: str, name: str) -> None:
        self.get(layer_id).name = name

    def set_locked(self, layer_id: str, locked: bool) -> None:
        layer = self.get(layer_id)
        if layer.is_base_layer:
            raise PreconditionError("The base layer cannot be locked")
        layer.locked = bool(locked)

    # Rendering

    def visible_layers(self) -> List[Layer]:
        return [l for l in self._layers if l.visible]

    def render(self, out_size: Optional[Tuple[int, int]] = None, high_quality: bool = True) -> np.ndarray:
        """Composite the visible layers at native size, optionally resized to ``out_size``."""
        canvas = composite_layers(self.visible_layers(), self.canvas_size)
        if out_size is None or tuple(out_size) == self.canvas_size:
            return canvas
        resample = Image.Resampling.LANCZOS if high_quality else Image.Resampling.BILINEAR
        w, h = max(1, int(out_size[0])), max(1, int(out_size[1]))
        return pil_to_np_rgba(np_rgba_to_pil(canvas).resize((w, h), resample=resample))

    # History support

    def snapshot_layers(self) -> List[Layer]:
        return [l.clone() for l in self._layers]

    def restore(self, layers: Sequence[Layer]) -> None:
        self._layers = [l.clone() for l in layers]
        self._invalidate()

    def clear(self) -> None:
        self._layers = []
        self._invalidate()
