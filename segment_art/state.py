from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np

from segment_art.mask_ops import BoundingBox

_creation_counter = itertools.count(1)


def _new_layer_id() -> str:
    return f"layer-{uuid.uuid4().hex}"


@dataclass
class Layer:
    name: str
    image: np.ndarray
    kind: str = "layer"
    layer_id: str = field(default_factory=_new_layer_id)

    # Placement in native canvas coords; extracted layers are full-canvas at (0, 0)
    x: int = 0
    y: int = 0

    visible: bool = True
    locked: bool = False
    opacity: float = 1.0
    is_base_layer: bool = False
    created_order: int = field(default_factory=lambda: next(_creation_counter))

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def clone(self) -> "Layer":
        # Pixels are read-only and shared; every other field is copied.
        return replace(self)


@dataclass
class BrushSettings:
    size: float = 24.0
    color: Tuple[int, int, int] = (255, 255, 255)
    opacity: float = 1.0
    hardness: float = 0.5
    spacing: float = 0.1

    # "normal" paints, "erase" removes coverage (destination-out)
    mode: str = "normal"
    # "normal" solid line, "soft" radial falloff dabs, "stroke" spaced hard dabs
    brush_type: str = "normal"


@dataclass
class DetectedRegion:
    label: str
    # Base64 PNG, no data-URL prefix
    mask: str
    bounds: BoundingBox = field(default_factory=BoundingBox)
    score: Optional[float] = None
