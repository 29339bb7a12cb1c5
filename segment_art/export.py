"""Layered-document export (Photoshop PSD)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple, Union

import numpy as np
from PIL import Image
from psd_tools import PSDImage
from psd_tools.api.layers import PixelLayer
from psd_tools.constants import ChannelID, Compression
from psd_tools.psd.layer_and_mask import ChannelData, ChannelInfo, MaskData

from segment_art.compositor import BASE_LAYER_NAME, LayerStack, composite_layers
from segment_art.errors import PreconditionError

logger = logging.getLogger(__name__)


@dataclass
class ExportLayer:
    name: str
    image: np.ndarray
    # greyscale transparency mask, None for the base layer
    mask: Optional[np.ndarray] = None
    x: int = 0
    y: int = 0
    visible: bool = True
    opacity: float = 1.0

    @property
    def size(self) -> Tuple[int, int]:
        return (int(self.image.shape[1]), int(self.image.shape[0]))


@dataclass
class LayeredDocument:
    width: int
    height: int
    # bottom to top, base first
    layers: List[ExportLayer] = field(default_factory=list)

    def merged(self) -> np.ndarray:
        return composite_layers(self.layers, (self.width, self.height))


def build_export(stack: LayerStack) -> LayeredDocument:
    """Flatten the stack into export records, base image first.

    Every layer except the base carries its alpha channel as a layer mask.
    """
    base = stack.base
    if base is None:
        raise PreconditionError("No image loaded")
    width, height = base.size
    doc = LayeredDocument(width=width, height=height)
    for layer in stack.layers:
        doc.layers.append(
            ExportLayer(
                name=BASE_LAYER_NAME if layer.is_base_layer else layer.name,
                image=layer.image,
                mask=None if layer.is_base_layer else np.array(layer.image[..., 3], dtype=np.uint8),
                x=int(layer.x),
                y=int(layer.y),
                visible=bool(layer.visible),
                opacity=float(layer.opacity),
            )
        )
    return doc


def _attach_mask(layer: PixelLayer, mask: np.ndarray, left: int, top: int) -> None:
    """Add a user layer mask channel covering the layer's bounds."""
    h, w = mask.shape
    record = layer._record
    record.mask_data = MaskData(top=top, left=left, bottom=top + h, right=left + w, background_color=0)
    data = ChannelData(compression=Compression.RAW, data=np.ascontiguousarray(mask, dtype=np.uint8).tobytes())
    record.channel_info.append(ChannelInfo(id=ChannelID.USER_LAYER_MASK, length=len(data.data) + 2))
    layer._channels.append(data)


def _to_psd(doc: LayeredDocument) -> PSDImage:
    psd = PSDImage.frompil(Image.fromarray(doc.merged()))
    for item in doc.layers:
        layer = PixelLayer.frompil(Image.fromarray(np.ascontiguousarray(item.image)), psd, item.name, item.y, item.x)
        if item.mask is not None:
            _attach_mask(layer, item.mask, item.x, item.y)
        layer.visible = item.visible
        layer.opacity = int(round(max(0.0, min(1.0, item.opacity)) * 255))
        # newer psd-tools releases append when given a parent
        if not any(existing is layer for existing in psd):
            psd.append(layer)
    return psd


def save_layered_document(target: Union[str, Path, BinaryIO], doc: LayeredDocument) -> None:
    """Write ``doc`` as a PSD to a path or binary file object."""
    psd = _to_psd(doc)
    if isinstance(target, (str, Path)):
        with open(target, "wb") as fh:
            psd.save(fh)
    else:
        psd.save(target)
    logger.info("Exported %d layers (%dx%d)", len(doc.layers), doc.width, doc.height)
