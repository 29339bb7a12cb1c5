from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from segment_art.errors import DecodeError
from segment_art.io import ImageSource, decode_image, decode_mask, freeze
from segment_art.mask_ops import count_white_black, mask_intensity, resample_mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractionThresholds:
    """Empirically tuned cut-offs for applying segmentation masks."""

    # mask intensity above which a pixel is copied into the layer
    keep: int = 128
    # stricter cut-off for clearing pixels from the base image
    remove: int = 200
    # white > ratio * black marks a mask as inverted
    inversion_ratio: float = 3.0
    background_tokens: Tuple[str, ...] = ("background", "bg")


DEFAULT_THRESHOLDS = ExtractionThresholds()


@dataclass(frozen=True)
class Extraction:
    label: str
    layer_image: np.ndarray
    base_image: np.ndarray
    inverted: bool


def _check_rgba(image: np.ndarray) -> np.ndarray:
    arr = np.asarray(image)
    if arr.dtype != np.uint8 or arr.ndim != 3 or arr.shape[2] != 4:
        raise DecodeError("Source image must be a decoded HxWx4 uint8 array")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise DecodeError("Source image is empty")
    return arr


def should_invert(mask: np.ndarray, label: str = "", thresholds: ExtractionThresholds = DEFAULT_THRESHOLDS) -> bool:
    """Guess whether the white part of ``mask`` marks what to *exclude*.

    Best effort: background-like labels and masks that are mostly "on" are
    treated as inverted.
    """
    label_norm = (label or "").lower()
    if any(token in label_norm for token in thresholds.background_tokens):
        return True
    white, black = count_white_black(mask, thresholds.keep)
    logger.debug("Mask %r: %d white / %d black pixels", label, white, black)
    return white > black * thresholds.inversion_ratio


def extract_region(
    source: np.ndarray,
    mask: np.ndarray,
    label: str = "",
    invert: Optional[bool] = None,
    thresholds: ExtractionThresholds = DEFAULT_THRESHOLDS,
) -> Extraction:
    """Split ``source`` into a full-canvas layer and a holed-out base image.

    ``invert=None`` applies the inversion heuristic; ``True``/``False`` override it.
    RGB outside the kept region is left as-is; alpha is the only membership signal.
    """
    src = _check_rgba(source)
    h, w = src.shape[:2]
    mask_arr = mask_intensity(mask)
    if mask_arr.size == 0:
        raise DecodeError("Mask is empty or has an unsupported layout")
    sampled = resample_mask(mask_arr, w, h)

    inverted = should_invert(mask_arr, label, thresholds) if invert is None else bool(invert)
    keep = sampled <= thresholds.keep if inverted else sampled > thresholds.keep

    layer = src.copy()
    layer[~keep, 3] = 0

    base = src.copy()
    base[sampled > thresholds.remove, 3] = 0

    return Extraction(label=label, layer_image=freeze(layer), base_image=freeze(base), inverted=inverted)


def extract_encoded(
    source: ImageSource,
    mask: ImageSource,
    label: str = "",
    invert: Optional[bool] = None,
    thresholds: ExtractionThresholds = DEFAULT_THRESHOLDS,
) -> Extraction:
    """Decode both inputs first so a bad payload aborts before any pixel work."""
    src = decode_image(source)
    mask_arr = decode_mask(mask)
    return extract_region(src, mask_arr, label=label, invert=invert, thresholds=thresholds)
