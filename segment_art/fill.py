"""Hole filling for the base image.

Two interchangeable strategies share ``async fill(image) -> image``: a local
average-colour fill and remote AI inpainting. Neither touches the layer stack.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Protocol, Tuple

import numpy as np
from PIL import Image

from segment_art.io import decode_image, encode_png
from segment_art.mask_ops import FILL_ALPHA_THRESHOLD, dilate, gaussian_blur, transparency_mask

logger = logging.getLogger(__name__)

RING_RADII = tuple(range(3, 11))
SAMPLES_PER_RING = 8
# sampling stops once more than this many opaque samples were collected
MIN_SAMPLES = 50
FALLBACK_COLOR = (255, 255, 255)
CANONICAL_SIZES = (256, 512, 1024)
_CHUNK = 4096


def _ring_offsets(radius: int) -> Tuple[np.ndarray, np.ndarray]:
    angles = 2.0 * math.pi * np.arange(SAMPLES_PER_RING) / SAMPLES_PER_RING
    dx = np.floor(np.cos(angles) * radius + 0.5).astype(np.int64)
    dy = np.floor(np.sin(angles) * radius + 0.5).astype(np.int64)
    return dx, dy


def _ring_samples(
    rgb: np.ndarray,
    opaque: np.ndarray,
    ys: np.ndarray,
    xs: np.ndarray,
    radius: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-pixel count and RGB sum of opaque samples on one ring."""
    h, w = opaque.shape
    counts = np.zeros(ys.size, dtype=np.int64)
    sums = np.zeros((ys.size, 3), dtype=np.int64)
    for dx, dy in zip(*_ring_offsets(radius)):
        sx = xs + dx
        sy = ys + dy
        inside = (sx >= 0) & (sx < w) & (sy >= 0) & (sy < h)
        sxc = np.clip(sx, 0, w - 1)
        syc = np.clip(sy, 0, h - 1)
        hit = inside & opaque[syc, sxc]
        counts += hit
        sums += rgb[syc, sxc] * hit[:, None]
    return counts, sums


def average_surrounding_color(rgba: np.ndarray, alpha_threshold: int = FILL_ALPHA_THRESHOLD) -> Tuple[int, int, int]:
    """One global colour averaged from rings around the transparent pixels.

    Pixels are visited in row-major order and sample rings of radius 3..10;
    once the running sample count passes ``MIN_SAMPLES`` every later pixel
    stops after its first ring.
    """
    src = np.asarray(rgba)
    transparent = src[..., 3] < alpha_threshold
    opaque = ~transparent
    ys, xs = np.nonzero(transparent)
    rgb = src[..., :3].astype(np.int64)
    n_rings = len(RING_RADII)

    total_count = 0
    total_sum = np.zeros(3, dtype=np.int64)
    start = 0
    saturated = False
    while start < ys.size and not saturated:
        stop = min(ys.size, start + _CHUNK)
        cy, cx = ys[start:stop], xs[start:stop]
        rings = [_ring_samples(rgb, opaque, cy, cx, r) for r in RING_RADII]
        counts = np.stack([c for c, _ in rings], axis=1).reshape(-1)
        sums = np.stack([s for _, s in rings], axis=1).reshape(-1, 3)

        running = total_count + np.cumsum(counts)
        over = np.flatnonzero(running > MIN_SAMPLES)
        if over.size == 0:
            total_count = int(running[-1])
            total_sum += sums.sum(axis=0)
            start = stop
            continue
        k = int(over[0])
        total_count += int(counts[:k + 1].sum())
        total_sum += sums[:k + 1].sum(axis=0)
        start += k // n_rings + 1
        saturated = True

    if saturated and start < ys.size:
        counts, sums = _ring_samples(rgb, opaque, ys[start:], xs[start:], RING_RADII[0])
        total_count += int(counts.sum())
        total_sum += sums.sum(axis=0)

    if total_count == 0:
        return FALLBACK_COLOR
    avg = np.floor(total_sum / total_count + 0.5).astype(int)
    return (int(avg[0]), int(avg[1]), int(avg[2]))


def local_fill(rgba: np.ndarray, alpha_threshold: int = FILL_ALPHA_THRESHOLD) -> np.ndarray:
    """Paint every pixel with alpha < ``alpha_threshold`` one averaged colour, fully opaque.

    Deterministic and coarse; falls back to white when no opaque sample exists.
    """
    src = np.asarray(rgba)
    if src.dtype != np.uint8 or src.ndim != 3 or src.shape[2] != 4:
        raise ValueError("rgba must be HxWx4 uint8")
    out = src.copy()
    transparent = src[..., 3] < alpha_threshold
    if not np.any(transparent):
        return out
    color = average_surrounding_color(src, alpha_threshold)
    out[transparent, :3] = color
    out[transparent, 3] = 255
    return out


def build_fill_mask(
    rgba: np.ndarray,
    expand_pixels: int = 2,
    feather_radius: int = 5,
    alpha_threshold: int = FILL_ALPHA_THRESHOLD,
) -> np.ndarray:
    """White where the base is transparent, grown then feathered for blending context."""
    mask = transparency_mask(rgba, alpha_threshold)
    if expand_pixels > 0:
        mask = dilate(mask, expand_pixels)
    if feather_radius > 0:
        mask = gaussian_blur(mask, feather_radius)
    return mask


@dataclass(frozen=True)
class Placement:
    """Where the native image sits inside a letterboxed square."""

    size: int
    x: int
    y: int
    width: int
    height: int
    native_size: Tuple[int, int]


def canonical_size(width: int, height: int) -> int:
    longest = max(width, height)
    for size in CANONICAL_SIZES:
        if longest <= size:
            return size
    return CANONICAL_SIZES[-1]


def letterbox(arr: np.ndarray, prefill: bool = False) -> Tuple[np.ndarray, Placement]:
    """Fit an image or mask into a white, opaque, canonical-size square (RGB)."""
    src = np.asarray(arr, dtype=np.uint8)
    img = Image.fromarray(src).convert("RGBA")
    w, h = img.size
    size = canonical_size(w, h)
    scale = size / max(w, h)
    sw = max(1, int(round(w * scale)))
    sh = max(1, int(round(h * scale)))
    x = (size - sw) // 2
    y = (size - sh) // 2

    resized = img.resize((sw, sh), resample=Image.Resampling.LANCZOS)
    if prefill:
        resized = Image.fromarray(local_fill(np.array(resized, dtype=np.uint8)))

    canvas = Image.new("RGBA", (size, size), (255, 255, 255, 255))
    canvas.alpha_composite(resized, dest=(x, y))
    placement = Placement(size=size, x=x, y=y, width=sw, height=sh, native_size=(w, h))
    return np.array(canvas.convert("RGB"), dtype=np.uint8), placement


def unletterbox(result: np.ndarray, placement: Placement) -> np.ndarray:
    """Crop a square service result back to the image area at native size (RGBA)."""
    img = Image.fromarray(np.asarray(result, dtype=np.uint8)).convert("RGBA")
    if img.size != (placement.size, placement.size):
        img = img.resize((placement.size, placement.size), resample=Image.Resampling.LANCZOS)
    box = (placement.x, placement.y, placement.x + placement.width, placement.y + placement.height)
    restored = img.crop(box).resize(placement.native_size, resample=Image.Resampling.LANCZOS)
    return np.array(restored, dtype=np.uint8)


def merge_inpainted(base: np.ndarray, generated: np.ndarray, fill_mask: np.ndarray) -> np.ndarray:
    """Composite the original over the generated pixels, then blend by the feathered mask."""
    b = base.astype(np.float32) / 255.0
    g = generated.astype(np.float32) / 255.0
    ba = b[..., 3:4]
    under = b[..., :3] * ba + g[..., :3] * (1.0 - ba)
    m = (fill_mask.astype(np.float32) / 255.0)[..., None]
    rgb = under * (1.0 - m) + g[..., :3] * m
    out = np.empty_like(base)
    out[..., :3] = np.clip(np.rint(rgb * 255.0), 0, 255).astype(np.uint8)
    out[..., 3] = 255
    return out


class InpaintingService(Protocol):
    async def inpaint(self, image_png: bytes, mask_png: bytes, prompt: str, size: int) -> bytes:
        ...


class LocalFillStrategy:
    name = "local"

    def __init__(self, alpha_threshold: int = FILL_ALPHA_THRESHOLD):
        self.alpha_threshold = alpha_threshold

    async def fill(self, image: np.ndarray) -> np.ndarray:
        return await asyncio.to_thread(local_fill, image, self.alpha_threshold)


class InpaintFillStrategy:
    name = "inpaint"

    def __init__(
        self,
        client: InpaintingService,
        prompt: str,
        expand_pixels: int = 2,
        feather_radius: int = 5,
    ):
        self.client = client
        self.prompt = prompt
        self.expand_pixels = expand_pixels
        self.feather_radius = feather_radius

    def _prepare(self, image: np.ndarray) -> Tuple[np.ndarray, bytes, bytes, Placement]:
        mask = build_fill_mask(image, self.expand_pixels, self.feather_radius)
        boxed_image, placement = letterbox(image, prefill=True)
        boxed_mask, _ = letterbox(mask)
        return mask, encode_png(boxed_image), encode_png(boxed_mask), placement

    def _finish(self, image: np.ndarray, mask: np.ndarray, result: bytes, placement: Placement) -> np.ndarray:
        generated = unletterbox(decode_image(result), placement)
        return merge_inpainted(image, generated, mask)

    async def fill(self, image: np.ndarray) -> np.ndarray:
        mask, image_png, mask_png, placement = await asyncio.to_thread(self._prepare, image)
        logger.info("Requesting %dx%d inpaint for %dx%d image", placement.size, placement.size, *placement.native_size)
        result = await self.client.inpaint(image_png, mask_png, self.prompt, placement.size)
        return await asyncio.to_thread(self._finish, image, mask, result, placement)
