from __future__ import annotations

import math
import unittest
from io import BytesIO
from unittest import mock

import numpy as np
from PIL import Image

from segment_art import fill
from segment_art.fill import (
    InpaintFillStrategy,
    LocalFillStrategy,
    average_surrounding_color,
    build_fill_mask,
    canonical_size,
    letterbox,
    local_fill,
    unletterbox,
)
from segment_art.io import encode_png


def _with_hole(w: int, h: int, rgb, hole) -> np.ndarray:
    img = np.zeros((h, w, 4), dtype=np.uint8)
    img[..., :3] = rgb
    img[..., 3] = 255
    y0, y1, x0, x1 = hole
    img[y0:y1, x0:x1, 3] = 0
    return img


def _reference_average(img: np.ndarray):
    """Straightforward per-pixel walk of the ring sampling."""
    h, w = img.shape[:2]
    count = 0
    sums = [0, 0, 0]
    for y in range(h):
        for x in range(w):
            if img[y, x, 3] >= 200:
                continue
            for radius in range(3, 11):
                for i in range(8):
                    angle = 2.0 * math.pi * i / 8
                    sx = x + math.floor(math.cos(angle) * radius + 0.5)
                    sy = y + math.floor(math.sin(angle) * radius + 0.5)
                    if 0 <= sx < w and 0 <= sy < h and img[sy, sx, 3] >= 200:
                        count += 1
                        for c in range(3):
                            sums[c] += int(img[sy, sx, c])
                if count > 50:
                    break
    if count == 0:
        return (255, 255, 255)
    return tuple(int(math.floor(s / count + 0.5)) for s in sums)


class LocalFillTests(unittest.TestCase):
    def test_fill_is_deterministic_and_uses_surrounding_colour(self) -> None:
        img = _with_hole(20, 20, (0, 255, 0), (8, 12, 8, 12))
        first = local_fill(img)
        second = local_fill(img)
        self.assertEqual(first.tobytes(), second.tobytes())
        self.assertTrue(np.all(first[8:12, 8:12] == (0, 255, 0, 255)))
        np.testing.assert_array_equal(first[:8], img[:8])

    def test_fully_transparent_image_falls_back_to_white(self) -> None:
        img = np.zeros((6, 6, 4), dtype=np.uint8)
        out = local_fill(img)
        self.assertTrue(np.all(out == 255))

    def test_opaque_image_is_returned_unchanged(self) -> None:
        img = _with_hole(4, 4, (1, 2, 3), (0, 0, 0, 0))
        out = local_fill(img)
        np.testing.assert_array_equal(out, img)
        self.assertIsNot(out, img)

    def test_matches_sequential_sampling(self) -> None:
        rng = np.random.default_rng(11)
        img = rng.integers(0, 256, size=(24, 24, 4), dtype=np.uint8)
        img[..., 3] = np.where(rng.random((24, 24)) < 0.3, 0, 255)
        expected = _reference_average(img)
        self.assertEqual(average_surrounding_color(img), expected)
        with mock.patch.object(fill, "_CHUNK", 7):
            self.assertEqual(average_surrounding_color(img), expected)

    def test_rejects_non_rgba(self) -> None:
        with self.assertRaises(ValueError):
            local_fill(np.zeros((2, 2, 3), dtype=np.uint8))


class FillMaskTests(unittest.TestCase):
    def test_mask_is_grown_and_feathered(self) -> None:
        img = _with_hole(40, 40, (9, 9, 9), (15, 25, 15, 25))
        mask = build_fill_mask(img, expand_pixels=2, feather_radius=5)
        self.assertEqual(int(mask[20, 20]), 255)
        self.assertGreater(int(mask[20, 13]), 0)
        self.assertEqual(int(mask[0, 0]), 0)

    def test_zero_expand_and_feather_is_the_transparency_map(self) -> None:
        img = _with_hole(10, 10, (9, 9, 9), (2, 4, 2, 4))
        mask = build_fill_mask(img, expand_pixels=0, feather_radius=0)
        self.assertEqual(int(np.count_nonzero(mask)), 4)


class LetterboxTests(unittest.TestCase):
    def test_canonical_sizes(self) -> None:
        self.assertEqual(canonical_size(256, 10), 256)
        self.assertEqual(canonical_size(257, 1), 512)
        self.assertEqual(canonical_size(512, 512), 512)
        self.assertEqual(canonical_size(2000, 5), 1024)

    def test_letterbox_centres_on_white(self) -> None:
        img = _with_hole(300, 200, (0, 0, 255), (0, 0, 0, 0))
        boxed, placement = letterbox(img)
        self.assertEqual(boxed.shape, (512, 512, 3))
        self.assertEqual((placement.width, placement.height), (512, 341))
        self.assertEqual((placement.x, placement.y), (0, 85))
        self.assertEqual(tuple(int(v) for v in boxed[0, 0]), (255, 255, 255))
        self.assertEqual(tuple(int(v) for v in boxed[256, 256]), (0, 0, 255))

    def test_unletterbox_restores_native_size(self) -> None:
        img = _with_hole(300, 200, (0, 0, 255), (0, 0, 0, 0))
        boxed, placement = letterbox(img)
        restored = unletterbox(boxed, placement)
        self.assertEqual(restored.shape, (200, 300, 4))
        self.assertEqual(tuple(int(v) for v in restored[100, 150]), (0, 0, 255, 255))


class _FakeInpainter:
    def __init__(self, rgb=(0, 0, 255)):
        self.rgb = rgb
        self.calls = []

    async def inpaint(self, image_png: bytes, mask_png: bytes, prompt: str, size: int) -> bytes:
        self.calls.append((image_png, mask_png, prompt, size))
        return encode_png(np.full((size, size, 4), self.rgb + (255,), dtype=np.uint8))


class FillStrategyTests(unittest.IsolatedAsyncioTestCase):
    async def test_local_strategy(self) -> None:
        img = _with_hole(20, 20, (0, 255, 0), (8, 12, 8, 12))
        out = await LocalFillStrategy().fill(img)
        np.testing.assert_array_equal(out, local_fill(img))

    async def test_inpaint_strategy_blends_generated_pixels_into_the_hole(self) -> None:
        img = _with_hole(40, 40, (255, 0, 0), (15, 25, 15, 25))
        client = _FakeInpainter()
        out = await InpaintFillStrategy(client, "grass").fill(img)

        self.assertEqual(len(client.calls), 1)
        image_png, mask_png, prompt, size = client.calls[0]
        self.assertEqual((prompt, size), ("grass", 256))
        for payload in (image_png, mask_png):
            with Image.open(BytesIO(payload)) as sent:
                self.assertEqual(sent.mode, "RGB")
                self.assertEqual(sent.size, (256, 256))

        self.assertEqual(out.shape, img.shape)
        self.assertTrue(np.all(out[..., 3] == 255))
        self.assertEqual(tuple(int(v) for v in out[20, 20, :3]), (0, 0, 255))
        self.assertEqual(tuple(int(v) for v in out[0, 0, :3]), (255, 0, 0))
        np.testing.assert_array_equal(img[15:25, 15:25, 3], 0)


if __name__ == "__main__":
    unittest.main()
