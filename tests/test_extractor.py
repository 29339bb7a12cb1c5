from __future__ import annotations

import unittest

import numpy as np

from segment_art.errors import DecodeError
from segment_art.extractor import extract_encoded, extract_region, should_invert
from segment_art.io import encode_png


def _opaque(w: int, h: int, rgb=(200, 30, 40)) -> np.ndarray:
    img = np.zeros((h, w, 4), dtype=np.uint8)
    img[..., :3] = rgb
    img[..., 3] = 255
    return img


class RegionExtractorTests(unittest.TestCase):
    def test_background_label_inverts_mostly_white_mask(self) -> None:
        mask = np.full((8, 8), 255, dtype=np.uint8)
        black = [(0, 0), (1, 3), (2, 6), (4, 4), (6, 1), (7, 7)]
        for y, x in black:
            mask[y, x] = 0
        self.assertEqual(int(np.count_nonzero(mask == 255)), 58)

        src = _opaque(16, 16)
        result = extract_region(src, mask, label="background_wall")
        self.assertTrue(result.inverted)

        expected = np.zeros((16, 16), dtype=bool)
        for y, x in black:
            expected[2 * y:2 * y + 2, 2 * x:2 * x + 2] = True
        np.testing.assert_array_equal(result.layer_image[..., 3] > 0, expected)

    def test_strict_removal_pixels_always_leave_the_base(self) -> None:
        mask = np.array([[0, 129, 150, 200, 201, 255]], dtype=np.uint8)
        src = _opaque(6, 1)
        result = extract_region(src, mask, label="cat", invert=False)
        np.testing.assert_array_equal(result.layer_image[0, :, 3], [0, 255, 255, 255, 255, 255])
        np.testing.assert_array_equal(result.base_image[0, :, 3], [255, 255, 255, 255, 0, 0])

    def test_rgb_is_left_untouched(self) -> None:
        src = _opaque(4, 4, rgb=(10, 20, 30))
        mask = np.zeros((2, 2), dtype=np.uint8)
        mask[0, 0] = 255
        result = extract_region(src, mask, invert=False)
        np.testing.assert_array_equal(result.layer_image[..., :3], src[..., :3])
        np.testing.assert_array_equal(result.base_image[..., :3], src[..., :3])

    def test_heuristic_and_override(self) -> None:
        mostly_white = np.full((4, 4), 255, dtype=np.uint8)
        mostly_white[0, 0] = 0
        self.assertTrue(should_invert(mostly_white, "person"))
        self.assertTrue(should_invert(np.zeros((4, 4), dtype=np.uint8), "bg"))
        self.assertFalse(should_invert(np.zeros((4, 4), dtype=np.uint8), "person"))

        result = extract_region(_opaque(4, 4), mostly_white, label="background", invert=False)
        self.assertFalse(result.inverted)
        self.assertEqual(int(np.count_nonzero(result.layer_image[..., 3])), 15)

    def test_outputs_are_fresh_and_read_only(self) -> None:
        src = _opaque(3, 3)
        before = src.copy()
        result = extract_region(src, np.full((3, 3), 255, dtype=np.uint8), invert=False)
        np.testing.assert_array_equal(src, before)
        self.assertFalse(result.layer_image.flags.writeable)
        self.assertFalse(result.base_image.flags.writeable)
        self.assertEqual(result.layer_image.shape, src.shape)

    def test_undecodable_inputs_abort(self) -> None:
        png = encode_png(_opaque(2, 2))
        with self.assertRaises(DecodeError):
            extract_encoded(png, b"not an image", label="x")
        with self.assertRaises(DecodeError):
            extract_encoded("%%%", png, label="x")
        with self.assertRaises(DecodeError):
            extract_region(np.zeros((2, 2, 3), dtype=np.uint8), np.zeros((2, 2), dtype=np.uint8))

    def test_encoded_mask_matches_array_path(self) -> None:
        src = _opaque(4, 4)
        mask = np.zeros((4, 4), dtype=np.uint8)
        mask[:2, :] = 255
        direct = extract_region(src, mask, label="sky")
        encoded = extract_encoded(encode_png(src), encode_png(mask), label="sky")
        np.testing.assert_array_equal(direct.layer_image, encoded.layer_image)
        np.testing.assert_array_equal(direct.base_image, encoded.base_image)


if __name__ == "__main__":
    unittest.main()
