from __future__ import annotations

import base64
import binascii
from io import BytesIO
from typing import Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from segment_art.errors import DecodeError
from segment_art.mask_ops import mask_intensity

ImageSource = Union[bytes, bytearray, str]


def _raw_bytes(data: ImageSource) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    text = data.strip()
    if text.startswith("data:"):
        if "," not in text:
            raise DecodeError("Malformed data URL")
        text = text.split(",", 1)[1]
    try:
        return base64.b64decode(text, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise DecodeError("Image payload is not valid base64") from exc


def _open(data: ImageSource) -> Image.Image:
    raw = _raw_bytes(data)
    if not raw:
        raise DecodeError("Image payload is empty")
    try:
        img = Image.open(BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc
    return img


def freeze(arr: np.ndarray) -> np.ndarray:
    """Return ``arr`` flagged read-only so layers and snapshots cannot be edited in place."""
    arr.setflags(write=False)
    return arr


def decode_image(data: ImageSource) -> np.ndarray:
    """Decode PNG/JPEG bytes, base64 text or a data URL into a native-size HxWx4 array."""
    img = _open(data)
    return np.array(img.convert("RGBA"), dtype=np.uint8)


def decode_mask(data: ImageSource) -> np.ndarray:
    """Decode a mask image into an HxW intensity grid."""
    img = _open(data)
    if img.mode in ("L", "1", "P", "I", "I;16", "F"):
        return np.array(img.convert("L"), dtype=np.uint8)
    return mask_intensity(np.array(img.convert("RGBA"), dtype=np.uint8))


def encode_png(arr: np.ndarray, opaque: bool = False) -> bytes:
    """Encode an RGBA or L array as PNG. ``opaque`` flattens RGBA over white."""
    img = Image.fromarray(np.ascontiguousarray(arr, dtype=np.uint8))
    if opaque and img.mode == "RGBA":
        flat = Image.new("RGBA", img.size, (255, 255, 255, 255))
        flat.alpha_composite(img)
        img = flat.convert("RGB")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def encode_png_base64(arr: np.ndarray) -> str:
    return base64.b64encode(encode_png(arr)).decode("ascii")


def to_data_url(arr: np.ndarray) -> str:
    return f"data:image/png;base64,{encode_png_base64(arr)}"


def load_image_rgba(path: str) -> np.ndarray:
    with open(path, "rb") as fh:
        return decode_image(fh.read())


def save_image(path: str, img_rgba: np.ndarray) -> None:
    # Saving as PNG preserves alpha
    Image.fromarray(np.ascontiguousarray(img_rgba)).save(path, format="PNG")
