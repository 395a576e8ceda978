"""Image codec service: JPEG encode/decode, file loading.

Pure Python (PIL + numpy), no device dependencies.  Pixel buffers are
raw RGBA, row-major, 4 bytes per pixel; that is the only pixel format
the driver and app switcher handle.
"""
from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import numpy as np
from PIL import Image as PILImage

# Cap decompression to 16x the XL grid (768x384). Prevents decompression
# bombs from crafted icon files causing OOM.
PILImage.MAX_IMAGE_PIXELS = 768 * 384 * 16

DEFAULT_JPEG_QUALITY = 100


@dataclass
class DecodedImage:
    """Result of ``ImageService.decode``."""
    width: int
    height: int
    data: bytes  # RGBA


class ImageService:
    """Stateless image codec utilities."""

    @staticmethod
    def to_array(width: int, height: int, rgba: bytes) -> np.ndarray:
        """View an RGBA buffer as a (height, width, 4) uint8 array."""
        return np.frombuffer(rgba, dtype=np.uint8).reshape(height, width, 4)

    @staticmethod
    def to_pil(width: int, height: int, rgba: bytes) -> PILImage.Image:
        return PILImage.frombytes('RGBA', (width, height), bytes(rgba))

    @staticmethod
    def encode_jpeg(width: int, height: int, rgba: bytes,
                    quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
        """Encode an RGBA buffer as JPEG (alpha is dropped).

        Raises:
            ValueError: if ``rgba`` is not ``width*height*4`` bytes.
        """
        if len(rgba) != width * height * 4:
            raise ValueError(
                f"RGBA buffer is {len(rgba)} bytes, expected {width * height * 4}"
            )
        img = ImageService.to_pil(width, height, rgba).convert('RGB')
        buf = io.BytesIO()
        img.save(buf, format='JPEG', quality=quality)
        return buf.getvalue()

    @staticmethod
    def decode(data: bytes) -> DecodedImage:
        """Decode any Pillow-readable image bytes to RGBA."""
        with PILImage.open(io.BytesIO(data)) as img:
            rgba = img.convert('RGBA')
            return DecodedImage(rgba.width, rgba.height, rgba.tobytes())

    @staticmethod
    def load_rgba(path: Union[str, Path], size: Tuple[int, int]) -> bytes:
        """Load an image file, scale it to *size* and return RGBA bytes.

        Raises:
            FileNotFoundError: if *path* is not a file.
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Image file not found: {path}")
        with PILImage.open(path) as img:
            rgba = img.convert('RGBA')
            if rgba.size != tuple(size):
                rgba = rgba.resize(tuple(size), PILImage.Resampling.LANCZOS)
            return rgba.tobytes()

    @staticmethod
    def solid_color(r: int, g: int, b: int, w: int, h: int) -> bytes:
        """Create a solid-color opaque RGBA buffer."""
        return PILImage.new('RGBA', (w, h), (r, g, b, 255)).tobytes()
