"""Services layer: pure Python helpers shared by the driver and the CLI.

ImageService wraps Pillow/numpy so the rest of the package only deals
in raw RGBA byte buffers.
"""
from __future__ import annotations

from .image import DecodedImage, ImageService

__all__ = [
    "DecodedImage",
    "ImageService",
]
