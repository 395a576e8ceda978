"""
Deck wire protocol: pure packet builders and parsers.

No I/O happens here; ``deck.DeckDriver`` feeds the results to a
``HidTransport``.

Image write (output report, one or more frames per key image)::

    [0x02,          # report ID
     0x07,          # command: set key image
     key,           # zero-based key index
     last,          # 1 on the frame that completes the image
     len_lo, len_hi,  # payload bytes in this frame (LE16)
     seq_lo, seq_hi]  # zero-based frame number (LE16)
    + zero padding up to the profile header length
    + payload, zero-padded to the profile frame size

Feature reports (brightness, reset, firmware query) are built from the
profile's ``CommandTemplate``s.

Input report: ``key_count`` bytes starting at ``key_state_offset``,
nonzero = pressed.
"""

from __future__ import annotations

import logging
import struct
from typing import List, Optional, Tuple

import numpy as np

from .deck_info import CommandTemplate, DeviceProfile, ImageFormat
from .errors import KeyRangeError, SizeMismatchError, UnsupportedFormatError
from .services.image import DEFAULT_JPEG_QUALITY, ImageService

log = logging.getLogger(__name__)

# =========================================================================
# Constants
# =========================================================================

IMAGE_REPORT_ID = 0x02
IMAGE_COMMAND = 0x07

# report ID, command, key, last flag, LE16 length, LE16 sequence
IMAGE_HEADER = struct.Struct('<BBBBHH')

BRIGHTNESS_MIN = 0
BRIGHTNESS_MAX = 100


# =========================================================================
# Validation helpers
# =========================================================================

def check_key(profile: DeviceProfile, key: int) -> None:
    """Raise KeyRangeError unless ``0 <= key < key_count``."""
    if not 0 <= key < profile.key_count:
        raise KeyRangeError(
            f"Key {key} out of range for {profile.name} "
            f"(0..{profile.key_count - 1})"
        )


def check_tile(profile: DeviceProfile, pixels: bytes, what: str = "key image") -> None:
    if len(pixels) != profile.tile_bytes:
        raise SizeMismatchError(what, profile.tile_bytes, len(pixels))


# =========================================================================
# Image reports
# =========================================================================

def pack_image_frames(profile: DeviceProfile, key: int, image: bytes) -> List[bytes]:
    """Split an encoded key image into fixed-size output report frames.

    Frames come back in ascending sequence order; exactly the final one
    carries the last-frame flag.  An empty image still produces one
    (final, empty) frame.
    """
    check_key(profile, key)
    chunk_size = profile.chunk_size
    pad_header = b'\x00' * (profile.header_length - IMAGE_HEADER.size)

    frames = []
    remaining = len(image)
    sequence = 0
    offset = 0
    while True:
        chunk = image[offset:offset + chunk_size]
        remaining -= len(chunk)
        last = 1 if remaining <= 0 else 0
        header = IMAGE_HEADER.pack(
            IMAGE_REPORT_ID, IMAGE_COMMAND, key, last, len(chunk), sequence,
        )
        frame = header + pad_header + chunk
        frames.append(frame.ljust(profile.frame_size, b'\x00'))
        if last:
            break
        offset += chunk_size
        sequence += 1

    log.debug("Key %d image: %d bytes in %d frame(s)", key, len(image), len(frames))
    return frames


def parse_image_header(frame: bytes) -> Tuple[int, int, int, bool, int, int]:
    """Unpack (report_id, command, key, last, length, sequence) from a frame."""
    report_id, command, key, last, length, sequence = IMAGE_HEADER.unpack_from(frame)
    return report_id, command, key, bool(last), length, sequence


# =========================================================================
# Feature reports
# =========================================================================

def pack_command_frame(template: CommandTemplate, value: Optional[int] = None) -> bytes:
    """Build a feature report from *template*.

    Literal bytes go at offset 0.  When *value* is given it is written
    at ``template.offset + len(template.data)``, right after the literal
    prefix for all known templates.
    """
    if len(template.data) > template.length:
        raise SizeMismatchError("command template", template.length, len(template.data))
    frame = bytearray(template.length)
    frame[:len(template.data)] = template.data
    if value is not None:
        pos = template.offset + len(template.data)
        if pos >= template.length:
            raise SizeMismatchError("command template", pos + 1, template.length)
        frame[pos] = value & 0xFF
    return bytes(frame)


def clamp_brightness(percent: int) -> int:
    return max(BRIGHTNESS_MIN, min(BRIGHTNESS_MAX, int(percent)))


def pack_brightness_frame(profile: DeviceProfile, percent: int) -> bytes:
    """Brightness command; out-of-range values are clamped to 0..100."""
    return pack_command_frame(profile.brightness_report, clamp_brightness(percent))


def pack_reset_frame(profile: DeviceProfile) -> bytes:
    return pack_command_frame(profile.reset_report)


def firmware_request(profile: DeviceProfile) -> Tuple[int, int]:
    """(report_id, length) to pass to ``get_feature_report``."""
    template = profile.firmware_report
    return template.data[0], template.length


def parse_firmware_version(profile: DeviceProfile, report: bytes) -> str:
    """Extract the ASCII firmware version from a feature report.

    The string starts at the template offset and ends at the first NUL
    (or the end of the report).
    """
    start = profile.firmware_report.offset
    end = report.find(b'\x00', start)
    if end < 0:
        end = len(report)
    return bytes(report[start:end]).decode('ascii', errors='replace').strip()


# =========================================================================
# Input reports
# =========================================================================

def unpack_key_states(profile: DeviceProfile, report: bytes) -> List[bool]:
    """Decode per-key pressed flags from a raw input report."""
    if len(report) < profile.input_report_length:
        raise SizeMismatchError("input report", profile.input_report_length, len(report))
    start = profile.key_state_offset
    return [b != 0 for b in report[start:start + profile.key_count]]


# =========================================================================
# Pixels
# =========================================================================

def flip_pixels(profile: DeviceProfile, pixels: bytes) -> bytes:
    """Mirror a key image per the profile's (horizontal, vertical) flags.

    With neither flag set the input is returned as-is.  Works on whole
    RGBA pixels, so applying it twice restores the original buffer.
    """
    flip_h, flip_v = profile.key_flip
    if not (flip_h or flip_v):
        return pixels
    check_tile(profile, pixels)
    arr = ImageService.to_array(profile.key_width, profile.key_height, pixels)
    if flip_v:
        arr = arr[::-1, :, :]
    if flip_h:
        arr = arr[:, ::-1, :]
    return np.ascontiguousarray(arr).tobytes()


def encode_key_image(profile: DeviceProfile, pixels: bytes,
                     quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Encode an RGBA key image in the profile's wire format.

    Raises:
        SizeMismatchError: wrong buffer length.
        UnsupportedFormatError: the profile wants BMP.
    """
    check_tile(profile, pixels)
    if profile.image_format is ImageFormat.JPEG:
        return ImageService.encode_jpeg(
            profile.key_width, profile.key_height, pixels, quality,
        )
    raise UnsupportedFormatError(
        f"{profile.name}: {profile.image_format.value} key images are not implemented"
    )
