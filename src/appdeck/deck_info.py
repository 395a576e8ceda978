"""Deck hardware profiles.

One immutable ``DeviceProfile`` per known deck variant.  Adding a variant
means adding one entry to ``DECK_PROFILES``; nothing else changes.

Per-user tweaks (a different flip, a custom product ID for a clone) go
through ``merge_profile()`` which returns a new profile rather than
mutating the registry.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Tuple, Union

log = logging.getLogger(__name__)

# All known decks share one vendor ID.
ELGATO_VID = 0x0FD9

# Image frame header fields: report id, command, key, last flag,
# u16 payload length, u16 sequence
MIN_HEADER_LENGTH = 8


class ImageFormat(str, Enum):
    """Image encoding the deck firmware expects for key images."""
    JPEG = "JPEG"
    BMP = "BMP"


class CommandTemplate(NamedTuple):
    """Fixed-length feature report template.

    ``length`` is the full report length, ``offset`` is where the
    variable part starts (firmware string in a response, or the byte
    after ``data`` for commands with a value), ``data`` is the literal
    prefix starting with the report ID.
    """
    length: int
    offset: int
    data: bytes


@dataclass(frozen=True)
class DeviceProfile:
    """Hardware parameters for one deck variant.

    Attributes:
        name: Human-readable variant name.
        vendor_id / product_id: USB IDs used for enumeration.
        key_count: Number of keys (== columns * rows).
        key_layout: (columns, rows).
        key_size: (width, height) of one key image in pixels.
        key_flip: (horizontal, vertical) mirror applied before encoding.
        key_rotation: Display rotation in degrees (informational).
        key_state_offset: First key byte in an input report.
        image_format: Encoding of key images on the wire.
        report_size: (frame size, header length) of image reports.
        firmware_report / reset_report / brightness_report: Feature
            report templates.
    """
    name: str
    vendor_id: int
    product_id: int
    key_count: int
    key_layout: Tuple[int, int]
    key_size: Tuple[int, int]
    key_flip: Tuple[bool, bool]
    key_rotation: int
    key_state_offset: int
    image_format: ImageFormat
    report_size: Tuple[int, int]
    firmware_report: CommandTemplate
    reset_report: CommandTemplate
    brightness_report: CommandTemplate

    def __post_init__(self):
        columns, rows = self.key_layout
        if self.key_count != columns * rows:
            raise ValueError(
                f"{self.name}: key_count {self.key_count} != "
                f"{columns}x{rows} layout"
            )
        frame_size, header_length = self.report_size
        if frame_size <= header_length:
            raise ValueError(
                f"{self.name}: report frame size {frame_size} must exceed "
                f"header length {header_length}"
            )
        if header_length < MIN_HEADER_LENGTH:
            raise ValueError(
                f"{self.name}: header length {header_length} is shorter than "
                f"the {MIN_HEADER_LENGTH}-byte image header"
            )

    # -- Derived geometry -----------------------------------------------

    @property
    def columns(self) -> int:
        return self.key_layout[0]

    @property
    def rows(self) -> int:
        return self.key_layout[1]

    @property
    def key_width(self) -> int:
        return self.key_size[0]

    @property
    def key_height(self) -> int:
        return self.key_size[1]

    @property
    def tile_bytes(self) -> int:
        """Byte length of one RGBA key image."""
        return self.key_width * self.key_height * 4

    @property
    def grid_bytes(self) -> int:
        """Byte length of one RGBA image covering the whole key grid."""
        return self.key_count * self.tile_bytes

    @property
    def frame_size(self) -> int:
        return self.report_size[0]

    @property
    def header_length(self) -> int:
        return self.report_size[1]

    @property
    def chunk_size(self) -> int:
        """Image payload bytes carried by one frame."""
        return self.frame_size - self.header_length

    @property
    def input_report_length(self) -> int:
        return self.key_state_offset + self.key_count

    @property
    def reserved_key(self) -> int:
        """Top-right key index."""
        return self.columns - 1

    def key_xy(self, key: int) -> Tuple[int, int]:
        """Grid (column, row) of a key index (row-major)."""
        return key % self.columns, key // self.columns

    def key_index(self, column: int, row: int) -> int:
        return row * self.columns + column


# =========================================================================
# Variant table
# =========================================================================

class DeckType(Enum):
    MINI = "Stream Deck Mini"
    ORIGINAL = "Stream Deck Original"
    MK2 = "Stream Deck MK.2"
    XL = "Stream Deck XL"


# Report templates shared by the first-generation decks (Mini, Original)
_GEN1_FIRMWARE = CommandTemplate(17, 5, bytes([0x04]))
_GEN1_RESET = CommandTemplate(17, 0, bytes([0x0B, 0x63]))
_GEN1_BRIGHTNESS = CommandTemplate(17, 0, bytes([0x05, 0x55, 0xAA, 0xD1, 0x01]))

# ...and by the second generation (MK.2, XL)
_GEN2_FIRMWARE = CommandTemplate(32, 6, bytes([0x05]))
_GEN2_RESET = CommandTemplate(32, 0, bytes([0x03, 0x02]))
_GEN2_BRIGHTNESS = CommandTemplate(32, 0, bytes([0x03, 0x08]))

DECK_PROFILES: Dict[DeckType, DeviceProfile] = {
    DeckType.MINI: DeviceProfile(
        name=DeckType.MINI.value,
        vendor_id=ELGATO_VID, product_id=0x0063,
        key_count=6, key_layout=(3, 2), key_size=(80, 80),
        key_flip=(False, True), key_rotation=90, key_state_offset=1,
        image_format=ImageFormat.BMP, report_size=(1024, 16),
        firmware_report=_GEN1_FIRMWARE,
        reset_report=_GEN1_RESET,
        brightness_report=_GEN1_BRIGHTNESS,
    ),
    DeckType.ORIGINAL: DeviceProfile(
        name=DeckType.ORIGINAL.value,
        vendor_id=ELGATO_VID, product_id=0x0060,
        key_count=15, key_layout=(5, 3), key_size=(72, 72),
        key_flip=(True, True), key_rotation=0, key_state_offset=1,
        image_format=ImageFormat.BMP, report_size=(8191, 16),
        firmware_report=_GEN1_FIRMWARE,
        reset_report=_GEN1_RESET,
        brightness_report=_GEN1_BRIGHTNESS,
    ),
    DeckType.MK2: DeviceProfile(
        name=DeckType.MK2.value,
        vendor_id=ELGATO_VID, product_id=0x0080,
        key_count=15, key_layout=(5, 3), key_size=(72, 72),
        key_flip=(True, True), key_rotation=0, key_state_offset=4,
        image_format=ImageFormat.JPEG, report_size=(1024, 8),
        firmware_report=_GEN2_FIRMWARE,
        reset_report=_GEN2_RESET,
        brightness_report=_GEN2_BRIGHTNESS,
    ),
    DeckType.XL: DeviceProfile(
        name=DeckType.XL.value,
        vendor_id=ELGATO_VID, product_id=0x006C,
        key_count=32, key_layout=(8, 4), key_size=(96, 96),
        key_flip=(True, True), key_rotation=0, key_state_offset=4,
        image_format=ImageFormat.JPEG, report_size=(1024, 8),
        firmware_report=_GEN2_FIRMWARE,
        reset_report=_GEN2_RESET,
        brightness_report=_GEN2_BRIGHTNESS,
    ),
}

# Fields given as tuples in the dataclass; JSON overrides arrive as lists
_TUPLE_FIELDS = ("key_layout", "key_size", "key_flip", "report_size")
_TEMPLATE_FIELDS = ("firmware_report", "reset_report", "brightness_report")


def resolve_deck_type(deck_type: Union[DeckType, str]) -> DeckType:
    """Accept a DeckType, its value ("Stream Deck XL") or name ("xl")."""
    if isinstance(deck_type, DeckType):
        return deck_type
    for dt in DeckType:
        if deck_type == dt.value or deck_type.upper() == dt.name:
            return dt
    raise ValueError(f"Unknown deck type: {deck_type!r}")


def _coerce_override(name: str, value: Any) -> Any:
    if name in _TUPLE_FIELDS:
        return tuple(value)
    if name in _TEMPLATE_FIELDS and not isinstance(value, CommandTemplate):
        length, offset, *data = value
        return CommandTemplate(int(length), int(offset), bytes(data))
    if name == "image_format":
        return ImageFormat(value)
    return value


def merge_profile(
    profile: DeviceProfile, overrides: Optional[Dict[str, Any]] = None,
) -> DeviceProfile:
    """Return *profile* with *overrides* applied.

    Template overrides may be given as ``[length, offset, *bytes]``
    lists (the config file format).  Unknown field names raise
    ValueError; the merged profile is re-validated.
    """
    if not overrides:
        return profile
    known = {f.name for f in dataclasses.fields(DeviceProfile)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown profile field(s): {', '.join(sorted(unknown))}")
    changes = {k: _coerce_override(k, v) for k, v in overrides.items()}
    log.debug("Profile %s overrides: %s", profile.name, changes)
    return dataclasses.replace(profile, **changes)


def get_profile(
    deck_type: Union[DeckType, str] = DeckType.MK2,
    overrides: Optional[Dict[str, Any]] = None,
) -> DeviceProfile:
    """Look up a variant profile, optionally merged with overrides."""
    return merge_profile(DECK_PROFILES[resolve_deck_type(deck_type)], overrides)


def find_profile(vendor_id: int, product_id: int) -> Optional[DeviceProfile]:
    """Reverse lookup by USB IDs.  Returns None for unknown devices."""
    for profile in DECK_PROFILES.values():
        if (profile.vendor_id, profile.product_id) == (vendor_id, product_id):
            return profile
    return None
