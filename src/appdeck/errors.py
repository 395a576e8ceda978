"""Exceptions raised by the deck driver and codec.

Caller errors (wrong buffer size, bad key index, unsupported image
format) always propagate.  ``TransportError`` is raised by the HID
transports; the driver catches it and reports failure as a ``False``
return value instead.
"""


class DeckError(Exception):
    """Base class for all appdeck errors."""


class SizeMismatchError(DeckError, ValueError):
    """A pixel buffer does not have the length the profile requires."""

    def __init__(self, what: str, expected: int, actual: int):
        super().__init__(f"{what}: expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class UnsupportedFormatError(DeckError, NotImplementedError):
    """The profile asks for an image format we have no encoder for."""


class KeyRangeError(DeckError, IndexError):
    """Key index outside ``0 <= key < key_count``."""


class TransportError(DeckError, OSError):
    """HID read/write/feature-report failure (usually a disconnect)."""
