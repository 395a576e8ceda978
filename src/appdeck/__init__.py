"""
appdeck - Button deck driver and app switcher

Drives USB-HID button decks (Mini, Original, MK.2, XL): key images,
brightness, reset, key press/release events, with automatic reconnect
after unplug.  An app switcher on top renders a menu of app icons and
per-app keypad grids.

Usage:
    # As a library
    from appdeck import DeckDriver, KeyReleased
    driver = DeckDriver("xl")
    driver.events.subscribe(KeyReleased, lambda e: print(e.key))
    driver.open()

    # Command line
    appdeck detect    # List attached decks
    appdeck watch     # Print key events
    appdeck run --app NAME ICON KEYPAD...
"""

from appdeck.__version__ import __version__

# Core exports
from appdeck.deck_info import DECK_PROFILES, DeckType, DeviceProfile, get_profile
from appdeck.deck import DeckDriver
from appdeck.app_deck import AppSwitcher
from appdeck.events import (
    Closed,
    Disconnected,
    EventBus,
    KeyPressed,
    KeyReleased,
    KeyStatesRefreshed,
    Opened,
)
from appdeck.errors import (
    DeckError,
    KeyRangeError,
    SizeMismatchError,
    TransportError,
    UnsupportedFormatError,
)

__all__ = [
    # Version
    "__version__",
    # Core
    "DeckDriver",
    "AppSwitcher",
    # Profiles
    "DECK_PROFILES",
    "DeckType",
    "DeviceProfile",
    "get_profile",
    # Events
    "EventBus",
    "Opened",
    "Closed",
    "Disconnected",
    "KeyStatesRefreshed",
    "KeyPressed",
    "KeyReleased",
    # Errors
    "DeckError",
    "SizeMismatchError",
    "UnsupportedFormatError",
    "KeyRangeError",
    "TransportError",
]
