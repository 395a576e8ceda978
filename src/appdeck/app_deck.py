"""
App switcher built on ``DeckDriver``.

The deck shows either a *menu* (one icon per loaded app, in load order)
or one *app*.  An app is a set of full-grid "keypad" images; each key
picks which keypad supplies its tile, so an app can show alternate key
states without re-uploading the whole grid.

The top-right key is reserved: inside an app it always returns to the
menu (and shows the "close" system icon when one is set).

Rendered tiles are cached per keypad, and keys whose tile is entirely
black (alpha ignored) are flagged blank and drawn with the driver's
shared blank tile.  Content IDs passed to the driver carry the app's
(or icon's) load version, so reloading under the same name never reuses
a stale tile.

Every operation and driver event handler runs under the driver's lock,
so a menu redraw and an app switch triggered from the input thread or
a reconnect never interleave key by key.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .deck import DeckDriver
from .errors import SizeMismatchError
from .events import EventBus, KeyPressed, KeyReleased, Opened
from .protocol import check_key
from .services.image import ImageService

log = logging.getLogger(__name__)

ImageSource = Union[bytes, bytearray, str, Path]

CLOSE_ICON = "close"


@dataclass
class Keypad:
    """One full-grid RGBA image plus its per-key tile cache."""
    data: bytes
    tiles: Dict[int, bytes] = field(default_factory=dict, repr=False)


@dataclass
class App:
    name: str
    icon: bytes = field(repr=False)
    keypads: List[Keypad] = field(repr=False)
    key_blanks: List[bool] = field(repr=False)
    key_states: List[int] = field(repr=False)
    version: int = 0


_versions = itertools.count(1)


def is_blank_tile(width: int, height: int, tile: bytes) -> bool:
    """True if every pixel is black, ignoring the alpha channel."""
    rgb = ImageService.to_array(width, height, tile)[:, :, :3]
    return not rgb.any()


class AppSwitcher:
    """Menu/app rendering and key routing for one deck.

    Args:
        driver: The deck driver to render through.
        listen: Start the driver's input thread whenever the deck opens.

    Key events for the active app are re-published on ``self.events``
    with ``app`` set to the app name; menu navigation, the reserved
    key and blank keys are consumed here.
    """

    def __init__(self, driver: DeckDriver, listen: bool = True):
        self.driver = driver
        self.events = EventBus()
        self._listen = listen
        self._apps: Dict[str, App] = {}
        self._icons: Dict[str, Tuple[bytes, int]] = {}
        self._active: Optional[str] = None

        profile = driver.profile
        self._screen = np.zeros(
            (profile.rows * profile.key_height, profile.columns * profile.key_width, 4),
            dtype=np.uint8,
        )

        driver.events.subscribe(Opened, self._on_open)
        driver.events.subscribe(KeyPressed, self._on_key_pressed)
        driver.events.subscribe(KeyReleased, self._on_key_released)

    # ── Properties ───────────────────────────────────────────────────

    @property
    def profile(self):
        return self.driver.profile

    @property
    def active_app(self) -> Optional[App]:
        """The active app, or None while the menu is shown."""
        if self._active is None:
            return None
        return self._apps.get(self._active)

    @property
    def app_names(self) -> List[str]:
        return list(self._apps)

    def get_app(self, name: str) -> Optional[App]:
        return self._apps.get(name)

    # ── Image inputs ─────────────────────────────────────────────────

    def _load_image(self, source: ImageSource, size) -> bytes:
        if isinstance(source, (str, Path)):
            return ImageService.load_rgba(source, size)
        return bytes(source)

    def set_icon(self, name: str, source: ImageSource) -> None:
        """Register a system icon (e.g. ``"close"``) of key size."""
        profile = self.profile
        icon = self._load_image(source, profile.key_size)
        if len(icon) != profile.tile_bytes:
            raise SizeMismatchError(f"{name} icon", profile.tile_bytes, len(icon))
        with self.driver.lock:
            self._icons[name] = (icon, next(_versions))
            if name == CLOSE_ICON and self.active_app is not None:
                self.render_app_key(profile.reserved_key)

    # ── App collection ───────────────────────────────────────────────

    def load_app(self, name: str, icon: ImageSource,
                 keypads: Sequence[ImageSource]) -> App:
        """Add (or replace) an app.

        Args:
            name: Unique app name.
            icon: Key-sized RGBA bytes or an image file path.
            keypads: Full-grid RGBA buffers or image file paths.

        Raises:
            SizeMismatchError: icon or keypad has the wrong byte length.
            ValueError: no keypads given.
            FileNotFoundError: an image path does not exist.
        """
        profile = self.profile
        grid_size = (profile.columns * profile.key_width, profile.rows * profile.key_height)

        icon_data = self._load_image(icon, profile.key_size)
        if len(icon_data) != profile.tile_bytes:
            raise SizeMismatchError(f"{name} icon", profile.tile_bytes, len(icon_data))
        if not keypads:
            raise ValueError(f"App {name!r} needs at least one keypad image")
        pads = []
        for i, source in enumerate(keypads):
            data = self._load_image(source, grid_size)
            if len(data) != profile.grid_bytes:
                raise SizeMismatchError(f"{name} keypad {i}", profile.grid_bytes, len(data))
            pads.append(Keypad(data))

        app = App(
            name=name,
            icon=icon_data,
            keypads=pads,
            key_blanks=[False] * profile.key_count,
            key_states=[0] * profile.key_count,
            version=next(_versions),
        )
        with self.driver.lock:
            self._apps[name] = app
            log.info("Loaded app %r (%d keypad(s))", name, len(pads))

            if self.active_app is None:
                self.show_menu()
            elif self._active == name:
                self._render_all_app_keys()
        return app

    def unload_app(self, name: str) -> bool:
        with self.driver.lock:
            if name not in self._apps:
                return False
            del self._apps[name]
            log.info("Unloaded app %r", name)
            if self._active is None or self._active == name:
                self.show_menu()
            return True

    # ── Rendering ────────────────────────────────────────────────────

    def _write_key(self, key: int, pixels: Optional[bytes] = None,
                   content_id=None) -> None:
        """Send a tile to the deck and mirror it into the screen buffer."""
        profile = self.profile
        self.driver.set_key_image(key, pixels, content_id)
        column, row = profile.key_xy(key)
        w, h = profile.key_size
        tile = self.driver.blank_tile if pixels is None else pixels
        self._screen[row * h:(row + 1) * h, column * w:(column + 1) * w] = (
            ImageService.to_array(w, h, tile)
        )

    def show_menu(self) -> None:
        """Show app icons in load order, blank the remaining keys."""
        with self.driver.lock:
            self._active = None
            key_count = self.profile.key_count
            apps = list(self._apps.values())[:key_count]
            for key, app in enumerate(apps):
                self._write_key(key, app.icon, ("icon", app.name, app.version))
            for key in range(len(apps), key_count):
                self._write_key(key)

    def show_app(self, name: str) -> bool:
        with self.driver.lock:
            if name not in self._apps:
                return False
            self._active = name
            log.debug("Showing app %r", name)
            self._render_all_app_keys()
            return True

    def _render_all_app_keys(self) -> None:
        for key in range(self.profile.key_count):
            self.render_app_key(key)

    def _extract_tile(self, keypad: Keypad, key: int) -> bytes:
        profile = self.profile
        w, h = profile.key_size
        column, row = profile.key_xy(key)
        grid = ImageService.to_array(profile.columns * w, profile.rows * h, keypad.data)
        tile = grid[row * h:(row + 1) * h, column * w:(column + 1) * w]
        return np.ascontiguousarray(tile).tobytes()

    def render_app_key(self, key: int) -> None:
        """Draw one key of the active app."""
        profile = self.profile
        with self.driver.lock:
            app = self.active_app
            if app is None:
                return
            check_key(profile, key)

            close_icon = self._icons.get(CLOSE_ICON)
            if key == profile.reserved_key and close_icon is not None:
                pixels, version = close_icon
                self._write_key(key, pixels, ("system", CLOSE_ICON, version))
                return

            if app.key_blanks[key]:
                self._write_key(key)
                return

            state = app.key_states[key]
            keypad = app.keypads[state]
            content_id = ("tile", app.name, app.version, key, state)
            tile = keypad.tiles.get(key)
            if tile is not None:
                self._write_key(key, tile, content_id)
                return

            tile = self._extract_tile(keypad, key)
            if is_blank_tile(profile.key_width, profile.key_height, tile):
                app.key_blanks[key] = True
                self._write_key(key)
            else:
                keypad.tiles[key] = tile
                self._write_key(key, tile, content_id)

    def set_app_key_state(self, name: str, key: int, state: int) -> bool:
        """Switch which keypad image supplies *key* for app *name*."""
        check_key(self.profile, key)
        with self.driver.lock:
            app = self._apps.get(name)
            if app is None or not 0 <= state < len(app.keypads):
                return False
            app.key_states[key] = state
            if self._active == name:
                self.render_app_key(key)
            return True

    def screenshot(self, quality: int = 100) -> bytes:
        """JPEG of everything currently shown on the deck."""
        with self.driver.lock:
            pixels = self._screen.tobytes()
        height, width = self._screen.shape[:2]
        return ImageService.encode_jpeg(width, height, pixels, quality)

    # ── Driver events ────────────────────────────────────────────────

    def _on_open(self, event: Opened) -> None:
        with self.driver.lock:
            self.driver.reset_device()
            if self.active_app is not None:
                self._render_all_app_keys()
            else:
                self.show_menu()
            if self._listen:
                self.driver.start_listening()

    def _on_key_pressed(self, event: KeyPressed) -> None:
        with self.driver.lock:
            app = self.active_app
            if app is None:
                return
            if event.key == self.profile.reserved_key or app.key_blanks[event.key]:
                return
            forwarded = replace(event, app=app.name)
        self.events.publish(forwarded)

    def _on_key_released(self, event: KeyReleased) -> None:
        with self.driver.lock:
            app = self.active_app
            if app is None:
                names = list(self._apps)
                if event.key < len(names):
                    self.show_app(names[event.key])
                return
            if event.key == self.profile.reserved_key:
                self.show_menu()
                return
            if app.key_blanks[event.key]:
                return
            forwarded = replace(event, app=app.name)
        # Subscribers run outside the lock and may call back in
        self.events.publish(forwarded)
