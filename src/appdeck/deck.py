"""
Deck driver: one session object per physical deck slot.

Lifecycle::

    Closed --open()--> Open --close()--> Closed
      |  ^                |
      |  | retry timer    | liveness poll: device gone
      v  |                v
    (Connecting)  <--  Disconnected event, open() again

``open()`` never gives up: while the deck is absent a retry timer calls
``open()`` again every ``poll_interval`` seconds until it succeeds or
``close()`` is called.  Once open, a liveness timer re-enumerates at the
same interval and reconnects after a physical unplug, so callers never
re-invoke ``open()`` themselves.

Every transport operation runs under one re-entrant lock, and a session
generation counter turns timer callbacks that were already in flight
when ``close()`` ran into no-ops.

Writes and commands while closed are silent no-ops (``False``).  Failed
input reads return ``False``; the liveness poll is what detects the
disconnect.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Tuple, Union

from .deck_info import DeckType, DeviceProfile, get_profile, merge_profile
from .device_hid import (
    DEFAULT_READ_TIMEOUT_MS,
    HidDeviceInfo,
    HidTransport,
    create_transport,
)
from .errors import SizeMismatchError, TransportError
from .events import (
    Closed,
    DeckEvent,
    Disconnected,
    EventBus,
    KeyPressed,
    KeyReleased,
    KeyStatesRefreshed,
    Opened,
)
from .protocol import (
    check_key,
    check_tile,
    encode_key_image,
    firmware_request,
    flip_pixels,
    pack_brightness_frame,
    pack_image_frames,
    pack_reset_frame,
    parse_firmware_version,
    unpack_key_states,
)
from .services.image import DEFAULT_JPEG_QUALITY, ImageService

log = logging.getLogger(__name__)

# Reconnect retry and liveness poll interval (seconds)
POLL_INTERVAL_S = 1.0

# Pause between empty/failed reads in watch_input()
LISTEN_IDLE_S = 0.01

# How long close() waits for the input thread to finish
LISTEN_JOIN_TIMEOUT_S = 2.0

# Content ID recorded for keys showing the shared blank tile
BLANK_CONTENT_ID = "__blank__"


class DeckDriver:
    """Stateful driver for a single deck.

    Args:
        deck_type: Variant to drive (ignored when *profile* is given).
        overrides: Profile fields to override (see ``merge_profile``).
        profile: Explicit profile instead of a registry lookup.
        transport: HID transport; defaults to ``create_transport(backend)``.
        backend: ``auto``, ``hidapi`` or ``pyusb``.
        poll_interval: Retry/liveness interval in seconds.
        jpeg_quality: Quality for key image encoding.
        read_timeout: Input report read timeout in ms.
        timer_factory: ``threading.Timer``-compatible factory.
        clock: Monotonic clock in seconds, used for hold durations.
    """

    def __init__(
        self,
        deck_type: Union[DeckType, str] = DeckType.MK2,
        overrides: Optional[Dict[str, Any]] = None,
        *,
        profile: Optional[DeviceProfile] = None,
        transport: Optional[HidTransport] = None,
        backend: str = "auto",
        poll_interval: float = POLL_INTERVAL_S,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        read_timeout: int = DEFAULT_READ_TIMEOUT_MS,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], float] = time.monotonic,
    ):
        if profile is None:
            self._profile = get_profile(deck_type, overrides)
        else:
            self._profile = merge_profile(profile, overrides)
        self._transport = transport if transport is not None else create_transport(backend)
        self._poll_interval = poll_interval
        self._jpeg_quality = jpeg_quality
        self._read_timeout = read_timeout
        self._timer_factory = timer_factory
        self._clock = clock

        self.events = EventBus()

        self._lock = threading.RLock()
        self._generation = 0
        self._retry_timer: Any = None
        self._liveness_timer: Any = None
        self._listener: Optional[threading.Thread] = None

        self._is_open = False
        self._hid_info: Optional[HidDeviceInfo] = None
        self._firmware = ""

        key_count = self._profile.key_count
        self._press_started: List[Optional[float]] = [None] * key_count
        self._content_ids: List[Optional[Hashable]] = [None] * key_count
        self._blank_tile = bytes(self._profile.tile_bytes)
        self._blank_image: Optional[bytes] = None

    @classmethod
    def from_settings(cls, settings=None, deck_type=None, **kwargs) -> 'DeckDriver':
        """Build a driver from ``appdeck.conf.settings`` (or another Settings).

        Explicit keyword arguments win over the stored settings.
        """
        if settings is None:
            from .conf import settings
        kwargs.setdefault('overrides', settings.profile_overrides)
        kwargs.setdefault('backend', settings.backend)
        kwargs.setdefault('poll_interval', settings.poll_interval)
        kwargs.setdefault('jpeg_quality', settings.jpeg_quality)
        return cls(deck_type or settings.deck_type, **kwargs)

    # ── Properties ───────────────────────────────────────────────────

    @property
    def profile(self) -> DeviceProfile:
        return self._profile

    @property
    def transport(self) -> HidTransport:
        return self._transport

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def hid_info(self) -> Optional[HidDeviceInfo]:
        """Metadata of the device found by the last successful open()."""
        return self._hid_info

    @property
    def firmware(self) -> str:
        return self._firmware

    @property
    def key_states(self) -> Tuple[bool, ...]:
        return tuple(started is not None for started in self._press_started)

    @property
    def blank_tile(self) -> bytes:
        """All-zero RGBA key image."""
        return self._blank_tile

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and self._listener.is_alive()

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock guarding every transport operation.

        Held while timer callbacks run and while ``Opened`` is published,
        so layers that keep their own deck state can share it.
        """
        return self._lock

    # ── Timers ───────────────────────────────────────────────────────

    def _schedule(self, callback: Callable[[], Any]) -> Any:
        generation = self._generation

        def fire():
            with self._lock:
                if generation != self._generation:
                    log.debug("Dropping stale timer callback %s", callback.__name__)
                    return
                callback()

        timer = self._timer_factory(self._poll_interval, fire)
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_timers(self) -> None:
        self._generation += 1
        for timer in (self._retry_timer, self._liveness_timer):
            if timer is not None:
                timer.cancel()
        self._retry_timer = None
        self._liveness_timer = None

    # ── Connection lifecycle ─────────────────────────────────────────

    def open(self) -> bool:
        """Open the deck, or schedule a retry if it is not attached.

        Closes any current session first.  Returns True if the deck is
        now open.
        """
        with self._lock:
            self._close()
            profile = self._profile
            try:
                devices = self._transport.enumerate(profile.vendor_id, profile.product_id)
            except TransportError as e:
                log.warning("Enumeration failed: %s", e)
                devices = []

            info = next(
                (d for d in devices
                 if (d.vendor_id, d.product_id) == (profile.vendor_id, profile.product_id)),
                None,
            )
            if info is None:
                log.debug("%s not found, retrying in %.1fs", profile.name, self._poll_interval)
                self._retry_timer = self._schedule(self.open)
                return False

            try:
                self._transport.open(info)
            except TransportError as e:
                log.warning("Cannot open %s: %s (retrying)", profile.name, e)
                self._retry_timer = self._schedule(self.open)
                return False

            self._is_open = True
            self._hid_info = info
            self._firmware = self._read_firmware()
            log.info("Opened %s [%04x:%04x] firmware=%s serial=%s",
                     profile.name, info.vendor_id, info.product_id,
                     self._firmware or "?", info.serial or "?")
            self._liveness_timer = self._schedule(self._check_alive)
            self.events.publish(Opened())
            return True

    def close(self) -> bool:
        """Stop reconnecting and release the deck.

        Waits (up to ``LISTEN_JOIN_TIMEOUT_S``) for the input thread to
        exit unless called from that thread.  Returns True if a device
        had been open.
        """
        was_open = self._close()
        listener = self._listener
        if listener is not None and listener is not threading.current_thread():
            listener.join(LISTEN_JOIN_TIMEOUT_S)
            if listener.is_alive():
                log.warning("Input thread still running after close()")
        return was_open

    def _close(self) -> bool:
        with self._lock:
            self._cancel_timers()
            was_open = self._release()
            if was_open:
                log.info("Closed %s", self._profile.name)
                self.events.publish(Closed())
            return was_open

    def _release(self) -> bool:
        """Drop the handle and per-session state without notifying."""
        if not self._is_open:
            return False
        try:
            self._transport.close()
        except TransportError as e:
            log.debug("Transport close: %s", e)
        self._is_open = False
        key_count = self._profile.key_count
        self._press_started = [None] * key_count
        self._content_ids = [None] * key_count
        return True

    def _check_alive(self) -> None:
        """Liveness poll: reconnect if the deck vanished."""
        if not self._is_open:
            return
        profile = self._profile
        try:
            present = bool(self._transport.enumerate(profile.vendor_id, profile.product_id))
        except TransportError as e:
            log.debug("Liveness enumeration failed: %s", e)
            present = False

        if present:
            self._liveness_timer = self._schedule(self._check_alive)
            return

        log.info("%s disconnected, reconnecting", profile.name)
        self._release()
        self.events.publish(Disconnected())
        self.open()

    def _read_firmware(self) -> str:
        report_id, length = firmware_request(self._profile)
        try:
            report = self._transport.get_feature_report(report_id, length)
        except TransportError as e:
            log.warning("Firmware query failed: %s", e)
            return ""
        return parse_firmware_version(self._profile, report)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()

    # ── Output ───────────────────────────────────────────────────────

    def _encoded_blank(self) -> bytes:
        if self._blank_image is None:
            self._blank_image = encode_key_image(
                self._profile, self._blank_tile, self._jpeg_quality,
            )
        return self._blank_image

    def set_key_image(
        self,
        key: int,
        pixels: Optional[bytes] = None,
        content_id: Optional[Hashable] = None,
    ) -> bool:
        """Show an RGBA image on one key.

        Args:
            key: Key index.
            pixels: RGBA buffer of ``profile.tile_bytes``; None = blank.
            content_id: Opaque version of *pixels*.  When it equals the
                key's last written ID the write is skipped.

        Returns:
            True if frames were written.

        Raises:
            KeyRangeError, SizeMismatchError, UnsupportedFormatError
        """
        profile = self._profile
        check_key(profile, key)
        blank = pixels is None
        if blank:
            content_id = BLANK_CONTENT_ID
        else:
            check_tile(profile, pixels)

        with self._lock:
            if not self._is_open:
                return False
            if content_id is not None and self._content_ids[key] == content_id:
                return False

            if blank:
                image = self._encoded_blank()
            else:
                image = encode_key_image(
                    profile, flip_pixels(profile, pixels), self._jpeg_quality,
                )
            frames = pack_image_frames(profile, key, image)
            try:
                for frame in frames:
                    self._transport.write(frame)
            except TransportError as e:
                log.warning("Key %d image write failed: %s", key, e)
                self._content_ids[key] = None
                return False
            self._content_ids[key] = content_id
            return True

    def set_key_file(self, key: int, path: Union[str, Path]) -> bool:
        """Load an image file, scale it to the key size and show it."""
        pixels = ImageService.load_rgba(path, self._profile.key_size)
        return self.set_key_image(key, pixels)

    def clear_keys(self) -> None:
        """Blank every key."""
        for key in range(self._profile.key_count):
            self.set_key_image(key)

    def set_brightness(self, percent: int) -> bool:
        """Set backlight brightness; values outside 0..100 are clamped."""
        return self._send_feature(pack_brightness_frame(self._profile, percent), "brightness")

    def reset_device(self) -> bool:
        """Reset the deck to its boot logo."""
        with self._lock:
            sent = self._send_feature(pack_reset_frame(self._profile), "reset")
            if sent:
                # The deck no longer shows what we last wrote
                self._content_ids = [None] * self._profile.key_count
            return sent

    def _send_feature(self, frame: bytes, what: str) -> bool:
        with self._lock:
            if not self._is_open:
                return False
            try:
                self._transport.send_feature_report(frame)
            except TransportError as e:
                log.warning("%s command failed: %s", what, e)
                return False
            log.debug("Sent %s command: %s", what, frame[:8].hex())
            return True

    # ── Input ────────────────────────────────────────────────────────

    def poll_input(self) -> bool:
        """Read one input report and publish key transitions.

        Returns True if a report was read and decoded.  Returns False
        when closed, on timeout, or on a transport failure.
        """
        events: List[DeckEvent] = []
        with self._lock:
            if not self._is_open:
                return False
            profile = self._profile
            try:
                report = self._transport.read(profile.input_report_length, self._read_timeout)
            except TransportError as e:
                log.debug("Input read failed (device likely disconnected): %s", e)
                return False
            if not report:
                return False
            try:
                states = unpack_key_states(profile, report)
            except SizeMismatchError as e:
                log.debug("Ignoring input report: %s", e)
                return False

            now = self._clock()
            for key, pressed in enumerate(states):
                started = self._press_started[key]
                if pressed and started is None:
                    self._press_started[key] = now
                    events.append(KeyPressed(key))
                elif not pressed and started is not None:
                    self._press_started[key] = None
                    events.append(KeyReleased(key, (now - started) * 1000.0))
            events.append(KeyStatesRefreshed(tuple(states)))

        for event in events:
            self.events.publish(event)
        return True

    def watch_input(self) -> Iterator[Tuple[bool, ...]]:
        """Yield key states after every report read while the deck is open.

        Ends (without error) as soon as the deck is closed or lost.
        """
        while self._is_open:
            if self.poll_input():
                yield self.key_states
            elif self._is_open:
                time.sleep(LISTEN_IDLE_S)

    def start_listening(self) -> bool:
        """Run ``watch_input`` on a daemon thread.

        The thread survives reconnects and exits once the deck stays
        closed.  Returns False if already listening or not open.
        """
        with self._lock:
            if self._listener is not None or not self._is_open:
                return False
            self._listener = threading.Thread(
                target=self._listen_loop, name="appdeck-input", daemon=True,
            )
            self._listener.start()
            return True

    def _listen_loop(self) -> None:
        try:
            while True:
                for _ in self.watch_input():
                    pass
                with self._lock:
                    if not self._is_open:
                        self._listener = None
                        log.debug("Input listener stopped")
                        return
        finally:
            with self._lock:
                if self._listener is threading.current_thread():
                    self._listener = None

    def __repr__(self) -> str:
        state = "open" if self._is_open else "closed"
        return f"DeckDriver({self._profile.name!r}, {state})"
