#!/usr/bin/env python3
"""
appdeck - Command Line Interface

Entry points for the appdeck package.
"""

import argparse
import json
import logging
import sys
import time

from appdeck.__version__ import __version__


def _setup_logging(verbose=0):
    """Configure root logging from the -v count (filter out noisy PIL)."""
    if verbose >= 2:
        logging.basicConfig(level=logging.DEBUG, format='[%(levelname)s] %(name)s: %(message)s')
        logging.getLogger('PIL').setLevel(logging.WARNING)
    elif verbose == 1:
        logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING)


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="appdeck",
        description="Button deck driver and app switcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    appdeck detect                  List attached decks
    appdeck info                    Show profile and firmware
    appdeck brightness 40           Dim the backlight
    appdeck send 0 icon.png         Show an image on key 0
    appdeck clear                   Blank every key
    appdeck watch                   Print key presses
    appdeck run --app music music.png music-keys.png
    appdeck config set deck_type xl
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv)"
    )
    parser.add_argument("--deck", "-d", help="Deck type, e.g. 'mk2', 'xl' (default: from config)")
    parser.add_argument("--backend", "-b", choices=("auto", "hidapi", "pyusb"),
                        help="HID backend (default: from config)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("detect", help="List attached decks")
    subparsers.add_parser("info", help="Show deck profile and firmware")

    brightness_parser = subparsers.add_parser("brightness", help="Set backlight brightness")
    brightness_parser.add_argument("percent", type=int, help="0-100 (clamped)")

    subparsers.add_parser("reset", help="Reset the deck to its boot logo")

    send_parser = subparsers.add_parser("send", help="Show an image file on one key")
    send_parser.add_argument("key", type=int, help="Key index")
    send_parser.add_argument("image", help="Image file (scaled to key size)")

    clear_parser = subparsers.add_parser("clear", help="Blank one key or all keys")
    clear_parser.add_argument("key", type=int, nargs="?", help="Key index (default: all)")

    subparsers.add_parser("watch", help="Print key press/release events")

    run_parser = subparsers.add_parser("run", help="Run the app switcher")
    run_parser.add_argument(
        "--app", "-a",
        action="append", nargs="+", metavar="ARG",
        help="NAME ICON KEYPAD [KEYPAD ...] (repeatable)"
    )
    run_parser.add_argument("--close-icon", help="Icon shown on the reserved key inside apps")

    config_parser = subparsers.add_parser("config", help="Show or change settings")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Print current settings")
    set_parser = config_sub.add_parser("set", help="Change one setting")
    set_parser.add_argument("key", help="Setting name")
    set_parser.add_argument("value", help="New value (JSON or plain string)")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    deck, backend = args.deck, args.backend
    if args.command == "detect":
        return detect(backend=backend)
    elif args.command == "info":
        return show_info(deck=deck, backend=backend)
    elif args.command == "brightness":
        return set_brightness(args.percent, deck=deck, backend=backend)
    elif args.command == "reset":
        return reset_device(deck=deck, backend=backend)
    elif args.command == "send":
        return send_image(args.key, args.image, deck=deck, backend=backend)
    elif args.command == "clear":
        return clear_keys(args.key, deck=deck, backend=backend)
    elif args.command == "watch":
        return watch(deck=deck, backend=backend)
    elif args.command == "run":
        return run_switcher(args.app or [], close_icon=args.close_icon, deck=deck, backend=backend)
    elif args.command == "config":
        if args.config_command == "set":
            return config_set(args.key, args.value)
        return config_show()

    return 0


# =========================================================================
# Helpers
# =========================================================================

def _make_driver(deck=None, backend=None):
    """Build a DeckDriver from config, with CLI overrides."""
    from appdeck.deck import DeckDriver

    kwargs = {}
    if backend:
        kwargs['backend'] = backend
    return DeckDriver.from_settings(deck_type=deck, **kwargs)


def _open_once(deck=None, backend=None):
    """Open the deck for a one-shot command. Returns None if absent."""
    driver = _make_driver(deck, backend)
    if not driver.open():
        # Stop the retry timer open() scheduled
        driver.close()
        print(f"No {driver.profile.name} found.")
        return None
    return driver


def _apply_brightness(driver):
    from appdeck.conf import settings
    driver.set_brightness(settings.brightness)


def _wait_forever():
    while True:
        time.sleep(1)


def _format_device(dev):
    """Format an enumerated device for display."""
    from appdeck.deck_info import find_profile

    profile = find_profile(dev.vendor_id, dev.product_id)
    name = profile.name if profile else (dev.product or "Unknown")
    vid_pid = f"[{dev.vendor_id:04x}:{dev.product_id:04x}]"
    serial = f" serial={dev.serial}" if dev.serial else ""
    return f"{name} {vid_pid} {dev.path}{serial} ({dev.backend})"


# =========================================================================
# Commands
# =========================================================================

def detect(backend=None):
    """List every attached deck of a known variant."""
    try:
        from appdeck.conf import settings
        from appdeck.device_hid import create_transport, find_decks

        devices = find_decks(create_transport(backend or settings.backend))
        if not devices:
            print("No deck detected.")
            return 1
        for i, dev in enumerate(devices, 1):
            print(f"[{i}] {_format_device(dev)}")
        return 0
    except Exception as e:
        print(f"Error: {e}")
        return 1


def show_info(deck=None, backend=None):
    """Show the active profile and, if attached, the deck's firmware."""
    try:
        from appdeck.device_hid import get_backend_availability

        driver = _make_driver(deck, backend)
        profile = driver.profile
        columns, rows = profile.key_layout
        width, height = profile.key_size
        print(f"Deck:       {profile.name} [{profile.vendor_id:04x}:{profile.product_id:04x}]")
        print(f"Keys:       {profile.key_count} ({columns}x{rows}, {width}x{height} px)")
        print(f"Format:     {profile.image_format.value}")
        print(f"Reports:    {profile.frame_size} bytes, {profile.header_length} byte header")
        backends = ", ".join(
            f"{name}={'yes' if ok else 'no'}"
            for name, ok in get_backend_availability().items()
        )
        print(f"Backends:   {backends}")

        if driver.open():
            try:
                info = driver.hid_info
                print(f"Firmware:   {driver.firmware or 'unknown'}")
                print(f"Serial:     {info.serial or 'unknown'}")
                print(f"Path:       {info.path}")
            finally:
                driver.close()
        else:
            driver.close()
            print("Status:     not connected")
        return 0
    except Exception as e:
        print(f"Error: {e}")
        return 1


def set_brightness(percent, deck=None, backend=None):
    """Set backlight brightness and remember it."""
    try:
        from appdeck.conf import settings
        from appdeck.protocol import clamp_brightness

        driver = _open_once(deck, backend)
        if driver is None:
            return 1
        try:
            ok = driver.set_brightness(percent)
        finally:
            driver.close()
        if not ok:
            print("Error: brightness command failed")
            return 1
        percent = clamp_brightness(percent)
        settings.set('brightness', percent)
        print(f"Brightness set to {percent}%")
        return 0
    except Exception as e:
        print(f"Error: {e}")
        return 1


def reset_device(deck=None, backend=None):
    """Reset the deck to its boot logo."""
    try:
        driver = _open_once(deck, backend)
        if driver is None:
            return 1
        try:
            ok = driver.reset_device()
        finally:
            driver.close()
        print("Deck reset" if ok else "Error: reset command failed")
        return 0 if ok else 1
    except Exception as e:
        print(f"Error: {e}")
        return 1


def send_image(key, image_path, deck=None, backend=None):
    """Show an image file on one key."""
    try:
        driver = _open_once(deck, backend)
        if driver is None:
            return 1
        try:
            ok = driver.set_key_file(key, image_path)
        finally:
            driver.close()
        if not ok:
            print("Error: image write failed")
            return 1
        print(f"Sent {image_path} to key {key}")
        return 0
    except Exception as e:
        print(f"Error sending image: {e}")
        return 1


def clear_keys(key=None, deck=None, backend=None):
    """Blank one key, or every key."""
    try:
        driver = _open_once(deck, backend)
        if driver is None:
            return 1
        try:
            if key is None:
                driver.clear_keys()
            else:
                driver.set_key_image(key)
        finally:
            driver.close()
        print("Cleared" if key is None else f"Cleared key {key}")
        return 0
    except Exception as e:
        print(f"Error: {e}")
        return 1


def watch(deck=None, backend=None):
    """Print key events until interrupted; survives unplug/replug."""
    from appdeck.events import Closed, Disconnected, KeyPressed, KeyReleased, Opened

    driver = _make_driver(deck, backend)

    def on_open(event):
        _apply_brightness(driver)
        driver.start_listening()
        print(f"Connected: {driver.profile.name} (firmware {driver.firmware or 'unknown'})")

    driver.events.subscribe(Opened, on_open)
    driver.events.subscribe(Disconnected, lambda e: print("Disconnected, waiting for deck..."))
    driver.events.subscribe(Closed, lambda e: print("Closed"))
    driver.events.subscribe(KeyPressed, lambda e: print(f"  key {e.key:2d} down"))
    driver.events.subscribe(
        KeyReleased, lambda e: print(f"  key {e.key:2d} up   ({e.elapsed_ms:.0f} ms)"))

    try:
        if not driver.open():
            print(f"Waiting for {driver.profile.name}... (Ctrl+C to quit)")
        _wait_forever()
    except KeyboardInterrupt:
        print()
    finally:
        driver.close()
    return 0


def run_switcher(app_specs, close_icon=None, deck=None, backend=None):
    """Run the app switcher with apps given as NAME ICON KEYPAD... lists."""
    from appdeck.app_deck import CLOSE_ICON, AppSwitcher
    from appdeck.events import KeyPressed, KeyReleased, Opened

    for spec in app_specs:
        if len(spec) < 3:
            print(f"Error: --app needs NAME ICON KEYPAD..., got {' '.join(spec)}")
            return 1

    try:
        driver = _make_driver(deck, backend)
        switcher = AppSwitcher(driver)
        if close_icon:
            switcher.set_icon(CLOSE_ICON, close_icon)
        for name, icon, *keypads in app_specs:
            switcher.load_app(name, icon, keypads)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    driver.events.subscribe(Opened, lambda e: _apply_brightness(driver))
    switcher.events.subscribe(
        KeyPressed, lambda e: print(f"{e.app}: key {e.key} down"))
    switcher.events.subscribe(
        KeyReleased, lambda e: print(f"{e.app}: key {e.key} up ({e.elapsed_ms:.0f} ms)"))

    try:
        if not driver.open():
            print(f"Waiting for {driver.profile.name}... (Ctrl+C to quit)")
        print(f"Loaded {len(app_specs)} app(s): {', '.join(switcher.app_names)}")
        _wait_forever()
    except KeyboardInterrupt:
        print()
    finally:
        driver.close()
    return 0


def config_show():
    """Print current settings as JSON."""
    from appdeck.conf import CONFIG_PATH, settings

    print(f"# {CONFIG_PATH}")
    print(json.dumps(settings.as_dict(), indent=2))
    return 0


def config_set(key, value):
    """Change one setting. VALUE is parsed as JSON when possible."""
    from appdeck.conf import settings

    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    try:
        settings.set(key, parsed)
    except (KeyError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    print(f"{key} = {json.dumps(settings.as_dict()[key])}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
