"""Shared fixtures: fake timers, a mock HID transport, isolated config.

No real USB hardware required.  All HID I/O goes through a
``MagicMock(spec=HidTransport)``; retry/liveness timers are captured by
``FakeTimerFactory`` and fired by hand.
"""

from unittest.mock import MagicMock

import pytest

from appdeck.deck_info import DeckType, get_profile
from appdeck.device_hid import HidDeviceInfo, HidTransport


# =========================================================================
# Helpers
# =========================================================================

class FakeTimer:
    """threading.Timer stand-in that only runs when fired."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.function()


class FakeTimerFactory:
    """Records every timer the driver schedules."""

    def __init__(self):
        self.timers = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]

    def fire_next(self):
        timer = self.pending[0]
        timer.fire()
        return timer


class FakeClock:
    """Monotonic clock advanced by hand (seconds)."""

    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_device_info(deck_type=DeckType.MK2, serial="AL12345"):
    profile = get_profile(deck_type)
    return HidDeviceInfo(
        vendor_id=profile.vendor_id,
        product_id=profile.product_id,
        path=b"/dev/hidraw3",
        serial=serial,
        product=profile.name,
        interface_number=0,
        backend="mock",
    )


def make_firmware_report(deck_type=DeckType.MK2, version=b"1.00.012"):
    """Feature report carrying *version* at the profile's firmware offset."""
    template = get_profile(deck_type).firmware_report
    report = bytearray(template.length)
    report[0] = template.data[0]
    report[template.offset:template.offset + len(version)] = version
    return bytes(report)


def make_input_report(deck_type=DeckType.MK2, pressed=()):
    """Input report with the given keys held down."""
    profile = get_profile(deck_type)
    report = bytearray(profile.input_report_length)
    report[0] = 0x01
    for key in pressed:
        report[profile.key_state_offset + key] = 1
    return bytes(report)


def make_mock_transport(deck_type=DeckType.MK2, present=True) -> MagicMock:
    """MagicMock satisfying the HidTransport interface for one deck."""
    t = MagicMock(spec=HidTransport)
    t.is_open = False
    t.enumerate.return_value = [make_device_info(deck_type)] if present else []
    t.read.return_value = b''
    t.get_feature_report.return_value = make_firmware_report(deck_type)
    t.write.side_effect = lambda data: len(data)
    t.send_feature_report.side_effect = lambda data: len(data)
    return t


# =========================================================================
# Fixtures
# =========================================================================

@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return make_mock_transport()


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Point appdeck.conf at a throwaway config directory."""
    import appdeck.conf as conf

    config_dir = tmp_path / "appdeck"
    monkeypatch.setattr(conf, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(conf, "CONFIG_PATH", str(config_dir / "config.json"))
    monkeypatch.setattr(conf, "settings", conf.Settings())
    return config_dir / "config.json"
