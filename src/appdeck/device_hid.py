#!/usr/bin/env python3
"""
HID transport layer for deck devices.

The ``HidTransport`` ABC abstracts the raw HID I/O so that:
  • Tests can inject a mock transport (no real hardware needed).
  • ``HidApiTransport`` provides real HID via hidapi (OS HID driver).
  • ``PyUsbTransport`` provides an alternative via pyusb (libusb backend),
    issuing HID class requests as control transfers.

Decks use numbered reports, so every buffer written or read starts with
its report ID (0x02 image output, 0x01 key input, 0x03/0x05/0x0B/...
feature reports).

Linux dependencies (install one):
  • hidapi: ``pip install hidapi`` (needs libhidapi: ``apt install libhidapi-dev``)
  • pyusb:  ``pip install pyusb``  (needs libusb1: ``apt install libusb-1.0-0``)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import usb.core
import usb.util

from .errors import TransportError

# hidapi is optional ([hid] extra)
try:
    import hid as hidapi
    HIDAPI_AVAILABLE = True
except ImportError:
    HIDAPI_AVAILABLE = False

log = logging.getLogger(__name__)

# pyusb is a hard dep: always True, exported for get_backend_availability()
PYUSB_AVAILABLE = True


# =========================================================================
# Constants
# =========================================================================

# Input report read timeout (ms).  Bounds poll_input(); an empty read
# simply means "no key activity".
DEFAULT_READ_TIMEOUT_MS = 100

# Output/control transfer timeout (ms)
DEFAULT_WRITE_TIMEOUT_MS = 1000

# HID class requests (HID 1.11 §7.2)
HID_GET_REPORT = 0x01
HID_SET_REPORT = 0x09
HID_REPORT_TYPE_FEATURE = 0x03
REQ_TYPE_CLASS_IN = 0xA1   # device-to-host | class | interface
REQ_TYPE_CLASS_OUT = 0x21  # host-to-device | class | interface

USB_CONFIGURATION = 1
USB_INTERFACE = 0


# =========================================================================
# Data classes
# =========================================================================

@dataclass
class HidDeviceInfo:
    """One enumerated HID device."""
    vendor_id: int
    product_id: int
    path: Any = None            # backend-specific (bytes path / pyusb bus:address)
    serial: str = ""
    manufacturer: str = ""
    product: str = ""
    interface_number: int = -1
    backend: str = ""


# =========================================================================
# Abstract transport
# =========================================================================

class HidTransport(ABC):
    """Abstract HID transport: mockable for testing."""

    backend = "abstract"

    @abstractmethod
    def enumerate(self, vendor_id: int, product_id: int) -> List[HidDeviceInfo]:
        """List attached devices matching the IDs."""

    @abstractmethod
    def open(self, info: HidDeviceInfo) -> None:
        """Open the device described by *info*."""

    @abstractmethod
    def close(self) -> None:
        """Close the device.  Safe to call when not open."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write one output report.  Returns bytes written."""

    @abstractmethod
    def read(self, length: int, timeout: int = DEFAULT_READ_TIMEOUT_MS) -> bytes:
        """Read one input report.  Returns b'' on timeout."""

    @abstractmethod
    def get_feature_report(self, report_id: int, length: int) -> bytes:
        """Read a feature report (first byte is the report ID)."""

    @abstractmethod
    def send_feature_report(self, data: bytes) -> int:
        """Send a feature report (first byte is the report ID)."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether a device is currently open."""


# =========================================================================
# Real transport: HIDAPI
# =========================================================================

class HidApiTransport(HidTransport):
    """HID transport using HIDAPI (hidapi library).

    Uses the OS HID driver, so no kernel driver detach is needed and
    most distros only need a udev rule for access.

    Requires: ``pip install hidapi`` + ``apt install libhidapi-dev``
    """

    backend = "hidapi"

    def __init__(self):
        if not HIDAPI_AVAILABLE:
            raise ImportError(
                "hidapi is not installed. Install with: pip install hidapi\n"
                "Also need libhidapi: apt install libhidapi-dev (Debian/Ubuntu) "
                "or dnf install hidapi-devel (Fedora)"
            )
        self._device = None

    def enumerate(self, vendor_id: int, product_id: int) -> List[HidDeviceInfo]:
        try:
            found = hidapi.enumerate(vendor_id, product_id)
        except (OSError, ValueError) as e:
            raise TransportError(f"HID enumeration failed: {e}") from e
        return [
            HidDeviceInfo(
                vendor_id=d.get('vendor_id', 0),
                product_id=d.get('product_id', 0),
                path=d.get('path'),
                serial=d.get('serial_number') or "",
                manufacturer=d.get('manufacturer_string') or "",
                product=d.get('product_string') or "",
                interface_number=d.get('interface_number', -1),
                backend=self.backend,
            )
            for d in found
        ]

    def open(self, info: HidDeviceInfo) -> None:
        # cython-hidapi exposes ``device`` (open afterwards); the ctypes
        # ``hid`` package exposes ``Device`` (opens in the constructor).
        try:
            if hasattr(hidapi, 'device'):
                dev = hidapi.device()
                if info.path:
                    dev.open_path(info.path)
                else:
                    dev.open(info.vendor_id, info.product_id)
            else:
                if info.path:
                    dev = hidapi.Device(path=info.path)
                else:
                    dev = hidapi.Device(vid=info.vendor_id, pid=info.product_id)
        except (OSError, IOError, ValueError) as e:
            raise TransportError(
                f"Cannot open HID device {info.vendor_id:04x}:{info.product_id:04x}: {e}"
            ) from e
        self._device = dev

    def close(self) -> None:
        if self._device is not None:
            try:
                self._device.close()
            except (OSError, IOError) as e:
                log.debug("hidapi close: %s", e)
            self._device = None

    def _require_open(self):
        if self._device is None:
            raise TransportError("Transport not open")
        return self._device

    def write(self, data: bytes) -> int:
        dev = self._require_open()
        try:
            written = dev.write(bytes(data))
        except (OSError, IOError, ValueError) as e:
            raise TransportError(f"HID write failed: {e}") from e
        if written is not None and written < 0:
            raise TransportError("HID write failed")
        return written

    def read(self, length: int, timeout: int = DEFAULT_READ_TIMEOUT_MS) -> bytes:
        dev = self._require_open()
        try:
            data = dev.read(length, timeout)
        except (OSError, IOError, ValueError) as e:
            raise TransportError(f"HID read failed: {e}") from e
        return bytes(data) if data else b''

    def get_feature_report(self, report_id: int, length: int) -> bytes:
        dev = self._require_open()
        try:
            data = dev.get_feature_report(report_id, length)
        except (OSError, IOError, ValueError) as e:
            raise TransportError(f"HID get_feature_report failed: {e}") from e
        return bytes(data)

    def send_feature_report(self, data: bytes) -> int:
        dev = self._require_open()
        try:
            return dev.send_feature_report(bytes(data))
        except (OSError, IOError, ValueError) as e:
            raise TransportError(f"HID send_feature_report failed: {e}") from e

    @property
    def is_open(self) -> bool:
        return self._device is not None


# =========================================================================
# Real transport: PyUSB
# =========================================================================
# HID over raw libusb:
#   usb.core.find(idVendor, idProduct)
#   detach usbhid, set_configuration(1), claim_interface(0)
#   interrupt OUT/IN endpoints for output/input reports
#   GET_REPORT / SET_REPORT control transfers for feature reports

class PyUsbTransport(HidTransport):
    """HID transport using pyusb (libusb backend).

    Detaches the kernel ``usbhid`` driver while open, so the deck is not
    visible to other HID clients until ``close()``.

    Requires: ``pip install pyusb`` + ``apt install libusb-1.0-0``
    """

    backend = "pyusb"

    def __init__(self):
        self._device = None
        self._ep_out: Optional[int] = None
        self._ep_in: Optional[int] = None
        self._detached = False

    def enumerate(self, vendor_id: int, product_id: int) -> List[HidDeviceInfo]:
        try:
            found = usb.core.find(find_all=True, idVendor=vendor_id, idProduct=product_id)
            devices = list(found or [])
        except usb.core.USBError as e:
            raise TransportError(f"USB enumeration failed: {e}") from e
        infos = []
        for dev in devices:
            infos.append(HidDeviceInfo(
                vendor_id=dev.idVendor,
                product_id=dev.idProduct,
                path=(dev.bus, dev.address),
                serial=self._string(dev, 'iSerialNumber'),
                manufacturer=self._string(dev, 'iManufacturer'),
                product=self._string(dev, 'iProduct'),
                interface_number=USB_INTERFACE,
                backend=self.backend,
            ))
        return infos

    @staticmethod
    def _string(dev: Any, attr: str) -> str:
        """Read a string descriptor; permission errors yield ''."""
        index = getattr(dev, attr, 0)
        if not index:
            return ""
        try:
            return usb.util.get_string(dev, index) or ""
        except (usb.core.USBError, ValueError) as e:
            log.debug("String descriptor %s unavailable: %s", attr, e)
            return ""

    def open(self, info: HidDeviceInfo) -> None:
        kwargs: Dict[str, Any] = {'idVendor': info.vendor_id, 'idProduct': info.product_id}
        if isinstance(info.path, tuple) and len(info.path) == 2:
            kwargs['bus'], kwargs['address'] = info.path

        try:
            self._device = usb.core.find(**kwargs)
            if self._device is None:
                raise TransportError(
                    f"USB device not found: VID={info.vendor_id:#06x} PID={info.product_id:#06x}"
                )
            if self._device.is_kernel_driver_active(USB_INTERFACE):
                self._device.detach_kernel_driver(USB_INTERFACE)
                self._detached = True
                log.debug("Detached kernel driver from interface %d", USB_INTERFACE)
            self._device.set_configuration(USB_CONFIGURATION)
            usb.util.claim_interface(self._device, USB_INTERFACE)
            self._detect_endpoints()
        except usb.core.USBError as e:
            self.close()
            raise TransportError(f"Cannot open USB device: {e}") from e

    def _detect_endpoints(self) -> None:
        """Pick the interrupt IN/OUT endpoints of the HID interface."""
        cfg = self._device.get_active_configuration()
        intf = cfg[(USB_INTERFACE, 0)]
        for ep in intf:
            direction = usb.util.endpoint_direction(ep.bEndpointAddress)
            if direction == usb.util.ENDPOINT_OUT and self._ep_out is None:
                self._ep_out = ep.bEndpointAddress
            elif direction == usb.util.ENDPOINT_IN and self._ep_in is None:
                self._ep_in = ep.bEndpointAddress
        log.debug(
            "Endpoints: OUT=0x%02x IN=0x%02x",
            self._ep_out or 0, self._ep_in or 0,
        )

    def close(self) -> None:
        if self._device is not None:
            try:
                usb.util.release_interface(self._device, USB_INTERFACE)
                if self._detached:
                    self._device.attach_kernel_driver(USB_INTERFACE)
            except usb.core.USBError as e:
                log.debug("USB release: %s", e)
            usb.util.dispose_resources(self._device)
            self._device = None
        self._ep_out = None
        self._ep_in = None
        self._detached = False

    def _require_open(self):
        if self._device is None:
            raise TransportError("Transport not open")
        return self._device

    def write(self, data: bytes) -> int:
        dev = self._require_open()
        try:
            if self._ep_out is not None:
                return dev.write(self._ep_out, data, timeout=DEFAULT_WRITE_TIMEOUT_MS)
            # No OUT endpoint: SET_REPORT(Output) on the control pipe
            return dev.ctrl_transfer(
                REQ_TYPE_CLASS_OUT, HID_SET_REPORT, (0x02 << 8) | data[0],
                USB_INTERFACE, data, timeout=DEFAULT_WRITE_TIMEOUT_MS,
            )
        except usb.core.USBError as e:
            raise TransportError(f"USB write failed: {e}") from e

    def read(self, length: int, timeout: int = DEFAULT_READ_TIMEOUT_MS) -> bytes:
        dev = self._require_open()
        if self._ep_in is None:
            raise TransportError("No interrupt IN endpoint")
        try:
            return bytes(dev.read(self._ep_in, length, timeout=timeout))
        except usb.core.USBTimeoutError:
            return b''
        except usb.core.USBError as e:
            raise TransportError(f"USB read failed: {e}") from e

    def get_feature_report(self, report_id: int, length: int) -> bytes:
        dev = self._require_open()
        try:
            data = dev.ctrl_transfer(
                REQ_TYPE_CLASS_IN, HID_GET_REPORT,
                (HID_REPORT_TYPE_FEATURE << 8) | report_id,
                USB_INTERFACE, length, timeout=DEFAULT_WRITE_TIMEOUT_MS,
            )
        except usb.core.USBError as e:
            raise TransportError(f"USB GET_REPORT failed: {e}") from e
        return bytes(data)

    def send_feature_report(self, data: bytes) -> int:
        dev = self._require_open()
        try:
            return dev.ctrl_transfer(
                REQ_TYPE_CLASS_OUT, HID_SET_REPORT,
                (HID_REPORT_TYPE_FEATURE << 8) | data[0],
                USB_INTERFACE, data, timeout=DEFAULT_WRITE_TIMEOUT_MS,
            )
        except usb.core.USBError as e:
            raise TransportError(f"USB SET_REPORT failed: {e}") from e

    @property
    def is_open(self) -> bool:
        return self._device is not None

    @property
    def ep_out(self) -> Optional[int]:
        return self._ep_out

    @property
    def ep_in(self) -> Optional[int]:
        return self._ep_in


# =========================================================================
# Backend selection / discovery
# =========================================================================

BACKENDS = ("auto", "hidapi", "pyusb")


def get_backend_availability() -> Dict[str, bool]:
    return {"hidapi": HIDAPI_AVAILABLE, "pyusb": PYUSB_AVAILABLE}


def create_transport(backend: str = "auto") -> HidTransport:
    """Create a transport.  ``auto`` prefers hidapi, falls back to pyusb."""
    if backend not in BACKENDS:
        raise ValueError(f"Unknown backend {backend!r} (choose from {', '.join(BACKENDS)})")
    if backend == "hidapi" or (backend == "auto" and HIDAPI_AVAILABLE):
        return HidApiTransport()
    return PyUsbTransport()


def find_decks(transport: Optional[HidTransport] = None) -> List[HidDeviceInfo]:
    """Enumerate every attached deck of any known variant."""
    from .deck_info import DECK_PROFILES

    transport = transport or create_transport()
    devices: List[HidDeviceInfo] = []
    for profile in DECK_PROFILES.values():
        try:
            devices.extend(transport.enumerate(profile.vendor_id, profile.product_id))
        except TransportError as e:
            log.warning("Enumeration for %s failed: %s", profile.name, e)
    return devices
