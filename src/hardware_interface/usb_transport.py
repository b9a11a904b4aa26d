"""
USB Transport
==============
Bulk-endpoint transport for the stepper motor controller.

Features:
- Exact vendor/product device lookup
- Interface claim/release with device ready/done signalling
- Bulk write with partial-write detection
- Bulk read with a fixed timeout
- Safety read that drains stale bytes before every exchange
- Thread-safe exchanges (one lock per handle)
"""

from __future__ import annotations

import errno
import threading
from datetime import datetime
from typing import Any, Dict, Optional

import usb.core
import usb.util
from loguru import logger

from .exceptions import DeviceNotFoundError, InterfaceClaimError, TransportIOError
from .models import ConnectionStatus, UsbDeviceConfig


def is_timeout(error: usb.core.USBError) -> bool:
    """True for a transfer timeout, whichever backend raised it."""
    if isinstance(error, usb.core.USBTimeoutError):
        return True
    return getattr(error, "errno", None) == errno.ETIMEDOUT


class PyUsbBackend:
    """Module-level pyusb calls the transport depends on."""

    def find(self, vendor_id: int, product_id: int):
        return usb.core.find(idVendor=vendor_id, idProduct=product_id)

    def claim_interface(self, device, interface: int) -> None:
        usb.util.claim_interface(device, interface)

    def release_interface(self, device, interface: int) -> None:
        usb.util.release_interface(device, interface)

    def dispose(self, device) -> None:
        usb.util.dispose_resources(device)


class UsbTransport:
    """
    Owns the open USB device and its claimed interface.

    Only one transport may be open per process. All exchanges go through
    a single lock, so a UI thread and a driver session can share one
    transport as long as neither holds it across a long-running loop.

    Usage:
        with UsbTransport(UsbDeviceConfig()) as transport:
            raw = transport.exchange(b"HSPD\\0")
    """

    _active: Optional[UsbTransport] = None
    _active_lock = threading.Lock()

    def __init__(self, config: Optional[UsbDeviceConfig] = None, backend: Optional[Any] = None):
        """
        Initialize transport.

        Args:
            config: USB identification and timing
            backend: Object providing find/claim/release/dispose; defaults to pyusb
        """
        self.config = config or UsbDeviceConfig()
        self._backend = backend or PyUsbBackend()
        self._device = None
        self._status = ConnectionStatus.DISCONNECTED
        self._claimed = False

        # Statistics
        self._commands_sent = 0
        self._responses_received = 0
        self._stale_bytes_drained = 0
        self._last_exchange_time: Optional[datetime] = None

        self._lock = threading.RLock()

        logger.debug(
            f"UsbTransport initialized for {self.config.vendor_id:#06x}:{self.config.product_id:#06x}"
        )

    @property
    def status(self) -> ConnectionStatus:
        """Get current connection status."""
        return self._status

    @property
    def is_open(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED

    @property
    def lock(self) -> threading.RLock:
        """Mutex guarding the handle; hold it to serialize multi-command sequences."""
        return self._lock

    @property
    def statistics(self) -> Dict[str, Any]:
        """Get communication statistics."""
        return {
            "status": self._status.value,
            "commands_sent": self._commands_sent,
            "responses_received": self._responses_received,
            "stale_bytes_drained": self._stale_bytes_drained,
            "last_exchange_time": self._last_exchange_time.isoformat() if self._last_exchange_time else None,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> UsbTransport:
        """
        Find, claim and signal the device, then drain stale bytes.

        Raises:
            DeviceNotFoundError: no device with the configured ids
            InterfaceClaimError: interface busy, or another transport is open
            TransportIOError: control transfer or drain read failed
        """
        cfg = self.config
        with UsbTransport._active_lock:
            if UsbTransport._active is not None and UsbTransport._active is not self:
                raise InterfaceClaimError("another device handle is already open in this process", "open")
            if self.is_open:
                return self

            self._status = ConnectionStatus.CONNECTING
            logger.info(f"Opening USB device {cfg.vendor_id:#06x}:{cfg.product_id:#06x}")

            try:
                device = self._backend.find(cfg.vendor_id, cfg.product_id)
            except usb.core.USBError as e:
                self._status = ConnectionStatus.ERROR
                raise TransportIOError("device enumeration failed", "open", e) from e
            if device is None:
                self._status = ConnectionStatus.ERROR
                logger.error("Couldn't find device, make sure it is on and plugged in")
                raise DeviceNotFoundError(
                    f"no device with id {cfg.vendor_id:#06x}:{cfg.product_id:#06x}", "open"
                )
            self._device = device

            try:
                self._ensure_configuration()
                self._backend.claim_interface(device, cfg.interface)
            except usb.core.USBError as e:
                self._status = ConnectionStatus.ERROR
                self._dispose()
                logger.error(f"Couldn't claim interface {cfg.interface}: {e}")
                raise InterfaceClaimError(f"cannot claim interface {cfg.interface}", "open", e) from e
            self._claimed = True

            try:
                self._write_control(cfg.control_open_value, "open")
                self._drain_once(fatal=True)
            except TransportIOError:
                self._status = ConnectionStatus.ERROR
                self._release()
                self._dispose()
                raise

            self._status = ConnectionStatus.CONNECTED
            UsbTransport._active = self

        logger.success(f"USB device {cfg.name} opened")
        return self

    def close(self) -> bool:
        """
        Signal 'device done', release the interface and free resources.

        Every step is attempted even when an earlier one fails.

        Returns:
            True if all steps succeeded
        """
        with self._lock:
            if self._device is None:
                return True

            ok = True
            try:
                self._write_control(self.config.control_close_value, "close")
            except TransportIOError as e:
                logger.error(f"Couldn't signal device done: {e}")
                ok = False

            ok = self._release() and ok
            self._dispose()

            self._status = ConnectionStatus.DISCONNECTED
            with UsbTransport._active_lock:
                if UsbTransport._active is self:
                    UsbTransport._active = None

        if ok:
            logger.info("USB device closed")
        else:
            logger.warning("USB device closed with errors, the controller may need a power cycle")
        return ok

    def __enter__(self) -> UsbTransport:
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def write_bulk(self, command: bytes) -> None:
        """
        Write a full command to the command endpoint.

        Raises:
            TransportIOError: on USB error, timeout or short write
        """
        device = self._require_open("write_bulk")
        try:
            written = device.write(self.config.command_endpoint, command, self.config.timeout_ms)
        except usb.core.USBError as e:
            raise TransportIOError(f"bulk write of {command!r} failed", "write_bulk", e) from e

        if written != len(command):
            raise TransportIOError(
                f"{written} bytes written when {len(command)} were expected for {command!r}",
                "write_bulk",
            )
        self._commands_sent += 1
        logger.trace(f"-> {command!r}")

    def read_bulk(self) -> bytes:
        """
        Read one response buffer. A timeout is an error here.

        Raises:
            TransportIOError: on USB error or timeout
        """
        device = self._require_open("read_bulk")
        try:
            data = device.read(self.config.response_endpoint, self.config.read_size, self.config.timeout_ms)
        except usb.core.USBError as e:
            reason = "timed out" if is_timeout(e) else "failed"
            raise TransportIOError(f"bulk read {reason}", "read_bulk", e) from e

        raw = bytes(data)
        self._responses_received += 1
        self._last_exchange_time = datetime.now()
        logger.trace(f"<- {raw!r}")
        return raw

    def safety_read(self) -> int:
        """
        Discard stale bytes left by an earlier exchange.

        A timeout is the expected outcome; other errors are logged and
        ignored.

        Returns:
            Number of stale bytes discarded
        """
        self._require_open("safety_read")
        drained = 0
        for _ in range(self.config.drain_attempts):
            count = self._drain_once(fatal=False)
            if not count:
                break
            drained += count
        if drained:
            logger.warning(f"Discarded {drained} stale bytes before exchange")
        return drained

    def exchange(self, command: bytes) -> bytes:
        """Safety read, write the command, then read its response."""
        with self._lock:
            self.safety_read()
            self.write_bulk(command)
            return self.read_bulk()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_open(self, operation: str):
        if self._device is None or not self._claimed:
            raise TransportIOError("device is not open", operation)
        return self._device

    def _ensure_configuration(self) -> None:
        try:
            self._device.get_active_configuration()
        except usb.core.USBError:
            self._device.set_configuration()

    def _write_control(self, value: int, operation: str) -> None:
        cfg = self.config
        try:
            self._device.ctrl_transfer(
                cfg.control_request_type, cfg.control_request, value, 0, None, cfg.timeout_ms
            )
        except usb.core.USBError as e:
            raise TransportIOError(f"control transfer (value={value}) failed", operation, e) from e

    def _drain_once(self, fatal: bool) -> int:
        """One short read on the response endpoint; returns bytes discarded."""
        try:
            data = self._device.read(
                self.config.response_endpoint, self.config.drain_size, self.config.drain_timeout_ms
            )
        except usb.core.USBError as e:
            if is_timeout(e):
                return 0
            if fatal:
                raise TransportIOError("drain read failed", "open", e) from e
            logger.error(f"Can't safety read: {e}")
            return 0
        count = len(data)
        self._stale_bytes_drained += count
        return count

    def _release(self) -> bool:
        if not self._claimed:
            return True
        try:
            self._backend.release_interface(self._device, self.config.interface)
        except usb.core.USBError as e:
            logger.error(f"Couldn't release interface {self.config.interface}: {e}")
            return False
        finally:
            self._claimed = False
        return True

    def _dispose(self) -> None:
        if self._device is None:
            return
        try:
            self._backend.dispose(self._device)
        except usb.core.USBError as e:
            logger.warning(f"Couldn't free USB resources: {e}")
        finally:
            self._device = None
