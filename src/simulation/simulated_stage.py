"""
Simulated Stage Controller
===========================
Deterministic stand-in for the USB stepper controller, driven by a
virtual clock.

The device speaks the same NUL-terminated ASCII protocol over the same
endpoints as the real controller, so the whole stack (transport,
command layer, motion tracking, control loops) runs against it
unchanged.

Motion model:
-------------
A move of ``d`` pulses at high speed ``v`` with acceleration and
deceleration times ``acc``/``dec`` (ms) takes

    (acc + dec) / 2000 + |d| / v   seconds

of virtual time, with the pulse position interpolated linearly. Every
bulk write advances the clock by ``exchange_latency``; ``sleep()``
advances it by the requested duration.
"""

from __future__ import annotations

import errno
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import usb.core
from loguru import logger

from hardware_interface import UsbDeviceConfig

JOG_DISTANCE = 10 ** 9

# Status register codes while busy
STATUS_RUNNING = 1
STATUS_ACCELERATING = 2
STATUS_DECELERATING = 4


@dataclass
class _Move:
    start_time: float
    end_time: float
    start_position: float
    end_position: float
    acc_s: float
    dec_s: float

    def position_at(self, t: float) -> float:
        if t >= self.end_time or self.end_time <= self.start_time:
            return self.end_position
        fraction = (t - self.start_time) / (self.end_time - self.start_time)
        return self.start_position + (self.end_position - self.start_position) * fraction

    def status_at(self, t: float) -> int:
        if t >= self.end_time:
            return 0
        if t < self.start_time + self.acc_s / 2:
            return STATUS_ACCELERATING
        if t > self.end_time - self.dec_s / 2:
            return STATUS_DECELERATING
        return STATUS_RUNNING


class SimulatedStageDevice:
    """
    pyusb-compatible fake device: write/read/ctrl_transfer on a virtual clock.

    Fault injection:
        stale_bytes(...)        queue bytes the next safety read must drain
        short_write_next        next bulk write reports one byte fewer
        driver_write_ok         False makes R4 answer "0"
        fail_control            ctrl_transfer raises USBError
        fail_reads              every bulk read raises a non-timeout USBError
    """

    def __init__(
        self,
        high_speed: int = 1000,
        low_speed: int = 100,
        acceleration_time: int = 0,
        deceleration_time: int = 0,
        exchange_latency: float = 0.001,
        config: Optional[UsbDeviceConfig] = None,
    ):
        self.config = config or UsbDeviceConfig()
        self.idVendor = self.config.vendor_id
        self.idProduct = self.config.product_id

        self.now = 0.0
        self.exchange_latency = exchange_latency

        self.registers: Dict[str, int] = {
            "HSPD": high_speed,
            "LSPD": low_speed,
            "ACC": acceleration_time,
            "DEC": deceleration_time,
            "SCV": 0,
            "EO": 0,
            "DRVIT": 50,
            "DRVMS": 16,
            "DRVIC": 500,
            "DRVRC": 1500,
        }
        self.absolute = False
        self._position = 0.0
        self._encoder_offset = 0.0
        self._move: Optional[_Move] = None

        self._pending: Deque[bytes] = deque()
        self._verify_ready = {"R4": False, "R2": False}

        # Fault injection
        self.short_write_next = False
        self.driver_write_ok = True
        self.fail_control = False
        self.fail_reads = False

        # Bookkeeping for tests
        self.commands: List[str] = []
        self.control_values: List[int] = []
        self.claimed = False
        self.disposed = False

    # ------------------------------------------------------------------
    # Virtual clock
    # ------------------------------------------------------------------

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.now += seconds

    # ------------------------------------------------------------------
    # pyusb device surface
    # ------------------------------------------------------------------

    def get_active_configuration(self):
        return self

    def set_configuration(self, configuration=None) -> None:
        pass

    def ctrl_transfer(self, bmRequestType, bRequest, wValue=0, wIndex=0, data_or_wLength=None, timeout=None):
        if self.fail_control:
            raise usb.core.USBError("Pipe error", errno=errno.EPIPE)
        self.control_values.append(wValue)
        return 0

    def write(self, endpoint, data, timeout=None) -> int:
        self.now += self.exchange_latency
        data = bytes(data)
        if self.short_write_next:
            self.short_write_next = False
            return max(0, len(data) - 1)

        text = data.split(b"\x00", 1)[0].decode("ascii", errors="replace")
        self.commands.append(text)
        response = self._handle(text)
        padding = b"\xaa" * max(0, self.config.read_size - len(response) - 1)
        self._pending.append(response.encode("ascii") + b"\x00" + padding)
        return len(data)

    def read(self, endpoint, size, timeout=None):
        if self.fail_reads:
            raise usb.core.USBError("Input/Output Error", errno=errno.EIO)
        if not self._pending:
            raise usb.core.USBTimeoutError("Operation timed out", errno=errno.ETIMEDOUT)
        return self._pending.popleft()[:size]

    def stale_bytes(self, data: bytes) -> None:
        """Queue bytes that no command asked for."""
        self._pending.append(data)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def pulse_position(self) -> int:
        return int(round(self._current_position()))

    @property
    def is_moving(self) -> bool:
        return self._move is not None and self.now < self._move.end_time

    def move_duration(self, distance: int, speed: Optional[int] = None) -> float:
        """Virtual seconds a move of ``distance`` pulses takes."""
        speed = speed or self.registers["HSPD"]
        if distance == 0:
            return 0.0
        ramps = (self.registers["ACC"] + self.registers["DEC"]) / 2000.0
        return ramps + abs(distance) / speed

    def cycle_time(self, amplitude: int, dwell: float = 0.0, speed: Optional[int] = None) -> float:
        """Ideal back-and-forth cycle time at ``speed``, ignoring exchange latency."""
        return 2 * (self.move_duration(amplitude, speed) + dwell)

    def _current_position(self) -> float:
        if self._move is None:
            return self._position
        return self._move.position_at(self.now)

    def _settle(self) -> None:
        if self._move is not None and self.now >= self._move.end_time:
            self._position = self._move.end_position
            self._move = None

    def _start_move(self, target: float) -> None:
        start = self._current_position()
        distance = target - start
        duration = self.move_duration(int(distance))
        self._move = _Move(
            start_time=self.now,
            end_time=self.now + duration,
            start_position=start,
            end_position=target,
            acc_s=self.registers["ACC"] / 1000.0,
            dec_s=self.registers["DEC"] / 1000.0,
        )
        logger.trace(f"sim move {start:.0f} -> {target:.0f} over {duration:.4f} s")

    def _stop(self) -> None:
        if self._move is not None:
            self._position = self._current_position()
            self._move = None

    # ------------------------------------------------------------------
    # Command interpreter
    # ------------------------------------------------------------------

    def _handle(self, text: str) -> str:
        self._settle()
        rejected = "?" + text

        if text.startswith("X"):
            return self._handle_move(text[1:], rejected)
        if "=" in text:
            key, _, raw_value = text.partition("=")
            return self._handle_set(key, raw_value, rejected)
        return self._handle_get(text, rejected)

    def _handle_move(self, argument: str, rejected: str) -> str:
        if not argument:
            return str(self.pulse_position)
        try:
            value = int(argument)
        except ValueError:
            return rejected
        if self.is_moving:
            return "?Moving"
        if self.registers["HSPD"] <= 0:
            return rejected
        target = float(value) if self.absolute else self._current_position() + value
        self._start_move(target)
        return "OK"

    def _handle_set(self, key: str, raw_value: str, rejected: str) -> str:
        try:
            value = int(raw_value)
        except ValueError:
            return rejected

        if key == "PX":
            if self.is_moving:
                return "?Moving"
            self._encoder_offset = self._encoder_position() - value
            self._position = float(value)
            return "OK"
        if key == "EX":
            if self.is_moving:
                return "?Moving"
            self._encoder_offset = value - self._current_position()
            return "OK"
        if key not in self.registers:
            return rejected
        if key == "SCV" and value not in (0, 1):
            return rejected
        self.registers[key] = value
        return "OK"

    def _handle_get(self, key: str, rejected: str) -> str:
        if key == "MST":
            return str(self._move.status_at(self.now) if self.is_moving else 0)
        if key == "PX":
            return str(self.pulse_position)
        if key == "EX":
            return str(int(round(self._encoder_position())))
        if key in ("ABS", "INC"):
            self.absolute = key == "ABS"
            return "OK"
        if key == "STOP":
            self._stop()
            return "OK"
        if key in ("J+", "J-"):
            if self.is_moving:
                return "?Moving"
            if self.registers["HSPD"] <= 0:
                return rejected
            step = JOG_DISTANCE if key == "J+" else -JOG_DISTANCE
            self._start_move(self._current_position() + step)
            return "OK"
        if key in ("RW", "RR"):
            self._verify_ready["R4" if key == "RW" else "R2"] = True
            if key == "RW":
                self.registers["EO"] = 0
            return "OK"
        if key in ("R4", "R2"):
            ready = self._verify_ready[key]
            self._verify_ready[key] = False
            return "1" if ready and (self.driver_write_ok or key == "R2") else "0"
        if key in self.registers:
            return str(self.registers[key])
        return rejected

    def _encoder_position(self) -> float:
        return self._current_position() + self._encoder_offset


class SimulatedUsbBackend:
    """Backend for UsbTransport that hands out a SimulatedStageDevice."""

    def __init__(
        self,
        device: Optional[SimulatedStageDevice] = None,
        present: bool = True,
        claim_busy: bool = False,
        fail_release: bool = False,
    ):
        self.device = device or SimulatedStageDevice()
        self.present = present
        self.claim_busy = claim_busy
        self.fail_release = fail_release
        self.release_attempts = 0

    def find(self, vendor_id: int, product_id: int):
        if not self.present:
            return None
        if (vendor_id, product_id) != (self.device.idVendor, self.device.idProduct):
            return None
        return self.device

    def claim_interface(self, device, interface: int) -> None:
        if self.claim_busy:
            raise usb.core.USBError("Resource busy", errno=errno.EBUSY)
        device.claimed = True

    def release_interface(self, device, interface: int) -> None:
        self.release_attempts += 1
        if self.fail_release:
            raise usb.core.USBError("No such device", errno=errno.ENODEV)
        device.claimed = False

    def dispose(self, device) -> None:
        device.disposed = True
