"""
Stage Command Layer
====================
Typed operations on top of the controller's ASCII protocol.

Every setter and getter is a single send_command exchange:
safety read -> bulk write -> bulk read -> NUL extraction -> '?' check.
Setters with device-documented ranges validate before anything is sent.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Union

from loguru import logger

from hardware_interface import (
    AccelerationProfile,
    DriverWriteError,
    MotorState,
    MovementMode,
    ParameterOutOfRangeError,
    UsbTransport,
)

from .protocol import (
    build_command,
    check_response,
    command_text,
    encode_command,
    extract_response,
    parse_numeric,
)

# Device-documented ranges for driver parameters
IDLE_TIME_RANGE = (1, 100)          # centiseconds
MICROSTEP_RANGE = (2, 500)
IDLE_CURRENT_RANGE = (100, 2800)    # mA
RUN_CURRENT_RANGE = (100, 3000)     # mA

DRIVER_SETTLE_S = 3.0
MOTOR_SETTLE_S = 3.0
DRIVER_OK = "1"


class StageController:
    """
    Command interface to the stepper controller.

    Wraps a UsbTransport and exposes the device's parameters as typed
    methods. The clock/sleep pair is used for every settle delay and by
    the motion layer, so a simulated device can run on virtual time.

    Usage:
        controller = StageController(transport)
        controller.set_high_speed(1500)
        status = controller.get_motor_status()
    """

    def __init__(
        self,
        transport: UsbTransport,
        driver_settle_s: float = DRIVER_SETTLE_S,
        motor_settle_s: float = MOTOR_SETTLE_S,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize controller.

        Args:
            transport: Open (or about to be opened) USB transport
            driver_settle_s: Wait after RW/RR before verifying
            motor_settle_s: Wait after enabling/disabling the motor
            clock: Monotonic time source in seconds
            sleep: Blocking sleep matching ``clock``
        """
        self.transport = transport
        self.driver_settle_s = driver_settle_s
        self.motor_settle_s = motor_settle_s
        self.clock = clock
        self.sleep = sleep
        self._movement_mode: Optional[MovementMode] = None

    @property
    def movement_mode(self) -> Optional[MovementMode]:
        """Last movement mode set through this controller (None if never set)."""
        return self._movement_mode

    # ------------------------------------------------------------------
    # Primitive exchange
    # ------------------------------------------------------------------

    def send_command(self, command: Union[bytes, str], operation: Optional[str] = None) -> str:
        """
        Send a command and return its checked response.

        Args:
            command: Encoded command, or plain text to be terminated
            operation: Name used in error context

        Raises:
            CommandRejectedError: response began with '?'
            TransportIOError: any transfer failure
        """
        if isinstance(command, str):
            command = encode_command(command.strip().upper())
        response = extract_response(self.transport.exchange(command))
        logger.debug(f"{command_text(command)} --> {response}")
        return check_response(command, response, operation or command_text(command))

    def query(self, command: Union[bytes, str]) -> str:
        """Send a command and return the raw response text, rejected or not."""
        if isinstance(command, str):
            command = encode_command(command.strip().upper())
        return extract_response(self.transport.exchange(command))

    def _set(self, mnemonic: str, value, operation: str) -> None:
        self.send_command(build_command(mnemonic, value), operation)

    def _get_int(self, mnemonic: str, operation: str) -> int:
        command = build_command(mnemonic)
        return parse_numeric(command, self.send_command(command, operation), int, operation)

    @staticmethod
    def _check_range(name: str, value: int, bounds, operation: str) -> None:
        low, high = bounds
        if not low <= value <= high:
            raise ParameterOutOfRangeError(name, value, low, high, operation)

    @staticmethod
    def _check_non_negative(name: str, value: int, operation: str) -> None:
        if value < 0:
            raise ParameterOutOfRangeError(name, value, low=0, operation=operation)

    # ------------------------------------------------------------------
    # Motion parameters
    # ------------------------------------------------------------------

    def set_high_speed(self, speed: int) -> None:
        """Set traverse speed in pulses/s (HSPD)."""
        self._check_non_negative("high_speed", speed, "set_high_speed")
        self._set("HSPD", int(speed), "set_high_speed")

    def set_low_speed(self, speed: int) -> None:
        self._check_non_negative("low_speed", speed, "set_low_speed")
        self._set("LSPD", int(speed), "set_low_speed")

    def set_acceleration_time(self, time_ms: int) -> None:
        self._check_non_negative("acceleration_time", time_ms, "set_acceleration_time")
        self._set("ACC", int(time_ms), "set_acceleration_time")

    def set_deceleration_time(self, time_ms: int) -> None:
        self._check_non_negative("deceleration_time", time_ms, "set_deceleration_time")
        self._set("DEC", int(time_ms), "set_deceleration_time")

    def set_acceleration_profile(self, profile: Union[AccelerationProfile, str]) -> None:
        """Select sinusoidal or trapezoidal ramps (SCV=1 / SCV=0)."""
        try:
            profile = AccelerationProfile(str(getattr(profile, "value", profile)).lower())
        except ValueError as e:
            raise ParameterOutOfRangeError(
                "acceleration_profile", profile, operation="set_acceleration_profile"
            ) from e
        self._set("SCV", profile.register_value, "set_acceleration_profile")

    def set_movement_type(self, mode: Union[MovementMode, str]) -> None:
        """Select absolute (ABS) or incremental (INC) moves."""
        try:
            mode = MovementMode(str(getattr(mode, "value", mode)).lower())
        except ValueError as e:
            raise ParameterOutOfRangeError("movement_type", mode, operation="set_movement_type") from e
        self.send_command(build_command(mode.mnemonic), "set_movement_type")
        self._movement_mode = mode

    def set_pulse_position(self, position: int) -> None:
        self._set("PX", int(position), "set_pulse_position")

    def set_encoder_position(self, position: int) -> None:
        self._set("EX", int(position), "set_encoder_position")

    # ------------------------------------------------------------------
    # Driver parameters (need write_driver_settings to persist)
    # ------------------------------------------------------------------

    def set_idle_time(self, time_cs: int) -> None:
        """Idle time before the driver drops to idle current, 1-100 cs."""
        self._check_range("idle_time", time_cs, IDLE_TIME_RANGE, "set_idle_time")
        self._set("DRVIT", int(time_cs), "set_idle_time")

    def set_microstepping(self, microsteps: int) -> None:
        self._check_range("microsteps", microsteps, MICROSTEP_RANGE, "set_microstepping")
        self._set("DRVMS", int(microsteps), "set_microstepping")

    def set_idle_current(self, current_ma: int) -> None:
        self._check_range("idle_current", current_ma, IDLE_CURRENT_RANGE, "set_idle_current")
        self._set("DRVIC", int(current_ma), "set_idle_current")

    def set_run_current(self, current_ma: int) -> None:
        self._check_range("run_current", current_ma, RUN_CURRENT_RANGE, "set_run_current")
        self._set("DRVRC", int(current_ma), "set_run_current")

    def write_driver_settings(self) -> None:
        """
        Commit driver parameters: RW, settle, then verify with R4.

        Raises:
            DriverWriteError: verification did not answer "1"; treat the
                driver as possibly half-configured
        """
        self._driver_commit("RW", "R4", "write_driver_settings")

    def update_readable_driver_settings(self) -> None:
        """Refresh readable driver parameters: RR, settle, then verify with R2."""
        self._driver_commit("RR", "R2", "update_readable_driver_settings")

    def _driver_commit(self, trigger: str, verify: str, operation: str) -> None:
        self.send_command(build_command(trigger), operation)
        self.sleep(self.driver_settle_s)
        response = self.send_command(build_command(verify), operation)
        if response.strip() != DRIVER_OK:
            logger.error(f"Driver commit failed, device responded {response!r}")
            raise DriverWriteError(response, operation)
        logger.info(f"{operation} verified")

    # ------------------------------------------------------------------
    # Motor enable and motion
    # ------------------------------------------------------------------

    def turn_motor_on(self) -> None:
        """Energize the motor (EO=1) and wait for it to settle."""
        self._set("EO", 1, "turn_motor_on")
        self.sleep(self.motor_settle_s)
        logger.info("Motor on")

    def turn_motor_off(self) -> None:
        self._set("EO", 0, "turn_motor_off")
        self.sleep(self.motor_settle_s)
        logger.info("Motor off")

    def move_stage(self, distance: int) -> None:
        """
        Issue X<distance>. Relative in INC mode, a target position in ABS mode.

        Does not wait for the move to finish.
        """
        command = encode_command(f"X{int(distance)}")
        self.send_command(command, "move_stage")

    def stop_motion(self) -> None:
        """Stop any move in progress; the status register drops to idle."""
        self.send_command(build_command("STOP"), "stop_motion")
        logger.warning("STOP sent")

    def jog(self, direction: int) -> None:
        """Move until stop_motion() (J+ for positive direction, J- otherwise)."""
        self.send_command(build_command("J+" if direction >= 0 else "J-"), "jog")

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------

    def get_high_speed(self) -> int:
        return self._get_int("HSPD", "get_high_speed")

    def get_low_speed(self) -> int:
        return self._get_int("LSPD", "get_low_speed")

    def get_acceleration_time(self) -> int:
        return self._get_int("ACC", "get_acceleration_time")

    def get_deceleration_time(self) -> int:
        return self._get_int("DEC", "get_deceleration_time")

    def get_idle_time(self) -> int:
        return self._get_int("DRVIT", "get_idle_time")

    def get_microstepping(self) -> int:
        return self._get_int("DRVMS", "get_microstepping")

    def get_idle_current(self) -> int:
        return self._get_int("DRVIC", "get_idle_current")

    def get_run_current(self) -> int:
        return self._get_int("DRVRC", "get_run_current")

    def get_pulse_position(self) -> int:
        return self._get_int("PX", "get_pulse_position")

    def get_encoder_position(self) -> int:
        return self._get_int("EX", "get_encoder_position")

    def get_motor_status(self) -> int:
        """Raw status register: 0 idle, nonzero running/accelerating/decelerating."""
        return self._get_int("MST", "get_motor_status")

    def get_motor_state(self) -> MotorState:
        return MotorState.from_register(self.get_motor_status())

    def get_acceleration_profile(self) -> AccelerationProfile:
        value = self._get_int("SCV", "get_acceleration_profile")
        return AccelerationProfile.SINUSOIDAL if value else AccelerationProfile.TRAPEZOIDAL

    def is_motor_enabled(self) -> bool:
        return self._get_int("EO", "is_motor_enabled") == 1
