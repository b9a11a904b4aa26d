"""
Hardware Interface - Error Kinds
=================================
Exception hierarchy shared by the transport, command and control layers.

Every error records the operation that failed and, where there is one,
the underlying cause, so an operator can tell a miswired device from a
rejected command or a calibration that cannot converge.
"""

from __future__ import annotations

from typing import Optional


class StageError(Exception):
    """Base class for every stage-control failure."""

    def __init__(self, message: str, operation: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.cause = cause

    def __str__(self) -> str:
        text = self.message
        if self.operation:
            text = f"{self.operation}: {text}"
        if self.cause is not None:
            text = f"{text} (cause: {self.cause})"
        return text


class DeviceNotFoundError(StageError):
    """No attached device matches the configured vendor/product pair."""


class InterfaceClaimError(StageError):
    """The USB interface is held by another process or handle."""


class TransportIOError(StageError):
    """Bulk/control transfer failure, partial write or required-read timeout."""


class CommandRejectedError(StageError):
    """The controller answered with a '?'-prefixed response."""

    def __init__(self, command: str, response: str, operation: Optional[str] = None):
        super().__init__(f"command {command!r} rejected with {response!r}", operation)
        self.command = command
        self.response = response


class ResponseParseError(StageError):
    """A numeric query returned something that is not a number."""

    def __init__(self, command: str, response: str, expected: str = "int", operation: Optional[str] = None):
        super().__init__(f"expected {expected} reply to {command!r}, got {response!r}", operation)
        self.command = command
        self.response = response
        self.expected = expected


class ParameterOutOfRangeError(StageError, ValueError):
    """Caller-supplied value outside the device-documented range. Raised before sending."""

    def __init__(
        self,
        name: str,
        value,
        low=None,
        high=None,
        operation: Optional[str] = None,
    ):
        if low is not None and high is not None:
            bounds = f"[{low}, {high}]"
        elif low is not None:
            bounds = f">= {low}"
        else:
            bounds = f"<= {high}"
        super().__init__(f"{name}={value!r} outside {bounds}", operation)
        self.name = name
        self.value = value
        self.low = low
        self.high = high


class DriverWriteError(StageError):
    """Driver-settings verification did not answer '1'. Parameters may be partially applied."""

    def __init__(self, response: str, operation: Optional[str] = None):
        super().__init__(
            f"driver settings verification answered {response!r}, values may not be set",
            operation,
        )
        self.response = response


class SpeedBoundExceededError(StageError):
    """Control-loop safety abort: the corrected speed left the operator band."""

    def __init__(self, speed: int, low: int, high: int, operation: Optional[str] = None):
        super().__init__(f"corrected high speed {speed} outside [{low}, {high}]", operation)
        self.speed = speed
        self.low = low
        self.high = high


class CalibrationNotConvergedError(StageError):
    """Calibration used up its iteration cap without entering the tolerance band."""

    def __init__(self, iterations: int, last_time: float, operation: Optional[str] = None):
        super().__init__(
            f"no convergence after {iterations} iterations (last cycle time {last_time:.4f} s)",
            operation,
        )
        self.iterations = iterations
        self.last_time = last_time


class ParameterFileError(StageError, ValueError):
    """A KEY VALUE parameter file is unreadable or holds invalid values."""
