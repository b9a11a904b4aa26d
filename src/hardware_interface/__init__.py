"""
Hardware Interface Package
===========================
Provides the communication layer for the USB stepper motor controller:
- Device lookup, interface claim and release
- Bulk command/response transfers
- Device configuration models
- Error kinds shared by every layer above the transport

This package hides pyusb from the rest of the application.
"""

from .models import (
    ConnectionStatus,
    MotorState,
    MovementMode,
    AccelerationProfile,
    UsbDeviceConfig,
)
from .exceptions import (
    StageError,
    DeviceNotFoundError,
    InterfaceClaimError,
    TransportIOError,
    CommandRejectedError,
    ResponseParseError,
    ParameterOutOfRangeError,
    DriverWriteError,
    SpeedBoundExceededError,
    CalibrationNotConvergedError,
    ParameterFileError,
)

# higher-level managers
from .usb_transport import UsbTransport, PyUsbBackend

__all__ = [
    "ConnectionStatus",
    "MotorState",
    "MovementMode",
    "AccelerationProfile",
    "UsbDeviceConfig",
    "StageError",
    "DeviceNotFoundError",
    "InterfaceClaimError",
    "TransportIOError",
    "CommandRejectedError",
    "ResponseParseError",
    "ParameterOutOfRangeError",
    "DriverWriteError",
    "SpeedBoundExceededError",
    "CalibrationNotConvergedError",
    "ParameterFileError",
    "UsbTransport",
    "PyUsbBackend",
]
