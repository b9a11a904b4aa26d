"""
Hardware Interface - Data Models
=================================
Pydantic models and enumerations for the USB stepper controller.

These models hold the fixed identification and timing of the device
so the transport never works with bare magic numbers.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConnectionStatus(str, Enum):
    """Device connection status."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MotorState(str, Enum):
    """
    Motor state as seen by the controller.

    The status register (MST) is 0 when idle; every nonzero code
    (running, accelerating, decelerating, ...) is treated as busy.
    """
    IDLE = "idle"
    BUSY = "busy"

    @classmethod
    def from_register(cls, code: int) -> MotorState:
        return cls.IDLE if code == 0 else cls.BUSY


class MovementMode(str, Enum):
    """How X<value> moves are interpreted by the device."""
    ABSOLUTE = "abs"
    INCREMENTAL = "inc"

    @property
    def mnemonic(self) -> str:
        return self.value.upper()


class AccelerationProfile(str, Enum):
    """Velocity ramp shape (SCV register)."""
    TRAPEZOIDAL = "trap"
    SINUSOIDAL = "sin"

    @property
    def register_value(self) -> int:
        return 1 if self is AccelerationProfile.SINUSOIDAL else 0


# =============================================================================
# DEVICE CONFIGURATION MODELS
# =============================================================================

class UsbDeviceConfig(BaseModel):
    """
    USB identification and transfer settings for the stepper controller.

    Defaults match the controller box shipped with the stage; every
    field can be overridden from the ``hardware.usb`` section of the
    application config.
    """
    model_config = ConfigDict(frozen=True)

    device_id: str = "stage_controller"
    name: str = "USB stepper motor controller"

    vendor_id: int = Field(0x1589, ge=0, le=0xFFFF)
    product_id: int = Field(0xA101, ge=0, le=0xFFFF)
    interface: int = Field(0, ge=0)

    # Endpoints
    command_endpoint: int = 0x02
    response_endpoint: int = 0x82

    # Control transfer used for open/close signalling
    control_request_type: int = 0x40
    control_request: int = 2
    control_open_value: int = 2
    control_close_value: int = 4

    # Timeouts
    timeout_s: float = Field(3.0, gt=0)
    drain_timeout_ms: int = Field(1, ge=1)
    drain_attempts: int = Field(4, ge=1)

    # Buffers
    read_size: int = Field(64, gt=0)
    drain_size: int = Field(4096, gt=0)

    @field_validator("vendor_id", "product_id", "command_endpoint", "response_endpoint", mode="before")
    @classmethod
    def parse_hex(cls, v):
        """Accept '0x1589' style strings from YAML."""
        if isinstance(v, str):
            return int(v, 0)
        return v

    @property
    def timeout_ms(self) -> int:
        """Bulk transfer timeout in the milliseconds pyusb expects."""
        return int(self.timeout_s * 1000)
