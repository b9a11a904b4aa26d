"""
Session parameters.

Calibration and run sessions are parameterized by small line-oriented
``KEY VALUE`` files::

    # comment
    HighSpeed 1500
    Period    3.0

Keys match case-insensitively, blank and '#' lines are skipped, and
unknown keys are logged and ignored. Values are validated into frozen
pydantic models that stay immutable for the whole session.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type, TypeVar, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from hardware_interface import AccelerationProfile, ParameterFileError

P = TypeVar("P", bound="MotionParameters")


class MotionParameters(BaseModel):
    """Device motion settings shared by calibration and run files."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    high_speed: Optional[int] = Field(None, alias="HighSpeed", ge=0)
    low_speed: Optional[int] = Field(None, alias="LowSpeed", ge=0)
    acceleration_time: Optional[int] = Field(None, alias="AccelerationTime", ge=0)
    deceleration_time: Optional[int] = Field(None, alias="DecelerationTime", ge=0)
    idle_time: Optional[int] = Field(None, alias="IdleTime", ge=1, le=100)
    acceleration_profile: Optional[AccelerationProfile] = Field(None, alias="AccelerationProfile")
    microsteps: int = Field(16, alias="Microsteps", ge=2, le=500)

    # Cycle geometry and timing
    amplitude: int = Field(..., alias="Amplitude")
    period: float = Field(..., alias="Period", gt=0)
    dwell_time: float = Field(0.0, alias="DwellTime", ge=0)

    # Speed correction
    factor: float = Field(1.0, alias="Factor")
    max_speed: int = Field(10000, alias="MaxSpeed", gt=0)
    min_speed: int = Field(1, alias="MinSpeed", ge=0)

    @field_validator("acceleration_profile", mode="before")
    @classmethod
    def normalize_profile(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def check_speed_band(self):
        if self.min_speed >= self.max_speed:
            raise ValueError(f"MinSpeed {self.min_speed} must be below MaxSpeed {self.max_speed}")
        return self

    @classmethod
    def key_map(cls) -> Dict[str, str]:
        """Lower-case file key -> alias."""
        return {
            (info.alias or name).lower(): (info.alias or name)
            for name, info in cls.model_fields.items()
        }


class CalibrationParameters(MotionParameters):
    """Parameters for converging the high speed onto the target period."""
    tolerance: float = Field(..., alias="Tolerance", gt=0, lt=1)
    averaging_cycles: int = Field(1, alias="AveragingCycles", ge=1)
    max_iterations: Optional[int] = Field(None, alias="MaxIterations", ge=1)

    @property
    def min_period(self) -> float:
        return self.period * self.tolerance

    @property
    def max_period(self) -> float:
        return self.period * (2.0 - self.tolerance)


class RunParameters(MotionParameters):
    """Parameters for a production load run."""
    factor: float = Field(2.0, alias="Factor")
    offset: int = Field(0, alias="Offset")
    load_cycles: int = Field(0, alias="LoadCycles", ge=0)
    load_standby_cycles: int = Field(1, alias="LoadStandbyCycles", ge=0)
    standby_duration: float = Field(0.0, alias="StandbyDuration", ge=0)
    duration: Optional[float] = Field(None, alias="Duration", gt=0)
    park_speed: int = Field(1000, alias="ParkSpeed", gt=0)
    park_distance: int = Field(4913, alias="ParkDistance")


# =============================================================================
# FILE I/O
# =============================================================================

def read_key_value_pairs(filepath: Union[str, Path]) -> List[Tuple[str, str]]:
    """
    Read ``KEY VALUE`` lines.

    Returns:
        (lower-case key, value) pairs in file order
    """
    try:
        with open(filepath, "r") as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise ParameterFileError(f"cannot read {filepath}", "read_parameters", e) from e

    pairs = []
    for number, line in enumerate(lines, start=1):
        fields = line.split()
        if not fields or fields[0].startswith("#"):
            continue
        if len(fields) < 2:
            logger.warning(f"{filepath}:{number}: no value for {fields[0]!r}, skipped")
            continue
        pairs.append((fields[0].lower(), fields[1]))
    return pairs


def load_parameters(filepath: Union[str, Path], model: Type[P]) -> P:
    """
    Load and validate a parameter file into ``model``.

    Raises:
        ParameterFileError: unreadable file or invalid/missing values
    """
    key_map = model.key_map()
    values: Dict[str, str] = {}
    for key, value in read_key_value_pairs(filepath):
        alias = key_map.get(key)
        if alias is None:
            logger.warning(f"Couldn't understand {key!r} in {filepath}, ignored")
            continue
        values[alias] = value

    try:
        params = model.model_validate(values)
    except ValidationError as e:
        raise ParameterFileError(f"invalid parameters in {filepath}", "load_parameters", e) from e

    logger.info(f"Loaded {model.__name__} from {filepath}")
    return params


def load_calibration_parameters(filepath: Union[str, Path]) -> CalibrationParameters:
    return load_parameters(filepath, CalibrationParameters)


def load_run_parameters(filepath: Union[str, Path]) -> RunParameters:
    return load_parameters(filepath, RunParameters)


def write_calibrated_parameters(
    filepath: Union[str, Path],
    params: CalibrationParameters,
    final_speed: int,
    measured_time: float,
) -> Path:
    """
    Write the converged settings as a run input file.

    Run-only keys the operator still has to choose are left as
    commented placeholders so the file loads as RunParameters as-is.
    """
    filepath = Path(filepath)
    entries = [
        ("HighSpeed", final_speed),
        ("LowSpeed", params.low_speed),
        ("AccelerationTime", params.acceleration_time),
        ("DecelerationTime", params.deceleration_time),
        ("IdleTime", params.idle_time),
        ("AccelerationProfile", params.acceleration_profile.value if params.acceleration_profile else None),
        ("Microsteps", params.microsteps),
        ("Amplitude", params.amplitude),
        ("Period", params.period),
        ("DwellTime", params.dwell_time),
        ("MaxSpeed", params.max_speed),
        ("MinSpeed", params.min_speed),
    ]

    lines = [f"{key} {value}" for key, value in entries if value is not None]
    lines += [
        "# LoadStandbyCycles",
        "# LoadCycles",
        "# Offset",
        "# StandbyDuration",
        "",
        "# Calibration performed with:",
        f"# Averaging cycles: {params.averaging_cycles}",
        f"# Factor: {params.factor}",
        f"# Final period: {measured_time}",
    ]

    with open(filepath, "w") as f:
        f.write("\n".join(lines) + "\n")

    logger.info(f"Calibrated parameters written to {filepath}")
    return filepath
