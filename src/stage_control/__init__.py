"""
Stage Control Package
======================
Command layer, motion tracking and closed-loop speed calibration for
the single-axis stage.

Data flows one way: control loop -> StageController -> UsbTransport ->
device, with position telemetry flowing back through the motion layer
into a telemetry sink.
"""

from .protocol import (
    build_command,
    encode_command,
    extract_response,
    check_response,
    parse_numeric,
)
from .commands import StageController
from .motion import wait_for_idle, move_cycle_get_time, move_cycle, record_position
from .parameters import (
    MotionParameters,
    CalibrationParameters,
    RunParameters,
    read_key_value_pairs,
    load_calibration_parameters,
    load_run_parameters,
    write_calibrated_parameters,
)
from .control_loop import (
    HISTORY_SIZE,
    CorrectionPolicy,
    ControlLoopState,
    IterationReport,
    CalibrationResult,
    RunResult,
    corrected_speed,
    check_speed_bounds,
    in_tolerance,
    prepare_session,
    calibrate,
    run,
    run_session,
)
from .interactive import interactive_mode

__all__ = [
    "build_command",
    "encode_command",
    "extract_response",
    "check_response",
    "parse_numeric",
    "StageController",
    "wait_for_idle",
    "move_cycle_get_time",
    "move_cycle",
    "record_position",
    "MotionParameters",
    "CalibrationParameters",
    "RunParameters",
    "read_key_value_pairs",
    "load_calibration_parameters",
    "load_run_parameters",
    "write_calibrated_parameters",
    "HISTORY_SIZE",
    "CorrectionPolicy",
    "ControlLoopState",
    "IterationReport",
    "CalibrationResult",
    "RunResult",
    "corrected_speed",
    "check_speed_bounds",
    "in_tolerance",
    "prepare_session",
    "calibrate",
    "run",
    "run_session",
    "interactive_mode",
]
