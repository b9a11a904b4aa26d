"""
Calibration and Run Control Loops
==================================
Closed-loop speed correction that keeps back-and-forth cycles on a
target period.

Correction law (proportional):
    error     = measured_time - target_period * cycle_index
    new_speed = base_speed + round(error * factor * 1000)

The two loops apply it differently:

- Calibration measures the average duration of ``averaging_cycles``
  single cycles, so ``cycle_index`` stays at 1 and the correction is
  applied on top of the current speed until the average lands strictly
  inside (period * tolerance, period * (2 - tolerance)).
- Run measures the total time since the run started and compares it to
  the ideal schedule ``period * cycle_index``. The correction is taken
  from the speed the run started with, so a 0.01 s error on the first
  cycle cannot compound into seconds of drift after a thousand cycles.

Every new speed is checked against [min_speed, max_speed] before it is
sent; leaving the band stops the loop with SpeedBoundExceededError.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import numpy as np
from loguru import logger

from data_pipeline import TelemetrySink
from hardware_interface import (
    CalibrationNotConvergedError,
    MovementMode,
    SpeedBoundExceededError,
)

from .commands import StageController
from .motion import move_cycle_get_time, wait_for_idle
from .parameters import (
    CalibrationParameters,
    MotionParameters,
    RunParameters,
    write_calibrated_parameters,
)

PARK_SETTLE_S = 1.0
HISTORY_SIZE = 1000


class CorrectionPolicy(str, Enum):
    """Which error the loop corrects on."""
    PER_CYCLE = "per_cycle"      # averaged single-cycle time vs. one period
    CUMULATIVE = "cumulative"    # total elapsed time vs. period * cycle_index


def _history() -> Deque:
    return deque(maxlen=HISTORY_SIZE)


@dataclass
class ControlLoopState:
    """
    Commanded speed and cycle position, updated once per completed cycle.

    Only the last HISTORY_SIZE measurements and speeds are kept;
    ``iterations`` counts all of them.
    """
    speed: int
    cycle_index: int = 1
    iterations: int = 0
    measured_times: Deque[float] = field(default_factory=_history)
    speeds: Deque[int] = field(default_factory=_history)

    def observe(self, measured_time: float) -> None:
        self.iterations += 1
        self.measured_times.append(measured_time)
        self.speeds.append(self.speed)

    def advance(self, new_speed: int, policy: CorrectionPolicy) -> None:
        self.speed = new_speed
        if policy is CorrectionPolicy.CUMULATIVE:
            self.cycle_index += 1

    @property
    def last_measured_time(self) -> Optional[float]:
        return self.measured_times[-1] if self.measured_times else None


@dataclass
class IterationReport:
    """Snapshot passed to on_iteration callbacks."""
    iteration: int
    cycle_index: int
    measured_time: float
    error: float
    speed: int
    new_speed: Optional[int]


@dataclass
class CalibrationResult:
    """Outcome of a converged calibration."""
    final_speed: int
    measured_time: float
    iterations: int
    measured_times: List[float]
    speeds: List[int]
    output_path: Optional[Path] = None

    def summary(self) -> Dict[str, Any]:
        times = np.array(self.measured_times, dtype=float)
        return {
            "final_speed": self.final_speed,
            "measured_time": self.measured_time,
            "iterations": self.iterations,
            "mean_time": float(np.mean(times)),
            "std_time": float(np.std(times)),
            "min_speed_tried": int(np.min(self.speeds)),
            "max_speed_tried": int(np.max(self.speeds)),
        }


@dataclass
class RunResult:
    """Outcome of one run."""
    start_speed: int
    final_speed: int
    cycles: int
    elapsed_s: float
    schedule_error_s: float


# =============================================================================
# PURE CONTROL LAW
# =============================================================================

def corrected_speed(
    current_speed: int,
    measured_time: float,
    target_period: float,
    cycle_index: int,
    factor: float,
) -> int:
    """
    Apply the proportional correction.

    corrected_speed(1500, 3.2, 3.0, 1, 1.0) == 1700
    """
    error = measured_time - target_period * cycle_index
    return int(current_speed + round(error * factor * 1000.0))


def check_speed_bounds(speed: int, low: int, high: int, operation: str = "check_speed_bounds") -> int:
    """Raise SpeedBoundExceededError unless low <= speed <= high."""
    if speed < low or speed > high:
        logger.error(f"Max/min high speed tripped! Value was {speed}")
        raise SpeedBoundExceededError(speed, low, high, operation)
    return speed


def in_tolerance(measured_time: float, period: float, tolerance: float) -> bool:
    """True when measured_time is strictly inside the tolerance band."""
    return period * tolerance < measured_time < period * (2.0 - tolerance)


# =============================================================================
# SESSION SETUP
# =============================================================================

def apply_motion_parameters(controller: StageController, params: MotionParameters) -> None:
    """Send the motion settings present in a parameter file."""
    if params.high_speed is not None:
        controller.set_high_speed(params.high_speed)
    if params.low_speed is not None:
        controller.set_low_speed(params.low_speed)
    if params.acceleration_time is not None:
        controller.set_acceleration_time(params.acceleration_time)
    if params.deceleration_time is not None:
        controller.set_deceleration_time(params.deceleration_time)
    if params.idle_time is not None:
        controller.set_idle_time(params.idle_time)
    if params.acceleration_profile is not None:
        controller.set_acceleration_profile(params.acceleration_profile)


def prepare_session(controller: StageController, params: MotionParameters) -> None:
    """
    Fixed setup before a calibration or run.

    Microstepping, incremental moves, zeroed positions, the file's
    motion settings, a verified driver write and finally motor on.
    A DriverWriteError stops here, before the motor is energized.
    """
    logger.info("Preparing stage session")
    controller.set_microstepping(params.microsteps)
    controller.set_movement_type(MovementMode.INCREMENTAL)
    controller.set_pulse_position(0)
    controller.set_encoder_position(0)
    apply_motion_parameters(controller, params)
    controller.write_driver_settings()
    controller.turn_motor_on()


# =============================================================================
# CALIBRATION
# =============================================================================

def calibrate(
    controller: StageController,
    params: CalibrationParameters,
    output_path: Optional[Union[str, Path]] = None,
    sink: Optional[TelemetrySink] = None,
    on_iteration: Optional[Callable[[IterationReport], None]] = None,
) -> CalibrationResult:
    """
    Converge the high speed so one cycle takes ``params.period``.

    The session must already be prepared (see prepare_session).

    Args:
        controller: Stage command interface
        params: Calibration parameters
        output_path: Where to write the calibrated run input, if given
        sink: Optional telemetry sink for position samples
        on_iteration: Called after every measured iteration

    Returns:
        CalibrationResult with the converged speed

    Raises:
        SpeedBoundExceededError: correction left [min_speed, max_speed]
        CalibrationNotConvergedError: max_iterations reached
    """
    policy = CorrectionPolicy.PER_CYCLE
    state = ControlLoopState(speed=controller.get_high_speed())
    session_start = controller.clock()

    logger.info(
        f"Calibrating to {params.period} s "
        f"(band {params.min_period:.4f}-{params.max_period:.4f} s), starting at speed {state.speed}"
    )

    while True:
        times = [
            move_cycle_get_time(controller, params.amplitude, sink, session_start, params.dwell_time)
            for _ in range(params.averaging_cycles)
        ]
        measured = float(np.mean(times))
        state.observe(measured)
        error = measured - params.period * state.cycle_index

        if in_tolerance(measured, params.period, params.tolerance):
            _report(on_iteration, state, measured, error, None)
            break

        if params.max_iterations is not None and state.iterations >= params.max_iterations:
            raise CalibrationNotConvergedError(state.iterations, measured, "calibrate")

        new_speed = corrected_speed(state.speed, measured, params.period, state.cycle_index, params.factor)
        _report(on_iteration, state, measured, error, new_speed)
        check_speed_bounds(new_speed, params.min_speed, params.max_speed, "calibrate")
        controller.set_high_speed(new_speed)
        state.advance(new_speed, policy)

    result = CalibrationResult(
        final_speed=state.speed,
        measured_time=measured,
        iterations=state.iterations,
        measured_times=list(state.measured_times),
        speeds=list(state.speeds),
    )
    if output_path is not None:
        result.output_path = write_calibrated_parameters(output_path, params, state.speed, measured)

    logger.success(
        f"Calibration complete after {state.iterations} iterations: "
        f"speed {state.speed}, period {measured:.4f} s"
    )
    return result


# =============================================================================
# RUN
# =============================================================================

def park_at_origin(controller: StageController, park_speed: int) -> None:
    """Return to absolute pulse position 0 at park_speed, then go back to incremental moves."""
    controller.set_movement_type(MovementMode.ABSOLUTE)
    controller.set_high_speed(park_speed)
    controller.move_stage(0)
    controller.set_movement_type(MovementMode.INCREMENTAL)
    wait_for_idle(controller)


def run(
    controller: StageController,
    params: RunParameters,
    sink: Optional[TelemetrySink] = None,
    on_iteration: Optional[Callable[[IterationReport], None]] = None,
    start_speed: Optional[int] = None,
) -> RunResult:
    """
    Cycle the load for ``load_cycles`` cycles or ``duration`` seconds.

    Each cycle's speed is corrected against the cumulative schedule.
    Ends by moving ``offset + park_distance`` to the parked position.

    Args:
        controller: Stage command interface (session already prepared)
        params: Run parameters
        sink: Optional telemetry sink
        on_iteration: Called after every corrected cycle
        start_speed: Base speed for corrections; read from the device if None

    Returns:
        RunResult
    """
    policy = CorrectionPolicy.CUMULATIVE
    if start_speed is None:
        start_speed = controller.get_high_speed()

    if not params.load_cycles and params.duration is None:
        logger.warning("Neither LoadCycles nor Duration set, no load cycles will run")

    park_at_origin(controller, params.park_speed)
    controller.set_high_speed(start_speed)
    controller.move_stage(-params.offset)
    wait_for_idle(controller)
    controller.sleep(PARK_SETTLE_S)

    state = ControlLoopState(speed=start_speed)
    run_start = controller.clock()
    elapsed = 0.0
    schedule_error = 0.0

    logger.info(f"Running {params.load_cycles or 'timed'} cycles at period {params.period} s, speed {start_speed}")

    while _budget_left(state, params, elapsed):
        move_cycle_get_time(controller, params.amplitude, sink, run_start, params.dwell_time)
        elapsed = controller.clock() - run_start
        state.observe(elapsed)

        schedule_error = elapsed - params.period * state.cycle_index
        new_speed = corrected_speed(start_speed, elapsed, params.period, state.cycle_index, params.factor)
        _report(on_iteration, state, elapsed, schedule_error, new_speed)
        check_speed_bounds(new_speed, params.min_speed, params.max_speed, "run")
        controller.set_high_speed(new_speed)
        state.advance(new_speed, policy)

    cycles = state.cycle_index - 1
    controller.move_stage(params.offset + params.park_distance)
    wait_for_idle(controller)
    controller.sleep(PARK_SETTLE_S)

    logger.success(f"Run complete: {cycles} cycles in {elapsed:.2f} s (schedule error {schedule_error:+.4f} s)")
    return RunResult(
        start_speed=start_speed,
        final_speed=state.speed,
        cycles=cycles,
        elapsed_s=elapsed,
        schedule_error_s=schedule_error,
    )


def run_session(
    controller: StageController,
    params: RunParameters,
    sink: Optional[TelemetrySink] = None,
    on_iteration: Optional[Callable[[IterationReport], None]] = None,
) -> List[RunResult]:
    """
    Repeat run() ``load_standby_cycles`` times with standby pauses between.

    Every repetition starts from the same base speed.
    """
    start_speed = controller.get_high_speed()
    repetitions = max(1, params.load_standby_cycles)
    results = []
    for repetition in range(1, repetitions + 1):
        logger.info(f"Load cycle {repetition}/{repetitions}")
        results.append(run(controller, params, sink, on_iteration, start_speed=start_speed))
        if repetition < repetitions and params.standby_duration:
            logger.info(f"Standing by for {params.standby_duration} s")
            controller.sleep(params.standby_duration)
    return results


def _budget_left(state: ControlLoopState, params: RunParameters, elapsed: float) -> bool:
    if params.load_cycles and state.cycle_index > params.load_cycles:
        return False
    if params.duration is not None and elapsed >= params.duration:
        return False
    return bool(params.load_cycles) or params.duration is not None


def _report(
    callback: Optional[Callable[[IterationReport], None]],
    state: ControlLoopState,
    measured: float,
    error: float,
    new_speed: Optional[int],
) -> None:
    report = IterationReport(
        iteration=state.iterations,
        cycle_index=state.cycle_index,
        measured_time=measured,
        error=error,
        speed=state.speed,
        new_speed=new_speed,
    )
    logger.bind(
        iteration=report.iteration,
        speed=report.speed,
        measured=report.measured_time,
    ).info(f"t: {measured:.4f} s  error: {error:+.4f} s  speed: {state.speed} -> {new_speed}")
    if callback is not None:
        callback(report)
