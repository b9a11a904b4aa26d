"""
Motion state tracking.

The controller has no push notifications: the motor is Idle when the
status register reads 0 and Busy otherwise, and the only way to see the
transition is to poll. Polling is a tight loop with no back-off and no
timeout; a STOP sent to the device (or killing the process) is the only
way out of a stuck move.
"""

from __future__ import annotations

from typing import Optional

from data_pipeline import TelemetrySample, TelemetrySink

from .commands import StageController


def record_position(
    controller: StageController,
    sink: TelemetrySink,
    start_time: float,
    include_encoder: bool = False,
) -> TelemetrySample:
    """Read the current position and append one sample to the sink."""
    elapsed = controller.clock() - start_time
    pulse = controller.get_pulse_position()
    encoder = controller.get_encoder_position() if include_encoder else None
    sample = TelemetrySample(elapsed, pulse, encoder)
    sink.record(sample)
    return sample


def wait_for_idle(
    controller: StageController,
    sink: Optional[TelemetrySink] = None,
    start_time: Optional[float] = None,
    include_encoder: bool = False,
) -> None:
    """
    Block until the status register reads idle.

    With a sink, every busy poll also records (elapsed, position); the
    sink is flushed on the way out, error paths included.

    Args:
        controller: Stage command interface
        sink: Optional telemetry sink
        start_time: Reference for elapsed times (controller clock); now if None
        include_encoder: Also record the encoder position
    """
    if sink is None:
        while controller.get_motor_status() != 0:
            pass
        return

    if start_time is None:
        start_time = controller.clock()
    try:
        while controller.get_motor_status() != 0:
            record_position(controller, sink, start_time, include_encoder)
    finally:
        sink.flush()


def move_cycle_get_time(
    controller: StageController,
    amplitude: int,
    sink: Optional[TelemetrySink] = None,
    start_time: Optional[float] = None,
    dwell: float = 0.0,
    include_encoder: bool = False,
) -> float:
    """
    Run one back-and-forth cycle and return its wall-clock duration.

    Move(-amplitude) -> idle -> dwell -> Move(+amplitude) -> idle -> dwell.

    Returns:
        Cycle duration in seconds
    """
    cycle_start = controller.clock()
    if start_time is None:
        start_time = cycle_start

    for distance in (-amplitude, amplitude):
        if sink is not None:
            record_position(controller, sink, start_time, include_encoder)
        controller.move_stage(distance)
        wait_for_idle(controller, sink, start_time, include_encoder)
        controller.sleep(dwell)

    return controller.clock() - cycle_start


def move_cycle(controller: StageController, amplitude: int, dwell: float = 0.0) -> None:
    """Same cycle as move_cycle_get_time, without timing or telemetry."""
    for distance in (-amplitude, amplitude):
        controller.move_stage(distance)
        wait_for_idle(controller)
        controller.sleep(dwell)
