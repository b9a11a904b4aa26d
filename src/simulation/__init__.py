"""
Simulation Package
===================
Virtual-time stand-in for the USB stage controller, used by --simulate
and by the test suite.
"""

from .simulated_stage import (
    SimulatedStageDevice,
    SimulatedUsbBackend,
)

__all__ = [
    "SimulatedStageDevice",
    "SimulatedUsbBackend",
]
