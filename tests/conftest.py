"""
Shared fixtures: a simulated stage opened through the real UsbTransport.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hardware_interface import UsbTransport
from simulation import SimulatedStageDevice, SimulatedUsbBackend
from stage_control import StageController


@pytest.fixture(autouse=True)
def release_active_transport():
    """Never let one test's open handle block the next test's open()."""
    yield
    UsbTransport._active = None


@pytest.fixture
def sim_device():
    return SimulatedStageDevice(high_speed=1500, acceleration_time=100, deceleration_time=100)


@pytest.fixture
def sim_backend(sim_device):
    return SimulatedUsbBackend(sim_device)


@pytest.fixture
def transport(sim_backend):
    transport = UsbTransport(backend=sim_backend).open()
    yield transport
    transport.close()


@pytest.fixture
def controller(transport, sim_device):
    return StageController(transport, clock=sim_device.clock, sleep=sim_device.sleep)


@pytest.fixture
def write_params(tmp_path):
    """Write a KEY VALUE parameter file and return its path."""
    def _write(name, text):
        path = tmp_path / name
        path.write_text(text)
        return path
    return _write
