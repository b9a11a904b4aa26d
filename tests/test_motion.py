"""
Tests for motion tracking and telemetry sinks.
"""

import sys
from pathlib import Path
from unittest.mock import Mock

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from data_pipeline import (
    MemoryTelemetrySink,
    TabSeparatedTelemetryWriter,
    TelemetrySample,
    read_telemetry_file,
)
from hardware_interface import TransportIOError
from stage_control import move_cycle, move_cycle_get_time, record_position, wait_for_idle


class TestWaitForIdle:
    """Tests for the busy-poll loop."""

    def test_returns_when_idle(self, controller, sim_device):
        controller.move_stage(1500)
        wait_for_idle(controller)
        assert not sim_device.is_moving
        assert controller.get_pulse_position() == 1500

    def test_records_samples_while_busy(self, controller, sim_device):
        sink = MemoryTelemetrySink()
        start = controller.clock()
        controller.move_stage(1500)
        wait_for_idle(controller, sink, start)

        arrays = sink.as_arrays()
        assert len(sink) > 10
        assert sink.flush_count == 1
        assert np.all(np.diff(arrays["elapsed_s"]) > 0)
        assert np.all(np.diff(arrays["pulse_position"]) >= 0)
        assert arrays["pulse_position"][-1] <= 1500

    def test_records_encoder_when_asked(self, controller):
        sink = MemoryTelemetrySink()
        controller.move_stage(500)
        wait_for_idle(controller, sink, include_encoder=True)
        assert all(s.encoder_position is not None for s in sink.samples)

    def test_flushes_sink_on_error(self):
        controller = Mock()
        controller.clock.return_value = 0.0
        controller.get_pulse_position.return_value = 10
        controller.get_motor_status.side_effect = [1, TransportIOError("bulk read timed out", "read_bulk")]
        sink = MemoryTelemetrySink()

        with pytest.raises(TransportIOError):
            wait_for_idle(controller, sink, start_time=0.0)
        assert len(sink) == 1
        assert sink.flush_count == 1


class TestMoveCycle:
    """Tests for the back-and-forth cycle."""

    def test_cycle_time_matches_motion_model(self, controller, sim_device):
        expected = sim_device.cycle_time(2000, dwell=0.4)
        measured = move_cycle_get_time(controller, 2000, dwell=0.4)
        assert measured == pytest.approx(expected, abs=0.01)
        assert controller.get_pulse_position() == 0

    def test_cycle_moves_down_first(self, controller, sim_device):
        move_cycle_get_time(controller, 700)
        moves = [c for c in sim_device.commands if c.startswith("X")]
        assert moves == ["X-700", "X700"]

    def test_boundary_samples(self, controller):
        sink = MemoryTelemetrySink()
        start = controller.clock()
        move_cycle_get_time(controller, 1000, sink=sink, start_time=start)
        samples = sink.samples
        assert samples[0].pulse_position == 0
        assert min(s.pulse_position for s in samples) == -1000
        assert samples[0].elapsed_s >= 0

    def test_faster_speed_shorter_cycle(self, controller):
        slow = move_cycle_get_time(controller, 2000)
        controller.set_high_speed(3000)
        fast = move_cycle_get_time(controller, 2000)
        assert fast < slow

    def test_move_cycle_without_timing(self, controller, sim_device):
        before = sim_device.clock()
        move_cycle(controller, 1000, dwell=0.5)
        assert sim_device.clock() - before >= 1.0
        assert controller.get_pulse_position() == 0

    def test_record_position(self, controller):
        controller.set_pulse_position(42)
        sink = MemoryTelemetrySink()
        sample = record_position(controller, sink, start_time=controller.clock())
        assert sample.pulse_position == 42
        assert sample.encoder_position is None
        assert sink.samples == [sample]


class TestTelemetry:
    """Tests for telemetry files and buffers."""

    def test_row_format(self):
        assert TelemetrySample(0.5, 100).to_row() == "0.5\t100\n"
        assert TelemetrySample(1.25, -3, 7).to_row() == "1.25\t-3\t7\n"

    def test_file_writer(self, tmp_path):
        path = tmp_path / "RunOutput.dat"
        samples = [TelemetrySample(0.1 * i, i * 10) for i in range(5)]
        with TabSeparatedTelemetryWriter(path) as writer:
            for sample in samples:
                writer.record(sample)
        assert writer.rows_written == 5
        assert read_telemetry_file(path) == samples

    def test_file_writer_append(self, tmp_path):
        path = tmp_path / "CalibrateOutput.txt"
        with TabSeparatedTelemetryWriter(path) as writer:
            writer.record(TelemetrySample(0.0, 0))
        with TabSeparatedTelemetryWriter(path, append=True) as writer:
            writer.record(TelemetrySample(1.0, 5, 4))
        assert len(read_telemetry_file(path)) == 2
        assert read_telemetry_file(path)[1].encoder_position == 4

    def test_closed_writer(self, tmp_path):
        writer = TabSeparatedTelemetryWriter(tmp_path / "out.dat")
        writer.close()
        writer.close()
        with pytest.raises(ValueError):
            writer.record(TelemetrySample(0.0, 0))

    def test_memory_sink_summary(self):
        sink = MemoryTelemetrySink()
        assert sink.summary() == {"sample_count": 0}
        for i in range(11):
            sink.record(TelemetrySample(i * 0.1, i * 100))
        summary = sink.summary()
        assert summary["sample_count"] == 11
        assert summary["duration_s"] == pytest.approx(1.0)
        assert summary["sample_rate_hz"] == pytest.approx(10.0)
        assert summary["max_pulse"] == 1000

    def test_memory_sink_bounded(self):
        sink = MemoryTelemetrySink(buffer_size=3)
        for i in range(5):
            sink.record(TelemetrySample(float(i), i))
        assert [s.pulse_position for s in sink.samples] == [2, 3, 4]

    def test_memory_sink_encoder_column(self):
        sink = MemoryTelemetrySink()
        sink.record(TelemetrySample(0.0, 0, 5))
        sink.record(TelemetrySample(0.1, 10, None))
        arrays = sink.as_arrays()
        assert arrays["encoder_position"][0] == 5.0
        assert np.isnan(arrays["encoder_position"][1])
        assert list(arrays["pulse_position"]) == [0, 10]

    def test_memory_sink_no_encoder_column(self):
        sink = MemoryTelemetrySink()
        sink.record(TelemetrySample(0.0, 0))
        assert "encoder_position" not in sink.as_arrays()
