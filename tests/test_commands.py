"""
Tests for the wire codec and the typed command layer.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hardware_interface import (
    AccelerationProfile,
    CommandRejectedError,
    DriverWriteError,
    MotorState,
    MovementMode,
    ParameterOutOfRangeError,
    ResponseParseError,
    TransportIOError,
)
from stage_control import (
    build_command,
    check_response,
    encode_command,
    extract_response,
    parse_numeric,
)


class TestProtocol:
    """Tests for command encoding and response extraction."""

    def test_build_command_with_value(self):
        assert build_command("hspd", 1500) == b"HSPD=1500\x00"

    def test_build_command_bare(self):
        assert build_command("MST") == b"MST\x00"

    def test_single_trailing_nul(self):
        command = build_command("DRVMS", 16)
        assert command.count(b"\x00") == 1
        assert command.endswith(b"\x00")

    def test_encode_rejects_bad_input(self):
        with pytest.raises(ValueError):
            encode_command("")
        with pytest.raises(ValueError):
            encode_command("HSPD\x00=1")
        with pytest.raises(ValueError):
            encode_command("HSPD=é")

    def test_extract_discards_bytes_after_nul(self):
        assert extract_response(b"OK\x00\xaa\xaa\xaa") == "OK"

    def test_extract_without_nul(self):
        assert extract_response(b"1500") == "1500"

    def test_extract_is_idempotent(self):
        raw = b"-250\x00garbage"
        first = extract_response(raw)
        second = extract_response(raw)
        assert first == second == "-250"
        assert "garbage" not in first

    def test_extract_non_ascii(self):
        with pytest.raises(TransportIOError):
            extract_response(b"\xff\xfe\x00")

    def test_rejected_response(self):
        with pytest.raises(CommandRejectedError) as exc_info:
            check_response(b"FOO\x00", "?FOO", "send_command")
        assert exc_info.value.command == "FOO"
        assert exc_info.value.response == "?FOO"

    def test_accepted_response_passes_through(self):
        assert check_response(b"HSPD=1\x00", "OK") == "OK"

    def test_parse_numeric(self):
        assert parse_numeric(b"PX\x00", "-1200") == -1200

    def test_parse_numeric_failure(self):
        with pytest.raises(ResponseParseError) as exc_info:
            parse_numeric(b"PX\x00", "OK", int, "get_pulse_position")
        assert exc_info.value.operation == "get_pulse_position"


class TestStageControllerSetters:
    """Tests for setters, range checks and movement mode tracking."""

    def test_high_speed_round_trip(self, controller, sim_device):
        controller.set_high_speed(2500)
        assert sim_device.commands[-1] == "HSPD=2500"
        assert controller.get_high_speed() == 2500

    def test_motion_settings(self, controller):
        controller.set_low_speed(200)
        controller.set_acceleration_time(300)
        controller.set_deceleration_time(250)
        assert controller.get_low_speed() == 200
        assert controller.get_acceleration_time() == 300
        assert controller.get_deceleration_time() == 250

    def test_negative_speed_rejected_before_sending(self, controller, sim_device):
        sent = len(sim_device.commands)
        with pytest.raises(ParameterOutOfRangeError):
            controller.set_high_speed(-1)
        assert len(sim_device.commands) == sent

    @pytest.mark.parametrize("setter,value", [
        ("set_idle_time", 0),
        ("set_idle_time", 101),
        ("set_microstepping", 1),
        ("set_microstepping", 501),
        ("set_idle_current", 99),
        ("set_run_current", 3001),
    ])
    def test_driver_ranges_checked_before_sending(self, controller, sim_device, setter, value):
        sent = len(sim_device.commands)
        with pytest.raises(ParameterOutOfRangeError) as exc_info:
            getattr(controller, setter)(value)
        assert exc_info.value.value == value
        assert len(sim_device.commands) == sent

    def test_driver_range_limits_accepted(self, controller):
        controller.set_idle_time(100)
        controller.set_microstepping(2)
        controller.set_idle_current(2800)
        controller.set_run_current(100)
        assert controller.get_idle_time() == 100
        assert controller.get_microstepping() == 2
        assert controller.get_idle_current() == 2800
        assert controller.get_run_current() == 100

    def test_out_of_range_is_value_error(self, controller):
        with pytest.raises(ValueError):
            controller.set_microstepping(1000)

    def test_acceleration_profile(self, controller, sim_device):
        controller.set_acceleration_profile("SIN")
        assert sim_device.registers["SCV"] == 1
        assert controller.get_acceleration_profile() == AccelerationProfile.SINUSOIDAL
        controller.set_acceleration_profile(AccelerationProfile.TRAPEZOIDAL)
        assert controller.get_acceleration_profile() == AccelerationProfile.TRAPEZOIDAL

    def test_unknown_profile(self, controller):
        with pytest.raises(ParameterOutOfRangeError):
            controller.set_acceleration_profile("square")

    def test_movement_mode_tracked(self, controller, sim_device):
        assert controller.movement_mode is None
        controller.set_movement_type("abs")
        assert controller.movement_mode == MovementMode.ABSOLUTE
        assert sim_device.absolute
        controller.set_movement_type(MovementMode.INCREMENTAL)
        assert controller.movement_mode == MovementMode.INCREMENTAL
        assert not sim_device.absolute

    def test_positions(self, controller):
        controller.set_pulse_position(1200)
        controller.set_encoder_position(-40)
        assert controller.get_pulse_position() == 1200
        assert controller.get_encoder_position() == -40


class TestStageControllerCommands:
    """Tests for rejection handling, driver commits and motion commands."""

    def test_unknown_command_rejected(self, controller):
        with pytest.raises(CommandRejectedError) as exc_info:
            controller.send_command("FOO")
        assert exc_info.value.response == "?FOO"

    def test_query_returns_rejection_text(self, controller):
        assert controller.query("foo") == "?FOO"

    def test_move_while_moving_rejected(self, controller):
        controller.move_stage(1000)
        with pytest.raises(CommandRejectedError) as exc_info:
            controller.move_stage(1000)
        assert exc_info.value.response == "?Moving"

    def test_move_is_relative_in_incremental_mode(self, controller, sim_device):
        controller.set_movement_type("inc")
        controller.move_stage(300)
        sim_device.sleep(5.0)
        controller.move_stage(300)
        sim_device.sleep(5.0)
        assert controller.get_pulse_position() == 600

    def test_move_is_a_target_in_absolute_mode(self, controller, sim_device):
        controller.set_movement_type("abs")
        controller.move_stage(300)
        sim_device.sleep(5.0)
        controller.move_stage(300)
        sim_device.sleep(5.0)
        assert controller.get_pulse_position() == 300

    def test_motor_state(self, controller, sim_device):
        assert controller.get_motor_state() == MotorState.IDLE
        controller.move_stage(3000)
        assert controller.get_motor_state() == MotorState.BUSY
        sim_device.sleep(sim_device.move_duration(3000))
        assert controller.get_motor_status() == 0

    def test_jog_and_stop(self, controller, sim_device):
        controller.jog(+1)
        sim_device.sleep(1.0)
        assert controller.get_motor_state() == MotorState.BUSY
        controller.stop_motion()
        assert controller.get_motor_status() == 0
        assert controller.get_pulse_position() > 0

    def test_jog_rejected_at_zero_speed(self, controller, sim_device):
        controller.set_high_speed(0)
        with pytest.raises(CommandRejectedError) as exc_info:
            controller.jog(1)
        assert exc_info.value.response == "?J+"
        assert not sim_device.is_moving

    def test_write_driver_settings_waits_then_verifies(self, controller, sim_device):
        before = sim_device.clock()
        controller.write_driver_settings()
        assert sim_device.commands[-2:] == ["RW", "R4"]
        assert sim_device.clock() - before >= controller.driver_settle_s

    def test_write_driver_settings_failure(self, controller, sim_device):
        sim_device.driver_write_ok = False
        with pytest.raises(DriverWriteError) as exc_info:
            controller.write_driver_settings()
        assert exc_info.value.response == "0"

    def test_update_readable_driver_settings(self, controller, sim_device):
        controller.update_readable_driver_settings()
        assert sim_device.commands[-2:] == ["RR", "R2"]

    def test_motor_enable(self, controller, sim_device):
        before = sim_device.clock()
        controller.turn_motor_on()
        assert controller.is_motor_enabled()
        assert sim_device.clock() - before >= controller.motor_settle_s
        controller.turn_motor_off()
        assert not controller.is_motor_enabled()

    def test_transport_error_propagates(self, controller, sim_device):
        sim_device.short_write_next = True
        with pytest.raises(TransportIOError):
            controller.get_high_speed()
