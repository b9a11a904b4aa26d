"""
Tests for the interactive command mode and the command-line entry point.
"""

import io
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import main
from hardware_interface import TransportIOError, UsbTransport
from stage_control import interactive_mode

CALIBRATE_INPUT = """\
HighSpeed 1500
AccelerationTime 100
DecelerationTime 100
Amplitude 2000
Period 3.0
DwellTime 0.4
Tolerance 0.99
Factor 1.0
MaxSpeed 5000
MinSpeed 100
"""


class TestInteractiveMode:
    """Tests for the raw command relay."""

    def run_lines(self, controller, text):
        output = io.StringIO()
        sent = interactive_mode(controller, io.StringIO(text), output)
        return sent, output.getvalue()

    def test_echoes_command_and_response(self, controller):
        sent, output = self.run_lines(controller, "hspd\nHSPD=2200\nhspd\nexit\n")
        assert sent == 3
        assert "HSPD --> 1500" in output
        assert "HSPD=2200 --> OK" in output
        assert "HSPD --> 2200" in output

    def test_rejected_command_shown(self, controller):
        _, output = self.run_lines(controller, "FOO\nEXIT\n")
        assert "FOO --> ?FOO" in output

    def test_exit_stops_reading(self, controller, sim_device):
        sent, _ = self.run_lines(controller, "exit\nHSPD=10\n")
        assert sent == 0
        assert sim_device.registers["HSPD"] == 1500

    def test_help_and_blank_lines_not_sent(self, controller, sim_device):
        sent, output = self.run_lines(controller, "\n   \nhelp\nEXIT\n")
        assert sent == 0
        assert "COMMANDS:" in output
        assert sim_device.commands == []

    def test_end_of_input_leaves(self, controller):
        sent, output = self.run_lines(controller, "MST")
        assert sent == 1
        assert "MST --> 0" in output
        assert "Exiting interactive mode" in output

    def test_unencodable_command_not_sent(self, controller):
        sent, output = self.run_lines(controller, "HSPD=é\nexit\n")
        assert sent == 0
        assert "not sent" in output

    def test_transport_errors_propagate(self, controller, sim_device):
        sim_device.short_write_next = True
        with pytest.raises(TransportIOError):
            self.run_lines(controller, "HSPD\n")


class TestConfiguration:
    """Tests for YAML application config."""

    def test_missing_config_uses_defaults(self, tmp_path):
        config = main.load_app_config(tmp_path / "missing.yaml")
        assert config == {}
        assert main.device_config(config).vendor_id == 0x1589
        assert main.session_config(config)["run_telemetry"] == "RunOutput.dat"

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "main_config.yaml"
        path.write_text(yaml.safe_dump({
            "hardware": {"usb": {"vendor_id": "0x1234", "timeout_s": 1.5}},
            "session": {"run_input": "custom.txt"},
        }))
        config = main.load_app_config(path)
        assert main.device_config(config).vendor_id == 0x1234
        assert main.device_config(config).timeout_ms == 1500
        session = main.session_config(config)
        assert session["run_input"] == "custom.txt"
        assert session["calibrate_input"] == "CalibrateInput.txt"

    def test_empty_sections_use_defaults(self, tmp_path):
        path = tmp_path / "main_config.yaml"
        path.write_text("hardware:\nsession:\n")
        config = main.load_app_config(path)
        assert main.device_config(config).vendor_id == 0x1589
        assert main.session_config(config)["run_telemetry"] == "RunOutput.dat"

        path.write_text("hardware:\n  usb:\n")
        assert main.device_config(main.load_app_config(path)).product_id == 0xA101

    def test_shipped_config_loads(self):
        config = main.load_app_config()
        assert main.device_config(config).product_id == 0xA101


class TestCommandLine:
    """Tests for the entry point in simulation mode."""

    def write_config(self, tmp_path):
        (tmp_path / "CalibrateInput.txt").write_text(CALIBRATE_INPUT)
        session = {
            "calibrate_input": str(tmp_path / "CalibrateInput.txt"),
            "calibrated_output": str(tmp_path / "RunInput_calibrated"),
            "calibrate_telemetry": str(tmp_path / "CalibrateOutput.txt"),
            "run_input": str(tmp_path / "RunInput_calibrated"),
            "run_telemetry": str(tmp_path / "RunOutput.dat"),
        }
        path = tmp_path / "main_config.yaml"
        path.write_text(yaml.safe_dump({"session": session}))
        return path

    def test_calibrate_then_run(self, tmp_path):
        config_path = self.write_config(tmp_path)
        with patch.object(main, "setup_logging"):
            assert main.main(["--simulate", "--config", str(config_path), "calibrate"]) == 0
            assert (tmp_path / "RunInput_calibrated").exists()
            assert (tmp_path / "CalibrateOutput.txt").stat().st_size > 0

            with open(tmp_path / "RunInput_calibrated", "a") as f:
                f.write("LoadCycles 2\n")
            assert main.main(["--simulate", "--config", str(config_path), "run"]) == 0
            assert (tmp_path / "RunOutput.dat").stat().st_size > 0
        assert UsbTransport._active is None

    def test_missing_input_fails_cleanly(self, tmp_path):
        config_path = tmp_path / "main_config.yaml"
        config_path.write_text(yaml.safe_dump({"session": {"calibrate_input": str(tmp_path / "nope.txt")}}))
        with patch.object(main, "setup_logging"):
            assert main.main(["--simulate", "--config", str(config_path), "calibrate"]) == 1
        assert UsbTransport._active is None

    def test_shell_dispatches_to_interactive(self, tmp_path):
        config = yaml.safe_load(self.write_config(tmp_path).read_text())
        transport, controller = main.build_controller(config, simulate=True)
        output = io.StringIO()
        with transport:
            main.run_shell(
                controller,
                main.session_config(config),
                io.StringIO("bogus\ninteractive\nHSPD\nexit\nexit\n"),
                output,
            )
        text = output.getvalue()
        assert "Unknown choice 'bogus'" in text
        assert "HSPD --> 1000" in text
        assert text.count("Type 'calibrate'") == 3

    def test_parser_defaults_to_shell(self):
        args = main.build_parser().parse_args(["--simulate"])
        assert args.command is None
        assert args.simulate
