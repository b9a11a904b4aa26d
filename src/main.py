"""
Stage Calibration Controller - Main Application Entry Point
============================================================
Command-line front end for the single-axis stage.

Subcommands:
- calibrate: converge the high speed onto the target period and write
  the calibrated run input
- run: cycle the load on the calibrated schedule
- interact: send raw controller mnemonics
- shell: main loop offering all of the above

The USB device is opened once per invocation and always closed on the
way out, whatever happened in between.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TextIO, Tuple

import yaml
from loguru import logger

# Add src to path for imports
SRC_DIR = Path(__file__).parent
PROJECT_ROOT = SRC_DIR.parent
sys.path.insert(0, str(SRC_DIR))

from hardware_interface import StageError, UsbDeviceConfig, UsbTransport
from data_pipeline import TabSeparatedTelemetryWriter
from simulation import SimulatedStageDevice, SimulatedUsbBackend
from stage_control import (
    StageController,
    calibrate,
    interactive_mode,
    load_calibration_parameters,
    load_run_parameters,
    prepare_session,
    run_session,
)

VERSION = "1.0.0"

DEFAULT_SESSION = {
    "calibrate_input": "CalibrateInput.txt",
    "calibrated_output": "RunInput_calibrated",
    "calibrate_telemetry": "CalibrateOutput.txt",
    "run_input": "RunInput.txt",
    "run_telemetry": "RunOutput.dat",
    "driver_settle_s": 3.0,
    "motor_settle_s": 3.0,
}


def load_app_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration from YAML file; missing file means defaults."""
    config_path = config_path or PROJECT_ROOT / "config" / "main_config.yaml"
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}
    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}
    logger.info(f"Configuration loaded from {config_path}")
    return config


def device_config(config: Dict[str, Any]) -> UsbDeviceConfig:
    usb_config = (config.get("hardware") or {}).get("usb") or {}
    return UsbDeviceConfig(**usb_config)


def session_config(config: Dict[str, Any]) -> Dict[str, Any]:
    session = dict(DEFAULT_SESSION)
    session.update(config.get("session") or {})
    return session


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> None:
    """Configure logging."""
    logger.remove()  # Remove default handler

    level = "DEBUG" if verbose else "INFO"

    # Console handler with custom format
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True
    )

    # File handler for debug logs
    log_dir = log_dir or PROJECT_ROOT / "logs"
    log_dir.mkdir(exist_ok=True)

    logger.add(
        log_dir / "stage_controller_{time}.log",
        rotation="10 MB",
        retention="7 days",
        level="DEBUG"
    )


def build_controller(
    config: Dict[str, Any],
    simulate: bool = False,
) -> Tuple[UsbTransport, StageController]:
    """
    Create the transport and command layer (not yet opened).

    In simulation mode the controller runs on the simulated device's
    virtual clock.
    """
    session = session_config(config)
    usb_config = device_config(config)

    clock_kwargs: Dict[str, Callable] = {}
    if simulate:
        device = SimulatedStageDevice(config=usb_config)
        transport = UsbTransport(usb_config, backend=SimulatedUsbBackend(device))
        clock_kwargs = {"clock": device.clock, "sleep": device.sleep}
        logger.info("Using simulated stage controller")
    else:
        transport = UsbTransport(usb_config)

    controller = StageController(
        transport,
        driver_settle_s=float(session["driver_settle_s"]),
        motor_settle_s=float(session["motor_settle_s"]),
        **clock_kwargs,
    )
    return transport, controller


# =============================================================================
# SUBCOMMANDS
# =============================================================================

def run_calibration(controller: StageController, session: Dict[str, Any]) -> int:
    params = load_calibration_parameters(session["calibrate_input"])
    prepare_session(controller, params)
    with TabSeparatedTelemetryWriter(session["calibrate_telemetry"]) as sink:
        result = calibrate(controller, params, output_path=session["calibrated_output"], sink=sink)

    print("\n=== Calibration Results ===")
    for key, value in result.summary().items():
        if isinstance(value, float):
            print(f"  {key}: {value:.6f}")
        else:
            print(f"  {key}: {value}")
    print(f"  written to: {result.output_path}")
    return 0


def run_load(controller: StageController, session: Dict[str, Any]) -> int:
    params = load_run_parameters(session["run_input"])
    prepare_session(controller, params)
    with TabSeparatedTelemetryWriter(session["run_telemetry"]) as sink:
        results = run_session(controller, params, sink=sink)

    print("\n=== Run Results ===")
    for number, result in enumerate(results, start=1):
        print(
            f"  [{number}] cycles: {result.cycles}  elapsed: {result.elapsed_s:.3f} s  "
            f"schedule error: {result.schedule_error_s:+.4f} s  final speed: {result.final_speed}"
        )
    return 0


def run_interactive(
    controller: StageController,
    input_stream: TextIO = sys.stdin,
    output_stream: TextIO = sys.stdout,
) -> int:
    interactive_mode(controller, input_stream, output_stream)
    return 0


def run_shell(
    controller: StageController,
    session: Dict[str, Any],
    input_stream: TextIO = sys.stdin,
    output_stream: TextIO = sys.stdout,
) -> int:
    """Main loop: pick calibrate, run or interactive until exit."""
    actions = {
        "calibrate": lambda: run_calibration(controller, session),
        "run": lambda: run_load(controller, session),
        "interactive": lambda: run_interactive(controller, input_stream, output_stream),
    }
    prompt = "Type 'calibrate', 'run', 'interactive' or 'exit'"
    print(prompt, file=output_stream)
    output_stream.flush()
    for raw_line in input_stream:
        choice = raw_line.strip().lower()
        if choice == "exit":
            break
        action = actions.get(choice)
        if action is None:
            if choice:
                print(f"Unknown choice {choice!r}", file=output_stream)
        else:
            action()
        print(prompt, file=output_stream)
        output_stream.flush()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stage Calibration Controller - closed-loop period control for a USB stepper stage"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use the simulated controller instead of the USB device"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {VERSION}"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.add_parser("calibrate", help="Calibrate the high speed to the target period")
    subparsers.add_parser("run", help="Run the load cycles from the run input")
    subparsers.add_parser("interact", help="Send raw controller commands")
    subparsers.add_parser("shell", help="Main loop offering calibrate, run and interactive (default)")
    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Setup logging
    setup_logging(args.verbose)

    config = load_app_config(args.config)
    session = session_config(config)
    transport, controller = build_controller(config, simulate=args.simulate)

    commands = {
        "calibrate": lambda: run_calibration(controller, session),
        "run": lambda: run_load(controller, session),
        "interact": lambda: run_interactive(controller),
        "shell": lambda: run_shell(controller, session),
    }

    try:
        transport.open()
        return commands[args.command or "shell"]()
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        if transport.is_open:
            try:
                controller.stop_motion()
            except StageError as e:
                logger.error(f"Couldn't stop the stage: {e}")
        return 130
    except StageError as e:
        logger.error(str(e))
        return 1
    finally:
        transport.close()


if __name__ == "__main__":
    sys.exit(main())
