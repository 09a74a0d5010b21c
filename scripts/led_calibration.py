#!/usr/bin/env python3
"""
LED Calibration — Operator station for the Spyglass two-channel LED fixture.

Finds the low (turn-on) and high (rated current) DAC codes for both LED
channels and stores them in the controller.  Settings (serial port, report
file, expected firmware versions, search limits) come from a YAML file; the
port used is written back so the next run defaults to it.

Usage:
    python scripts/led_calibration.py                                # prompts for operator/unit
    python scripts/led_calibration.py --operator jp --serial SG-0042 --port /dev/ttyUSB0
    python scripts/led_calibration.py --monitor                      # live telemetry only
    python scripts/led_calibration.py --config path/to/led_cal.yaml
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Mapping

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from spyglass_ledcal import (
    CalibrationController,
    FixtureSettings,
    FixtureWorker,
    LedCalError,
    OperatorInput,
    PollLoop,
    load_settings,
    save_settings,
)

# ---------------------------------------------------------------------------
# Default settings location (relative to this script)
# ---------------------------------------------------------------------------

DEFAULT_CONFIG = Path(__file__).resolve().parent.parent / "config" / "led_cal.yaml"

# ---------------------------------------------------------------------------
# Terminal helpers
# ---------------------------------------------------------------------------


class C:
    """ANSI color codes (no-op on non-TTY)."""

    if sys.stdout.isatty():
        BOLD = "\033[1m"
        DIM = "\033[2m"
        GREEN = "\033[32m"
        YELLOW = "\033[33m"
        RED = "\033[31m"
        CYAN = "\033[36m"
        RESET = "\033[0m"
    else:
        BOLD = DIM = GREEN = YELLOW = RED = CYAN = RESET = ""


def ok(text: str) -> None:
    print(f"  {C.GREEN}✓{C.RESET} {text}")


def fail(text: str) -> None:
    print(f"  {C.RED}✗{C.RESET} {text}")


def warn(text: str) -> None:
    print(f"  {C.YELLOW}⚠{C.RESET} {text}")


def info(text: str) -> None:
    print(f"  {C.DIM}{text}{C.RESET}")


def banner(text: str) -> None:
    print(f"\n{C.BOLD}{'═' * 60}")
    print(f"  {text}")
    print(f"{'═' * 60}{C.RESET}")


def prompt(text: str, default: str = "") -> str:
    suffix = f" [{default}]" if default else ""
    try:
        val = input(f"  {text}{suffix}: ").strip()
    except EOFError:
        return default
    return val if val else default


def confirm(text: str) -> bool:
    print()
    for line in text.splitlines():
        warn(line)
    return prompt("Continue? (y/n)", "n").lower().startswith("y")


# ---------------------------------------------------------------------------
# Display sink
# ---------------------------------------------------------------------------


class TerminalDisplay:
    """Prints controller updates; keeps the latest value of every field."""

    def __init__(self, quiet_fields: bool = True) -> None:
        self.fields: dict[str, str] = {}
        self.stale = False
        self.quiet_fields = quiet_fields

    def show(self, fields: Mapping[str, str]) -> None:
        self.fields.update(fields)
        if not self.quiet_fields:
            for name, value in fields.items():
                info(f"{name:16s} {value}")

    def status(self, text: str) -> None:
        print(f"  {C.CYAN}»{C.RESET} {text}")

    def mark_stale(self, stale: bool) -> None:
        if stale and not self.stale:
            warn("Fixture not responding, values are stale")
        self.stale = stale

    def get(self, name: str) -> str:
        return self.fields.get(name, "")


def print_telemetry(display: TerminalDisplay) -> None:
    """Print the current telemetry picture."""
    get = display.get
    stale = f"  {C.YELLOW}(stale){C.RESET}" if display.stale else ""
    print(f"\n{C.BOLD}  Telemetry{C.RESET}{stale}")
    print(f"  FW   ARM {get('ver_arm'):10s} DSP {get('ver_dsp'):10s} FPGA {get('ver_fpga')}")
    print(
        f"  CAL  ch1 {get('cal_low1'):>6s} / {get('cal_high1'):<6s}"
        f"  ch2 {get('cal_low2'):>6s} / {get('cal_high2')}"
    )
    print(f"  DAC  ch1 {get('dac1'):>6s}  ch2 {get('dac2'):>6s}")
    print(
        f"  V/I  ch1 {get('volts1'):>6s} V {get('amps1'):>6s} A"
        f"   ch2 {get('volts2'):>6s} V {get('amps2'):>6s} A"
    )
    print(f"  EM   total {get('total_exposure')}")
    for r in range(1, 6):
        row = "  ".join(f"{get(f'em_{r}{c}'):>6s}" for c in range(1, 6))
        print(f"       {row}")


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------


def run_calibration(settings: FixtureSettings, args: argparse.Namespace, config_path: Path) -> int:
    """Collect operator input, run one calibration, and report. Returns exit code."""
    banner("Spyglass LED Calibration")

    operator = args.operator if args.operator is not None else prompt("Operator")
    serial_number = args.serial if args.serial is not None else prompt("Serial number")
    port = args.port if args.port is not None else prompt("Serial port", settings.port)

    display = TerminalDisplay(quiet_fields=not args.verbose)
    ask = (lambda message: True) if args.yes else confirm
    controller = CalibrationController(settings=settings, display=display, confirm=ask)

    print()
    started = time.monotonic()
    try:
        outcome = controller.start_calibration(OperatorInput(operator, serial_number, port))
    except KeyboardInterrupt:
        print(f"\n\n  {C.YELLOW}Interrupted!{C.RESET}")
        return 130
    finally:
        controller.transport.close()
    elapsed = time.monotonic() - started

    if port and port != settings.port:
        try:
            save_settings(settings.with_port(port), config_path)
        except OSError as exc:
            warn(f"Could not save settings: {exc}")

    banner("Result")
    if outcome.previous is not None:
        p = outcome.previous
        info(f"Previous:  ch1 {p.low1} / {p.high1}   ch2 {p.low2} / {p.high2}")
    if not outcome.success:
        fail(outcome.message)
        return 1

    r = outcome.record
    assert r is not None
    ok(f"Channel 1:  low {r.low1}   high {r.high1}")
    ok(f"Channel 2:  low {r.low2}   high {r.high2}")
    ok(f"{outcome.message} in {elapsed:.0f} s")
    info(f"Report: {settings.report_file}")
    return 0


def run_monitor(settings: FixtureSettings, args: argparse.Namespace) -> int:
    """Poll the fixture and print telemetry until Ctrl-C. Returns exit code."""
    port = args.port or settings.port
    if not port:
        fail("No serial port configured, use --port")
        return 1

    banner(f"Spyglass LED Monitor  ({port})")
    display = TerminalDisplay()
    controller = CalibrationController(settings=settings, display=display)
    worker = FixtureWorker(controller, port_source=lambda: port)
    poller = PollLoop(worker, settings.poll_period_s)
    worker.start()
    poller.start()

    try:
        while True:
            time.sleep(settings.poll_period_s)
            print_telemetry(display)
    except KeyboardInterrupt:
        print(f"\n\n  {C.YELLOW}Stopped.{C.RESET}")
    finally:
        poller.stop()
        worker.stop(timeout=settings.timeout_s * 4)
        controller.transport.close()
        info("Disconnected.")
    return 0


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Calibrate the low/high DAC codes of a Spyglass two-channel LED.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to YAML settings file (default: {DEFAULT_CONFIG.name})",
    )
    parser.add_argument("--port", help="Serial port (default: from settings)")
    parser.add_argument("--operator", help="Operator name")
    parser.add_argument("--serial", help="Unit serial number")
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Continue without asking when firmware versions are unexpected",
    )
    parser.add_argument(
        "--monitor",
        action="store_true",
        help="Only display live telemetry (no calibration)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config)
    except (LedCalError, OSError) as exc:
        print(f"{C.RED}✗{C.RESET} Settings error: {exc}", file=sys.stderr)
        return 1

    if args.monitor:
        return run_monitor(settings, args)
    return run_calibration(settings, args, args.config)


if __name__ == "__main__":
    sys.exit(main())
