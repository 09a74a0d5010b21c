"""
Spyglass controller command set: command building, echo/response handling,
and typed parsing.

This module sits between the transport (raw line I/O that fails closed) and
the calibration controller.  It knows how to:

* validate parameters before they become commands,
* build properly formatted command strings,
* turn transport failures into typed exceptions,
* hand response lines to :mod:`telemetry` for parsing.

It does **not** own the serial port; that belongs to
:class:`~spyglass_ledcal.transport.LineTransport`.
"""

from __future__ import annotations

import logging

from .constants import CHANNELS, DAC_MAX, DAC_MIN, GRID_SIZE
from .exceptions import HardwareAbsentError, ProtocolError, TimeoutError, ValidationError
from .telemetry import (
    CalibrationRecord,
    DacSetpoint,
    ExposureGrid,
    FirmwareVersionSet,
    PowerTelemetry,
    parse_calibration,
    parse_dac,
    parse_exposure_rows,
    parse_power,
    parse_versions,
)
from .transport import LineTransport

logger = logging.getLogger(__name__)

_VERSION_LINES = 3


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _validate_channel(channel: int) -> None:
    if channel not in CHANNELS:
        raise ValidationError(f"Channel must be one of {CHANNELS}, got {channel}")


def _validate_dac(value: int, label: str = "DAC value") -> None:
    if not (DAC_MIN <= value <= DAC_MAX):
        raise ValidationError(f"{label} must be {DAC_MIN}-{DAC_MAX}, got {value}")


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------


def build_set_calibration(channel: int, low: int, high: int) -> str:
    """Return the ``led_cal=<ch>,<low>,<high>`` command for *channel* (1 or 2).

    The controller numbers channels from zero on the wire.
    """
    _validate_channel(channel)
    _validate_dac(low, "low")
    _validate_dac(high, "high")
    return f"led_cal={channel - 1},{low},{high}"


def build_set_dac(led1: int, led2: int) -> str:
    """Return the ``led_dac=<v1>,<v2>`` command."""
    _validate_dac(led1, "led1")
    _validate_dac(led2, "led2")
    return f"led_dac={led1},{led2}"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class FixtureProtocol:
    """Sends commands through a transport and parses the responses.

    Args:
        transport: A :class:`~spyglass_ledcal.transport.LineTransport`; it
            must be open before any command is issued.
    """

    def __init__(self, transport: LineTransport) -> None:
        self._tx = transport

    # -- Transport helpers --------------------------------------------------

    def _send(self, cmd: str) -> None:
        """Write *cmd* and consume its echo."""
        if not self._tx.write_line(cmd):
            raise ProtocolError(f"Command '{cmd}' was not echoed by the controller")

    def _read(self, cmd: str) -> str:
        """Read one response line for *cmd*."""
        ok, line = self._tx.read_line()
        if not ok:
            raise TimeoutError(f"No response from controller for '{cmd}' (got {line!r})")
        return line

    def _cmd(self, cmd: str) -> str:
        """Send *cmd* and return its single response line."""
        self._send(cmd)
        return self._read(cmd)

    # -- Link ---------------------------------------------------------------

    def check_echo(self) -> None:
        """Confirm the controller answers the bare-newline probe."""
        if not self._tx.check_for_echo():
            raise ProtocolError("No communication with controller")

    def disable_events(self) -> None:
        """Stop asynchronous telemetry pushes so reads pair with requests."""
        self._cmd("disable_events=1")

    # -- Information --------------------------------------------------------

    def versions(self) -> FirmwareVersionSet:
        """Query the ARM, DSP and FPGA firmware versions."""
        self._send("version")
        lines = [self._read("version") for _ in range(_VERSION_LINES)]
        return parse_versions(lines)

    def read_calibration(self) -> CalibrationRecord:
        """Return the calibration currently stored in the controller."""
        return parse_calibration(self._cmd("led_cal"))

    def write_calibration(self, channel: int, low: int, high: int) -> str:
        """Store *low*/*high* for *channel* and return the acknowledgement line."""
        return self._cmd(build_set_calibration(channel, low, high))

    # -- Telemetry ----------------------------------------------------------

    def set_exposure_style(self, verbose: bool) -> None:
        """Select the verbose (``1``) or terse (``0``) exposure telegram."""
        self._cmd(f"em_style={int(verbose)}")

    def probe_scope(self) -> None:
        """Check that the exposure meter answers an ``em=-1`` request.

        The grid rows are read and dropped so the next command's echo is
        the next line on the wire.
        """
        self._send("em=-1")
        ok, header = self._tx.read_line()
        if not ok or not header.strip():
            raise HardwareAbsentError("Exposure meter not detected")
        for _ in range(GRID_SIZE):
            self._read("em=-1")

    def read_exposure(self) -> ExposureGrid:
        """Read the 5x5 exposure grid (header line, then five rows)."""
        self._send("em=-1")
        self._read("em=-1")
        rows = [self._read("em=-1") for _ in range(GRID_SIZE)]
        return parse_exposure_rows(rows)

    def read_power(self) -> PowerTelemetry:
        """Read both channels' voltage and current."""
        return parse_power(self._cmd("ledvi"))

    def read_dac(self) -> DacSetpoint:
        """Read back the DAC codes currently applied."""
        return parse_dac(self._cmd("led_dac"))

    # -- Output control -----------------------------------------------------

    def set_dac(self, led1: int, led2: int) -> str:
        """Apply DAC codes to both channels and return the acknowledgement."""
        return self._cmd(build_set_dac(led1, led2))

    def led_off(self) -> None:
        """Disable the LED output."""
        self._cmd("led=0")
