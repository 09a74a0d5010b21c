"""
Telemetry parsing for the Spyglass LED controller.

Pure functions and frozen dataclasses; no I/O.  Response lines are terse and
ad hoc: each field appears as ``LABEL:value`` or ``LABEL=value`` and runs up
to a terminator that differs from field to field.  Those terminators are
part of the wire contract, so every parser below names its own rather than
sharing a generic tokenizer::

    ledvi    V1:12.01,I1:0.512,V2:11.98,I2:0.498
    led_dac  led1=1200, led2=0
    led_cal  LED1 (low=1234 high=60000) LED2 (low=1200 high=61000)
    version  FPGA: 1.2.3 / ARM: 2.0.1 / DSP: 3.4.5   (three lines)
    em=-1    header line, then five rows of five integers
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Sequence

from .constants import CHANNELS, GRID_SIZE, VOLTAGE_NOISE_FLOOR
from .exceptions import FieldMissingError, FieldValueError, ParseError, ValidationError

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"\W+")
_INTEGER = re.compile(r"[+-]?[0-9]+")
_NUMBER = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------


def extract_field(
    line: str,
    label: str,
    terminators: str,
    *,
    allow_eol: bool = False,
    skip_blanks: bool = False,
    start: int = 0,
) -> tuple[str, int]:
    """Slice the value that follows *label* in *line*.

    Args:
        line: Raw response line.
        label: Field label including its ``:`` or ``=``.
        terminators: Characters that end the value.
        allow_eol: Accept the end of the line as a terminator.
        skip_blanks: Skip spaces between the label and the value.
        start: Index to start searching for *label* from.

    Returns:
        ``(value, end)`` where *end* is the index of the terminator.

    Raises:
        FieldMissingError: If *label* or its terminator is absent.
    """
    idx = line.find(label, start)
    if idx < 0:
        raise FieldMissingError(f"{label!r} not found in {line!r}")
    begin = idx + len(label)
    if skip_blanks:
        while begin < len(line) and line[begin] == " ":
            begin += 1

    end = begin
    while end < len(line) and line[end] not in terminators:
        end += 1
    if end == len(line) and not allow_eol:
        raise FieldMissingError(f"No terminator after {label!r} in {line!r}")
    return line[begin:end], end


def _to_int(text: str, label: str) -> int:
    # int() would also take "1_0" and non-ASCII digits
    if not _INTEGER.fullmatch(text.strip()):
        raise FieldValueError(f"{label!r} value {text!r} is not an integer")
    return int(text)


def _to_float(text: str, label: str) -> float:
    if not _NUMBER.fullmatch(text.strip()):
        raise FieldValueError(f"{label!r} value {text!r} is not a number")
    return float(text)


def _check_channel(channel: int) -> int:
    if channel not in CHANNELS:
        raise ValidationError(f"Channel must be one of {CHANNELS}, got {channel}")
    return channel - 1


# ---------------------------------------------------------------------------
# Exposure grid
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExposureGrid:
    """A 5x5 grid of exposure-meter zone readings (row-major)."""

    cells: tuple[tuple[int, ...], ...]

    @classmethod
    def blank(cls) -> ExposureGrid:
        """Return a grid with every zone set to the ``-1`` sentinel."""
        return cls(tuple((-1,) * GRID_SIZE for _ in range(GRID_SIZE)))

    @property
    def total(self) -> int:
        return sum(sum(row) for row in self.cells)

    def as_fields(self) -> dict[str, str]:
        """Display fields ``em_11`` … ``em_55``."""
        return {
            f"em_{r + 1}{c + 1}": str(value)
            for r, row in enumerate(self.cells)
            for c, value in enumerate(row)
        }

    @staticmethod
    def cleared_fields() -> dict[str, str]:
        return {f"em_{r + 1}{c + 1}": "" for r in range(GRID_SIZE) for c in range(GRID_SIZE)}


def parse_exposure_rows(rows: Sequence[str]) -> ExposureGrid:
    """Build an :class:`ExposureGrid` from the five data rows of ``em=-1``.

    Each row is split on runs of non-word characters with empty tokens
    dropped, so ``" 12, 0  3 4\\t5"`` is five tokens.  The grid is only
    accepted whole.

    Raises:
        ParseError: If there are not exactly five rows of exactly five
            integers.
    """
    if len(rows) != GRID_SIZE:
        raise ParseError(f"Expected {GRID_SIZE} exposure rows, got {len(rows)}")

    zones = [list(row) for row in ExposureGrid.blank().cells]
    for r, row in enumerate(rows):
        tokens = [t for t in _NON_WORD.split(row) if t]
        if len(tokens) != GRID_SIZE:
            raise ParseError(f"Exposure row {r + 1} has {len(tokens)} values: {row!r}")
        for c, token in enumerate(tokens):
            zones[r][c] = _to_int(token, f"zone {r + 1}{c + 1}")
    return ExposureGrid(tuple(tuple(row) for row in zones))


# ---------------------------------------------------------------------------
# Power telemetry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PowerTelemetry:
    """Per-channel LED voltage and current from ``ledvi``.

    A field is ``None`` when it could not be read; the other fields of the
    same line are unaffected.
    """

    v1: float | None = None
    i1: float | None = None
    v2: float | None = None
    i2: float | None = None

    @property
    def complete(self) -> bool:
        return None not in (self.v1, self.i1, self.v2, self.i2)

    def current(self, channel: int) -> float | None:
        return (self.i1, self.i2)[_check_channel(channel)]

    def voltage(self, channel: int) -> float | None:
        return (self.v1, self.v2)[_check_channel(channel)]

    def as_fields(self) -> dict[str, str]:
        def fmt(value: float | None, places: int) -> str:
            return "" if value is None else f"{value:.{places}f}"

        return {
            "volts1": fmt(self.v1, 2),
            "amps1": fmt(self.i1, 3),
            "volts2": fmt(self.v2, 2),
            "amps2": fmt(self.i2, 3),
        }


def _clamp_voltage(volts: float | None) -> float | None:
    if volts is not None and VOLTAGE_NOISE_FLOOR < volts < 0.0:
        return 0.0
    return volts


def parse_power(line: str) -> PowerTelemetry:
    """Parse a ``ledvi`` response.

    ``V1``, ``I1`` and ``V2`` end at a comma; ``I2`` is last on the line and
    may end at a comma or the end of the line.  Each field fails on its own.
    """
    fields: dict[str, float | None] = {}
    for name, label, allow_eol in (
        ("v1", "V1:", False),
        ("i1", "I1:", False),
        ("v2", "V2:", False),
        ("i2", "I2:", True),
    ):
        try:
            text, _ = extract_field(line, label, ",", allow_eol=allow_eol)
            fields[name] = _to_float(text, label)
        except ParseError as exc:
            logger.debug("ledvi: %s", exc)
            fields[name] = None

    return PowerTelemetry(
        v1=_clamp_voltage(fields["v1"]),
        i1=fields["i1"],
        v2=_clamp_voltage(fields["v2"]),
        i2=fields["i2"],
    )


# ---------------------------------------------------------------------------
# DAC readback
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DacSetpoint:
    """DAC codes for channel 1 and channel 2."""

    led1: int = 0
    led2: int = 0

    def for_channel(self, channel: int) -> int:
        return (self.led1, self.led2)[_check_channel(channel)]

    def with_channel(self, channel: int, value: int) -> DacSetpoint:
        """Return a copy with only *channel* changed."""
        if _check_channel(channel) == 0:
            return replace(self, led1=value)
        return replace(self, led2=value)

    def as_fields(self) -> dict[str, str]:
        return {"dac1": str(self.led1), "dac2": str(self.led2)}


def parse_dac(line: str) -> DacSetpoint:
    """Parse a ``led_dac`` response (``led1=`` to comma, ``led2=`` to comma or EOL)."""
    led1, _ = extract_field(line, "led1=", ",")
    led2, _ = extract_field(line, "led2=", ",", allow_eol=True)
    return DacSetpoint(_to_int(led1, "led1="), _to_int(led2, "led2="))


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CalibrationRecord:
    """Low (turn-on) and high (rated current) DAC codes for both channels."""

    low1: int
    high1: int
    low2: int
    high2: int

    def for_channel(self, channel: int) -> tuple[int, int]:
        """Return ``(low, high)`` for *channel*."""
        if _check_channel(channel) == 0:
            return self.low1, self.high1
        return self.low2, self.high2

    def as_fields(self, prefix: str = "cal") -> dict[str, str]:
        return {
            f"{prefix}_low1": str(self.low1),
            f"{prefix}_high1": str(self.high1),
            f"{prefix}_low2": str(self.low2),
            f"{prefix}_high2": str(self.high2),
        }

    @staticmethod
    def cleared_fields(prefix: str = "cal") -> dict[str, str]:
        return {f"{prefix}_{name}": "" for name in ("low1", "high1", "low2", "high2")}


def parse_calibration(line: str) -> CalibrationRecord:
    """Parse a ``led_cal`` response.

    ``low=`` ends at a space and ``high=`` at the closing parenthesis; the
    second channel's pair is searched for after the first ``)``.
    """
    values: list[int] = []
    pos = 0
    for _ in CHANNELS:
        low, pos = extract_field(line, "low=", " ", start=pos)
        high, pos = extract_field(line, "high=", ")", start=pos)
        values.extend((_to_int(low, "low="), _to_int(high, "high=")))
    low1, high1, low2, high2 = values
    return CalibrationRecord(low1=low1, high1=high1, low2=low2, high2=high2)


# ---------------------------------------------------------------------------
# Firmware versions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FirmwareVersionSet:
    """ARM, DSP and FPGA firmware versions reported by ``version``."""

    arm: str = ""
    dsp: str = ""
    fpga: str = ""

    def mismatches(self, expected: FirmwareVersionSet) -> list[str]:
        """Describe every component that differs from *expected*.

        Components with a blank expected value are not checked.
        """
        problems = []
        for name in ("arm", "dsp", "fpga"):
            want = getattr(expected, name)
            have = getattr(self, name)
            if want and have != want:
                problems.append(f"{name.upper()} is {have or '?'}, expected {want}")
        return problems

    def as_fields(self) -> dict[str, str]:
        return {"ver_arm": self.arm, "ver_dsp": self.dsp, "ver_fpga": self.fpga}


def parse_versions(lines: Sequence[str]) -> FirmwareVersionSet:
    """Parse the three ``version`` response lines.

    A value follows its label after optional blanks and runs to the next
    space or CR/LF.  A component that cannot be found is left blank.
    """
    text = "\r\n".join(lines) + "\r\n"
    found: dict[str, str] = {}
    for name, label in (("fpga", "FPGA:"), ("arm", "ARM:"), ("dsp", "DSP:")):
        try:
            found[name], _ = extract_field(text, label, " \r\n", skip_blanks=True)
        except FieldMissingError:
            logger.warning("No %s version in response: %r", label.rstrip(":"), lines)
            found[name] = ""
    return FirmwareVersionSet(**found)
