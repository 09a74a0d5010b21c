"""
Spyglass LED Calibration Controller

Drives one calibration fixture: establishes contact with the LED controller,
keeps the telemetry picture current, and runs the four threshold searches
that produce a :class:`~spyglass_ledcal.telemetry.CalibrationRecord`.

The controller never touches a GUI.  Results come back as dataclasses and
every displayed value is pushed to a :class:`DisplaySink` as
``field name -> text`` updates, so any front end (terminal, Qt, web) can
subscribe::

    controller = CalibrationController(settings=load_settings("led_cal.yaml"))
    outcome = controller.start_calibration(
        OperatorInput(operator="jp", serial_number="SG-0042", port="/dev/ttyUSB0")
    )
    if outcome.success:
        print(outcome.record)

Run sequence:
    validate input → open port → echo probe → disable events → versions
    → stored calibration → scope check → low1, low2, high1, high2
    → restore lows → save → LED off
"""

from __future__ import annotations

import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Protocol

from .config import FixtureSettings
from .exceptions import (
    ConnectionError,
    LedCalError,
    ParseError,
    TimeoutError,
    ValidationError,
    VersionMismatchError,
)
from .protocol import FixtureProtocol
from .report import append_report
from .search import bisect_threshold
from .telemetry import (
    CalibrationRecord,
    DacSetpoint,
    ExposureGrid,
    FirmwareVersionSet,
    PowerTelemetry,
)
from .transport import LineTransport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class DisplaySink(Protocol):
    """Receives display updates from the controller."""

    def show(self, fields: Mapping[str, str]) -> None: ...

    def status(self, text: str) -> None: ...

    def mark_stale(self, stale: bool) -> None: ...


class NullDisplay:
    """A :class:`DisplaySink` that discards everything."""

    def show(self, fields: Mapping[str, str]) -> None:
        pass

    def status(self, text: str) -> None:
        pass

    def mark_stale(self, stale: bool) -> None:
        pass


ConfirmPrompt = Callable[[str], bool]


def _decline(message: str) -> bool:
    return False


# ---------------------------------------------------------------------------
# States & results
# ---------------------------------------------------------------------------


class CalState(Enum):
    """Where a calibration run currently is."""

    IDLE = "idle"
    CONNECTING = "connecting"
    PROBING = "probing"
    READING_CALIBRATION = "reading calibration"
    CHECKING_SCOPE = "checking scope"
    SEARCHING_LOW1 = "searching low, channel 1"
    SEARCHING_LOW2 = "searching low, channel 2"
    SEARCHING_HIGH1 = "searching high, channel 1"
    SEARCHING_HIGH2 = "searching high, channel 2"
    SAVING = "saving"


_LOW_STATES = {1: CalState.SEARCHING_LOW1, 2: CalState.SEARCHING_LOW2}
_HIGH_STATES = {1: CalState.SEARCHING_HIGH1, 2: CalState.SEARCHING_HIGH2}


@dataclass(frozen=True)
class OperatorInput:
    """What the operator typed in before pressing *start*."""

    operator: str
    serial_number: str
    port: str

    def validate(self) -> None:
        """Raise :class:`ValidationError` naming the first blank field."""
        if not self.operator.strip():
            raise ValidationError("Operator name is required")
        if not self.serial_number.strip():
            raise ValidationError("Serial number is required")
        if not self.port.strip():
            raise ValidationError("Serial port is required")


@dataclass(frozen=True)
class TelemetrySnapshot:
    """The controller's latest view of the fixture."""

    versions: FirmwareVersionSet | None
    stored: CalibrationRecord | None
    power: PowerTelemetry
    grid: ExposureGrid
    total_exposure: int
    dac: DacSetpoint


@dataclass
class CalibrationOutcome:
    """Result of one :meth:`CalibrationController.start_calibration` call."""

    success: bool
    message: str
    record: CalibrationRecord | None = None
    previous: CalibrationRecord | None = None
    versions: FirmwareVersionSet | None = None
    error: LedCalError | None = None


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class CalibrationController:
    """Calibration state machine and telemetry cache for one fixture.

    Args:
        transport: Line transport to use; one is created from *settings* if
            omitted.
        settings: Fixture settings (expected versions, search limits,
            report file).
        display: Receives field updates and status text.
        confirm: Asked yes/no when the firmware versions are unexpected.
    """

    def __init__(
        self,
        transport: LineTransport | None = None,
        settings: FixtureSettings | None = None,
        display: DisplaySink | None = None,
        confirm: ConfirmPrompt | None = None,
    ) -> None:
        self.settings = settings or FixtureSettings()
        self.transport = transport or LineTransport(timeout=self.settings.timeout_s)
        self.protocol = FixtureProtocol(self.transport)
        self.display: DisplaySink = display or NullDisplay()
        self.confirm: ConfirmPrompt = confirm or _decline

        self.state = CalState.IDLE
        self.versions: FirmwareVersionSet | None = None
        self.stored: CalibrationRecord | None = None
        self.power = PowerTelemetry()
        self.grid = ExposureGrid.blank()
        self.total_exposure = 0
        self.dac = DacSetpoint()

    # -- State --------------------------------------------------------------

    def _enter(self, state: CalState, status: str | None = None) -> None:
        if state is not self.state:
            logger.info("State %s -> %s", self.state.name, state.name)
        self.state = state
        if status:
            self.display.status(status)

    def snapshot(self) -> TelemetrySnapshot:
        return TelemetrySnapshot(
            versions=self.versions,
            stored=self.stored,
            power=self.power,
            grid=self.grid,
            total_exposure=self.total_exposure,
            dac=self.dac,
        )

    # -- Connection ---------------------------------------------------------

    def connect(self, port: str) -> None:
        """Open *port*, closing any previous connection."""
        if not self.transport.open(port):
            raise ConnectionError(f"Port could not be opened: {port!r}")

    def establish(self) -> FirmwareVersionSet:
        """Probe the link, silence event chatter and read the versions."""
        self.protocol.check_echo()
        self.protocol.disable_events()
        return self.read_versions()

    # -- Reads --------------------------------------------------------------

    def read_versions(self) -> FirmwareVersionSet:
        self.versions = self.protocol.versions()
        self.display.show(self.versions.as_fields())
        return self.versions

    def read_stored_calibration(self) -> CalibrationRecord:
        """Read the calibration already stored in the controller."""
        try:
            self.stored = self.protocol.read_calibration()
        except ParseError:
            self.stored = None
            self.display.show(CalibrationRecord.cleared_fields("cal"))
            raise
        self.display.show(self.stored.as_fields("cal"))
        return self.stored

    def read_power(self) -> PowerTelemetry:
        self.power = self.protocol.read_power()
        self.display.show(self.power.as_fields())
        return self.power

    def read_exposure(self) -> ExposureGrid:
        """Read the exposure grid and update :attr:`total_exposure`.

        On a malformed or incomplete grid every zone is cleared and the total
        is reset to zero before the error propagates.
        """
        try:
            grid = self.protocol.read_exposure()
        except (ParseError, TimeoutError):
            self.grid = ExposureGrid.blank()
            self.total_exposure = 0
            self.display.show({**ExposureGrid.cleared_fields(), "total_exposure": ""})
            raise
        self.grid = grid
        self.total_exposure = grid.total
        self.display.show({**grid.as_fields(), "total_exposure": str(self.total_exposure)})
        return grid

    def read_dac(self) -> DacSetpoint:
        self.dac = self.protocol.read_dac()
        self.display.show(self.dac.as_fields())
        return self.dac

    def refresh_telemetry(self) -> TelemetrySnapshot:
        """Re-read DAC readback, power and exposure."""
        self.read_dac()
        self.read_power()
        self.read_exposure()
        return self.snapshot()

    # -- Output -------------------------------------------------------------

    def apply_setpoint(self, led1: int, led2: int, settle_s: float) -> TelemetrySnapshot:
        """Set both DAC codes, wait *settle_s*, and refresh the feedback."""
        self.protocol.set_dac(led1, led2)
        time.sleep(settle_s)
        return self.refresh_telemetry()

    def _apply_solo(self, channel: int, code: int, settle_s: float) -> None:
        """Drive *channel* at *code* with the other channel at zero."""
        setpoint = DacSetpoint().with_channel(channel, code)
        self.apply_setpoint(setpoint.led1, setpoint.led2, settle_s)

    # -- Searches -----------------------------------------------------------

    def find_low(self, channel: int) -> int:
        """Return the highest code on *channel* that still reads zero exposure."""
        limits = self.settings.search
        self._enter(_LOW_STATES[channel], f"Finding low calibration for channel {channel}")

        def is_dark(code: int) -> bool:
            self._apply_solo(channel, code, limits.low_settle_s)
            return self.total_exposure == 0

        return bisect_threshold(
            limits.low_start, limits.low_end, is_dark, label=f"low{channel}"
        )

    def find_high(self, channel: int) -> int:
        """Return the highest code on *channel* that keeps current at or under the ceiling."""
        limits = self.settings.search
        self._enter(_HIGH_STATES[channel], f"Finding high calibration for channel {channel}")

        def within_ceiling(code: int) -> bool:
            self._apply_solo(channel, code, limits.high_settle_s)
            amps = self.power.current(channel)
            if amps is None:
                raise ParseError(f"Channel {channel} current unavailable at DAC {code}")
            return amps <= limits.current_ceiling_a

        return bisect_threshold(
            limits.high_start, limits.high_end, within_ceiling, label=f"high{channel}"
        )

    def run_searches(self) -> CalibrationRecord:
        """Run all four searches and leave both channels at their low codes."""
        low1 = self.find_low(1)
        low2 = self.find_low(2)
        high1 = self.find_high(1)
        high2 = self.find_high(2)
        record = CalibrationRecord(low1=low1, high1=high1, low2=low2, high2=high2)
        self.display.show(record.as_fields("new"))

        self.apply_setpoint(low1, low2, self.settings.search.low_settle_s)
        return record

    def save_calibration(self, record: CalibrationRecord) -> None:
        """Store *record* in the controller, one command per channel."""
        for channel in (1, 2):
            low, high = record.for_channel(channel)
            ack = self.protocol.write_calibration(channel, low, high)
            logger.info("Channel %d calibration stored (%d, %d): %s", channel, low, high, ack)

    # -- Calibration run ----------------------------------------------------

    def _check_versions(self, versions: FirmwareVersionSet) -> None:
        problems = versions.mismatches(self.settings.expected_versions)
        if not problems:
            return
        message = "Unexpected firmware:\n  " + "\n  ".join(problems) + "\nContinue anyway?"
        logger.warning("Firmware mismatch: %s", "; ".join(problems))
        if not self.confirm(message):
            raise VersionMismatchError("Calibration cancelled: " + "; ".join(problems))

    def start_calibration(self, inputs: OperatorInput) -> CalibrationOutcome:
        """Run a complete calibration for the unit described by *inputs*.

        Every failure ends the run and is returned as an unsuccessful
        :class:`CalibrationOutcome`; nothing is retried.  Once the port has
        been opened the LED output is switched off on every exit path.
        """
        try:
            inputs.validate()
        except ValidationError as exc:
            self.display.status(str(exc))
            logger.warning("Calibration not started: %s", exc)
            return CalibrationOutcome(False, str(exc), error=exc)

        opened = False
        versions: FirmwareVersionSet | None = None
        previous: CalibrationRecord | None = None
        try:
            self._enter(CalState.CONNECTING, f"Opening {inputs.port}")
            self.connect(inputs.port)
            opened = True

            self._enter(CalState.PROBING, "Contacting controller")
            versions = self.establish()
            self._check_versions(versions)

            self._enter(CalState.READING_CALIBRATION, "Reading stored calibration")
            try:
                previous = self.read_stored_calibration()
            except ParseError as exc:
                logger.warning("Stored calibration unreadable: %s", exc)

            self._enter(CalState.CHECKING_SCOPE, "Checking exposure meter")
            self.protocol.set_exposure_style(False)
            self.protocol.probe_scope()

            record = self.run_searches()

            self._enter(CalState.SAVING, "Saving calibration")
            self.save_calibration(record)
            message = "Calibration complete"
            report_error = self._write_report(inputs, versions, previous, record)
            if report_error is not None:
                message += f" (report not written: {report_error})"
            outcome = CalibrationOutcome(True, message, record, previous, versions)

        except LedCalError as exc:
            logger.error("Calibration aborted in %s: %s", self.state.name, exc)
            outcome = CalibrationOutcome(False, str(exc), None, previous, versions, exc)

        finally:
            if opened and self.transport.is_open:
                with suppress(LedCalError):
                    self.protocol.led_off()
            self._enter(CalState.IDLE)

        if not outcome.success:
            self.transport.close()
        self.display.status(outcome.message)
        return outcome

    def _write_report(
        self,
        inputs: OperatorInput,
        versions: FirmwareVersionSet,
        previous: CalibrationRecord | None,
        record: CalibrationRecord,
    ) -> OSError | None:
        """Append the run to the report file; return the error if that failed."""
        try:
            append_report(
                self.settings.report_file,
                operator=inputs.operator,
                serial_number=inputs.serial_number,
                port=inputs.port,
                versions=versions,
                previous=previous,
                record=record,
            )
        except OSError as exc:
            logger.error("Could not write report %s: %s", self.settings.report_file, exc)
            return exc
        return None

    # -- Background refresh -------------------------------------------------

    def poll(self, port: str) -> TelemetrySnapshot | None:
        """Refresh every displayed value without operator-facing errors.

        Returns:
            The refreshed snapshot, or ``None`` if the fixture could not be
            reached, in which case the display is marked stale and the port
            closed so the next poll reopens it.
        """
        try:
            if not self.transport.is_open or self.transport.port != port:
                self.connect(port)
            self.establish()
            for read in (
                self.read_stored_calibration,
                self.read_power,
                self.read_exposure,
                self.read_dac,
            ):
                try:
                    read()
                except ParseError as exc:
                    logger.debug("Poll: %s", exc)
        except LedCalError as exc:
            logger.debug("Poll of %r failed: %s", port, exc)
            self.transport.close()
            self.display.mark_stale(True)
            return None

        self.display.mark_stale(False)
        return self.snapshot()
