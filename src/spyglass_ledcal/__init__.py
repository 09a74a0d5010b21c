"""Spyglass LED Calibration Fixture Python Interface"""

from .config import FixtureSettings, SearchLimits, load_settings, save_settings
from .controller import (
    CalibrationController,
    CalibrationOutcome,
    CalState,
    DisplaySink,
    NullDisplay,
    OperatorInput,
    TelemetrySnapshot,
)
from .exceptions import (
    ConnectionError,
    FieldMissingError,
    FieldValueError,
    HardwareAbsentError,
    LedCalError,
    ParseError,
    ProtocolError,
    TimeoutError,
    ValidationError,
    VersionMismatchError,
)
from .telemetry import (
    CalibrationRecord,
    DacSetpoint,
    ExposureGrid,
    FirmwareVersionSet,
    PowerTelemetry,
)
from .transport import LineTransport
from .worker import FixtureWorker, PollLoop

__all__ = [
    "CalState",
    "CalibrationController",
    "CalibrationOutcome",
    "CalibrationRecord",
    "ConnectionError",
    "DacSetpoint",
    "DisplaySink",
    "ExposureGrid",
    "FieldMissingError",
    "FieldValueError",
    "FirmwareVersionSet",
    "FixtureSettings",
    "FixtureWorker",
    "HardwareAbsentError",
    "LedCalError",
    "LineTransport",
    "NullDisplay",
    "OperatorInput",
    "ParseError",
    "PollLoop",
    "PowerTelemetry",
    "ProtocolError",
    "SearchLimits",
    "TelemetrySnapshot",
    "TimeoutError",
    "ValidationError",
    "VersionMismatchError",
    "load_settings",
    "save_settings",
]
__version__ = "0.1.0"
