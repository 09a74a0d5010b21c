"""
Fixture settings — loading, validating and saving the YAML settings file.

The settings hold what the operator's station remembers between runs (the
serial port and the report file) plus the expected firmware versions and the
calibration search limits::

    from spyglass_ledcal.config import load_settings, save_settings

    settings = load_settings("config/led_cal.yaml")
    settings = settings.with_port("/dev/ttyUSB1")
    save_settings(settings, "config/led_cal.yaml")

A missing file yields the defaults; a malformed file raises
:class:`~spyglass_ledcal.exceptions.ValidationError`.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

import yaml

from .constants import (
    CURRENT_CEILING_A,
    DAC_MAX,
    DAC_MIN,
    DEFAULT_POLL_PERIOD_S,
    DEFAULT_REPORT_FILE,
    DEFAULT_TIMEOUT,
    HIGH_SEARCH_END,
    HIGH_SEARCH_START,
    HIGH_SETTLE_S,
    LOW_SEARCH_END,
    LOW_SEARCH_START,
    LOW_SETTLE_S,
)
from .exceptions import ValidationError
from .telemetry import FirmwareVersionSet

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchLimits:
    """Bounds, feedback ceiling and settle delays for the four searches."""

    low_start: int = LOW_SEARCH_START
    low_end: int = LOW_SEARCH_END
    high_start: int = HIGH_SEARCH_START
    high_end: int = HIGH_SEARCH_END
    current_ceiling_a: float = CURRENT_CEILING_A
    low_settle_s: float = LOW_SETTLE_S
    high_settle_s: float = HIGH_SETTLE_S


@dataclass(frozen=True)
class FixtureSettings:
    """Top-level settings loaded from a YAML file."""

    port: str = ""
    report_file: str = DEFAULT_REPORT_FILE
    timeout_s: float = DEFAULT_TIMEOUT
    poll_period_s: float = DEFAULT_POLL_PERIOD_S
    expected_versions: FirmwareVersionSet = field(default_factory=FirmwareVersionSet)
    search: SearchLimits = field(default_factory=SearchLimits)

    def with_port(self, port: str) -> FixtureSettings:
        return replace(self, port=port)


# ---------------------------------------------------------------------------
# Loading & validation
# ---------------------------------------------------------------------------


def load_settings(path: str | Path) -> FixtureSettings:
    """Load and validate fixture settings from a YAML file.

    Args:
        path: Path to the YAML settings file.

    Returns:
        A validated :class:`FixtureSettings`; defaults if *path* does not
        exist.

    Raises:
        ValidationError: If the file is malformed or contains invalid values.
    """
    path = Path(path)
    if not path.exists():
        logger.info("Settings file %s not found, using defaults", path)
        return FixtureSettings()

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return FixtureSettings()
    if not isinstance(raw, dict):
        raise ValidationError(f"Settings file must be a YAML mapping, got {type(raw).__name__}")

    port = raw.get("port") or ""
    if not isinstance(port, str):
        raise ValidationError(f"'port' must be a string, got {type(port).__name__}")

    report_file = raw.get("report_file", DEFAULT_REPORT_FILE)
    if not isinstance(report_file, str) or not report_file:
        raise ValidationError("'report_file' must be a non-empty string")

    timeout_s = _require_positive_number(raw, "timeout_s", DEFAULT_TIMEOUT)
    poll_period_s = _require_positive_number(raw, "poll_period_s", DEFAULT_POLL_PERIOD_S)

    return FixtureSettings(
        port=port,
        report_file=report_file,
        timeout_s=timeout_s,
        poll_period_s=poll_period_s,
        expected_versions=_parse_versions(raw.get("expected_versions")),
        search=_parse_search(raw.get("search")),
    )


def _parse_versions(data: object) -> FirmwareVersionSet:
    if data is None:
        return FirmwareVersionSet()
    if not isinstance(data, dict):
        raise ValidationError("'expected_versions' must be a mapping")

    versions = {}
    for name in ("arm", "dsp", "fpga"):
        val = data.get(name, "")
        if val is None:
            val = ""
        # YAML reads 1.2 as a float
        if isinstance(val, (int, float)) and not isinstance(val, bool):
            val = str(val)
        if not isinstance(val, str):
            raise ValidationError(f"expected_versions.{name} must be a string, got {val!r}")
        versions[name] = val
    return FirmwareVersionSet(**versions)


def _parse_search(data: object) -> SearchLimits:
    if data is None:
        return SearchLimits()
    if not isinstance(data, dict):
        raise ValidationError("'search' must be a mapping")

    defaults = SearchLimits()
    low_start = _require_dac(data, "low_start", defaults.low_start)
    low_end = _require_dac(data, "low_end", defaults.low_end)
    high_start = _require_dac(data, "high_start", defaults.high_start)
    high_end = _require_dac(data, "high_end", defaults.high_end)

    for start, end, name in ((low_start, low_end, "low"), (high_start, high_end, "high")):
        if start >= end:
            raise ValidationError(f"search.{name}_start ({start}) must be below {name}_end ({end})")

    return SearchLimits(
        low_start=low_start,
        low_end=low_end,
        high_start=high_start,
        high_end=high_end,
        current_ceiling_a=_require_positive_number(
            data, "current_ceiling_a", defaults.current_ceiling_a
        ),
        low_settle_s=_require_non_negative_number(data, "low_settle_s", defaults.low_settle_s),
        high_settle_s=_require_non_negative_number(data, "high_settle_s", defaults.high_settle_s),
    )


def _require_dac(data: dict, key: str, default: int) -> int:
    val = data.get(key, default)
    if not isinstance(val, int) or isinstance(val, bool) or not (DAC_MIN <= val <= DAC_MAX):
        raise ValidationError(f"search.{key} must be an integer {DAC_MIN}-{DAC_MAX}, got {val!r}")
    return val


def _require_positive_number(data: dict, key: str, default: float) -> float:
    val = data.get(key, default)
    if not isinstance(val, (int, float)) or isinstance(val, bool) or val <= 0:
        raise ValidationError(f"'{key}' must be a positive number, got {val!r}")
    return float(val)


def _require_non_negative_number(data: dict, key: str, default: float) -> float:
    val = data.get(key, default)
    if not isinstance(val, (int, float)) or isinstance(val, bool) or val < 0:
        raise ValidationError(f"'{key}' must be a non-negative number, got {val!r}")
    return float(val)


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------


def save_settings(settings: FixtureSettings, path: str | Path) -> None:
    """Write *settings* to *path* as YAML, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(asdict(settings), f, sort_keys=False)
    logger.info("Settings saved to %s", path)
