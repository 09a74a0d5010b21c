"""Calibration report log: one CSV row per successful fixture run."""

from __future__ import annotations

import csv
import logging
from datetime import datetime
from pathlib import Path

from .telemetry import CalibrationRecord, FirmwareVersionSet

logger = logging.getLogger(__name__)

REPORT_HEADER = [
    "timestamp",
    "operator",
    "serial_number",
    "port",
    "arm",
    "dsp",
    "fpga",
    "old_low1",
    "old_high1",
    "old_low2",
    "old_high2",
    "low1",
    "high1",
    "low2",
    "high2",
]


def _record_cells(record: CalibrationRecord | None) -> list[str]:
    if record is None:
        return ["", "", "", ""]
    return [str(record.low1), str(record.high1), str(record.low2), str(record.high2)]


def append_report(
    path: str | Path,
    operator: str,
    serial_number: str,
    port: str,
    versions: FirmwareVersionSet,
    previous: CalibrationRecord | None,
    record: CalibrationRecord,
    when: datetime | None = None,
) -> Path:
    """Append one calibration result to the report at *path*.

    The header row is written only when the file is new or empty.

    Returns:
        The report path.
    """
    path = Path(path)
    when = when or datetime.now()
    new_file = not path.exists() or path.stat().st_size == 0
    if new_file:
        path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "a", newline="") as f:
        writer = csv.writer(f)
        if new_file:
            writer.writerow(REPORT_HEADER)
        writer.writerow(
            [
                when.isoformat(timespec="seconds"),
                operator,
                serial_number,
                port,
                versions.arm,
                versions.dsp,
                versions.fpga,
                *_record_cells(previous),
                *_record_cells(record),
            ]
        )

    logger.info("Calibration for %s appended to %s", serial_number, path)
    return path
