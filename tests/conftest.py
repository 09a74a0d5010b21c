"""Shared pytest fixtures for the Spyglass LED calibration tests."""

from __future__ import annotations

import pytest

from spyglass_ledcal import (
    CalibrationController,
    FirmwareVersionSet,
    FixtureSettings,
    LineTransport,
    SearchLimits,
)
from spyglass_ledcal.protocol import FixtureProtocol


class FakeFixture:
    """Stand-in for ``serial.Serial`` that behaves like the fixture controller.

    Implements the subset of the pyserial API used by
    :class:`~spyglass_ledcal.transport.LineTransport`: ``write``, ``read``,
    ``read_until``, ``in_waiting``, ``flush``, ``reset_input_buffer``,
    ``reset_output_buffer``, ``close``, ``is_open``, ``timeout`` and ``dtr``.

    Every written command is echoed and answered the way the firmware does.
    Light output and current follow the DAC codes: a channel is dark below
    its ``low_threshold`` and draws more than 5.25 A above its
    ``high_limit``, so a calibration run against this fake converges on
    ``low_threshold - 1`` and ``high_limit``.

    Knobs for failure scenarios:
        ``echo_override``  echo this text instead of the command
        ``silent``         answer nothing (read timeouts)
        ``short_write``    report fewer bytes written than sent
        ``scope_present``  ``False`` makes ``em=-1`` answer nothing
        ``overrides``      command -> raw response text
    """

    def __init__(
        self,
        low_threshold: tuple[int, int] = (1200, 1500),
        high_limit: tuple[int, int] = (60000, 61000),
    ) -> None:
        self.is_open: bool = True
        self.timeout: float | None = None
        self.dtr: bool = False
        self.open_count = 0
        self.open_kwargs: dict = {}
        self.written: list[bytes] = []
        self.commands: list[str] = []
        self._rx = bytearray()

        self.low_threshold = list(low_threshold)
        self.high_limit = list(high_limit)
        self.dac = [0, 0]
        self.led_enabled = True
        self.events_disabled = False
        self.calibration = {0: (1000, 59000), 1: (1100, 59500)}
        self.versions = {"FPGA": "1.2.3", "ARM": "2.0.1", "DSP": "3.4.5"}

        self.scope_present = True
        self.echo_override: str | None = None
        self.silent = False
        self.short_write = False
        self.overrides: dict[str, str] = {}

    # -- Helpers for tests --------------------------------------------------

    def queue_chatter(self, text: str) -> None:
        """Put unsolicited bytes in the input buffer (async event pushes)."""
        self._rx += text.encode("ascii")

    def exposure_level(self) -> int:
        if not self.led_enabled:
            return 0
        return sum(
            max(0, code - threshold + 1) for code, threshold in zip(self.dac, self.low_threshold)
        )

    def current(self, ch: int) -> float:
        if not self.led_enabled or self.dac[ch] == 0:
            return 0.0
        return max(0.0, 5.25 + (self.dac[ch] - self.high_limit[ch]) * 0.01)

    # -- Firmware -----------------------------------------------------------

    def _respond(self, cmd: str) -> str:
        if cmd in self.overrides:
            return self.overrides[cmd]
        if cmd == "version":
            return "".join(f"{name}: {value}\r\n" for name, value in self.versions.items())
        if cmd == "disable_events=1":
            self.events_disabled = True
            return "OK\r\n"
        if cmd == "led_cal":
            (lo1, hi1), (lo2, hi2) = self.calibration[0], self.calibration[1]
            return f"LED1 (low={lo1} high={hi1}) LED2 (low={lo2} high={hi2})\r\n"
        if cmd.startswith("led_cal="):
            ch, low, high = (int(v) for v in cmd.split("=", 1)[1].split(","))
            self.calibration[ch] = (low, high)
            return "OK\r\n"
        if cmd.startswith("em_style="):
            return "OK\r\n"
        if cmd == "em=-1":
            if not self.scope_present:
                return ""
            row = " ".join([str(self.exposure_level())] * 5)
            return "EM zones\r\n" + f"{row}\r\n" * 5
        if cmd == "ledvi":
            volts = [12.0 if self.current(ch) else -0.001 for ch in (0, 1)]
            return (
                f"V1:{volts[0]:.3f},I1:{self.current(0):.4f},"
                f"V2:{volts[1]:.3f},I2:{self.current(1):.4f}\r\n"
            )
        if cmd == "led_dac":
            return f"led1={self.dac[0]}, led2={self.dac[1]}\r\n"
        if cmd.startswith("led_dac="):
            self.dac = [int(v) for v in cmd.split("=", 1)[1].split(",")]
            self.led_enabled = True
            return "OK\r\n"
        if cmd == "led=0":
            self.led_enabled = False
            return "OK\r\n"
        return "ERR unknown command\r\n"

    # -- pyserial interface -------------------------------------------------

    def write(self, data: bytes) -> int:
        self.written.append(data)
        if self.silent:
            return len(data)
        if data == b"\n":
            self._rx += b"\r\n"
            return len(data)

        cmd = data.decode("ascii").rstrip("\n")
        self.commands.append(cmd)
        echo = cmd if self.echo_override is None else self.echo_override
        self._rx += f"{echo}\r\n{self._respond(cmd)}".encode("ascii")
        return len(data) - 2 if self.short_write else len(data)

    @property
    def in_waiting(self) -> int:
        return len(self._rx)

    def read(self, size: int = 1) -> bytes:
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def read_until(self, expected: bytes = b"\n", size: int | None = None) -> bytes:
        """Return everything up to and including *expected*."""
        idx = self._rx.find(expected)
        if idx == -1:
            end = len(self._rx)  # no terminator: behave like a timeout
        else:
            end = idx + len(expected)
        if size is not None:
            end = min(end, size)
        return self.read(end)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        self._rx.clear()

    def reset_output_buffer(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


class RecordingDisplay:
    """A display sink that remembers everything it was told."""

    def __init__(self) -> None:
        self.fields: dict[str, str] = {}
        self.statuses: list[str] = []
        self.stale: bool | None = None

    def show(self, fields) -> None:
        self.fields.update(fields)

    def status(self, text: str) -> None:
        self.statuses.append(text)

    def mark_stale(self, stale: bool) -> None:
        self.stale = stale


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_fixture() -> FakeFixture:
    """Return a fresh ``FakeFixture`` instance."""
    return FakeFixture()


@pytest.fixture()
def serial_factory(monkeypatch, fake_fixture: FakeFixture) -> FakeFixture:
    """Make every ``serial.Serial(...)`` in the transport (re)open the fake."""

    def factory(*args, **kwargs):
        fake_fixture.is_open = True
        fake_fixture.open_count += 1
        fake_fixture.open_kwargs = kwargs
        return fake_fixture

    monkeypatch.setattr("spyglass_ledcal.transport.serial.Serial", factory)
    return fake_fixture


@pytest.fixture()
def transport(serial_factory: FakeFixture) -> LineTransport:
    """Return a ``LineTransport`` opened on the fake controller."""
    tx = LineTransport(timeout=0.05)
    assert tx.open("/dev/fake")
    serial_factory.written.clear()
    return tx


@pytest.fixture()
def protocol(transport: LineTransport) -> FixtureProtocol:
    return FixtureProtocol(transport)


@pytest.fixture()
def settings(tmp_path) -> FixtureSettings:
    """Settings with no settle delays and a throwaway report file."""
    return FixtureSettings(
        port="/dev/fake",
        report_file=str(tmp_path / "report.log"),
        timeout_s=0.05,
        expected_versions=FirmwareVersionSet(arm="2.0.1", dsp="3.4.5", fpga="1.2.3"),
        search=SearchLimits(low_settle_s=0.0, high_settle_s=0.0),
    )


@pytest.fixture()
def display() -> RecordingDisplay:
    return RecordingDisplay()


@pytest.fixture()
def controller(serial_factory, settings, display) -> CalibrationController:
    """Return a ``CalibrationController`` whose port is not yet open."""
    return CalibrationController(
        transport=LineTransport(timeout=settings.timeout_s),
        settings=settings,
        display=display,
        confirm=lambda message: True,
    )
