"""
Line transport for the Spyglass LED controller.

Owns the serial connection and moves newline-terminated ASCII lines across
it.  Every command is echoed by the controller before its response, so
:meth:`LineTransport.write_line` reads that echo back and compares it with
what was sent.  Knows nothing about what commands mean; that is
:mod:`protocol`'s job.

All operations fail closed: they return ``False`` (or an empty/partial
string) instead of raising, and none of them retries.  Turning failures into
exceptions is the caller's business.

Typical usage (via :class:`~spyglass_ledcal.protocol.FixtureProtocol`)::

    transport = LineTransport()
    if transport.open("/dev/ttyUSB0") and transport.check_for_echo():
        transport.write_line("ledvi")
        ok, line = transport.read_line(3.0)
    transport.close()
"""

from __future__ import annotations

import logging
import time

import serial

from .constants import BAUD_RATE, DEFAULT_TIMEOUT, FLUSH_SETTLE, READ_BUFFER_SIZE

logger = logging.getLogger(__name__)

# Framing constants
_CMD_TERMINATOR = b"\n"
_LINE_TERMINATOR = b"\n"
_ECHO_PROBE_REPLY = b"\r"


class LineTransport:
    """Manages the serial connection to the fixture controller.

    Args:
        timeout: Read timeout in seconds used for echo verification and the
            liveness probe.
        buffer_size: Longest line :meth:`read_line` will accumulate.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        buffer_size: int = READ_BUFFER_SIZE,
    ) -> None:
        self.timeout = timeout
        self.buffer_size = buffer_size
        self.port: str | None = None
        self._ser: serial.Serial | None = None

    # -- Lifecycle ----------------------------------------------------------

    def open(self, port: str) -> bool:
        """Open *port* with the fixed fixture configuration.

        Any connection that is already open is closed first.  Empty names and
        ``<...>`` placeholders (the "nothing selected" entry of a port list)
        are rejected without touching the hardware.

        Returns:
            ``True`` if the port is open and its buffers have been cleared.
        """
        self.close()

        if not port or port.startswith("<"):
            logger.debug("Refusing to open placeholder port %r", port)
            return False

        logger.info("Opening serial port %s at %d baud", port, BAUD_RATE)
        try:
            ser = serial.Serial(
                port=port,
                baudrate=BAUD_RATE,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
                timeout=self.timeout,
            )
            ser.dtr = True
            ser.reset_input_buffer()
            ser.reset_output_buffer()
        except (serial.SerialException, OSError) as exc:
            logger.warning("Cannot open %s: %s", port, exc)
            return False

        self._ser = ser
        self.port = port
        return True

    def close(self) -> None:
        """Close the serial port (safe to call multiple times)."""
        if self._ser is not None:
            if self._ser.is_open:
                self._ser.close()
                logger.info("Serial port %s closed", self.port)
            self._ser = None

    @property
    def is_open(self) -> bool:
        """Return ``True`` if the serial port is currently open."""
        return self._ser is not None and self._ser.is_open

    # -- I/O ----------------------------------------------------------------

    def flush(self) -> None:
        """Discard unread input, such as asynchronous event chatter.

        Keeps draining until a settle interval passes with nothing new
        arriving, so a line still trickling in is discarded too.
        """
        if not self.is_open:
            return
        assert self._ser is not None  # for type-checker
        try:
            while True:
                time.sleep(FLUSH_SETTLE)
                pending = self._ser.in_waiting
                if not pending:
                    return
                stale = self._ser.read(pending)
                logger.debug("Flushed: %r", stale)
        except (serial.SerialException, OSError) as exc:
            logger.warning("Flush failed on %s: %s", self.port, exc)

    def write_line(self, command: str) -> bool:
        """Send *command* and verify the controller echoes it back.

        Steps:
            1. Flush stale input.
            2. Write the command with ``LF`` termination.
            3. Read one line and require it to start with the command bytes.

        The echo line is consumed here; the next :meth:`read_line` returns
        the first line of the actual response.

        Returns:
            ``False`` on a short write, a read timeout, or an echo mismatch.
        """
        if not self.is_open:
            logger.debug("write_line(%r) with port closed", command)
            return False
        assert self._ser is not None  # for type-checker

        self.flush()

        payload = command.encode("ascii")
        logger.debug("TX: %s", command)
        try:
            written = self._ser.write(payload + _CMD_TERMINATOR)
            self._ser.flush()
        except (serial.SerialException, OSError) as exc:
            logger.warning("Write of %r failed: %s", command, exc)
            return False

        if written is None or written < len(payload):
            logger.warning("Short write for %r: %s of %d bytes", command, written, len(payload))
            return False

        ok, echo = self._read_raw(self.timeout)
        if not ok:
            logger.warning("No echo for %r (got %r)", command, echo)
            return False
        if not echo.startswith(payload):
            logger.warning("Echo mismatch for %r: %r", command, echo)
            return False
        return True

    def read_line(self, timeout: float | None = None) -> tuple[bool, str]:
        """Read one line, waiting at most *timeout* seconds.

        Returns:
            ``(ok, text)`` where *text* has its line terminator stripped.
            On a timeout *ok* is ``False`` and *text* holds whatever partial
            data arrived.
        """
        ok, raw = self._read_raw(self.timeout if timeout is None else timeout)
        text = raw.decode("ascii", errors="replace").rstrip("\r\n")
        logger.debug("RX: %s", text)
        return ok, text

    def check_for_echo(self) -> bool:
        """Probe whether the controller is alive and echoing.

        A bare ``LF`` is answered with ``CR``; anything else (or silence)
        means no usable link.
        """
        if not self.is_open:
            return False
        assert self._ser is not None  # for type-checker
        try:
            self._ser.reset_input_buffer()
            self._ser.write(_CMD_TERMINATOR)
            self._ser.flush()
            self._ser.timeout = self.timeout
            reply = self._ser.read(1)
        except (serial.SerialException, OSError) as exc:
            logger.warning("Echo probe failed on %s: %s", self.port, exc)
            return False
        logger.debug("Echo probe reply: %r", reply)
        return reply == _ECHO_PROBE_REPLY

    # -- Internal -----------------------------------------------------------

    def _read_raw(self, timeout: float) -> tuple[bool, bytes]:
        """Read bytes until ``LF``, a full buffer, or *timeout*.

        ``read_until`` applies the serial timeout to the whole call, so the
        OS does the waiting instead of a sleep-and-check loop.
        """
        if not self.is_open:
            return False, b""
        assert self._ser is not None  # for type-checker
        try:
            self._ser.timeout = timeout
            data = self._ser.read_until(_LINE_TERMINATOR, self.buffer_size)
        except (serial.SerialException, OSError) as exc:
            logger.warning("Read failed on %s: %s", self.port, exc)
            return False, b""
        ok = data.endswith(_LINE_TERMINATOR) or len(data) >= self.buffer_size
        return ok, data
