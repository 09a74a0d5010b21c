"""
Exception hierarchy for the Spyglass LED calibration fixture.

All exceptions inherit from :class:`LedCalError` so callers can catch
broadly (``except LedCalError``) or narrowly (``except ProtocolError``).
"""


class LedCalError(Exception):
    """Base exception for all fixture errors."""


class ConnectionError(LedCalError):  # noqa: A001 – intentional shadow of builtin
    """Raised when the serial port is missing or cannot be opened."""


class ProtocolError(LedCalError):
    """Raised on a short write, a missing echo, or an echo that does not match."""


class TimeoutError(LedCalError):  # noqa: A001 – intentional shadow of builtin
    """Raised when the controller does not respond within the read timeout."""


class ParseError(LedCalError):
    """Raised when a response line does not carry the expected field."""


class FieldMissingError(ParseError):
    """The field label was not found in the response."""


class FieldValueError(ParseError):
    """The field label was found but its value is not numeric."""


class HardwareAbsentError(LedCalError):
    """Raised when the exposure meter (scope) does not answer."""


class VersionMismatchError(LedCalError):
    """Raised when the operator declines to continue with unexpected firmware."""


class ValidationError(LedCalError):
    """Raised when an argument or operator input fails pre-send validation."""
