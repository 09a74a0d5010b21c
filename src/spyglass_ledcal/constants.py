"""Shared runtime constants for the Spyglass LED calibration fixture.

This is the canonical source of truth for wire limits, serial settings and
the default search parameters.  Other modules should import from here rather
than defining their own copies.
"""

# ---------------------------------------------------------------------------
# Serial link
# ---------------------------------------------------------------------------

BAUD_RATE = 115200
DEFAULT_TIMEOUT = 3.0  # seconds, per read
FLUSH_SETTLE = 0.001  # seconds between drain attempts in flush()
READ_BUFFER_SIZE = 1024
NOT_SELECTED_PORT = "<not selected>"

# ---------------------------------------------------------------------------
# Protocol limits
# ---------------------------------------------------------------------------

CHANNELS = (1, 2)
DAC_MIN = 0
DAC_MAX = 65535
GRID_SIZE = 5

# ---------------------------------------------------------------------------
# Calibration search defaults
# ---------------------------------------------------------------------------

LOW_SEARCH_START = 0
LOW_SEARCH_END = 16384
HIGH_SEARCH_START = 48152
HIGH_SEARCH_END = 65535
CURRENT_CEILING_A = 5.25
LOW_SETTLE_S = 0.1
HIGH_SETTLE_S = 0.2

# Voltage readings between this and 0.0 are sensor noise and shown as 0.0
VOLTAGE_NOISE_FLOOR = -0.005

# ---------------------------------------------------------------------------
# Application defaults
# ---------------------------------------------------------------------------

DEFAULT_REPORT_FILE = "Spyglass_LED_Calibration.log"
DEFAULT_POLL_PERIOD_S = 3.0
