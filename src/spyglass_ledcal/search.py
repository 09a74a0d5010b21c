"""
Threshold search over DAC codes.

The fixture finds each calibration point with the same bisection: one bound
is known to read "below threshold", the other "at or above", and the gap is
halved until the two are adjacent.  The probe is a callable so the search
itself needs no hardware::

    result = bisect_threshold(0, 16384, lambda code: code < 1200)
    assert result == 1199
"""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)


def bisect_threshold(
    below: int,
    above: int,
    is_below: Callable[[int], bool],
    label: str = "search",
) -> int:
    """Return the highest code in ``[below, above)`` that still reads below.

    Args:
        below: Code assumed to read below threshold (never probed).
        above: Code assumed to read at/above threshold (never probed).
        is_below: Applies a trial code and reports whether the feedback is
            still below threshold.
        label: Name used in log messages.

    The midpoint is rounded toward *below*.  Terminates when the bounds are
    adjacent; if ``above - below <= 1`` nothing is probed and *below* is
    returned.
    """
    x1, x2 = below, above
    steps = 0
    while x1 < x2 - 1:
        mid = (x1 + x2) // 2
        if is_below(mid):
            x1 = mid
        else:
            x2 = mid
        steps += 1
        logger.debug("%s: probed %d -> [%d, %d]", label, mid, x1, x2)
    logger.info("%s converged on %d after %d steps", label, x1, steps)
    return x1
