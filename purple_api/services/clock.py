"""Wall clock in epoch seconds. Services take a Clock so tests can move time."""

import time
from collections.abc import Callable

Clock = Callable[[], int]


def current_time() -> int:
    """Current time in whole epoch seconds."""
    return int(time.time())
