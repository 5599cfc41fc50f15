import time


def now_ms() -> int:
    """Wall-clock time in integer milliseconds, the unit every store and tracker uses."""

    return int(time.time() * 1000)
