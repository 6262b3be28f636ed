import time


def now_ms() -> int:
    """Wall-clock epoch milliseconds, the unit every queue timestamp uses."""
    return int(time.time() * 1000)
