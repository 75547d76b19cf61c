import time


def now_ms() -> int:
    return int(time.time() * 1000)


def elapsed_ms(start_monotonic: float) -> int:
    return int((time.monotonic() - start_monotonic) * 1000)
