"""Utility helpers for godelpy."""

import time


class Timer:
    """perf_counter_ns context manager for proof, verification and call latencies."""

    def __init__(self):
        self.start_ns = 0
        self.end_ns = 0

    def __enter__(self):
        self.start_ns = time.perf_counter_ns()
        return self

    def __exit__(self, *exc):
        self.end_ns = time.perf_counter_ns()

    @property
    def elapsed_ns(self) -> int:
        return self.end_ns - self.start_ns

    @property
    def elapsed_s(self) -> float:
        return self.elapsed_ns / 1e9


def format_speedup(steps_before: float, steps_after: float) -> str:
    """Describe a change in mean evaluation steps."""
    if steps_before <= 0 or steps_after <= 0:
        return "no measured steps"
    ratio = steps_before / steps_after
    if ratio >= 1:
        return f"{ratio:.2f}x fewer steps"
    return f"{1 / ratio:.2f}x more steps"
