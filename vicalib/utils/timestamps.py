from collections.abc import Callable, Iterable
from typing import TypeVar

import numpy as np

T = TypeVar("T")


def seconds_to_ns(t: float) -> int:
    """Convert seconds to integer nanoseconds, rounding to nearest."""
    return int(round(float(t) * 1e9))


def ns_to_seconds(t_ns: int) -> float:
    return t_ns * 1e-9


def in_window(t_ns: int, start_ns: int, end_ns: int) -> bool:
    """Half-open test: start is inclusive, end is exclusive."""
    return start_ns <= t_ns < end_ns


def filter_to_window(
    items: Iterable[T],
    start_ns: int,
    end_ns: int,
    key: Callable[[T], int],
) -> list[T]:
    """Keep the items whose nanosecond timestamp lies in [start, end)."""
    return [item for item in items if in_window(key(item), start_ns, end_ns)]


def as_vector3(value, name: str = "vector") -> np.ndarray:
    vec = np.asarray(value, dtype=np.float64).reshape(-1)
    if vec.shape != (3,):
        raise ValueError(f"{name} must have 3 elements, got {vec.shape}")
    return vec
