"""
Smoothing and Interpolation Module

Small numeric helpers used by sensors, curves and fan controllers:
moving averages, bounded rolling windows and interpolation over
sparse control-point mappings.
"""

import bisect
from collections import deque
from typing import Dict, List, Sequence


def update_moving_avg(old: float, n: int, new: float) -> float:
    """Update an exponentially smoothed average with a new sample.

    Args:
        old: Previous average
        n: Configured window size (smoothing factor, not a sample count)
        new: New sample

    Returns:
        Updated average
    """
    return old + (new - old) / n


def interpolate_linear(points: Dict[float, float], x: float) -> float:
    """Linearly interpolate a value from sparse control points.

    Values outside the key range are clamped to the value of the
    closest end point. Exact key hits return the stored value.

    Args:
        points: Mapping of key to value
        x: Key to look up

    Returns:
        Interpolated value

    Raises:
        ValueError: If no points are given
    """
    if not points:
        raise ValueError("Must provide at least one point")

    if x in points:
        return points[x]

    keys = sorted(points)
    if x <= keys[0]:
        return points[keys[0]]
    if x >= keys[-1]:
        return points[keys[-1]]

    idx = bisect.bisect_right(keys, x)
    x1, x2 = keys[idx - 1], keys[idx]
    y1, y2 = points[x1], points[x2]
    ratio = (x - x1) / (x2 - x1)
    return y1 + ratio * (y2 - y1)


def interpolate_step(points: Dict[float, float], x: float) -> float:
    """Return the value of the closest key at or below x, without blending.

    Keys below the smallest key resolve to the smallest key's value.

    Raises:
        ValueError: If no points are given
    """
    if not points:
        raise ValueError("Must provide at least one point")

    keys = sorted(points)
    idx = bisect.bisect_right(keys, x)
    if idx == 0:
        return points[keys[0]]
    return points[keys[idx - 1]]


def interpolate_linearly(points: Dict[int, float], start: int, stop: int) -> Dict[int, float]:
    """Expand sparse points to every integer key in [start, stop]."""
    return {key: interpolate_linear(points, key) for key in range(start, stop + 1)}


def find_closest(target: float, values: Sequence[int]) -> int:
    """Find the element of a sorted sequence closest to target.

    Ties resolve to the smaller element.

    Args:
        target: Value to match
        values: Ascending sequence of candidates

    Returns:
        Closest candidate

    Raises:
        ValueError: If values is empty
    """
    if not values:
        raise ValueError("Cannot search an empty sequence")

    idx = bisect.bisect_left(values, target)
    if idx == 0:
        return values[0]
    if idx == len(values):
        return values[-1]

    lower, upper = values[idx - 1], values[idx]
    if target - lower <= upper - target:
        return lower
    return upper


def extract_keys_with_distinct_values(mapping: Dict[int, int]) -> List[int]:
    """Return sorted keys whose value differs from the previous distinct value.

    The first key is always included.
    """
    result = []
    last_value = None
    for key in sorted(mapping):
        value = mapping[key]
        if not result or value != last_value:
            result.append(key)
            last_value = value
    return result


class RollingWindow:
    """Fixed-size window of the most recent samples"""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"Invalid window size {size}, must be >= 1")
        self._values = deque(maxlen=size)

    def append(self, value: float) -> None:
        self._values.append(value)

    def fill(self, value: float) -> None:
        """Replace every slot with value"""
        for _ in range(self._values.maxlen):
            self._values.append(value)

    def max(self) -> float:
        return max(self._values) if self._values else 0.0

    def avg(self) -> float:
        return sum(self._values) / len(self._values) if self._values else 0.0

    def __len__(self) -> int:
        return len(self._values)
