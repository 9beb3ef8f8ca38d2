"""Array helpers shared by the I(V) curve algorithms.

Curves are 1-D float arrays on a common, evenly spaced energy axis. NaN marks
"no measurement"; a maximal run of non-NaN values is called a *range*.
Ranges are reported as ``(start, end)`` index pairs, ``end`` exclusive.
"""

from __future__ import annotations

from typing import List, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

__all__ = [
    'as_curve',
    'range_limits',
    'valid_start_end',
    'longest_run',
    'longest_common_run',
    'restrict_range',
    'first_and_increment',
    'energy_step_of',
    'check_energies',
    'round_half_up',
]

# relative deviation from an even grid that is still accepted as "evenly spaced"
STEP_TOLERANCE = 0.01


def as_curve(a: ArrayLike, name: str = 'curve') -> NDArray[np.float64]:
    """Return `a` as a 1-D float array (no copy if it already is one)."""
    arr = np.asarray(a, dtype=float)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be one-dimensional, got shape {arr.shape}")
    return arr


def round_half_up(x: float) -> int:
    """Round to the nearest integer, halves away from -inf."""
    return int(np.floor(x + 0.5))


def _run_edges(valid: NDArray[np.bool_]) -> Tuple[NDArray[np.intp], NDArray[np.intp]]:
    padded = np.concatenate(([False], valid, [False])).astype(np.int8)
    edges = np.flatnonzero(np.diff(padded))
    return edges[::2], edges[1::2]


def range_limits(data: ArrayLike, start: int = 0, end: int | None = None) -> List[Tuple[int, int]]:
    """Return the ranges of non-NaN data within ``data[start:end]``.

    Indices refer to the full array. An empty list means no valid data.
    """
    data = as_curve(data, 'data')
    start = max(0, int(start))
    end = data.size if end is None or end < 0 else min(int(end), data.size)
    if end <= start:
        return []
    starts, ends = _run_edges(~np.isnan(data[start:end]))
    return [(int(s) + start, int(e) + start) for s, e in zip(starts, ends)]


def valid_start_end(data: ArrayLike) -> Tuple[int, int]:
    """First index and last index + 1 of non-NaN data, or ``(-1, -1)``."""
    valid = np.flatnonzero(~np.isnan(as_curve(data, 'data')))
    if valid.size == 0:
        return -1, -1
    return int(valid[0]), int(valid[-1]) + 1


def longest_run(valid: ArrayLike) -> int:
    """Length of the longest run of True values in a boolean array."""
    valid = np.asarray(valid, dtype=bool)
    if not valid.any():
        return 0
    starts, ends = _run_edges(valid)
    return int(np.max(ends - starts))


def longest_common_run(a: NDArray[np.float64], b: NDArray[np.float64], start: int, end: int) -> int:
    """Longest contiguous run in ``[start, end)`` where both curves are valid."""
    both = ~np.isnan(a[start:end]) & ~np.isnan(b[start:end])
    return longest_run(both)


def restrict_range(data: ArrayLike, start: int, end: int | None = None) -> NDArray[np.float64]:
    """Return a copy of `data` with everything outside ``[start, end)`` set to NaN."""
    out = as_curve(data, 'data').copy()
    out[:max(0, start)] = np.nan
    if end is not None and end >= 0:
        out[end:] = np.nan
    return out


def first_and_increment(energies: ArrayLike, rtol: float = STEP_TOLERANCE) -> Tuple[float, float]:
    """Return ``(first, step)`` of an evenly spaced axis, or ``(nan, nan)``.

    The axis counts as evenly spaced if no point deviates from the straight
    line through the end points by more than `rtol` steps.
    """
    e = as_curve(energies, 'energies')
    if e.size < 2 or not np.all(np.isfinite(e)):
        return np.nan, np.nan
    step = (e[-1] - e[0]) / (e.size - 1)
    if step == 0:
        return np.nan, np.nan
    linear = e[0] + step * np.arange(e.size)
    if np.any(np.abs(e - linear) > rtol * abs(step)):
        return np.nan, np.nan
    return float(e[0]), float(step)


def energy_step_of(energies: ArrayLike, rtol: float = STEP_TOLERANCE) -> float:
    """Energy step of an evenly spaced axis; NaN if the spacing is irregular."""
    _, step = first_and_increment(energies, rtol)
    return abs(step)


def check_energies(energies: ArrayLike) -> NDArray[np.float64]:
    """Validate an energy axis: 1-D, finite, strictly increasing."""
    e = as_curve(energies, 'energies')
    if e.size == 0:
        raise ValueError("Energy axis is empty")
    if not np.all(np.isfinite(e)):
        raise ValueError("Energy axis contains non-finite values")
    if not np.all(np.diff(e) > 0):
        raise ValueError("Energies must be strictly increasing")
    return e
