"""Resampling of I(V) curves onto a new, evenly spaced energy grid.

Each contiguous range of valid (non-NaN) data is interpolated with a natural
cubic spline on its own; the output is NaN outside the valid ranges, so gaps
are kept and nothing is extrapolated.

Notes
-----
- A range of a single point is copied as a constant to the grid points that
  coincide with it (within tolerance).
- Grid points are multiples of the step, so grids with the same step but
  different start energies are aligned with each other.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import interpolate

from .curves import as_curve, check_energies, range_limits

logger = logging.getLogger(__name__)

__all__ = [
    'new_grid',
    'resample',
    'resample_curves',
]

# tolerance (in steps) when snapping the grid limits to multiples of the step
GRID_EPS = 1e-8
# tolerance (in steps) when deciding whether a grid point lies inside a data range
RANGE_EPS = 1e-10


def new_grid(first: float, last: float, step: float) -> NDArray[np.float64]:
    """Evenly spaced energies at multiples of `step` within ``[first, last]``.

    Raises:
        ValueError: If step is not positive or no grid point fits in the range
    """
    if not step > 0:
        raise ValueError(f"Step {step} not positive")
    new_first = np.ceil(first / step - GRID_EPS) * step
    new_last = np.floor(last / step + GRID_EPS) * step
    n_new = int(np.round((new_last - new_first) / step + 1))
    if n_new < 1:
        raise ValueError(f"No grid point with step {step} between {first} and {last}")
    return new_first + step * np.arange(n_new)


def _grid_step(new_x: NDArray[np.float64], old_x: NDArray[np.float64]) -> float:
    if new_x.size > 1:
        return (new_x[-1] - new_x[0]) / (new_x.size - 1)
    if old_x.size > 1:
        return (old_x[-1] - old_x[0]) / (old_x.size - 1)
    return 1.0


def resample(old_x: ArrayLike, new_x: ArrayLike, old_y: ArrayLike) -> NDArray[np.float64]:
    """Interpolate `old_y` given at `old_x` to the evenly spaced axis `new_x`.

    Parameters
    ----------
    old_x : array_like
        Original energies, strictly increasing
    new_x : array_like
        New energies, evenly spaced and increasing
    old_y : array_like
        Intensities at `old_x`; NaN marks missing data

    Returns
    -------
    ndarray
        Interpolated intensities at `new_x`; NaN where `new_x` lies outside
        every valid range of `old_y`.
    """
    old_x = check_energies(old_x)
    new_x = check_energies(new_x)
    old_y = as_curve(old_y, 'old_y')
    if old_x.size != old_y.size:
        raise ValueError(f"x and y must have the same length, got {old_x.size} and {old_y.size}")

    new_y = np.full(new_x.size, np.nan)
    step = _grid_step(new_x, old_x)
    for r_start, r_end in range_limits(old_y):
        new_start = int(np.ceil((old_x[r_start] - new_x[0]) / step - RANGE_EPS))
        new_end = int(np.floor((old_x[r_end - 1] - new_x[0]) / step + RANGE_EPS)) + 1
        new_start = max(new_start, 0)
        new_end = min(new_end, new_x.size)
        if new_end <= new_start:
            continue
        if r_end - r_start >= 2:
            spline = interpolate.CubicSpline(old_x[r_start:r_end], old_y[r_start:r_end],
                                             bc_type='natural', extrapolate=True)
            new_y[new_start:new_end] = spline(new_x[new_start:new_end])
        else:
            new_y[new_start:new_end] = old_y[r_start]
    return new_y


def resample_curves(
    energies: ArrayLike,
    curves: Mapping[str, ArrayLike],
    step: float,
    first: float | None = None,
    last: float | None = None,
) -> Tuple[NDArray[np.float64], Dict[str, NDArray[np.float64]]]:
    """Resample several curves sharing one energy axis to a grid with `step`.

    The new grid spans ``[first, last]`` (default: the range of `energies`).
    Returns the new energies and a dict with the resampled curves in the
    original order.
    """
    energies = check_energies(energies)
    first = float(energies[0]) if first is None else first
    last = float(energies[-1]) if last is None else last
    grid = new_grid(first, last, step)
    logger.debug(f"Resampling {len(curves)} curves to {grid.size} points, step {step}")
    return grid, {name: resample(energies, grid, y) for name, y in curves.items()}
