"""Modified-sinc (MS) smoothing of degree 4 for curves with NaN gaps.

Kernel and boundary treatment follow M. Schmid, D. Rath and U. Diebold,
ACS Meas. Sci. Au 2, 185 (2022), doi:10.1021/acsmeasuresciau.1c00054.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from .curves import as_curve, range_limits, round_half_up

logger = logging.getLogger(__name__)

__all__ = [
    'MIN_HALFWIDTH',
    'DEGREE',
    'ModifiedSincSmoother',
    'modified_sinc_smooth',
    'half_width_for_noise_gain',
    'noise_gain_for_half_width',
    'half_width_for_bandwidth',
    'make_kernel',
    'make_fit_weights',
]

#: Smallest kernel half-width that smooths; anything below is a no-op.
MIN_HALFWIDTH = 4
#: Only degree 4 is implemented.
DEGREE = 4

# empirical noise-gain relation: m = -1 + A*g + B*g**EXPONENT
_NG_EXPONENT = -2.5 - 0.8 * DEGREE
_NG_A = 1.494 + 0.4965 * DEGREE
_NG_B = 0.52


def half_width_for_noise_gain(inv_noise_gain_sq: float) -> int:
    """Kernel half-width m for a given white-noise suppression.

    Args:
        inv_noise_gain_sq: Square of the reciprocal white-noise gain, i.e. the
            width (in points) of a moving average with the same noise
            suppression.

    Returns:
        The half-width m; 0 (no smoothing) for values below 1.3.
    """
    if not inv_noise_gain_sq >= 1.3:
        return 0
    m = -1 + _NG_A * inv_noise_gain_sq + _NG_B * inv_noise_gain_sq ** _NG_EXPONENT
    return round_half_up(m)


def noise_gain_for_half_width(m: int) -> float:
    """Inverse of :func:`half_width_for_noise_gain` (0 for m below the minimum)."""
    if m < MIN_HALFWIDTH:
        return 0.0
    g = (m + 1) / _NG_A
    return (m + 1 - _NG_B * g ** _NG_EXPONENT) / _NG_A


def half_width_for_bandwidth(bandwidth: float) -> int:
    """Kernel half-width whose -3 dB point is closest to `bandwidth`.

    Args:
        bandwidth: Cutoff frequency relative to the sampling frequency,
            must be in (0, 0.5).

    Raises:
        ValueError: If bandwidth is outside (0, 0.5)
    """
    if not 0 < bandwidth < 0.5:
        raise ValueError(f"Invalid bandwidth value: {bandwidth}")
    return round_half_up((0.74548 + 0.24943 * DEGREE) / bandwidth - 1.0)


def make_kernel(m: int) -> NDArray[np.float64]:
    """One side of the symmetric MS kernel (m+1 taps, center first), sum 1."""
    if m < MIN_HALFWIDTH:
        raise ValueError(f"Kernel half-width m={m} too low, need at least {MIN_HALFWIDTH}")
    x = np.arange(m + 1) / (m + 1)
    sinc_arg = 0.5 * np.pi * (DEGREE + 4) * x
    kernel = np.ones(m + 1)
    kernel[1:] = np.sin(sinc_arg[1:]) / sinc_arg[1:]
    decay = 4.0
    kernel *= (np.exp(-x * x * decay) + np.exp(-(x - 2) ** 2 * decay)
               + np.exp(-(x + 2) ** 2 * decay) - 2 * np.exp(-decay) - np.exp(-9 * decay))
    # off-center taps appear twice
    return kernel / (kernel[0] + 2 * np.sum(kernel[1:]))


def make_fit_weights(m: int) -> NDArray[np.float64]:
    """Hann-shaped weights for the linear fit used to extrapolate at boundaries.

    Element 0 belongs to the point at the very end of the data.
    """
    first_zero = (m + 1) / (1.5 + 0.5 * DEGREE)
    beta = 0.70 + 0.14 * np.exp(-0.60 * (DEGREE - 4))
    fit_length = int(np.ceil(first_zero * beta))
    p = np.arange(fit_length)
    return np.cos(0.5 * np.pi / (first_zero * beta) * p) ** 2


@lru_cache(maxsize=32)
def _kernel_and_weights(m: int) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    kernel = make_kernel(m)
    weights = make_fit_weights(m)
    kernel.flags.writeable = False
    weights.flags.writeable = False
    return kernel, weights


def _weighted_line(y: NDArray[np.float64], w: NDArray[np.float64]) -> Tuple[float, float]:
    """Weighted least-squares line through ``(i, y[i])``; returns (offset, slope).

    NaN points are ignored. A single point gives slope 0.
    """
    x = np.arange(y.size, dtype=float)
    ok = ~np.isnan(y)
    x, y, w = x[ok], y[ok], w[ok]
    sw = np.sum(w)
    if not sw > 0:
        return np.nan, np.nan
    mean_x = np.sum(w * x) / sw
    mean_y = np.sum(w * y) / sw
    var_x = np.sum(w * (x - mean_x) ** 2)
    slope = np.sum(w * (x - mean_x) * (y - mean_y)) / var_x if var_x > 0 else 0.0
    return mean_y - slope * mean_x, slope


class ModifiedSincSmoother:
    """Smoother with a fixed MS kernel of degree 4 and half-width `half_width`.

    The kernel is built once and shared by all :meth:`smooth` calls, which do
    not modify any state, so one instance may be used from several threads.
    Half-widths below :data:`MIN_HALFWIDTH` give a smoother that returns a copy
    of its input.
    """

    def __init__(self, half_width: int):
        half_width = int(half_width)
        if half_width < 0:
            raise ValueError(f"Kernel half-width must not be negative, got {half_width}")
        self.half_width = half_width
        if half_width < MIN_HALFWIDTH:
            self.kernel = None
            self.fit_weights = None
        else:
            self.kernel, self.fit_weights = _kernel_and_weights(half_width)

    @classmethod
    def for_noise_gain(cls, inv_noise_gain_sq: float) -> 'ModifiedSincSmoother':
        return cls(half_width_for_noise_gain(inv_noise_gain_sq))

    @classmethod
    def for_bandwidth(cls, bandwidth: float) -> 'ModifiedSincSmoother':
        return cls(half_width_for_bandwidth(bandwidth))

    @property
    def is_active(self) -> bool:
        return self.kernel is not None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(half_width={self.half_width})"

    def smooth(self, data: ArrayLike) -> NDArray[np.float64]:
        """Return the smoothed data as a new array.

        NaN values split the data into ranges. Each range is extended by
        linear extrapolation before filtering, so the output follows the data
        up to the boundaries. Gaps shorter than half the fit length are
        bridged, longer gaps stay NaN.
        """
        data = as_curve(data, 'data')
        if self.kernel is None:
            return data.copy()
        m = self.half_width
        ranges = range_limits(data)
        if not ranges:
            return np.full_like(data, np.nan)

        n = data.size
        extend_left = max(0, m - ranges[0][0])
        extend_right = max(0, m - n + ranges[-1][1])
        extended = np.full(n + extend_left + extend_right, np.nan)
        extended[extend_left:extend_left + n] = data
        n_fit = self.fit_weights.size

        for i, (r_start, r_end) in enumerate(ranges):
            # fill [start, end) from a fit over [end, input_end)
            start = 0 if i == 0 else ranges[i - 1][1] + extend_left
            end = r_start + extend_left
            start = max(start, end - m)
            input_end = min(r_end + extend_left, end + n_fit)
            self._extrapolate_left(extended, start, end, input_end)

        for i, (r_start, r_end) in enumerate(ranges):
            is_last = i == len(ranges) - 1
            # fill [start, end) from a fit over [input_start, start)
            start = r_end + extend_left
            end = extended.size if is_last else ranges[i + 1][0] + extend_left
            n_overlap = 0 if is_last else min(2 * m - (end - start), end - start)
            end = min(end, start + m)
            input_start = max(r_start + extend_left, start - n_fit)
            self._extrapolate_right(extended, start, end, input_start, n_overlap)

        out = self._convolve(extended)[extend_left:extend_left + n]

        n_bridge = n_fit // 2
        p = 0
        for i, (r_start, r_end) in enumerate(ranges):
            if i > 0 and r_start - p < n_bridge:
                p = r_start
            out[p:r_start] = np.nan
            p = r_end
        out[p:] = np.nan
        return out

    def _extrapolate_left(self, extended, start, end, input_end):
        if end <= start:
            return
        offset, slope = _weighted_line(extended[end:input_end], self.fit_weights[:input_end - end])
        extended[start:end] = offset + slope * np.arange(start - end, 0)

    def _extrapolate_right(self, extended, start, end, input_start, n_overlap):
        if end <= start:
            return
        fit_data = extended[input_start:start][::-1]
        offset, slope = _weighted_line(fit_data, self.fit_weights[:fit_data.size])
        i = np.arange(1, end - start + 1)
        extrapolated = offset - slope * i
        # blend with the left-extrapolation of the next range where both overlap
        n_plain = min(end - start, max(0, (end - start) - n_overlap))
        extended[start:start + n_plain] = extrapolated[:n_plain]
        if n_plain < end - start:
            j = i[n_plain:]
            w = 0.5 if n_overlap == 1 else (end - start - j) / (n_overlap - 1)
            previous = extended[start + n_plain:end]
            extended[start + n_plain:end] = w * extrapolated[n_plain:] + (1.0 - w) * previous

    def _convolve(self, data: NDArray[np.float64]) -> NDArray[np.float64]:
        """Filter with the full kernel; the first and last m points stay NaN."""
        m = self.half_width
        out = np.full_like(data, np.nan)
        if data.size > 2 * m:
            full_kernel = np.concatenate((self.kernel[:0:-1], self.kernel))
            out[m:data.size - m] = np.convolve(data, full_kernel, mode='valid')
        return out


def modified_sinc_smooth(y: ArrayLike, half_width: int) -> NDArray[np.float64]:
    """Apply MS smoothing of degree 4 with the given kernel half-width.

    Args:
        y: Input signal values; NaN marks missing data
        half_width: Kernel half-width m; below 4 the input is returned unchanged

    Returns:
        Smoothed signal array

    Raises:
        ValueError: If y is empty or half_width is negative
    """
    y = as_curve(y, 'y')
    if y.size == 0:
        raise ValueError("Input array is empty")
    return ModifiedSincSmoother(half_width).smooth(y)
