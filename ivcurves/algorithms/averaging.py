"""Averaging of I(V) curves with soft fade-in/fade-out and drift correction.

Curves are merged one by one into a running ``(sum, weight)`` pair. The
merge order follows the longest contiguous overlap: first the pair with the
longest mutual overlap, then repeatedly the remaining curve with the longest
overlap to what has been merged so far. Where one curve starts or ends inside
the other, its weight ramps linearly over `blend_length` points, and a
slowly varying intensity ratio between the curves (estimated near both ends
of the overlap) is corrected so that no steps appear at the transitions.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from .curves import as_curve, longest_common_run, longest_run, round_half_up, valid_start_end

logger = logging.getLogger(__name__)

__all__ = [
    'BLEND_OVER_V0I',
    'MAX_INTENSITY_RATIO',
    'blend_length_for',
    'average_curves',
    'merge_curves',
    'merge_smoothly',
    'new_over_average_ratio',
    'best_overlap_pair',
    'best_overlap_index',
    'best_range_index',
    'snap_limit',
]

#: Blending range in units of V0i.
BLEND_OVER_V0I = 4.0
#: Intensity ratios between curves beyond this (or below its inverse) are not trusted.
MAX_INTENSITY_RATIO = 3.0


def blend_length_for(v0i_over_step: float, blend_over_v0i: float = BLEND_OVER_V0I) -> int:
    """Number of points for the fade-in/fade-out at curve ends."""
    if not v0i_over_step > 0:
        raise ValueError(f"v0i_over_step must be positive, got {v0i_over_step}")
    return round_half_up(blend_over_v0i * v0i_over_step + 1e-6)


def average_curves(
    curves: Sequence[Optional[ArrayLike]],
    start: int,
    end: int,
    min_overlap: int,
    v0i_over_step: float,
    max_ratio: float = MAX_INTENSITY_RATIO,
    blend_over_v0i: float = BLEND_OVER_V0I,
) -> Optional[NDArray[np.float64]]:
    """Average curves with the blend length derived from V0i/step.

    See :func:`merge_curves`.
    """
    return merge_curves(curves, start, end, min_overlap, blend_length_for(v0i_over_step, blend_over_v0i),
                        max_ratio=max_ratio)


def merge_curves(
    curves: Sequence[Optional[ArrayLike]],
    start: int,
    end: int,
    min_overlap: int,
    blend_length: int,
    max_ratio: float = MAX_INTENSITY_RATIO,
) -> Optional[NDArray[np.float64]]:
    """Merge curves of equal length into one, for use in ``[start, end)``.

    Data outside ``[start, end)`` are merged as well but not trimmed; only
    fades at ``start`` and ``end`` are suppressed.

    Args:
        curves: Intensity arrays on a common energy axis; None entries are ignored
        start: First index of the energy window (inclusive)
        end: Last index of the energy window (exclusive)
        min_overlap: Minimum contiguous overlap (points) for merging a curve
        blend_length: Points over which weights fade in or out
        max_ratio: Largest plausible intensity ratio between two curves

    Returns:
        The merged curve (new array), or None if no curve has data in the window.
        If no two curves overlap by `min_overlap` points, a copy of the curve
        with the longest contiguous range in the window is returned.

    Raises:
        ValueError: If the arrays differ in length or the window is invalid
    """
    arrays = [as_curve(c) for c in curves if c is not None]
    if not arrays:
        return None
    length = arrays[0].size
    for a in arrays:
        if a.size != length:
            raise ValueError(f"Arrays for averaging have different lengths: {a.size} vs {length}")
    if not 0 <= start <= end <= length:
        raise ValueError(f"Invalid index window [{start}, {end}) for arrays of length {length}")
    if blend_length < 0:
        raise ValueError(f"Blend length must not be negative, got {blend_length}")

    usable: List[Optional[NDArray[np.float64]]] = []
    for i, a in enumerate(arrays):
        first, last = valid_start_end(a)
        if first < 0 or first >= end or last <= start:
            logger.debug(f"Curve #{i} has no data in [{start}, {end}), ignored")
            continue
        usable.append(a)
    if not usable:
        return None

    pair = best_overlap_pair(usable, start, end, min_overlap)
    if pair is None:
        best = best_range_index(usable, start, end)
        logger.debug(f"No overlap of {min_overlap} points, using curve #{best} alone")
        return None if best is None else usable[best].copy()

    sum_data = usable[pair[0]].copy()
    weights = (~np.isnan(sum_data)).astype(float)
    logger.debug(f"Start average with #{pair[0]}, window {start}-{end}")
    usable[pair[0]] = None
    next_index: Optional[int] = pair[1]
    while next_index is not None:
        logger.debug(f"Merge with #{next_index}")
        merge_smoothly(sum_data, weights, usable[next_index], blend_length, start, end,
                       max_ratio=max_ratio)
        usable[next_index] = None
        next_index = best_overlap_index(usable, sum_data, start, end, min_overlap)
    skipped = sum(a is not None for a in usable)
    if skipped:
        logger.debug(f"{skipped} curve(s) without sufficient overlap not merged")

    with np.errstate(invalid='ignore', divide='ignore'):
        return sum_data / weights


def merge_smoothly(
    sum_data: NDArray[np.float64],
    weights: NDArray[np.float64],
    new_data: NDArray[np.float64],
    blend_length: int,
    start: int,
    end: int,
    max_ratio: float = MAX_INTENSITY_RATIO,
) -> None:
    """Add `new_data` to the running sum in place.

    Each point of `sum_data` holds the sum of ``weights`` contributions
    (fractional in the fade zones); `weights` is increased by the weight of
    the added data. Common ranges are processed left to right; the intensity
    correction at the edge of a common range is carried over to the data
    beyond it.
    """
    n = sum_data.size
    first0 = first1 = -1
    i_e = 0
    while i_e <= n:
        valid0 = i_e < n and not np.isnan(sum_data[i_e])
        valid1 = i_e < n and not np.isnan(new_data[i_e])
        if valid0 and first0 < 0:
            first0 = i_e
        if valid1 and first1 < 0:
            first1 = i_e
        if (not valid0 or not valid1) and first0 >= 0 and first1 >= 0:
            # end of common data (or of all data)
            if i_e >= start:
                i_e = _merge_common_range(sum_data, weights, new_data, blend_length, start, end,
                                          first0, first1, i_e, valid0, valid1, max_ratio)
            if i_e > end:
                break
            if not valid0:
                first0 = -1
            if not valid1:
                first1 = -1
        i_e += 1


def _fade_weights(n_points, blend_length, fade_in, fade_out):
    """Weights ramping 0->1 over the first and 1->0 over the last blend_length points."""
    w = np.ones(n_points)
    if blend_length <= 0:
        return w
    from_start = np.arange(n_points)
    to_end = n_points - from_start
    if fade_in:
        ramp = from_start < blend_length
        w[ramp] *= (from_start[ramp] + 1) / (blend_length + 1)
    if fade_out:
        ramp = to_end <= blend_length
        w[ramp] *= to_end[ramp] / (blend_length + 1)
    return w


def _log_ratio_trend(
    sum_data, weights, new_data, blend_length, first_common, i_e, blend_at_start, blend_at_end, max_ratio
) -> Tuple[float, float]:
    """Offset (at `first_common`) and slope of log(new/average) vs. index."""
    n_overlap = i_e - first_common
    # long overlaps: estimate the ratio separately near both ends
    use_trend = n_overlap > 5 * blend_length
    ratio_start = (new_over_average_ratio(sum_data, weights, new_data, first_common,
                                          first_common + 2 * blend_length, max_ratio)
                   if blend_at_start and use_trend else np.nan)
    ratio_end = (new_over_average_ratio(sum_data, weights, new_data, i_e - 2 * blend_length,
                                        i_e, max_ratio)
                 if blend_at_end and use_trend else np.nan)
    ratio_all = (new_over_average_ratio(sum_data, weights, new_data, first_common, i_e, max_ratio)
                 if np.isnan(ratio_start) or np.isnan(ratio_end) else np.nan)

    with np.errstate(invalid='ignore', divide='ignore'):
        if not np.isnan(ratio_start) and not np.isnan(ratio_end):
            slope = np.log(ratio_end / ratio_start) / (n_overlap - 2 * blend_length)
            offset = np.log(ratio_start) - slope * (blend_length - 0.5)
            where = "both"
        elif not np.isnan(ratio_start):
            slope = np.log(ratio_all / ratio_start) / (0.5 * (n_overlap - blend_length))
            offset = np.log(ratio_start) - slope * (blend_length - 0.5)
            where = "start"
        elif not np.isnan(ratio_end):
            slope = np.log(ratio_end / ratio_all) / (0.5 * (n_overlap - blend_length))
            offset = np.log(ratio_all) - slope * (0.5 * (n_overlap - 1))
            where = "end"
        else:
            slope = 0.0
            offset = np.log(ratio_all)
            where = "neither"
    if np.isnan(offset) or np.isnan(slope):
        if n_overlap > 0:
            logger.debug(f"No usable intensity ratio in overlap of {n_overlap} points, no correction")
            return 0.0, 0.0
        return np.nan, 0.0
    logger.debug(f"Ratio ok at {where}: log(new/avg) offset={offset:.4g} slope={slope:.4g}")
    return float(offset), float(slope)


def _merge_common_range(
    sum_data, weights, new_data, blend_length, start, end, first0, first1, i_e, valid0, valid1, max_ratio
) -> int:
    """Merge the common range ``[max(first0, first1), i_e)`` and the data beyond.

    Returns the index where scanning continues (moved to the last point of
    new data copied beyond the common range, if any).
    """
    n = sum_data.size
    first_common = max(first0, first1)
    blend0_start = first0 > first1 and first0 > start
    blend1_start = first1 > first0 and first1 > start
    blend0_end = not valid0 and valid1 and i_e < end
    blend1_end = valid0 and not valid1 and i_e < end

    offset_of_log, slope_of_log = _log_ratio_trend(
        sum_data, weights, new_data, blend_length, first_common, i_e,
        blend0_start or blend1_start, blend0_end or blend1_end, max_ratio)
    if np.isnan(offset_of_log):
        return i_e

    n_common = i_e - first_common
    common = slice(first_common, i_e)
    w0 = _fade_weights(n_common, blend_length, blend0_start, blend0_end)
    w1 = _fade_weights(n_common, blend_length, blend1_start, blend1_end)

    # split the correction between the two curves by their average weights
    sum_w0 = np.sum(w0 * weights[common])
    sum_w1 = np.sum(w1)
    r_weight0 = sum_w0 / (sum_w0 + sum_w1)
    r_weight1 = sum_w1 / (sum_w0 + sum_w1)
    factor0 = np.exp(offset_of_log * r_weight1)
    factor1 = np.exp(-offset_of_log * r_weight0)

    # before the common range: correct old data, supply new data where there is none
    head_sum = sum_data[:first_common]
    head_new = new_data[:first_common]
    fill = np.isnan(head_sum) & ~np.isnan(head_new)
    head_sum *= factor0
    head_sum[fill] = head_new[fill] * factor1
    weights[:first_common][fill] = 1.0
    logger.debug(f"Factors at start: {factor0:.4g}, {factor1:.4g}")

    ww0 = w0 * weights[common]
    norm = ww0 + w1
    f0 = factor0 * np.exp(np.cumsum(slope_of_log * w1 / norm))
    f1 = factor1 * np.exp(-np.cumsum(slope_of_log * ww0 / norm))
    sum_data[common] = w0 * f0 * sum_data[common] + w1 * f1 * new_data[common]
    weights[common] = norm
    factor0, factor1 = f0[-1], f1[-1]
    logger.debug(f"Factors at end: {factor0:.4g}, {factor1:.4g}")

    # beyond the common range: correct old data; new data only up to where old data resume
    tail_sum = sum_data[i_e:]
    tail_new = new_data[i_e:]
    old_valid = np.flatnonzero(~np.isnan(tail_sum))
    n_supply = old_valid[0] if old_valid.size else tail_sum.size
    fill = np.zeros(tail_sum.size, dtype=bool)
    fill[:n_supply] = ~np.isnan(tail_new[:n_supply])
    tail_sum *= factor0
    tail_sum[fill] = tail_new[fill] * factor1
    weights[i_e:][fill] = 1.0
    supplied = np.flatnonzero(fill)
    if supplied.size:
        # the new data copied here need no further processing
        return i_e + int(supplied[-1])
    return i_e


def new_over_average_ratio(
    sum_data: NDArray[np.float64],
    weights: NDArray[np.float64],
    new_data: NDArray[np.float64],
    start: int,
    end: int,
    max_ratio: float = MAX_INTENSITY_RATIO,
) -> float:
    """Ratio of the new data to the running average within ``[start, end)``.

    Only the first contiguous run where both are valid is used. Returns NaN
    if there is no such point or the ratio is outside
    ``[1/max_ratio, max_ratio]`` (probably bad data).
    """
    start = max(start, 0)
    end = min(end, sum_data.size)
    if end <= start:
        return np.nan
    both = ~np.isnan(sum_data[start:end]) & ~np.isnan(new_data[start:end])
    valid = np.flatnonzero(both)
    if valid.size == 0:
        return np.nan
    run_start = start + int(valid[0])
    gaps = np.flatnonzero(~both[valid[0]:])
    run_end = run_start + int(gaps[0]) if gaps.size else end
    sum_new = np.sum(new_data[run_start:run_end])
    sum_old = np.sum(sum_data[run_start:run_end] / weights[run_start:run_end])
    if sum_old == 0:
        return np.nan
    ratio = sum_new / sum_old
    if not 1.0 / max_ratio <= ratio <= max_ratio:
        return np.nan
    return float(ratio)


def best_overlap_pair(
    curves: Sequence[Optional[NDArray[np.float64]]], start: int, end: int, min_overlap: int
) -> Optional[Tuple[int, int]]:
    """Indices of the pair with the longest contiguous mutual overlap in ``[start, end)``.

    Ties go to the first pair encountered. Returns None if fewer than two
    curves or no overlap of at least `min_overlap` points.
    """
    best_pair = None
    best_overlap = -1
    for i in range(len(curves) - 1):
        if curves[i] is None:
            continue
        for j in range(i + 1, len(curves)):
            if curves[j] is None:
                continue
            overlap = longest_common_run(curves[i], curves[j], start, end)
            if overlap > best_overlap:
                best_overlap = overlap
                best_pair = (i, j)
    if best_pair is None or best_overlap < min_overlap:
        return None
    return best_pair


def best_overlap_index(
    curves: Sequence[Optional[NDArray[np.float64]]],
    other: NDArray[np.float64],
    start: int,
    end: int,
    min_overlap: int,
) -> Optional[int]:
    """Index of the curve with the longest contiguous overlap with `other`.

    None entries are skipped. Returns None if no curve overlaps by at least
    `min_overlap` points.
    """
    best_index = None
    best_overlap = -1
    for i, curve in enumerate(curves):
        if curve is None:
            continue
        overlap = longest_common_run(curve, other, start, end)
        if overlap > best_overlap:
            best_overlap = overlap
            best_index = i
    if best_index is None or best_overlap < min_overlap:
        return None
    return best_index


def best_range_index(
    curves: Sequence[Optional[NDArray[np.float64]]], start: int, end: int
) -> Optional[int]:
    """Index of the curve with the longest contiguous valid range in ``[start, end)``."""
    best_index = None
    best_length = -1
    for i, curve in enumerate(curves):
        if curve is None:
            continue
        length = longest_run(~np.isnan(curve[start:end]))
        if length > best_length:
            best_length = length
            best_index = i
    return best_index


def snap_limit(limits: Sequence[int], limit: int, plus_minus: int) -> int:
    """Move `limit` to the farthest of `limits` that lies within `plus_minus`.

    Used to widen or narrow an averaging window slightly when that makes one
    curve's start or end coincide with the window limit, so that no fade
    over a few points is needed there.
    """
    delta = 0
    for candidate in limits:
        diff = int(candidate) - limit
        if abs(diff) <= plus_minus and abs(diff) > abs(delta):
            delta = diff
    return limit + delta
