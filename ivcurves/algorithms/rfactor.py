"""
Pendry R factor between I(V) curves.

The R factor compares the Y functions Y = L / (1 + V0i² L²) of two curves,
where L = I'/I is the logarithmic derivative. It is insensitive to the
overall intensity scale.

Derivatives are taken in the simplest way, from the difference of the two
neighbors of each point, so the first and last point of every valid range
do not contribute. For coarse energy steps, resample to a finer grid first
(see :mod:`ivcurves.algorithms.interpolation`).

Negative intensities (background-subtraction noise) would make L diverge;
each curve is therefore offset to be non-negative in the compared range.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike, NDArray

from .curves import as_curve, round_half_up

logger = logging.getLogger(__name__)

__all__ = [
    'RFactorResult',
    'ShiftResult',
    'PairStatistics',
    'y_transform',
    'r_factor',
    'overlap_ranges',
    'y_curve',
    'r_factor_from_y',
    'r_factor_for_beams',
    'best_shift',
    'equivalent_beam_statistics',
]

# keeps L finite at zero intensity
_EPS = 1e-100


@dataclass(frozen=True)
class RFactorResult:
    """R factor and overlap statistics of one comparison.

    `r_factor` is NaN when there was nothing to compare (`n_overlap` is 0,
    or all Y values vanish); use :attr:`is_valid` to tell this apart from a
    perfect match, where it is 0.
    """
    r_factor: float
    max_intensity_1: float
    max_intensity_2: float
    avg_intensity: float
    n_overlap: int
    ratio: float

    @property
    def is_valid(self) -> bool:
        return self.n_overlap > 0 and bool(np.isfinite(self.r_factor))

    @classmethod
    def empty(cls) -> 'RFactorResult':
        return cls(np.nan, 0.0, 0.0, np.nan, 0, np.nan)

    def as_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ShiftResult:
    """Optimum energy shift (in grid points) between two sets of curves."""
    shift: float
    total: RFactorResult
    beams: Dict[Hashable, RFactorResult] = field(default_factory=dict)


@dataclass(frozen=True)
class PairStatistics:
    """Comparison of two equivalent beams in one energy sub-range."""
    group: Hashable
    beam_1: Hashable
    beam_2: Hashable
    start: int
    end: int
    result: RFactorResult
    most_negative_1: float
    most_negative_2: float
    n_negative_1: int
    n_negative_2: int


def y_transform(left, mid, right, v0i_over_step: float):
    """Pendry Y function from three successive intensities (scalars or arrays).

    ``2L = (right - left) / mid`` is twice the logarithmic derivative (per
    grid step); the result is ``2L / (1 + (v0i_over_step * L)**2)``.
    The common factor 2 cancels in the R factor.
    """
    two_l = (right - left) / (mid + _EPS)
    return two_l / (1 + (0.5 * v0i_over_step * two_l) ** 2)


def _ratio_of_sums(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else np.nan


def r_factor(
    curve1: ArrayLike,
    curve2: ArrayLike,
    index_range: Optional[Tuple[int, int]] = None,
    shift: int = 0,
    v0i_over_step: float = 1.0,
) -> RFactorResult:
    """Pendry R factor of two curves on the same energy grid.

    Parameters
    ----------
    curve1, curve2 : array_like
        Intensities; NaN marks missing data
    index_range : (int, int), optional
        Restrict the comparison to indices ``[start, end)`` of `curve1`
        (neighbors outside are still used for the derivative)
    shift : int
        ``curve2[i + shift]`` is compared with ``curve1[i]``
    v0i_over_step : float
        Imaginary part of the inner potential divided by the energy step

    Returns
    -------
    RFactorResult
        R factor, maximum intensity of each curve and the geometric mean of
        the average intensities in the overlap, number of compared points
        and ratio of the summed intensities (curve2/curve1).
    """
    data1 = as_curve(curve1, 'curve1')
    data2 = as_curve(curve2, 'curve2')
    start, end = (0, data1.size) if index_range is None else index_range
    shift = int(shift)

    # most negative values where both are valid, within the range proper
    lo = max(start, -shift, 0)
    hi = min(end, data1.size, data2.size - shift)
    offset1 = offset2 = 0.0
    if hi > lo:
        seg1 = data1[lo:hi]
        seg2 = data2[lo + shift:hi + shift]
        both = ~np.isnan(seg1) & ~np.isnan(seg2)
        if both.any():
            offset1 = -min(0.0, float(np.min(seg1[both])))
            offset2 = -min(0.0, float(np.min(seg2[both])))

    # one extra point on each side for differentiating at the range limits
    lo = max(start - 1, 0, -shift)
    hi = min(end + 1, data1.size, data2.size - shift)
    if hi - lo < 3:
        return RFactorResult.empty()
    seg1 = data1[lo:hi] + offset1
    seg2 = data2[lo + shift:hi + shift] + offset2
    valid = ~np.isnan(seg1) & ~np.isnan(seg2)
    use = valid[:-2] & valid[1:-1] & valid[2:]
    n_points = int(np.count_nonzero(use))
    if n_points == 0:
        return RFactorResult.empty()

    mid1 = seg1[1:-1][use]
    mid2 = seg2[1:-1][use]
    y1 = y_transform(seg1[:-2][use], mid1, seg1[2:][use], v0i_over_step)
    y2 = y_transform(seg2[:-2][use], mid2, seg2[2:][use], v0i_over_step)
    sum_intensity1 = float(np.sum(mid1))
    sum_intensity2 = float(np.sum(mid2))
    with np.errstate(invalid='ignore', divide='ignore'):
        ratio = sum_intensity2 / sum_intensity1 if sum_intensity1 != 0 else np.nan
    return RFactorResult(
        r_factor=_ratio_of_sums(float(np.sum((y2 - y1) ** 2)), float(np.sum(y1 ** 2 + y2 ** 2))),
        max_intensity_1=max(0.0, float(np.max(mid1))),
        max_intensity_2=max(0.0, float(np.max(mid2))),
        avg_intensity=float(np.sqrt(sum_intensity1 * sum_intensity2)) / n_points,
        n_overlap=n_points,
        ratio=ratio,
    )


def overlap_ranges(curve1: ArrayLike, curve2: ArrayLike) -> Tuple[List[Tuple[int, int]], int]:
    """Ranges ``(start, end)`` where both curves are valid for at least 3 points.

    Leading exact zeros of either curve are not counted as data (TensErLEED
    writes 0 where there are no data). Returns the list of ranges and the
    total number of points in them; ``([], 0)`` if there is no overlap.
    """
    data1 = as_curve(curve1, 'curve1')
    data2 = as_curve(curve2, 'curve2')
    n = min(data1.size, data2.size)
    data1, data2 = data1[:n], data2[:n]
    nonzero = np.flatnonzero(data1 != 0), np.flatnonzero(data2 != 0)
    if nonzero[0].size == 0 or nonzero[1].size == 0:
        return [], 0
    first = max(int(nonzero[0][0]), int(nonzero[1][0]))
    both = np.zeros(n, dtype=bool)
    both[first:] = ~np.isnan(data1[first:]) & ~np.isnan(data2[first:])
    padded = np.concatenate(([False], both, [False])).astype(np.int8)
    edges = np.flatnonzero(np.diff(padded))
    ranges = [(int(s), int(e)) for s, e in zip(edges[::2], edges[1::2]) if e - s >= 3]
    return ranges, sum(e - s for s, e in ranges)


def y_curve(curve: ArrayLike, v0i_over_step: float) -> NDArray[np.float64]:
    """Y function of one curve, scaled so that its largest magnitude is 0.99.

    Points without two valid neighbors are NaN. A curve without any
    intensity variation gives Y = 0 where defined.
    """
    data = as_curve(curve, 'curve')
    out = np.full(data.size, np.nan)
    if data.size < 3 or np.all(np.isnan(data)):
        return out
    data = data - min(0.0, float(np.nanmin(data)))
    valid = ~np.isnan(data)
    use = np.flatnonzero(valid[:-2] & valid[1:-1] & valid[2:]) + 1
    if use.size == 0:
        return out
    out[use] = y_transform(data[use - 1], data[use], data[use + 1], v0i_over_step)
    max_abs = float(np.nanmax(np.abs(out)))
    if max_abs > 0:
        out *= 0.99 / max_abs
    return out


def r_factor_from_y(y1: ArrayLike, y2: ArrayLike) -> float:
    """R factor from two precomputed Y curves; NaN if they have no common points."""
    y1 = as_curve(y1, 'y1')
    y2 = as_curve(y2, 'y2')
    n = min(y1.size, y2.size)
    y1, y2 = y1[:n], y2[:n]
    both = ~np.isnan(y1) & ~np.isnan(y2)
    y1, y2 = y1[both], y2[both]
    return _ratio_of_sums(float(np.sum((y2 - y1) ** 2)), float(np.sum(y1 ** 2 + y2 ** 2)))


def _weighted_total(results: Sequence[RFactorResult]) -> RFactorResult:
    """Overlap-weighted mean of all fields except `n_overlap`, which is summed."""
    used = [r for r in results if r.n_overlap > 0]
    total_overlap = sum(r.n_overlap for r in used)
    if total_overlap == 0:
        return RFactorResult.empty()
    values = {}
    for f in fields(RFactorResult):
        if f.name == 'n_overlap':
            values[f.name] = total_overlap
        else:
            values[f.name] = sum(getattr(r, f.name) * r.n_overlap for r in used) / total_overlap
    return RFactorResult(**values)


def r_factor_for_beams(
    curves1: Mapping[Hashable, ArrayLike],
    curves2: Mapping[Hashable, ArrayLike],
    v0i_over_step: float,
    shift: int = 0,
) -> Tuple[Dict[Hashable, RFactorResult], RFactorResult]:
    """Compare all beams present in both mappings.

    Returns the per-beam results (in the order of `curves1`) and the total,
    where each quantity except the overlap is weighted by the overlap of
    the beam.
    """
    common = [key for key in curves1 if key in curves2]
    if not common:
        logger.warning("No common beams to compare")
    beams = {key: r_factor(curves1[key], curves2[key], shift=shift, v0i_over_step=v0i_over_step)
             for key in common}
    return beams, _weighted_total(list(beams.values()))


def _parabolic(left: float, mid: float, right: float, dx: float) -> float:
    return mid + 0.5 * dx * (right - left) + dx * dx * (0.5 * (right + left) - mid)


def best_shift(
    curves1: Mapping[Hashable, ArrayLike],
    curves2: Mapping[Hashable, ArrayLike],
    v0i_over_step: float,
    base_shift: int = 0,
    max_shift: Optional[int] = None,
) -> Optional[ShiftResult]:
    """Find the shift of `curves2` with respect to `curves1` that minimizes the total R factor.

    The shift is varied from `base_shift` downhill in steps of one point,
    at most `max_shift` points (default ``round(2 * v0i_over_step)``), and
    the minimum is refined by a parabola through the best shift and its
    neighbors. The returned shift is relative to `base_shift`.

    Returns:
        ShiftResult with parabolically interpolated values (the overlap is
        that of the best integer shift), or None if the R factor has no
        minimum within the search range.
    """
    if max_shift is None:
        max_shift = round_half_up(2 * v0i_over_step)

    cache: Dict[int, Tuple[Dict[Hashable, RFactorResult], RFactorResult]] = {}

    def evaluate(s: int) -> float:
        if s not in cache:
            cache[s] = r_factor_for_beams(curves1, curves2, v0i_over_step, shift=s + base_shift)
            logger.debug(f"shift {s}: R={cache[s][1].r_factor:.7f}")
        return cache[s][1].r_factor

    best = 0
    best_r = evaluate(0)
    if np.isnan(best_r):
        logger.warning("No overlap for R factor at zero shift")
        return None
    direction = 1
    s = 0
    first = True
    while True:
        s += direction
        if abs(s) > max_shift:
            logger.warning(f"No minimum of R vs. shift found within {max_shift - 1} points")
            return None
        r = evaluate(s)
        if r < best_r:
            best_r, best = r, s
        elif first:
            # wrong direction, or zero shift is best
            direction = -direction
            s = 0
        else:
            break
        first = False

    if (best - 1) not in cache or (best + 1) not in cache:
        evaluate(best - 1)
        evaluate(best + 1)
    left, mid, right = cache[best - 1], cache[best], cache[best + 1]
    c = 0.5 * (right[1].r_factor + left[1].r_factor) - mid[1].r_factor
    dx = -0.25 * (right[1].r_factor - left[1].r_factor) / c if c > 0 else 0.0

    def interpolated(l_res: RFactorResult, m_res: RFactorResult, r_res: RFactorResult) -> RFactorResult:
        values = {}
        for f in fields(RFactorResult):
            if f.name == 'n_overlap':
                values[f.name] = m_res.n_overlap
            else:
                values[f.name] = _parabolic(getattr(l_res, f.name), getattr(m_res, f.name),
                                            getattr(r_res, f.name), dx)
        return RFactorResult(**values)

    beams = {key: interpolated(left[0][key], mid[0][key], right[0][key]) for key in mid[0]}
    total = interpolated(left[1], mid[1], right[1])
    logger.debug(f"Best shift {best + dx:.3f} points, R={total.r_factor:.5f}")
    return ShiftResult(shift=best + dx, total=total, beams=beams)


def equivalent_beam_statistics(
    curves: Mapping[Hashable, ArrayLike],
    groups: Mapping[Hashable, Hashable],
    v0i_over_step: float,
    min_points: int = 10,
    split_points: Optional[int] = None,
) -> List[PairStatistics]:
    """Pairwise R factors between symmetry-equivalent beams, as a data-quality check.

    Parameters
    ----------
    curves : mapping
        Beam name -> intensities on a common grid
    groups : mapping
        Beam name -> group id; beams with equal group id are equivalent,
        beams missing from `groups` are not compared
    min_points : int
        Overlap ranges shorter than this are ignored
    split_points : int, optional
        Split each overlap range into sub-ranges of about this many points
    """
    names = [name for name in curves if name in groups]
    data = {name: as_curve(curves[name], str(name)) for name in names}
    stats: List[PairStatistics] = []
    for i, name1 in enumerate(names):
        for name2 in names[i + 1:]:
            if groups[name1] != groups[name2]:
                continue
            ranges, _ = overlap_ranges(data[name1], data[name2])
            for r_start, r_end in ranges:
                if r_end - r_start < min_points:
                    continue
                n_sub = max(1, round_half_up((r_end - r_start) / split_points)) if split_points else 1
                for k in range(n_sub):
                    s = r_start + round_half_up(k * (r_end - r_start) / n_sub)
                    e = r_start + round_half_up((k + 1) * (r_end - r_start) / n_sub)
                    seg1 = data[name1][s:e]
                    seg2 = data[name2][s:e]
                    stats.append(PairStatistics(
                        group=groups[name1], beam_1=name1, beam_2=name2, start=s, end=e,
                        result=r_factor(data[name1], data[name2], (s, e), 0, v0i_over_step),
                        most_negative_1=min(0.0, float(np.nanmin(seg1))),
                        most_negative_2=min(0.0, float(np.nanmin(seg2))),
                        n_negative_1=int(np.count_nonzero(seg1 < 0)),
                        n_negative_2=int(np.count_nonzero(seg2 < 0)),
                    ))
    logger.debug(f"{len(stats)} comparisons between equivalent beams")
    return stats
