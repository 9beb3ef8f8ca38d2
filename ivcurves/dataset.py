"""In-memory I(V) data sets.

An IVDataset is one energy axis plus named beam curves. Reading and writing
files is left to the caller; the DataFrame adapters below are the only
bridge to tabular data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from numpy.typing import ArrayLike, NDArray

from ivcurves.algorithms.averaging import merge_curves, snap_limit
from ivcurves.algorithms.curves import (
    as_curve,
    check_energies,
    energy_step_of,
    first_and_increment,
    restrict_range,
    round_half_up,
    valid_start_end,
)
from ivcurves.algorithms.interpolation import new_grid, resample
from ivcurves.algorithms.rfactor import RFactorResult, best_shift, r_factor_for_beams
from ivcurves.algorithms.smoothing import ModifiedSincSmoother
from ivcurves.config import ProcessingParams

logger = logging.getLogger(__name__)

ENERGY_HEADING = 'E'
_ENERGY_HEADING_RE = re.compile(r"^(energy.*|ev|e|e[\s(\[].*)$")


def find_energy_column(columns: Sequence[str]) -> Optional[str]:
    """Name of the first column that looks like an energy axis, or None."""
    for col in columns:
        if _ENERGY_HEADING_RE.match(str(col).strip().lower()):
            return col
    return None


@dataclass(frozen=True)
class IVDataset:
    energies: NDArray[np.float64]
    curves: Dict[str, NDArray[np.float64]] = field(default_factory=dict)
    title: Optional[str] = None

    def __post_init__(self) -> None:
        energies = check_energies(self.energies)
        curves = {}
        for name, y in self.curves.items():
            y = as_curve(y, str(name))
            if y.size != energies.size:
                raise ValueError(f"Curve {name!r} has {y.size} points, energy axis has {energies.size}")
            curves[name] = y
        object.__setattr__(self, 'energies', energies)
        object.__setattr__(self, 'curves', curves)

    def __len__(self) -> int:
        return len(self.curves)

    @property
    def energy_step(self) -> float:
        return energy_step_of(self.energies)

    @property
    def names(self) -> List[str]:
        return list(self.curves)

    def with_curves(self, curves: Mapping[str, ArrayLike], energies: Optional[ArrayLike] = None) -> 'IVDataset':
        return IVDataset(self.energies if energies is None else energies, dict(curves), self.title)

    def trimmed(self) -> Optional['IVDataset']:
        """Crop the energy axis to where any curve has data; None if no data at all."""
        starts, ends = [], []
        for y in self.curves.values():
            s, e = valid_start_end(y)
            if s >= 0:
                starts.append(s)
                ends.append(e)
        if not starts:
            return None
        s, e = min(starts), max(ends)
        return self.with_curves({name: y[s:e] for name, y in self.curves.items()}, self.energies[s:e])

    def resampled(self, step: float, first: Optional[float] = None, last: Optional[float] = None) -> 'IVDataset':
        """Cubic-spline resampling of all curves to a grid of multiples of `step`."""
        first = float(self.energies[0]) if first is None else first
        last = float(self.energies[-1]) if last is None else last
        grid = new_grid(first, last, step)
        return self.with_curves({name: resample(self.energies, grid, y) for name, y in self.curves.items()},
                                grid)

    def smoothed(self, half_width: int) -> 'IVDataset':
        smoother = ModifiedSincSmoother(half_width)
        return self.with_curves({name: smoother.smooth(y) for name, y in self.curves.items()})

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        energy_column: Optional[str] = None,
        zero_is_nan: bool = False,
        title: Optional[str] = None,
    ) -> 'IVDataset':
        """Build a data set from a DataFrame with one energy column and one column per beam.

        Non-numeric cells become NaN. With `zero_is_nan`, exact zeros are
        treated as missing data as well.
        """
        if energy_column is None:
            energy_column = find_energy_column(list(df.columns))
            if energy_column is None:
                raise ValueError("No energy column found in DataFrame")
        elif energy_column not in df.columns:
            raise ValueError(f"Column '{energy_column}' not found in DataFrame")

        energies = pd.to_numeric(df[energy_column], errors='coerce').to_numpy(dtype=float, copy=True)
        if np.any(np.isnan(energies)):
            raise ValueError("Energy column contains non-numeric or NaN values")
        curves = {}
        for col in df.columns:
            if col == energy_column:
                continue
            y = pd.to_numeric(df[col], errors='coerce').to_numpy(dtype=float, copy=True)
            if zero_is_nan:
                y[y == 0] = np.nan
            curves[str(col)] = y
        return cls(energies, curves, title)

    def to_dataframe(self) -> pd.DataFrame:
        """DataFrame with the energy column 'E' followed by one column per beam.

        Raises:
            ValueError: If a beam is named like the energy column
        """
        if ENERGY_HEADING in self.curves:
            raise ValueError(f"Beam name '{ENERGY_HEADING}' clashes with the energy column")
        frame = pd.DataFrame({ENERGY_HEADING: self.energies})
        for name, y in self.curves.items():
            frame[name] = y
        return frame


def common_grid(datasets: Sequence[IVDataset]) -> List[IVDataset]:
    """Bring data sets onto one energy axis: smallest step, union of ranges.

    Data sets already on that axis are returned unchanged.
    """
    steps = [ds.energy_step for ds in datasets]
    if any(not step > 0 for step in steps):
        raise ValueError("Energies are not evenly spaced with positive steps")
    step = min(steps)
    first = min(float(ds.energies[0]) for ds in datasets)
    last = max(float(ds.energies[-1]) for ds in datasets)
    same = all(ds.energies.size == datasets[0].energies.size
               and np.allclose(ds.energies, datasets[0].energies) for ds in datasets)
    if same:
        return list(datasets)
    logger.info(f"Interpolating {len(datasets)} data sets to {first}-{last} eV, step {step}")
    return [ds.resampled(step, first, last) for ds in datasets]


def average_datasets(
    datasets: Sequence[IVDataset],
    params: ProcessingParams,
    groups: Optional[Mapping[str, Hashable]] = None,
) -> Optional[IVDataset]:
    """Average the beams of several data sets into one data set.

    Curves with the same beam name are averaged. If `groups` maps beam names
    to group ids, all beams of one group (symmetry-equivalent beams) are
    averaged together and named after the first beam of the group
    encountered. Returns None if no beam has valid data.
    """
    if not datasets:
        return None
    datasets = common_grid(datasets)
    energies = datasets[0].energies
    step = energy_step_of(energies)
    v0i_over_step = params.v0i_over_step(step)
    snap_points = round_half_up(v0i_over_step)
    blend_length = params.blend_length(step)

    collected: Dict[Hashable, List[NDArray[np.float64]]] = {}
    out_names: Dict[Hashable, str] = {}
    for ds in datasets:
        for name, y in ds.curves.items():
            key = groups.get(name, ('beam', name)) if groups is not None else name
            if valid_start_end(y)[0] < 0:
                continue
            collected.setdefault(key, []).append(y)
            out_names.setdefault(key, name)

    averaged = {}
    for key, curves in collected.items():
        limits = [valid_start_end(y) for y in curves]
        starts = [s for s, _ in limits]
        ends = [e for _, e in limits]
        # avoid a fade in/out where a small change of the limits can avoid it
        start = snap_limit(starts, min(starts), snap_points)
        end = snap_limit(ends, max(ends), snap_points)
        average = merge_curves(curves, start, end, params.min_overlap, blend_length,
                               max_ratio=params.max_intensity_ratio)
        if average is None or np.all(np.isnan(average[start:end])):
            logger.warning(f"Averaging of beam {out_names[key]} results in no valid data, dropped")
            continue
        if start != min(starts) or end != max(ends):
            average = restrict_range(average, start, end)
        averaged[out_names[key]] = average

    if not averaged:
        logger.warning("Averaging results in no valid data")
        return None
    return IVDataset(energies, averaged, title='average')


def stitch_datasets(ds1: IVDataset, ds2: IVDataset) -> IVDataset:
    """Join two data sets measured over successive, overlapping energy ranges.

    The data set with the higher energies is scaled to the same intensity in
    the overlap as the other one; the scale factor is common to all beams and
    computed from all beams present in both. In the overlap, the weight of
    the higher-energy data rises linearly from ``1/(n+1)`` to ``n/(n+1)``.
    Beams present in only one data set are kept and padded with NaN.

    Args:
        ds1: First data set (either energy range)
        ds2: Second data set, with the same energy step

    Returns:
        New IVDataset covering both energy ranges; beams in the order of
        `ds1`, then those only in `ds2`

    Raises:
        ValueError: If the steps differ or are irregular, the energy ranges
            are not successive and overlapping, or the overlap has no
            positive intensities
    """
    first0, step0 = first_and_increment(ds1.energies)
    first1, step1 = first_and_increment(ds2.energies)
    if not abs((step1 - step0) / step1) < 1e-2:
        raise ValueError(f"Energies must be evenly spaced with the same step in both data sets, "
                         f"got {step0} and {step1}")
    step = 0.5 * (step0 + step1)
    last0 = float(ds1.energies[-1])
    last1 = float(ds2.energies[-1])
    first_is_0 = first1 > first0
    last_is_0 = last0 > last1
    if first_is_0 == last_is_0:
        raise ValueError(f"Not two successive energy ranges: {first0}-{last0} and {first1}-{last1} eV")
    low, high = (ds1, ds2) if first_is_0 else (ds2, ds1)

    n_overlap = round_half_up((float(low.energies[-1]) - float(high.energies[0])) / step + 1)
    if n_overlap < 1:
        raise ValueError(f"No energy overlap: {first0}-{last0} and {first1}-{last1} eV")
    n_low = low.energies.size
    overlap_start = n_low - n_overlap
    n_energies = overlap_start + high.energies.size

    low_sum = high_sum = 0.0
    for name, y in low.curves.items():
        if name not in high.curves:
            continue
        y_low = y[overlap_start:]
        y_high = high.curves[name][:n_overlap]
        with np.errstate(invalid='ignore'):
            both = (y_low > 0) & (y_high > 0)
        low_sum += float(np.sum(y_low[both]))
        high_sum += float(np.sum(y_high[both]))
    if low_sum == 0:
        raise ValueError("No positive values in overlap of the data sets")
    scale = low_sum / high_sum

    # switch to the energies of the second range in the middle of the overlap
    n_from_low = n_low - n_overlap // 2
    energies = np.concatenate([low.energies[:n_from_low],
                               high.energies[n_from_low - overlap_start:]])
    weights = (np.arange(n_overlap) + 1) / (n_overlap + 1)

    stitched = {}
    for name in list(ds1.curves) + [name for name in ds2.curves if name not in ds1.curves]:
        out = np.full(n_energies, np.nan)
        y_low = low.curves.get(name)
        y_high = high.curves.get(name)
        if y_low is not None and y_high is not None:
            out[:overlap_start] = y_low[:overlap_start]
            out[overlap_start:n_low] = (y_low[overlap_start:] * (1 - weights)
                                        + y_high[:n_overlap] * weights * scale)
            out[n_low:] = y_high[n_overlap:] * scale
        elif y_low is not None:
            out[:n_low] = y_low
        else:
            out[overlap_start:] = y_high * scale
        stitched[name] = out

    title = f"{ds1.title}+{ds2.title}" if ds1.title and ds2.title else None
    logger.info(f"Stitched {energies[0]}-{energies[-1]} eV, overlap {n_overlap} points, "
                f"scale factor {scale:.4g}")
    return IVDataset(energies, stitched, title=title)


@dataclass(frozen=True)
class DatasetComparison:
    """R factors between the common beams of two data sets."""
    step: float                         # energy step used for the comparison (eV)
    shift: float                        # energy shift of the second data set (eV)
    total: RFactorResult
    beams: Dict[str, RFactorResult]

    @property
    def overlap_ev(self) -> float:
        return self.total.n_overlap * self.step


def compare_datasets(
    ds1: IVDataset,
    ds2: IVDataset,
    params: ProcessingParams,
    allow_shift: bool = True,
    max_shift: Optional[int] = None,
) -> Optional[DatasetComparison]:
    """Pendry R factor between the beams present in both data sets.

    Both data sets are brought to the finer of their energy steps, but not
    coarser than ``params.max_comparison_step``. With `allow_shift`, the
    energy shift of `ds2` that minimizes the R factor is determined; its
    search range is `max_shift` points (default 2*V0i).

    Returns None if there are no common beams with data, or no R-factor
    minimum within the shift range.

    Raises:
        ValueError: If an energy axis is not evenly spaced
    """
    trimmed = [ds1.trimmed(), ds2.trimmed()]
    if trimmed[0] is None or trimmed[1] is None:
        logger.warning("No valid data for R factor comparison")
        return None
    ds1, ds2 = trimmed
    common = [name for name in ds1.curves if name in ds2.curves]
    if not common:
        logger.warning("Data sets have no common beams")
        return None

    steps = [ds1.energy_step, ds2.energy_step]
    if any(not step > 0 for step in steps):
        raise ValueError("Energies are not evenly spaced with positive steps")
    step = min(min(steps), params.max_comparison_step)
    if abs(steps[0] - step) > 1e-6:
        ds1 = ds1.resampled(step)
    if abs(steps[1] - step) > 1e-6:
        ds2 = ds2.resampled(step)
    curves1 = {name: ds1.curves[name] for name in common}
    curves2 = {name: ds2.curves[name] for name in common}
    # index shift that aligns equal energies of both data sets
    e_shift = round_half_up((ds1.energies[0] - ds2.energies[0]) / step)
    v0i_over_step = params.v0i_over_step(step)

    if allow_shift:
        result = best_shift(curves1, curves2, v0i_over_step, base_shift=e_shift, max_shift=max_shift)
        if result is None:
            return None
        comparison = DatasetComparison(step, result.shift * step, result.total, result.beams)
    else:
        beams, total = r_factor_for_beams(curves1, curves2, v0i_over_step, shift=e_shift)
        comparison = DatasetComparison(step, 0.0, total, beams)
    logger.info(f"R factor {comparison.total.r_factor:.4f} for {len(common)} beams, "
                f"overlap {comparison.overlap_ev:.1f} eV, shift {comparison.shift:.2f} eV")
    return comparison
