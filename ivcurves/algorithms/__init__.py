"""I(V) curve algorithms: smoothing, interpolation, averaging and R factors.

This package hosts implementations used by the data-set level operations
in :mod:`ivcurves.dataset`.
"""

from .smoothing import ModifiedSincSmoother, modified_sinc_smooth, half_width_for_noise_gain
from .interpolation import new_grid, resample, resample_curves
from .averaging import average_curves, merge_curves
from .rfactor import (
    RFactorResult,
    r_factor,
    r_factor_for_beams,
    best_shift,
    equivalent_beam_statistics,
)

__all__ = [
    "ModifiedSincSmoother",
    "modified_sinc_smooth",
    "half_width_for_noise_gain",
    "new_grid",
    "resample",
    "resample_curves",
    "average_curves",
    "merge_curves",
    "RFactorResult",
    "r_factor",
    "r_factor_for_beams",
    "best_shift",
    "equivalent_beam_statistics",
]
