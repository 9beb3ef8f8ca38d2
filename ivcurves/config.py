"""Processing parameters for I(V) curve averaging, smoothing and comparison."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping

from ivcurves.algorithms.averaging import BLEND_OVER_V0I, MAX_INTENSITY_RATIO
from ivcurves.algorithms.curves import round_half_up
from ivcurves.algorithms.smoothing import half_width_for_noise_gain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingParams:
    # Physics
    v0i: float = 5.0                    # imaginary part of the inner potential (eV)

    # Smoothing: width (eV) of a moving average with equal noise suppression
    smoothing_ev: float = 0.0

    # Averaging
    min_overlap: int = 2                # points
    blend_over_v0i: float = BLEND_OVER_V0I
    max_intensity_ratio: float = MAX_INTENSITY_RATIO

    # Comparison: R factors are calculated with energy steps no larger than this (eV)
    max_comparison_step: float = 0.5

    def __post_init__(self) -> None:
        if not self.v0i > 0:
            raise ValueError(f"V0i must be positive, got {self.v0i}")
        if self.smoothing_ev < 0:
            raise ValueError(f"smoothing_ev must not be negative, got {self.smoothing_ev}")
        if self.min_overlap < 0:
            raise ValueError(f"min_overlap must not be negative, got {self.min_overlap}")
        if not self.blend_over_v0i >= 0:
            raise ValueError(f"blend_over_v0i must not be negative, got {self.blend_over_v0i}")
        if not self.max_intensity_ratio > 1:
            raise ValueError(f"max_intensity_ratio must be > 1, got {self.max_intensity_ratio}")
        if not self.max_comparison_step > 0:
            raise ValueError(f"max_comparison_step must be positive, got {self.max_comparison_step}")

    def v0i_over_step(self, step: float) -> float:
        if not step > 0:
            raise ValueError(f"Energy step must be positive, got {step}")
        return self.v0i / step

    def blend_length(self, step: float) -> int:
        """Fade-in/fade-out length in points for the given energy step."""
        return round_half_up(self.blend_over_v0i * self.v0i_over_step(step) + 1e-6)

    def smoothing_half_width(self, step: float) -> int:
        """Smoothing kernel half-width for the given energy step (0 = none)."""
        if self.smoothing_ev == 0:
            return 0
        return half_width_for_noise_gain(self.smoothing_ev / step)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ProcessingParams':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown processing parameters: {', '.join(sorted(unknown))}")
        params = cls(**dict(data))
        logger.debug(f"Processing parameters: {params}")
        return params
