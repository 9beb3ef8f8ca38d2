"""Pytest configuration and fixtures for ivcurves tests."""

import numpy as np
import pytest


def iv_peaks(energies, centers, widths, heights, background=0.0):
    """Sum of Lorentzian peaks, a rough stand-in for a LEED I(V) curve."""
    e = np.asarray(energies, dtype=float)
    y = np.full(e.shape, float(background))
    for c, w, h in zip(centers, widths, heights):
        y += h / (1 + ((e - c) / w) ** 2)
    return y


@pytest.fixture
def energies():
    """Energy axis from 50 to 250 eV with 0.5 eV step."""
    return np.arange(401) * 0.5 + 50.0


@pytest.fixture
def clean_iv_curve(energies):
    """Smooth I(V)-like curve with a few peaks of width ~ 2*V0i."""
    y = iv_peaks(energies, centers=[70, 105, 140, 190, 230], widths=[8, 10, 6, 12, 9],
                 heights=[3.0, 5.0, 2.0, 4.0, 1.5], background=0.2)
    return energies, y


@pytest.fixture
def noisy_iv_curve(clean_iv_curve):
    """The clean curve with white noise added."""
    e, clean_y = clean_iv_curve
    np.random.seed(42)  # Reproducible noise
    noisy_y = clean_y + 0.05 * np.random.randn(len(clean_y))
    return e, noisy_y, clean_y


@pytest.fixture
def curve_with_gaps(clean_iv_curve):
    """Clean curve with NaN at both ends, one short and one long gap."""
    e, y = clean_iv_curve
    y = y.copy()
    y[:20] = np.nan
    y[150:153] = np.nan
    y[250:300] = np.nan
    y[-10:] = np.nan
    return e, y


@pytest.fixture
def partial_curves(clean_iv_curve):
    """Three measurements of the same beam, covering different energy ranges.

    The second one has 10% higher intensity (e.g. beam current drift).
    """
    e, y = clean_iv_curve
    a = y.copy()
    a[300:] = np.nan
    b = 1.1 * y
    b[:100] = np.nan
    c = y.copy()
    c[:200] = np.nan
    return e, [a, b, c], y


@pytest.fixture
def short_ramp():
    """Five-point linear curve for exact checks."""
    return np.array([1.0, 2.0, 3.0, 4.0, 5.0])


@pytest.fixture
def empty_curve():
    """Empty array for error testing."""
    return np.array([])


@pytest.fixture(params=[0.5, 1.0, 2.0, 5.0, 10.0])
def v0i_over_step(request):
    """Parametrized V0i/step values."""
    return request.param


@pytest.fixture(params=[4, 6, 10, 20])
def half_widths(request):
    """Parametrized smoothing kernel half-widths."""
    return request.param


@pytest.fixture(autouse=True)
def reset_random_seed():
    """Reset random seed before each test for reproducibility."""
    np.random.seed(42)
