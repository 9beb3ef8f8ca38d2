"""Pytest tests for Pendry R factors and curve comparison."""

import numpy as np
import pytest

from ivcurves.algorithms import rfactor
from ivcurves.algorithms.rfactor import RFactorResult

nan = np.nan


class TestYTransform:

    def test_zero_for_constant(self):
        assert rfactor.y_transform(2.0, 2.0, 2.0, 5.0) == 0.0

    def test_scale_invariant(self):
        y1 = rfactor.y_transform(1.0, 2.0, 4.0, 3.0)
        y2 = rfactor.y_transform(10.0, 20.0, 40.0, 3.0)
        assert y1 == pytest.approx(y2)

    def test_bounded(self):
        # |Y| <= 1/v0i (per step), reached for L = 1/v0i
        left, mid, right = 0.0, 1.0, np.linspace(0, 100, 1001)
        y = rfactor.y_transform(left, mid, right, 4.0)
        assert np.max(np.abs(y)) <= 0.25 + 1e-12

    def test_zero_intensity_is_finite(self):
        assert np.isfinite(rfactor.y_transform(1.0, 0.0, 2.0, 1.0))


class TestRFactor:
    """R factor of two curves."""

    def test_self_comparison_scenario(self, short_ramp):
        result = rfactor.r_factor(short_ramp, short_ramp)
        assert result.r_factor == 0.0
        assert result.n_overlap == 3
        assert result.is_valid
        assert result.max_intensity_1 == 4.0
        assert result.ratio == 1.0
        assert result.avg_intensity == pytest.approx(3.0)

    def test_self_comparison(self, noisy_iv_curve, v0i_over_step):
        e, y, _ = noisy_iv_curve
        result = rfactor.r_factor(y, y, v0i_over_step=v0i_over_step)
        assert result.r_factor == 0.0
        assert result.n_overlap == len(y) - 2

    def test_scaled_curve(self, clean_iv_curve):
        e, y = clean_iv_curve
        result = rfactor.r_factor(y, 3.0 * y, v0i_over_step=10)
        assert result.r_factor == pytest.approx(0.0, abs=1e-12)
        assert result.ratio == pytest.approx(3.0)
        assert result.max_intensity_2 == pytest.approx(3.0 * result.max_intensity_1)

    def test_different_curves(self, clean_iv_curve):
        e, y = clean_iv_curve
        # shifted by one step
        r_close = rfactor.r_factor(y[1:], y[:-1], v0i_over_step=10).r_factor
        r_far = rfactor.r_factor(y, y[::-1], v0i_over_step=10).r_factor
        assert 0 < r_close < r_far
        assert r_far <= 2.0

    @pytest.mark.parametrize("shift", [-7, -1, 0, 2, 15])
    def test_swap_symmetry(self, clean_iv_curve, noisy_iv_curve, shift):
        e, y = clean_iv_curve
        _, noisy_y, _ = noisy_iv_curve
        r12 = rfactor.r_factor(y, noisy_y, shift=shift, v0i_over_step=10)
        r21 = rfactor.r_factor(noisy_y, y, shift=-shift, v0i_over_step=10)
        assert r12.r_factor == pytest.approx(r21.r_factor, rel=1e-12)
        assert r12.n_overlap == r21.n_overlap
        assert r12.ratio == pytest.approx(1.0 / r21.ratio)

    def test_shift(self, clean_iv_curve):
        e, y = clean_iv_curve
        c1 = y[10:-10]
        c2 = y[7:-13]
        # c2[i + 3] == c1[i]
        assert rfactor.r_factor(c1, c2, shift=3, v0i_over_step=10).r_factor == 0.0
        assert rfactor.r_factor(c1, c2, shift=0, v0i_over_step=10).r_factor > 0.0

    def test_index_range(self, short_ramp):
        data = np.concatenate((short_ramp, [10.0, 1.0, 7.0]))
        result = rfactor.r_factor(data, data, index_range=(1, 4))
        # neighbors outside the range are used for the derivative
        assert result.n_overlap == 3
        assert result.max_intensity_1 == 4.0

    def test_negative_values_offset(self):
        c1 = np.array([-1.0, 0.0, 1.0, 2.0, 3.0])
        c2 = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
        # offsetting c1 makes both curves identical
        assert rfactor.r_factor(c1, c2).r_factor == pytest.approx(0.0, abs=1e-12)

    def test_gaps_excluded(self, curve_with_gaps, clean_iv_curve):
        e, gappy = curve_with_gaps
        _, y = clean_iv_curve
        result = rfactor.r_factor(gappy, y, v0i_over_step=10)
        assert result.r_factor == 0.0
        # every range loses its two end points
        ranges = [(20, 150), (153, 250), (300, 391)]
        assert result.n_overlap == sum(e_ - s - 2 for s, e_ in ranges)

    def test_no_overlap_is_distinct_from_zero(self):
        a = np.array([1.0, 2, 3, nan, nan, nan])
        b = np.array([nan, nan, nan, 1.0, 2, 3])
        result = rfactor.r_factor(a, b)
        assert np.isnan(result.r_factor)
        assert result.n_overlap == 0
        assert not result.is_valid

    def test_flat_curves_are_degenerate(self):
        result = rfactor.r_factor(np.ones(10), np.full(10, 2.0))
        assert result.n_overlap == 8
        assert np.isnan(result.r_factor)
        assert not result.is_valid

    def test_too_short(self):
        result = rfactor.r_factor([1.0, 2.0], [1.0, 2.0])
        assert result.n_overlap == 0
        assert np.isnan(result.r_factor)

    def test_empty_result(self):
        empty = RFactorResult.empty()
        assert empty.n_overlap == 0
        assert not empty.is_valid

    def test_as_dict(self, short_ramp):
        d = rfactor.r_factor(short_ramp, short_ramp).as_dict()
        assert set(d) == {'r_factor', 'max_intensity_1', 'max_intensity_2', 'avg_intensity',
                          'n_overlap', 'ratio'}


class TestOverlapAndYCurves:

    def test_overlap_ranges(self):
        a = np.array([1.0, 2, 3, 4, nan, 1, 2, nan, 1, 2, 3, 4, 5])
        b = np.ones(13)
        ranges, total = rfactor.overlap_ranges(a, b)
        assert ranges == [(0, 4), (8, 13)]
        assert total == 9

    def test_overlap_ranges_skip_leading_zeros(self):
        a = np.array([0.0, 0, 0, 1, 2, 3, 4])
        b = np.ones(7)
        ranges, total = rfactor.overlap_ranges(a, b)
        assert ranges == [(3, 7)]
        assert total == 4

    def test_overlap_ranges_none(self):
        assert rfactor.overlap_ranges(np.zeros(5), np.ones(5)) == ([], 0)
        assert rfactor.overlap_ranges([1.0, 2, nan, nan], [nan, nan, 1.0, 2]) == ([], 0)

    def test_y_curve_normalized(self, clean_iv_curve):
        e, y = clean_iv_curve
        yc = rfactor.y_curve(y, 10)
        assert np.isnan(yc[0]) and np.isnan(yc[-1])
        assert np.nanmax(np.abs(yc)) == pytest.approx(0.99)

    def test_y_curve_flat(self):
        yc = rfactor.y_curve(np.full(6, 3.0), 1.0)
        np.testing.assert_array_equal(yc[1:-1], 0.0)

    def test_y_curve_all_nan(self):
        assert np.all(np.isnan(rfactor.y_curve(np.full(6, nan), 1.0)))

    def test_r_factor_from_y(self, clean_iv_curve, noisy_iv_curve):
        e, y = clean_iv_curve
        _, noisy_y, _ = noisy_iv_curve
        y1 = rfactor.y_curve(y, 10)
        y2 = rfactor.y_curve(noisy_y, 10)
        assert rfactor.r_factor_from_y(y1, y1) == 0.0
        assert 0 < rfactor.r_factor_from_y(y1, y2) < 2
        assert np.isnan(rfactor.r_factor_from_y([nan, 1.0], [1.0, nan]))


class TestMultiBeam:
    """R factors over several beams and the best energy shift."""

    @pytest.fixture
    def beams(self, clean_iv_curve, noisy_iv_curve):
        e, y = clean_iv_curve
        _, noisy_y, _ = noisy_iv_curve
        short = y.copy()
        short[200:] = nan
        return {'(1,0)': y[10:-10], '(1,1)': short[10:-10], '(2,0)': noisy_y[10:-10]}

    def test_r_factor_for_beams(self, beams):
        noisy = dict(beams)
        noisy['(1,0)'] = beams['(2,0)']
        per_beam, total = rfactor.r_factor_for_beams(beams, noisy, 10)
        assert list(per_beam) == ['(1,0)', '(1,1)', '(2,0)']
        assert total.n_overlap == sum(r.n_overlap for r in per_beam.values())
        expected = sum(r.r_factor * r.n_overlap for r in per_beam.values()) / total.n_overlap
        assert total.r_factor == pytest.approx(expected)
        assert per_beam['(1,1)'].r_factor == 0.0

    def test_r_factor_for_beams_only_common(self, beams):
        other = {'(1,1)': beams['(1,1)'], '(3,0)': beams['(1,0)']}
        per_beam, total = rfactor.r_factor_for_beams(beams, other, 10)
        assert list(per_beam) == ['(1,1)']
        assert total.n_overlap == per_beam['(1,1)'].n_overlap
        assert total.r_factor == pytest.approx(per_beam['(1,1)'].r_factor)

    def test_r_factor_for_beams_nothing_common(self, beams):
        per_beam, total = rfactor.r_factor_for_beams(beams, {'x': beams['(1,0)']}, 10)
        assert per_beam == {}
        assert not total.is_valid

    @pytest.mark.parametrize("true_shift", [3, -4])
    def test_best_shift(self, clean_iv_curve, true_shift):
        e, y = clean_iv_curve
        curves1 = {'a': y[20:-20]}
        curves2 = {'a': y[20 - true_shift:len(y) - 20 - true_shift]}
        result = rfactor.best_shift(curves1, curves2, v0i_over_step=10)
        assert result is not None
        assert result.shift == pytest.approx(true_shift, abs=0.2)
        assert result.total.r_factor < 0.01
        assert set(result.beams) == {'a'}

    def test_best_shift_relative_to_base(self, clean_iv_curve):
        e, y = clean_iv_curve
        curves1 = {'a': y[20:-20]}
        curves2 = {'a': y[17:-23]}
        result = rfactor.best_shift(curves1, curves2, v0i_over_step=10, base_shift=3)
        assert result.shift == pytest.approx(0.0, abs=0.2)

    def test_best_shift_out_of_range(self, clean_iv_curve):
        e, y = clean_iv_curve
        curves1 = {'a': y[20:-20]}
        curves2 = {'a': y[15:-25]}
        assert rfactor.best_shift(curves1, curves2, v0i_over_step=10, max_shift=2) is None

    def test_best_shift_no_overlap(self):
        assert rfactor.best_shift({'a': np.ones(5)}, {'b': np.ones(5)}, 1.0) is None


class TestEquivalentBeamStatistics:

    def test_pairs_within_groups(self, clean_iv_curve, noisy_iv_curve):
        e, y = clean_iv_curve
        _, noisy_y, _ = noisy_iv_curve
        curves = {'(1,0)': y, '(0,1)': noisy_y, '(1,1)': y, '(2,0)': y}
        groups = {'(1,0)': 1, '(0,1)': 1, '(1,1)': 2}
        stats = rfactor.equivalent_beam_statistics(curves, groups, 10)
        assert len(stats) == 1
        s = stats[0]
        assert (s.group, s.beam_1, s.beam_2) == (1, '(1,0)', '(0,1)')
        assert (s.start, s.end) == (0, len(y))
        assert s.result.is_valid
        assert s.result.r_factor > 0

    def test_split_and_negative_counts(self, clean_iv_curve):
        e, y = clean_iv_curve
        y2 = y.copy()
        y2[[5, 50, 120]] = -0.5
        curves = {'a': y, 'b': y2}
        stats = rfactor.equivalent_beam_statistics(curves, {'a': 0, 'b': 0}, 10, split_points=100)
        assert len(stats) == 4
        assert stats[0].start == 0 and stats[-1].end == len(y)
        for s1, s2 in zip(stats, stats[1:]):
            assert s1.end == s2.start
        assert sum(s.n_negative_2 for s in stats) == np.count_nonzero(y2 < 0)
        assert all(s.n_negative_1 == 0 for s in stats)
        assert min(s.most_negative_2 for s in stats) == -0.5

    def test_short_overlap_ignored(self):
        a = np.array([1.0, 2, 3, 4, 5, nan, nan, nan])
        curves = {'a': a, 'b': a.copy()}
        assert rfactor.equivalent_beam_statistics(curves, {'a': 0, 'b': 0}, 1.0, min_points=10) == []
        assert len(rfactor.equivalent_beam_statistics(curves, {'a': 0, 'b': 0}, 1.0, min_points=5)) == 1
