"""
Tests for Cointegration Estimator
=================================

Tests for the autocorrelation stationarity proxy, mean-reversion rate
and both half-life estimators.
"""

import math

import numpy as np
import pytest

from core.cointegration import (
    CointegrationEstimator,
    HalfLifeMethod,
    create_cointegration_estimator,
)
from core.exceptions import InsufficientData
from tests.fixtures import DIVERGENCE_PATTERN, generate_ar1_spread


class TestHalfLife:
    """Tests for the two half-life estimators."""

    def test_ar1_half_life_recovered(self):
        """AR(1) with phi=0.8 has half-life -ln2/ln0.8 = 3.106."""
        spread = generate_ar1_spread(n=2000, phi=0.8, seed=42)
        estimator = CointegrationEstimator()
        expected = -math.log(2) / math.log(0.8)

        result = estimator.estimate(spread)

        assert result.half_life_ar1.method == HalfLifeMethod.AR1
        assert result.half_life_ar1.is_finite
        assert abs(result.half_life_ar1.days - expected) / expected < 0.4

    def test_autocorr_half_life_finite_positive(self):
        """Differences of a stationary AR(1) are anti-correlated."""
        spread = generate_ar1_spread(n=2000, phi=0.8, seed=42)
        estimator = CointegrationEstimator()

        result = estimator.estimate(spread)

        assert result.autocorrelation < 0
        assert result.half_life_autocorr.is_finite
        assert result.half_life > 0
        # Coarser than AR(1) but the same order of magnitude
        assert result.half_life < 6 * result.half_life_ar1.days

    def test_autocorr_formula(self):
        """-ln2 / ln(1 + rho) for negative rho."""
        estimator = CointegrationEstimator()

        estimate = estimator.half_life_autocorrelation(-0.2, n_diffs=30)

        assert estimate.days == pytest.approx(-math.log(2) / math.log(0.8))
        assert estimate.coefficient == -0.2

    def test_non_negative_rho_is_infinite(self):
        """No reversion detected means an infinite half-life, not a default."""
        estimator = CointegrationEstimator()

        assert estimator.half_life_autocorrelation(0.1, n_diffs=30).days == math.inf
        assert estimator.half_life_autocorrelation(0.0, n_diffs=30).days == math.inf

    def test_too_few_diffs_is_infinite(self):
        """Fewer than 10 differences are not enough for a half-life."""
        estimator = CointegrationEstimator()

        assert estimator.half_life_autocorrelation(-0.2, n_diffs=9).days == math.inf

    def test_random_walk_ar1_not_mean_reverting(self):
        """A trending level series has phi >= 1 and no AR(1) half-life."""
        estimator = CointegrationEstimator()
        spread = np.arange(50, dtype=float) ** 1.5

        estimate = estimator.half_life_ar1(spread)

        assert estimate.days == math.inf

    def test_divergence_reported(self):
        """Relative disagreement is (ar1 - autocorr) / autocorr."""
        spread = generate_ar1_spread(n=2000, phi=0.8, seed=42)
        result = CointegrationEstimator().estimate(spread)

        expected = (result.half_life_ar1.days - result.half_life) / result.half_life

        assert result.half_life_divergence == pytest.approx(expected)
        assert result.estimators_diverge == (abs(expected) > 0.30)


class TestStationarityProxy:
    """Tests for the heuristic cointegration verdict."""

    def test_anti_correlated_diffs_fail_autocorrelation_cap(self):
        """A spread flipping sign every bar has rho near -1 and is rejected."""
        spread = np.array([1.0, -1.0] * 20)
        estimator = CointegrationEstimator()

        result = estimator.estimate(spread)

        # Diffs alternate -2/+2
        assert result.autocorrelation < -0.9
        assert result.adf_stat == pytest.approx(-result.autocorrelation * math.sqrt(40))
        assert result.adf_stat > 0
        # Every scored move heads back toward the mean
        assert result.mean_reversion_rate == pytest.approx(38 / 39)
        assert result.is_cointegrated is False

    def test_mean_reversion_rule(self):
        """mrr > 0.5 with |rho| < 0.3 passes even though adf is not below -2.5."""
        spread = np.array(DIVERGENCE_PATTERN * 3) * 0.01
        estimator = CointegrationEstimator()

        result = estimator.estimate(spread)

        assert result.adf_stat > -2.5
        assert result.mean_reversion_rate > 0.5
        assert abs(result.autocorrelation) < 0.3
        assert result.is_cointegrated is True

    def test_mean_reversion_rate_excludes_last_move(self):
        """Moves i-1 -> i for i in 1..n-2, divided by n-1."""
        spread = np.array([2.0, 1.0, 0.5, 3.0])

        rate = CointegrationEstimator.mean_reversion_rate(spread, mean=0.0)

        # 2 -> 1 toward, 1 -> 0.5 toward; 0.5 -> 3 is not scored
        assert rate == pytest.approx(2 / 3)

    def test_lag1_autocorrelation_of_constant(self):
        """Zero variance gives zero autocorrelation."""
        assert CointegrationEstimator.lag1_autocorrelation(np.zeros(10)) == 0.0

    def test_linear_drift_has_no_half_life(self):
        """Constant increments carry only float noise, not reversion."""
        spread = np.linspace(0, 1, 30)

        assert CointegrationEstimator.lag1_autocorrelation(np.diff(spread)) == 0.0
        result = CointegrationEstimator().estimate(spread)
        assert result.autocorrelation == 0.0
        assert not result.half_life_autocorr.is_finite

    def test_minimum_observations(self):
        """Fewer than 10 points raise InsufficientData."""
        with pytest.raises(InsufficientData):
            CointegrationEstimator().estimate(np.arange(9, dtype=float))

    def test_factory_reads_cointegration_section(self):
        """Factory picks up custom critical value."""
        estimator = create_cointegration_estimator({"cointegration": {"adf_critical_value": 10.0}})
        spread = np.linspace(0, 1, 30)

        # Any finite adf_stat is below 10
        assert estimator.estimate(spread).is_cointegrated

    def test_to_dict_serializes_infinite_half_life(self):
        """Infinite half-lives serialize as null."""
        result = CointegrationEstimator().estimate(np.linspace(0, 1, 30))
        data = result.to_dict()

        assert data["half_life_autocorr"]["days"] is None
        assert data["half_life_divergence"] is None
