"""
Tests for Series Statistics
===========================

Returns, moments, correlation, beta, log spread and rolling z-scores.
"""

import math
from datetime import timedelta

import numpy as np
import pytest

from core.exceptions import DegenerateSpread, InsufficientData
from core.series_stats import (
    PairSeries,
    PriceSeries,
    beta,
    correlation,
    covariance,
    log_spread,
    returns,
    rolling_z_score,
    variance,
    z_score_series,
)
from tests.fixtures import daily_timestamps


class TestPriceSeries:
    """Tests for PriceSeries construction."""

    def test_from_points_sorts(self):
        """Points given out of order come back sorted by timestamp."""
        ts = daily_timestamps(3)
        series = PriceSeries.from_points("ETH", [(ts[2], 3.0), (ts[0], 1.0), (ts[1], 2.0)])

        assert series.timestamps == tuple(ts)
        assert series.closes == (1.0, 2.0, 3.0)
        assert len(series) == 3

    def test_non_increasing_timestamps_rejected(self):
        """Duplicate timestamps are not a valid series."""
        ts = daily_timestamps(2)
        with pytest.raises(ValueError):
            PriceSeries("ETH", (ts[0], ts[0]), (1.0, 2.0))

    def test_length_mismatch_rejected(self):
        """Timestamps and closes must pair up."""
        with pytest.raises(ValueError):
            PriceSeries("ETH", tuple(daily_timestamps(3)), (1.0, 2.0))


class TestPairSeries:
    """Tests for aligning two legs."""

    def _legs(self):
        ts = daily_timestamps(6)
        s1 = PriceSeries("ETH", tuple(ts[:5]), (10.0, 11.0, 12.0, 13.0, 14.0))
        # Same calendar days, different time of day, shifted by one day
        s2_ts = tuple(t + timedelta(hours=12) for t in ts[1:6])
        s2 = PriceSeries("SOL", s2_ts, (1.0, 2.0, 3.0, 4.0, 5.0))
        return s1, s2

    def test_align_by_date_inner_join(self):
        """Only calendar dates present in both legs survive."""
        s1, s2 = self._legs()
        pair = PairSeries.align(s1, s2)

        assert pair.pair == "ETH/SOL"
        assert len(pair) == 4
        assert list(pair.prices1) == [11.0, 12.0, 13.0, 14.0]
        assert list(pair.prices2) == [1.0, 2.0, 3.0, 4.0]
        assert pair.timestamps == s1.timestamps[1:]

    def test_align_by_timestamp_is_exact(self):
        """Intraday alignment needs identical timestamps."""
        s1, s2 = self._legs()
        pair = PairSeries.align(s1, s2, by="timestamp")

        assert len(pair) == 0
        assert pair.last_timestamp is None

    def test_until_drops_later_points(self):
        """until() keeps everything up to and including the cutoff."""
        s1, s2 = self._legs()
        pair = PairSeries.align(s1, s2)
        cut = pair.until(pair.timestamps[1])

        assert len(cut) == 2
        assert cut.last_timestamp == pair.timestamps[1]

    def test_tail(self):
        """tail() keeps the most recent points."""
        s1, s2 = self._legs()
        pair = PairSeries.align(s1, s2)

        assert list(pair.tail(2).prices1) == [13.0, 14.0]
        assert len(pair.tail(100)) == 4

    def test_require_raises_with_pair(self):
        """Too few aligned points raise InsufficientData naming the pair."""
        s1, s2 = self._legs()
        pair = PairSeries.align(s1, s2)

        with pytest.raises(InsufficientData) as exc_info:
            pair.require(15)

        assert exc_info.value.pair == "ETH/SOL"
        assert exc_info.value.reason == "insufficient_data"


class TestMoments:
    """Tests for returns, variance, covariance."""

    def test_returns(self):
        """Simple percentage change."""
        r = returns([100.0, 110.0, 99.0])

        assert r == pytest.approx([0.1, -0.1])

    def test_returns_need_two_prices(self):
        """A single price has no return."""
        with pytest.raises(InsufficientData):
            returns([100.0])

    def test_population_variance(self):
        """Variance divides by n."""
        assert variance([1.0, 2.0, 3.0, 4.0]) == pytest.approx(1.25)

    def test_covariance_length_mismatch(self):
        """Covariance needs paired observations."""
        with pytest.raises(ValueError):
            covariance([1.0, 2.0], [1.0, 2.0, 3.0])


class TestCorrelationAndBeta:
    """Tests for correlation and the OLS hedge ratio."""

    def test_beta_closed_form(self):
        """r1 = 2 * r2 gives beta 2 and correlation 1."""
        r2 = np.array([0.01, -0.02, 0.03, 0.0])
        r1 = 2 * r2

        assert beta(r1, r2) == pytest.approx(2.0)
        assert correlation(r1, r2) == pytest.approx(1.0)

    def test_anti_correlated(self):
        """Mirror-image returns correlate at -1."""
        r2 = np.array([0.01, -0.02, 0.03, 0.0])

        assert correlation(-r2, r2) == pytest.approx(-1.0)

    def test_correlation_in_range(self):
        """Correlation of arbitrary returns stays within [-1, 1]."""
        np.random.seed(42)
        for _ in range(20):
            r1 = np.random.normal(0, 0.02, 30)
            r2 = 0.5 * r1 + np.random.normal(0, 0.02, 30)
            corr = correlation(r1, r2)
            assert -1.0 <= corr <= 1.0

    def test_zero_variance_raises(self):
        """Flat returns make correlation and beta undefined."""
        flat = np.zeros(10)
        moving = np.linspace(-0.01, 0.01, 10)

        with pytest.raises(DegenerateSpread):
            correlation(moving, flat)
        with pytest.raises(DegenerateSpread):
            beta(moving, flat)


class TestLogSpread:
    """Tests for the log spread."""

    def test_log_spread_values(self):
        """ln(p1) - beta * ln(p2) elementwise."""
        spread = log_spread([math.e, math.e ** 2], [math.e, math.e], 1.5)

        assert spread == pytest.approx([1.0 - 1.5, 2.0 - 1.5])

    def test_non_positive_price_raises(self):
        """Log of a non-positive price is undefined."""
        with pytest.raises(DegenerateSpread):
            log_spread([1.0, 0.0], [1.0, 1.0], 1.0)


class TestRollingZScore:
    """Tests for the trailing-window z-score."""

    def test_full_window(self):
        """Z of the last point against the whole series."""
        z = rolling_z_score([1.0, 2.0, 3.0, 4.0, 5.0], window=5)

        assert z.mean == pytest.approx(3.0)
        assert z.std == pytest.approx(math.sqrt(2.0))
        assert z.value == pytest.approx(2.0 / math.sqrt(2.0))
        assert z.current == 5.0
        assert z.window == 5

    def test_only_trailing_window_used(self):
        """Points before the window do not affect the moments."""
        z = rolling_z_score([100.0, -100.0, 3.0, 4.0, 5.0], window=3)

        assert z.mean == pytest.approx(4.0)
        assert z.value == pytest.approx(1.0 / math.sqrt(2.0 / 3.0))
        assert z.window == 3

    def test_constant_window_raises(self):
        """A constant spread has no z-score; no silent default."""
        with pytest.raises(DegenerateSpread):
            rolling_z_score([1.0] * 30, window=30)

    def test_series_uses_no_future_data(self):
        """Changing later points never changes earlier z-scores."""
        np.random.seed(42)
        spread = np.random.normal(0, 1, 60)
        altered = spread.copy()
        altered[40:] += 10.0

        z = z_score_series(spread, window=20, min_periods=10)
        z_altered = z_score_series(altered, window=20, min_periods=10)

        assert np.all(np.isnan(z[:9]))
        assert np.allclose(z[9:40], z_altered[9:40])
        assert not np.allclose(z[40:], z_altered[40:])

    def test_series_last_point_matches_rolling(self):
        """The last element equals the single-point z-score."""
        np.random.seed(42)
        spread = np.random.normal(0, 1, 50)

        series = z_score_series(spread, window=30, min_periods=10)

        assert series[-1] == pytest.approx(rolling_z_score(spread, 30).value)
