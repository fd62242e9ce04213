"""
Series Statistics
=================

Pure numeric primitives for pair analysis.

- Simple returns, population covariance/variance
- Pearson correlation and OLS beta on paired returns
- Log spread ln(p1) - beta * ln(p2)
- Rolling z-score over a fixed trailing window

Moments are population moments (divide by n). A zero variance or
standard deviation raises DegenerateSpread; nothing here substitutes a
default value for an undefined statistic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Sequence

import numpy as np

from core.exceptions import DegenerateSpread, InsufficientData


logger = logging.getLogger(__name__)

# Below this a standard deviation is treated as zero
ZERO_TOLERANCE = 1e-12

MIN_ALIGNED_OBSERVATIONS = 15
DEFAULT_ZSCORE_WINDOW = 30


@dataclass(frozen=True)
class PriceSeries:
    """Ordered (timestamp, close) observations for one symbol."""
    symbol: str
    timestamps: tuple[datetime, ...]
    closes: tuple[float, ...]

    def __post_init__(self):
        if len(self.timestamps) != len(self.closes):
            raise ValueError(
                f"{self.symbol}: {len(self.timestamps)} timestamps vs {len(self.closes)} closes"
            )
        for earlier, later in zip(self.timestamps, self.timestamps[1:]):
            if later <= earlier:
                raise ValueError(f"{self.symbol}: timestamps must be strictly increasing")

    @classmethod
    def from_points(cls, symbol: str, points: Iterable[tuple[datetime, float]]) -> PriceSeries:
        """Build from (timestamp, close) pairs, sorting by timestamp."""
        ordered = sorted(points, key=lambda p: p[0])
        return cls(
            symbol=symbol,
            timestamps=tuple(p[0] for p in ordered),
            closes=tuple(float(p[1]) for p in ordered),
        )

    def __len__(self) -> int:
        return len(self.closes)

    @property
    def values(self) -> np.ndarray:
        return np.asarray(self.closes, dtype=float)


@dataclass(frozen=True, eq=False)
class PairSeries:
    """
    Two price series inner-joined on a common, sorted set of timestamps.

    Build with PairSeries.align(); slicing helpers return new instances.
    """
    asset1: str
    asset2: str
    timestamps: tuple[datetime, ...]
    prices1: np.ndarray
    prices2: np.ndarray

    @classmethod
    def align(
        cls,
        series1: PriceSeries,
        series2: PriceSeries,
        by: str = "date",
    ) -> PairSeries:
        """
        Inner join two series.

        Args:
            series1: First leg
            series2: Second leg
            by: "date" joins on calendar date (daily closes),
                "timestamp" joins on the exact timestamp (intraday)
        """
        def key(ts: datetime) -> date | datetime:
            return ts.date() if by == "date" else ts

        second = {key(ts): close for ts, close in zip(series2.timestamps, series2.closes)}
        timestamps: list[datetime] = []
        p1: list[float] = []
        p2: list[float] = []
        for ts, close in zip(series1.timestamps, series1.closes):
            k = key(ts)
            if k in second:
                timestamps.append(ts)
                p1.append(close)
                p2.append(second[k])

        return cls(
            asset1=series1.symbol,
            asset2=series2.symbol,
            timestamps=tuple(timestamps),
            prices1=np.asarray(p1, dtype=float),
            prices2=np.asarray(p2, dtype=float),
        )

    @property
    def pair(self) -> str:
        return f"{self.asset1}/{self.asset2}"

    def __len__(self) -> int:
        return len(self.timestamps)

    @property
    def last_timestamp(self) -> datetime | None:
        return self.timestamps[-1] if self.timestamps else None

    def until(self, cutoff: datetime) -> PairSeries:
        """Drop every observation after cutoff."""
        n = sum(1 for ts in self.timestamps if ts <= cutoff)
        return self._slice(0, n)

    def tail(self, n: int) -> PairSeries:
        """Keep the last n observations."""
        start = max(0, len(self) - n)
        return self._slice(start, len(self))

    def require(self, min_observations: int = MIN_ALIGNED_OBSERVATIONS) -> PairSeries:
        """Raise InsufficientData unless at least min_observations are aligned."""
        if len(self) < min_observations:
            raise InsufficientData(
                f"{len(self)} aligned observations, need {min_observations}",
                pair=self.pair,
            )
        return self

    def _slice(self, start: int, stop: int) -> PairSeries:
        return PairSeries(
            asset1=self.asset1,
            asset2=self.asset2,
            timestamps=self.timestamps[start:stop],
            prices1=self.prices1[start:stop],
            prices2=self.prices2[start:stop],
        )


@dataclass(frozen=True)
class ZScore:
    """Z-score of the last point against its trailing window."""
    value: float
    mean: float
    std: float
    window: int
    current: float


def returns(prices: Sequence[float] | np.ndarray) -> np.ndarray:
    """Simple period-over-period percentage change, length len(prices) - 1."""
    p = np.asarray(prices, dtype=float)
    if len(p) < 2:
        raise InsufficientData(f"need at least 2 prices for returns, got {len(p)}")
    if np.any(p[:-1] == 0):
        raise DegenerateSpread("zero price in return calculation")
    return p[1:] / p[:-1] - 1.0


def variance(x: Sequence[float] | np.ndarray) -> float:
    """Population variance."""
    arr = np.asarray(x, dtype=float)
    if len(arr) == 0:
        raise InsufficientData("variance of an empty series")
    return float(np.mean((arr - arr.mean()) ** 2))


def covariance(x: Sequence[float] | np.ndarray, y: Sequence[float] | np.ndarray) -> float:
    """Population covariance of two equal-length series."""
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    if len(a) != len(b):
        raise ValueError(f"length mismatch: {len(a)} vs {len(b)}")
    if len(a) == 0:
        raise InsufficientData("covariance of an empty series")
    return float(np.mean((a - a.mean()) * (b - b.mean())))


def correlation(r1: Sequence[float] | np.ndarray, r2: Sequence[float] | np.ndarray) -> float:
    """Pearson correlation of paired returns."""
    var1 = variance(r1)
    var2 = variance(r2)
    if var1 <= ZERO_TOLERANCE ** 2 or var2 <= ZERO_TOLERANCE ** 2:
        raise DegenerateSpread("zero return variance, correlation undefined")
    corr = covariance(r1, r2) / np.sqrt(var1 * var2)
    # Guard against floating point drift just outside [-1, 1]
    return float(np.clip(corr, -1.0, 1.0))


def beta(r1: Sequence[float] | np.ndarray, r2: Sequence[float] | np.ndarray) -> float:
    """OLS slope of asset1 returns on asset2 returns: cov(r1, r2) / var(r2)."""
    var2 = variance(r2)
    if var2 <= ZERO_TOLERANCE ** 2:
        raise DegenerateSpread("zero variance in asset2 returns, beta undefined")
    return covariance(r1, r2) / var2


def log_spread(
    prices1: Sequence[float] | np.ndarray,
    prices2: Sequence[float] | np.ndarray,
    hedge_ratio: float,
) -> np.ndarray:
    """Elementwise ln(p1) - beta * ln(p2)."""
    p1 = np.asarray(prices1, dtype=float)
    p2 = np.asarray(prices2, dtype=float)
    if len(p1) != len(p2):
        raise ValueError(f"length mismatch: {len(p1)} vs {len(p2)}")
    if np.any(p1 <= 0) or np.any(p2 <= 0):
        raise DegenerateSpread("non-positive price, log spread undefined")
    return np.log(p1) - hedge_ratio * np.log(p2)


def rolling_z_score(
    spread: Sequence[float] | np.ndarray,
    window: int = DEFAULT_ZSCORE_WINDOW,
) -> ZScore:
    """
    Z-score of the last spread point against the last `window` points.

    Only the trailing window is used for the mean and standard deviation.
    A zero standard deviation raises DegenerateSpread.
    """
    s = np.asarray(spread, dtype=float)
    if len(s) == 0:
        raise InsufficientData("z-score of an empty spread")
    recent = s[-min(window, len(s)):]
    mean = float(recent.mean())
    std = float(np.sqrt(np.mean((recent - mean) ** 2)))
    if not np.isfinite(std) or std <= ZERO_TOLERANCE:
        raise DegenerateSpread(f"spread std dev is zero over last {len(recent)} points")
    current = float(s[-1])
    return ZScore(
        value=(current - mean) / std,
        mean=mean,
        std=std,
        window=len(recent),
        current=current,
    )


def z_score_series(
    spread: Sequence[float] | np.ndarray,
    window: int = DEFAULT_ZSCORE_WINDOW,
    min_periods: int = 10,
) -> np.ndarray:
    """
    Trailing z-score at every point, using only data up to that point.

    Points with fewer than min_periods observations or zero trailing
    std dev are NaN.
    """
    s = np.asarray(spread, dtype=float)
    out = np.full(len(s), np.nan)
    for i in range(len(s)):
        start = max(0, i - window + 1)
        recent = s[start:i + 1]
        if len(recent) < min_periods:
            continue
        mean = recent.mean()
        std = np.sqrt(np.mean((recent - mean) ** 2))
        if std > ZERO_TOLERANCE:
            out[i] = (s[i] - mean) / std
    return out
