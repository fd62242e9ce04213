"""
Test Fixtures Package
=====================

Deterministic synthetic pair data and an in-memory data source for
testing the pair engine.
"""

from tests.fixtures.fake_data_source import FakeDataSource
from tests.fixtures.synthetic_pairs import (
    DIVERGENCE_PATTERN,
    PEAK_OFFSET,
    TROUGH_OFFSET,
    SyntheticPair,
    daily_timestamps,
    generate_pattern_pair,
    generate_random_walk_pair,
    generate_ar1_spread,
    make_verdict,
)

__all__ = [
    "DIVERGENCE_PATTERN",
    "PEAK_OFFSET",
    "TROUGH_OFFSET",
    "FakeDataSource",
    "SyntheticPair",
    "daily_timestamps",
    "generate_pattern_pair",
    "generate_random_walk_pair",
    "generate_ar1_spread",
    "make_verdict",
]
