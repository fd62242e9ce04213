"""
Pytest Configuration
====================

Shared fixtures for testing.
"""

import pytest

from core.notifications import Notifier
from core.state_persistence import create_state_persistence
from tests.fixtures import generate_pattern_pair


@pytest.fixture
def test_config(tmp_path):
    """Engine configuration sized for the synthetic pattern pair."""
    return {
        "engine": {
            "rolling_window": 40,
            "zscore_min_periods": 10,
            "min_observations": 20,
            "entry_ladder": [1.0, 1.5, 2.0, 2.5, 3.0],
            "min_entry_threshold": 1.5,
            "exit_threshold": 0.5,
            "reverted_band": 0.5,
            "cointegration": {},
        },
        "scanner": {
            "min_volume_24h": 1_000_000,
            "min_open_interest": 100_000,
            "min_correlation": 0.6,
            "max_half_life_days": 45,
            "lookback_days": 61,
            "min_history_ratio": 0.8,
            "top_per_sector": 3,
            "cross_sector": False,
            "fetch_batch_size": 2,
            "fetch_batch_delay_seconds": 0.0,
        },
        "monitor": {
            "max_concurrent_trades": 5,
            "block_asset_overlap": True,
            "min_correlation": 0.6,
            "max_entry_half_life": 30,
            "short_confirmation_ratio": 0.8,
            "hurst_entry_guard": False,
            "approaching_ratio": 0.5,
            "pair_delay_seconds": 0.0,
            "send_status_report": True,
            "windows": {
                "reactive": 61,
                "cointegration": 90,
                "cointegration_min_points": 60,
                "short": 7,
                "hurst": 60,
            },
            "exits": {
                "breakdown_correlation": 0.4,
                "partial_take_profit": {"enabled": True, "pnl_pct": 3.0, "fraction": 0.5, "final_pnl_pct": 5.0},
                "stop_loss": {"enabled": True, "entry_multiplier": 1.5, "history_multiplier": 1.2, "floor": 3.0},
                "time_stop": {"enabled": True, "half_life_multiple": 2.0, "default_half_life": 15},
                "regime_shift": {"enabled": False, "hurst_threshold": 0.5},
            },
        },
        "regime": {
            "window_sizes": [10, 20, 40],
            "min_observations": 40,
            "trending_threshold": 0.5,
        },
        "data_source": {
            "retry": {"max_attempts": 1, "base_delay_seconds": 0.0, "jitter_fraction": 0.0},
        },
        "persistence": {
            "state_dir": str(tmp_path / "state"),
            "max_backups": 3,
        },
        "notifications": {"log": True},
        "logging": {"level": "INFO"},
        "scheduler": {
            "monitor_interval_minutes": 15,
            "scan_interval_hours": 12,
            "scan_on_start": True,
            "tick_seconds": 0.01,
        },
    }


@pytest.fixture
def persistence(test_config):
    """State persistence in a temporary directory."""
    return create_state_persistence(test_config)


@pytest.fixture
def notifier():
    """Log-only notifier that keeps its history for assertions."""
    return Notifier()


@pytest.fixture
def pattern_pair():
    """100 days of the AAA/BBB pattern pair (hedge ratio 1.5)."""
    return generate_pattern_pair(n=100)


@pytest.fixture
def temp_logs_dir(tmp_path):
    """Create temporary logs directory."""
    logs_dir = tmp_path / "logs"
    logs_dir.mkdir()
    return logs_dir
