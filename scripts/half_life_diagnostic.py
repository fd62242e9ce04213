#!/usr/bin/env python3
"""
Half-Life Diagnostic Script
===========================

Compares the autocorrelation and AR(1) half-life estimators for every
watchlist pair and flags pairs where they disagree by more than the
tolerance (30% by default). Large disagreement usually means a short or
noisy window.

Usage:
    python scripts/half_life_diagnostic.py                 # current watchlist
    python scripts/half_life_diagnostic.py --pairs ETH/SOL BTC/LTC
    python scripts/half_life_diagnostic.py --days 60 --tolerance 0.25
"""

import argparse
import asyncio
import logging
import math
import sys

# Add project root to path
sys.path.insert(0, '.')

from core.exceptions import DataSourceError, PairRejected
from core.series_stats import PairSeries
from core.state_persistence import create_state_persistence
from data.market_data import create_data_source
from main import load_config
from strategies.pair_fitness_strategy import create_pair_fitness_evaluator

logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s | %(levelname)s | %(message)s'
)
logger = logging.getLogger(__name__)


def format_days(value: float) -> str:
    return f"{value:7.2f}" if math.isfinite(value) else "    inf"


async def run_diagnostic(config: dict, pairs: list[str], days: int, tolerance: float) -> int:
    """Print one row per pair; returns the number of flagged pairs."""
    evaluator = create_pair_fitness_evaluator(config)

    if not pairs:
        watchlist = create_state_persistence(config).load_watchlist()
        pairs = [entry.pair for entry in watchlist.entries]
    if not pairs:
        print("No pairs to check (empty watchlist)")
        return 0

    print(f"{'PAIR':<14} {'AUTOCORR':>8} {'AR(1)':>8} {'DIFF':>7}  FLAG")
    print("-" * 46)

    flagged = 0
    async with create_data_source(config) as source:
        for pair in pairs:
            asset1, asset2 = pair.upper().split("/")
            try:
                s1, s2 = await asyncio.gather(
                    source.get_daily_closes(asset1, days),
                    source.get_daily_closes(asset2, days),
                )
                verdict = evaluator.fitness(PairSeries.align(s1, s2))
            except (DataSourceError, PairRejected) as e:
                print(f"{pair:<14} skipped: {e}")
                continue

            divergence = verdict.half_life_divergence
            is_flagged = divergence is not None and abs(divergence) > tolerance
            flagged += int(is_flagged)

            diff = f"{divergence:+6.0%}" if divergence is not None else "    n/a"
            print(
                f"{pair:<14} {format_days(verdict.half_life_days)}d "
                f"{format_days(verdict.half_life_ar1_days)}d {diff}  "
                f"{'DIVERGENT' if is_flagged else ''}"
            )

    print("-" * 46)
    print(f"{flagged}/{len(pairs)} pairs with estimator disagreement above {tolerance:.0%}")
    return flagged


def main():
    parser = argparse.ArgumentParser(description="Compare half-life estimators across pairs")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--pairs", nargs="*", default=[], help="Pairs to check (default: watchlist)")
    parser.add_argument("--days", type=int, default=30, help="Window length in days")
    parser.add_argument("--tolerance", type=float, default=0.30, help="Flag above this relative difference")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
        asyncio.run(run_diagnostic(config, args.pairs, args.days, args.tolerance))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
