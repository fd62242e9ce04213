#!/usr/bin/env python3
"""
Pair Trading Engine - Command Line
==================================

Entry point for the pair fitness and mean-reversion signal engine.

Commands:
    scan        discover pairs and replace the watchlist
    monitor     run one monitoring cycle (entries, exits, status report)
    analyze     fresh analysis of one pair
    enter       open a trade for a pair at current prices
    exit        close a live trade at current prices
    history     closed trades and statistics
    trades      live trades
    blacklist   add / remove / list excluded symbols
    run         scheduler: monitor and scan on their intervals

Exit code 0 on success, 1 on error (message on stderr).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import yaml

from agents.monitor_agent import MonitorAgent, PairAnalysis, format_entry, format_exit, format_status_report
from agents.scanner_agent import ScannerAgent, format_scan_summary
from core.config_validator import validate_config_at_startup
from core.exit_rules import create_exit_rule_manager
from core.logging_config import configure_logging
from core.notifications import NotificationKind, create_notifier
from core.regime_detector import create_regime_detector
from core.scheduler import CycleScheduler, create_scheduler
from core.state_persistence import create_state_persistence
from data.market_data import create_data_source
from strategies.pair_fitness_strategy import create_pair_fitness_evaluator


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


def load_config(config_path: str) -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_file, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_file}")
    return config


class PairTradingApp:
    """
    Wires components from config and runs commands.

    Owns the data source session; use as an async context manager.
    """

    def __init__(self, config: dict[str, Any]):
        self._config = config

        self.persistence = create_state_persistence(config)
        self.notifier = create_notifier(config.get("notifications", {}))
        self.data_source = create_data_source(config)
        self.evaluator = create_pair_fitness_evaluator(config)

        self.scanner = ScannerAgent(
            config, self.data_source, self.persistence, self.notifier, self.evaluator
        )
        self.monitor = MonitorAgent(
            config,
            self.data_source,
            self.persistence,
            self.notifier,
            self.evaluator,
            create_exit_rule_manager(config),
            create_regime_detector(config),
        )

    async def __aenter__(self) -> PairTradingApp:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.data_source.close()

    # =========================================================================
    # COMMANDS
    # =========================================================================

    async def scan(self, args: argparse.Namespace) -> Any:
        result = await self.scanner.run_scan()
        return result.to_dict() if args.json else format_scan_summary(result)

    async def monitor_once(self, args: argparse.Namespace) -> Any:
        report = await self.monitor.run_cycle()
        if args.json:
            return report.to_dict()
        return format_status_report(report, self.persistence.history_stats())

    async def analyze(self, args: argparse.Namespace) -> Any:
        analysis = await self.monitor.analyze_pair(args.pair)
        return analysis.to_dict() if args.json else format_analysis(analysis)

    async def enter_position(self, args: argparse.Namespace) -> Any:
        trade = await self.monitor.enter_trade(args.pair)
        return trade.to_dict() if args.json else format_entry(trade)

    async def exit_position(self, args: argparse.Namespace) -> Any:
        record = await self.monitor.exit_trade(args.pair)
        return record.to_dict() if args.json else format_exit(record)

    async def history(self, args: argparse.Namespace) -> Any:
        records = self.persistence.load_history()
        stats = self.persistence.history_stats()
        if args.limit:
            records = records[-args.limit:]
        if args.json:
            return {"records": [r.to_dict() for r in records], "stats": stats}

        lines = []
        for r in records:
            lines.append(
                f"{r.exit_time.strftime('%Y-%m-%d %H:%M')} {r.pair:<14} {r.trade.direction:<5} "
                f"{r.exit_reason:<14} {r.total_pnl_pct:+7.2f}% {r.days_in_trade:5.1f}d"
            )
        lines.append(
            f"Total: {stats['total_trades']} trades, {stats['wins']}W/{stats['losses']}L, "
            f"win rate {stats['win_rate']:.0%}, P&L {stats['total_pnl_pct']:+.2f}% "
            f"(avg {stats['avg_pnl_pct']:+.2f}%)"
        )
        return "\n".join(lines)

    async def trades(self, args: argparse.Namespace) -> Any:
        snapshot = self.persistence.load_trades()
        if args.json:
            return snapshot.to_dict()
        if not snapshot.trades:
            return "No live trades"
        lines = [f"Live trades (book v{snapshot.version}):"]
        for t in snapshot.trades:
            pnl = t.current_pnl_pct if t.current_pnl_pct is not None else 0.0
            lines.append(
                f"  {t.pair} {t.direction} since {t.entry_time.strftime('%Y-%m-%d %H:%M')} "
                f"| L {t.long_asset} {t.long_weight:.0%} / S {t.short_asset} {t.short_weight:.0%} "
                f"| z {t.entry_z_score:+.2f} | P&L {pnl:+.2f}%"
            )
        return "\n".join(lines)

    async def blacklist(self, args: argparse.Namespace) -> Any:
        if args.action == "add":
            if not self.persistence.add_to_blacklist(args.symbol):
                raise RuntimeError("Failed to save blacklist")
        elif args.action == "remove":
            if not self.persistence.remove_from_blacklist(args.symbol):
                raise RuntimeError("Failed to save blacklist")

        symbols = self.persistence.load_blacklist()
        if args.json:
            return {"symbols": symbols}
        return "Blacklist: " + (", ".join(symbols) if symbols else "(empty)")

    async def run(self, args: argparse.Namespace) -> Any:
        """Scheduler loop until SIGINT/SIGTERM."""
        sched_config = self._config.get("scheduler", {})
        scheduler = create_scheduler(self._config)
        scheduler.add_job(
            "monitor",
            self.monitor.run_cycle,
            sched_config.get("monitor_interval_minutes", 15) * 60,
        )
        scheduler.add_job(
            "scan",
            self.scanner.run_scan,
            sched_config.get("scan_interval_hours", 12) * 3600,
            run_on_start=sched_config.get("scan_on_start", True),
        )
        setup_signal_handlers(scheduler)

        self.notifier.notify("Pair engine started", kind=NotificationKind.SYSTEM)
        await scheduler.run()
        self.notifier.notify("Pair engine stopped", kind=NotificationKind.SYSTEM)
        return scheduler.get_status() if args.json else "Scheduler stopped"


def format_analysis(analysis: PairAnalysis) -> str:
    """Text form of a single-pair analysis."""
    verdict = analysis.evaluation.verdict
    profile = analysis.evaluation.profile
    validation = analysis.validation

    def days(value: float) -> str:
        return f"{value:.1f}d" if value != float("inf") else "none"

    lines = [
        f"PAIR {verdict.pair} ({verdict.n_observations} obs)",
        f"Correlation {verdict.correlation:.3f}  beta {verdict.beta:.3f}",
        f"Z {verdict.current_z_score:+.2f}  spread {verdict.current_spread:.4f} "
        f"(mean {verdict.mean_spread:.4f}, std {verdict.std_dev_spread:.4f})",
        f"Half-life {days(verdict.half_life_days)} (AR(1) {days(verdict.half_life_ar1_days)})"
        + ("  [estimators disagree]" if verdict.half_life_flagged else ""),
        f"Cointegrated {verdict.is_cointegrated}  reversion rate {verdict.mean_reversion_rate:.2f}  "
        f"ADF {verdict.adf_stat:.2f}",
        f"Hurst {analysis.hurst.hurst:.2f} ({analysis.hurst.classification.value})"
        if analysis.hurst.is_valid else "Hurst n/a",
        "",
        "Divergence ladder:",
    ]
    for stats in profile.thresholds:
        marker = " <- entry" if stats.threshold == profile.optimal_entry_threshold else ""
        lines.append(
            f"  {stats.threshold:.1f}: {stats.reverted_count}/{stats.event_count} reverted "
            f"({stats.reversion_rate:.0%}){marker}"
        )
    lines.append(f"Max |z| {profile.max_historical_abs_z:.2f}")
    lines.append("")
    lines.append(
        f"Entry check: {'OK' if validation.valid else validation.reason.value}"
        f" (structural coint {validation.structural_cointegrated}, "
        f"short z {validation.short_z_score if validation.short_z_score is not None else 'n/a'})"
    )
    return "\n".join(lines)


def setup_signal_handlers(scheduler: CycleScheduler) -> None:
    """Set up signal handlers for graceful shutdown."""
    def handle_signal(sig, frame):
        logger.info(f"Received signal {sig}")
        scheduler.request_shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


COMMANDS = {
    "scan": PairTradingApp.scan,
    "monitor": PairTradingApp.monitor_once,
    "analyze": PairTradingApp.analyze,
    "enter": PairTradingApp.enter_position,
    "exit": PairTradingApp.exit_position,
    "history": PairTradingApp.history,
    "trades": PairTradingApp.trades,
    "blacklist": PairTradingApp.blacklist,
    "run": PairTradingApp.run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pair-engine",
        description="Pair fitness and mean-reversion signal engine",
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.yaml")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    parser.add_argument("--log-level", default=None, help="Override logging.level")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("scan", help="Discover pairs and replace the watchlist")
    sub.add_parser("monitor", help="Run one monitoring cycle")

    for name, help_text in (
        ("analyze", "Fresh analysis of one pair"),
        ("enter", "Open a trade at current prices"),
        ("exit", "Close a live trade at current prices"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("pair", help="ASSET1/ASSET2, e.g. ETH/SOL")

    history = sub.add_parser("history", help="Closed trades and statistics")
    history.add_argument("--limit", type=int, default=0, help="Only the last N records")

    sub.add_parser("trades", help="Live trades")

    blacklist = sub.add_parser("blacklist", help="Manage excluded symbols")
    blacklist.add_argument("action", choices=["add", "remove", "list"])
    blacklist.add_argument("symbol", nargs="?")

    sub.add_parser("run", help="Run monitor and scan on their schedule")
    return parser


async def run_command(config: dict[str, Any], args: argparse.Namespace) -> Any:
    async with PairTradingApp(config) as app:
        return await COMMANDS[args.command](app, args)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "blacklist" and args.action != "list" and not args.symbol:
        parser.error(f"blacklist {args.action} needs a symbol")

    try:
        config = load_config(args.config)
        logging_config = dict(config.get("logging", {}))
        if args.log_level:
            logging_config["level"] = args.log_level
        configure_logging(logging_config)

        config = validate_config_at_startup(config, strict=True)
        output = asyncio.run(run_command(config, args))
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(output, indent=2, default=str))
    elif output:
        print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
