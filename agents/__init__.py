"""
Pair Trading Engine - Agents Module
===================================

Cycle orchestration with strict separation of responsibilities:
- ScannerAgent: pair discovery, watchlist replacement
- MonitorAgent: trade lifecycle for watchlist pairs and live trades
"""

from agents.scanner_agent import ScannerAgent
from agents.monitor_agent import MonitorAgent, MonitorReport

__all__ = [
    "ScannerAgent",
    "MonitorAgent",
    "MonitorReport",
]
