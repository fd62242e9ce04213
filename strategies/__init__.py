"""
Pair Trading Engine - Strategies Module
=======================================

Pair fitness evaluation and entry validation.

NOTE: Strategies contain the logic, agents orchestrate execution.
"""

from strategies.pair_fitness_strategy import (
    FitnessVerdict,
    PairEvaluation,
    PairFitnessEvaluator,
    EntryValidator,
    EntryValidation,
    EntryRejection,
)

__all__ = [
    "FitnessVerdict",
    "PairEvaluation",
    "PairFitnessEvaluator",
    "EntryValidator",
    "EntryValidation",
    "EntryRejection",
]
