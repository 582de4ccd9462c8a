"""
Experimentation (A/B testing) services.

This module provides:
- Experiment lifecycle (create, update, start, pause, complete, delete)
- Sticky weighted-random variant assignment
- Event tracking against assignments and experiment totals
- Per-variant results and a two-proportion significance test
"""

from app.services.experiments.assignment import AssignmentEngine, pick_variant
from app.services.experiments.results import ResultsAggregator, summarize_variants
from app.services.experiments.service import ExperimentService, validate_variants
from app.services.experiments.stats import (
    VariantResult,
    calculate_significance,
    confidence_level_from_z,
    determine_winner,
    run_proportion_z_test,
)
from app.services.experiments.tracking import EventTracker

__all__ = [
    "AssignmentEngine",
    "EventTracker",
    "ExperimentService",
    "ResultsAggregator",
    "VariantResult",
    "calculate_significance",
    "confidence_level_from_z",
    "determine_winner",
    "pick_variant",
    "run_proportion_z_test",
    "summarize_variants",
    "validate_variants",
]
