from typing import Dict, List

from app.models.experiment import Experiment
from app.services.experiments.stats import (
    VariantResult,
    calculate_average_revenue,
    calculate_conversion_rate,
)
from app.services.experiments.store import ExperimentStore


def summarize_variants(
    variant_names: List[str], totals: Dict[str, Dict[str, float]]
) -> List[VariantResult]:
    """One result per declared variant, in declaration order, zeros where nobody was assigned."""
    results = []
    for name in variant_names:
        row = totals.get(name, {})
        users = int(row.get("users", 0) or 0)
        impressions = int(row.get("impressions", 0) or 0)
        conversions = int(row.get("conversions", 0) or 0)
        revenue = float(row.get("revenue", 0) or 0)
        engagements = int(row.get("engagements", 0) or 0)

        results.append(
            VariantResult(
                name=name,
                users=users,
                impressions=impressions,
                conversions=conversions,
                revenue=revenue,
                engagements=engagements,
                conversion_rate=calculate_conversion_rate(conversions, impressions),
                average_revenue=calculate_average_revenue(revenue, users),
            )
        )
    return results


class ResultsAggregator:
    """Rolls assignment rows up into per-variant totals and rates."""

    def __init__(self, store: ExperimentStore):
        self.store = store

    async def compute_results(self, experiment: Experiment) -> List[VariantResult]:
        totals = await self.store.aggregate_assignments(experiment.id)
        return summarize_variants(experiment.variant_names, totals)
