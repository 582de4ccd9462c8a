import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

# |z| thresholds mapped to a reported confidence level. This is a coarse
# lookup, not a normal CDF; anything below the last threshold reports 50.
CONFIDENCE_THRESHOLDS = ((1.96, 95), (1.645, 90), (1.28, 80), (0.84, 60))
DEFAULT_CONFIDENCE = 50
SIGNIFICANT_CONFIDENCE = 95


@dataclass
class VariantResult:
    name: str
    users: int = 0
    impressions: int = 0
    conversions: int = 0
    revenue: float = 0.0
    engagements: int = 0
    conversion_rate: float = 0.0  # Percentage, 2dp
    average_revenue: float = 0.0

    @property
    def proportion(self) -> float:
        if self.impressions == 0:
            return 0.0
        return self.conversions / self.impressions


@dataclass
class SignificanceResult:
    is_significant: bool
    confidence_level: int
    winner: Optional[str] = None
    control: Optional[str] = None
    variation: Optional[str] = None
    improvement: Optional[float] = None
    z_score: Optional[float] = None


def calculate_conversion_rate(conversions: int, impressions: int) -> float:
    if impressions == 0:
        return 0.0
    return round((conversions / impressions) * 100, 2)


def calculate_average_revenue(revenue: float, users: int) -> float:
    if users == 0:
        return 0.0
    return round(revenue / users, 2)


def calculate_pooled_proportion(control: VariantResult, variation: VariantResult) -> float:
    total_conversions = control.conversions + variation.conversions
    total_impressions = control.impressions + variation.impressions

    if total_impressions == 0:
        return 0.0

    return total_conversions / total_impressions


def calculate_standard_error(control: VariantResult, variation: VariantResult) -> float:
    if control.impressions == 0 or variation.impressions == 0:
        return 0.0

    p_pooled = calculate_pooled_proportion(control, variation)
    variance = p_pooled * (1 - p_pooled) * (1 / control.impressions + 1 / variation.impressions)

    # Conversions are not gated on impressions, so p can exceed 1
    if variance <= 0:
        return 0.0

    return math.sqrt(variance)


def run_proportion_z_test(control: VariantResult, variation: VariantResult) -> float:
    se = calculate_standard_error(control, variation)

    if se == 0:
        return 0.0

    return (variation.proportion - control.proportion) / se


def confidence_level_from_z(z_score: float) -> int:
    abs_z = abs(z_score)
    for threshold, confidence in CONFIDENCE_THRESHOLDS:
        if abs_z >= threshold:
            return confidence
    return DEFAULT_CONFIDENCE


def calculate_significance(results: Sequence[VariantResult]) -> SignificanceResult:
    """
    Compare the two best variants by conversion rate.

    The runner-up is treated as control and the leader as variation, whatever
    the experiment's primary goal is.
    """
    if len(results) < 2:
        return SignificanceResult(is_significant=False, confidence_level=0)

    # sorted() is stable, so ties keep declaration order
    ranked = sorted(results, key=lambda r: r.conversion_rate, reverse=True)
    variation, control = ranked[0], ranked[1]

    z_score = run_proportion_z_test(control, variation)
    confidence_level = confidence_level_from_z(z_score)
    is_significant = confidence_level >= SIGNIFICANT_CONFIDENCE

    p1 = control.proportion
    p2 = variation.proportion

    return SignificanceResult(
        is_significant=is_significant,
        confidence_level=confidence_level,
        winner=variation.name if is_significant else None,
        control=control.name,
        variation=variation.name,
        improvement=((p2 - p1) / p1) * 100 if p1 > 0 else 0.0,
        z_score=round(z_score, 4),
    )


def _winner_by_metric(
    variant_names: List[str],
    metric: Dict[str, float],
    denominator: Optional[Dict[str, float]] = None,
) -> Optional[str]:
    scored = []
    for name in variant_names:
        value = metric.get(name, 0) or 0
        if denominator is not None:
            base = denominator.get(name, 0) or 0
            value = value / base if base > 0 else 0
        scored.append((name, value))

    if not scored:
        return None

    scored.sort(key=lambda item: item[1], reverse=True)
    name, value = scored[0]
    return name if value > 0 else None


def determine_winner(
    variant_names: List[str], primary_goal: str, results: Dict[str, Dict[str, float]]
) -> Optional[str]:
    """Pick a winner from the running totals according to the primary goal."""
    if primary_goal == "conversion":
        return _winner_by_metric(
            variant_names, results.get("conversions", {}), results.get("impressions", {})
        )
    if primary_goal == "revenue":
        return _winner_by_metric(variant_names, results.get("revenue", {}))
    if primary_goal == "engagement":
        return _winner_by_metric(variant_names, results.get("engagements", {}))
    return None
