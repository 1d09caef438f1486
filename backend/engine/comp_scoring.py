"""
Comp-based metrics (deal score Layer 3).

Cap rate spread, price per unit deviation and vintage against the selected
comps, each 0-100 with a rationale, combined with fixed relative weights.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from engine.comp_relevance import DEFAULT_RELEVANCE_CONFIG, RelevanceConfig, effective_comp_year, select_comps
from models import CompAnalysisResult, MetricScore, NormalizedComp, ScoredComp, SubjectProperty


@dataclass(frozen=True)
class CompScoringConfig:
    metric_weights: Dict[str, int] = field(default_factory=lambda: {
        "cap_rate": 35,
        "price_per_unit": 40,
        "vintage": 25,
    })
    min_comps: int = 3
    min_cap_rate_comps: int = 3
    points_per_100bps: float = 40.0
    ppu_points_per_20pct: float = 40.0
    points_per_year: float = 6.0
    cap_in_line_bps: float = 25.0
    ppu_in_line_pct: float = 0.05
    high_confidence_weight: int = 80
    medium_confidence_weight: int = 50


DEFAULT_COMP_SCORING_CONFIG = CompScoringConfig()


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


def _weighted_average(comps: Sequence[ScoredComp], attr: str) -> Optional[float]:
    total_weight = 0.0
    weighted_sum = 0.0
    for c in comps:
        value = getattr(c.comp, attr)
        if value is not None and value > 0:
            weighted_sum += value * c.relevance
            total_weight += c.relevance
    if total_weight == 0:
        return None
    return weighted_sum / total_weight


def score_cap_rate(
    subject_cap: Optional[float],
    comps: Sequence[ScoredComp],
    config: CompScoringConfig = DEFAULT_COMP_SCORING_CONFIG,
) -> MetricScore:
    """Wider cap than the comps is a more favorable entry. +100bps -> 90, -100bps -> 10."""
    weight = config.metric_weights["cap_rate"]
    if not subject_cap:
        return MetricScore(weight=weight, rationale="Insufficient cap rate data")
    with_cap = [c for c in comps if c.comp.cap_rate is not None and c.comp.cap_rate > 0]
    if len(with_cap) < config.min_cap_rate_comps:
        return MetricScore(weight=weight, rationale=f"Fewer than {config.min_cap_rate_comps} comps with cap rate")

    avg_cap = _weighted_average(with_cap, "cap_rate")
    spread_bps = (subject_cap - avg_cap) * 10000
    score = _clamp(50.0 + spread_bps / 100.0 * config.points_per_100bps)

    if spread_bps > config.cap_in_line_bps:
        rationale = f"Cap rate {spread_bps:.0f}bps wider than comps, favorable entry"
    elif spread_bps < -config.cap_in_line_bps:
        rationale = f"Cap rate {abs(spread_bps):.0f}bps tighter than comps, premium pricing"
    else:
        rationale = f"Cap rate in line with comps (±{abs(spread_bps):.0f}bps)"
    return MetricScore(
        score=round(score, 1),
        weight=weight,
        value=subject_cap,
        rationale=rationale,
        details={
            "spread_bps": round(spread_bps, 1),
            "weighted_avg_cap": round(avg_cap, 4),
            "comps_with_cap_rate": len(with_cap),
        },
    )


def score_price_per_unit(
    subject_ppu: Optional[float],
    comps: Sequence[ScoredComp],
    config: CompScoringConfig = DEFAULT_COMP_SCORING_CONFIG,
) -> MetricScore:
    """Lower price than the comps scores higher. -20% -> 90, +20% -> 10."""
    weight = config.metric_weights["price_per_unit"]
    if not subject_ppu:
        return MetricScore(weight=weight, rationale="No subject price per unit data")
    avg_ppu = _weighted_average(comps, "price_per_unit")
    if avg_ppu is None:
        return MetricScore(weight=weight, value=subject_ppu, rationale="No comps with price per unit data")

    pct_diff = (subject_ppu - avg_ppu) / avg_ppu
    score = _clamp(50.0 - (pct_diff / 0.20) * config.ppu_points_per_20pct)

    if pct_diff < -config.ppu_in_line_pct:
        rationale = f"Price {abs(pct_diff) * 100:.1f}% below comp average, potential value"
    elif pct_diff > config.ppu_in_line_pct:
        rationale = f"Price {pct_diff * 100:.1f}% above comp average, premium"
    else:
        rationale = f"Price in line with comps (±{abs(pct_diff) * 100:.1f}%)"
    return MetricScore(
        score=round(score, 1),
        weight=weight,
        value=subject_ppu,
        rationale=rationale,
        details={"pct_diff": round(pct_diff, 4), "weighted_avg_ppu": round(avg_ppu, 0)},
    )


def median_year(years: List[int]) -> int:
    years = sorted(years)
    mid = len(years) // 2
    if len(years) % 2 == 1:
        return years[mid]
    return (years[mid - 1] + years[mid]) // 2


def score_vintage(
    subject_year: Optional[int],
    comps: Sequence[ScoredComp],
    config: CompScoringConfig = DEFAULT_COMP_SCORING_CONFIG,
) -> MetricScore:
    """Newer than the comp median scores higher, 6 points per year."""
    weight = config.metric_weights["vintage"]
    if not subject_year:
        return MetricScore(weight=weight, rationale="No subject vintage data")
    years = [y for y in (effective_comp_year(subject_year, c.comp) for c in comps) if y]
    if not years:
        return MetricScore(weight=weight, value=subject_year, rationale="No comps with vintage data")

    comp_median = median_year(years)
    years_diff = subject_year - comp_median
    score = _clamp(50.0 + years_diff * config.points_per_year)

    if years_diff > 0:
        rationale = f"Subject is {years_diff} years newer than comp median"
    elif years_diff < 0:
        rationale = f"Subject is {abs(years_diff)} years older than comp median"
    else:
        rationale = "Subject vintage matches comp median"
    return MetricScore(
        score=round(score, 1),
        weight=weight,
        value=subject_year,
        rationale=rationale,
        details={"years_diff": years_diff, "comp_median_vintage": comp_median},
    )


def confidence_for_weight(weight_used: float, config: CompScoringConfig = DEFAULT_COMP_SCORING_CONFIG) -> str:
    if weight_used >= config.high_confidence_weight:
        return "high"
    if weight_used >= config.medium_confidence_weight:
        return "medium"
    return "low"


def score_selected_comps(
    subject: SubjectProperty,
    selected: Sequence[ScoredComp],
    config: CompScoringConfig = DEFAULT_COMP_SCORING_CONFIG,
) -> CompAnalysisResult:
    if len(selected) < config.min_comps:
        return CompAnalysisResult(
            score=None,
            confidence="low",
            rationale=f"Only {len(selected)} comps found, minimum {config.min_comps} required",
            comps=list(selected),
        )

    metrics = {
        "cap_rate": score_cap_rate(subject.cap_rate, selected, config),
        "price_per_unit": score_price_per_unit(subject.price_per_unit, selected, config),
        "vintage": score_vintage(subject.year_built, selected, config),
    }
    weight_used = 0
    weighted_sum = 0.0
    for metric in metrics.values():
        if metric.score is not None:
            weighted_sum += metric.score * metric.weight
            weight_used += metric.weight

    composite = round(weighted_sum / weight_used, 1) if weight_used else None
    total_weight = sum(config.metric_weights.values()) or 1
    return CompAnalysisResult(
        score=composite,
        confidence=confidence_for_weight(weight_used * 100 / total_weight, config) if weight_used else "low",
        rationale=f"Based on {len(selected)} comparable sales",
        comps=list(selected),
        metrics=metrics,
    )


def analyze_comps(
    subject: SubjectProperty,
    comps: Sequence[NormalizedComp],
    relevance_config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG,
    config: CompScoringConfig = DEFAULT_COMP_SCORING_CONFIG,
) -> CompAnalysisResult:
    """Select the comp set for `subject` and score it."""
    if not comps:
        return CompAnalysisResult(score=None, confidence="low", rationale="No sales comps in data bank for this market")
    selected = select_comps(subject, comps, config=relevance_config)
    return score_selected_comps(subject, selected, config)
