"""
Deal score: weighted blend of three layers, 0-100.

  Layer 1  property fundamentals  economic occupancy, opex ratio, supply pipeline pressure
  Layer 2  market intelligence    sentiment -10..+10 mapped to 0..100
  Layer 3  deal comp analysis     comp metric composite

Weights are validated at two levels (Layer 1 metric weights, layer weights),
each summing to exactly 100. A layer with no data is left out of the blend
rather than given a neutral value; `data_coverage` reports how much of the
configured weight was actually backed by data.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from models import (
    DealScoreInput,
    DealScoreResult,
    LayerScore,
    MetricScore,
    NormalizedPipelineProject,
    ScoringWeights,
    ScoringWeightsUpdate,
)

logger = logging.getLogger(__name__)

LAYER1_METRIC_FIELDS = ("economic_occupancy_weight", "opex_ratio_weight", "supply_pipeline_weight")
LAYER_FIELDS = ("layer1_weight", "layer2_weight", "layer3_weight")


class WeightValidationError(ValueError):
    """A weight level does not sum to 100."""


@dataclass(frozen=True)
class Benchmark:
    """Band edges scored 0/25/50/75/100 (reversed when lower is better)."""
    bands: Tuple[float, float, float, float, float]
    higher_is_better: bool = True


BENCHMARKS: Dict[str, Benchmark] = {
    "economic_occupancy": Benchmark((70.0, 80.0, 88.0, 93.0, 97.0), higher_is_better=True),
    "opex_ratio": Benchmark((30.0, 38.0, 45.0, 52.0, 65.0), higher_is_better=False),
    "supply_pipeline_pressure": Benchmark((0.0, 2.0, 5.0, 8.0, 15.0), higher_is_better=False),
}

SCORING_PRESETS: Dict[str, Dict[str, int]] = {
    "value_add": {
        "economic_occupancy_weight": 25,
        "opex_ratio_weight": 40,
        "supply_pipeline_weight": 35,
        "layer1_weight": 25,
        "layer2_weight": 15,
        "layer3_weight": 60,
    },
    "cash_flow": {
        "economic_occupancy_weight": 45,
        "opex_ratio_weight": 30,
        "supply_pipeline_weight": 25,
        "layer1_weight": 40,
        "layer2_weight": 25,
        "layer3_weight": 35,
    },
    "core": {
        "economic_occupancy_weight": 40,
        "opex_ratio_weight": 25,
        "supply_pipeline_weight": 35,
        "layer1_weight": 35,
        "layer2_weight": 25,
        "layer3_weight": 40,
    },
    "opportunistic": {
        "economic_occupancy_weight": 20,
        "opex_ratio_weight": 35,
        "supply_pipeline_weight": 45,
        "layer1_weight": 20,
        "layer2_weight": 15,
        "layer3_weight": 65,
    },
}


@dataclass(frozen=True)
class DealScoreConfig:
    benchmarks: Dict[str, Benchmark] = field(default_factory=lambda: dict(BENCHMARKS))
    status_weights: Dict[str, float] = field(default_factory=lambda: {
        "lease_up": 1.0,
        "under_construction": 0.8,
        "proposed": 0.3,
    })
    default_status_weight: float = 0.5
    default_pipeline_score: float = 50.0
    lease_up_occupancy: float = 75.0
    lease_up_discount: float = 0.85
    high_coverage: float = 0.8
    medium_coverage: float = 0.5


DEFAULT_DEAL_SCORE_CONFIG = DealScoreConfig()


# ---- Weights ----


def validate_weights(weights: ScoringWeights) -> ScoringWeights:
    """Raises WeightValidationError naming the actual sum when either level is not 100."""
    metric_sum = sum(getattr(weights, f) for f in LAYER1_METRIC_FIELDS)
    if metric_sum != 100:
        raise WeightValidationError(f"Layer 1 metric weights must sum to 100 (got {metric_sum})")
    layer_sum = sum(getattr(weights, f) for f in LAYER_FIELDS)
    if layer_sum != 100:
        raise WeightValidationError(f"Layer weights must sum to 100 (got {layer_sum})")
    return weights


def apply_weight_update(current: ScoringWeights, update: ScoringWeightsUpdate) -> ScoringWeights:
    """Merge a partial update and validate. Custom weights clear the preset name."""
    changes = update.model_dump(exclude_none=True)
    merged = ScoringWeights(**{**current.model_dump(), **changes, "preset_name": None})
    return validate_weights(merged)


def preset_weights(name: str) -> ScoringWeights:
    if name not in SCORING_PRESETS:
        raise ValueError(f"Unknown preset: {name}. Available: {', '.join(SCORING_PRESETS)}")
    return validate_weights(ScoringWeights(**SCORING_PRESETS[name], preset_name=name))


# ---- Layer 1 ----


def calculate_metric_score(
    value: float,
    metric_name: str,
    config: DealScoreConfig = DEFAULT_DEAL_SCORE_CONFIG,
) -> float:
    """Piecewise-linear interpolation across the benchmark bands, clamped at both ends."""
    bench = config.benchmarks.get(metric_name)
    if bench is None:
        raise KeyError(f"No benchmark for metric {metric_name!r}")
    edges = bench.bands
    scores = [0.0, 25.0, 50.0, 75.0, 100.0]
    if not bench.higher_is_better:
        scores.reverse()

    if value <= edges[0]:
        return scores[0]
    if value >= edges[-1]:
        return scores[-1]
    for i in range(len(edges) - 1):
        if edges[i] <= value <= edges[i + 1]:
            t = (value - edges[i]) / (edges[i + 1] - edges[i])
            return scores[i] + t * (scores[i + 1] - scores[i])
    return 50.0


def _status_key(project: NormalizedPipelineProject) -> str:
    return project.status.value if project.status is not None else ""


def supply_pipeline_pressure(
    projects: Sequence[NormalizedPipelineProject],
    inventory_units: Optional[int],
    weight: int,
    config: DealScoreConfig = DEFAULT_DEAL_SCORE_CONFIG,
) -> Tuple[MetricScore, bool]:
    """
    Status-weighted pipeline units as a percent of submarket inventory.
    Returns (metric, data_backed). Without inventory the default score is used.
    """
    units_by_status: Dict[str, int] = {}
    weighted_units = 0.0
    for p in projects:
        units = p.units or 0
        key = _status_key(p)
        weighted_units += units * config.status_weights.get(key, config.default_status_weight)
        units_by_status[key or "unknown"] = units_by_status.get(key or "unknown", 0) + units

    details = {
        "units_by_status": units_by_status,
        "weighted_pipeline_units": round(weighted_units, 0),
        "total_inventory": inventory_units,
    }
    if not inventory_units:
        return MetricScore(
            score=config.default_pipeline_score,
            weight=weight,
            rationale="No submarket inventory data, using default score",
            details=details,
        ), False

    pct = weighted_units / inventory_units * 100.0
    return MetricScore(
        score=round(calculate_metric_score(pct, "supply_pipeline_pressure", config), 1),
        weight=weight,
        value=round(pct, 2),
        rationale=f"{pct:.1f}% of submarket inventory in pipeline",
        details=details,
    ), True


def _ratio_metric(
    value: Optional[float],
    metric_name: str,
    label: str,
    weight: int,
    config: DealScoreConfig,
) -> MetricScore:
    if value is None:
        return MetricScore(weight=weight, rationale=f"No {label} data available")
    return MetricScore(
        score=round(calculate_metric_score(value, metric_name, config), 1),
        weight=weight,
        value=value,
        rationale=f"{label[0].upper()}{label[1:]} at {value:.1f}%",
    )


def score_layer1(
    inputs: DealScoreInput,
    weights: ScoringWeights,
    config: DealScoreConfig = DEFAULT_DEAL_SCORE_CONFIG,
) -> Tuple[LayerScore, float, List[str]]:
    """Returns (layer, fraction of metric weight backed by data, warnings)."""
    warnings: List[str] = []
    metrics = {
        "economic_occupancy": _ratio_metric(
            inputs.economic_occupancy, "economic_occupancy", "economic occupancy",
            weights.economic_occupancy_weight, config,
        ),
        "opex_ratio": _ratio_metric(
            inputs.opex_ratio, "opex_ratio", "OpEx ratio", weights.opex_ratio_weight, config,
        ),
    }
    if inputs.economic_occupancy is None:
        warnings.append("Missing economic occupancy data")
    if inputs.opex_ratio is None:
        warnings.append("Missing OpEx ratio data")
    pipeline, pipeline_backed = supply_pipeline_pressure(
        inputs.pipeline_projects, inputs.submarket_inventory_units, weights.supply_pipeline_weight, config,
    )
    metrics["supply_pipeline"] = pipeline

    backed_weight = sum(m.weight for k, m in metrics.items() if m.score is not None and k != "supply_pipeline")
    if pipeline_backed:
        backed_weight += pipeline.weight
    if backed_weight == 0:
        return LayerScore(score=None, weight=weights.layer1_weight, metrics=metrics), 0.0, warnings

    used = [m for m in metrics.values() if m.score is not None]
    used_weight = sum(m.weight for m in used)
    score = sum(m.score * m.weight for m in used) / used_weight if used_weight else None

    occ = inputs.economic_occupancy
    if score is not None and occ is not None and occ < config.lease_up_occupancy:
        score *= config.lease_up_discount
        warnings.append(
            f"Lease-up detected (occupancy < {config.lease_up_occupancy:.0f}%), Layer 1 discounted by "
            f"{(1 - config.lease_up_discount) * 100:.0f}%"
        )
    layer = LayerScore(
        score=round(score, 1) if score is not None else None,
        weight=weights.layer1_weight,
        metrics=metrics,
    )
    return layer, backed_weight / 100.0, warnings


# ---- Composition ----


def sentiment_to_layer_score(score: int) -> float:
    return (score + 10) / 20 * 100


def compose_deal_score(
    inputs: DealScoreInput,
    weights: Optional[ScoringWeights] = None,
    config: DealScoreConfig = DEFAULT_DEAL_SCORE_CONFIG,
) -> DealScoreResult:
    weights = validate_weights(weights or ScoringWeights())
    warnings: List[str] = []

    layer1, layer1_coverage, layer1_warnings = score_layer1(inputs, weights, config)
    warnings.extend(layer1_warnings)

    sentiment = inputs.sentiment
    if sentiment is not None and sentiment.score is not None:
        l2 = sentiment_to_layer_score(sentiment.score)
        layer2 = LayerScore(
            score=round(l2, 1),
            weight=weights.layer2_weight,
            metrics={"market_sentiment": MetricScore(
                score=round(l2, 1), weight=100, value=sentiment.score, rationale=sentiment.rationale or "",
            )},
        )
    else:
        layer2 = LayerScore(score=None, weight=weights.layer2_weight)
        warnings.append("No market intelligence data available")

    comp = inputs.comp_analysis
    if comp is not None and comp.score is not None:
        layer3 = LayerScore(score=comp.score, weight=weights.layer3_weight, metrics=dict(comp.metrics))
    else:
        layer3 = LayerScore(
            score=None,
            weight=weights.layer3_weight,
            metrics=dict(comp.metrics) if comp is not None else {},
        )
        warnings.append(comp.rationale if comp is not None and comp.rationale else "No comp data available")

    layers = {
        "property_fundamentals": layer1,
        "market_intelligence": layer2,
        "deal_comp_analysis": layer3,
    }
    used = [layer for layer in layers.values() if layer.score is not None and layer.weight > 0]
    used_weight = sum(layer.weight for layer in used)
    total_score = None
    if used_weight:
        total_score = round(sum(layer.score * layer.weight for layer in used) / used_weight, 1)
        for layer in used:
            layer.weighted_contribution = round(layer.score * layer.weight / used_weight, 1)
    for name, layer in layers.items():
        if layer.score is None and layer.weight > 0:
            warnings.append(f"Layer {name} excluded (no data)")

    coverage = (
        (weights.layer1_weight * layer1_coverage if layer1.score is not None else 0)
        + (weights.layer2_weight if layer2.score is not None else 0)
        + (weights.layer3_weight if layer3.score is not None else 0)
    ) / 100.0
    if coverage >= config.high_coverage:
        confidence = "high"
    elif coverage >= config.medium_coverage:
        confidence = "medium"
    else:
        confidence = "low"

    logger.info("[deal_score] total=%s coverage=%.2f confidence=%s", total_score, coverage, confidence)
    return DealScoreResult(
        total_score=total_score,
        confidence=confidence,
        data_coverage=round(min(1.0, coverage), 4),
        layers=layers,
        warnings=warnings,
    )
