"""
Market sentiment aggregate (deal score Layer 2), -10 to +10.

vote = direction x geo weight x type weight x recency weight x magnitude weight
score = round(sum(votes) / non-neutral signal count x 10), clamped.
"""
from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence, Tuple

from models import SentimentResult, SentimentSignal


@dataclass(frozen=True)
class SentimentConfig:
    type_weights: Dict[str, float] = field(default_factory=lambda: {
        "supply_pipeline": 1.0,
        "construction_starts": 0.85,
        "absorption": 0.75,
        "rent_growth": 0.60,
        "concessions": 0.55,
        "buyer_demand": 0.50,
        "seller_motivation": 0.45,
        "cap_rate_trend": 0.40,
        "debt_market": 0.35,
        "employment": 0.30,
        "population": 0.25,
        "regulatory": 0.20,
        "occupancy": 0.15,
        "other": 0.15,
    })
    default_type_weight: float = 0.15
    direction_values: Dict[str, float] = field(default_factory=lambda: {
        "positive": 1.0,
        "negative": -1.0,
        "neutral": 0.0,
        "mixed": 0.0,
    })
    magnitude_weights: Dict[str, float] = field(default_factory=lambda: {
        "strong": 1.0,
        "moderate": 0.6,
        "slight": 0.3,
    })
    default_magnitude_weight: float = 0.6
    geo_submarket: float = 1.0
    geo_metro: float = 0.5
    geo_none: float = 0.15
    # (age in months below which, weight), checked in order
    recency_steps: Tuple[Tuple[float, float], ...] = ((3, 1.0), (6, 0.75), (12, 0.5))
    stale_recency_weight: float = 0.25
    undated_recency_weight: float = 0.5
    rationale_categories: int = 4


DEFAULT_SENTIMENT_CONFIG = SentimentConfig()

NO_TREND_RATIONALE = "All signals are neutral, no directional trend detected"

_METRO_SUFFIX_RE = re.compile(r"(,?\s+msa|,\s*[a-z]{2})$")
_YEAR_QUARTER_RE = re.compile(r"^(\d{4})\s*-?\s*q([1-4])$", re.I)
_QUARTER_YEAR_RE = re.compile(r"^q([1-4])\s+(\d{4})$", re.I)


def normalize_metro(metro: Optional[str]) -> str:
    """Lowercase and drop an MSA or two-letter state suffix: "Atlanta, GA" -> "atlanta"."""
    if not metro:
        return ""
    return _METRO_SUFFIX_RE.sub("", metro.lower().strip()).strip()


def metro_matches(signal_metro: Optional[str], property_metro: Optional[str]) -> bool:
    s, p = normalize_metro(signal_metro), normalize_metro(property_metro)
    if not s or not p:
        return False
    return s in p or p in s


def geo_weight(
    signal: SentimentSignal,
    metro: Optional[str],
    submarket: Optional[str],
    config: SentimentConfig = DEFAULT_SENTIMENT_CONFIG,
) -> float:
    if submarket and signal.geography_submarket:
        if signal.geography_submarket.strip().lower() == submarket.strip().lower():
            return config.geo_submarket
    if metro_matches(signal.geography_metro, metro):
        return config.geo_metro
    return config.geo_none


def parse_publication_date(value: Optional[str]) -> Optional[date]:
    """Accepts "2025-Q1", "Q1 2025", "2025-03", "2025" and ISO dates."""
    if not value:
        return None
    text = value.strip()
    m = _YEAR_QUARTER_RE.match(text)
    if m:
        return date(int(m.group(1)), (int(m.group(2)) - 1) * 3 + 1, 1)
    m = _QUARTER_YEAR_RE.match(text)
    if m:
        return date(int(m.group(2)), (int(m.group(1)) - 1) * 3 + 1, 1)
    for fmt in ("%Y-%m-%d", "%Y-%m"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    if re.fullmatch(r"\d{4}", text):
        return date(int(text), 1, 1)
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def recency_weight(
    publication_date: Optional[str],
    today: date,
    config: SentimentConfig = DEFAULT_SENTIMENT_CONFIG,
) -> float:
    parsed = parse_publication_date(publication_date)
    if parsed is None:
        return config.undated_recency_weight
    months_old = (today - parsed).days / 30.0
    for limit, weight in config.recency_steps:
        if months_old < limit:
            return weight
    return config.stale_recency_weight


@dataclass
class WeightedVote:
    signal: SentimentSignal
    vote: float
    geo_weight: float
    type_weight: float
    recency_weight: float
    magnitude_weight: float


def weigh_signal(
    signal: SentimentSignal,
    metro: Optional[str],
    submarket: Optional[str],
    today: date,
    config: SentimentConfig = DEFAULT_SENTIMENT_CONFIG,
) -> WeightedVote:
    geo = geo_weight(signal, metro, submarket, config)
    typ = config.type_weights.get(signal.signal_type, config.default_type_weight)
    rec = recency_weight(signal.publication_date, today, config)
    mag = config.magnitude_weights.get(signal.magnitude, config.default_magnitude_weight)
    direction = config.direction_values.get(signal.direction, 0.0)
    return WeightedVote(
        signal=signal,
        vote=direction * geo * typ * rec * mag,
        geo_weight=geo,
        type_weight=typ,
        recency_weight=rec,
        magnitude_weight=mag,
    )


def _source_key(signal: SentimentSignal) -> Optional[str]:
    if signal.document_id is not None:
        return f"doc:{signal.document_id}"
    return signal.source_label


def _sources(signals: Sequence[SentimentSignal]) -> Tuple[List[str], Optional[str], Optional[date]]:
    """(source names, name of the most recent source, most recent publication date)."""
    names: Dict[str, str] = {}
    most_recent: Optional[date] = None
    most_recent_name: Optional[str] = None
    for s in signals:
        key = _source_key(s)
        if key is None:
            continue
        name = s.source_label or key
        names.setdefault(key, name)
        parsed = parse_publication_date(s.publication_date)
        if parsed and (most_recent is None or parsed > most_recent):
            most_recent = parsed
            most_recent_name = name
    listed = list(dict.fromkeys(names.values()))
    if most_recent_name is None and listed:
        most_recent_name = listed[0]
    return listed, most_recent_name, most_recent


def build_rationale(
    votes: Sequence[WeightedVote],
    score: int,
    metro: Optional[str],
    document_count: int,
    most_recent_source: Optional[str],
    config: SentimentConfig = DEFAULT_SENTIMENT_CONFIG,
) -> str:
    """Names the signal categories with the largest net contribution, strongest first."""
    by_type: Dict[str, List[WeightedVote]] = defaultdict(list)
    for v in votes:
        if v.vote != 0:
            by_type[v.signal.signal_type].append(v)

    impacts = []
    for signal_type, type_votes in by_type.items():
        total = sum(v.vote for v in type_votes)
        strongest = max(type_votes, key=lambda v: abs(v.vote))
        impacts.append((abs(total), total, signal_type, strongest.signal))
    impacts.sort(key=lambda i: i[0], reverse=True)

    parts = []
    for _, total, signal_type, strongest in impacts[:config.rationale_categories]:
        label = signal_type.replace("_", " ").title()
        if strongest.quantitative_value:
            parts.append(f"{label} ({strongest.quantitative_value})")
        else:
            parts.append(f"{label} ({'positive' if total > 0 else 'negative'})")

    sign = "+" if score > 0 else ""
    summary = ", ".join(parts) if parts else "mixed signals"
    sources = f"Based on {document_count} document{'s' if document_count != 1 else ''}"
    if most_recent_source:
        sources += f", most recent: {most_recent_source}"
    return f"{metro or 'Market'} ({sign}{score}): {summary}. {sources}."


def aggregate_sentiment(
    signals: Sequence[SentimentSignal],
    metro: Optional[str] = None,
    submarket: Optional[str] = None,
    today: Optional[date] = None,
    config: SentimentConfig = DEFAULT_SENTIMENT_CONFIG,
) -> SentimentResult:
    """
    No signals -> score None. Only neutral/mixed signals -> score 0 with the
    no-trend rationale. Otherwise the averaged non-neutral vote scaled by 10.
    """
    if not signals:
        return SentimentResult(score=None, rationale=None, signal_count=0)

    today = today or date.today()
    votes = [weigh_signal(s, metro, submarket, today, config) for s in signals]
    sources, most_recent_name, most_recent = _sources(signals)
    staleness = (today - most_recent).days if most_recent else 0
    non_neutral = sum(1 for s in signals if config.direction_values.get(s.direction, 0.0) != 0.0)

    if non_neutral == 0:
        return SentimentResult(
            score=0,
            rationale=NO_TREND_RATIONALE,
            signal_count=len(signals),
            sources=sources,
            staleness_days=staleness,
        )

    raw = sum(v.vote for v in votes) / non_neutral
    score = max(-10, min(10, round(raw * 10)))
    return SentimentResult(
        score=score,
        rationale=build_rationale(votes, score, metro, len(sources), most_recent_name, config),
        signal_count=len(signals),
        sources=sources,
        staleness_days=staleness,
    )
