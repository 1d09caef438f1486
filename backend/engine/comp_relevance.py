"""
Comparable-sale relevance.

relevance(subject, comp) = geo x type x vintage x size, each axis in [0, 1].
A comp that fails badly on one axis is pulled toward zero regardless of the others.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from models import NormalizedComp, ScoredComp, SubjectProperty


@dataclass(frozen=True)
class RelevanceConfig:
    type_groups: Dict[str, Tuple[str, ...]] = field(default_factory=lambda: {
        "garden": ("garden", "low-rise"),
        "midrise": ("mid-rise", "midrise"),
        "highrise": ("high-rise", "highrise", "tower"),
        "wrap": ("wrap", "podium"),
        "townhome": ("townhome", "townhouse"),
        "senior": ("senior", "age-restricted", "55+"),
        "student": ("student",),
    })
    # Not symmetric: townhome lists garden, garden lists townhome and wrap
    adjacent_groups: Dict[str, Tuple[str, ...]] = field(default_factory=lambda: {
        "garden": ("wrap", "townhome"),
        "midrise": ("wrap", "highrise"),
        "highrise": ("midrise",),
        "wrap": ("garden", "midrise"),
        "townhome": ("garden",),
        "senior": (),
        "student": (),
    })
    # new / recent / 2000s / 1990s / 1980s / pre-1980
    vintage_brackets: Tuple[Tuple[int, int], ...] = (
        (2020, 9999),
        (2010, 2019),
        (2000, 2009),
        (1990, 1999),
        (1980, 1989),
        (0, 1979),
    )
    bracket_distance_scores: Tuple[float, ...] = (1.0, 0.7, 0.4, 0.15)
    geo_exact: float = 1.0
    geo_partial: float = 0.90
    geo_county: float = 0.85
    geo_metro: float = 0.70
    geo_fallback: float = 0.50
    type_identical: float = 1.0
    type_same_group: float = 0.8
    type_adjacent: float = 0.5
    type_other: float = 0.2
    unknown: float = 0.5
    # (max fractional unit-count difference, score), checked in order
    size_bands: Tuple[Tuple[float, float], ...] = ((0.25, 1.0), (0.50, 0.75), (0.75, 0.5))
    size_floor: float = 0.25
    thresholds: Tuple[float, ...] = (0.25, 0.10, 0.03)
    min_comps: int = 3
    max_comps: int = 15


DEFAULT_RELEVANCE_CONFIG = RelevanceConfig()


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def type_group(property_type: Optional[str], config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> Optional[str]:
    pt = _norm(property_type)
    if not pt:
        return None
    for group, names in config.type_groups.items():
        if pt in names:
            return group
    for group in config.type_groups:
        if group in pt:
            return group
    return None


def vintage_bracket(year: Optional[int], config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> Optional[int]:
    if not year:
        return None
    for idx, (low, high) in enumerate(config.vintage_brackets):
        if low <= year <= high:
            return idx
    return len(config.vintage_brackets) - 1


def effective_comp_year(subject_year: Optional[int], comp: NormalizedComp) -> Optional[int]:
    """Build year, or renovation year when that is closer to the subject's vintage."""
    year = comp.year_built
    if comp.year_renovated and subject_year:
        if year is None or abs(comp.year_renovated - subject_year) < abs(year - subject_year):
            year = comp.year_renovated
    return year


def geo_score(subject: SubjectProperty, comp: NormalizedComp, config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> float:
    """
    Highest matching tier wins. Comps often carry their location only in
    `market`, so the subject submarket is compared against both market and submarket.
    """
    s_sub, s_county, s_metro = _norm(subject.submarket), _norm(subject.county), _norm(subject.metro)
    c_market, c_sub = _norm(comp.market), _norm(comp.submarket)
    c_county, c_metro = _norm(comp.county), _norm(comp.metro)

    if s_sub and s_sub in (c_market, c_sub):
        return config.geo_exact
    if s_sub:
        for c in (c_market, c_sub):
            if c and (s_sub in c or c in s_sub):
                return config.geo_partial
    if s_county and s_county == c_county:
        return config.geo_county
    if s_metro and ((c_metro and s_metro == c_metro) or (c_market and s_metro in c_market)):
        return config.geo_metro
    return config.geo_fallback


def type_score(subject: SubjectProperty, comp: NormalizedComp, config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> float:
    s_type, c_type = _norm(subject.property_type), _norm(comp.property_type)
    if not s_type or not c_type:
        return config.unknown
    if s_type == c_type:
        return config.type_identical
    s_group, c_group = type_group(s_type, config), type_group(c_type, config)
    if s_group and c_group:
        if s_group == c_group:
            return config.type_same_group
        if c_group in config.adjacent_groups.get(s_group, ()):
            return config.type_adjacent
    return config.type_other


def vintage_score(subject: SubjectProperty, comp: NormalizedComp, config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> float:
    s_bracket = vintage_bracket(subject.year_built, config)
    c_bracket = vintage_bracket(effective_comp_year(subject.year_built, comp), config)
    if s_bracket is None or c_bracket is None:
        return config.unknown
    diff = abs(s_bracket - c_bracket)
    scores = config.bracket_distance_scores
    return scores[min(diff, len(scores) - 1)]


def size_score(subject: SubjectProperty, comp: NormalizedComp, config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> float:
    if not subject.total_units or not comp.units:
        return config.unknown
    pct_diff = abs(comp.units / subject.total_units - 1.0)
    for limit, score in config.size_bands:
        if pct_diff <= limit:
            return score
    return config.size_floor


def score_comp(subject: SubjectProperty, comp: NormalizedComp, config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> ScoredComp:
    geo = geo_score(subject, comp, config)
    typ = type_score(subject, comp, config)
    vin = vintage_score(subject, comp, config)
    siz = size_score(subject, comp, config)
    return ScoredComp(
        comp=comp,
        relevance=geo * typ * vin * siz,
        geo_score=geo,
        type_score=typ,
        vintage_score=vin,
        size_score=siz,
    )


def relevance(subject: SubjectProperty, comp: NormalizedComp, config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG) -> float:
    return score_comp(subject, comp, config).relevance


def rank_comps(
    subject: SubjectProperty,
    comps: Iterable[NormalizedComp],
    config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG,
) -> List[ScoredComp]:
    scored = [score_comp(subject, c, config) for c in comps]
    scored.sort(key=lambda s: s.relevance, reverse=True)
    return scored


def select_comps(
    subject: SubjectProperty,
    comps: Sequence[NormalizedComp],
    thresholds: Optional[Sequence[float]] = None,
    min_comps: Optional[int] = None,
    max_comps: Optional[int] = None,
    config: RelevanceConfig = DEFAULT_RELEVANCE_CONFIG,
) -> List[ScoredComp]:
    """
    Rank by relevance, then relax the threshold tier by tier until at least
    `min_comps` clear it; capped at `max_comps`. When no tier reaches the
    minimum, the top `max_comps` are returned regardless of relevance.
    """
    thresholds = config.thresholds if thresholds is None else tuple(thresholds)
    min_comps = config.min_comps if min_comps is None else min_comps
    max_comps = config.max_comps if max_comps is None else max_comps

    scored = rank_comps(subject, comps, config)
    for threshold in thresholds:
        tier = [s for s in scored if s.relevance > threshold]
        if len(tier) >= min_comps:
            return tier[:max_comps]
    return scored[:max_comps]
