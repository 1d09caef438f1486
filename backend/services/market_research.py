"""
Market research (broker report) extraction.

One semantic call yields document metadata, any comparable sales quoted in the
report, and qualitative sentiment signals. There is no deterministic path.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from cache.disk_cache import get_cached_extraction, set_cached_extraction
from models import MarketResearchExtraction, NormalizedComp, PipelineStage, SentimentSignal
from services.pdf_extraction import (
    MIN_TEXT_CHARS,
    ExtractionError,
    StageCallback,
    advance_stages,
    cap_text,
    extract_pdf_text,
)
from services.semantic_extractor import (
    SemanticExtractor,
    SemanticServiceError,
    normalize_comp_values,
    safe_extraction_warning,
)
from services.value_normalizer import clean_text

logger = logging.getLogger(__name__)

VALID_SIGNAL_TYPES = frozenset({
    "supply_pipeline",
    "construction_starts",
    "absorption",
    "rent_growth",
    "concessions",
    "buyer_demand",
    "seller_motivation",
    "cap_rate_trend",
    "debt_market",
    "employment",
    "population",
    "regulatory",
    "occupancy",
    "other",
})
VALID_DIRECTIONS = frozenset({"positive", "negative", "neutral", "mixed"})
VALID_MAGNITUDES = frozenset({"strong", "moderate", "slight"})
VALID_CONFIDENCE = frozenset({"high", "medium", "low"})

MARKET_RESEARCH_INSTRUCTIONS = f"""You are a commercial real estate research analyst reading a market report.
Return ONLY a JSON object with:
"metadata": source_firm, publication_date (as written, e.g. "2025-Q1" or "March 2025"), geographies_covered (list),
"sales_comps": list of transactions with property_name, address, city, state, metro, submarket,
units, year_built, asset_class, sale_date, price_total, price_per_unit, price_per_sf, cap_rate, buyer, seller,
"sentiment_signals": list with signal_type (one of {", ".join(sorted(VALID_SIGNAL_TYPES))}),
direction (positive | negative | neutral | mixed), magnitude (strong | moderate | slight),
geography_source_label, geography_metro, geography_submarket, time_reference, quantitative_value,
narrative_summary, verbatim_excerpt, confidence (high | medium | low).
Direction is from the perspective of a multifamily buyer. Use null for anything not stated."""


def _choice(value: Any, allowed: frozenset, default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in allowed else default


def validate_signal(raw: Dict[str, Any]) -> Optional[SentimentSignal]:
    """Coerce one raw signal; unknown categories fall back to defaults. None when there is no narrative."""
    narrative = clean_text(raw.get("narrative_summary"))
    if not narrative:
        return None
    return SentimentSignal(
        signal_type=_choice(raw.get("signal_type"), VALID_SIGNAL_TYPES, "other"),
        direction=_choice(raw.get("direction"), VALID_DIRECTIONS, "neutral"),
        magnitude=_choice(raw.get("magnitude"), VALID_MAGNITUDES, "moderate"),
        geography_source_label=clean_text(raw.get("geography_source_label")),
        geography_metro=clean_text(raw.get("geography_metro")),
        geography_submarket=clean_text(raw.get("geography_submarket")),
        time_reference=clean_text(raw.get("time_reference")),
        quantitative_value=clean_text(raw.get("quantitative_value")),
        narrative_summary=narrative,
        verbatim_excerpt=clean_text(raw.get("verbatim_excerpt")),
        confidence=_choice(raw.get("confidence"), VALID_CONFIDENCE, "medium"),
    )


def _comp_values(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Report comp keys -> canonical comp keys."""
    address = clean_text(raw.get("address"))
    if not address:
        parts = [p for p in (clean_text(raw.get("city")), clean_text(raw.get("state"))) if p]
        address = ", ".join(parts) or None
    return {
        "property_name": raw.get("property_name"),
        "address": address,
        "state": raw.get("state"),
        "metro": raw.get("metro"),
        "market": raw.get("metro") or raw.get("city"),
        "submarket": raw.get("submarket"),
        "property_type": raw.get("asset_class") or raw.get("property_type"),
        "units": raw.get("units"),
        "year_built": raw.get("year_built"),
        "sale_date": raw.get("sale_date"),
        "sale_price": raw.get("price_total") or raw.get("sale_price"),
        "price_per_unit": raw.get("price_per_unit"),
        "price_per_sf": raw.get("price_per_sf"),
        "cap_rate": raw.get("cap_rate"),
        "buyer": raw.get("buyer"),
        "seller": raw.get("seller"),
    }


def build_market_research(data: Dict[str, Any]) -> MarketResearchExtraction:
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    warnings: List[str] = []

    comps: List[NormalizedComp] = []
    for i, raw in enumerate(data.get("sales_comps") or []):
        if not isinstance(raw, dict):
            continue
        try:
            comps.append(NormalizedComp(**normalize_comp_values(_comp_values(raw))))
        except ValidationError as e:
            warnings.append(f"Comp {i + 1} rejected: {e.errors()[0].get('msg', 'invalid')}")

    signals: List[SentimentSignal] = []
    dropped = 0
    for raw in data.get("sentiment_signals") or []:
        signal = validate_signal(raw) if isinstance(raw, dict) else None
        if signal is None:
            dropped += 1
            continue
        signals.append(signal)
    if dropped:
        warnings.append(f"{dropped} sentiment signal(s) without a narrative were dropped")

    geographies = [g for g in (clean_text(x) for x in (meta.get("geographies_covered") or [])) if g]
    source_firm = clean_text(meta.get("source_firm"))
    publication_date = clean_text(meta.get("publication_date"))
    for signal in signals:
        signal.publication_date = publication_date
        signal.source_label = source_firm

    return MarketResearchExtraction(
        source_firm=source_firm,
        publication_date=publication_date,
        geographies_covered=geographies,
        comps=comps,
        signals=signals,
        warnings=warnings,
    )


def extract_market_research(
    file_bytes: bytes,
    extractor: SemanticExtractor,
    filename: str = "",
    use_cache: bool = True,
    text: Optional[str] = None,
    on_stage: Optional[StageCallback] = None,
) -> MarketResearchExtraction:
    """Raises ExtractionError when there is no usable text or the semantic service fails."""
    if use_cache:
        cached = get_cached_extraction(file_bytes, "market_research")
        if cached is not None:
            logger.info("[market_research] cache hit file=%s", filename)
            advance_stages(on_stage, PipelineStage.COLUMN_CLASSIFICATION, PipelineStage.NORMALIZATION)
            return MarketResearchExtraction.model_validate(cached)

    if text is None:
        text = extract_pdf_text(file_bytes)
    if len(text.strip()) < MIN_TEXT_CHARS:
        raise ExtractionError("Could not extract sufficient text from the research report.")
    capped, truncated = cap_text(text)

    advance_stages(on_stage, PipelineStage.COLUMN_CLASSIFICATION)
    try:
        data = extractor.extract_document(MARKET_RESEARCH_INSTRUCTIONS, capped)
    except SemanticServiceError as e:
        raise ExtractionError(safe_extraction_warning(e, fallback_used=False)) from e

    advance_stages(on_stage, PipelineStage.NORMALIZATION)
    result = build_market_research(data)
    if truncated:
        result.warnings.append("Report text was truncated before extraction")
    logger.info(
        "[market_research] file=%s comps=%d signals=%d firm=%s",
        filename, len(result.comps), len(result.signals), result.source_firm,
    )
    if use_cache:
        set_cached_extraction(file_bytes, "market_research", result.model_dump(mode="json"))
    return result
