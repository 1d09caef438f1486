"""
Offering memorandum / broker opinion of value extraction from PDF.

Text (pypdf) -> length cap -> sub-type detection -> one semantic extraction
call with the matching instruction set -> typed result with per-period
economic occupancy and opex ratio.

There is no deterministic substitute: a semantic service failure is an
extraction failure.
"""
from __future__ import annotations

import logging
from io import BytesIO
from typing import Any, BinaryIO, Callable, Dict, Optional, Union

from pypdf import PdfReader

from cache.disk_cache import get_cached_extraction, set_cached_extraction
from models import (
    BovCapRate,
    BovPricingTier,
    FinancialPeriod,
    PdfDocumentType,
    PdfExtractionResult,
    PdfPropertyInfo,
    PeriodMetrics,
    PipelineStage,
)
from services.document_classifier import detect_pdf_subtype
from services.semantic_extractor import SemanticExtractor, SemanticServiceError, safe_extraction_warning
from services.value_normalizer import clean_int, clean_numeric, clean_text, normalize_cap_rate

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 100_000
TRUNCATION_MARKER = "\n\n[Text truncated due to length...]"
MIN_TEXT_CHARS = 100

StageCallback = Callable[[PipelineStage], None]


class ExtractionError(Exception):
    """A document could not be extracted (no text, or the semantic service failed)."""


_COMMON_FIELDS = """Return ONLY a JSON object with:
"document_type" ("OM" | "BOV" | "Unknown"), "confidence" ("high" | "medium" | "low"),
"property_info" (deal_name, property_address, property_type, submarket, year_built, total_units, total_sf),
"average_rents" (market_rent, in_place_rent),
"financials_by_period": an object keyed by period ("t12", "t3", "y1") where each period has
period_label, gsr, vacancy, concessions, bad_debt, non_revenue_units, total_opex,
opex_components (controllable_expenses, management_fee, insurance, property_taxes) and noi,
"missing_fields": names of fields that could not be found.
All numbers as plain numerics (no $ or commas). Use null when a value is not present."""

OM_INSTRUCTIONS = f"""You are a commercial real estate analyst reading an offering memorandum.
Extract every financial period shown (historical T12/T3 and pro forma Y1), taking values
from the exact rows of the operating statement. Verify GSR minus deductions approximates EGI.
{_COMMON_FIELDS}
"bov_pricing_tiers" must be an empty list."""

BOV_INSTRUCTIONS = f"""You are a commercial real estate analyst reading a broker opinion of value.
Each pricing scenario is a complete package: extract every tier as an element of
"bov_pricing_tiers" with pricing_tier_id, tier_label, tier_type ("asking_price" | "market_assumption" | null),
pricing, price_per_unit, price_per_sf, cap_rates (list of cap_rate_type, cap_rate_value, noi_basis, qualifier),
loan_assumptions (leverage, loan_amount, interest_rate, io_period_months, amortization_years),
return_metrics (unlevered_irr, levered_irr, equity_multiple, avg_cash_on_cash) and
terminal_assumptions (terminal_cap_rate, hold_period_years).
{_COMMON_FIELDS}"""

GENERIC_INSTRUCTIONS = f"""You are a commercial real estate analyst reading a property marketing document.
Decide whether it is an offering memorandum (OM) or a broker opinion of value (BOV) and extract
its property facts and financials. Include "bov_pricing_tiers" when pricing scenarios are present.
{_COMMON_FIELDS}"""

INSTRUCTIONS_BY_TYPE: Dict[PdfDocumentType, str] = {
    PdfDocumentType.OFFERING_MEMORANDUM: OM_INSTRUCTIONS,
    PdfDocumentType.BROKER_OPINION_OF_VALUE: BOV_INSTRUCTIONS,
    PdfDocumentType.UNSPECIFIED: GENERIC_INSTRUCTIONS,
}


def extract_pdf_text(source: Union[bytes, BinaryIO]) -> str:
    """Concatenate page text with page markers."""
    stream = BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    try:
        reader = PdfReader(stream)
    except Exception as e:
        raise ExtractionError(f"Failed to read PDF: {e}") from e
    parts = []
    for page_num, page in enumerate(reader.pages, start=1):
        text = page.extract_text()
        if text:
            parts.append(f"\n--- Page {page_num} ---\n{text}")
    return "".join(parts)


def cap_text(text: str, max_chars: int = MAX_TEXT_CHARS) -> tuple[str, bool]:
    """Truncate to `max_chars` and append the truncation marker. Returns (text, truncated)."""
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars] + TRUNCATION_MARKER, True


def calculate_metrics(financials_by_period: Dict[str, FinancialPeriod]) -> Dict[str, PeriodMetrics]:
    """
    Economic occupancy = (GSR - vacancy - concessions - bad debt - non-revenue units) / GSR x 100
    Opex ratio = total opex / GSR x 100

    Periods whose GSR is missing or not positive get no metrics. Deductions are
    taken as magnitudes since statements often print them as negatives.
    """
    calculated: Dict[str, PeriodMetrics] = {}
    for period, data in financials_by_period.items():
        gsr = data.gsr or 0
        if gsr <= 0:
            continue
        deductions = sum(
            abs(v or 0) for v in (data.vacancy, data.concessions, data.bad_debt, data.non_revenue_units)
        )
        metrics = PeriodMetrics(
            economic_occupancy_pct=round((gsr - deductions) / gsr * 100, 2),
            formula_econ_occ=f"(${gsr:,.0f} - ${deductions:,.0f}) / ${gsr:,.0f}",
        )
        if data.total_opex is not None:
            metrics.opex_ratio_pct = round(data.total_opex / gsr * 100, 2)
            metrics.formula_opex = f"${data.total_opex:,.0f} / ${gsr:,.0f}"
        calculated[period] = metrics
    return calculated


def _numeric_dict(raw: Any) -> Dict[str, Optional[float]]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): clean_numeric(v) for k, v in raw.items()}


def _period(raw: Dict[str, Any]) -> FinancialPeriod:
    return FinancialPeriod(
        period_label=clean_text(raw.get("period_label")),
        gsr=clean_numeric(raw.get("gsr")),
        vacancy=clean_numeric(raw.get("vacancy")),
        concessions=clean_numeric(raw.get("concessions")),
        bad_debt=clean_numeric(raw.get("bad_debt")),
        non_revenue_units=clean_numeric(raw.get("non_revenue_units")),
        total_opex=clean_numeric(raw.get("total_opex")),
        opex_components=_numeric_dict(raw.get("opex_components")),
        noi=clean_numeric(raw.get("noi")),
    )


def _tier(raw: Dict[str, Any], index: int) -> BovPricingTier:
    cap_rates = []
    for cr in raw.get("cap_rates") or []:
        if not isinstance(cr, dict):
            continue
        cap_rates.append(BovCapRate(
            cap_rate_type=clean_text(cr.get("cap_rate_type")),
            cap_rate_value=normalize_cap_rate(cr.get("cap_rate_value")),
            noi_basis=clean_numeric(cr.get("noi_basis")),
            qualifier=clean_text(cr.get("qualifier")),
        ))
    return BovPricingTier(
        pricing_tier_id=clean_text(raw.get("pricing_tier_id")) or f"tier_{index + 1}",
        tier_label=clean_text(raw.get("tier_label")),
        tier_type=clean_text(raw.get("tier_type")),
        pricing=clean_numeric(raw.get("pricing")),
        price_per_unit=clean_numeric(raw.get("price_per_unit")),
        price_per_sf=clean_numeric(raw.get("price_per_sf")),
        cap_rates=cap_rates,
        loan_assumptions=_numeric_dict(raw.get("loan_assumptions")),
        return_metrics=_numeric_dict(raw.get("return_metrics")),
        terminal_assumptions=_numeric_dict(raw.get("terminal_assumptions")),
    )


def _document_type(raw: Any, detected: PdfDocumentType) -> PdfDocumentType:
    value = str(raw or "").strip().upper()
    if value == "OM":
        return PdfDocumentType.OFFERING_MEMORANDUM
    if value == "BOV":
        return PdfDocumentType.BROKER_OPINION_OF_VALUE
    return detected


def build_result(
    data: Dict[str, Any],
    detected: PdfDocumentType,
    text_length: int,
    truncated: bool,
) -> PdfExtractionResult:
    """Typed result from the semantic service's JSON, with derived metrics."""
    info = data.get("property_info") if isinstance(data.get("property_info"), dict) else {}
    periods_raw = data.get("financials_by_period") if isinstance(data.get("financials_by_period"), dict) else {}
    periods = {
        str(k).lower(): _period(v) for k, v in periods_raw.items() if isinstance(v, dict)
    }
    tiers_raw = data.get("bov_pricing_tiers") if isinstance(data.get("bov_pricing_tiers"), list) else []
    tiers = [_tier(t, i) for i, t in enumerate(tiers_raw) if isinstance(t, dict)]

    missing = [str(m) for m in (data.get("missing_fields") or []) if m]
    warnings = []
    if not periods:
        missing.append("financials_by_period")
    if truncated:
        warnings.append(f"Document text exceeded {MAX_TEXT_CHARS:,} characters and was truncated")

    return PdfExtractionResult(
        document_type=_document_type(data.get("document_type"), detected),
        detected_type=detected,
        confidence=clean_text(data.get("confidence")),
        property_info=PdfPropertyInfo(
            deal_name=clean_text(info.get("deal_name")),
            property_address=clean_text(info.get("property_address")),
            property_type=clean_text(info.get("property_type")),
            submarket=clean_text(info.get("submarket")),
            year_built=clean_int(info.get("year_built")),
            total_units=clean_int(info.get("total_units")),
            total_sf=clean_numeric(info.get("total_sf")),
        ),
        average_rents=_numeric_dict(data.get("average_rents")),
        financials_by_period=periods,
        calculated_metrics=calculate_metrics(periods),
        bov_pricing_tiers=tiers,
        missing_fields=missing,
        text_length=text_length,
        truncated=truncated,
        warnings=warnings,
    )


def advance_stages(on_stage: Optional[StageCallback], *stages: PipelineStage) -> None:
    if on_stage is not None:
        for stage in stages:
            on_stage(stage)


def extract_pdf(
    file_bytes: bytes,
    extractor: SemanticExtractor,
    filename: str = "",
    use_cache: bool = True,
    subtype: Optional[PdfDocumentType] = None,
    text: Optional[str] = None,
    on_stage: Optional[StageCallback] = None,
) -> PdfExtractionResult:
    """
    Raises ExtractionError when there is no usable text or the semantic service fails.

    `subtype` overrides keyword detection; `text` skips re-reading the PDF when the
    caller already has it. `on_stage` is told when the semantic call starts
    (column_classification) and when the typed result is built (normalization).
    """
    if use_cache:
        cached = get_cached_extraction(file_bytes, "pdf")
        if cached is not None:
            logger.info("[pdf] cache hit file=%s", filename)
            advance_stages(on_stage, PipelineStage.COLUMN_CLASSIFICATION, PipelineStage.NORMALIZATION)
            return PdfExtractionResult.model_validate(cached)

    if text is None:
        text = extract_pdf_text(file_bytes)
    if len(text.strip()) < MIN_TEXT_CHARS:
        raise ExtractionError(
            "Could not extract sufficient text from PDF. The file may be scanned or corrupted."
        )
    detected = subtype or detect_pdf_subtype(text)
    capped, truncated = cap_text(text)
    logger.info("[pdf] file=%s chars=%d truncated=%s detected=%s", filename, len(text), truncated, detected.value)

    advance_stages(on_stage, PipelineStage.COLUMN_CLASSIFICATION)
    try:
        data = extractor.extract_document(INSTRUCTIONS_BY_TYPE[detected], capped)
    except SemanticServiceError as e:
        raise ExtractionError(safe_extraction_warning(e, fallback_used=False)) from e

    advance_stages(on_stage, PipelineStage.NORMALIZATION)
    result = build_result(data, detected, len(text), truncated)
    if use_cache:
        set_cached_extraction(file_bytes, "pdf", result.model_dump(mode="json"))
    return result
