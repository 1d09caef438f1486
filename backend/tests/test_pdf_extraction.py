"""Tests for OM/BOV extraction: derived metrics, result building, text cap, service failures."""
import pytest

import services.pdf_extraction as pdf_extraction
from models import FinancialPeriod, PdfDocumentType, PipelineStage
from services.pdf_extraction import (
    MAX_TEXT_CHARS,
    TRUNCATION_MARKER,
    ExtractionError,
    build_result,
    calculate_metrics,
    cap_text,
    extract_pdf,
)
from services.semantic_extractor import DeterministicExtractor, SemanticExtractor

OM_TEXT = "Confidential Offering Memorandum. Investment Highlights. " * 10


class StaticExtractor(SemanticExtractor):
    source = "semantic"

    def __init__(self, data):
        self.data = data
        self.instructions = None

    def classify_columns(self, doc_type, headers, samples):
        raise NotImplementedError

    def normalize_records(self, doc_type, records, mapping):
        raise NotImplementedError

    def extract_document(self, instructions, text):
        self.instructions = instructions
        return self.data


# ---- calculate_metrics ----

def test_economic_occupancy_and_opex_ratio():
    periods = {
        "t12": FinancialPeriod(
            gsr=1_000_000, vacancy=-50_000, concessions=10_000, non_revenue_units=5_000, total_opex=450_000,
        )
    }
    metrics = calculate_metrics(periods)["t12"]
    assert metrics.economic_occupancy_pct == 93.5
    assert metrics.opex_ratio_pct == 45.0
    assert metrics.formula_econ_occ == "($1,000,000 - $65,000) / $1,000,000"


def test_period_without_gsr_is_skipped():
    metrics = calculate_metrics({"y1": FinancialPeriod(gsr=0, total_opex=100), "t3": FinancialPeriod()})
    assert metrics == {}


def test_opex_ratio_needs_total_opex():
    metrics = calculate_metrics({"t12": FinancialPeriod(gsr=100_000)})
    assert metrics["t12"].economic_occupancy_pct == 100.0
    assert metrics["t12"].opex_ratio_pct is None


# ---- build_result ----

def test_build_result_bov():
    data = {
        "document_type": "bov",
        "confidence": "high",
        "property_info": {"deal_name": "Oak Ridge", "year_built": "2015", "total_units": "200"},
        "financials_by_period": {"T12": {"gsr": "2,000,000", "vacancy": 100_000, "total_opex": 800_000}},
        "bov_pricing_tiers": [
            {"tier_label": "Tier 1", "pricing": 40_000_000, "cap_rates": [{"cap_rate_type": "going_in", "cap_rate_value": "5.25"}]},
        ],
    }
    result = build_result(data, PdfDocumentType.UNSPECIFIED, text_length=5_000, truncated=False)
    assert result.document_type == PdfDocumentType.BROKER_OPINION_OF_VALUE
    assert result.detected_type == PdfDocumentType.UNSPECIFIED
    assert result.property_info.total_units == 200
    assert "t12" in result.financials_by_period
    assert result.calculated_metrics["t12"].economic_occupancy_pct == 95.0
    assert result.calculated_metrics["t12"].opex_ratio_pct == 40.0
    tier = result.bov_pricing_tiers[0]
    assert tier.pricing_tier_id == "tier_1"
    assert tier.cap_rates[0].cap_rate_value == pytest.approx(0.0525)
    assert result.missing_fields == []


def test_build_result_without_financials_reports_missing():
    result = build_result({"document_type": "OM"}, PdfDocumentType.OFFERING_MEMORANDUM, 500, truncated=True)
    assert "financials_by_period" in result.missing_fields
    assert result.truncated is True
    assert len(result.warnings) == 1


# ---- cap_text ----

def test_cap_text():
    text, truncated = cap_text("a" * 10, max_chars=20)
    assert (text, truncated) == ("a" * 10, False)
    text, truncated = cap_text("a" * (MAX_TEXT_CHARS + 5))
    assert truncated is True
    assert text.endswith(TRUNCATION_MARKER)
    assert len(text) == MAX_TEXT_CHARS + len(TRUNCATION_MARKER)


# ---- extract_pdf ----

def test_extract_pdf_uses_detected_instructions(monkeypatch):
    monkeypatch.setattr(pdf_extraction, "extract_pdf_text", lambda _: OM_TEXT)
    extractor = StaticExtractor({"financials_by_period": {"t12": {"gsr": 1_000_000, "total_opex": 420_000}}})
    result = extract_pdf(b"%PDF-fake", extractor, "om.pdf", use_cache=False)
    assert extractor.instructions == pdf_extraction.OM_INSTRUCTIONS
    assert result.document_type == PdfDocumentType.OFFERING_MEMORANDUM
    assert result.calculated_metrics["t12"].opex_ratio_pct == 42.0
    assert result.text_length == len(OM_TEXT)


def test_extract_pdf_short_text_raises(monkeypatch):
    monkeypatch.setattr(pdf_extraction, "extract_pdf_text", lambda _: "scanned")
    with pytest.raises(ExtractionError, match="sufficient text"):
        extract_pdf(b"%PDF-fake", StaticExtractor({}), use_cache=False)


def test_extract_pdf_without_semantic_service_fails(monkeypatch):
    monkeypatch.setattr(pdf_extraction, "extract_pdf_text", lambda _: OM_TEXT)
    with pytest.raises(ExtractionError) as exc:
        extract_pdf(b"%PDF-fake", DeterministicExtractor(), use_cache=False)
    assert "OPENAI_API_KEY missing" in str(exc.value)


def test_extract_pdf_unreadable_bytes():
    with pytest.raises(ExtractionError, match="Failed to read PDF"):
        extract_pdf(b"not a pdf", StaticExtractor({}), use_cache=False)


def test_extract_pdf_caches_by_content(monkeypatch, tmp_path):
    monkeypatch.setattr(pdf_extraction, "extract_pdf_text", lambda _: OM_TEXT)
    monkeypatch.setattr("cache.disk_cache.EXTRACTION_CACHE_DIR", tmp_path)
    extractor = StaticExtractor({"financials_by_period": {"t12": {"gsr": 500_000}}})
    first = extract_pdf(b"%PDF-cached", extractor, "om.pdf")

    def fail(_):
        raise AssertionError("cache miss")

    monkeypatch.setattr(pdf_extraction, "extract_pdf_text", fail)
    second = extract_pdf(b"%PDF-cached", extractor, "om.pdf")
    assert second == first


def test_extract_pdf_subtype_override_uses_given_text(monkeypatch):
    def fail(_):
        raise AssertionError("text was read again")

    monkeypatch.setattr(pdf_extraction, "extract_pdf_text", fail)
    extractor = StaticExtractor({})
    result = extract_pdf(
        b"%PDF-fake", extractor, use_cache=False, subtype=PdfDocumentType.BROKER_OPINION_OF_VALUE, text=OM_TEXT,
    )
    assert extractor.instructions == pdf_extraction.BOV_INSTRUCTIONS
    assert result.detected_type == PdfDocumentType.BROKER_OPINION_OF_VALUE


def test_extract_pdf_reports_stages_on_miss_and_hit(monkeypatch, tmp_path):
    monkeypatch.setattr("cache.disk_cache.EXTRACTION_CACHE_DIR", tmp_path)
    expected = [PipelineStage.COLUMN_CLASSIFICATION, PipelineStage.NORMALIZATION]
    stages = []
    extract_pdf(b"%PDF-stages", StaticExtractor({}), text=OM_TEXT, on_stage=stages.append)
    assert stages == expected

    stages = []
    extract_pdf(b"%PDF-stages", StaticExtractor({}), text=OM_TEXT, on_stage=stages.append)
    assert stages == expected


# ---- Disk cache ----

def test_disk_cache_set_get_clear(tmp_path):
    from cache.disk_cache import clear_cached_extraction, get_cached_extraction, set_cached_extraction

    assert get_cached_extraction(b"abc", "pdf", cache_dir=tmp_path) is None
    set_cached_extraction(b"abc", "pdf", {"a": 1}, cache_dir=tmp_path)
    assert get_cached_extraction(b"abc", "pdf", cache_dir=tmp_path) == {"a": 1}
    # Same bytes under another kind are a separate entry
    assert get_cached_extraction(b"abc", "market_research", cache_dir=tmp_path) is None
    assert clear_cached_extraction(b"abc", "pdf", cache_dir=tmp_path) is True
    assert clear_cached_extraction(b"abc", "pdf", cache_dir=tmp_path) is False
