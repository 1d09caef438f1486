"""Tests for broker research extraction: comp conversion, signal validation, failures."""
import pytest

import services.market_research as market_research
from models import PipelineStage
from services.market_research import build_market_research, extract_market_research, validate_signal
from services.pdf_extraction import ExtractionError
from services.semantic_extractor import SemanticExtractor, SemanticServiceError

REPORT_TEXT = "Austin Multifamily Market Report Q1 2025. Supply pipeline remains elevated. " * 5

REPORT_DATA = {
    "metadata": {"source_firm": "CBRE", "publication_date": "2025-Q1", "geographies_covered": ["Austin", " ", None]},
    "sales_comps": [
        {"property_name": "Oak Ridge", "city": "Austin", "state": "TX", "units": 200,
         "price_total": "$45.5M", "cap_rate": "5.1%", "year_built": "2016"},
        {"property_name": "Typo Place", "units": 100, "cap_rate": "150"},
    ],
    "sentiment_signals": [
        {"signal_type": "supply_pipeline", "direction": "negative", "magnitude": "strong",
         "geography_submarket": "East Austin", "quantitative_value": "12,000 units",
         "narrative_summary": "Deliveries peak this year"},
        {"signal_type": "rent_growth", "direction": "positive"},
    ],
}


class StaticExtractor(SemanticExtractor):
    source = "semantic"

    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error

    def classify_columns(self, doc_type, headers, samples):
        raise NotImplementedError

    def normalize_records(self, doc_type, records, mapping):
        raise NotImplementedError

    def extract_document(self, instructions, text):
        if self.error:
            raise self.error
        return self.data


# ---- validate_signal ----

def test_validate_signal_defaults_unknown_categories():
    signal = validate_signal({
        "signal_type": "vibes", "direction": "UP", "magnitude": "huge", "confidence": None,
        "narrative_summary": "Something happened",
    })
    assert signal.signal_type == "other"
    assert signal.direction == "neutral"
    assert signal.magnitude == "moderate"
    assert signal.confidence == "medium"


def test_validate_signal_normalizes_case():
    signal = validate_signal({"signal_type": "Rent_Growth", "direction": "Positive", "narrative_summary": "Up"})
    assert (signal.signal_type, signal.direction) == ("rent_growth", "positive")


def test_validate_signal_without_narrative():
    assert validate_signal({"signal_type": "absorption", "narrative_summary": "  "}) is None


# ---- build_market_research ----

def test_build_market_research():
    result = build_market_research(REPORT_DATA)
    assert result.source_firm == "CBRE"
    assert result.publication_date == "2025-Q1"
    assert result.geographies_covered == ["Austin"]

    assert len(result.comps) == 1
    comp = result.comps[0]
    assert comp.sale_price == 45_500_000.0
    assert comp.cap_rate == pytest.approx(0.051)
    assert comp.address == "Austin, TX"
    assert comp.year_built == 2016

    assert len(result.signals) == 1
    signal = result.signals[0]
    assert signal.source_label == "CBRE"
    assert signal.publication_date == "2025-Q1"
    assert signal.quantitative_value == "12,000 units"

    assert any(w.startswith("Comp 2 rejected") for w in result.warnings)
    assert "1 sentiment signal(s) without a narrative were dropped" in result.warnings


def test_build_market_research_tolerates_missing_sections():
    result = build_market_research({})
    assert result.comps == []
    assert result.signals == []
    assert result.source_firm is None


# ---- extract_market_research ----

def test_extract_market_research(monkeypatch):
    monkeypatch.setattr(market_research, "extract_pdf_text", lambda _: REPORT_TEXT)
    result = extract_market_research(b"%PDF-report", StaticExtractor(REPORT_DATA), "cbre.pdf", use_cache=False)
    assert result.source_firm == "CBRE"
    assert len(result.signals) == 1


def test_extract_market_research_reports_stages():
    stages = []
    extract_market_research(
        b"%PDF-report", StaticExtractor(REPORT_DATA), use_cache=False, text=REPORT_TEXT, on_stage=stages.append,
    )
    assert stages == [PipelineStage.COLUMN_CLASSIFICATION, PipelineStage.NORMALIZATION]


def test_extract_market_research_service_failure(monkeypatch):
    monkeypatch.setattr(market_research, "extract_pdf_text", lambda _: REPORT_TEXT)
    extractor = StaticExtractor(error=SemanticServiceError("internal error"))
    with pytest.raises(ExtractionError, match="AI extraction failed for this document."):
        extract_market_research(b"%PDF-report", extractor, use_cache=False)


def test_extract_market_research_short_text(monkeypatch):
    monkeypatch.setattr(market_research, "extract_pdf_text", lambda _: "")
    with pytest.raises(ExtractionError, match="sufficient text"):
        extract_market_research(b"%PDF-report", StaticExtractor(REPORT_DATA), use_cache=False)
