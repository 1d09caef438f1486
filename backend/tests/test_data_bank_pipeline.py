"""Tests for the data bank spreadsheet pipeline: stages, fallback, failure handling."""
import openpyxl
import pytest

from models import ColumnMapping, DocumentType, PipelineStage, ProjectStatus
from services.data_bank_pipeline import DataBankPipeline, PipelineConfig
from services.semantic_extractor import (
    DeterministicExtractor,
    SemanticExtractor,
    SemanticServiceError,
    normalize_values,
)


class FailingExtractor(SemanticExtractor):
    source = "semantic"

    def classify_columns(self, doc_type, headers, samples):
        raise SemanticServiceError("Error 429: rate limit exceeded")

    def normalize_records(self, doc_type, records, mapping):
        raise SemanticServiceError("Error 429: rate limit exceeded")

    def extract_document(self, instructions, text):
        raise SemanticServiceError("Error 429: rate limit exceeded")


class MappingExtractor(SemanticExtractor):
    """Semantic stand-in that maps every header through a fixed table."""
    source = "semantic"

    def __init__(self, table, fail_batches=()):
        self.table = table
        self.fail_batches = set(fail_batches)
        self.batches = 0

    def classify_columns(self, doc_type, headers, samples):
        return ColumnMapping(fields={h: self.table.get(h, "SKIP") for h in headers}, source="semantic")

    def normalize_records(self, doc_type, records, mapping):
        self.batches += 1
        if self.batches in self.fail_batches:
            raise SemanticServiceError("Request timed out")
        return [normalize_values(doc_type, mapping.apply(r).values) for r in records]

    def extract_document(self, instructions, text):
        return {"model_type": "acquisition", "returns": {"levered_irr": 0.18}, "warnings": ["Exit cap assumed"]}


COMP_TABLE = {
    "Property Name": "property_name",
    "Market": "market",
    "Units": "units",
    "Year Built": "year_built",
    "Sale Price": "sale_price",
    "Price/Unit": "price_per_unit",
    "Cap Rate": "cap_rate",
    "Buyer": "buyer",
    "Sale Date": "sale_date",
}


def _pipeline_workbook():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Pipeline"
    ws.append(["Project Name", "Developer", "Units", "Status", "Delivery Date", "Submarket"])
    ws.append(["Tower One", "Acme Dev", 300, "Under Construction", "2026-Q2", "Midtown"])
    ws.append(["Garden Flats", "Beta Homes", 240, "Lease-Up", "2025-Q4", "Midtown"])
    ws.append(["Riverside", "Gamma", 180, "Proposed", "2027-Q1", "Eastside"])
    return wb


def _underwriting_workbook():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Pro Forma"
    ws.append(["Levered IRR", 0.18])
    ws.append(["Equity Multiple", 2.1])
    return wb


# ---- Sales comp trackers ----

def test_deterministic_comp_run(comp_workbook):
    stages = []
    pipeline = DataBankPipeline(DeterministicExtractor(), on_stage=stages.append)
    result = pipeline.run("Austin Comps.xlsx", comp_workbook)

    assert result.error is None
    assert result.document_type == DocumentType.SALES_COMP_TRACKER
    assert stages == [
        PipelineStage.RECEIVED,
        PipelineStage.CLASSIFYING,
        PipelineStage.STRUCTURAL_PARSE,
        PipelineStage.COLUMN_CLASSIFICATION,
        PipelineStage.NORMALIZATION,
        PipelineStage.CROSS_FIELD_VALIDATION,
        PipelineStage.COMPLETED,
    ]
    assert result.record_count == 2
    oak, elm = result.comps
    assert oak.cap_rate == pytest.approx(0.055)
    assert oak.price_per_unit == 200_000.0
    assert elm.sale_price == pytest.approx(47_554_200.0)
    assert (elm.year_built, elm.year_renovated) == (1987, 2017)
    assert elm.sale_date is None
    assert "Elm Court: sale_price=264.19 looks like $/SF, correcting" in result.warnings
    assert result.extraction_data["mapping_source"] == "deterministic"
    assert result.extraction_data["column_mapping"]["Price/Unit"] == "price_per_unit"


def test_semantic_failure_falls_back_to_deterministic(comp_workbook):
    result = DataBankPipeline(FailingExtractor()).run("comps.xlsx", comp_workbook)
    assert result.error is None
    assert result.mapping.source == "deterministic"
    assert result.record_count == 2
    assert "AI extraction is temporarily limited (rate limit/quota)." in result.warnings
    assert "Deterministic normalization used for 1 batch(es) after semantic service errors" in result.warnings


def test_only_failed_batch_falls_back(comp_workbook):
    extractor = MappingExtractor(COMP_TABLE, fail_batches={2})
    pipeline = DataBankPipeline(extractor, config=PipelineConfig(batch_size=1))
    result = pipeline.run("comps.xlsx", comp_workbook)
    assert result.error is None
    assert result.mapping.source == "semantic"
    assert extractor.batches == 2
    assert result.record_count == 2
    assert "Deterministic normalization used for 1 batch(es) after semantic service errors" in result.warnings


def test_invalid_row_is_rejected_not_fatal():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Comps"
    ws.append(["Property Name", "Units", "Sale Price", "Cap Rate", "Occupancy"])
    ws.append(["Good", 100, 20_000_000, 5.0, 95])
    ws.append(["Bad", 100, 20_000_000, 150, 95])
    result = DataBankPipeline(DeterministicExtractor()).run("comps.xlsx", wb, DocumentType.SALES_COMP_TRACKER)
    assert result.error is None
    assert [c.property_name for c in result.comps] == ["Good"]
    assert any(w.startswith("Row 2 rejected") for w in result.warnings)


# ---- Pipeline trackers ----

def test_pipeline_tracker_run():
    result = DataBankPipeline(DeterministicExtractor()).run("supply.xlsx", _pipeline_workbook())
    assert result.error is None
    assert result.document_type == DocumentType.PIPELINE_TRACKER
    statuses = [p.status for p in result.projects]
    assert statuses == [ProjectStatus.UNDER_CONSTRUCTION, ProjectStatus.LEASE_UP, ProjectStatus.PROPOSED]
    assert result.projects[0].delivery_quarter == "2026-Q2"
    assert result.projects[0].submarket == "Midtown"


# ---- Underwriting models ----

def test_underwriting_without_semantic_service_fails():
    result = DataBankPipeline(DeterministicExtractor()).run("model.xlsx", _underwriting_workbook())
    assert result.document_type == DocumentType.UNDERWRITING_MODEL
    assert result.stage == PipelineStage.FAILED
    assert "OPENAI_API_KEY" in result.error
    assert result.extraction_data["failed_stage"] == PipelineStage.NORMALIZATION.value
    assert "AI extraction is not configured on backend (OPENAI_API_KEY missing)." in result.warnings
    assert result.record_count == 0


def test_underwriting_with_semantic_service():
    result = DataBankPipeline(MappingExtractor({})).run("model.xlsx", _underwriting_workbook())
    assert result.error is None
    assert result.underwriting["returns"]["levered_irr"] == 0.18
    assert result.record_count == 1
    assert "Exit cap assumed" in result.warnings


# ---- Failures ----

def test_unknown_document_fails_at_classification():
    result = DataBankPipeline(DeterministicExtractor()).run("blank.xlsx", openpyxl.Workbook())
    assert result.stage == PipelineStage.FAILED
    assert result.error == "Unrecognized document type: unknown"
    assert result.extraction_data["failed_stage"] == PipelineStage.CLASSIFYING.value


def test_unreadable_file_fails_without_raising():
    result = DataBankPipeline(DeterministicExtractor()).run("broken.xlsx", b"not a workbook")
    assert result.stage == PipelineStage.FAILED
    assert result.error.startswith("Unreadable workbook")
    assert result.comps == []


def test_header_without_rows_fails():
    wb = openpyxl.Workbook()
    wb.active.title = "Comps"
    wb.active.append(["Property Name", "Units", "Sale Price", "Cap Rate"])
    result = DataBankPipeline(DeterministicExtractor()).run("comps.xlsx", wb, DocumentType.SALES_COMP_TRACKER)
    assert result.stage == PipelineStage.FAILED
    assert result.extraction_data["failed_stage"] == PipelineStage.STRUCTURAL_PARSE.value
