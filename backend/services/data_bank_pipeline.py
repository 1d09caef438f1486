"""
Data bank spreadsheet pipeline: sales comp trackers, pipeline trackers and
underwriting models.

Stages (every run passes through each one in order, or stops at `failed`):

    received -> classifying -> structural_parse -> column_classification
      -> normalization -> cross_field_validation -> completed | failed

The pipeline does not touch the database. The caller (jobs.tasks) records
each stage via `on_stage` and persists the result with delete-then-insert.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from models import (
    ColumnMapping,
    DocumentType,
    NormalizedComp,
    NormalizedPipelineProject,
    PipelineStage,
    RawTabularRecord,
)
from services.comp_validator import DEFAULT_REPAIR_CONFIG, RepairConfig, validate_all
from services.document_classifier import DEFAULT_CLASSIFIER_VOCABULARY, ClassifierVocabulary, classify_workbook
from services.semantic_extractor import (
    DeterministicExtractor,
    SemanticExtractor,
    SemanticServiceError,
    safe_extraction_warning,
)
from services.tabular_parser import (
    SheetVocabulary,
    StructuralParseError,
    cell_text,
    open_workbook,
    parse_sheet,
    sheet_rows,
)

logger = logging.getLogger(__name__)

StageCallback = Callable[[PipelineStage], None]

SALES_COMP_SHEET_VOCABULARY = SheetVocabulary(
    sheet_keywords=("comp", "comparable", "sales", "transaction", "trade", "closed", "sale"),
    header_keywords=(
        "property name", "sale price", "cap rate", "price per unit", "price/unit", "buyer", "seller",
        "sale date", "close date", "closing date", "price per sf", "$/sf", "$/unit", "occupancy",
        "year built", "vintage", "units", "unit count",
    ),
)

PIPELINE_SHEET_VOCABULARY = SheetVocabulary(
    sheet_keywords=(
        "pipeline", "supply", "construction", "delivery", "development", "new supply",
        "under construction", "proposed",
    ),
    header_keywords=(
        "project name", "developer", "delivery", "status", "units", "unit count", "start",
        "completion", "lease up", "under construction", "proposed", "quarter", "delivery date",
    ),
)

UNDERWRITING_SHEET_KEYWORDS: tuple[str, ...] = (
    "summary", "proforma", "pro forma", "cash flow", "returns", "assumptions",
    "underwriting", "model", "output",
)

UNDERWRITING_INSTRUCTIONS = """You are a commercial real estate underwriting analyst.
Extract the key metrics of this underwriting model and return ONLY a JSON object with:
"model_type", "property_info" (property_name, address, property_type, units, total_sf),
"assumptions" (purchase_price, cap_rate_going_in, exit_cap_rate, hold_period_years,
rent_growth_rate, expense_growth_rate, vacancy_rate, ltv, interest_rate),
"returns" (unlevered_irr, levered_irr, equity_multiple, avg_cash_on_cash, noi_year1, noi_stabilized),
"rent_roll_summary" (avg_in_place_rent, avg_market_rent, occupancy) and "warnings".
Rates as decimals (5.5% -> 0.055), prices in dollars, null when not found."""


@dataclass(frozen=True)
class PipelineConfig:
    batch_size: int = 25
    max_rows: int = 2000
    sample_rows: int = 5
    underwriting_max_sheets: int = 5
    underwriting_rows_per_sheet: int = 80
    underwriting_max_chars: int = 80_000


@dataclass
class PipelineResult:
    document_type: DocumentType = DocumentType.UNKNOWN
    stage: PipelineStage = PipelineStage.RECEIVED
    comps: List[NormalizedComp] = field(default_factory=list)
    projects: List[NormalizedPipelineProject] = field(default_factory=list)
    underwriting: Optional[Dict[str, Any]] = None
    mapping: Optional[ColumnMapping] = None
    extraction_data: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def record_count(self) -> int:
        if self.document_type == DocumentType.UNDERWRITING_MODEL:
            return 1 if self.underwriting else 0
        return len(self.comps) + len(self.projects)


class DataBankPipeline:
    def __init__(
        self,
        extractor: SemanticExtractor,
        fallback: Optional[SemanticExtractor] = None,
        config: PipelineConfig = PipelineConfig(),
        repair_config: RepairConfig = DEFAULT_REPAIR_CONFIG,
        classifier_vocabulary: ClassifierVocabulary = DEFAULT_CLASSIFIER_VOCABULARY,
        on_stage: Optional[StageCallback] = None,
    ) -> None:
        self.extractor = extractor
        if fallback is None:
            fallback = extractor if isinstance(extractor, DeterministicExtractor) else DeterministicExtractor()
        self.fallback = fallback
        self.config = config
        self.repair_config = repair_config
        self.classifier_vocabulary = classifier_vocabulary
        self.on_stage = on_stage

    def _enter(self, result: PipelineResult, stage: PipelineStage) -> None:
        result.stage = stage
        result.extraction_data["stage"] = stage.value
        logger.info("[data_bank] stage=%s type=%s", stage.value, result.document_type.value)
        if self.on_stage is not None:
            self.on_stage(stage)

    def run(
        self,
        filename: str,
        workbook_bytes: bytes,
        document_type: Optional[DocumentType] = None,
    ) -> PipelineResult:
        """Run one document to a terminal stage. Never raises; failures land in `result.error`."""
        result = PipelineResult()
        try:
            self._enter(result, PipelineStage.RECEIVED)

            self._enter(result, PipelineStage.CLASSIFYING)
            wb = open_workbook(workbook_bytes)
            doc_type = document_type or classify_workbook(wb, filename, self.classifier_vocabulary)
            result.document_type = doc_type
            result.extraction_data["document_type"] = doc_type.value
            if doc_type in (DocumentType.SALES_COMP_TRACKER, DocumentType.PIPELINE_TRACKER):
                self._run_tabular(result, wb, doc_type)
            elif doc_type == DocumentType.UNDERWRITING_MODEL:
                self._run_underwriting(result, wb)
            else:
                raise StructuralParseError(f"Unrecognized document type: {doc_type.value}")

            self._enter(result, PipelineStage.COMPLETED)
            result.extraction_data["warnings"] = list(result.warnings)
        except Exception as e:
            # Any stage may fail; the partial extraction_data and warnings are kept
            logger.warning("[data_bank] file=%s failed at stage=%s error=%s", filename, result.stage.value, e)
            result.error = str(e)
            result.extraction_data["error"] = str(e)
            result.extraction_data["failed_stage"] = result.stage.value
            result.extraction_data["warnings"] = list(result.warnings)
            result.comps = []
            result.projects = []
            self._enter(result, PipelineStage.FAILED)
        return result

    # ---- Tabular (comps / pipeline) ----

    def _run_tabular(self, result: PipelineResult, wb: Any, doc_type: DocumentType) -> None:
        self._enter(result, PipelineStage.STRUCTURAL_PARSE)
        vocabulary = SALES_COMP_SHEET_VOCABULARY if doc_type == DocumentType.SALES_COMP_TRACKER else PIPELINE_SHEET_VOCABULARY
        parsed = parse_sheet(wb, vocabulary, max_rows=self.config.max_rows)
        if not parsed.rows:
            raise StructuralParseError(f"No data rows found after header in sheet '{parsed.sheet_name}'")
        result.extraction_data.update(
            sheet=parsed.sheet_name,
            header_row=parsed.header_row_index + 1,
            headers=[h for h in parsed.headers if h],
            raw_row_count=len(parsed.rows),
        )

        self._enter(result, PipelineStage.COLUMN_CLASSIFICATION)
        headers = [h for h in parsed.headers if h]
        mapping = self.classify_columns(result, doc_type, headers, parsed.rows[: self.config.sample_rows])
        result.mapping = mapping
        result.extraction_data["column_mapping"] = mapping.fields
        result.extraction_data["mapping_source"] = mapping.source

        self._enter(result, PipelineStage.NORMALIZATION)
        normalized = self.normalize_records(result, doc_type, parsed.rows, mapping)

        self._enter(result, PipelineStage.CROSS_FIELD_VALIDATION)
        if doc_type == DocumentType.SALES_COMP_TRACKER:
            comps = self._to_models(result, normalized, NormalizedComp)
            repaired, repair_warnings = validate_all(comps, config=self.repair_config)
            result.warnings.extend(repair_warnings)
            result.comps = repaired
        else:
            result.projects = self._to_models(result, normalized, NormalizedPipelineProject)
        result.extraction_data["record_count"] = result.record_count

    def classify_columns(
        self,
        result: PipelineResult,
        doc_type: DocumentType,
        headers: Sequence[str],
        samples: Sequence[RawTabularRecord],
    ) -> ColumnMapping:
        if self.extractor is not self.fallback:
            try:
                return self.extractor.classify_columns(doc_type, headers, samples)
            except SemanticServiceError as e:
                logger.warning("[data_bank] column classification fell back to deterministic: %s", e)
                result.warnings.append(safe_extraction_warning(e))
        return self.fallback.classify_columns(doc_type, headers, samples)

    def normalize_records(
        self,
        result: PipelineResult,
        doc_type: DocumentType,
        records: Sequence[RawTabularRecord],
        mapping: ColumnMapping,
    ) -> List[Dict[str, Any]]:
        """Normalize in fixed-size batches; a failed batch alone falls back to the deterministic normalizer."""
        out: List[Dict[str, Any]] = []
        size = self.config.batch_size
        fallback_batches = 0
        for start in range(0, len(records), size):
            batch = list(records[start:start + size])
            if self.extractor is not self.fallback:
                try:
                    out.extend(self.extractor.normalize_records(doc_type, batch, mapping))
                    continue
                except SemanticServiceError as e:
                    fallback_batches += 1
                    logger.warning(
                        "[data_bank] normalization batch start=%d size=%d fell back: %s", start, len(batch), e
                    )
            out.extend(self.fallback.normalize_records(doc_type, batch, mapping))
        if fallback_batches:
            result.warnings.append(
                f"Deterministic normalization used for {fallback_batches} batch(es) after semantic service errors"
            )
        return out

    def _to_models(self, result: PipelineResult, rows: List[Dict[str, Any]], model: Any) -> List[Any]:
        records = []
        for i, row in enumerate(rows):
            if not any(v is not None for v in row.values()):
                continue
            try:
                records.append(model.model_validate(row))
            except ValidationError as e:
                first = e.errors()[0]
                result.warnings.append(f"Row {i + 1} rejected: {first.get('msg')}")
        return records

    # ---- Underwriting model ----

    def underwriting_text(self, wb: Any) -> str:
        target = [ws for ws in wb.worksheets if any(kw in ws.title.lower() for kw in UNDERWRITING_SHEET_KEYWORDS)]
        if len(target) < self.config.underwriting_max_sheets:
            target += [ws for ws in wb.worksheets if ws not in target]
        parts: List[str] = []
        for ws in target[: self.config.underwriting_max_sheets]:
            lines = [f"=== Sheet: {ws.title} ==="]
            for row in sheet_rows(ws, self.config.underwriting_rows_per_sheet):
                cells = [cell_text(v) for v in row]
                if any(cells):
                    lines.append("\t".join(cells))
            parts.append("\n".join(lines))
        return "\n\n".join(parts)[: self.config.underwriting_max_chars]

    def _run_underwriting(self, result: PipelineResult, wb: Any) -> None:
        self._enter(result, PipelineStage.STRUCTURAL_PARSE)
        text = self.underwriting_text(wb)
        result.extraction_data["sheets"] = [ws.title for ws in wb.worksheets]
        if not text.strip():
            raise StructuralParseError("Underwriting model has no readable cells")

        # No column mapping for free-form models; the stage is recorded for a complete trail
        self._enter(result, PipelineStage.COLUMN_CLASSIFICATION)

        self._enter(result, PipelineStage.NORMALIZATION)
        try:
            data = self.extractor.extract_document(UNDERWRITING_INSTRUCTIONS, text)
        except SemanticServiceError as e:
            result.warnings.append(safe_extraction_warning(e, fallback_used=False))
            raise

        self._enter(result, PipelineStage.CROSS_FIELD_VALIDATION)
        model_warnings = data.get("warnings")
        if isinstance(model_warnings, list):
            result.warnings.extend(str(w) for w in model_warnings)
        result.underwriting = data
        result.extraction_data["underwriting"] = data
