from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# A row read straight off a worksheet: original header -> raw cell value.
RawTabularRecord = Dict[str, Any]

# Column-mapping sentinel for headers that carry no canonical field.
IGNORE_COLUMN = "SKIP"


class DocumentType(str, Enum):
    RENT_ROLL = "rent_roll"
    OPERATING_STATEMENT = "operating_statement"
    SALES_COMP_TRACKER = "sales_comp_tracker"
    PIPELINE_TRACKER = "pipeline_tracker"
    UNDERWRITING_MODEL = "underwriting_model"
    MARKET_RESEARCH = "market_research"
    OFFERING_MEMORANDUM = "offering_memorandum"
    BROKER_OPINION_OF_VALUE = "broker_opinion_of_value"
    UNKNOWN = "unknown"


class PdfDocumentType(str, Enum):
    OFFERING_MEMORANDUM = "OM"
    BROKER_OPINION_OF_VALUE = "BOV"
    UNSPECIFIED = "unspecified"


class ExtractionStatus(str, Enum):
    """Persisted status of an uploaded document (what the polling endpoint reports)."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStage(str, Enum):
    """Per-document extraction state machine. Terminal stages: completed, failed."""
    RECEIVED = "received"
    CLASSIFYING = "classifying"
    STRUCTURAL_PARSE = "structural_parse"
    COLUMN_CLASSIFICATION = "column_classification"
    NORMALIZATION = "normalization"
    CROSS_FIELD_VALIDATION = "cross_field_validation"
    COMPLETED = "completed"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    LEASE_UP = "lease_up"
    UNDER_CONSTRUCTION = "under_construction"
    PROPOSED = "proposed"
    DELIVERED = "delivered"
    UNKNOWN = "unknown"


Direction = Literal["positive", "negative", "neutral", "mixed"]
Magnitude = Literal["strong", "moderate", "slight"]
Confidence = Literal["high", "medium", "low"]


# ---- Extraction pipeline record stages ----


class ColumnMapping(BaseModel):
    """
    Header -> canonical field mapping, produced once per document.

    `source` records which strategy produced it ("semantic" or "deterministic").
    """
    fields: Dict[str, str] = Field(default_factory=dict)
    source: Literal["semantic", "deterministic"] = "deterministic"

    def canonical_for(self, header: str) -> str:
        return self.fields.get(header, IGNORE_COLUMN)

    def mapped_fields(self) -> List[str]:
        return sorted({f for f in self.fields.values() if f != IGNORE_COLUMN})

    def apply(self, record: RawTabularRecord) -> MappedRecord:
        """Re-key a raw row by canonical field, dropping ignored columns."""
        if not isinstance(record, dict):
            raise TypeError(f"Expected a raw tabular record (dict), got {type(record).__name__}")
        values: Dict[str, Any] = {}
        for header, value in record.items():
            field = self.canonical_for(header)
            if field == IGNORE_COLUMN:
                continue
            # First non-empty column wins when two headers map to the same field
            if values.get(field) in (None, ""):
                values[field] = value
        return MappedRecord(values=values)


class MappedRecord(BaseModel):
    """Raw cell values keyed by canonical field name (not yet typed)."""
    values: Dict[str, Any] = Field(default_factory=dict)

    def get(self, field: str, default: Any = None) -> Any:
        return self.values.get(field, default)


class NormalizedComp(BaseModel):
    """A comparable sale in canonical units. Cap rate and occupancy are decimals."""
    model_config = ConfigDict(validate_assignment=True)

    id: Optional[int] = None
    property_name: Optional[str] = None
    market: Optional[str] = None
    metro: Optional[str] = None
    submarket: Optional[str] = None
    county: Optional[str] = None
    state: Optional[str] = None
    address: Optional[str] = None
    property_type: Optional[str] = None
    sale_date: Optional[date] = None
    year_built: Optional[int] = None
    year_renovated: Optional[int] = None
    units: Optional[int] = None
    avg_unit_sf: Optional[float] = None
    avg_eff_rent: Optional[float] = None
    sale_price: Optional[float] = None
    price_per_unit: Optional[float] = None
    price_per_sf: Optional[float] = None
    cap_rate: Optional[float] = None
    cap_rate_qualifier: Optional[str] = None
    occupancy: Optional[float] = None
    buyer: Optional[str] = None
    seller: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("cap_rate")
    @classmethod
    def _cap_rate_is_decimal(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v > 1.0:
            raise ValueError(
                f"cap_rate must be stored as a decimal (got {v}); convert percentages exactly once"
            )
        return v

    @field_validator("occupancy")
    @classmethod
    def _occupancy_is_decimal(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v > 1.5:
            raise ValueError(
                f"occupancy must be stored as a decimal (got {v}); convert percentages exactly once"
            )
        return v


class NormalizedPipelineProject(BaseModel):
    id: Optional[int] = None
    project_name: Optional[str] = None
    address: Optional[str] = None
    county: Optional[str] = None
    metro: Optional[str] = None
    submarket: Optional[str] = None
    units: Optional[int] = None
    status: Optional[ProjectStatus] = None
    developer: Optional[str] = None
    delivery_quarter: Optional[str] = None
    start_quarter: Optional[str] = None
    property_type: Optional[str] = None


class SubjectProperty(BaseModel):
    """The fields of a property that comp matching and deal scoring read."""
    property_type: Optional[str] = None
    year_built: Optional[int] = None
    total_units: Optional[int] = None
    submarket: Optional[str] = None
    county: Optional[str] = None
    metro: Optional[str] = None
    cap_rate: Optional[float] = None
    price_per_unit: Optional[float] = None

    @field_validator("cap_rate")
    @classmethod
    def _cap_rate_is_decimal(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v > 1.0:
            raise ValueError(f"subject cap_rate must be a decimal such as 0.055 (got {v})")
        return v


class ScoredComp(BaseModel):
    comp: NormalizedComp
    relevance: float = Field(ge=0.0, le=1.0)
    geo_score: float = 0.0
    type_score: float = 0.0
    vintage_score: float = 0.0
    size_score: float = 0.0


# ---- Scoring results ----


class MetricScore(BaseModel):
    """One scored sub-metric. `score` is None when the metric had insufficient data."""
    score: Optional[float] = None
    weight: float = 0.0
    value: Optional[float] = None
    rationale: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class CompAnalysisResult(BaseModel):
    score: Optional[float] = None
    confidence: Confidence = "low"
    rationale: str = ""
    comps: List[ScoredComp] = Field(default_factory=list)
    metrics: Dict[str, MetricScore] = Field(default_factory=dict)


class SentimentSignal(BaseModel):
    """A qualitative market observation extracted from a research document."""
    signal_type: str = "other"
    direction: Direction = "neutral"
    magnitude: Magnitude = "moderate"
    geography_source_label: Optional[str] = None
    geography_metro: Optional[str] = None
    geography_submarket: Optional[str] = None
    time_reference: Optional[str] = None
    quantitative_value: Optional[str] = None
    narrative_summary: str
    verbatim_excerpt: Optional[str] = None
    confidence: Confidence = "medium"
    # Carried from the source document for recency weighting and attribution
    document_id: Optional[int] = None
    publication_date: Optional[str] = None
    source_label: Optional[str] = None


class SentimentResult(BaseModel):
    score: Optional[int] = Field(default=None, ge=-10, le=10)
    rationale: Optional[str] = None
    signal_count: int = 0
    sources: List[str] = Field(default_factory=list)
    staleness_days: int = 0


class ScoringWeights(BaseModel):
    """Two-level deal score weights. Each level must sum to exactly 100."""
    economic_occupancy_weight: int = Field(default=35, ge=0, le=100)
    opex_ratio_weight: int = Field(default=30, ge=0, le=100)
    supply_pipeline_weight: int = Field(default=35, ge=0, le=100)
    layer1_weight: int = Field(default=30, ge=0, le=100)
    layer2_weight: int = Field(default=20, ge=0, le=100)
    layer3_weight: int = Field(default=50, ge=0, le=100)
    preset_name: Optional[str] = None


class ScoringWeightsUpdate(BaseModel):
    economic_occupancy_weight: Optional[int] = None
    opex_ratio_weight: Optional[int] = None
    supply_pipeline_weight: Optional[int] = None
    layer1_weight: Optional[int] = None
    layer2_weight: Optional[int] = None
    layer3_weight: Optional[int] = None


class LayerScore(BaseModel):
    score: Optional[float] = None
    weight: int = 0
    weighted_contribution: Optional[float] = None
    metrics: Dict[str, MetricScore] = Field(default_factory=dict)


class DealScoreInput(BaseModel):
    """Everything the composer needs about a deal; missing inputs exclude their metric."""
    subject: SubjectProperty = Field(default_factory=SubjectProperty)
    economic_occupancy: Optional[float] = Field(default=None, description="Percent, e.g. 92.5")
    opex_ratio: Optional[float] = Field(default=None, description="Percent of GSR, e.g. 44.0")
    pipeline_projects: List[NormalizedPipelineProject] = Field(default_factory=list)
    submarket_inventory_units: Optional[int] = None
    sentiment: Optional[SentimentResult] = None
    comp_analysis: Optional[CompAnalysisResult] = None


class DealScoreResult(BaseModel):
    total_score: Optional[float] = None
    confidence: Confidence = "low"
    data_coverage: float = Field(default=0.0, ge=0.0, le=1.0)
    layers: Dict[str, LayerScore] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


# ---- Spreadsheet extraction outputs ----


class RentRollUnit(BaseModel):
    unit_number: Optional[str] = None
    unit_type: Optional[str] = None
    sqft: Optional[float] = None
    status: Optional[str] = None
    is_occupied: bool = True
    resident_name: Optional[str] = None
    move_in_date: Optional[date] = None
    lease_start: Optional[date] = None
    lease_end: Optional[date] = None
    market_rent: Optional[float] = None
    in_place_rent: float = 0.0
    charge_details: Dict[str, float] = Field(default_factory=dict)


class RentRollSummary(BaseModel):
    total_units: int = 0
    occupied_units: int = 0
    vacant_units: int = 0
    physical_occupancy_pct: Optional[float] = None
    avg_market_rent: Optional[float] = None
    avg_in_place_rent: Optional[float] = None
    avg_sqft: Optional[float] = None
    loss_to_lease_pct: Optional[float] = None


class RentRollExtraction(BaseModel):
    document_date: Optional[date] = None
    property_name: Optional[str] = None
    units: List[RentRollUnit] = Field(default_factory=list)
    summary: RentRollSummary = Field(default_factory=RentRollSummary)
    warnings: List[str] = Field(default_factory=list)


class T12Extraction(BaseModel):
    fiscal_year: Optional[int] = None
    property_name: Optional[str] = None
    summary: Dict[str, float] = Field(default_factory=dict)
    monthly: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    line_items: Dict[str, Dict[str, Optional[float]]] = Field(default_factory=dict)
    unmatched_line_items: List[str] = Field(default_factory=list)
    expense_ratio_pct: Optional[float] = None
    noi_margin_pct: Optional[float] = None
    warnings: List[str] = Field(default_factory=list)


# ---- PDF (OM/BOV) extraction outputs ----


class FinancialPeriod(BaseModel):
    period_label: Optional[str] = None
    gsr: Optional[float] = None
    vacancy: Optional[float] = None
    concessions: Optional[float] = None
    bad_debt: Optional[float] = None
    non_revenue_units: Optional[float] = None
    total_opex: Optional[float] = None
    opex_components: Dict[str, Optional[float]] = Field(default_factory=dict)
    noi: Optional[float] = None


class PeriodMetrics(BaseModel):
    """Derived per-period ratios. None when GSR is missing or not positive."""
    economic_occupancy_pct: Optional[float] = None
    opex_ratio_pct: Optional[float] = None
    formula_econ_occ: Optional[str] = None
    formula_opex: Optional[str] = None


class BovCapRate(BaseModel):
    cap_rate_type: Optional[str] = None
    cap_rate_value: Optional[float] = None
    noi_basis: Optional[float] = None
    qualifier: Optional[str] = None


class BovPricingTier(BaseModel):
    pricing_tier_id: Optional[str] = None
    tier_label: Optional[str] = None
    tier_type: Optional[str] = None
    pricing: Optional[float] = None
    price_per_unit: Optional[float] = None
    price_per_sf: Optional[float] = None
    cap_rates: List[BovCapRate] = Field(default_factory=list)
    loan_assumptions: Dict[str, Optional[float]] = Field(default_factory=dict)
    return_metrics: Dict[str, Optional[float]] = Field(default_factory=dict)
    terminal_assumptions: Dict[str, Optional[float]] = Field(default_factory=dict)


class PdfPropertyInfo(BaseModel):
    deal_name: Optional[str] = None
    property_address: Optional[str] = None
    property_type: Optional[str] = None
    submarket: Optional[str] = None
    year_built: Optional[int] = None
    total_units: Optional[int] = None
    total_sf: Optional[float] = None


class PdfExtractionResult(BaseModel):
    """Response from POST /api/v1/extract/pdf."""
    document_type: PdfDocumentType = PdfDocumentType.UNSPECIFIED
    detected_type: PdfDocumentType = PdfDocumentType.UNSPECIFIED
    confidence: Optional[str] = None
    property_info: PdfPropertyInfo = Field(default_factory=PdfPropertyInfo)
    average_rents: Dict[str, Optional[float]] = Field(default_factory=dict)
    financials_by_period: Dict[str, FinancialPeriod] = Field(default_factory=dict)
    calculated_metrics: Dict[str, PeriodMetrics] = Field(default_factory=dict)
    bov_pricing_tiers: List[BovPricingTier] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    text_length: int = 0
    truncated: bool = False
    warnings: List[str] = Field(default_factory=list)


# ---- Market research extraction ----


class MarketResearchExtraction(BaseModel):
    source_firm: Optional[str] = None
    publication_date: Optional[str] = None
    geographies_covered: List[str] = Field(default_factory=list)
    comps: List[NormalizedComp] = Field(default_factory=list)
    signals: List[SentimentSignal] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---- Data bank document API ----


class DataBankDocumentResponse(BaseModel):
    """Polling view of an uploaded document."""
    id: int
    filename: str
    document_type: str
    extraction_status: ExtractionStatus
    pipeline_stage: Optional[PipelineStage] = None
    record_count: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    resubmittable: bool = False
