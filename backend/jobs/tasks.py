"""
Background job tasks: data bank document extraction.
Run worker from backend dir: celery -A jobs.tasks worker -l info
Requires: DATABASE_URL; REDIS_URL for the Celery queue; OPENAI_API_KEY for semantic extraction.
Without Celery the API runs the same function in FastAPI BackgroundTasks.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

# Ensure backend root is on path for DB imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from cache.disk_cache import clear_cached_extraction  # noqa: E402
from db.models import DataBankDocument, MarketSentimentSignal, PipelineProject, SalesComp, utcnow  # noqa: E402
from models import DocumentType, ExtractionStatus, NormalizedComp, PdfDocumentType, PipelineStage  # noqa: E402
from services.comp_validator import validate_all  # noqa: E402
from services.data_bank_pipeline import DataBankPipeline, PipelineResult  # noqa: E402
from services.document_classifier import detect_pdf_subtype  # noqa: E402
from services.market_research import extract_market_research  # noqa: E402
from services.pdf_extraction import ExtractionError, extract_pdf, extract_pdf_text  # noqa: E402
from services.semantic_extractor import SemanticExtractor, get_semantic_extractor  # noqa: E402

logger = logging.getLogger(__name__)

STALE_MINUTES = int(os.environ.get("DATA_BANK_STALE_MINUTES", "30"))
STALE_WARNING = "Processing did not finish; the document can be re-submitted"

PDF_DOCUMENT_TYPES = (
    DocumentType.MARKET_RESEARCH,
    DocumentType.OFFERING_MEMORANDUM,
    DocumentType.BROKER_OPINION_OF_VALUE,
)
CACHE_KINDS = ("pdf", "market_research")

# Celery app (optional - only if REDIS_URL and celery are installed)
try:
    from celery import Celery
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    celery_app = Celery("data_bank", broker=REDIS_URL, backend=REDIS_URL)
    celery_app.conf.task_routes = {"jobs.tasks.*": {"queue": "data_bank"}}
except ImportError:
    celery_app = None

SessionFactory = Callable[[], Session]
SetStage = Callable[[PipelineStage], None]


def _default_session_factory() -> Session:
    from db.session import SessionLocal
    return SessionLocal()


# ---- Crash recovery ----


def is_resubmittable(doc: DataBankDocument, now: Optional[datetime] = None, stale_minutes: int = STALE_MINUTES) -> bool:
    """Terminal documents, and documents stuck in processing past the stale bound, may be re-submitted."""
    if doc.extraction_status in (ExtractionStatus.COMPLETED.value, ExtractionStatus.FAILED.value):
        return True
    if doc.extraction_status != ExtractionStatus.PROCESSING.value:
        return False
    now = now or utcnow()
    last = doc.updated_at or doc.created_at
    return last is not None and now - last > timedelta(minutes=stale_minutes)


def mark_stale_documents(db: Session, older_than: Optional[timedelta] = None, user_id: Optional[str] = None) -> int:
    """Flip documents abandoned in processing to failed with a warning. Returns how many were flipped."""
    cutoff = utcnow() - (older_than or timedelta(minutes=STALE_MINUTES))
    q = db.query(DataBankDocument).filter(
        DataBankDocument.extraction_status == ExtractionStatus.PROCESSING.value,
        DataBankDocument.updated_at < cutoff,
    )
    if user_id is not None:
        q = q.filter(DataBankDocument.user_id == user_id)
    stale = q.all()
    for doc in stale:
        doc.extraction_status = ExtractionStatus.FAILED.value
        doc.pipeline_stage = PipelineStage.FAILED.value
        doc.warnings = list(doc.warnings or []) + [STALE_WARNING]
        doc.error = doc.error or "Processing timed out"
    if stale:
        db.commit()
        logger.warning("[data_bank] marked %d stale document(s) failed", len(stale))
    return len(stale)


# ---- Persistence (delete-then-insert per document) ----


def _clear_derived_rows(db: Session, doc_id: int) -> None:
    db.query(SalesComp).filter(SalesComp.document_id == doc_id).delete(synchronize_session=False)
    db.query(PipelineProject).filter(PipelineProject.document_id == doc_id).delete(synchronize_session=False)
    db.query(MarketSentimentSignal).filter(MarketSentimentSignal.document_id == doc_id).delete(
        synchronize_session=False
    )


def _comp_row(doc: DataBankDocument, comp: NormalizedComp) -> SalesComp:
    return SalesComp(document_id=doc.id, user_id=doc.user_id, **comp.model_dump(exclude={"id"}))


def _persist_pipeline_result(db: Session, doc: DataBankDocument, result: PipelineResult) -> None:
    _clear_derived_rows(db, doc.id)
    for comp in result.comps:
        db.add(_comp_row(doc, comp))
    for project in result.projects:
        values = project.model_dump(exclude={"id"})
        values["status"] = project.status.value if project.status is not None else None
        db.add(PipelineProject(document_id=doc.id, user_id=doc.user_id, **values))

    doc.document_type = result.document_type.value
    doc.pipeline_stage = result.stage.value
    doc.extraction_data = result.extraction_data
    doc.warnings = list(result.warnings)
    doc.error = result.error
    if result.error is None:
        doc.extraction_status = ExtractionStatus.COMPLETED.value
        doc.record_count = result.record_count
    else:
        doc.extraction_status = ExtractionStatus.FAILED.value
        doc.record_count = 0


def _fail_document(db: Session, doc: DataBankDocument, error: Exception) -> None:
    """Record a handled extraction failure at the stage the document had reached."""
    failed_stage = doc.pipeline_stage
    logger.warning("[data_bank] document=%s failed at stage=%s error=%s", doc.id, failed_stage, error)
    _clear_derived_rows(db, doc.id)
    doc.extraction_status = ExtractionStatus.FAILED.value
    doc.pipeline_stage = PipelineStage.FAILED.value
    doc.error = str(error)
    doc.warnings = [str(error)]
    doc.extraction_data = {
        "document_type": doc.document_type,
        "error": str(error),
        "failed_stage": failed_stage,
    }
    doc.record_count = 0


def _complete_document(doc: DataBankDocument, extraction_data: Dict[str, Any], warnings: List[str], record_count: int) -> None:
    doc.extraction_data = {**extraction_data, "warnings": warnings}
    doc.warnings = warnings
    doc.error = None
    doc.record_count = record_count
    doc.extraction_status = ExtractionStatus.COMPLETED.value
    doc.pipeline_stage = PipelineStage.COMPLETED.value


# ---- PDF documents ----


def classify_pdf(text: str) -> DocumentType:
    """OM and BOV go to property extraction; any other PDF is read as broker research."""
    subtype = detect_pdf_subtype(text)
    if subtype == PdfDocumentType.OFFERING_MEMORANDUM:
        return DocumentType.OFFERING_MEMORANDUM
    if subtype == PdfDocumentType.BROKER_OPINION_OF_VALUE:
        return DocumentType.BROKER_OPINION_OF_VALUE
    return DocumentType.MARKET_RESEARCH


def _run_market_research(
    db: Session, doc: DataBankDocument, extractor: SemanticExtractor, text: str, set_stage: SetStage
) -> None:
    extraction = extract_market_research(
        doc.file_bytes or b"", extractor, doc.filename, text=text, on_stage=set_stage,
    )

    set_stage(PipelineStage.CROSS_FIELD_VALIDATION)
    comps, repair_warnings = validate_all(extraction.comps)
    _clear_derived_rows(db, doc.id)
    for comp in comps:
        db.add(_comp_row(doc, comp))
    for signal in extraction.signals:
        db.add(MarketSentimentSignal(
            document_id=doc.id,
            user_id=doc.user_id,
            **signal.model_dump(exclude={"document_id", "publication_date", "source_label"}),
        ))
    doc.source_firm = extraction.source_firm
    doc.publication_date = extraction.publication_date
    _complete_document(
        doc,
        {
            "document_type": DocumentType.MARKET_RESEARCH.value,
            "source_firm": extraction.source_firm,
            "publication_date": extraction.publication_date,
            "geographies_covered": extraction.geographies_covered,
            "comp_count": len(comps),
            "signal_count": len(extraction.signals),
        },
        extraction.warnings + repair_warnings,
        len(comps) + len(extraction.signals),
    )


def _run_property_pdf(
    db: Session,
    doc: DataBankDocument,
    extractor: SemanticExtractor,
    doc_type: DocumentType,
    text: str,
    set_stage: SetStage,
) -> None:
    subtype = (
        PdfDocumentType.BROKER_OPINION_OF_VALUE
        if doc_type == DocumentType.BROKER_OPINION_OF_VALUE
        else PdfDocumentType.OFFERING_MEMORANDUM
    )
    result = extract_pdf(
        doc.file_bytes or b"", extractor, doc.filename, subtype=subtype, text=text, on_stage=set_stage,
    )

    set_stage(PipelineStage.CROSS_FIELD_VALIDATION)
    warnings = list(result.warnings)
    for period in result.financials_by_period:
        if period not in result.calculated_metrics:
            warnings.append(f"Period {period}: no gross scheduled rent, metrics not derived")
    if result.missing_fields:
        warnings.append(f"Missing fields: {', '.join(result.missing_fields)}")
    _clear_derived_rows(db, doc.id)
    _complete_document(
        doc,
        {"document_type": doc_type.value, "pdf_extraction": result.model_dump(mode="json")},
        warnings,
        len(result.financials_by_period) + len(result.bov_pricing_tiers),
    )


def _run_pdf_document(
    db: Session,
    doc: DataBankDocument,
    extractor: SemanticExtractor,
    requested: Optional[DocumentType],
    set_stage: SetStage,
) -> None:
    set_stage(PipelineStage.CLASSIFYING)
    try:
        text = extract_pdf_text(doc.file_bytes or b"")
        doc_type = requested or classify_pdf(text)
        doc.document_type = doc_type.value
        if doc_type not in PDF_DOCUMENT_TYPES:
            raise ExtractionError(f"Unsupported document type for PDF: {doc_type.value}")

        set_stage(PipelineStage.STRUCTURAL_PARSE)
        if doc_type == DocumentType.MARKET_RESEARCH:
            _run_market_research(db, doc, extractor, text, set_stage)
        else:
            _run_property_pdf(db, doc, extractor, doc_type, text, set_stage)
    except ExtractionError as e:
        _fail_document(db, doc, e)


def process_data_bank_document(
    doc_id: int,
    session_factory: Optional[SessionFactory] = None,
    extractor: Optional[SemanticExtractor] = None,
    document_type: Optional[str] = None,
    refresh: bool = False,
) -> Optional[str]:
    """
    Run one uploaded document to a terminal state in its own session.
    `refresh` drops cached PDF extractions for the file first (reprocess).
    Returns the final extraction status, or None when the document no longer exists.
    """
    db = (session_factory or _default_session_factory)()
    try:
        doc = db.query(DataBankDocument).filter(DataBankDocument.id == doc_id).first()
        if doc is None:
            logger.warning("[data_bank] document=%s not found", doc_id)
            return None
        doc.extraction_status = ExtractionStatus.PROCESSING.value
        doc.pipeline_stage = PipelineStage.RECEIVED.value
        doc.error = None
        db.commit()

        def set_stage(stage: PipelineStage) -> None:
            doc.pipeline_stage = stage.value
            db.commit()

        extractor = extractor or get_semantic_extractor()
        requested = DocumentType(document_type) if document_type else None
        if requested == DocumentType.UNKNOWN:
            requested = None
        is_pdf = doc.filename.lower().endswith(".pdf")

        if is_pdf:
            if refresh:
                for kind in CACHE_KINDS:
                    clear_cached_extraction(doc.file_bytes or b"", kind)
            _run_pdf_document(db, doc, extractor, requested, set_stage)
        else:
            pipeline = DataBankPipeline(extractor, on_stage=set_stage)
            result = pipeline.run(doc.filename, doc.file_bytes or b"", document_type=requested)
            _persist_pipeline_result(db, doc, result)
        db.commit()
        logger.info(
            "[data_bank] document=%s status=%s records=%s", doc.id, doc.extraction_status, doc.record_count,
        )
        return doc.extraction_status
    except Exception as e:
        # Last-resort guard: the row must not be left in processing
        db.rollback()
        logger.exception("[data_bank] document=%s crashed", doc_id)
        doc = db.query(DataBankDocument).filter(DataBankDocument.id == doc_id).first()
        if doc is not None:
            doc.extraction_status = ExtractionStatus.FAILED.value
            doc.pipeline_stage = PipelineStage.FAILED.value
            doc.error = str(e)
            db.commit()
        return ExtractionStatus.FAILED.value
    finally:
        db.close()


if celery_app is not None:

    @celery_app.task(bind=True)
    def data_bank_extraction_task(self, doc_id: int, document_type: Optional[str] = None, refresh: bool = False):
        status = process_data_bank_document(doc_id, document_type=document_type, refresh=refresh)
        return {"document_id": doc_id, "status": status}
else:
    data_bank_extraction_task = None


def enqueue_document(
    background_tasks: Any,
    doc_id: int,
    session_factory: SessionFactory,
    document_type: Optional[str] = None,
    refresh: bool = False,
) -> str:
    """
    Hand a document to the Celery queue when a broker is configured, else to
    FastAPI background tasks. Returns which runner was used.
    """
    if data_bank_extraction_task is not None and os.environ.get("REDIS_URL"):
        data_bank_extraction_task.delay(doc_id, document_type, refresh)
        return "celery"
    background_tasks.add_task(process_data_bank_document, doc_id, session_factory, None, document_type, refresh)
    return "background"
