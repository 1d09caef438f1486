"""
Data bank and scoring API.

Uploads run through the extraction job in the background; the polling
endpoint only reads. Every query is scoped to the caller's X-User-Id.
"""
from __future__ import annotations

import asyncio
from typing import Any, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from auth import require_user
from db.session import get_db, get_session_factory
from db.models import (
    DataBankDocument,
    MarketSentimentSignal,
    PipelineProject as PipelineProjectModel,
    SalesComp,
    SubmarketInventory,
    UserScoringWeights,
)
from engine.comp_scoring import analyze_comps
from engine.deal_score import WeightValidationError, apply_weight_update, compose_deal_score, preset_weights
from engine.sentiment import aggregate_sentiment
from jobs.tasks import enqueue_document, is_resubmittable
from models import (
    CompAnalysisResult,
    DataBankDocumentResponse,
    DealScoreInput,
    DealScoreResult,
    DocumentType,
    ExtractionStatus,
    NormalizedComp,
    NormalizedPipelineProject,
    PdfExtractionResult,
    RentRollExtraction,
    ScoringWeights,
    ScoringWeightsUpdate,
    SentimentResult,
    SentimentSignal,
    SubjectProperty,
    T12Extraction,
)
from services.pdf_extraction import ExtractionError, extract_pdf
from services.semantic_extractor import SemanticExtractor, get_semantic_extractor
from services.spreadsheet_extraction import extract_rent_roll, extract_t12
from services.tabular_parser import StructuralParseError, open_workbook

router = APIRouter(prefix="/api/v1", tags=["api"])

SPREADSHEET_EXTENSIONS = (".xlsx", ".xlsm")
UPLOAD_EXTENSIONS = SPREADSHEET_EXTENSIONS + (".pdf",)


# --- Request/response schemas ---

class SentimentRequest(BaseModel):
    metro: Optional[str] = None
    submarket: Optional[str] = None


class DealScoreRequest(BaseModel):
    subject: SubjectProperty = Field(default_factory=SubjectProperty)
    economic_occupancy: Optional[float] = None
    opex_ratio: Optional[float] = None


class InventoryUpsert(BaseModel):
    submarket: str
    metro: Optional[str] = None
    total_units: int = Field(gt=0)


def get_extractor() -> SemanticExtractor:
    return get_semantic_extractor()


async def _read_upload(file: UploadFile, allowed: tuple[str, ...]) -> bytes:
    name = (file.filename or "").lower()
    if not name:
        raise HTTPException(status_code=400, detail="Missing filename")
    if not name.endswith(allowed):
        raise HTTPException(status_code=400, detail=f"File must be one of: {', '.join(allowed)}")
    content = await file.read()
    if len(content) == 0:
        raise HTTPException(status_code=400, detail="Empty file")
    return content


def _owned_document(db: Session, doc_id: int, user_id: str) -> DataBankDocument:
    doc = db.query(DataBankDocument).filter(
        DataBankDocument.id == doc_id, DataBankDocument.user_id == user_id
    ).first()
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    return doc


def _document_response(doc: DataBankDocument) -> DataBankDocumentResponse:
    return DataBankDocumentResponse(
        id=doc.id,
        filename=doc.filename,
        document_type=doc.document_type,
        extraction_status=doc.extraction_status,
        pipeline_stage=doc.pipeline_stage,
        record_count=doc.record_count,
        warnings=list(doc.warnings or []),
        error=doc.error,
        resubmittable=is_resubmittable(doc),
    )


# --- Data bank ---

@router.post("/data-bank/upload", response_model=DataBankDocumentResponse, status_code=202)
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    document_type: Optional[str] = Form(None),
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
    session_factory: Any = Depends(get_session_factory),
):
    content = await _read_upload(file, UPLOAD_EXTENSIONS)
    if document_type is not None:
        try:
            DocumentType(document_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown document_type: {document_type}")
    doc = DataBankDocument(
        user_id=user_id,
        filename=file.filename,
        content_type=file.content_type,
        file_bytes=content,
        document_type=document_type or DocumentType.UNKNOWN.value,
        extraction_status=ExtractionStatus.PENDING.value,
        warnings=[],
    )
    db.add(doc)
    db.commit()
    db.refresh(doc)
    enqueue_document(background_tasks, doc.id, session_factory, document_type)
    return _document_response(doc)


@router.get("/data-bank/documents", response_model=List[DataBankDocumentResponse])
def list_documents(user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    docs = db.query(DataBankDocument).filter(DataBankDocument.user_id == user_id).order_by(
        DataBankDocument.created_at.desc()
    ).all()
    return [_document_response(d) for d in docs]


@router.get("/data-bank/documents/{doc_id}", response_model=DataBankDocumentResponse)
def get_document(doc_id: int, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    return _document_response(_owned_document(db, doc_id, user_id))


@router.get("/data-bank/documents/{doc_id}/extraction")
def get_document_extraction(doc_id: int, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    doc = _owned_document(db, doc_id, user_id)
    return {"id": doc.id, "extraction_status": doc.extraction_status, "extraction_data": doc.extraction_data or {}}


@router.post("/data-bank/documents/{doc_id}/reprocess", response_model=DataBankDocumentResponse, status_code=202)
def reprocess_document(
    doc_id: int,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
    session_factory: Any = Depends(get_session_factory),
):
    doc = _owned_document(db, doc_id, user_id)
    if not is_resubmittable(doc):
        raise HTTPException(status_code=409, detail=f"Document is {doc.extraction_status}; wait for it to finish")
    doc.extraction_status = ExtractionStatus.PENDING.value
    doc.pipeline_stage = None
    doc.error = None
    db.commit()
    requested = doc.document_type if doc.document_type != DocumentType.UNKNOWN.value else None
    enqueue_document(background_tasks, doc.id, session_factory, requested, refresh=True)
    return _document_response(doc)


@router.delete("/data-bank/documents/{doc_id}")
def delete_document(doc_id: int, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    doc = _owned_document(db, doc_id, user_id)
    db.delete(doc)
    db.commit()
    return {"deleted": doc_id}


@router.put("/data-bank/inventory")
def upsert_inventory(payload: InventoryUpsert, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    row = db.query(SubmarketInventory).filter(
        SubmarketInventory.user_id == user_id, SubmarketInventory.submarket == payload.submarket
    ).first()
    if row is None:
        row = SubmarketInventory(user_id=user_id, submarket=payload.submarket)
        db.add(row)
    row.metro = payload.metro
    row.total_units = payload.total_units
    db.commit()
    return {"submarket": row.submarket, "metro": row.metro, "total_units": row.total_units}


# --- Direct extraction ---

@router.post("/extract/pdf", response_model=PdfExtractionResult)
async def extract_pdf_document(
    file: UploadFile = File(...),
    user_id: str = Depends(require_user),
    extractor: SemanticExtractor = Depends(get_extractor),
):
    content = await _read_upload(file, (".pdf",))
    try:
        # pypdf and the semantic service round-trip both block
        return await asyncio.to_thread(extract_pdf, content, extractor, filename=file.filename or "")
    except ExtractionError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@router.post("/extract/rent-roll", response_model=RentRollExtraction)
async def extract_rent_roll_document(file: UploadFile = File(...), user_id: str = Depends(require_user)):
    content = await _read_upload(file, SPREADSHEET_EXTENSIONS)
    try:
        return extract_rent_roll(open_workbook(content), filename=file.filename or "")
    except StructuralParseError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@router.post("/extract/t12", response_model=T12Extraction)
async def extract_t12_document(file: UploadFile = File(...), user_id: str = Depends(require_user)):
    content = await _read_upload(file, SPREADSHEET_EXTENSIONS)
    try:
        return extract_t12(open_workbook(content), filename=file.filename or "")
    except StructuralParseError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


# --- Scoring ---

def _user_comps(db: Session, user_id: str) -> List[NormalizedComp]:
    rows = db.query(SalesComp).filter(SalesComp.user_id == user_id).all()
    return [NormalizedComp.model_validate(r, from_attributes=True) for r in rows]


def _user_signals(db: Session, user_id: str) -> List[SentimentSignal]:
    rows = (
        db.query(MarketSentimentSignal, DataBankDocument)
        .join(DataBankDocument, MarketSentimentSignal.document_id == DataBankDocument.id)
        .filter(MarketSentimentSignal.user_id == user_id)
        .all()
    )
    signals = []
    for row, doc in rows:
        signal = SentimentSignal.model_validate(row, from_attributes=True)
        signal.publication_date = doc.publication_date
        signal.source_label = doc.source_firm or doc.filename
        signals.append(signal)
    return signals


def _user_weights(db: Session, user_id: str) -> ScoringWeights:
    row = db.query(UserScoringWeights).filter(UserScoringWeights.user_id == user_id).first()
    if row is None:
        return ScoringWeights()
    return ScoringWeights.model_validate(row, from_attributes=True)


def _save_weights(db: Session, user_id: str, weights: ScoringWeights) -> ScoringWeights:
    row = db.query(UserScoringWeights).filter(UserScoringWeights.user_id == user_id).first()
    if row is None:
        row = UserScoringWeights(user_id=user_id)
        db.add(row)
    for key, value in weights.model_dump().items():
        setattr(row, key, value)
    db.commit()
    return weights


def _pipeline_inputs(db: Session, user_id: str, submarket: Optional[str]) -> tuple[List[NormalizedPipelineProject], Optional[int]]:
    if not submarket:
        return [], None
    projects = db.query(PipelineProjectModel).filter(
        PipelineProjectModel.user_id == user_id,
        or_(PipelineProjectModel.submarket == submarket, PipelineProjectModel.metro == submarket),
    ).all()
    inventory = db.query(SubmarketInventory).filter(
        SubmarketInventory.user_id == user_id, SubmarketInventory.submarket == submarket
    ).first()
    return (
        [NormalizedPipelineProject.model_validate(p, from_attributes=True) for p in projects],
        inventory.total_units if inventory else None,
    )


@router.post("/scoring/comps", response_model=CompAnalysisResult)
def score_comps(subject: SubjectProperty, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    return analyze_comps(subject, _user_comps(db, user_id))


@router.post("/scoring/sentiment", response_model=SentimentResult)
def score_sentiment(payload: SentimentRequest, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    return aggregate_sentiment(_user_signals(db, user_id), metro=payload.metro, submarket=payload.submarket)


@router.post("/scoring/deal", response_model=DealScoreResult)
def score_deal(payload: DealScoreRequest, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    subject = payload.subject
    projects, inventory_units = _pipeline_inputs(db, user_id, subject.submarket)
    inputs = DealScoreInput(
        subject=subject,
        economic_occupancy=payload.economic_occupancy,
        opex_ratio=payload.opex_ratio,
        pipeline_projects=projects,
        submarket_inventory_units=inventory_units,
        sentiment=aggregate_sentiment(_user_signals(db, user_id), metro=subject.metro, submarket=subject.submarket),
        comp_analysis=analyze_comps(subject, _user_comps(db, user_id)),
    )
    try:
        return compose_deal_score(inputs, _user_weights(db, user_id))
    except WeightValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.get("/scoring/weights", response_model=ScoringWeights)
def get_weights(user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    return _user_weights(db, user_id)


@router.put("/scoring/weights", response_model=ScoringWeights)
def update_weights(payload: ScoringWeightsUpdate, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    try:
        weights = apply_weight_update(_user_weights(db, user_id), payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _save_weights(db, user_id, weights)


@router.post("/scoring/weights/preset/{name}", response_model=ScoringWeights)
def apply_weight_preset(name: str, user_id: str = Depends(require_user), db: Session = Depends(get_db)):
    try:
        weights = preset_weights(name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _save_weights(db, user_id, weights)
