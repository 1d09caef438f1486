"""
Document type detection from content.

Spreadsheets: sheet-name keyword hits (3 points each) plus header keyword hits
in the first rows of every sheet (2 points each), per candidate type. Highest
nonzero score wins; ties go to declaration order unless the filename names
exactly one of the tied types.

PDFs: offering memorandum vs broker opinion of value by weighted phrase hits
in the body text, with a minimum score.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from openpyxl.workbook.workbook import Workbook

from models import DocumentType, PdfDocumentType
from services.tabular_parser import cell_text, sheet_rows

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypeVocabulary:
    doc_type: DocumentType
    sheet_keywords: tuple[str, ...]
    header_keywords: tuple[str, ...]


@dataclass(frozen=True)
class ClassifierVocabulary:
    """Per-type vocabularies in declaration (tie-break) order. Header lists are disjoint across types."""
    types: tuple[TypeVocabulary, ...]
    sheet_weight: int = 3
    header_weight: int = 2
    header_scan_rows: int = 15

    def for_type(self, doc_type: DocumentType) -> Optional[TypeVocabulary]:
        return next((t for t in self.types if t.doc_type == doc_type), None)


DEFAULT_CLASSIFIER_VOCABULARY = ClassifierVocabulary(
    types=(
        TypeVocabulary(
            DocumentType.RENT_ROLL,
            sheet_keywords=("rent roll", "rentroll", "roster", "unit detail", "tenant"),
            header_keywords=(
                "sqft", "sq ft", "lease start", "lease end", "market rent", "resident",
                "tenant", "move in", "move-in", "occupied", "vacant", "charge code", "unit type",
            ),
        ),
        TypeVocabulary(
            DocumentType.OPERATING_STATEMENT,
            sheet_keywords=("t12", "t-12", "operating", "financials", "income", "statement", "p&l"),
            header_keywords=(
                "january", "february", "march", "april", "june", "july", "august",
                "september", "october", "november", "december",
                "gross potential rent", "total operating expenses", "payroll", "bad debt",
                "repairs", "concessions",
            ),
        ),
        TypeVocabulary(
            DocumentType.SALES_COMP_TRACKER,
            sheet_keywords=("comp", "comparable", "sales", "transaction", "trade", "closed"),
            header_keywords=(
                "property name", "sale price", "price per unit", "price/unit", "buyer", "seller",
                "sale date", "close date", "closing date", "price per sf", "$/sf", "$/unit", "vintage",
            ),
        ),
        TypeVocabulary(
            DocumentType.PIPELINE_TRACKER,
            sheet_keywords=("pipeline", "supply", "construction", "delivery", "development", "proposed"),
            header_keywords=(
                "project name", "developer", "delivery", "lease up", "lease-up",
                "under construction", "proposed", "completion", "start date",
            ),
        ),
        TypeVocabulary(
            DocumentType.UNDERWRITING_MODEL,
            sheet_keywords=(
                "summary", "proforma", "pro forma", "cash flow", "returns", "assumptions",
                "underwriting", "model", "output",
            ),
            header_keywords=(
                "irr", "dscr", "ltv", "equity multiple", "cash on cash", "reversion",
                "exit cap", "hold period", "debt service", "going-in",
            ),
        ),
    ),
)


def score_workbook(wb: Workbook, vocabulary: ClassifierVocabulary = DEFAULT_CLASSIFIER_VOCABULARY) -> Dict[DocumentType, int]:
    scores: Dict[DocumentType, int] = {t.doc_type: 0 for t in vocabulary.types}
    for ws in wb.worksheets:
        name = ws.title.lower()
        cells = [cell_text(v).lower() for row in sheet_rows(ws, vocabulary.header_scan_rows) for v in row]
        blob = " ".join(c for c in cells if c)
        for tv in vocabulary.types:
            scores[tv.doc_type] += vocabulary.sheet_weight * sum(1 for kw in tv.sheet_keywords if kw in name)
            scores[tv.doc_type] += vocabulary.header_weight * sum(1 for kw in tv.header_keywords if kw in blob)
    return scores


def classify_workbook(
    wb: Workbook,
    filename: str = "",
    vocabulary: ClassifierVocabulary = DEFAULT_CLASSIFIER_VOCABULARY,
) -> DocumentType:
    scores = score_workbook(wb, vocabulary)
    best_score = max(scores.values(), default=0)
    if best_score <= 0:
        logger.info("[classify] scores=%s -> unknown", {k.value: v for k, v in scores.items()})
        return DocumentType.UNKNOWN

    tied = [t.doc_type for t in vocabulary.types if scores[t.doc_type] == best_score]
    result = tied[0]
    if len(tied) > 1 and filename:
        name = filename.lower()
        named = [t for t in tied if any(kw in name for kw in vocabulary.for_type(t).sheet_keywords)]
        if len(named) == 1:
            result = named[0]
    logger.info("[classify] scores=%s -> %s", {k.value: v for k, v in scores.items()}, result.value)
    return result


# ---- PDF sub-type ----


@dataclass(frozen=True)
class PdfSubtypeVocabulary:
    om_phrases: tuple[tuple[str, int], ...] = (
        (r"offering memorandum", 3),
        (r"confidential offering", 2),
        (r"investment highlights", 1),
        (r"property overview", 1),
        (r"executive summary", 1),
        (r"call for offers", 1),
        (r"offering procedures", 1),
    )
    bov_phrases: tuple[tuple[str, int], ...] = (
        (r"broker opinion of value", 3),
        (r"opinion of value", 2),
        (r"\bbov\b", 2),
        (r"pricing scenarios?", 1),
        (r"pricing guidance", 1),
        (r"valuation", 1),
        (r"value range", 1),
        (r"recommended (list|pricing)", 1),
    )
    min_score: int = 2


DEFAULT_PDF_SUBTYPE_VOCABULARY = PdfSubtypeVocabulary()


def _phrase_score(text: str, phrases: tuple[tuple[str, int], ...]) -> int:
    return sum(weight for pattern, weight in phrases if re.search(pattern, text, re.I))


def detect_pdf_subtype(text: str, vocabulary: PdfSubtypeVocabulary = DEFAULT_PDF_SUBTYPE_VOCABULARY) -> PdfDocumentType:
    """OM vs BOV vs unspecified. Neither side reaching `min_score`, or a tie, is unspecified."""
    om = _phrase_score(text or "", vocabulary.om_phrases)
    bov = _phrase_score(text or "", vocabulary.bov_phrases)
    if max(om, bov) < vocabulary.min_score or om == bov:
        result = PdfDocumentType.UNSPECIFIED
    elif bov > om:
        result = PdfDocumentType.BROKER_OPINION_OF_VALUE
    else:
        result = PdfDocumentType.OFFERING_MEMORANDUM
    logger.info("[classify] pdf om_score=%d bov_score=%d -> %s", om, bov, result.value)
    return result
