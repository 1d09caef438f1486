"""Tests for workbook type detection and PDF sub-type detection."""
import openpyxl

from models import DocumentType, PdfDocumentType
from services.document_classifier import classify_workbook, detect_pdf_subtype, score_workbook


def _workbook(title, rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = title
    for row in rows:
        ws.append(row)
    return wb


# ---- Spreadsheets ----

def test_sales_comp_tracker(comp_workbook):
    assert classify_workbook(comp_workbook, "comps.xlsx") == DocumentType.SALES_COMP_TRACKER


def test_rent_roll(rent_roll_workbook):
    assert classify_workbook(rent_roll_workbook) == DocumentType.RENT_ROLL


def test_operating_statement(t12_workbook):
    assert classify_workbook(t12_workbook) == DocumentType.OPERATING_STATEMENT


def test_pipeline_tracker():
    wb = _workbook("Pipeline", [
        ["Project Name", "Developer", "Units", "Status", "Delivery Date"],
        ["Tower One", "Acme Dev", 300, "Under Construction", "2026-Q2"],
    ])
    assert classify_workbook(wb) == DocumentType.PIPELINE_TRACKER


def test_underwriting_model():
    wb = _workbook("Pro Forma", [
        ["Levered IRR", 0.18],
        ["Equity Multiple", 2.1],
        ["Exit Cap", 0.055],
    ])
    assert classify_workbook(wb) == DocumentType.UNDERWRITING_MODEL


def test_one_header_scores_once():
    wb = _workbook("Data", [["Delivery Date"]])
    assert score_workbook(wb)[DocumentType.PIPELINE_TRACKER] == 2


def test_empty_workbook_is_unknown():
    wb = openpyxl.Workbook()
    assert classify_workbook(wb) == DocumentType.UNKNOWN
    assert all(score == 0 for score in score_workbook(wb).values())


def test_tie_goes_to_declaration_order_without_filename_hint():
    wb = _workbook("Data", [["Buyer", "Developer", "Units", "Notes"]])
    assert classify_workbook(wb) == DocumentType.SALES_COMP_TRACKER


def test_tie_broken_by_filename():
    wb = _workbook("Data", [["Buyer", "Developer", "Units", "Notes"]])
    assert classify_workbook(wb, "Austin_Pipeline_Q3.xlsx") == DocumentType.PIPELINE_TRACKER


# ---- PDF sub-type ----

def test_offering_memorandum():
    text = "Confidential Offering Memorandum. Investment Highlights. Property Overview."
    assert detect_pdf_subtype(text) == PdfDocumentType.OFFERING_MEMORANDUM


def test_broker_opinion_of_value():
    text = "Broker Opinion of Value prepared for ownership. Pricing guidance and value range below."
    assert detect_pdf_subtype(text) == PdfDocumentType.BROKER_OPINION_OF_VALUE


def test_weak_evidence_is_unspecified():
    assert detect_pdf_subtype("Executive Summary and valuation notes") == PdfDocumentType.UNSPECIFIED
    assert detect_pdf_subtype("") == PdfDocumentType.UNSPECIFIED
