"""Tests for header vocabulary, JSON parsing, value normalization and the OpenAI strategy with a fake client."""
import json
from types import SimpleNamespace

import pytest

from models import IGNORE_COLUMN, ColumnMapping, DocumentType
from services.semantic_extractor import (
    COMP_HEADER_VOCABULARY,
    PIPELINE_HEADER_VOCABULARY,
    DeterministicExtractor,
    OpenAISemanticExtractor,
    SemanticServiceError,
    get_semantic_extractor,
    normalize_comp_values,
    normalize_values,
    parse_json_response,
    safe_extraction_warning,
)


class FakeCompletions:
    def __init__(self, replies):
        self.replies = replies
        self.calls = []

    def create(self, model, messages, temperature, max_tokens):
        self.calls.append(model)
        reply = self.replies[model]
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


def _fake_client(replies):
    completions = FakeCompletions(replies)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


# ---- Header vocabulary ----

def test_comp_vocabulary_lookup():
    assert COMP_HEADER_VOCABULARY.lookup("Sale Price") == "sale_price"
    assert COMP_HEADER_VOCABULARY.lookup("Price/Unit") == "price_per_unit"
    assert COMP_HEADER_VOCABULARY.lookup("Cap Rate (%)") == "cap_rate"
    assert COMP_HEADER_VOCABULARY.lookup("Year Built/Renovated") == "year_built"
    assert COMP_HEADER_VOCABULARY.lookup("Zzz") == IGNORE_COLUMN
    assert COMP_HEADER_VOCABULARY.lookup("") == IGNORE_COLUMN


def test_pipeline_vocabulary_lookup():
    assert PIPELINE_HEADER_VOCABULARY.lookup("Expected Delivery") == "delivery_quarter"
    assert PIPELINE_HEADER_VOCABULARY.lookup("Developer") == "developer"


# ---- parse_json_response ----

def test_parse_bare_json():
    assert parse_json_response('{"a": 1}') == {"a": 1}


def test_parse_fenced_json():
    assert parse_json_response('Here:\n```json\n{"a": [1, 2]}\n```') == {"a": [1, 2]}


def test_parse_json_in_prose_with_brace_in_string():
    assert parse_json_response('Result: {"a": {"b": "}"}} thanks') == {"a": {"b": "}"}}


def test_parse_no_json_raises():
    with pytest.raises(json.JSONDecodeError):
        parse_json_response("no json here")


# ---- safe_extraction_warning ----

def test_safe_extraction_warning_messages():
    assert "OPENAI_API_KEY missing" in safe_extraction_warning("OPENAI_API_KEY not configured")
    assert "rate limit" in safe_extraction_warning(RuntimeError("Error 429: rate limit"))
    assert "timed out" in safe_extraction_warning("Request timed out")
    assert safe_extraction_warning("boom") == "AI extraction fallback was used for this upload."
    assert safe_extraction_warning("boom", fallback_used=False) == "AI extraction failed for this document."


# ---- Normalization ----

def test_normalize_comp_values_converts_once():
    values = normalize_comp_values({
        "sale_price": "$63.88M",
        "cap_rate": "5.5%",
        "year_built": "1987/2017",
        "units": "312",
        "sale_date": "TBD",
        "property_name": "  Oak  Ridge ",
    })
    assert values["sale_price"] == 63_880_000.0
    assert values["cap_rate"] == pytest.approx(0.055)
    assert (values["year_built"], values["year_renovated"]) == (1987, 2017)
    assert values["units"] == 312
    assert values["sale_date"] is None
    assert values["property_name"] == "Oak Ridge"


def test_normalize_values_rejects_unknown_type():
    with pytest.raises(ValueError):
        normalize_values(DocumentType.RENT_ROLL, {})


# ---- DeterministicExtractor ----

def test_deterministic_classify_and_normalize():
    ex = DeterministicExtractor()
    mapping = ex.classify_columns(DocumentType.SALES_COMP_TRACKER, ["Property Name", "Cap Rate", "Comments?"], [])
    assert mapping.source == "deterministic"
    assert mapping.fields["Cap Rate"] == "cap_rate"
    rows = ex.normalize_records(
        DocumentType.SALES_COMP_TRACKER,
        [{"Property Name": "Oak Ridge", "Cap Rate": 5.5}],
        mapping,
    )
    assert rows[0]["property_name"] == "Oak Ridge"
    assert rows[0]["cap_rate"] == pytest.approx(0.055)


def test_deterministic_cannot_extract_documents():
    with pytest.raises(SemanticServiceError, match="OPENAI_API_KEY"):
        DeterministicExtractor().extract_document("instructions", "text")


# ---- OpenAISemanticExtractor ----

def test_openai_falls_through_model_list():
    reply = '```json\n{"column_mapping": {"Sale Price": "sale_price", "Notes": "bogus_field"}}\n```'
    client, completions = _fake_client({"bad-model": RuntimeError("model not found"), "good-model": reply})
    ex = OpenAISemanticExtractor(api_key="sk-test", models=["bad-model", "good-model"], client=client)
    mapping = ex.classify_columns(DocumentType.SALES_COMP_TRACKER, ["Sale Price", "Notes"], [])
    assert completions.calls == ["bad-model", "good-model"]
    assert mapping.source == "semantic"
    assert mapping.fields == {"Sale Price": "sale_price", "Notes": IGNORE_COLUMN}


def test_openai_all_models_fail():
    client, _ = _fake_client({"m1": RuntimeError("connection reset")})
    ex = OpenAISemanticExtractor(api_key="sk-test", models=["m1"], client=client)
    with pytest.raises(SemanticServiceError, match="connection reset"):
        ex.complete("prompt")


def test_openai_normalize_record_count_mismatch():
    client, _ = _fake_client({"m1": '[{"sale_price": "1M"}]'})
    ex = OpenAISemanticExtractor(api_key="sk-test", models=["m1"], client=client)
    mapping = ColumnMapping(fields={"Price": "sale_price"}, source="semantic")
    with pytest.raises(SemanticServiceError, match="1 records for a batch of 2"):
        ex.normalize_records(DocumentType.SALES_COMP_TRACKER, [{"Price": "1M"}, {"Price": "2M"}], mapping)


def test_openai_normalize_runs_values_through_converters():
    client, _ = _fake_client({"m1": '{"records": [{"sale_price": "$1.5M", "cap_rate": "6%"}]}'})
    ex = OpenAISemanticExtractor(api_key="sk-test", models=["m1"], client=client)
    mapping = ColumnMapping(fields={"Price": "sale_price"}, source="semantic")
    rows = ex.normalize_records(DocumentType.SALES_COMP_TRACKER, [{"Price": "$1.5M"}], mapping)
    assert rows[0]["sale_price"] == 1_500_000.0
    assert rows[0]["cap_rate"] == pytest.approx(0.06)


def test_openai_without_key_raises():
    ex = OpenAISemanticExtractor(api_key="", models=["m1"])
    with pytest.raises(SemanticServiceError):
        ex.extract_document("instructions", "text")


def test_get_semantic_extractor_follows_env(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert isinstance(get_semantic_extractor(), DeterministicExtractor)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert isinstance(get_semantic_extractor(), OpenAISemanticExtractor)
