"""
Semantic extraction capability.

Two interchangeable strategies behind one interface:
- OpenAISemanticExtractor: chat-completions call with a model fallback list.
- DeterministicExtractor: header vocabulary matching and rule-based value
  normalization. It is a complete substitute for spreadsheets; it cannot
  extract free-text documents (PDFs).

Both return canonical values: cap rate and occupancy as decimals, money in
dollars, dates as `date`. Each path converts raw values exactly once.
"""
from __future__ import annotations

import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from models import (
    IGNORE_COLUMN,
    ColumnMapping,
    DocumentType,
    NormalizedComp,
    NormalizedPipelineProject,
    RawTabularRecord,
)
from services.value_normalizer import (
    clean_int,
    clean_numeric,
    clean_text,
    normalize_cap_rate,
    normalize_occupancy,
    normalize_status,
    parse_date,
    parse_money,
    parse_year_built,
)

logger = logging.getLogger(__name__)

COMP_FIELDS: tuple[str, ...] = tuple(f for f in NormalizedComp.model_fields if f != "id")
PIPELINE_FIELDS: tuple[str, ...] = tuple(f for f in NormalizedPipelineProject.model_fields if f != "id")

DEFAULT_MODELS = "gpt-4o-mini,gpt-4.1-mini"


class SemanticServiceError(Exception):
    """External semantic service unavailable, failed, or returned an unusable response."""


# ---- Header vocabulary (deterministic column classification) ----


@dataclass(frozen=True)
class HeaderVocabulary:
    """Header phrase -> canonical field. Longest matching phrase wins."""
    entries: tuple[tuple[str, str], ...]

    def lookup(self, header: str) -> str:
        h = (header or "").lower().strip()
        if not h:
            return IGNORE_COLUMN
        table = dict(self.entries)
        if h in table:
            return table[h]
        best_field = IGNORE_COLUMN
        best_len = 0
        for key, field in self.entries:
            # Reverse containment only for headers long enough to be meaningful
            if key in h or (len(h) >= 3 and h in key):
                if len(key) > best_len:
                    best_len = len(key)
                    best_field = field
        return best_field


COMP_HEADER_VOCABULARY = HeaderVocabulary(entries=(
    ("property name", "property_name"), ("property", "property_name"), ("name", "property_name"),
    ("market", "market"), ("metro", "metro"), ("msa", "metro"),
    ("submarket", "submarket"), ("sub market", "submarket"), ("sub-market", "submarket"),
    ("county", "county"), ("state", "state"),
    ("address", "address"), ("location", "address"),
    ("property type", "property_type"), ("type", "property_type"), ("asset type", "property_type"),
    ("sale date", "sale_date"), ("close date", "sale_date"), ("closing date", "sale_date"),
    ("date", "sale_date"),
    ("year built", "year_built"), ("vintage", "year_built"), ("yr built", "year_built"),
    ("year renovated", "year_renovated"), ("renovation", "year_renovated"),
    ("units", "units"), ("unit count", "units"), ("# units", "units"), ("total units", "units"),
    ("avg unit sf", "avg_unit_sf"), ("avg sf", "avg_unit_sf"), ("unit sf", "avg_unit_sf"),
    ("avg eff rent", "avg_eff_rent"), ("eff rent", "avg_eff_rent"), ("avg rent", "avg_eff_rent"),
    ("rent", "avg_eff_rent"),
    ("sale price", "sale_price"), ("purchase price", "sale_price"), ("price", "sale_price"),
    ("price per unit", "price_per_unit"), ("ppu", "price_per_unit"), ("$/unit", "price_per_unit"),
    ("price/unit", "price_per_unit"),
    ("price per sf", "price_per_sf"), ("$/sf", "price_per_sf"), ("price/sf", "price_per_sf"),
    ("cap rate", "cap_rate"), ("cap", "cap_rate"),
    ("cap rate qualifier", "cap_rate_qualifier"),
    ("occupancy", "occupancy"), ("occ", "occupancy"), ("occ%", "occupancy"),
    ("buyer", "buyer"), ("purchaser", "buyer"),
    ("seller", "seller"), ("vendor", "seller"),
    ("notes", "notes"), ("comments", "notes"),
))

PIPELINE_HEADER_VOCABULARY = HeaderVocabulary(entries=(
    ("project name", "project_name"), ("property name", "project_name"),
    ("project", "project_name"), ("name", "project_name"), ("development", "project_name"),
    ("address", "address"), ("location", "address"),
    ("county", "county"), ("metro", "metro"), ("msa", "metro"),
    ("submarket", "submarket"),
    ("units", "units"), ("unit count", "units"), ("# units", "units"), ("total units", "units"),
    ("status", "status"), ("phase", "status"),
    ("developer", "developer"), ("owner", "developer"),
    ("delivery", "delivery_quarter"), ("delivery date", "delivery_quarter"),
    ("completion", "delivery_quarter"), ("expected delivery", "delivery_quarter"),
    ("start", "start_quarter"), ("construction start", "start_quarter"),
    ("start date", "start_quarter"),
    ("property type", "property_type"), ("type", "property_type"),
))


def _fields_for(doc_type: DocumentType) -> tuple[str, ...]:
    if doc_type == DocumentType.SALES_COMP_TRACKER:
        return COMP_FIELDS
    if doc_type == DocumentType.PIPELINE_TRACKER:
        return PIPELINE_FIELDS
    raise ValueError(f"No record schema for document type {doc_type.value!r}")


# ---- Value normalization (one conversion per extraction path) ----


def normalize_comp_values(values: Dict[str, Any]) -> Dict[str, Any]:
    """Canonical-keyed raw values -> typed comp fields."""
    year_built, year_renovated = parse_year_built(values.get("year_built"))
    if year_renovated is None:
        year_renovated = clean_int(values.get("year_renovated"))
    sale_date = parse_date(values.get("sale_date"))
    return {
        "property_name": clean_text(values.get("property_name")),
        "market": clean_text(values.get("market")),
        "metro": clean_text(values.get("metro")),
        "submarket": clean_text(values.get("submarket")),
        "county": clean_text(values.get("county")),
        "state": clean_text(values.get("state")),
        "address": clean_text(values.get("address")),
        "property_type": clean_text(values.get("property_type")),
        "sale_date": sale_date,
        "year_built": year_built,
        "year_renovated": year_renovated,
        "units": clean_int(values.get("units")),
        "avg_unit_sf": clean_numeric(values.get("avg_unit_sf")),
        "avg_eff_rent": parse_money(values.get("avg_eff_rent")),
        "sale_price": parse_money(values.get("sale_price")),
        "price_per_unit": parse_money(values.get("price_per_unit")),
        "price_per_sf": parse_money(values.get("price_per_sf")),
        "cap_rate": normalize_cap_rate(values.get("cap_rate")),
        "cap_rate_qualifier": clean_text(values.get("cap_rate_qualifier")),
        "occupancy": normalize_occupancy(values.get("occupancy")),
        "buyer": clean_text(values.get("buyer")),
        "seller": clean_text(values.get("seller")),
        "notes": clean_text(values.get("notes")),
    }


def normalize_pipeline_values(values: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "project_name": clean_text(values.get("project_name")),
        "address": clean_text(values.get("address")),
        "county": clean_text(values.get("county")),
        "metro": clean_text(values.get("metro")),
        "submarket": clean_text(values.get("submarket")),
        "units": clean_int(values.get("units")),
        "status": normalize_status(values.get("status")),
        "developer": clean_text(values.get("developer")),
        "delivery_quarter": clean_text(values.get("delivery_quarter")),
        "start_quarter": clean_text(values.get("start_quarter")),
        "property_type": clean_text(values.get("property_type")),
    }


def normalize_values(doc_type: DocumentType, values: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(values, dict):
        raise TypeError(f"Expected a canonical-keyed record (dict), got {type(values).__name__}")
    if doc_type == DocumentType.SALES_COMP_TRACKER:
        return normalize_comp_values(values)
    if doc_type == DocumentType.PIPELINE_TRACKER:
        return normalize_pipeline_values(values)
    raise ValueError(f"No record schema for document type {doc_type.value!r}")


# ---- Permissive JSON parsing ----


def _balanced_json(text: str) -> Optional[str]:
    """Slice the first balanced {...} or [...] span, ignoring brackets inside strings."""
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return None
    start = min(starts)
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_json_response(text: str) -> Any:
    """
    Parse model output as JSON: bare JSON, then a fenced ```json block, then the
    first balanced-brace span in surrounding prose. Raises json.JSONDecodeError.
    """
    text = (text or "").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL)
    if fenced:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError:
            pass

    span = _balanced_json(text)
    if span is not None:
        try:
            return json.loads(span)
        except json.JSONDecodeError:
            pass
    raise json.JSONDecodeError("No JSON object found in response", text, 0)


def safe_extraction_warning(err: Exception | str, fallback_used: bool = True) -> str:
    """
    Map low-level extraction errors to safe, actionable messages for warnings.
    """
    generic = "AI extraction fallback was used for this upload." if fallback_used else "AI extraction failed for this document."
    msg = str(err or "").lower()
    if not msg:
        return generic
    if "openai_api_key" in msg or ("api key" in msg and "openai" in msg):
        return "AI extraction is not configured on backend (OPENAI_API_KEY missing)."
    if "quota" in msg or "rate limit" in msg or "429" in msg:
        return "AI extraction is temporarily limited (rate limit/quota)."
    if "timeout" in msg or "timed out" in msg:
        return "AI extraction timed out. Please retry in a moment."
    if "connection" in msg or "network" in msg:
        return "Backend could not reach the extraction provider."
    return generic


# ---- Strategies ----


class SemanticExtractor(ABC):
    source: str = "deterministic"

    @abstractmethod
    def classify_columns(
        self, doc_type: DocumentType, headers: Sequence[str], samples: Sequence[RawTabularRecord]
    ) -> ColumnMapping:
        ...

    @abstractmethod
    def normalize_records(
        self, doc_type: DocumentType, records: Sequence[RawTabularRecord], mapping: ColumnMapping
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def extract_document(self, instructions: str, text: str) -> Dict[str, Any]:
        ...


class DeterministicExtractor(SemanticExtractor):
    source = "deterministic"

    def __init__(
        self,
        comp_vocabulary: HeaderVocabulary = COMP_HEADER_VOCABULARY,
        pipeline_vocabulary: HeaderVocabulary = PIPELINE_HEADER_VOCABULARY,
    ) -> None:
        self.comp_vocabulary = comp_vocabulary
        self.pipeline_vocabulary = pipeline_vocabulary

    def _vocabulary(self, doc_type: DocumentType) -> HeaderVocabulary:
        if doc_type == DocumentType.SALES_COMP_TRACKER:
            return self.comp_vocabulary
        if doc_type == DocumentType.PIPELINE_TRACKER:
            return self.pipeline_vocabulary
        raise ValueError(f"No header vocabulary for document type {doc_type.value!r}")

    def classify_columns(self, doc_type, headers, samples) -> ColumnMapping:
        vocabulary = self._vocabulary(doc_type)
        fields = {h: vocabulary.lookup(h) for h in headers if h}
        return ColumnMapping(fields=fields, source="deterministic")

    def normalize_records(self, doc_type, records, mapping) -> List[Dict[str, Any]]:
        return [normalize_values(doc_type, mapping.apply(r).values) for r in records]

    def extract_document(self, instructions: str, text: str) -> Dict[str, Any]:
        raise SemanticServiceError("OPENAI_API_KEY not configured; document extraction requires the external semantic service")


_CLASSIFY_PROMPT = """You map spreadsheet column headers to canonical commercial real estate fields.
Document type: {doc_type}
Headers: {headers}
Sample rows: {samples}
Valid fields: {fields}, or "SKIP" for columns that map to nothing.
Return ONLY a JSON object: {{"column_mapping": {{"<original header>": "<field>"}}}}"""

_NORMALIZE_PROMPT = """You normalize commercial real estate records.
Document type: {doc_type}
Column mapping (original -> field): {mapping}
Records: {records}
Return ONLY a JSON array with one object per record, keyed by: {fields}.
Money in dollars (not millions), cap rate and occupancy as decimals (5.5% -> 0.055),
dates as YYYY-MM-DD, and null for TBD / N/A / "-" / empty."""


class OpenAISemanticExtractor(SemanticExtractor):
    source = "semantic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        models: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Any = None,
    ) -> None:
        configured = (os.environ.get("OPENAI_EXTRACTION_MODEL") or DEFAULT_MODELS).strip()
        self.models = list(models) if models else [m.strip() for m in configured.split(",") if m.strip()]
        self.timeout = timeout if timeout is not None else float(os.environ.get("OPENAI_TIMEOUT_SECONDS", "60"))
        self.max_tokens = max_tokens if max_tokens is not None else int(os.environ.get("OPENAI_MAX_TOKENS", "8192"))
        self._api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY")
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key or not str(self._api_key).strip():
            raise SemanticServiceError("OPENAI_API_KEY not configured")
        try:
            from openai import OpenAI
        except ImportError as e:
            raise SemanticServiceError("openai package is not installed") from e
        self._client = OpenAI(api_key=self._api_key, timeout=self.timeout)
        return self._client

    def complete(self, prompt: str) -> str:
        """Send one prompt, trying each configured model in order. Returns raw text with fences stripped."""
        client = self._get_client()
        last_error: Exception | None = None
        for model in self.models:
            try:
                t0 = time.perf_counter()
                response = client.chat.completions.create(
                    model=model,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=0.1,
                    max_tokens=self.max_tokens,
                )
                logger.info("[semantic] LLM call duration=%.2fs model=%s", time.perf_counter() - t0, model)
                raw = (response.choices[0].message.content or "").strip()
                if raw.startswith("```"):
                    raw = re.sub(r"^```\w*\n?", "", raw)
                    raw = re.sub(r"\n?```\s*$", "", raw)
                return raw
            except Exception as e:
                last_error = e
                logger.warning("[semantic] model failed model=%s error=%s", model, e)
                continue
        if last_error is not None:
            raise SemanticServiceError(str(last_error)) from last_error
        raise SemanticServiceError("No OpenAI model candidates configured")

    def _complete_json(self, prompt: str) -> Any:
        raw = self.complete(prompt)
        try:
            return parse_json_response(raw)
        except json.JSONDecodeError as e:
            raise SemanticServiceError(f"Malformed JSON from semantic service: {e}") from e

    def classify_columns(self, doc_type, headers, samples) -> ColumnMapping:
        fields = _fields_for(doc_type)
        prompt = _CLASSIFY_PROMPT.format(
            doc_type=doc_type.value,
            headers=json.dumps(list(headers)),
            samples=json.dumps(list(samples)[:5], default=str),
            fields=", ".join(fields),
        )
        parsed = self._complete_json(prompt)
        raw_mapping = parsed.get("column_mapping") if isinstance(parsed, dict) else None
        if not isinstance(raw_mapping, dict):
            raise SemanticServiceError("Column classification response has no column_mapping object")
        allowed = set(fields)
        mapping = {
            h: (raw_mapping.get(h) if raw_mapping.get(h) in allowed else IGNORE_COLUMN)
            for h in headers if h
        }
        if all(v == IGNORE_COLUMN for v in mapping.values()):
            raise SemanticServiceError("Column classification mapped no headers")
        return ColumnMapping(fields=mapping, source="semantic")

    def normalize_records(self, doc_type, records, mapping) -> List[Dict[str, Any]]:
        fields = _fields_for(doc_type)
        prompt = _NORMALIZE_PROMPT.format(
            doc_type=doc_type.value,
            mapping=json.dumps(mapping.fields),
            records=json.dumps(list(records), default=str),
            fields=", ".join(fields),
        )
        parsed = self._complete_json(prompt)
        if isinstance(parsed, dict) and isinstance(parsed.get("records"), list):
            parsed = parsed["records"]
        if not isinstance(parsed, list):
            raise SemanticServiceError("Normalization response is not a list of records")
        if len(parsed) != len(records):
            raise SemanticServiceError(
                f"Normalization returned {len(parsed)} records for a batch of {len(records)}"
            )
        # Model output is untrusted raw text; it goes through the same converters once
        out: List[Dict[str, Any]] = []
        for item in parsed:
            if not isinstance(item, dict):
                raise SemanticServiceError(f"Normalized record is {type(item).__name__}, expected object")
            out.append(normalize_values(doc_type, item))
        return out

    def extract_document(self, instructions: str, text: str) -> Dict[str, Any]:
        parsed = self._complete_json(f"{instructions}\n\nDocument text:\n---\n{text}\n---\n\nJSON:")
        if not isinstance(parsed, dict):
            raise SemanticServiceError("Document extraction response is not a JSON object")
        return parsed


def get_semantic_extractor() -> SemanticExtractor:
    """External extractor when OPENAI_API_KEY is set, otherwise the deterministic one."""
    api_key = os.environ.get("OPENAI_API_KEY")
    if api_key and api_key.strip():
        return OpenAISemanticExtractor(api_key=api_key)
    logger.info("[semantic] OPENAI_API_KEY not set; using deterministic extractor")
    return DeterministicExtractor()
