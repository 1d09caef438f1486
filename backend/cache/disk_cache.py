"""
File-hash disk cache for document extraction results.
key = sha256(sha256(file_bytes) + "|" + kind) -> extraction JSON.

`kind` separates extraction paths over the same file ("pdf", "market_research").
"""
from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any

# Cache directory under backend/cache unless EXTRACTION_CACHE_DIR is set
_CACHE_DIR = Path(__file__).resolve().parent
EXTRACTION_CACHE_DIR = Path(os.environ.get("EXTRACTION_CACHE_DIR") or (_CACHE_DIR / "extraction"))


def _ensure_dir(d: Path) -> None:
    d.mkdir(parents=True, exist_ok=True)


def _extraction_key(file_bytes: bytes, kind: str) -> str:
    h = hashlib.sha256(file_bytes).hexdigest()
    return hashlib.sha256((h + "|" + kind).encode()).hexdigest()


def get_cached_extraction(file_bytes: bytes, kind: str, cache_dir: Path | None = None) -> dict[str, Any] | None:
    """Return the cached extraction dict, or None."""
    d = cache_dir or EXTRACTION_CACHE_DIR
    _ensure_dir(d)
    path = d / f"{_extraction_key(file_bytes, kind)}.json"
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def set_cached_extraction(
    file_bytes: bytes, kind: str, response_dict: dict[str, Any], cache_dir: Path | None = None
) -> None:
    d = cache_dir or EXTRACTION_CACHE_DIR
    _ensure_dir(d)
    path = d / f"{_extraction_key(file_bytes, kind)}.json"
    path.write_text(json.dumps(response_dict, default=str), encoding="utf-8")


def clear_cached_extraction(file_bytes: bytes, kind: str, cache_dir: Path | None = None) -> bool:
    """Drop one cached entry (used when a document is reprocessed). Returns True if it existed."""
    d = cache_dir or EXTRACTION_CACHE_DIR
    path = d / f"{_extraction_key(file_bytes, kind)}.json"
    if path.exists():
        path.unlink()
        return True
    return False
