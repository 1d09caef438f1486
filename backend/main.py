from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path

from dotenv import load_dotenv

# Load .env from backend directory so OPENAI_API_KEY, DATABASE_URL etc. are available
load_dotenv(Path(__file__).resolve().parent / ".env")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from db.session import get_session_factory
from jobs.tasks import mark_stale_documents
from routes.api import router as api_router

VERSION = (os.environ.get("GIT_COMMIT") or "").strip() or "unknown"
logger = logging.getLogger("uvicorn.error")


def _ai_enabled() -> bool:
    key = os.getenv("OPENAI_API_KEY", "")
    return bool(key and key.strip())


app = FastAPI(title="Deal Underwriting Backend", version="0.1.0")

# CORS: use ALLOWED_ORIGINS env (comma-separated) if set, else default
_origins_env = os.environ.get("ALLOWED_ORIGINS", "").strip()
if _origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "request_id=%s user=%s %s %s -> %s (%.0f ms)",
            request_id,
            request.headers.get("X-User-Id", "-"),
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestLogMiddleware)
app.include_router(api_router)


@app.on_event("startup")
def recover_stale_documents() -> None:
    """Documents left in processing by a previous worker become failed and re-submittable."""
    factory = app.dependency_overrides.get(get_session_factory, get_session_factory)()
    db = factory()
    try:
        flipped = mark_stale_documents(db)
        if flipped:
            logger.warning("[startup] %d stale data bank document(s) marked failed", flipped)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("[startup] stale document sweep skipped: %s", e)
    finally:
        db.close()


@app.on_event("startup")
def startup_log() -> None:
    ai_enabled = _ai_enabled()
    logger.info(
        "Data bank backend on http://%s:%s (OPENAI_API_KEY configured: %s, Celery broker: %s) version=%s",
        os.environ.get("HOST", "127.0.0.1"),
        os.environ.get("PORT", "8010"),
        ai_enabled,
        bool(os.environ.get("REDIS_URL")),
        VERSION,
    )
    if not ai_enabled:
        logger.warning(
            "OPENAI_API_KEY is not set. Spreadsheets will use deterministic column mapping; "
            "PDF and underwriting model extraction will fail."
        )


@app.get("/health")
def health():
    return {
        "status": "ok",
        "ai_enabled": _ai_enabled(),
        "queue": "celery" if os.environ.get("REDIS_URL") else "background",
        "version": VERSION,
    }
