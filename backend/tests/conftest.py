"""Add backend to path so 'from models import' resolves when run from project root; shared fixtures."""
import os
import sys
import tempfile
from io import BytesIO

_backend_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

# Before any backend import: no Postgres, and a throwaway extraction cache
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EXTRACTION_CACHE_DIR", tempfile.mkdtemp(prefix="extraction-cache-"))

import openpyxl  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from db.session import Base, get_db, get_session_factory  # noqa: E402
import db.models  # noqa: E402,F401

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def workbook_bytes(wb) -> bytes:
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def build_comp_workbook():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Sales Comps"
    ws.append(["Property Name", "Market", "Units", "Year Built", "Sale Price", "Price/Unit", "Cap Rate", "Buyer", "Sale Date"])
    ws.append(["Oak Ridge", "Austin", 200, 2015, 40_000_000, 200_000, 5.5, "Buyer A", "03/15/2024"])
    ws.append(["Elm Court", "Austin", 200, "1987/2017", 264.19, None, "5.25%", "Buyer B", "TBD"])
    ws.append(["Total", None, 400, None, None, None, None, None, None])
    return wb


def build_rent_roll_workbook():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Rent Roll"
    ws.append(["Sunset Apartments"])
    ws.append(["As of 01/31/2026"])
    ws.append([])
    ws.append(["Unit", "Unit Type", "SqFt", "Status", "Resident", "Market Rent", "Rent", "Lease Start", "Lease End"])
    ws.append([101, "1BR", 750, "Occupied", "A. Smith", 1500, 1450, "02/01/2025", "01/31/2026"])
    ws.append([102, "1BR", 750, "Vacant", None, 1500, 0])
    ws.append([103, "2BR", 1000, "Occupied", "B. Jones", 1600, None])
    ws.append(["Rent", None, None, None, None, None, 1400])
    ws.append(["Parking", None, None, None, None, None, 50])
    ws.append(["Charge Total", None, None, None, None, None, 1450])
    ws.append([104, "2BR", 1000, "Vacant", None, 1600, 0])
    ws.append([105, "1BR", 750, "Model", None, 1500, 0])
    ws.append(["Total", None, 4250])
    return wb


def build_t12_workbook():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "T12"
    ws.append(["Sunset Apartments"])
    ws.append([])
    ws.append(["Account"] + [f"{m} 2025" for m in MONTHS] + ["Total"])
    lines = (
        ("Gross Potential Rent", 10_000),
        ("Vacancy Loss", -500),
        ("Total Revenue", 9_500),
        ("50100 - Payroll", 2_000),
        ("Repairs & Maintenance", 500),
        ("Total Operating Expenses", 4_000),
        ("Net Operating Income", 5_500),
        ("Zqxj Wvk", 10),
    )
    for label, monthly in lines:
        ws.append([label] + [monthly] * 12 + [monthly * 12])
    return wb


@pytest.fixture
def comp_workbook():
    return build_comp_workbook()


@pytest.fixture
def rent_roll_workbook():
    return build_rent_roll_workbook()


@pytest.fixture
def t12_workbook():
    return build_t12_workbook()


@pytest.fixture
def comp_xlsx():
    return workbook_bytes(build_comp_workbook())


@pytest.fixture
def rent_roll_xlsx():
    return workbook_bytes(build_rent_roll_workbook())


@pytest.fixture
def t12_xlsx():
    return workbook_bytes(build_t12_workbook())


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by the request session and background jobs."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def client(session_factory, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    from main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
