from .session import get_db, get_session_factory, engine, SessionLocal, Base
from . import models  # noqa: F401

__all__ = ["get_db", "get_session_factory", "engine", "SessionLocal", "Base", "models"]
