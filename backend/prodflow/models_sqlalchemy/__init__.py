from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

from prodflow.database import Base, SessionLocal, get_db, new_session

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

__all__ = ["Base", "SessionLocal", "get_db", "new_session", "JSONType"]
