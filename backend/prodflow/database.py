from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from prodflow.config import settings

Base = declarative_base()

# Sessions are bound per invocation. The engine is created on first use from
# settings.DATABASE_URL, or supplied explicitly via configure_engine() (tests,
# one-off scripts).
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def _build_engine(url: str) -> Engine:
    if not url:
        raise RuntimeError("DATABASE_URL is required (Supabase/Postgres).")

    if url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
            "options": "-c statement_timeout=30000",
        }
        return create_engine(
            url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            pool_recycle=3600,
            pool_timeout=30,
        )

    return create_engine(url, echo=False)


def configure_engine(engine: Engine) -> Engine:
    global _engine
    _engine = engine
    SessionLocal.configure(bind=engine)
    return engine


def get_engine() -> Engine:
    if _engine is None:
        configure_engine(_build_engine(settings.DATABASE_URL))
    return _engine


def new_session():
    get_engine()
    return SessionLocal()


def get_db():
    db = new_session()
    try:
        yield db
    finally:
        db.close()
