from __future__ import annotations

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


Base = declarative_base()

# Bound to an engine by init_engine(); safe to import before that.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

_engine: Engine | None = None


def init_engine(database_url: str) -> Engine:
    global _engine

    url = str(database_url or "").strip()
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, future=True, **kwargs)
    else:
        engine = create_engine(url, future=True, pool_pre_ping=True, pool_size=10, max_overflow=20)

    SessionLocal.configure(bind=engine)
    _engine = engine
    return engine


def get_engine() -> Engine | None:
    return _engine


def get_pool_stats() -> dict:
    if _engine is None:
        return {"status": "uninitialized"}
    pool = _engine.pool
    status = getattr(pool, "status", None)
    return {"class": type(pool).__name__, "status": status() if callable(status) else ""}


def ping_db() -> bool:
    engine = get_engine()
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except DBAPIError:
        return False
