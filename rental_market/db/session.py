import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def build_engine(db_url: str, busy_timeout: float = 30.0) -> Engine:
    connect_args = {}
    if db_url.startswith("sqlite"):
        # Threadpool handlers share pooled connections; wait on the write lock instead of failing.
        connect_args = {"check_same_thread": False, "timeout": busy_timeout}
    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


RENTAL_MARKET_DB_URL = _require_env("RENTAL_MARKET_DB_URL")

engine_market = build_engine(RENTAL_MARKET_DB_URL)

SessionLocalMarket = build_session_factory(engine_market)


def init_db(engine: Engine | None = None) -> None:
    from models import market_models  # noqa: F401  registers tables on Base.metadata
    from db.base import Base

    Base.metadata.create_all(bind=engine or engine_market)
