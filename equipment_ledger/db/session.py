import os

from sqlalchemy.engine import Engine

from .base import Base
from .engine import build_engine, build_session_factory


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


LEDGER_DB_URL = _require_env("LEDGER_DB_URL")

engine_ledger = build_engine(LEDGER_DB_URL)

SessionLocalLedger = build_session_factory(engine_ledger)


def init_schema(engine: Engine | None = None) -> None:
    # Table classes register on Base.metadata at import.
    from ..models import ledger_models  # noqa: F401

    Base.metadata.create_all(engine or engine_ledger)
