"""Database package: models and session management."""
from market_data_hub.db.models import AlertRecord, HoldingRecord, Source
from market_data_hub.db.sessions import get_session, init_db, make_engine

__all__ = [
    "AlertRecord",
    "HoldingRecord",
    "Source",
    "get_session",
    "init_db",
    "make_engine",
]
