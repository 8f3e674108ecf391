# core/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.core.config import settings

# SQLite connections are shared between the request threadpool and the
# worker task running on the event loop.
_connect_args = (
    {"check_same_thread": False}
    if settings.DATABASE_URL.startswith("sqlite")
    else {}
)

engine = create_engine(settings.DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
