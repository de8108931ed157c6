from __future__ import annotations

import logging
import os
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import create_engine

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://agency:agency@db:5432/agency_rbac",
)
DB_ECHO = os.getenv("DB_ECHO", "false").lower() in {"1", "true", "yes"}
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str = DATABASE_URL) -> Engine:
    if url.startswith("sqlite"):
        sqlite_engine = create_engine(url, echo=DB_ECHO, connect_args={"check_same_thread": False})
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine
    return create_engine(url, echo=DB_ECHO, pool_pre_ping=True, pool_size=DB_POOL_SIZE)


engine = build_engine()


def get_engine() -> Engine:
    return engine


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("database readiness check failed: %s", exc)
        return False
    return True
