from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.infra.db import DATABASE_URL

PROJECT_ROOT = Path(__file__).resolve().parents[2]
ALEMBIC_INI = PROJECT_ROOT / "alembic.ini"
MIGRATIONS_DIR = PROJECT_ROOT / "infra" / "migrations"

logger = logging.getLogger(__name__)


def build_alembic_config(database_url: str | None = None) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.attributes["database_url"] = database_url or DATABASE_URL
    config.attributes["configure_logging"] = False
    return config


def run_upgrade(revision: str = "head", database_url: str | None = None) -> None:
    logger.info("upgrading rbac schema to %s", revision)
    command.upgrade(build_alembic_config(database_url), revision)


def run_downgrade(revision: str = "base", database_url: str | None = None) -> None:
    logger.info("downgrading rbac schema to %s", revision)
    command.downgrade(build_alembic_config(database_url), revision)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_upgrade()
