"""Programmatic Alembic entry points for the crew runtime schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]
MIGRATIONS_DIR = PROJECT_ROOT / "alembic"


def build_alembic_config(db_path: Path) -> Config:
    """Alembic config bound to ``db_path``; script location is always the bundled migrations."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path, *, revision: str = "head") -> None:
    """Apply migrations up to ``revision`` (head by default)."""

    logger.debug("Upgrading %s to %s", db_path, revision)
    command.upgrade(build_alembic_config(db_path), revision)
