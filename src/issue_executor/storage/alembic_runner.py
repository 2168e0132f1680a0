"""Programmatic Alembic migrations for the execution store.

The migration scripts ship inside the package, so installed wheels can migrate
without a checkout or an ``alembic.ini``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def _alembic_config(db_path: Path) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str | None:
    """Newest revision among the packaged migration scripts."""

    return ScriptDirectory.from_config(_alembic_config(Path(":memory:"))).get_current_head()


def current_revision(engine: Engine) -> str | None:
    """Revision the database is stamped with, or None before the first migration."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path, *, engine: Engine | None = None) -> bool:
    """Migrate to head; returns False when ``engine`` shows the schema is already current."""

    config = _alembic_config(db_path)
    if engine is not None:
        head = ScriptDirectory.from_config(config).get_current_head()
        if current_revision(engine) == head:
            return False
    logger.info("Migrating %s to schema head", db_path)
    command.upgrade(config, "head")
    return True
