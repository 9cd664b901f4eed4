"""Apply the packaged Alembic migrations to a queue database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from docjobs.storage.common import sqlite_url

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def upgrade_head(db_path: Path) -> None:
    """Bring `db_path` to the latest schema revision, creating the file if needed."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    command.upgrade(config, "head")
