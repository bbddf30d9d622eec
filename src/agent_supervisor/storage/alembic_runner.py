"""Run the ledger's Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    root_dir = Path(__file__).resolve().parents[3]
    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    db_path.parent.mkdir(parents=True, exist_ok=True)
    command.upgrade(config, "head")
