"""Run the checkpoint schema migrations from code."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

# src/flowdeck/storage/alembic_runner.py -> repository root
_ROOT_DIR = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(_ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(_ROOT_DIR / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the flowdeck database at ``db_path`` up to the latest revision."""

    logger.debug("Upgrading checkpoint schema in %s", db_path)
    command.upgrade(_alembic_config(db_path), "head")
