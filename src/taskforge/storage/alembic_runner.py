"""Programmatic Alembic upgrade for the state database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)


def upgrade_head(db_path: Path) -> None:
    """Apply forward-only migrations; re-running on an up-to-date DB is a no-op."""

    root_dir = Path(__file__).resolve().parents[3]
    alembic_ini = root_dir / "alembic.ini"
    alembic_dir = root_dir / "alembic"
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(alembic_dir))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    logger.debug("Upgrading %s to head", db_path)
    command.upgrade(config, "head")
