"""PostgreSQL migration entry points for the queue jobs schema."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from jobdrain.logging import configure_logging
from jobdrain.service.config import settings
from jobdrain.settings import normalize_sqlalchemy_postgres_url

_ALEMBIC_CFG_PATH = Path(__file__).resolve().parent / "alembic.ini"


def build_alembic_config(postgres_url: str | None = None) -> Config:
    """Return an Alembic config pointing at the bundled migration scripts."""
    cfg = Config(str(_ALEMBIC_CFG_PATH))
    cfg.set_main_option("script_location", str(_ALEMBIC_CFG_PATH.parent / "migrations"))
    cfg.set_main_option(
        "sqlalchemy.url",
        normalize_sqlalchemy_postgres_url(postgres_url or settings.postgres_url),
    )
    return cfg


def run_queue_migrations() -> None:
    """Run Alembic migrations to ensure the queue_jobs table exists and is current."""
    configure_logging(settings.log_level)
    command.upgrade(build_alembic_config(), "head")
