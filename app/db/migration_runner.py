"""
Migration Runner - Applies pending Alembic migrations.

Invoked by `scripts/ledger_maintenance.py migrate` before the API starts.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current vs head revision."""

    current_revision: str | None
    head_revision: str

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def get_sync_database_url(url: str | None = None) -> str:
    """
    Synchronous database URL for migrations.

    Alembic's command API uses synchronous connections, so asyncpg URLs are
    rewritten to psycopg2.
    """
    url = url or os.getenv("DATABASE_URL", "")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    return url.replace("asyncpg", "psycopg2")


def _alembic_config(sync_url: str) -> Config:
    if not ALEMBIC_INI_PATH.exists():
        raise RuntimeError(f"Alembic config not found at {ALEMBIC_INI_PATH}")
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    return alembic_cfg


def _get_current_revision(engine: Engine) -> str | None:
    """Get the current database revision."""
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str:
    """Get the head revision from migration scripts."""
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def check_migrations_status() -> MigrationStatus:
    """Report migration status without applying anything."""
    sync_url = get_sync_database_url()
    alembic_cfg = _alembic_config(sync_url)

    engine = create_engine(sync_url)
    try:
        return MigrationStatus(
            current_revision=_get_current_revision(engine),
            head_revision=_get_head_revision(alembic_cfg),
        )
    finally:
        engine.dispose()


def run_migrations() -> MigrationStatus:
    """
    Run pending Alembic migrations.

    Raises:
        RuntimeError: migration failed
    """
    sync_url = get_sync_database_url()
    alembic_cfg = _alembic_config(sync_url)

    engine = create_engine(sync_url)
    try:
        current = _get_current_revision(engine)
        head = _get_head_revision(alembic_cfg)

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return MigrationStatus(current_revision=current, head_revision=head)

        logger.info("migrations_running", from_revision=current, to_revision=head)
        command.upgrade(alembic_cfg, "head")

        new_current = _get_current_revision(engine)
        logger.info("migrations_complete", revision=new_current)
        return MigrationStatus(current_revision=new_current, head_revision=head)

    except Exception as e:
        logger.error("migration_failed", error_type=type(e).__name__)
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
