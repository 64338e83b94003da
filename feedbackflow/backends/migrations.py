"""Versioned schema migrations for the relational backend.

The ``schema_version`` table holds a single row whose ``version`` is the
last applied migration. Migrations run in order and are idempotent, so a
database created from the current models passes through them untouched.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy import inspect, select, text
from sqlalchemy.engine import Connection

from .sql_models import LinkRow, SchemaVersionRow

logger = logging.getLogger(__name__)

INITIAL_DESCRIPTION = "Initial schema"


class SchemaVersion(BaseModel):
    """Current schema version record."""
    version: int
    description: str
    last_updated: Optional[datetime] = None


class Migration(BaseModel):
    """One schema step; ``upgrade`` runs on a synchronous connection."""
    version: int
    description: str
    upgrade: Callable[[Connection], None]


def _has_column(conn: Connection, table: str, column: str) -> bool:
    return any(c["name"] == column for c in inspect(conn).get_columns(table))


def _add_column(table: str, column: str, ddl_type: str) -> Callable[[Connection], None]:
    def upgrade(conn: Connection) -> None:
        if _has_column(conn, table, column):
            logger.info(f"Column {table}.{column} already exists")
            return
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))

    return upgrade


def _create_links_table(conn: Connection) -> None:
    LinkRow.__table__.create(conn, checkfirst=True)


MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        description="Added transaction_id to refunds",
        upgrade=_add_column("refunds", "transaction_id", "TEXT"),
    ),
    Migration(
        version=2,
        description="Added screenshot_summary to purchases",
        upgrade=_add_column("purchases", "screenshot_summary", "TEXT"),
    ),
    Migration(
        version=3,
        description="Added links table for short public dispute resolution links",
        upgrade=_create_links_table,
    ),
]

LATEST_VERSION = MIGRATIONS[-1].version


def ensure_version_row(conn: Connection) -> None:
    """Create the version record at version 0 when missing."""
    SchemaVersionRow.__table__.create(conn, checkfirst=True)
    if conn.execute(select(SchemaVersionRow.id)).first() is None:
        conn.execute(
            SchemaVersionRow.__table__.insert().values(
                id=1, version=0, description=INITIAL_DESCRIPTION, last_updated=datetime.utcnow()
            )
        )


def read_version(conn: Connection) -> SchemaVersion:
    row = conn.execute(
        select(
            SchemaVersionRow.version,
            SchemaVersionRow.description,
            SchemaVersionRow.last_updated,
        ).where(SchemaVersionRow.id == 1)
    ).first()
    if row is None:
        return SchemaVersion(version=0, description=INITIAL_DESCRIPTION)
    return SchemaVersion(version=row.version, description=row.description, last_updated=row.last_updated)


def pending_migrations(current: int) -> List[Migration]:
    return [migration for migration in MIGRATIONS if migration.version > current]


def apply_migration(conn: Connection, migration: Migration) -> str:
    """Run one migration and advance the version record. Returns a status line."""
    migration.upgrade(conn)
    conn.execute(
        SchemaVersionRow.__table__.update()
        .where(SchemaVersionRow.id == 1)
        .values(
            version=migration.version,
            description=migration.description,
            last_updated=datetime.utcnow(),
        )
    )
    logger.info(f"Applied migration v{migration.version}: {migration.description}")
    return f"Applied migration v{migration.version}: {migration.description}"


def up_to_date_message(version: int) -> str:
    return f"Database schema is up to date (version {version})"
