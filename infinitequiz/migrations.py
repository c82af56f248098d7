"""
Schema migrations for the quiz tables.
Each migration runs once and is recorded in the migration table.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import SQLModel, Field, Session, select, text

from .logging_utils import get_logger

logger = get_logger("infinitequiz.migrations")


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    ("001_lookup_indexes", """
    CREATE INDEX IF NOT EXISTS idx_player_room ON player(room_code);
    CREATE INDEX IF NOT EXISTS idx_player_room_standing ON player(room_code, score, time_taken);
    CREATE INDEX IF NOT EXISTS idx_room_status ON room(status)
    """),
    ("002_user_device_index", """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_user_device ON "user"(device_id)
    """),
]


def has_migration_been_applied(engine, name: str) -> bool:
    Migration.metadata.create_all(engine, tables=[Migration.__table__])
    with Session(engine) as session:
        return session.exec(select(Migration).where(Migration.name == name)).first() is not None


def apply_migration(engine, name: str, sql: str) -> bool:
    """Apply a migration and record it; returns False when already applied"""
    if has_migration_been_applied(engine, name):
        logger.debug(f"Migration {name} already applied, skipping")
        return False

    logger.info(f"Applying migration: {name}")
    with Session(engine) as session:
        try:
            for statement in sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {name}: {e}")
            raise
    return True


def run_migrations(engine) -> int:
    """Run all pending migrations, returning how many were applied"""
    applied = sum(1 for name, sql in MIGRATIONS if apply_migration(engine, name, sql))
    logger.info("migrations_completed", extra={"count": applied})
    return applied
