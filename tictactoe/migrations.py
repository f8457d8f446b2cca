"""
Database migrations for the room server.
Tables come from SQLModel.metadata.create_all; migrations add the indexes
the lookup and cleanup queries rely on.
"""

from sqlmodel import SQLModel, Field, text, Session, select
from typing import Optional
from datetime import datetime, timezone

from .init_db import make_engine
from .logging_utils import get_logger

logger = get_logger("tictactoe.migrations")


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    (
        "001_room_indexes",
        """
        -- my-games lookups and cleanup sweeps
        CREATE INDEX IF NOT EXISTS idx_roommember_user ON roommember(user_id, room_code);
        CREATE INDEX IF NOT EXISTS idx_roomrecord_active ON roomrecord(game_active, completed_at);
        CREATE INDEX IF NOT EXISTS idx_roomrecord_activity ON roomrecord(last_activity);
        CREATE INDEX IF NOT EXISTS idx_roomrecord_default ON roomrecord(is_default, last_activity)
        """,
    ),
    (
        "002_member_unique",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_roommember_room_user ON roommember(room_code, user_id)
        """,
    ),
    (
        "003_leaderboard_index",
        """
        CREATE INDEX IF NOT EXISTS idx_playerstats_wins ON playerstats(wins, total_games)
        """,
    ),
]


def ensure_migration_table(engine):
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.debug("migration_skipped", extra={"event": migration_name})
        return False

    logger.info("migration_applying", extra={"event": migration_name})
    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("migration_failed", extra={"event": migration_name, "error": str(e)})
            raise
    return True


def run_migrations(engine=None) -> int:
    """Run all pending migrations, return how many were applied"""
    if engine is None:
        from .config import get_settings
        engine = make_engine(get_settings().database_url)
    applied = sum(1 for name, sql in MIGRATIONS if apply_migration(engine, name, sql))
    logger.info("migrations_complete", extra={"count": applied})
    return applied


if __name__ == "__main__":
    from .logging_utils import setup_logging
    setup_logging()
    run_migrations()
