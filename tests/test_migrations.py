from sqlmodel import SQLModel, create_engine, text

from tictactoe import models  # noqa: F401
from tictactoe.migrations import MIGRATIONS, has_migration_been_applied, run_migrations


def test_migrations_apply_once(tmp_path):
    engine = create_engine(f'sqlite:///{tmp_path / "mig.db"}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    assert run_migrations(engine) == len(MIGRATIONS)
    assert run_migrations(engine) == 0
    assert all(has_migration_been_applied(engine, name) for name, _ in MIGRATIONS)
    with engine.connect() as conn:
        names = {row[0] for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type='index'"))}
    assert "uq_roommember_room_user" in names
    assert "idx_playerstats_wins" in names
