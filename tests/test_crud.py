from datetime import datetime, timedelta, timezone

from sqlmodel import SQLModel, create_engine, Session, select
from tictactoe import crud, models


def setup_db(tmp_path):
    db = tmp_path / 'crud.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    return engine


def _doc(code, version=1, active=True, players=(("u1", "alice", "X"),), last_activity=None, completed_at=None):
    now = datetime.now(timezone.utc)
    return {
        "roomCode": code,
        "players": [{"userId": uid, "username": name, "symbol": sym, "lastSeen": now.isoformat(), "socketRef": None}
                    for uid, name, sym in players],
        "board": [""] * 9,
        "currentPlayer": "X",
        "gameActive": active,
        "scores": {"X": 0, "O": 0, "draw": 0},
        "piecesPlaced": {"X": 0, "O": 0},
        "gamePhase": "placement",
        "maxPieces": 3,
        "pieceColors": {"X": "#e74c3c", "O": "#3498db"},
        "createdAt": now.isoformat(),
        "lastActivity": (last_activity or now).isoformat(),
        "completedAt": completed_at.isoformat() if completed_at else None,
        "version": version,
    }


def test_save_is_an_upsert_guarded_by_version(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        assert crud.save_room(s, _doc("ROOM01", version=2))
        newer = _doc("ROOM01", version=5)
        newer["board"][0] = "X"
        assert crud.save_room(s, newer)
        # an older snapshot arriving late is ignored
        assert not crud.save_room(s, _doc("ROOM01", version=3))
        loaded = crud.load_room(s, "ROOM01")
        assert loaded["version"] == 5
        assert loaded["board"][0] == "X"
        # saving the same version twice is harmless
        assert crud.save_room(s, newer)
        rows = s.exec(select(models.RoomRecord)).all()
        assert len(rows) == 1


def test_members_tracked_without_duplicates(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        crud.save_room(s, _doc("ROOM01", version=1))
        crud.save_room(s, _doc("ROOM01", version=2, players=(("u1", "alice", "X"), ("u2", "bob", "O"))))
        crud.save_room(s, _doc("ROOM01", version=3, players=(("u1", "alice", "X"), ("u2", "bob", "O"))))
        members = s.exec(select(models.RoomMember).where(models.RoomMember.room_code == "ROOM01")).all()
        assert sorted(m.user_id for m in members) == ["u1", "u2"]


def test_list_active_rooms_filters_inactive_and_orders_recent_first(tmp_path):
    engine = setup_db(tmp_path)
    now = datetime.now(timezone.utc)
    with Session(engine) as s:
        crud.save_room(s, _doc("OLDER1", last_activity=now - timedelta(hours=2)))
        crud.save_room(s, _doc("NEWER1", last_activity=now - timedelta(minutes=1)))
        crud.save_room(s, _doc("DONE01", active=False, completed_at=now))
        crud.save_room(s, _doc("OTHER1", players=(("u9", "zed", "X"),)))
        games = crud.list_active_rooms_for_user(s, "u1")
        assert [g["roomCode"] for g in games] == ["NEWER1", "OLDER1"]
        assert crud.list_active_rooms_for_user(s, "nobody") == []


def test_delete_room_removes_members(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        crud.save_room(s, _doc("ROOM01"))
        assert crud.delete_room(s, "ROOM01")
        assert crud.load_room(s, "ROOM01") is None
        assert crud.list_active_rooms_for_user(s, "u1") == []
        assert not crud.delete_room(s, "ROOM01")


def test_record_outcome_and_stats(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        crud.record_outcome(s, "u1", "alice", "win")
        crud.record_outcome(s, "u1", "alice", "loss")
        crud.record_outcome(s, "u1", "Alice2", "win")
        stats = crud.get_player_stats(s, "u1")
        assert stats["wins"] == 2 and stats["losses"] == 1 and stats["draws"] == 0
        assert stats["totalGames"] == 3
        assert stats["winRate"] == 67
        assert stats["username"] == "Alice2"

        empty = crud.get_player_stats(s, "ghost")
        assert empty["totalGames"] == 0 and empty["winRate"] == 0


def test_top_players_sorted_by_wins_then_win_rate(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        for outcome in ("win", "win", "loss", "loss"):
            crud.record_outcome(s, "a", "ann", outcome)      # 2 wins, 50%
        for outcome in ("win", "win"):
            crud.record_outcome(s, "b", "ben", outcome)      # 2 wins, 100%
        for outcome in ("win", "win", "win", "draw", "loss", "loss"):
            crud.record_outcome(s, "c", "cat", outcome)      # 3 wins, 50%
        crud.record_outcome(s, "d", "dan", "draw")           # 0 wins
        top = crud.get_top_players(s, 10)
        assert [p["userId"] for p in top] == ["c", "b", "a", "d"]
        assert [p["userId"] for p in crud.get_top_players(s, 2)] == ["c", "b"]


def test_display_name_roundtrip(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        assert crud.get_display_name(s, "u1") is None
        crud.set_display_name(s, "u1", "Alice")
        crud.set_display_name(s, "u1", "Alicia")
        assert crud.get_display_name(s, "u1") == "Alicia"


def test_cleanup_windows(tmp_path):
    engine = setup_db(tmp_path)
    now = datetime.now(timezone.utc)
    with Session(engine) as s:
        # completed 8 days ago -> completed rule
        crud.save_room(s, _doc("DONE01", active=False, completed_at=now - timedelta(days=8),
                               last_activity=now - timedelta(days=8)))
        # completed yesterday -> kept
        crud.save_room(s, _doc("DONE02", active=False, completed_at=now - timedelta(days=1),
                               last_activity=now - timedelta(days=1)))
        # active but untouched for 31 days -> inactive rule
        crud.save_room(s, _doc("IDLE01", last_activity=now - timedelta(days=31)))
        # active, 10 days idle -> kept
        crud.save_room(s, _doc("IDLE02", last_activity=now - timedelta(days=10)))
        # default room idle 25 hours -> default rule
        crud.save_room(s, _doc("default", last_activity=now - timedelta(hours=25)), is_default=True)

        counts = crud.cleanup_old_rooms(s, now)
        assert counts == {"completed": 1, "inactive": 1, "default": 1}
        remaining = sorted(r.code for r in s.exec(select(models.RoomRecord)).all())
        assert remaining == ["DONE02", "IDLE02"]
        assert crud.list_active_rooms_for_user(s, "u1") == [crud.load_room(s, "IDLE02")]


def test_timestamps_stay_utc_aware_across_writes(tmp_path):
    engine = setup_db(tmp_path)
    plus_two = timezone(timedelta(hours=2))
    local = datetime(2024, 5, 1, 14, 30, tzinfo=plus_two)
    with Session(engine) as s:
        assert crud.save_room(s, _doc("ZONE01", version=1, last_activity=local))
        # re-saving reads the stored row back before writing it again
        assert crud.save_room(s, _doc("ZONE01", version=2, last_activity=local))
        rec = s.get(models.RoomRecord, "ZONE01")
        assert rec.version == 2
        assert crud._as_utc(rec.last_activity) == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

        crud.record_outcome(s, "u1", "alice", "win", now=local)
        crud.record_outcome(s, "u1", "alice", "draw", now=local + timedelta(minutes=5))
        stats = crud.get_player_stats(s, "u1")
        assert stats["totalGames"] == 2
        assert stats["lastPlayed"] == "2024-05-01T12:35:00+00:00"

        crud.set_display_name(s, "u1", "Alice")
        crud.set_display_name(s, "u1", "Alicia")
        assert crud.get_display_name(s, "u1") == "Alicia"
