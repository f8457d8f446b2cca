import asyncio

from sqlmodel import SQLModel, create_engine

from tictactoe.cache import MemoryCache, get_cached_top_players
from tictactoe.rooms import Room
from tictactoe.store import GameStore


def setup_store(tmp_path):
    db = tmp_path / 'store.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    return GameStore(engine, cache=MemoryCache())


def test_background_saves_land_after_flush(tmp_path):
    store = setup_store(tmp_path)

    async def scenario():
        room = Room("ROOM01")
        _, snap1, _ = await room.join("u1", "alice", "c1")
        _, snap2, _ = await room.join("u2", "bob", "c2")
        store.save_in_background(snap1.code, snap1.document)
        store.save_in_background(snap2.code, snap2.document)
        await store.flush()
        assert store.pending_writes == 0
        doc = await store.load_room_snapshot("ROOM01")
        assert doc["version"] == snap2.version
        assert [p["username"] for p in doc["players"]] == ["alice", "bob"]

        # a late, older snapshot does not overwrite the newer one
        assert not await store.save_room_snapshot(snap1.code, snap1.document)
        doc = await store.load_room_snapshot("ROOM01")
        assert len(doc["players"]) == 2

        games = await store.list_active_rooms_for_identity("u2")
        assert [g["roomCode"] for g in games] == ["ROOM01"]
        assert await store.list_active_rooms_for_identity("") == []

    asyncio.run(scenario())


def test_outcomes_invalidate_cached_leaderboard(tmp_path):
    store = setup_store(tmp_path)

    async def scenario():
        assert await store.top_players(10) == []
        assert get_cached_top_players(store.cache, 10) == []

        store.record_outcomes_in_background((("u1", "alice", "win"), ("u2", "bob", "loss")))
        await store.flush()
        assert get_cached_top_players(store.cache, 10) is None

        top = await store.top_players(10)
        assert [p["username"] for p in top] == ["alice", "bob"]
        assert top[0]["wins"] == 1

        stats = await store.get_player_stats("u2")
        assert stats["losses"] == 1 and stats["totalGames"] == 1

        assert store.record_outcomes_in_background(()) is None

    asyncio.run(scenario())


def test_delete_and_profiles(tmp_path):
    store = setup_store(tmp_path)

    async def scenario():
        room = Room("ROOM02")
        _, snap, _ = await room.join("u1", "alice", "c1")
        assert await store.save_room_snapshot(snap.code, snap.document)
        assert await store.delete_room_snapshot("ROOM02")
        assert await store.load_room_snapshot("ROOM02") is None
        assert not await store.delete_room_snapshot("ROOM02")

        assert await store.get_display_name("u1") is None
        assert await store.set_display_name("u1", "Alice")
        assert await store.get_display_name("u1") == "Alice"

    asyncio.run(scenario())


def test_write_failures_are_logged_not_raised(tmp_path):
    store = setup_store(tmp_path)
    store.engine.dispose()
    SQLModel.metadata.drop_all(store.engine)

    async def scenario():
        room = Room("ROOM03")
        _, snap, _ = await room.join("u1", "alice", "c1")
        assert await store.save_room_snapshot(snap.code, snap.document) is False
        assert await store.load_room_snapshot("ROOM03") is None
        assert await store.record_match_outcome("u1", "alice", "win") is False
        assert await store.cleanup_old_rooms() == 0

    asyncio.run(scenario())


def test_snapshots_of_a_deleted_game_are_not_written_back(tmp_path):
    store = setup_store(tmp_path)

    async def scenario():
        room = Room("ROOM04")
        _, snap, _ = await room.join("u1", "alice", "c1")
        # the live game is deleted before its first write lands
        await store.delete_room_snapshot("ROOM04", snap.document["createdAt"])
        assert not await store.save_room_snapshot(snap.code, snap.document)
        assert await store.load_room_snapshot("ROOM04") is None

        # a later game reusing the code is a different game
        again = Room("ROOM04")
        _, fresh, _ = await again.join("u2", "bob", "c2")
        fresh.document["createdAt"] = "2030-01-01T00:00:00+00:00"
        assert await store.save_room_snapshot(fresh.code, fresh.document)
        doc = await store.load_room_snapshot("ROOM04")
        assert [p["username"] for p in doc["players"]] == ["bob"]

    asyncio.run(scenario())
