import asyncio
from datetime import timedelta

import jwt
from fastapi.testclient import TestClient
from sqlmodel import Session

from tictactoe import crud
from tictactoe import main as app_main
from tictactoe.cache import invalidate_top_players
from tictactoe.config import Settings
from tictactoe.init_db import make_engine
from tictactoe.main import create_app, prune_rate_limits, run_sweep
from tictactoe.rooms import Room


SECRET = "api-secret"


def bearer(sub):
    return {"Authorization": "Bearer " + jwt.encode({"sub": sub}, SECRET, algorithm="HS256")}


def make_app(tmp_path, **overrides):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        sweep_interval_seconds=0,
        create_room_rate_limit=3,
    ).with_overrides(**overrides)
    engine = make_engine(settings.database_url)
    return create_app(settings, engine), engine


def test_health(tmp_path):
    app, _ = make_app(tmp_path)
    with TestClient(app) as client:
        r = client.get('/health')
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "rooms": 0, "connections": 0}
        assert r.headers.get("X-Request-ID")


def test_create_room_and_fetch_live_state(tmp_path):
    app, _ = make_app(tmp_path)
    with TestClient(app) as client:
        r = client.post('/api/rooms/create')
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        code = body["roomCode"]
        assert len(code) == 6

        r2 = client.get(f'/api/rooms/{code.lower()}')
        assert r2.status_code == 200
        state = r2.json()
        assert state["live"] is True
        assert state["roomCode"] == code
        assert state["players"] == []
        assert state["board"] == [""] * 9
        assert client.get('/health').json()["rooms"] == 1


def test_create_room_rate_limited(tmp_path):
    app, _ = make_app(tmp_path)
    with TestClient(app) as client:
        for _ in range(3):
            assert client.post('/api/rooms/create').status_code == 200
        r = client.post('/api/rooms/create')
        assert r.status_code == 429
        assert "Rate limit" in r.json()["detail"]


def test_get_room_errors(tmp_path):
    app, _ = make_app(tmp_path)
    with TestClient(app) as client:
        r = client.get('/api/rooms/ZZZZZZ')
        assert r.status_code == 404
        assert r.json()["detail"] == "Room ZZZZZZ not found."

        r2 = client.get('/api/rooms/way-too-long-code')
        assert r2.status_code == 400


def test_get_room_falls_back_to_persisted_snapshot(tmp_path):
    app, engine = make_app(tmp_path)

    async def build():
        room = Room("SAVED1")
        await room.join("u1", "alice", "c1")
        return (await room.snapshot()).document

    doc = asyncio.run(build())
    with TestClient(app) as client:
        with Session(engine) as s:
            crud.save_room(s, doc)
        r = client.get('/api/rooms/saved1')
        assert r.status_code == 200
        state = r.json()
        assert state["live"] is False
        assert [p["username"] for p in state["players"]] == ["alice"]
        # restored players are never shown as connected
        assert state["players"][0]["connected"] is False


def test_highscores_and_limits(tmp_path):
    app, engine = make_app(tmp_path)
    with TestClient(app) as client:
        assert client.get('/api/highscores').json() == {"topPlayers": []}
        assert client.get('/api/highscores?limit=0').status_code == 400
        assert client.get('/api/highscores?limit=101').status_code == 400
        bad = client.get('/api/highscores?limit=abc')
        assert bad.status_code == 422
        assert bad.json()["message"] == "Input validation failed"

        with Session(engine) as s:
            crud.record_outcome(s, "u1", "alice", "win")
            crud.record_outcome(s, "u2", "bob", "loss")
        # the empty list above is cached; recording outside the store does not invalidate it
        invalidate_top_players(app.state.store.cache)
        top = client.get('/api/highscores?limit=5').json()["topPlayers"]
        assert [p["username"] for p in top] == ["alice", "bob"]


def test_player_stats_and_games(tmp_path):
    app, engine = make_app(tmp_path, identity_jwt_secret=SECRET)

    async def build():
        room = Room("GAME01")
        await room.join("u1", "alice", "c1")
        await room.join("u2", "bob", "c2")
        return (await room.snapshot()).document

    doc = asyncio.run(build())
    with TestClient(app) as client:
        with Session(engine) as s:
            crud.save_room(s, doc)
            crud.record_outcome(s, "u1", "alice", "draw")

        stats = client.get('/api/players/u1/stats').json()["stats"]
        assert stats["draws"] == 1 and stats["totalGames"] == 1

        unknown = client.get('/api/players/nobody/stats').json()["stats"]
        assert unknown["totalGames"] == 0

        assert client.get('/api/players/u2/games').status_code == 401
        bad = client.get('/api/players/u2/games', headers={"Authorization": "Bearer not-a-jwt"})
        assert bad.status_code == 401
        other = client.get('/api/players/u2/games', headers=bearer("u1"))
        assert other.status_code == 403

        games = client.get('/api/players/u2/games', headers=bearer("u2")).json()["games"]
        assert len(games) == 1
        assert games[0]["roomCode"] == "GAME01"
        assert games[0]["yourSymbol"] == "O"


def test_sweep_evicts_idle_rooms_and_cleans_storage(tmp_path):
    app, _ = make_app(tmp_path)
    with TestClient(app) as client:
        code = client.post('/api/rooms/create').json()["roomCode"]
        room = client.portal.call(app.state.registry.get, code)
        later = room.empty_since + timedelta(seconds=app.state.settings.room_idle_grace_seconds + 1)

        result = client.portal.call(run_sweep, app, later)
        assert result["evicted"] == [code]
        assert result["deleted"] == 0
        assert client.get(f'/api/rooms/{code}').status_code == 404


def test_rate_limit_entries_expire(tmp_path):
    app, _ = make_app(tmp_path)
    with TestClient(app) as client:
        assert client.post('/api/rooms/create').status_code == 200
        assert len(app_main._RATE_LIMIT_STORE) == 1
        (last,) = next(iter(app_main._RATE_LIMIT_STORE.values()))

        assert prune_rate_limits(now=last + 30) == 0
        assert prune_rate_limits(now=last + 61) == 1
        assert app_main._RATE_LIMIT_STORE == {}
        # a forgotten client starts with a fresh window
        assert client.post('/api/rooms/create').status_code == 200
