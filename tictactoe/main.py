from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Optional

import asyncio
import time
import uuid
from datetime import datetime

from . import crud
from .auth import Identity, IdentityVerifier
from .cache import MemoryCache, cleanup_cache_periodically
from .config import Settings, get_settings
from .deps import get_session, require_identity
from .errors import GameError, NotFoundError
from .fanout import ConnectionHub
from .init_db import init_db, make_engine
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .migrations import run_migrations
from .rooms import RoomRegistry, public_state_from_document
from .session import SessionCoordinator, game_summary
from .store import GameStore


# Rate limiting - request times per client IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    Simple in-memory rate limiting. Returns True if request is allowed, False if rate limited.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()

    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[client_ip] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(client_ip, [])
        if req_time > cutoff_time
    ]
    if len(_RATE_LIMIT_STORE[client_ip]) >= max_requests:
        return False
    _RATE_LIMIT_STORE[client_ip].append(current_time)
    return True


def prune_rate_limits(window_seconds: int = 60, now: Optional[float] = None) -> int:
    """Forget clients with no request inside the window. Returns how many went."""
    cutoff = (now if now is not None else time.time()) - window_seconds
    stale = [ip for ip, times in _RATE_LIMIT_STORE.items() if not times or times[-1] <= cutoff]
    for ip in stale:
        del _RATE_LIMIT_STORE[ip]
    return len(stale)


def create_room_rate_limit(request: Request):
    """Raise HTTP 429 when a client asks for too many room codes"""
    max_requests = request.app.state.settings.create_room_rate_limit
    if not check_rate_limit(request, max_requests, 60):
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Maximum {max_requests} rooms per 60 seconds."
        )


setup_logging(get_settings().log_level)
logger = get_logger("tictactoe")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "message": "Input validation failed"
        }
    )


async def game_error_handler(request: Request, exc: GameError):
    status = 404 if isinstance(exc, NotFoundError) else 400
    return JSONResponse(status_code=status, content={"detail": exc.message})


async def run_sweep(app: FastAPI, now: Optional[datetime] = None) -> dict:
    """One pass of idle-room eviction and persisted-room retention."""
    state = app.state
    evicted = await state.registry.evict_idle(now)
    for code in evicted:
        state.hub.forget_room(code)
    deleted = await state.store.cleanup_old_rooms(now)
    cleanup_cache_periodically(state.store.cache)
    prune_rate_limits()
    return {"evicted": evicted, "deleted": deleted}


async def _sweep_loop(app: FastAPI):
    interval = app.state.settings.sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await run_sweep(app)
        except Exception:
            logger.exception("sweep_failed")


router = APIRouter()


@router.get("/health", include_in_schema=False)
def health(request: Request):
    state = request.app.state
    return JSONResponse({"status": "ok", "rooms": len(state.registry), "connections": len(state.hub)})


@router.post("/api/rooms/create", dependencies=[Depends(create_room_rate_limit)])
async def create_room(request: Request):
    code = await request.app.state.registry.allocate_code()
    return {"success": True, "roomCode": code, "message": f"Room {code} created."}


@router.get("/api/rooms/{code}")
async def get_room(code: str, request: Request):
    state = request.app.state
    code = state.registry.normalize_code(code)
    room = await state.registry.get(code)
    if room is not None:
        snapshot = await room.snapshot()
        return {"live": True, **snapshot.state}
    doc = await state.store.load_room_snapshot(code)
    if doc is None:
        raise NotFoundError(f"Room {code} not found.")
    return {"live": False, **public_state_from_document(doc)}


@router.get("/api/highscores")
async def highscores(request: Request, limit: int = Query(10)):
    if limit < 1 or limit > 100:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 100")
    players = await request.app.state.store.top_players(limit)
    return {"topPlayers": players}


@router.get("/api/players/{user_id}/stats")
def player_stats(user_id: str, session: Session = Depends(get_session)):
    return {"stats": crud.get_player_stats(session, user_id)}


@router.get("/api/players/{user_id}/games")
def player_games(user_id: str, session: Session = Depends(get_session), identity: Identity = Depends(require_identity)):
    if identity.user_id != user_id:
        raise HTTPException(status_code=403, detail="You can only view your own games.")
    docs = crud.list_active_rooms_for_user(session, user_id)
    return {"games": [game_summary(d, user_id) for d in docs]}


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    state = ws.app.state
    cid = uuid.uuid4().hex
    state.hub.register(cid, ws)
    coordinator = SessionCoordinator(cid, state.registry, state.store, state.hub, state.verifier)
    token = request_id_ctx.set(cid)
    logger.info("ws_connected", extra={"connection": cid, "client": ws.client.host if ws.client else "-"})
    try:
        while True:
            try:
                frame = await ws.receive_json()
            except (ValueError, TypeError, KeyError):
                await state.hub.send(cid, "error", {"message": "Frames must be JSON objects."})
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await state.hub.send(cid, "error", {"message": "Frames need an event name."})
                continue
            try:
                await coordinator.handle(frame["event"], frame.get("data"))
            except Exception:
                logger.exception("ws_handler_failed", extra={"connection": cid, "event": frame["event"]})
                await state.hub.send(cid, "error", {"message": "Something went wrong. Please try again."})
    except WebSocketDisconnect:
        pass
    finally:
        await coordinator.on_disconnect()
        request_id_ctx.reset(token)


def create_app(settings: Optional[Settings] = None, engine=None) -> FastAPI:
    settings = settings or get_settings()
    engine = engine if engine is not None else make_engine(settings.database_url)

    app = FastAPI(title="Tic-Tac-Toe Rooms")
    store = GameStore.from_settings(engine, settings, cache=MemoryCache())
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.registry = RoomRegistry.from_settings(settings, store=store)
    app.state.hub = ConnectionHub()
    app.state.verifier = IdentityVerifier.from_settings(settings)
    app.state.sweeper = None

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials="*" not in settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Accept", "Content-Type", "Authorization", "X-Request-ID"],
    )
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(GameError, game_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    async def on_startup():
        init_db(engine)
        try:
            run_migrations(engine)
        except Exception as e:
            logger.warning("migrations_failed", extra={"error": str(e)})
        if settings.sweep_interval_seconds > 0:
            app.state.sweeper = asyncio.create_task(_sweep_loop(app))
        logger.info("startup_complete", extra={"event": settings.movement_rule})

    @app.on_event("shutdown")
    async def on_shutdown():
        sweeper = app.state.sweeper
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await store.flush()
        logger.info("shutdown_complete")

    return app


app = create_app()
