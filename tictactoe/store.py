"""
Async persistence gateway.

Wraps the synchronous SQLModel queries in `crud` and runs each one in a
worker thread, so connection tasks only suspend on I/O and never block the
event loop. Writes are best effort: failures are logged and reported as a
False return, never raised into gameplay.
"""
import asyncio
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Set

import anyio
from sqlmodel import Session

from . import crud
from .cache import MemoryCache, cache_top_players, get_cached_top_players, invalidate_top_players
from .logging_utils import get_logger

logger = get_logger("tictactoe.store")


class GameStore:
    def __init__(self, engine, cache: Optional[MemoryCache] = None, default_room_code: str = "default",
                 completed_retention_days: int = 7, inactive_retention_days: int = 30,
                 default_room_retention_hours: int = 24):
        self.engine = engine
        self.cache = cache if cache is not None else MemoryCache()
        self.default_room_code = default_room_code
        self.completed_retention_days = completed_retention_days
        self.inactive_retention_days = inactive_retention_days
        self.default_room_retention_hours = default_room_retention_hours
        self._pending: Set[asyncio.Task] = set()
        # SQLite has a single writer; queueing here keeps snapshot writes in submission order
        self._write_lock = asyncio.Lock()
        # room code -> createdAt of deleted games; late snapshots of those are dropped
        self._deleted: Dict[str, Set[str]] = {}

    @classmethod
    def from_settings(cls, engine, settings, cache: Optional[MemoryCache] = None) -> "GameStore":
        return cls(
            engine,
            cache=cache,
            default_room_code=settings.default_room_code,
            completed_retention_days=settings.completed_retention_days,
            inactive_retention_days=settings.inactive_retention_days,
            default_room_retention_hours=settings.default_room_retention_hours,
        )

    def _call(self, fn, *args, **kwargs):
        with Session(self.engine) as session:
            return fn(session, *args, **kwargs)

    async def _run(self, fn, *args, **kwargs):
        return await anyio.to_thread.run_sync(partial(self._call, fn, *args, **kwargs))

    # -- room snapshots --

    async def save_room_snapshot(self, code: str, document: Dict[str, Any]) -> bool:
        try:
            async with self._write_lock:
                if document.get("createdAt") in self._deleted.get(code, ()):
                    logger.debug("snapshot_of_deleted_room_skipped", extra={"room": code, "version": document.get("version")})
                    return False
                saved = await self._run(crud.save_room, document, is_default=(code == self.default_room_code))
        except Exception:
            logger.exception("snapshot_save_failed", extra={"room": code, "version": document.get("version")})
            return False
        if not saved:
            logger.debug("snapshot_stale_skipped", extra={"room": code, "version": document.get("version")})
        return saved

    def _track(self, coro) -> "asyncio.Task":
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def save_in_background(self, code: str, document: Dict[str, Any]) -> "asyncio.Task":
        """Schedule a snapshot write without waiting for it."""
        return self._track(self.save_room_snapshot(code, document))

    def record_outcomes_in_background(self, outcomes) -> Optional["asyncio.Task"]:
        """Schedule one record_match_outcome per (user_id, username, outcome)."""
        if not outcomes:
            return None

        async def _record_all():
            for user_id, username, outcome in outcomes:
                await self.record_match_outcome(user_id, username, outcome)

        return self._track(_record_all())

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for every background write scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def load_room_snapshot(self, code: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._run(crud.load_room, code)
        except Exception:
            logger.exception("snapshot_load_failed", extra={"room": code})
            return None

    async def delete_room_snapshot(self, code: str, created_at: Optional[str] = None) -> bool:
        """Delete the stored row and refuse later saves of the same game.

        `created_at` identifies a live game whose row may not be written yet.
        """
        try:
            async with self._write_lock:
                doc = await self._run(crud.load_room, code)
                tombstones = self._deleted.setdefault(code, set())
                for stamp in (created_at, doc.get("createdAt") if doc else None):
                    if stamp:
                        tombstones.add(stamp)
                return await self._run(crud.delete_room, code)
        except Exception:
            logger.exception("snapshot_delete_failed", extra={"room": code})
            return False

    async def list_active_rooms_for_identity(self, user_id: str) -> List[Dict[str, Any]]:
        if not user_id:
            return []
        return await self._run(crud.list_active_rooms_for_user, user_id)

    # -- player standings --

    async def record_match_outcome(self, user_id: str, username: str, outcome: str) -> bool:
        try:
            async with self._write_lock:
                await self._run(crud.record_outcome, user_id, username, outcome)
        except Exception:
            logger.exception("outcome_record_failed", extra={"user_id": user_id, "event": outcome})
            return False
        invalidate_top_players(self.cache)
        return True

    async def top_players(self, limit: int = 10) -> List[Dict[str, Any]]:
        cached = get_cached_top_players(self.cache, limit)
        if cached is not None:
            return cached
        players = await self._run(crud.get_top_players, limit)
        cache_top_players(self.cache, limit, players)
        return players

    async def get_player_stats(self, user_id: str) -> Dict[str, Any]:
        return await self._run(crud.get_player_stats, user_id)

    async def get_display_name(self, user_id: str) -> Optional[str]:
        try:
            return await self._run(crud.get_display_name, user_id)
        except Exception:
            logger.exception("profile_load_failed", extra={"user_id": user_id})
            return None

    async def set_display_name(self, user_id: str, display_name: str) -> bool:
        try:
            async with self._write_lock:
                await self._run(crud.set_display_name, user_id, display_name)
        except Exception:
            logger.exception("profile_save_failed", extra={"user_id": user_id})
            return False
        return True

    # -- retention --

    async def cleanup_old_rooms(self, now: Optional[datetime] = None) -> int:
        if not self._pending:
            self._deleted.clear()
        try:
            async with self._write_lock:
                counts = await self._run(
                    crud.cleanup_old_rooms,
                    now,
                    completed_days=self.completed_retention_days,
                    inactive_days=self.inactive_retention_days,
                    default_hours=self.default_room_retention_hours,
                )
        except Exception:
            logger.exception("room_cleanup_failed")
            return 0
        total = sum(counts.values())
        if total:
            logger.info("rooms_cleaned", extra={"count": total, "event": ",".join(f"{k}={v}" for k, v in counts.items())})
        return total
