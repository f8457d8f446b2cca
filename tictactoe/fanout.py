"""
Connection fan-out: who is connected, which room each connection is bound
to, and delivery of events to one connection or a whole room.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Set

from .logging_utils import get_logger

logger = get_logger("tictactoe.fanout")


def _prepare_message(event: str, data: Dict[str, Any]) -> Optional[str]:
    """Serialize a frame once so every recipient gets identical bytes."""
    try:
        return json.dumps({"event": event, "data": data})
    except (TypeError, ValueError):
        logger.warning("frame_serialize_failed", extra={"event": event})
        return None


async def _send_to_websocket(ws, message: str) -> bool:
    """Send a prepared frame. Return False if the socket is dead."""
    try:
        await ws.send_text(message)
        return True
    except Exception as send_exc:
        logger.debug("ws_send_error", extra={"error": str(send_exc)})
        return False


class ConnectionHub:
    def __init__(self):
        # connection id -> {"ws": websocket, "room": code or None}
        self._connections: Dict[str, Dict[str, Any]] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._last_version: Dict[str, int] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def register(self, connection_id: str, ws) -> None:
        self._connections[connection_id] = {"ws": ws, "room": None}
        logger.debug("connection_registered", extra={"connection": connection_id, "count": len(self._connections)})

    def unregister(self, connection_id: str) -> Optional[str]:
        """Forget a connection; returns the room it was bound to."""
        room = self.unbind(connection_id)
        self._connections.pop(connection_id, None)
        return room

    def bind(self, connection_id: str, room_code: str) -> None:
        meta = self._connections.get(connection_id)
        if meta is None:
            return
        if meta["room"] and meta["room"] != room_code:
            self.unbind(connection_id)
        meta["room"] = room_code
        self._rooms.setdefault(room_code, set()).add(connection_id)

    def unbind(self, connection_id: str) -> Optional[str]:
        meta = self._connections.get(connection_id)
        if meta is None or meta["room"] is None:
            return None
        room = meta["room"]
        meta["room"] = None
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        return room

    def members(self, room_code: str) -> List[str]:
        return sorted(self._rooms.get(room_code, ()))

    def forget_room(self, room_code: str) -> List[str]:
        """Unbind everyone from a room that no longer exists; returns who was bound."""
        members = self.members(room_code)
        for cid in members:
            self.unbind(cid)
        self._last_version.pop(room_code, None)
        self._send_locks.pop(room_code, None)
        return members

    def _drop(self, connection_id: str) -> None:
        logger.info("dead_connection_pruned", extra={"connection": connection_id})
        self.unregister(connection_id)

    async def send(self, connection_id: str, event: str, data: Dict[str, Any]) -> bool:
        meta = self._connections.get(connection_id)
        if meta is None:
            return False
        message = _prepare_message(event, data)
        if message is None:
            return False
        if not await _send_to_websocket(meta["ws"], message):
            self._drop(connection_id)
            return False
        return True

    async def broadcast(self, room_code: str, event: str, data: Dict[str, Any],
                        exclude: Optional[str] = None) -> int:
        """Deliver to every connection bound to the room. Returns how many got it."""
        message = _prepare_message(event, data)
        if message is None:
            return 0
        delivered = 0
        dead = []
        for cid in self.members(room_code):
            if cid == exclude:
                continue
            meta = self._connections.get(cid)
            if meta is None:
                continue
            if await _send_to_websocket(meta["ws"], message):
                delivered += 1
            else:
                dead.append(cid)
        for cid in dead:
            self._drop(cid)
        return delivered

    async def broadcast_state(self, snapshot) -> bool:
        """Broadcast a gameStateUpdate unless a newer one already went out.

        Sends for one room are serialized, and a snapshot whose version is not
        newer than the last one sent is dropped.
        """
        lock = self._send_locks.setdefault(snapshot.code, asyncio.Lock())
        async with lock:
            last = self._last_version.get(snapshot.code, -1)
            if snapshot.version <= last:
                logger.debug("stale_state_dropped", extra={"room": snapshot.code, "version": snapshot.version})
                return False
            self._last_version[snapshot.code] = snapshot.version
            await self.broadcast(snapshot.code, "gameStateUpdate", snapshot.state)
            return True
