"""
Per-connection session coordinator.

One SessionCoordinator exists per WebSocket. It tracks who the connection
is and which seat it holds, turns inbound commands into Room operations and
sends the results back: a unicast reply to the caller and, for accepted
mutations, a room-wide broadcast of the new snapshot.

State machine::

    UNAUTHENTICATED --login--> AWAITING_ROOM --joinRoom--> SEATED

`joinRoom` may arrive before `login`; the code is then kept as the pending
room and joined as soon as the login succeeds.
"""
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .auth import Identity, IdentityVerifier
from .errors import (
    AuthenticationError,
    GameError,
    NotFoundError,
    PermissionDeniedError,
    RoomClosedError,
)
from .fanout import ConnectionHub
from .logging_utils import get_logger
from .rooms import Player, Room, RoomRegistry, RoomSnapshot, validate_username
from .schemas import (
    ChangeColorCommand,
    ChangeUsernameCommand,
    DeleteGameCommand,
    JoinRoomCommand,
    LoginCommand,
    MakeMoveCommand,
    UserQuery,
    first_error_message,
)
from .store import GameStore

logger = get_logger("tictactoe.session")

UNAUTHENTICATED = "unauthenticated"
AWAITING_ROOM = "awaiting_room"
SEATED = "seated"

HIGHSCORE_LIMIT = 10

# commands whose failures go back as a named response instead of `error`
_FAILURE_EVENTS = {
    "joinRoom": "roomJoined",
    "login": "loginResponse",
    "changeUsername": "usernameChanged",
    "deleteGame": "deleteGameResponse",
}


def game_summary(doc: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    players = doc.get("players") or []
    mine = next((p for p in players if p.get("userId") == user_id), None)
    return {
        "roomCode": doc.get("roomCode"),
        "players": [{"userId": p.get("userId"), "username": p.get("username"), "symbol": p.get("symbol")} for p in players],
        "yourSymbol": mine.get("symbol") if mine else None,
        "currentPlayer": doc.get("currentPlayer"),
        "gameActive": doc.get("gameActive"),
        "gamePhase": doc.get("gamePhase"),
        "scores": doc.get("scores"),
        "lastActivity": doc.get("lastActivity"),
    }


class SessionCoordinator:
    def __init__(self, connection_id: str, registry: RoomRegistry, store: GameStore,
                 hub: ConnectionHub, verifier: IdentityVerifier):
        self.connection_id = connection_id
        self.registry = registry
        self.store = store
        self.hub = hub
        self.verifier = verifier

        self.state = UNAUTHENTICATED
        self.identity: Optional[Identity] = None
        self.username: Optional[str] = None
        self.room_code: Optional[str] = None
        self.symbol: Optional[str] = None
        self.pending_room_code: Optional[str] = None

        self._handlers = {
            "joinRoom": self.on_join_room,
            "login": self.on_login,
            "makeMove": self.on_make_move,
            "resetGame": self.on_reset_game,
            "resetScore": self.on_reset_score,
            "changeColor": self.on_change_color,
            "changeUsername": self.on_change_username,
            "getHighscores": self.on_get_highscores,
            "getPlayerStats": self.on_get_player_stats,
            "getMyGames": self.on_get_my_games,
            "deleteGame": self.on_delete_game,
        }

    def __repr__(self) -> str:
        return f"<SessionCoordinator {self.connection_id} {self.state} room={self.room_code}>"

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    def _log_extra(self, **kw) -> Dict[str, Any]:
        extra = {"connection": self.connection_id, "room": self.room_code, "user_id": self.user_id}
        extra.update(kw)
        return extra

    # -- plumbing --

    async def handle(self, event: str, data: Any) -> None:
        """Dispatch one inbound frame. Rejections never escape this method."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.info("unknown_event", extra=self._log_extra(event=str(event)))
            await self._send("error", {"message": f"Unknown event: {event}"})
            return
        if not isinstance(data, dict):
            data = {}
        try:
            await handler(data)
        except ValidationError as exc:
            await self._reply_failure(event, first_error_message(exc))
        except GameError as exc:
            logger.debug("command_rejected", extra=self._log_extra(event=event, error=exc.message))
            await self._reply_failure(event, exc.message)

    async def _send(self, event: str, data: Dict[str, Any]) -> bool:
        return await self.hub.send(self.connection_id, event, data)

    async def _reply_failure(self, event: str, message: str) -> None:
        named = _FAILURE_EVENTS.get(event)
        if named:
            await self._send(named, {"success": False, "message": message})
        else:
            await self._send("error", {"message": message})

    async def _commit(self, snapshot: RoomSnapshot) -> None:
        self.store.save_in_background(snapshot.code, snapshot.document)
        await self.hub.broadcast_state(snapshot)

    def _reset_to_lobby(self) -> None:
        self.hub.unbind(self.connection_id)
        self.room_code = None
        self.symbol = None
        self.state = AWAITING_ROOM if self.identity else UNAUTHENTICATED

    async def _current_room(self) -> Room:
        if self.state == UNAUTHENTICATED:
            raise PermissionDeniedError("You must be logged in to play.")
        if self.state != SEATED or not self.room_code:
            raise PermissionDeniedError("Join a room first.")
        room = await self.registry.get(self.room_code)
        if room is None or room.closed:
            logger.info("room_gone", extra=self._log_extra())
            self._reset_to_lobby()
            raise RoomClosedError()
        seat = room.player_by_symbol(self.symbol)
        if seat is None or seat.connection_id != self.connection_id:
            # another connection of the same identity re-bound this seat
            self._reset_to_lobby()
            raise PermissionDeniedError("Your seat is now held by another connection.")
        return room

    # -- room entry / exit --

    async def _enter_room(self, code: str) -> Tuple[Player, RoomSnapshot, bool]:
        if self.state == SEATED and self.room_code and self.room_code != code:
            await self._leave_current_room()

        for attempt in range(2):
            try:
                room = await self.registry.get_or_create(code)
                player, snapshot, reconnected = await room.join(self.user_id, self.username, self.connection_id)
                break
            except RoomClosedError:
                # evicted or deleted under us; a second lookup builds a fresh Room once that settles
                if attempt:
                    raise
        self.hub.bind(self.connection_id, code)
        self._unbind_displaced(room)
        self.state = SEATED
        self.room_code = code
        self.symbol = player.symbol
        self.username = player.username
        logger.info("room_joined", extra=self._log_extra(symbol=player.symbol, event="reconnect" if reconnected else "join"))
        return player, snapshot, reconnected

    def _unbind_displaced(self, room: Room) -> None:
        """Stop broadcasts to connections whose seat was re-bound elsewhere."""
        held = {p.connection_id for p in room.players if p.connection_id}
        for cid in self.hub.members(room.code):
            if cid not in held:
                logger.info("displaced_connection_unbound", extra=self._log_extra(connection=cid))
                self.hub.unbind(cid)

    async def _leave_current_room(self) -> None:
        room = await self.registry.get(self.room_code) if self.room_code else None
        code = self.room_code
        self._reset_to_lobby()
        if room is None:
            return
        released = await room.mark_disconnected(self.connection_id)
        if released is None:
            return
        player, snapshot = released
        self.store.save_in_background(snapshot.code, snapshot.document)
        await self.hub.broadcast(code, "playerDisconnected", {"username": player.username})
        logger.info("room_left", extra=self._log_extra(room=code, symbol=player.symbol))

    async def on_disconnect(self) -> None:
        """Release the seat (keeping it reserved) and forget the connection."""
        try:
            if self.state == SEATED:
                await self._leave_current_room()
        finally:
            self.hub.unregister(self.connection_id)
            logger.info("session_closed", extra=self._log_extra())

    # -- commands --

    async def on_join_room(self, data: Dict[str, Any]) -> None:
        cmd = JoinRoomCommand.model_validate(data)
        if cmd.create:
            code = await self.registry.allocate_code()
        else:
            code = self.registry.normalize_code(cmd.roomCode)

        if self.state == UNAUTHENTICATED:
            self.pending_room_code = code
            await self._send("roomJoined", {
                "success": True,
                "roomCode": code,
                "message": f"Room {code} selected. Please log in to join.",
            })
            return

        if self.state == SEATED and self.room_code == code:
            try:
                await self._current_room()
            except (PermissionDeniedError, RoomClosedError):
                # the seat or the room is gone; _current_room reset us, so join afresh
                pass
            else:
                await self._send("roomJoined", {"success": True, "roomCode": code, "message": f"Already in room {code}."})
                return

        player, snapshot, reconnected = await self._enter_room(code)
        verb = "Rejoined" if reconnected else "Joined"
        await self._send("roomJoined", {
            "success": True,
            "roomCode": code,
            "message": f"{verb} room {code} as {player.symbol}.",
        })
        await self._commit(snapshot)

    async def _resolve_username(self, identity: Identity, custom: Optional[str]) -> Optional[str]:
        if custom:
            name = validate_username(custom)
            if identity.user_id:
                await self.store.set_display_name(identity.user_id, name)
            return name
        if identity.user_id:
            stored = await self.store.get_display_name(identity.user_id)
            if stored:
                return stored
        return identity.display_name

    async def on_login(self, data: Dict[str, Any]) -> None:
        if self.state == SEATED:
            await self._send("loginResponse", {"success": False, "message": "Already logged in and seated."})
            return
        cmd = LoginCommand.model_validate(data)
        try:
            identity = self.verifier.verify(cmd.token, cmd.customUsername)
        except AuthenticationError as exc:
            logger.info("login_failed", extra=self._log_extra(error=exc.message))
            raise
        username = await self._resolve_username(identity, cmd.customUsername)
        if not username:
            await self._send("loginResponse", {
                "success": False,
                "message": "Please choose a username.",
                "needsUsername": True,
            })
            return

        self.identity = identity
        self.username = username
        self.state = AWAITING_ROOM
        logger.info("login_ok", extra=self._log_extra(event=identity.auth_type))

        if self.pending_room_code is None:
            await self._send("loginResponse", {
                "success": True,
                "message": f"Welcome, {username}! Choose a room to play.",
                "needsRoom": True,
                "username": username,
            })
            return

        code = self.pending_room_code
        self.pending_room_code = None
        try:
            player, snapshot, _ = await self._enter_room(code)
        except GameError as exc:
            await self._send("loginResponse", {
                "success": True,
                "message": f"Logged in, but could not join room {code}: {exc.message}",
                "needsRoom": True,
                "username": username,
            })
            return
        await self._send("loginResponse", {
            "success": True,
            "message": f"Welcome, {username}! You are {player.symbol} in room {code}.",
            "username": player.username,
            "player": player.to_public(),
            "roomCode": code,
        })
        await self._commit(snapshot)

    async def on_make_move(self, data: Dict[str, Any]) -> None:
        room = await self._current_room()
        cmd = MakeMoveCommand.model_validate(data)
        result = await room.apply_move(self.symbol, cmd.cellIndex, cmd.fromIndex)
        await self._commit(result.snapshot)
        if result.terminal:
            logger.info("game_over", extra=self._log_extra(symbol=result.winner, event="draw" if result.draw else "win"))
            await self.hub.broadcast(room.code, "gameOver", result.game_over_payload())
            self.store.record_outcomes_in_background(result.outcomes)

    async def on_reset_game(self, data: Dict[str, Any]) -> None:
        room = await self._current_room()
        await self._commit(await room.reset_game())

    async def on_reset_score(self, data: Dict[str, Any]) -> None:
        room = await self._current_room()
        await self._commit(await room.reset_score())

    async def on_change_color(self, data: Dict[str, Any]) -> None:
        room = await self._current_room()
        cmd = ChangeColorCommand.model_validate(data)
        snapshot = await room.change_color(self.symbol, cmd.piece, cmd.color)
        await self._commit(snapshot)
        await self.hub.broadcast(room.code, "colorChanged", {"piece": cmd.piece, "color": cmd.color})

    async def on_change_username(self, data: Dict[str, Any]) -> None:
        if self.identity is None:
            raise PermissionDeniedError("You must be logged in to change your username.")
        cmd = ChangeUsernameCommand.model_validate(data)
        name = validate_username(cmd.newUsername)
        if self.state == SEATED:
            room = await self._current_room()
            await self._commit(await room.rename_player(self.symbol, name))
        self.username = name
        if self.user_id:
            await self.store.set_display_name(self.user_id, name)
        await self._send("usernameChanged", {
            "success": True,
            "newUsername": name,
            "message": f"Username changed to {name}.",
        })

    async def on_get_highscores(self, data: Dict[str, Any]) -> None:
        players = await self.store.top_players(HIGHSCORE_LIMIT)
        await self._send("highscoresUpdate", {"topPlayers": players})

    async def on_get_player_stats(self, data: Dict[str, Any]) -> None:
        cmd = UserQuery.model_validate(data)
        user_id = cmd.userId or self.user_id
        if not user_id:
            raise NotFoundError("No player to look up.")
        stats = await self.store.get_player_stats(user_id)
        await self._send("playerStatsUpdate", {"stats": stats})

    def _own_user_id(self, requested: Optional[str]) -> str:
        if not self.user_id:
            raise PermissionDeniedError("Sign in with an account to manage your games.")
        if requested and requested != self.user_id:
            raise PermissionDeniedError("You can only manage your own games.")
        return self.user_id

    async def on_get_my_games(self, data: Dict[str, Any]) -> None:
        cmd = UserQuery.model_validate(data)
        user_id = self._own_user_id(cmd.userId)
        docs = await self.store.list_active_rooms_for_identity(user_id)
        await self._send("myGamesUpdate", {"games": [game_summary(d, user_id) for d in docs]})

    async def on_delete_game(self, data: Dict[str, Any]) -> None:
        cmd = DeleteGameCommand.model_validate(data)
        code = self.registry.normalize_code(cmd.roomCode)
        seated_here = self.state == SEATED and self.room_code == code
        user_id = None if seated_here and not self.user_id else self._own_user_id(cmd.userId)

        room = await self.registry.get(code)
        if room is not None:
            allowed = seated_here or room.has_member(user_id)
        else:
            doc = await self.store.load_room_snapshot(code)
            if doc is None:
                raise NotFoundError("Game not found.")
            allowed = user_id is not None and any(p.get("userId") == user_id for p in doc.get("players") or [])
        if not allowed:
            raise PermissionDeniedError("You can only delete games you are part of.")

        async with self.registry.deleting(code) as removed:
            created_at = None
            if removed is not None:
                created_at = (await removed.snapshot()).document["createdAt"]
                await self.hub.broadcast(code, "gameDeleted", {"message": f"This game was deleted by {self.username}."},
                                         exclude=self.connection_id)
                self.hub.forget_room(code)
            # queued writes for this room must land before the row goes away
            await self.store.flush()
            await self.store.delete_room_snapshot(code, created_at)
        if seated_here:
            self._reset_to_lobby()
        logger.info("game_deleted", extra=self._log_extra(room=code))
        await self._send("deleteGameResponse", {"success": True, "message": f"Game {code} deleted."})
