"""
Rooms: one isolated two-player match each, plus the registry that owns them.

Every mutation of a Room happens under the Room's own asyncio lock and
returns a RoomSnapshot captured while the lock was held, so callers can
persist and broadcast afterwards without holding the lock across I/O.
"""
import asyncio
import random
import re
import string
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from . import game
from .errors import (
    InvalidColorError,
    InvalidRoomCodeError,
    InvalidUsernameError,
    MoveRejectedError,
    PermissionDeniedError,
    RoomClosedError,
    RoomFullError,
    UsernameTakenError,
)
from .logging_utils import get_logger

logger = get_logger("tictactoe.rooms")

MAX_PLAYERS = 2
CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_COLORS = {"X": "#e74c3c", "O": "#3498db"}

_CODE_RE = re.compile(r"^[A-Z0-9]{6}$")
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9 _-]{2,20}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_room_code() -> str:
    return "".join(random.choices(CODE_ALPHABET, k=CODE_LENGTH))


def validate_username(username: Optional[str]) -> str:
    name = (username or "").strip()
    if not _USERNAME_RE.match(name):
        raise InvalidUsernameError()
    return name


def is_valid_color(color: Optional[str]) -> bool:
    return isinstance(color, str) and bool(_COLOR_RE.match(color))


@dataclass
class Player:
    username: str
    symbol: str
    user_id: Optional[str] = None
    # non-owning handle; None means seated but currently disconnected
    connection_id: Optional[str] = None
    last_seen: datetime = field(default_factory=utcnow)
    joined_at: datetime = field(default_factory=utcnow)

    @property
    def connected(self) -> bool:
        return self.connection_id is not None

    def to_public(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "symbol": self.symbol,
            "connected": self.connected,
            "lastSeen": _iso(self.last_seen),
        }

    def to_document(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "symbol": self.symbol,
            "lastSeen": _iso(self.last_seen),
            "joinedAt": _iso(self.joined_at),
            "socketRef": self.connection_id,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Player":
        # restored seats never carry a live connection
        last_seen = _parse_dt(doc.get("lastSeen")) or utcnow()
        return cls(
            username=str(doc.get("username") or ""),
            symbol=str(doc.get("symbol") or "X"),
            user_id=doc.get("userId"),
            connection_id=None,
            last_seen=last_seen,
            joined_at=_parse_dt(doc.get("joinedAt")) or last_seen,
        )


@dataclass(frozen=True)
class RoomSnapshot:
    """Consistent copy of a Room taken under its lock."""
    code: str
    version: int
    state: Dict[str, Any]
    document: Dict[str, Any]


@dataclass(frozen=True)
class MoveResult:
    snapshot: RoomSnapshot
    winner: Optional[str] = None
    winner_name: Optional[str] = None
    line: Optional[Tuple[int, int, int]] = None
    draw: bool = False
    # (user_id, username, "win" | "loss" | "draw") for identified players
    outcomes: Tuple[Tuple[str, str, str], ...] = ()

    @property
    def terminal(self) -> bool:
        return self.winner is not None or self.draw

    def game_over_payload(self) -> Dict[str, Any]:
        state = self.snapshot.state
        payload: Dict[str, Any] = {
            "winner": self.winner,
            "board": state["board"],
            "scores": state["scores"],
            "gamePhase": state["gamePhase"],
        }
        if self.draw:
            payload["draw"] = True
        else:
            payload["winnerName"] = self.winner_name
            payload["pattern"] = list(self.line) if self.line else None
        return payload


class Room:
    def __init__(
        self,
        code: str,
        max_pieces: int = 3,
        movement_rule: str = game.MOVEMENT_FREE,
        is_default: bool = False,
        now: Optional[datetime] = None,
    ):
        now = now or utcnow()
        self.code = code
        self.is_default = is_default
        self.max_pieces = max_pieces
        self.movement_rule = movement_rule
        self.players: List[Player] = []
        self.board: List[str] = game.empty_board()
        self.current_player = "X"
        self.game_active = True
        self.scores: Dict[str, int] = {"X": 0, "O": 0, "draw": 0}
        self.pieces_placed: Dict[str, int] = {"X": 0, "O": 0}
        self.game_phase = game.PLACEMENT
        self.piece_colors: Dict[str, str] = dict(DEFAULT_COLORS)
        self.created_at = now
        self.last_activity = now
        self.completed_at: Optional[datetime] = None
        # set whenever no seat holds a live connection; drives idle eviction
        self.empty_since: Optional[datetime] = now
        self.version = 0
        self.closed = False
        self.lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Room {self.code} players={len(self.players)} v={self.version}>"

    # -- read helpers (callers hold the lock or accept a racy read) --

    @property
    def connected_count(self) -> int:
        return sum(1 for p in self.players if p.connected)

    def player_by_symbol(self, symbol: str) -> Optional[Player]:
        for p in self.players:
            if p.symbol == symbol:
                return p
        return None

    def player_by_user(self, user_id: Optional[str]) -> Optional[Player]:
        if not user_id:
            return None
        for p in self.players:
            if p.user_id == user_id:
                return p
        return None

    def has_member(self, user_id: Optional[str]) -> bool:
        return self.player_by_user(user_id) is not None

    def is_idle(self, now: datetime, grace_seconds: int) -> bool:
        if self.closed or self.connected_count or self.empty_since is None:
            return False
        return now - self.empty_since >= timedelta(seconds=grace_seconds)

    # -- snapshots --

    def _public_state(self) -> Dict[str, Any]:
        return {
            "roomCode": self.code,
            "players": [p.to_public() for p in self.players],
            "board": list(self.board),
            "currentPlayer": self.current_player,
            "gameActive": self.game_active,
            "scores": dict(self.scores),
            "piecesPlaced": dict(self.pieces_placed),
            "gamePhase": self.game_phase,
            "maxPieces": self.max_pieces,
            "pieceColors": dict(self.piece_colors),
            "movementRule": self.movement_rule,
        }

    def _document(self) -> Dict[str, Any]:
        return {
            "roomCode": self.code,
            "players": [p.to_document() for p in self.players],
            "board": list(self.board),
            "currentPlayer": self.current_player,
            "gameActive": self.game_active,
            "scores": dict(self.scores),
            "piecesPlaced": dict(self.pieces_placed),
            "gamePhase": self.game_phase,
            "maxPieces": self.max_pieces,
            "movementRule": self.movement_rule,
            "pieceColors": dict(self.piece_colors),
            "createdAt": _iso(self.created_at),
            "lastActivity": _iso(self.last_activity),
            "completedAt": _iso(self.completed_at),
            "version": self.version,
        }

    def _snapshot_locked(self) -> RoomSnapshot:
        return RoomSnapshot(
            code=self.code,
            version=self.version,
            state=self._public_state(),
            document=self._document(),
        )

    def _commit_locked(self) -> RoomSnapshot:
        self.version += 1
        self.last_activity = utcnow()
        return self._snapshot_locked()

    def _ensure_open(self) -> None:
        if self.closed:
            raise RoomClosedError()

    async def snapshot(self) -> RoomSnapshot:
        async with self.lock:
            return self._snapshot_locked()

    @classmethod
    def from_document(cls, doc: Dict[str, Any], is_default: bool = False, default_max_pieces: int = 3,
                      default_movement_rule: str = game.MOVEMENT_FREE) -> "Room":
        room = cls(
            code=str(doc["roomCode"]),
            max_pieces=int(doc.get("maxPieces") or default_max_pieces),
            movement_rule=doc.get("movementRule") or default_movement_rule,
            is_default=is_default,
            now=_parse_dt(doc.get("createdAt")),
        )
        board = doc.get("board") or []
        if len(board) == game.BOARD_SIZE:
            room.board = [cell if cell in game.SYMBOLS else game.EMPTY for cell in board]
        room.players = [Player.from_document(p) for p in (doc.get("players") or [])][:MAX_PLAYERS]
        room.current_player = doc.get("currentPlayer") if doc.get("currentPlayer") in game.SYMBOLS else "X"
        room.game_active = bool(doc.get("gameActive", True))
        scores = doc.get("scores") or {}
        room.scores = {k: int(scores.get(k, 0)) for k in ("X", "O", "draw")}
        placed = doc.get("piecesPlaced") or {}
        room.pieces_placed = {k: int(placed.get(k, 0)) for k in game.SYMBOLS}
        room.game_phase = game.MOVEMENT if doc.get("gamePhase") == game.MOVEMENT else game.PLACEMENT
        colors = doc.get("pieceColors") or {}
        room.piece_colors = {k: colors.get(k) if is_valid_color(colors.get(k)) else DEFAULT_COLORS[k] for k in game.SYMBOLS}
        room.last_activity = _parse_dt(doc.get("lastActivity")) or room.created_at
        room.completed_at = _parse_dt(doc.get("completedAt"))
        room.version = int(doc.get("version") or 0)
        room.empty_since = utcnow()
        return room

    # -- mutations --

    def _free_symbol(self) -> str:
        taken = {p.symbol for p in self.players}
        return "X" if "X" not in taken else "O"

    def _name_taken(self, name: str, exclude: Optional[Player] = None) -> bool:
        lowered = name.lower()
        return any(p is not exclude and p.username.lower() == lowered for p in self.players)

    def _find_seat(self, user_id: Optional[str], name: str) -> Optional[Player]:
        if user_id:
            return self.player_by_user(user_id)
        # anonymous seats are reclaimable by name, but only while nobody holds them
        lowered = name.lower()
        for p in self.players:
            if p.user_id is None and not p.connected and p.username.lower() == lowered:
                return p
        return None

    async def join(self, user_id: Optional[str], username: str, connection_id: Optional[str]) -> Tuple[Player, RoomSnapshot, bool]:
        """Seat a player, or re-bind an existing seat.

        Returns (player, snapshot, reconnected).
        """
        async with self.lock:
            self._ensure_open()
            name = validate_username(username)
            seat = self._find_seat(user_id, name)
            if seat is not None:
                if seat.connection_id and seat.connection_id != connection_id:
                    logger.info("seat_taken_over", extra={"room": self.code, "symbol": seat.symbol, "connection": seat.connection_id})
                seat.connection_id = connection_id
                seat.last_seen = utcnow()
                self.empty_since = None if seat.connected else self.empty_since
                return seat, self._commit_locked(), True

            if len(self.players) >= MAX_PLAYERS:
                raise RoomFullError(f"Room {self.code} is full (2 players maximum).")
            if self._name_taken(name):
                raise UsernameTakenError(f'Username "{name}" is already taken in this room.')
            player = Player(username=name, symbol=self._free_symbol(), user_id=user_id, connection_id=connection_id)
            self.players.append(player)
            if player.connected:
                self.empty_since = None
            logger.info("player_seated", extra={"room": self.code, "symbol": player.symbol, "user_id": user_id})
            return player, self._commit_locked(), False

    async def apply_move(self, symbol: str, cell: int, from_cell: Optional[int] = None) -> MoveResult:
        async with self.lock:
            self._ensure_open()
            self._check_can_move(symbol)
            if self.game_phase == game.PLACEMENT:
                self._place(symbol, cell)
            else:
                self._move(symbol, cell, from_cell)
            return self._settle(symbol)

    def _check_can_move(self, symbol: str) -> None:
        if len(self.players) < MAX_PLAYERS:
            raise MoveRejectedError("Waiting for another player.")
        if not self.game_active:
            raise MoveRejectedError("The game is over. Start a new game to keep playing.")
        if symbol != self.current_player:
            raise MoveRejectedError("It's not your turn!")

    def _place(self, symbol: str, cell: int) -> None:
        if not game.is_valid_cell(cell):
            raise MoveRejectedError("Invalid cell.")
        if self.board[cell] != game.EMPTY:
            raise MoveRejectedError("Cell is already occupied!")
        if not game.is_legal_placement(self.board, self.pieces_placed, symbol, cell, self.max_pieces):
            raise MoveRejectedError("You have already placed all your pieces!")
        self.board[cell] = symbol
        self.pieces_placed[symbol] += 1
        self.game_phase = game.advance_phase(self.pieces_placed, self.max_pieces, self.game_phase)

    def _move(self, symbol: str, cell: int, from_cell: Optional[int]) -> None:
        if from_cell is None:
            raise MoveRejectedError("You must select a piece to move!")
        if not game.is_legal_move(self.board, symbol, from_cell, cell, self.movement_rule):
            if self.movement_rule == game.MOVEMENT_ADJACENT:
                raise MoveRejectedError("Invalid move! You can only move your pieces to adjacent empty cells.")
            raise MoveRejectedError("Invalid move! You can only move your own pieces to empty cells.")
        self.board[from_cell] = game.EMPTY
        self.board[cell] = symbol

    def _settle(self, symbol: str) -> MoveResult:
        win = game.check_win(self.board)
        if win:
            self.game_active = False
            self.scores[win.winner] += 1
            self.completed_at = utcnow()
            winner = self.player_by_symbol(win.winner)
            return MoveResult(
                snapshot=self._commit_locked(),
                winner=win.winner,
                winner_name=winner.username if winner else None,
                line=win.line,
                outcomes=self._outcomes(win.winner),
            )
        if game.check_draw(self.board):
            self.game_active = False
            self.scores["draw"] += 1
            self.completed_at = utcnow()
            return MoveResult(snapshot=self._commit_locked(), draw=True, outcomes=self._outcomes(None))
        self.current_player = game.other_symbol(symbol)
        return MoveResult(snapshot=self._commit_locked())

    def _outcomes(self, winner: Optional[str]) -> Tuple[Tuple[str, str, str], ...]:
        results = []
        for p in self.players:
            if not p.user_id:
                continue
            if winner is None:
                outcome = "draw"
            else:
                outcome = "win" if p.symbol == winner else "loss"
            results.append((p.user_id, p.username, outcome))
        return tuple(results)

    async def reset_game(self) -> RoomSnapshot:
        async with self.lock:
            self._ensure_open()
            self.board = game.empty_board()
            self.current_player = "X"
            self.game_active = True
            self.pieces_placed = {"X": 0, "O": 0}
            self.game_phase = game.PLACEMENT
            self.completed_at = None
            return self._commit_locked()

    async def reset_score(self) -> RoomSnapshot:
        async with self.lock:
            self._ensure_open()
            self.scores = {"X": 0, "O": 0, "draw": 0}
            return self._commit_locked()

    async def change_color(self, acting_symbol: str, piece: str, color: str) -> RoomSnapshot:
        async with self.lock:
            self._ensure_open()
            if piece not in game.SYMBOLS:
                raise InvalidColorError("Piece must be X or O.")
            if acting_symbol != piece:
                raise PermissionDeniedError("You can only change the color of your own pieces.")
            if not is_valid_color(color):
                raise InvalidColorError()
            self.piece_colors[piece] = color
            return self._commit_locked()

    async def rename_player(self, symbol: str, new_username: str) -> RoomSnapshot:
        async with self.lock:
            self._ensure_open()
            name = validate_username(new_username)
            player = self.player_by_symbol(symbol)
            if player is None:
                raise PermissionDeniedError("You are not seated in this room.")
            if self._name_taken(name, exclude=player):
                raise UsernameTakenError(f'Username "{name}" is already taken in this room.')
            player.username = name
            return self._commit_locked()

    async def mark_disconnected(self, connection_id: str) -> Optional[Tuple[Player, RoomSnapshot]]:
        """Release the seat bound to `connection_id`, keeping symbol and scores.

        Returns None when the seat was already re-bound to another connection.
        """
        async with self.lock:
            player = next((p for p in self.players if p.connection_id == connection_id), None)
            if player is None:
                return None
            now = utcnow()
            player.connection_id = None
            player.last_seen = now
            if self.connected_count == 0:
                self.empty_since = now
            self.version += 1
            return player, self._snapshot_locked()

    async def close(self) -> None:
        async with self.lock:
            self.closed = True
            self.version += 1


class RoomRegistry:
    """Process-wide code -> Room map. At most one Room object per code."""

    def __init__(
        self,
        store=None,
        max_pieces: int = 3,
        movement_rule: str = game.MOVEMENT_FREE,
        default_code: str = "default",
        idle_grace_seconds: int = 600,
        default_idle_grace_seconds: int = 1800,
    ):
        if movement_rule not in game.MOVEMENT_RULES:
            raise ValueError(f"unknown movement rule: {movement_rule}")
        self._store = store
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()
        # codes with a delete in progress; restores of them are refused
        self._deleting: Set[str] = set()
        # bumped per delete so a restore that read the old row before it went is discarded
        self._generations: Dict[str, int] = {}
        self.max_pieces = max_pieces
        self.movement_rule = movement_rule
        self.default_code = default_code
        self.idle_grace_seconds = idle_grace_seconds
        self.default_idle_grace_seconds = default_idle_grace_seconds

    @classmethod
    def from_settings(cls, settings, store=None) -> "RoomRegistry":
        return cls(
            store=store,
            max_pieces=settings.max_pieces,
            movement_rule=settings.movement_rule,
            default_code=settings.default_room_code,
            idle_grace_seconds=settings.room_idle_grace_seconds,
            default_idle_grace_seconds=settings.default_room_idle_grace_seconds,
        )

    def __len__(self) -> int:
        return len(self._rooms)

    def is_default(self, code: str) -> bool:
        return code == self.default_code

    def normalize_code(self, code: Optional[str]) -> str:
        """Map a client-supplied code to its canonical form; empty means quick play."""
        raw = (code or "").strip()
        if not raw or raw.lower() == self.default_code.lower():
            return self.default_code
        upper = raw.upper()
        if not _CODE_RE.match(upper):
            raise InvalidRoomCodeError()
        return upper

    def _new_room(self, code: str) -> Room:
        return Room(code, max_pieces=self.max_pieces, movement_rule=self.movement_rule, is_default=self.is_default(code))

    async def get(self, code: str) -> Optional[Room]:
        async with self._lock:
            return self._rooms.get(code)

    async def get_or_create(self, code: str) -> Room:
        """Return the live Room for `code`, restoring or creating it.

        Raises RoomClosedError while the code is being deleted, or when a
        delete ran while the persisted snapshot was being read.
        """
        async with self._lock:
            if code in self._deleting:
                raise RoomClosedError()
            room = self._rooms.get(code)
            if room is not None:
                return room
            generation = self._generations.get(code, 0)

        # load outside the registry lock; a racing creator may win meanwhile
        candidate = None
        if self._store is not None:
            doc = await self._store.load_room_snapshot(code)
            if doc:
                candidate = Room.from_document(doc, is_default=self.is_default(code),
                                               default_max_pieces=self.max_pieces,
                                               default_movement_rule=self.movement_rule)
        restored = candidate is not None
        if candidate is None:
            candidate = self._new_room(code)

        async with self._lock:
            if code in self._deleting or self._generations.get(code, 0) != generation:
                logger.info("stale_restore_discarded", extra={"room": code})
                raise RoomClosedError()
            room = self._rooms.setdefault(code, candidate)
        if room is candidate:
            logger.info("room_restored" if restored else "room_created", extra={"room": code})
        return room

    async def allocate_code(self, attempts: int = 50) -> str:
        """Reserve a fresh code: unused live and, when a store is attached, unused on disk."""
        for _ in range(attempts):
            code = generate_room_code()
            if code == self.default_code:
                continue
            async with self._lock:
                if code in self._rooms or code in self._generations:
                    continue
            if self._store is not None and await self._store.load_room_snapshot(code):
                continue
            async with self._lock:
                if code in self._rooms or code in self._generations:
                    continue
                self._rooms[code] = self._new_room(code)
            logger.info("room_allocated", extra={"room": code})
            return code
        raise RuntimeError("could not allocate a unique room code")

    @asynccontextmanager
    async def deleting(self, code: str):
        """Take `code` out of service for the length of the block.

        Yields the live Room that was removed and closed, or None. Until the
        block exits, get_or_create refuses the code, so the persisted row can
        be deleted without a concurrent join restoring it.
        """
        async with self._lock:
            self._deleting.add(code)
            self._generations[code] = self._generations.get(code, 0) + 1
            room = self._rooms.pop(code, None)
        try:
            if room is not None:
                await room.close()
            yield room
        finally:
            async with self._lock:
                self._deleting.discard(code)

    async def evict_idle(self, now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        async with self._lock:
            candidates = list(self._rooms.values())
        evicted = []
        for room in candidates:
            grace = self.default_idle_grace_seconds if room.is_default else self.idle_grace_seconds
            async with room.lock:
                if not room.is_idle(now, grace):
                    continue
                room.closed = True
            async with self._lock:
                if self._rooms.get(room.code) is room:
                    del self._rooms[room.code]
                    evicted.append(room.code)
        if evicted:
            logger.info("rooms_evicted", extra={"count": len(evicted)})
        return evicted


def public_state_from_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Broadcast-shaped state for a room that is only on disk."""
    return Room.from_document(doc)._public_state()
