from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


EMPTY = ""
SYMBOLS = ("X", "O")

PLACEMENT = "placement"
MOVEMENT = "movement"

MOVEMENT_FREE = "free"
MOVEMENT_ADJACENT = "adjacent"
MOVEMENT_RULES = (MOVEMENT_FREE, MOVEMENT_ADJACENT)

BOARD_SIZE = 9

# rows, then columns, then diagonals
WIN_LINES: List[Tuple[int, int, int]] = [
    (0, 1, 2), (3, 4, 5), (6, 7, 8),
    (0, 3, 6), (1, 4, 7), (2, 5, 8),
    (0, 4, 8), (2, 4, 6),
]


@dataclass(frozen=True)
class WinResult:
    winner: str
    line: Tuple[int, int, int]


def empty_board() -> List[str]:
    return [EMPTY] * BOARD_SIZE


def other_symbol(symbol: str) -> str:
    return "O" if symbol == "X" else "X"


def is_valid_cell(index) -> bool:
    # bool is an int subclass; reject it explicitly
    return isinstance(index, int) and not isinstance(index, bool) and 0 <= index < BOARD_SIZE


def occupied_count(board: List[str]) -> int:
    return sum(1 for cell in board if cell != EMPTY)


def check_win(board: List[str]) -> Optional[WinResult]:
    for a, b, c in WIN_LINES:
        if board[a] != EMPTY and board[a] == board[b] == board[c]:
            return WinResult(winner=board[a], line=(a, b, c))
    return None


def check_draw(board: List[str]) -> bool:
    """True when the board is full and nobody has a line.

    Callers are expected to check for a win first; the win check is
    repeated here so the function is safe on its own.
    """
    if any(cell == EMPTY for cell in board):
        return False
    return check_win(board) is None


def adjacent_cells(index: int) -> List[int]:
    row, col = divmod(index, 3)
    cells = []
    for dr in (-1, 0, 1):
        for dc in (-1, 0, 1):
            if dr == 0 and dc == 0:
                continue
            r, c = row + dr, col + dc
            if 0 <= r < 3 and 0 <= c < 3:
                cells.append(r * 3 + c)
    return cells


def is_legal_placement(board: List[str], pieces_placed: Dict[str, int], symbol: str, target: int, max_pieces: int) -> bool:
    if not is_valid_cell(target):
        return False
    return board[target] == EMPTY and pieces_placed.get(symbol, 0) < max_pieces


def is_legal_move(board: List[str], symbol: str, from_cell: int, to_cell: int, rule: str = MOVEMENT_FREE) -> bool:
    if not (is_valid_cell(from_cell) and is_valid_cell(to_cell)):
        return False
    if board[from_cell] != symbol or board[to_cell] != EMPTY:
        return False
    if rule == MOVEMENT_ADJACENT:
        return to_cell in adjacent_cells(from_cell)
    return True


def advance_phase(pieces_placed: Dict[str, int], max_pieces: int, current: str = PLACEMENT) -> str:
    # movement is sticky; only an explicit reset brings placement back
    if current == MOVEMENT:
        return MOVEMENT
    if min(pieces_placed.get("X", 0), pieces_placed.get("O", 0)) < max_pieces:
        return PLACEMENT
    return MOVEMENT
