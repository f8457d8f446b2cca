"""
Error taxonomy for rejected commands.

Every error carries a user-facing message; the session layer turns them
into `error` (or named failure) events for the originating connection only.
"""


class GameError(Exception):
    """Base class for rejected commands. State is never changed when raised."""

    default_message = "Request rejected."

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class RoomFullError(GameError):
    default_message = "Room is full."


class UsernameTakenError(GameError):
    default_message = "Username is already taken in this room."


class InvalidUsernameError(GameError):
    default_message = "Username must be 2-20 characters: letters, numbers, spaces, underscore or hyphen."


class MoveRejectedError(GameError):
    default_message = "Invalid move!"


class InvalidColorError(GameError):
    default_message = "Color must be a hex value like #RRGGBB."


class PermissionDeniedError(GameError):
    default_message = "You are not allowed to do that."


class RoomClosedError(GameError):
    default_message = "This game no longer exists."


class InvalidRoomCodeError(GameError):
    default_message = "Room codes are 6 letters or digits."


class NotFoundError(GameError):
    default_message = "Not found."


class AuthenticationError(GameError):
    default_message = "Authentication failed."
