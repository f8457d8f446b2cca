"""Payload models for inbound WebSocket commands."""
from typing import Optional

from pydantic import BaseModel, Field, StrictInt, ValidationError, field_validator


class JoinRoomCommand(BaseModel):
    roomCode: Optional[str] = Field(None, max_length=32)
    create: bool = False

    @field_validator('roomCode')
    @classmethod
    def blank_code_is_quick_play(cls, v):
        if v is not None:
            v = v.strip()
            if len(v) == 0:
                return None
        return v


class LoginCommand(BaseModel):
    token: Optional[str] = Field(None, max_length=8192)
    customUsername: Optional[str] = Field(None, max_length=40)

    @field_validator('customUsername')
    @classmethod
    def strip_username(cls, v):
        if v is not None:
            v = v.strip()
            if len(v) == 0:
                return None
        return v


class MakeMoveCommand(BaseModel):
    cellIndex: StrictInt
    fromIndex: Optional[StrictInt] = None


class ChangeColorCommand(BaseModel):
    piece: str = Field(..., max_length=1)
    color: str = Field(..., max_length=16)

    @field_validator('piece')
    @classmethod
    def upper_piece(cls, v):
        return v.strip().upper()


class ChangeUsernameCommand(BaseModel):
    newUsername: str = Field(..., max_length=40)


class UserQuery(BaseModel):
    userId: Optional[str] = Field(None, max_length=256)


class DeleteGameCommand(BaseModel):
    roomCode: str = Field(..., min_length=1, max_length=32)
    userId: Optional[str] = Field(None, max_length=256)


def first_error_message(exc: ValidationError) -> str:
    """Short, client-safe description of the first validation failure."""
    errors = exc.errors()
    if not errors:
        return "Invalid request."
    err = errors[0]
    field = ".".join(str(part) for part in err.get("loc", ()) if part != "__root__")
    msg = err.get("msg", "invalid value")
    return f"Invalid {field}: {msg}" if field else f"Invalid request: {msg}"
