from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime


class RoomRecord(SQLModel, table=True):
    code: str = Field(primary_key=True)
    document_json: str = ""
    game_active: bool = True
    is_default: bool = False
    version: int = 0
    created_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RoomMember(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    room_code: str = Field(index=True)
    user_id: str = Field(index=True)


class PlayerStats(SQLModel, table=True):
    user_id: str = Field(primary_key=True)
    username: str = ""
    wins: int = 0
    losses: int = 0
    draws: int = 0
    total_games: int = 0
    last_played: Optional[datetime] = None


class UserProfile(SQLModel, table=True):
    user_id: str = Field(primary_key=True)
    display_name: str
    updated_at: Optional[datetime] = None
