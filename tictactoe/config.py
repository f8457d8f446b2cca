"""Application configuration, read from the environment once."""
import os
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Tuple


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    return tuple(v.strip() for v in os.getenv(name, default).split(",") if v.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./tictactoe.db"
    identity_jwt_secret: str = ""
    identity_jwt_algorithms: Tuple[str, ...] = ("HS256",)
    identity_jwt_audience: str = ""
    allow_anonymous: bool = True
    max_pieces: int = 3
    movement_rule: str = "free"
    default_room_code: str = "default"
    room_idle_grace_seconds: int = 600
    default_room_idle_grace_seconds: int = 1800
    sweep_interval_seconds: int = 60
    completed_retention_days: int = 7
    inactive_retention_days: int = 30
    default_room_retention_hours: int = 24
    create_room_rate_limit: int = 20
    allowed_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000

    def with_overrides(self, **kwargs) -> "Settings":
        return replace(self, **kwargs)


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./tictactoe.db"),
        identity_jwt_secret=os.getenv("IDENTITY_JWT_SECRET", ""),
        identity_jwt_algorithms=_env_list("IDENTITY_JWT_ALGORITHMS", "HS256"),
        identity_jwt_audience=os.getenv("IDENTITY_JWT_AUDIENCE", ""),
        allow_anonymous=_env_bool("ALLOW_ANONYMOUS", "1"),
        max_pieces=int(os.getenv("MAX_PIECES", "3")),
        movement_rule=os.getenv("MOVEMENT_RULE", "free").lower(),
        default_room_code=os.getenv("DEFAULT_ROOM_CODE", "default"),
        room_idle_grace_seconds=int(os.getenv("ROOM_IDLE_GRACE_SECONDS", "600")),
        default_room_idle_grace_seconds=int(os.getenv("DEFAULT_ROOM_IDLE_GRACE_SECONDS", "1800")),
        sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "60")),
        completed_retention_days=int(os.getenv("COMPLETED_RETENTION_DAYS", "7")),
        inactive_retention_days=int(os.getenv("INACTIVE_RETENTION_DAYS", "30")),
        default_room_retention_hours=int(os.getenv("DEFAULT_ROOM_RETENTION_HOURS", "24")),
        create_room_rate_limit=int(os.getenv("CREATE_ROOM_RATE_LIMIT", "20")),
        allowed_origins=_env_list("ALLOWED_ORIGINS", "*"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
