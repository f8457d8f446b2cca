from sqlmodel import Session, select as sqlmodel_select, col
from sqlalchemy import delete as sa_delete, and_
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import json

from . import models

OUTCOMES = ("win", "loss", "draw")


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC for binding; SQLite hands stored values back naive."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def _utc_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _as_utc(dt).isoformat()


def win_rate(wins: int, total: int) -> int:
    return round(wins / total * 100) if total > 0 else 0


def save_room(session: Session, document: Dict[str, Any], is_default: bool = False) -> bool:
    """Upsert a room document keyed by its code.

    Returns False (and writes nothing) when the stored row already holds a
    newer version than `document`.
    """
    code = document["roomCode"]
    version = int(document.get("version") or 0)
    rec = session.get(models.RoomRecord, code)
    if rec is not None and rec.version > version:
        return False
    if rec is None:
        rec = models.RoomRecord(code=code)
    rec.document_json = json.dumps(document)
    rec.game_active = bool(document.get("gameActive", True))
    rec.is_default = is_default
    rec.version = version
    rec.created_at = _parse_iso(document.get("createdAt")) or _as_utc(rec.created_at)
    rec.last_activity = _parse_iso(document.get("lastActivity")) or _as_utc(datetime.now(timezone.utc))
    rec.completed_at = _parse_iso(document.get("completedAt"))
    session.add(rec)

    members = {p.get("userId") for p in document.get("players") or [] if p.get("userId")}
    existing = set(session.exec(
        sqlmodel_select(models.RoomMember.user_id).where(models.RoomMember.room_code == code)
    ).all())
    for uid in members - existing:
        session.add(models.RoomMember(room_code=code, user_id=uid))
    session.commit()
    return True


def load_room(session: Session, code: str) -> Optional[Dict[str, Any]]:
    rec = session.get(models.RoomRecord, code)
    if rec is None or not rec.document_json:
        return None
    return json.loads(rec.document_json)


def delete_room(session: Session, code: str) -> bool:
    rec = session.get(models.RoomRecord, code)
    session.execute(sa_delete(models.RoomMember).where(col(models.RoomMember.room_code) == code))
    if rec is not None:
        session.delete(rec)
    session.commit()
    return rec is not None


def list_active_rooms_for_user(session: Session, user_id: str) -> List[Dict[str, Any]]:
    """Active room documents the user holds a seat in, most recently played first."""
    rows = session.exec(
        sqlmodel_select(models.RoomRecord)
        .join(models.RoomMember, col(models.RoomMember.room_code) == col(models.RoomRecord.code))
        .where(models.RoomMember.user_id == user_id)
        .where(models.RoomRecord.game_active == True)  # noqa: E712
        .order_by(col(models.RoomRecord.last_activity).desc())
    ).all()
    return [json.loads(r.document_json) for r in rows if r.document_json]


def record_outcome(session: Session, user_id: str, username: str, outcome: str,
                   now: Optional[datetime] = None) -> models.PlayerStats:
    if outcome not in OUTCOMES:
        raise ValueError(f"unknown outcome: {outcome}")
    stats = session.get(models.PlayerStats, user_id)
    if stats is None:
        stats = models.PlayerStats(user_id=user_id)
    if username:
        stats.username = username
    if outcome == "win":
        stats.wins += 1
    elif outcome == "loss":
        stats.losses += 1
    else:
        stats.draws += 1
    stats.total_games += 1
    stats.last_played = _as_utc(now or datetime.now(timezone.utc))
    session.add(stats)
    session.commit()
    session.refresh(stats)
    return stats


def stats_to_dict(stats: models.PlayerStats) -> Dict[str, Any]:
    return {
        "userId": stats.user_id,
        "username": stats.username,
        "wins": stats.wins,
        "losses": stats.losses,
        "draws": stats.draws,
        "totalGames": stats.total_games,
        "winRate": win_rate(stats.wins, stats.total_games),
        "lastPlayed": _utc_iso(stats.last_played),
    }


def get_player_stats(session: Session, user_id: str) -> Dict[str, Any]:
    stats = session.get(models.PlayerStats, user_id)
    if stats is None:
        return {
            "userId": user_id,
            "username": "",
            "wins": 0,
            "losses": 0,
            "draws": 0,
            "totalGames": 0,
            "winRate": 0,
            "lastPlayed": None,
        }
    return stats_to_dict(stats)


def get_top_players(session: Session, limit: int = 10) -> List[Dict[str, Any]]:
    """Players with at least one game, by wins desc then win rate desc."""
    rows = session.exec(
        sqlmodel_select(models.PlayerStats).where(models.PlayerStats.total_games > 0)
    ).all()
    leaders = [stats_to_dict(r) for r in rows]
    leaders.sort(key=lambda r: (-r["wins"], -r["winRate"], r["username"].lower()))
    if isinstance(limit, int) and limit > 0:
        return leaders[:limit]
    return leaders


def get_display_name(session: Session, user_id: str) -> Optional[str]:
    profile = session.get(models.UserProfile, user_id)
    return profile.display_name if profile else None


def set_display_name(session: Session, user_id: str, display_name: str) -> models.UserProfile:
    profile = session.get(models.UserProfile, user_id)
    if profile is None:
        profile = models.UserProfile(user_id=user_id, display_name=display_name)
    profile.display_name = display_name
    profile.updated_at = _as_utc(datetime.now(timezone.utc))
    session.add(profile)
    session.commit()
    session.refresh(profile)
    return profile


def cleanup_old_rooms(session: Session, now: Optional[datetime] = None, completed_days: int = 7,
                      inactive_days: int = 30, default_hours: int = 24) -> Dict[str, int]:
    """Delete stale room rows. Returns per-rule counts.

    Rules run in order: completed games past retention, anything inactive
    for too long, then the default room on its short window.
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    rules = {
        "completed": and_(
            col(models.RoomRecord.game_active) == False,  # noqa: E712
            col(models.RoomRecord.completed_at) < now - timedelta(days=completed_days),
        ),
        "inactive": col(models.RoomRecord.last_activity) < now - timedelta(days=inactive_days),
        "default": and_(
            col(models.RoomRecord.is_default) == True,  # noqa: E712
            col(models.RoomRecord.last_activity) < now - timedelta(hours=default_hours),
        ),
    }
    counts = {}
    for name, cond in rules.items():
        codes = list(session.exec(sqlmodel_select(models.RoomRecord.code).where(cond)).all())
        if codes:
            session.execute(sa_delete(models.RoomMember).where(col(models.RoomMember.room_code).in_(codes)))
            session.execute(sa_delete(models.RoomRecord).where(col(models.RoomRecord.code).in_(codes)))
        counts[name] = len(codes)
    session.commit()
    return counts
