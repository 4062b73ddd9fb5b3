from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import AuthUser, GamificationProfile, Leaderboard, UserActivity
from .settings import settings


logger = logging.getLogger(__name__)

PERIODS = ("weekly", "monthly", "all-time")
CATEGORIES = ("xp", "streak", "module-specific")


def _end_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=23, minute=59, second=59, microsecond=999999)


def period_bounds(period: str, now: datetime) -> Tuple[Optional[datetime], datetime]:
    """Return (window start, cache expiry). All-time has no window start."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "weekly":
        start = midnight - timedelta(days=now.weekday())
        return start, _end_of_day(start + timedelta(days=6))
    if period == "monthly":
        start = midnight.replace(day=1)
        last_day = calendar.monthrange(now.year, now.month)[1]
        return start, _end_of_day(start.replace(day=last_day))
    return None, _end_of_day(now + timedelta(days=7))


def _validate(period: str, category: str, module: Optional[str]) -> None:
    if period not in PERIODS:
        raise HTTPException(status_code=400, detail=f"Invalid period. Use one of: {', '.join(PERIODS)}")
    if category not in CATEGORIES:
        raise HTTPException(status_code=400, detail=f"Invalid category. Use one of: {', '.join(CATEGORIES)}")
    if category == "module-specific" and not module:
        raise HTTPException(status_code=400, detail="Module is required for module-specific leaderboards")


def _ranked_rows(db: Session, period: str, category: str, module: Optional[str], start: Optional[datetime]) -> List[Tuple[str, int]]:
    limit = settings.leaderboard_size
    if category == "streak":
        rows = (
            db.query(GamificationProfile.username, GamificationProfile.streak_current)
            .filter(GamificationProfile.streak_current > 0)
            .order_by(GamificationProfile.streak_current.desc(), GamificationProfile.username)
            .limit(limit)
            .all()
        )
        return [(u, int(v)) for u, v in rows]
    if category == "xp" and start is None:
        rows = (
            db.query(GamificationProfile.username, GamificationProfile.total_xp)
            .filter(GamificationProfile.total_xp > 0)
            .order_by(GamificationProfile.total_xp.desc(), GamificationProfile.username)
            .limit(limit)
            .all()
        )
        return [(u, int(v)) for u, v in rows]
    if category == "xp":
        total = func.sum(UserActivity.xp_earned).label("total")
        rows = (
            db.query(UserActivity.username, total)
            .filter(UserActivity.created_at >= start)
            .group_by(UserActivity.username)
            .order_by(total.desc(), UserActivity.username)
            .limit(limit)
            .all()
        )
        return [(u, int(v or 0)) for u, v in rows if (v or 0) > 0]
    if start is None:
        scored = []
        for profile in db.query(GamificationProfile).all():
            count = int(((profile.module_activity or {}).get(module) or {}).get("count", 0))
            if count > 0:
                scored.append((profile.username, count))
        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored[:limit]
    count = func.count(UserActivity.id).label("total")
    rows = (
        db.query(UserActivity.username, count)
        .filter(UserActivity.module == module, UserActivity.created_at >= start)
        .group_by(UserActivity.username)
        .order_by(count.desc(), UserActivity.username)
        .limit(limit)
        .all()
    )
    return [(u, int(v)) for u, v in rows]


def build_entries(db: Session, rows: List[Tuple[str, int]]) -> List[Dict[str, Any]]:
    usernames = [u for u, _ in rows]
    users = {u.username: u for u in db.query(AuthUser).filter(AuthUser.username.in_(usernames)).all()} if usernames else {}
    profiles = {p.username: p for p in db.query(GamificationProfile).filter(GamificationProfile.username.in_(usernames)).all()} if usernames else {}
    entries = []
    for rank, (username, value) in enumerate(rows, start=1):
        user = users.get(username)
        profile = profiles.get(username)
        entries.append({
            "rank": rank,
            "username": username,
            "display_name": (user.display_name or user.username) if user else "Unknown User",
            "value": value,
            "level": profile.level if profile else 1,
        })
    return entries


def _find_cached(db: Session, period: str, category: str, module: Optional[str]) -> Optional[Leaderboard]:
    query = db.query(Leaderboard).filter(Leaderboard.period == period, Leaderboard.category == category)
    if module is None:
        query = query.filter(Leaderboard.module.is_(None))
    else:
        query = query.filter(Leaderboard.module == module)
    return query.order_by(Leaderboard.refreshed_at.desc()).first()


def generate_leaderboard(db: Session, period: str, category: str, module: Optional[str] = None, now: Optional[datetime] = None) -> Leaderboard:
    now = now or datetime.utcnow()
    start, expires_at = period_bounds(period, now)
    entries = build_entries(db, _ranked_rows(db, period, category, module, start))
    board = _find_cached(db, period, category, module)
    if board is None:
        board = Leaderboard(period=period, category=category, module=module)
        db.add(board)
    board.entries = entries
    board.refreshed_at = now
    board.expires_at = expires_at
    db.commit()
    logger.info("Generated %s %s leaderboard (%s entries)", period, category, len(entries))
    return board


def get_leaderboard(db: Session, period: str, category: str, module: Optional[str] = None, now: Optional[datetime] = None) -> Leaderboard:
    """Cached leaderboard, regenerated once its expiry has passed."""
    if category != "module-specific":
        module = None
    _validate(period, category, module)
    now = now or datetime.utcnow()
    board = _find_cached(db, period, category, module)
    if board is not None and board.expires_at > now:
        return board
    return generate_leaderboard(db, period, category, module, now)


def refresh_leaderboard(db: Session, period: str, category: str, module: Optional[str] = None, now: Optional[datetime] = None) -> Leaderboard:
    if category != "module-specific":
        module = None
    _validate(period, category, module)
    board = _find_cached(db, period, category, module)
    if board is not None:
        db.delete(board)
        db.flush()
    return generate_leaderboard(db, period, category, module, now)


def leaderboard_to_dict(board: Leaderboard, username: Optional[str] = None) -> Dict[str, Any]:
    entries = board.entries or []
    user_rank = None
    if username:
        user_rank = next((e["rank"] for e in entries if e["username"] == username), None)
    return {
        "period": board.period,
        "category": board.category,
        "module": board.module,
        "entries": entries,
        "user_rank": user_rank,
        "refreshed_at": board.refreshed_at.isoformat(),
        "expires_at": board.expires_at.isoformat(),
    }
