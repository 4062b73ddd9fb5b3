from __future__ import annotations
import logging
from datetime import datetime, timedelta
from sqlalchemy import and_, delete, or_
from sqlalchemy.orm import Session

from .models import AuthSession, Leaderboard
from .settings import settings


logger = logging.getLogger(__name__)


def expire_sessions(db: Session, now: datetime | None = None) -> int:
	"""Mark sessions past their expiry as terminated."""
	now = now or datetime.utcnow()
	rows = (
		db.query(AuthSession)
		.filter(AuthSession.is_active.is_(True), AuthSession.expires_at.is_not(None), AuthSession.expires_at <= now)
		.all()
	)
	for row in rows:
		row.is_active = False
		row.terminated_at = now
		row.termination_reason = "expired"
	return len(rows)


def purge_expired(db: Session, now: datetime | None = None) -> dict:
	now = now or datetime.utcnow()
	threshold = now - timedelta(days=settings.session_retention_days)
	expired = expire_sessions(db, now)
	# Inactive sessions are kept for a while so users can see their recent history
	res = db.execute(
		delete(AuthSession).where(
			and_(
				AuthSession.is_active.is_(False),
				or_(AuthSession.terminated_at < threshold, AuthSession.terminated_at.is_(None)),
			)
		)
	)
	sessions_removed = res.rowcount or 0
	res = db.execute(delete(Leaderboard).where(Leaderboard.expires_at < now))
	leaderboards_removed = res.rowcount or 0
	db.commit()
	logger.info(
		"Cleanup: %s sessions expired, %s sessions purged, %s leaderboards purged",
		expired, sessions_removed, leaderboards_removed,
	)
	return {"expired_sessions": expired, "purged_sessions": sessions_removed, "purged_leaderboards": leaderboards_removed}
