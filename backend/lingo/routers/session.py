import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..cleanup import purge_expired
from ..db import get_db
from ..models import AuthSession
from .auth import SessionInvalid, User, optional_oauth2_scheme, require_admin, resolve_session, terminate_sessions

router = APIRouter(prefix="/session", tags=["session"])

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 5


def _invalid(reason: str, message: str) -> JSONResponse:
	return JSONResponse(status_code=401, content={"isValid": False, "error": message, "reason": reason})


def _session_to_dict(row: AuthSession) -> dict:
	return {
		"session_id": row.session_id,
		"user_agent": row.user_agent,
		"created_at": row.created_at.isoformat() if row.created_at else None,
		"last_activity_at": row.last_activity_at.isoformat() if row.last_activity_at else None,
		"is_active": row.is_active,
		"terminated_at": row.terminated_at.isoformat() if row.terminated_at else None,
		"termination_reason": row.termination_reason,
	}


@router.get("/validate")
async def validate(history: bool = False, token: Optional[str] = Depends(optional_oauth2_scheme), db: Session = Depends(get_db)):
	try:
		row = resolve_session(db, token)
	except SessionInvalid as e:
		return _invalid(e.reason, e.message)
	row.last_activity_at = datetime.utcnow()
	db.commit()
	body = {"isValid": True, "username": row.username}
	if history:
		rows = (
			db.query(AuthSession)
			.filter(AuthSession.username == row.username)
			.order_by(AuthSession.created_at.desc())
			.limit(HISTORY_LIMIT)
			.all()
		)
		body["sessionHistory"] = [_session_to_dict(r) for r in rows]
	return body


class SessionAction(BaseModel):
	action: str


@router.post("/validate")
async def session_action(req: SessionAction, token: Optional[str] = Depends(optional_oauth2_scheme), db: Session = Depends(get_db)):
	try:
		row = resolve_session(db, token)
	except SessionInvalid as e:
		return _invalid(e.reason, e.message)
	if req.action != "force_logout":
		raise HTTPException(status_code=400, detail="Invalid action")
	count = terminate_sessions(db, row.username, "forced")
	db.commit()
	logger.info("Forced logout of %s session(s) for %s", count, row.username)
	return {"success": True, "loggedOutCount": count}


@router.post("/cleanup")
async def cleanup(user: User = Depends(require_admin), db: Session = Depends(get_db)):
	return purge_expired(db)
