import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..access import iso
from ..cefr import LEVELS
from ..db import get_db
from ..gamification import get_or_create_profile
from ..groups import remove_user_everywhere
from ..models import AuthUser, USER_OWNED_MODELS
from .auth import User, get_current_user, verify_password

router = APIRouter(prefix="/user", tags=["user"])

logger = logging.getLogger(__name__)


class ProfileUpdate(BaseModel):
	display_name: Optional[str] = Field(default=None, max_length=128)
	email: Optional[str] = Field(default=None, max_length=256)
	cefr_level: Optional[str] = None
	native_language: Optional[str] = Field(default=None, max_length=64)


class DeleteAccountRequest(BaseModel):
	password: str


def _get_user_row(db: Session, username: str) -> AuthUser:
	row = db.get(AuthUser, username)
	if row is None:
		raise HTTPException(status_code=404, detail="User not found")
	return row


@router.get("/profile")
async def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _get_user_row(db, user.username)
	stats = get_or_create_profile(db, user.username)
	db.commit()
	return {
		"username": row.username,
		"email": row.email,
		"display_name": row.display_name,
		"role": user.role,
		"cefr_level": row.cefr_level,
		"native_language": row.native_language,
		"level": stats.level,
		"total_xp": stats.total_xp,
		"streak": stats.streak_current,
		"created_at": iso(row.created_at),
	}


@router.patch("/profile")
async def update_profile(req: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _get_user_row(db, user.username)
	changes = req.model_dump(exclude_none=True)
	if not changes:
		raise HTTPException(status_code=400, detail="No valid fields to update")
	if "cefr_level" in changes:
		level = changes["cefr_level"].upper()
		if level not in LEVELS:
			raise HTTPException(status_code=400, detail=f"cefr_level must be one of {LEVELS}")
		changes["cefr_level"] = level
	if "email" in changes and "@" not in changes["email"]:
		raise HTTPException(status_code=400, detail="a valid email is required")
	for field, value in changes.items():
		setattr(row, field, value.strip() if isinstance(value, str) else value)
	db.commit()
	return await get_profile(user, db)


@router.delete("/profile")
async def delete_account(req: DeleteAccountRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	"""Delete the account and everything it owns."""
	row = _get_user_row(db, user.username)
	if not verify_password(req.password, row.password_hash):
		raise HTTPException(status_code=403, detail="Password is incorrect")
	remove_user_everywhere(db, user.username)
	removed = 0
	for model in USER_OWNED_MODELS:
		removed += db.query(model).filter(model.username == user.username).delete(synchronize_session=False)
	db.delete(row)
	db.commit()
	logger.info("Deleted account %s (%s owned rows)", user.username, removed)
	return {"ok": True, "deleted_records": removed}
