from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import groups as group_service
from ..access import iso
from ..db import get_db
from ..gamification import ACHIEVEMENTS, MODULES, eligible_badges, get_or_create_profile, profile_to_dict
from ..leaderboard import get_leaderboard, leaderboard_to_dict, refresh_leaderboard
from ..models import UserActivity
from .auth import User, get_current_user, require_admin


router = APIRouter(prefix="/gamification", tags=["gamification"])


class GroupCreate(BaseModel):
	name: str = Field(min_length=1, max_length=128)
	description: str = Field(default="", max_length=2000)
	is_private: bool = False
	join_require_approval: bool = True


class GroupSettings(BaseModel):
	name: Optional[str] = Field(default=None, min_length=1, max_length=128)
	description: Optional[str] = Field(default=None, max_length=2000)
	is_private: Optional[bool] = None
	join_require_approval: Optional[bool] = None


class RoleChange(BaseModel):
	role: str


# ---- Profile ----

@router.get("/profile")
async def profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_or_create_profile(db, user.username)
	db.commit()
	return profile_to_dict(row)


@router.get("/achievements")
async def achievements(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_or_create_profile(db, user.username)
	db.commit()
	unlocked = {a["id"]: a for a in row.achievements or []}
	return {
		"achievements": [
			{**a, "unlocked": a["id"] in unlocked, "unlocked_at": unlocked.get(a["id"], {}).get("unlocked_at")}
			for a in ACHIEVEMENTS
		]
	}


@router.get("/badges")
async def badges(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_or_create_profile(db, user.username)
	db.commit()
	return {"badges": row.badges or [], "eligible": eligible_badges(row)}


@router.get("/activities")
async def activities(limit: int = 20, module: Optional[str] = None, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	query = db.query(UserActivity).filter(UserActivity.username == user.username)
	if module:
		query = query.filter(UserActivity.module == module)
	rows = query.order_by(UserActivity.created_at.desc(), UserActivity.id.desc()).limit(max(1, min(limit, 100))).all()
	return {
		"activities": [
			{
				"id": r.id,
				"module": r.module,
				"activity_type": r.activity_type,
				"xp_earned": r.xp_earned,
				"details": r.details or {},
				"created_at": iso(r.created_at),
			}
			for r in rows
		]
	}


@router.get("/modules/{module}/stats")
async def module_stats(module: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if module not in MODULES:
		raise HTTPException(status_code=404, detail="Unknown module")
	row = get_or_create_profile(db, user.username)
	db.commit()
	entry = (row.module_activity or {}).get(module) or {}
	return {
		"module": module,
		"count": entry.get("count", 0),
		"xp": entry.get("xp", 0),
		"last_activity": entry.get("last_activity"),
	}


# ---- Leaderboards ----

@router.get("/leaderboard")
async def leaderboard(
	period: str = "weekly",
	category: str = "xp",
	module: Optional[str] = None,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	board = get_leaderboard(db, period, category, module)
	return leaderboard_to_dict(board, user.username)


@router.post("/leaderboard/refresh")
async def leaderboard_refresh(
	period: str = "weekly",
	category: str = "xp",
	module: Optional[str] = None,
	user: User = Depends(require_admin),
	db: Session = Depends(get_db),
):
	board = refresh_leaderboard(db, period, category, module)
	return leaderboard_to_dict(board, user.username)


# ---- Learning groups ----

@router.post("/groups", status_code=201)
async def create_group(req: GroupCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	group = group_service.create_group(db, user.username, req.name, req.description, req.is_private, req.join_require_approval)
	return group_service.group_to_dict(group)


@router.get("/groups")
async def list_groups(q: Optional[str] = None, limit: int = 20, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	limit = max(1, min(limit, 100))
	rows = group_service.search_groups(db, q, limit) if q else group_service.list_public_groups(db, limit)
	return {"groups": [group_service.group_to_dict(g) for g in rows]}


@router.get("/groups/mine")
async def my_groups(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return {"groups": [group_service.group_to_dict(g) for g in group_service.list_user_groups(db, user.username)]}


@router.get("/groups/{group_id}")
async def get_group(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	group = group_service.get_group(db, group_id)
	membership = group_service.get_membership(db, group_id, user.username)
	is_member = membership is not None and membership.status == "active"
	if group.is_private and not is_member:
		raise HTTPException(status_code=403, detail="This group is private")
	is_admin = is_member and membership.role == "admin"
	body = group_service.group_to_dict(group)
	body["members"] = group_service.get_group_members(db, group_id, include_pending=is_admin)
	body["membership"] = {"role": membership.role, "status": membership.status} if membership else None
	return body


@router.post("/groups/{group_id}/join")
async def join_group(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return group_service.join_group(db, group_id, user.username)


@router.post("/groups/{group_id}/members/{username}/approve")
async def approve_member(group_id: str, username: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	membership = group_service.approve_member(db, group_id, user.username, username)
	return {"username": membership.username, "status": membership.status}


@router.post("/groups/{group_id}/leave")
async def leave_group(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return group_service.leave_group(db, group_id, user.username)


@router.patch("/groups/{group_id}/members/{username}")
async def change_role(group_id: str, username: str, req: RoleChange, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	membership = group_service.change_role(db, group_id, user.username, username, req.role)
	return {"username": membership.username, "role": membership.role}


@router.patch("/groups/{group_id}")
async def update_group(group_id: str, req: GroupSettings, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	group = group_service.update_settings(db, group_id, user.username, req.model_dump(exclude_none=True))
	return group_service.group_to_dict(group)


@router.post("/groups/{group_id}/stats/refresh")
async def refresh_group_stats(group_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	group = group_service.get_group(db, group_id)
	group_service.update_group_stats(db, group)
	db.commit()
	return group_service.group_to_dict(group)
