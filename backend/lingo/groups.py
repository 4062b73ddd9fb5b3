from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import AuthUser, GamificationProfile, GroupMember, LearningGroup


logger = logging.getLogger(__name__)

ROLES = ("admin", "moderator", "member")


def get_group(db: Session, group_id: str) -> LearningGroup:
	group = db.get(LearningGroup, group_id)
	if group is None:
		raise HTTPException(status_code=404, detail="Group not found")
	return group


def get_membership(db: Session, group_id: str, username: str) -> Optional[GroupMember]:
	return db.get(GroupMember, (group_id, username))


def _active_members(db: Session, group_id: str) -> List[GroupMember]:
	return (
		db.query(GroupMember)
		.filter(GroupMember.group_id == group_id, GroupMember.status == "active")
		.order_by(GroupMember.joined_at)
		.all()
	)


def _require_admin(db: Session, group_id: str, username: str) -> GroupMember:
	membership = get_membership(db, group_id, username)
	if membership is None or membership.status != "active" or membership.role != "admin":
		raise HTTPException(status_code=403, detail="Only group admins can do this")
	return membership


def update_group_stats(db: Session, group: LearningGroup) -> LearningGroup:
	members = _active_members(db, group.id)
	usernames = [m.username for m in members]
	profiles = db.query(GamificationProfile).filter(GamificationProfile.username.in_(usernames)).all() if usernames else []
	group.active_members = len(members)
	group.total_xp = sum(p.total_xp or 0 for p in profiles)
	group.average_streak = round(sum(p.streak_current or 0 for p in profiles) / len(members), 2) if members else 0.0
	return group


def create_group(db: Session, username: str, name: str, description: str = "", is_private: bool = False, join_require_approval: bool = True) -> LearningGroup:
	name = (name or "").strip()
	if not name:
		raise HTTPException(status_code=400, detail="Group name is required")
	group = LearningGroup(
		name=name,
		description=(description or "").strip(),
		is_private=is_private,
		join_require_approval=join_require_approval,
		created_by=username,
	)
	db.add(group)
	db.flush()
	db.add(GroupMember(group_id=group.id, username=username, role="admin", status="active"))
	db.flush()
	update_group_stats(db, group)
	db.commit()
	logger.info("Group %s created by %s", group.id, username)
	return group


def join_group(db: Session, group_id: str, username: str) -> Dict[str, Any]:
	group = get_group(db, group_id)
	if get_membership(db, group_id, username) is not None:
		raise HTTPException(status_code=409, detail="Already a member of this group")
	pending = group.is_private or group.join_require_approval
	db.add(GroupMember(group_id=group_id, username=username, role="member", status="pending" if pending else "active"))
	db.flush()
	update_group_stats(db, group)
	db.commit()
	return {"status": "pending" if pending else "joined", "group_id": group_id}


def approve_member(db: Session, group_id: str, actor: str, username: str) -> GroupMember:
	group = get_group(db, group_id)
	_require_admin(db, group_id, actor)
	membership = get_membership(db, group_id, username)
	if membership is None or membership.status != "pending":
		raise HTTPException(status_code=404, detail="No pending request for this user")
	membership.status = "active"
	db.flush()
	update_group_stats(db, group)
	db.commit()
	return membership


def leave_group(db: Session, group_id: str, username: str) -> Dict[str, Any]:
	"""Remove a member; the group is deleted once nobody active remains."""
	group = get_group(db, group_id)
	membership = get_membership(db, group_id, username)
	if membership is None:
		raise HTTPException(status_code=404, detail="Not a member of this group")
	active = _active_members(db, group_id)
	if membership.status == "active" and membership.role == "admin":
		admins = [m for m in active if m.role == "admin"]
		others = [m for m in active if m.username != username]
		if len(admins) == 1 and others:
			raise HTTPException(status_code=400, detail="Assign another admin before leaving the group")
	db.delete(membership)
	db.flush()
	if not _active_members(db, group_id):
		db.query(GroupMember).filter(GroupMember.group_id == group_id).delete()
		db.delete(group)
		db.commit()
		logger.info("Group %s deleted after last member left", group_id)
		return {"left": True, "group_deleted": True}
	update_group_stats(db, group)
	db.commit()
	return {"left": True, "group_deleted": False}


def change_role(db: Session, group_id: str, actor: str, username: str, role: str) -> GroupMember:
	get_group(db, group_id)
	if role not in ROLES:
		raise HTTPException(status_code=400, detail=f"Invalid role. Use one of: {', '.join(ROLES)}")
	_require_admin(db, group_id, actor)
	membership = get_membership(db, group_id, username)
	if membership is None or membership.status != "active":
		raise HTTPException(status_code=404, detail="Member not found")
	if membership.role == "admin" and role != "admin":
		admins = [m for m in _active_members(db, group_id) if m.role == "admin"]
		if len(admins) <= 1:
			raise HTTPException(status_code=400, detail="A group must keep at least one admin")
	membership.role = role
	db.commit()
	return membership


def update_settings(db: Session, group_id: str, actor: str, changes: Dict[str, Any]) -> LearningGroup:
	group = get_group(db, group_id)
	_require_admin(db, group_id, actor)
	for field in ("name", "description", "is_private", "join_require_approval"):
		if field in changes and changes[field] is not None:
			setattr(group, field, changes[field])
	if not (group.name or "").strip():
		raise HTTPException(status_code=400, detail="Group name is required")
	db.commit()
	return group


def remove_user_everywhere(db: Session, username: str) -> None:
	"""Drop a user from all groups, handing admin rights over where needed."""
	for membership in db.query(GroupMember).filter(GroupMember.username == username).all():
		group = db.get(LearningGroup, membership.group_id)
		db.delete(membership)
		db.flush()
		if group is None:
			continue
		remaining = _active_members(db, group.id)
		if not remaining:
			db.query(GroupMember).filter(GroupMember.group_id == group.id).delete()
			db.delete(group)
			continue
		if not any(m.role == "admin" for m in remaining):
			remaining[0].role = "admin"
		update_group_stats(db, group)


def get_group_members(db: Session, group_id: str, include_pending: bool = False) -> List[Dict[str, Any]]:
	query = db.query(GroupMember).filter(GroupMember.group_id == group_id)
	if not include_pending:
		query = query.filter(GroupMember.status == "active")
	members = query.order_by(GroupMember.joined_at).all()
	usernames = [m.username for m in members]
	profiles = {p.username: p for p in db.query(GamificationProfile).filter(GamificationProfile.username.in_(usernames)).all()} if usernames else {}
	users = {u.username: u for u in db.query(AuthUser).filter(AuthUser.username.in_(usernames)).all()} if usernames else {}
	result = []
	for m in members:
		profile = profiles.get(m.username)
		user = users.get(m.username)
		result.append({
			"username": m.username,
			"display_name": (user.display_name or user.username) if user else "Unknown User",
			"role": m.role,
			"status": m.status,
			"joined_at": m.joined_at.isoformat(),
			"level": profile.level if profile else 1,
			"total_xp": profile.total_xp if profile else 0,
			"streak": profile.streak_current if profile else 0,
		})
	return result


def list_public_groups(db: Session, limit: int = 20) -> List[LearningGroup]:
	return (
		db.query(LearningGroup)
		.filter(LearningGroup.is_private.is_(False))
		.order_by(LearningGroup.active_members.desc(), LearningGroup.created_at)
		.limit(limit)
		.all()
	)


def search_groups(db: Session, query: str, limit: int = 20) -> List[LearningGroup]:
	pattern = f"%{(query or '').strip()}%"
	return (
		db.query(LearningGroup)
		.filter(LearningGroup.is_private.is_(False))
		.filter(or_(LearningGroup.name.ilike(pattern), LearningGroup.description.ilike(pattern)))
		.order_by(LearningGroup.active_members.desc())
		.limit(limit)
		.all()
	)


def list_user_groups(db: Session, username: str) -> List[LearningGroup]:
	return (
		db.query(LearningGroup)
		.join(GroupMember, GroupMember.group_id == LearningGroup.id)
		.filter(GroupMember.username == username, GroupMember.status == "active")
		.all()
	)


def group_to_dict(group: LearningGroup) -> Dict[str, Any]:
	return {
		"id": group.id,
		"name": group.name,
		"description": group.description,
		"is_private": group.is_private,
		"join_require_approval": group.join_require_approval,
		"created_by": group.created_by,
		"stats": {
			"total_xp": group.total_xp,
			"active_members": group.active_members,
			"average_streak": group.average_streak,
		},
		"created_at": group.created_at.isoformat() if group.created_at else None,
	}
