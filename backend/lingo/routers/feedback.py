from __future__ import annotations
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..access import iso
from ..db import get_db
from ..models import FeedbackTicket
from .auth import User, get_current_user, require_admin


router = APIRouter(prefix="/feedback", tags=["feedback"])

logger = logging.getLogger(__name__)


class FeedbackCategory(str, Enum):
	general = "general"
	features = "features"
	usability = "usability"
	content = "content"
	performance = "performance"
	bug_report = "bug_report"


class FeedbackStatus(str, Enum):
	new = "new"
	in_review = "in_review"
	resolved = "resolved"
	dismissed = "dismissed"


class FeedbackCreate(BaseModel):
	rating: int = Field(ge=1, le=5)
	category: FeedbackCategory
	subject: str = Field(min_length=1, max_length=200)
	message: str = Field(min_length=1, max_length=2000)
	metadata: Dict[str, Any] = {}


class FeedbackUpdate(BaseModel):
	status: Optional[FeedbackStatus] = None
	admin_notes: Optional[str] = Field(default=None, max_length=5000)
	admin_response: Optional[str] = Field(default=None, max_length=5000)


def _ticket_to_dict(row: FeedbackTicket) -> Dict[str, Any]:
	return {
		"id": row.id,
		"username": row.username,
		"rating": row.rating,
		"category": row.category,
		"subject": row.subject,
		"message": row.message,
		"metadata": row.details or {},
		"status": row.status,
		"admin_notes": row.admin_notes,
		"admin_response": row.admin_response,
		"responded_at": iso(row.responded_at),
		"responded_by": row.responded_by,
		"created_at": iso(row.created_at),
	}


@router.post("", status_code=201)
async def submit_feedback(req: FeedbackCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if not req.subject.strip() or not req.message.strip():
		raise HTTPException(status_code=400, detail="Invalid input data")
	row = FeedbackTicket(
		username=user.username,
		rating=req.rating,
		category=req.category.value,
		subject=req.subject.strip(),
		message=req.message.strip(),
		details=req.metadata,
		status="new",
	)
	db.add(row)
	db.commit()
	logger.info("Feedback %s submitted by %s", row.id, user.username)
	return _ticket_to_dict(row)


@router.get("/mine")
async def my_feedback(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	rows = (
		db.query(FeedbackTicket)
		.filter(FeedbackTicket.username == user.username)
		.order_by(FeedbackTicket.created_at.desc())
		.all()
	)
	return {"feedback": [_ticket_to_dict(r) for r in rows]}


@router.get("")
async def list_feedback(
	page: int = 1,
	limit: int = 20,
	status: Optional[FeedbackStatus] = None,
	category: Optional[FeedbackCategory] = None,
	rating: Optional[int] = None,
	user: User = Depends(require_admin),
	db: Session = Depends(get_db),
):
	page = max(1, page)
	limit = max(1, min(limit, 100))
	query = db.query(FeedbackTicket)
	if status is not None:
		query = query.filter(FeedbackTicket.status == status.value)
	if category is not None:
		query = query.filter(FeedbackTicket.category == category.value)
	if rating is not None:
		query = query.filter(FeedbackTicket.rating == rating)
	total = query.count()
	rows = query.order_by(FeedbackTicket.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
	average = db.query(func.avg(FeedbackTicket.rating)).scalar()
	return {
		"feedback": [_ticket_to_dict(r) for r in rows],
		"pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
		"stats": {
			"total": db.query(func.count(FeedbackTicket.id)).scalar() or 0,
			"average_rating": round(float(average), 2) if average is not None else None,
			"new": db.query(func.count(FeedbackTicket.id)).filter(FeedbackTicket.status == "new").scalar() or 0,
			"resolved": db.query(func.count(FeedbackTicket.id)).filter(FeedbackTicket.status == "resolved").scalar() or 0,
		},
	}


def _get_ticket(db: Session, ticket_id: int) -> FeedbackTicket:
	row = db.get(FeedbackTicket, ticket_id)
	if row is None:
		raise HTTPException(status_code=404, detail="Feedback not found")
	return row


@router.get("/{ticket_id}")
async def get_feedback(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _get_ticket(db, ticket_id)
	if row.username != user.username and not user.is_admin:
		raise HTTPException(status_code=403, detail="You do not have access to this feedback")
	return _ticket_to_dict(row)


@router.patch("/{ticket_id}")
async def update_feedback(ticket_id: int, req: FeedbackUpdate, user: User = Depends(require_admin), db: Session = Depends(get_db)):
	row = _get_ticket(db, ticket_id)
	changes = req.model_dump(exclude_none=True)
	if not changes:
		raise HTTPException(status_code=400, detail="No valid fields to update")
	if req.status is not None:
		row.status = req.status.value
	if req.admin_notes is not None:
		row.admin_notes = req.admin_notes
	if req.admin_response is not None:
		row.admin_response = req.admin_response
		row.responded_at = datetime.utcnow()
		row.responded_by = user.username
	db.commit()
	return _ticket_to_dict(row)


@router.delete("/{ticket_id}")
async def delete_feedback(ticket_id: int, user: User = Depends(require_admin), db: Session = Depends(get_db)):
	row = _get_ticket(db, ticket_id)
	db.delete(row)
	db.commit()
	return {"ok": True}
