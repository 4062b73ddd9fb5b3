from __future__ import annotations
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..access import get_owned, iso
from ..db import get_db
from ..gamification import try_award_xp
from ..models import GrammarIssue, GrammarProgress
from .auth import User, get_current_user


router = APIRouter(prefix="/grammar", tags=["grammar"])

logger = logging.getLogger(__name__)

SOURCE_MODULES = ("writing", "speaking")
CHALLENGE_POOL_SIZE = 10
MAX_REVIEW_INTERVAL_DAYS = 60
MASTERY_MIN = 1.0
MASTERY_MAX = 5.0
STREAK_BADGES = {7: ("grammar_week_streak", "One Week Streak"), 30: ("grammar_month_streak", "One Month Streak")}

_ARTICLE_SWAPS = {"a": "the", "an": "a", "the": "a"}


class IssueCreate(BaseModel):
	source_module: str
	source_session_id: Optional[str] = None
	issue_type: str = "grammar"
	text: str = Field(min_length=1, max_length=2000)
	correction: str = Field(min_length=1, max_length=2000)
	explanation: Optional[str] = None
	cefr_level: Optional[str] = None
	category: str = "general"
	priority: int = Field(default=1, ge=1, le=5)


class IssueUpdate(BaseModel):
	resolved: Optional[bool] = None
	reviewed: Optional[bool] = None
	priority: Optional[int] = Field(default=None, ge=1, le=5)


class ChallengeSubmit(BaseModel):
	challenge_id: Optional[str] = None
	is_correct: Optional[bool] = None


class FlashcardReview(BaseModel):
	flashcard_id: Optional[str] = None
	known: Optional[bool] = None


def generate_incorrect_option(sentence: str, seed: int) -> Optional[str]:
	"""Rule-based distractor: verb form, article or word-order change depending on ``seed``."""
	words = sentence.split()
	if not words:
		return None
	kind = seed % 3
	if kind == 0:
		middle = len(words) // 2
		# Scan outwards from the middle word for something we can inflect differently
		for i in sorted(range(len(words)), key=lambda j: abs(j - middle)):
			w = words[i]
			lower = w.lower()
			if lower == "is":
				words[i] = "are"
			elif lower == "are":
				words[i] = "is"
			elif lower.endswith("ed") and len(lower) > 4:
				words[i] = w[:-2] + "ing"
			elif lower.endswith("ing") and len(lower) > 5:
				words[i] = w[:-3] + "ed"
			else:
				continue
			return " ".join(words)
		return None
	if kind == 1:
		for i, w in enumerate(words):
			swap = _ARTICLE_SWAPS.get(w.lower())
			if swap:
				words[i] = swap.capitalize() if w[0].isupper() else swap
				return " ".join(words)
		return None
	if len(words) > 3:
		words[1], words[2] = words[2], words[1]
		return " ".join(words)
	return None


def build_challenge_options(issue: GrammarIssue, rng: random.Random) -> Dict[str, Any]:
	correct = issue.correction.strip()
	options = [correct]
	for seed in range(3):
		candidate = generate_incorrect_option(correct, seed)
		if candidate and candidate not in options:
			options.append(candidate)
	# The learner's own mistake is always a plausible wrong option
	if issue.text.strip() not in options:
		options.append(issue.text.strip())
	options = options[:4]
	order = list(range(len(options)))
	rng.shuffle(order)
	shuffled = [options[i] for i in order]
	return {"options": shuffled, "correct_option": order.index(0)}


def _get_progress(db: Session, username: str) -> GrammarProgress:
	progress = db.get(GrammarProgress, username)
	if progress is None:
		progress = GrammarProgress(username=username, challenge_streak=0, badges=[], mastery=[])
		db.add(progress)
		db.flush()
	return progress


def _completed_today(progress: GrammarProgress, now: datetime) -> bool:
	return progress.last_daily_challenge is not None and progress.last_daily_challenge.date() == now.date()


def flashcard_category(flashcard_id: str) -> str:
	parts = [p for p in flashcard_id.split("_") if p]
	if parts and parts[0] == "default" and len(parts) > 1:
		return parts[1]
	return parts[0] if parts else "general"


def update_mastery(mastery: List[Dict[str, Any]], category: str, known: bool, now: datetime) -> List[Dict[str, Any]]:
	updated = [dict(m) for m in mastery or []]
	for entry in updated:
		if entry.get("category") == category:
			level = float(entry.get("level", MASTERY_MIN))
			level = min(MASTERY_MAX, level + 0.2) if known else max(MASTERY_MIN, level - 0.5)
			entry["level"] = round(level, 2)
			entry["last_practiced"] = now.isoformat()
			return updated
	updated.append({"category": category, "level": 1.2 if known else 1.0, "last_practiced": now.isoformat()})
	return updated


def _issue_to_dict(issue: GrammarIssue) -> Dict[str, Any]:
	return {
		"id": issue.id,
		"source_module": issue.source_module,
		"source_session_id": issue.source_session_id,
		"type": issue.issue_type,
		"text": issue.text,
		"correction": issue.correction,
		"explanation": issue.explanation,
		"cefr_level": issue.cefr_level,
		"category": issue.category,
		"resolved": issue.resolved,
		"priority": issue.priority,
		"review_count": issue.review_count,
		"interval_days": issue.interval_days,
		"next_review_at": iso(issue.next_review_at),
		"last_reviewed_at": iso(issue.last_reviewed_at),
		"created_at": iso(issue.created_at),
	}


@router.get("/issues")
async def list_issues(
	category: Optional[str] = None,
	level: Optional[str] = None,
	resolved: Optional[bool] = None,
	limit: int = 50,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	query = db.query(GrammarIssue).filter(GrammarIssue.username == user.username)
	if category:
		query = query.filter(GrammarIssue.category == category.lower())
	if level:
		query = query.filter(GrammarIssue.cefr_level == level.upper())
	if resolved is not None:
		query = query.filter(GrammarIssue.resolved.is_(resolved))
	rows = query.order_by(GrammarIssue.priority.desc(), GrammarIssue.created_at.desc()).limit(max(1, min(limit, 200))).all()
	return {"issues": [_issue_to_dict(r) for r in rows]}


@router.get("/issues/due")
async def due_issues(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	now = datetime.utcnow()
	rows = (
		db.query(GrammarIssue)
		.filter(GrammarIssue.username == user.username, GrammarIssue.resolved.is_(False))
		.filter((GrammarIssue.next_review_at.is_(None)) | (GrammarIssue.next_review_at <= now))
		.order_by(GrammarIssue.priority.desc())
		.all()
	)
	return {"issues": [_issue_to_dict(r) for r in rows]}


@router.post("/issues", status_code=201)
async def create_issue(req: IssueCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if req.source_module not in SOURCE_MODULES:
		raise HTTPException(status_code=400, detail=f"source_module must be one of {list(SOURCE_MODULES)}")
	row = GrammarIssue(
		username=user.username,
		source_module=req.source_module,
		source_session_id=req.source_session_id,
		issue_type=req.issue_type,
		text=req.text.strip(),
		correction=req.correction.strip(),
		explanation=req.explanation,
		cefr_level=req.cefr_level.upper() if req.cefr_level else None,
		category=req.category.lower(),
		priority=req.priority,
	)
	db.add(row)
	db.commit()
	return _issue_to_dict(row)


@router.patch("/issues/{issue_id}")
async def update_issue(issue_id: str, req: IssueUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_owned(db, GrammarIssue, issue_id, user.username, label="Issue")
	if req.resolved is None and not req.reviewed and req.priority is None:
		raise HTTPException(status_code=400, detail="No valid fields to update")
	now = datetime.utcnow()
	if req.reviewed:
		# 1, 2, 4, 8 ... days
		row.interval_days = 1 if row.review_count == 0 else min(MAX_REVIEW_INTERVAL_DAYS, row.interval_days * 2)
		row.review_count += 1
		row.last_reviewed_at = now
		row.next_review_at = now + timedelta(days=row.interval_days)
	if req.resolved is not None:
		row.resolved = req.resolved
	if req.priority is not None:
		row.priority = req.priority
	db.commit()
	return _issue_to_dict(row)


@router.get("/challenge/daily")
async def daily_challenge(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	now = datetime.utcnow()
	progress = _get_progress(db, user.username)
	db.commit()
	pool = (
		db.query(GrammarIssue)
		.filter(GrammarIssue.username == user.username, GrammarIssue.resolved.is_(False))
		.order_by(GrammarIssue.priority.desc(), GrammarIssue.created_at.desc())
		.limit(CHALLENGE_POOL_SIZE)
		.all()
	)
	body: Dict[str, Any] = {
		"has_completed_today": _completed_today(progress, now),
		"streak": progress.challenge_streak,
		"challenge": None,
	}
	if not pool:
		return body
	# Same challenge for the whole day
	rng = random.Random(f"{user.username}:{now.date().isoformat()}")
	issue = rng.choice(pool)
	body["challenge"] = {
		"id": issue.id,
		"question": "Which sentence is correct?",
		"category": issue.category,
		"explanation": issue.explanation,
		**build_challenge_options(issue, rng),
	}
	return body


@router.post("/challenge/submit")
async def submit_challenge(req: ChallengeSubmit, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if not req.challenge_id or req.is_correct is None:
		raise HTTPException(status_code=400, detail="challenge_id and is_correct are required")
	now = datetime.utcnow()
	progress = _get_progress(db, user.username)
	if _completed_today(progress, now):
		db.commit()
		return {"streak": progress.challenge_streak, "message": "Daily challenge already completed", "already_completed": True}
	new_badge = None
	if req.is_correct:
		issue = db.get(GrammarIssue, req.challenge_id)
		if issue is not None and issue.username == user.username:
			issue.resolved = True
		progress.challenge_streak += 1
		badge = STREAK_BADGES.get(progress.challenge_streak)
		if badge and badge[0] not in {b.get("id") for b in progress.badges or []}:
			new_badge = {"id": badge[0], "name": badge[1], "earned_at": now.isoformat()}
			progress.badges = list(progress.badges or []) + [new_badge]
	else:
		progress.challenge_streak = 0
	progress.last_daily_challenge = now
	db.commit()
	rewards = None
	if req.is_correct:
		rewards = try_award_xp(db, user.username, "grammar", "complete_exercise", {"challenge_id": req.challenge_id, "score": 100})
	return {
		"streak": progress.challenge_streak,
		"correct": req.is_correct,
		"new_badge": new_badge,
		"message": "Correct!" if req.is_correct else "Not quite. Your streak starts again tomorrow.",
		"rewards": rewards,
	}


@router.post("/flashcards/review")
async def review_flashcard(req: FlashcardReview, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if not req.flashcard_id or req.known is None:
		raise HTTPException(status_code=400, detail="flashcard_id and known are required")
	now = datetime.utcnow()
	category = flashcard_category(req.flashcard_id)
	progress = _get_progress(db, user.username)
	progress.mastery = update_mastery(progress.mastery, category, req.known, now)
	db.commit()
	entry = next(m for m in progress.mastery if m["category"] == category)
	try_award_xp(db, user.username, "grammar", "complete_exercise", {"flashcard_id": req.flashcard_id, "score": 100 if req.known else 0})
	return {"category": category, "mastery_level": entry["level"]}


@router.get("/progress")
async def grammar_progress(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	progress = _get_progress(db, user.username)
	db.commit()
	rows = (
		db.query(GrammarIssue.category, GrammarIssue.resolved, func.count(GrammarIssue.id))
		.filter(GrammarIssue.username == user.username)
		.group_by(GrammarIssue.category, GrammarIssue.resolved)
		.all()
	)
	by_category: Dict[str, Dict[str, int]] = {}
	for category, resolved, count in rows:
		entry = by_category.setdefault(category, {"open": 0, "resolved": 0})
		entry["resolved" if resolved else "open"] += count
	return {
		"challenge_streak": progress.challenge_streak,
		"last_daily_challenge": iso(progress.last_daily_challenge),
		"badges": progress.badges or [],
		"mastery": progress.mastery or [],
		"issues_by_category": by_category,
	}
