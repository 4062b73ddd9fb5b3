from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..access import iso
from ..db import get_db
from ..gamification import get_or_create_profile
from ..models import AuthUser, OnboardingState
from ..onboarding import DIFFICULTIES, LEARNING_MODULES, TIME_OPTIONS, build_learning_path, placement_test, score_placement
from .auth import User, get_current_user


router = APIRouter(prefix="/onboarding", tags=["onboarding"])

logger = logging.getLogger(__name__)

# Steps: 0 start, 1 placement done, 2 learning path chosen, 3 finished
STEP_ASSESSED = 1
STEP_PATH = 2
STEP_DONE = 3

# Used when the learner skips the placement test
DEFAULT_LEVEL = "B1"
DEFAULT_WEAK_AREAS = ["grammar", "vocabulary"]


class AssessmentSubmission(BaseModel):
	answers: Dict[str, str]
	time_spent: int = Field(default=0, ge=0)
	writing_sample: Optional[str] = Field(default=None, max_length=5000)


class LearningPathRequest(BaseModel):
	goals: List[str] = Field(min_length=1)
	time_available: str = "flexible"
	difficulty: str = "moderate"
	focus_areas: List[str] = []
	learning_style: str = "mixed"


def _get_state(db: Session, username: str) -> OnboardingState:
	row = db.get(OnboardingState, username)
	if row is None:
		row = OnboardingState(username=username, current_step=0, assessment={}, preferences={}, learning_path={})
		db.add(row)
		db.flush()
	return row


def _state_to_dict(row: OnboardingState) -> Dict[str, Any]:
	return {
		"current_step": row.current_step,
		"completed": row.completed,
		"skipped": row.skipped,
		"completed_at": iso(row.completed_at),
		"assessment": row.assessment or {},
		"preferences": row.preferences or {},
		"learning_path": row.learning_path or {},
	}


def _set_level(db: Session, username: str, level: str, overwrite: bool = True) -> None:
	user_row = db.get(AuthUser, username)
	if user_row is not None and (overwrite or not user_row.cefr_level):
		user_row.cefr_level = level


@router.get("")
async def get_onboarding(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _get_state(db, user.username)
	db.commit()
	return _state_to_dict(row)


@router.get("/assessment")
async def get_assessment(user: User = Depends(get_current_user)):
	return placement_test()


@router.post("/assessment")
async def submit_assessment(req: AssessmentSubmission, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	answers = {k: v for k, v in req.answers.items() if v.strip()}
	if not answers:
		raise HTTPException(status_code=400, detail="At least one answer is required")
	results = score_placement(answers, req.writing_sample)
	row = _get_state(db, user.username)
	row.assessment = {
		**results,
		"completed": True,
		"time_spent": req.time_spent,
		"assessed_at": datetime.utcnow().isoformat(),
	}
	row.current_step = max(row.current_step, STEP_ASSESSED)
	_set_level(db, user.username, results["level"])
	db.commit()
	logger.info("Placement for %s: %s (%s%%)", user.username, results["level"], results["overall_score"])
	return {"results": results, "onboarding": _state_to_dict(row)}


@router.post("/learning-path")
async def create_learning_path(req: LearningPathRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if req.time_available not in TIME_OPTIONS:
		raise HTTPException(status_code=400, detail=f"time_available must be one of {list(TIME_OPTIONS)}")
	if req.difficulty not in DIFFICULTIES:
		raise HTTPException(status_code=400, detail=f"difficulty must be one of {list(DIFFICULTIES)}")
	unknown = [a for a in req.focus_areas if a not in LEARNING_MODULES]
	if unknown:
		raise HTTPException(status_code=400, detail=f"Unknown focus areas: {', '.join(unknown)}")
	row = _get_state(db, user.username)
	assessment = row.assessment or {}
	if not assessment.get("completed"):
		raise HTTPException(status_code=400, detail="Complete the placement test first")
	path = build_learning_path(
		assessment["level"],
		assessment.get("weak_areas") or [],
		assessment.get("skill_scores") or {},
		req.goals,
		req.time_available,
		req.difficulty,
		req.focus_areas,
	)
	row.preferences = req.model_dump()
	row.learning_path = {**path, "generated_at": datetime.utcnow().isoformat()}
	row.current_step = max(row.current_step, STEP_PATH)
	db.commit()
	return {"learning_path": row.learning_path, "preferences": row.preferences}


@router.post("/complete")
async def complete_onboarding(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _get_state(db, user.username)
	if not row.completed:
		row.completed = True
		row.completed_at = datetime.utcnow()
	row.current_step = STEP_DONE
	get_or_create_profile(db, user.username)
	db.commit()
	return _state_to_dict(row)


@router.post("/skip")
async def skip_onboarding(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	"""Finish onboarding with a default intermediate placement."""
	row = _get_state(db, user.username)
	if row.completed:
		raise HTTPException(status_code=409, detail="Onboarding is already completed")
	if not (row.assessment or {}).get("completed"):
		row.assessment = {"completed": False, "level": DEFAULT_LEVEL, "weak_areas": list(DEFAULT_WEAK_AREAS), "skill_scores": {}}
	assessment = row.assessment
	row.learning_path = {
		**build_learning_path(assessment["level"], assessment.get("weak_areas") or [], assessment.get("skill_scores") or {}, []),
		"generated_at": datetime.utcnow().isoformat(),
	}
	row.completed = True
	row.skipped = True
	row.completed_at = datetime.utcnow()
	row.current_step = STEP_DONE
	_set_level(db, user.username, assessment["level"], overwrite=False)
	get_or_create_profile(db, user.username)
	db.commit()
	return _state_to_dict(row)
