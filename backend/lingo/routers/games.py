from __future__ import annotations
import logging
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..access import iso
from ..cefr import LEVELS
from ..db import get_db
from ..gamification import try_award_xp
from ..models import AuthUser, UserActivity
from .auth import User, get_current_user


router = APIRouter(prefix="/games", tags=["games"])

logger = logging.getLogger(__name__)

# Share of correct answers above which a game can raise the learner's level
PROMOTION_ACCURACY = 0.8


class GameDifficulty(str, Enum):
	easy = "easy"
	medium = "medium"
	hard = "hard"


_DIFFICULTY_LEVEL = {
	GameDifficulty.easy: "A1",
	GameDifficulty.medium: "B1",
	GameDifficulty.hard: "C1",
}


class GameResult(BaseModel):
	game_id: str = Field(min_length=1, max_length=64)
	score: int = Field(ge=0)
	max_score: Optional[int] = Field(default=None, gt=0)
	correct_answers: int = Field(ge=0)
	total_questions: int = Field(ge=1)
	time_spent: int = Field(default=0, ge=0)
	difficulty: GameDifficulty = GameDifficulty.medium


def _promote(row: Optional[AuthUser], req: GameResult) -> bool:
	"""Raise the stored level when a strong result was reached on a harder game."""
	if row is None or row.cefr_level not in LEVELS:
		return False
	if req.correct_answers / req.total_questions <= PROMOTION_ACCURACY:
		return False
	game_level = _DIFFICULTY_LEVEL[req.difficulty]
	if LEVELS.index(game_level) <= LEVELS.index(row.cefr_level):
		return False
	row.cefr_level = game_level
	return True


@router.post("/results", status_code=201)
async def save_result(req: GameResult, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if req.correct_answers > req.total_questions:
		raise HTTPException(status_code=400, detail="correct_answers cannot exceed total_questions")
	if req.max_score is not None and req.score > req.max_score:
		raise HTTPException(status_code=400, detail="score cannot exceed max_score")
	row = db.get(AuthUser, user.username)
	promoted = _promote(row, req)
	if promoted:
		db.commit()
		logger.info("Game result moved %s up to %s", user.username, row.cefr_level)
	rewards = try_award_xp(db, user.username, "games", "complete_game", {
		"game_id": req.game_id,
		"score": req.score,
		"max_score": req.max_score or 0,
		"correct_answers": req.correct_answers,
		"total_questions": req.total_questions,
		"time_spent": req.time_spent,
		"difficulty": req.difficulty.value,
	})
	return {
		"game_id": req.game_id,
		"score": req.score,
		"xp_earned": rewards["xp_earned"] if rewards else 0,
		"rewards": rewards,
		"level_changed": promoted,
		"cefr_level": row.cefr_level if row else None,
	}


@router.get("/results")
async def list_results(limit: int = 20, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	rows = (
		db.query(UserActivity)
		.filter(UserActivity.username == user.username, UserActivity.module == "games")
		.order_by(UserActivity.created_at.desc(), UserActivity.id.desc())
		.limit(max(1, min(limit, 100)))
		.all()
	)
	return {
		"results": [
			{**(r.details or {}), "xp_earned": r.xp_earned, "played_at": iso(r.created_at)}
			for r in rows
		]
	}
