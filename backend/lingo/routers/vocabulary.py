from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..access import get_owned, iso
from ..db import get_db
from ..gamification import try_award_xp
from ..models import GamificationProfile, VocabularyWord
from ..spaced_repetition import MASTERED_THRESHOLD, Performance, ReviewState, review
from .auth import User, get_current_user


router = APIRouter(prefix="/vocabulary", tags=["vocabulary"])

logger = logging.getLogger(__name__)

PARTS_OF_SPEECH = ["noun", "verb", "adjective", "adverb", "pronoun", "preposition", "conjunction", "interjection", "phrase", "other"]
SOURCES = ["manual", "reading", "listening", "writing", "speaking"]


class WordCreate(BaseModel):
    word: str = Field(min_length=1, max_length=128)
    definition: str = Field(min_length=1, max_length=2000)
    part_of_speech: str = "other"
    pronunciation: Optional[str] = None
    context: Optional[str] = None
    examples: List[str] = []
    tags: List[str] = []
    source: str = "manual"
    difficulty: int = Field(default=5, ge=1, le=10)


class WordUpdate(BaseModel):
    performance: Optional[int] = Field(default=None, ge=0, le=4)
    definition: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    context: Optional[str] = None
    examples: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    difficulty: Optional[int] = Field(default=None, ge=1, le=10)
    part_of_speech: Optional[str] = None


def _word_to_dict(row: VocabularyWord) -> Dict[str, Any]:
    return {
        "id": row.id,
        "word": row.word,
        "definition": row.definition,
        "part_of_speech": row.part_of_speech,
        "pronunciation": row.pronunciation,
        "context": row.context,
        "examples": row.examples or [],
        "tags": row.tags or [],
        "source": row.source,
        "difficulty": row.difficulty,
        "mastery": row.mastery,
        "easiness_factor": row.easiness_factor,
        "repetitions": row.repetitions,
        "interval": row.interval,
        "last_reviewed": iso(row.last_reviewed),
        "next_review": iso(row.next_review),
        "review_history": row.review_history or [],
        "favorite": row.favorite,
        "created_at": iso(row.created_at),
    }


def _is_due(row: VocabularyWord, now: datetime) -> bool:
    return row.next_review is None or row.next_review <= now


def bank_stats(db: Session, username: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    words = db.query(VocabularyWord).filter(VocabularyWord.username == username).all()
    profile = db.get(GamificationProfile, username)
    mastered = sum(1 for w in words if w.mastery >= MASTERED_THRESHOLD)
    return {
        "total_words": len(words),
        "mastered": mastered,
        "learning": len(words) - mastered,
        "needs_review": sum(1 for w in words if w.mastery < MASTERED_THRESHOLD and _is_due(w, now)),
        "average_mastery": round(sum(w.mastery for w in words) / len(words)) if words else 0,
        "study_streak": profile.streak_current if profile else 0,
    }


@router.get("")
async def list_words(
    search: Optional[str] = None,
    favorite: Optional[bool] = None,
    sort: str = "recent",
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(VocabularyWord).filter(VocabularyWord.username == user.username)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(VocabularyWord.word.ilike(pattern), VocabularyWord.definition.ilike(pattern)))
    if favorite is not None:
        query = query.filter(VocabularyWord.favorite.is_(favorite))
    if sort == "alphabetical":
        query = query.order_by(VocabularyWord.word_key)
    elif sort == "mastery":
        query = query.order_by(VocabularyWord.mastery)
    else:
        query = query.order_by(VocabularyWord.created_at.desc())
    return {"words": [_word_to_dict(w) for w in query.all()], "stats": bank_stats(db, user.username)}


@router.post("", status_code=201)
async def add_word(req: WordCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    word = req.word.strip()
    if req.part_of_speech not in PARTS_OF_SPEECH:
        raise HTTPException(status_code=400, detail=f"part_of_speech must be one of {PARTS_OF_SPEECH}")
    if req.source not in SOURCES:
        raise HTTPException(status_code=400, detail=f"source must be one of {SOURCES}")
    key = word.lower()
    existing = (
        db.query(VocabularyWord)
        .filter(VocabularyWord.username == user.username, VocabularyWord.word_key == key)
        .first()
    )
    if existing:
        raise HTTPException(status_code=409, detail="Word already exists in your vocabulary bank")
    row = VocabularyWord(
        username=user.username,
        word=word,
        word_key=key,
        definition=req.definition.strip(),
        part_of_speech=req.part_of_speech,
        pronunciation=req.pronunciation,
        context=req.context,
        examples=req.examples,
        tags=req.tags,
        source=req.source,
        difficulty=req.difficulty,
        review_history=[],
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent insert of the same word
        db.rollback()
        raise HTTPException(status_code=409, detail="Word already exists in your vocabulary bank")
    return _word_to_dict(row)


@router.get("/due")
async def due_words(limit: int = 20, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    now = datetime.utcnow()
    rows = (
        db.query(VocabularyWord)
        .filter(VocabularyWord.username == user.username)
        .filter(or_(VocabularyWord.next_review.is_(None), VocabularyWord.next_review <= now))
        .order_by(VocabularyWord.mastery, VocabularyWord.next_review)
        .limit(max(1, min(limit, 100)))
        .all()
    )
    return {"words": [_word_to_dict(w) for w in rows]}


@router.get("/word/{word_id}")
async def get_word(word_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _word_to_dict(get_owned(db, VocabularyWord, word_id, user.username, label="Word"))


@router.patch("/word/{word_id}")
async def update_word(word_id: str, req: WordUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = get_owned(db, VocabularyWord, word_id, user.username, label="Word")
    changes = req.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if "part_of_speech" in changes and changes["part_of_speech"] not in PARTS_OF_SPEECH:
        raise HTTPException(status_code=400, detail=f"part_of_speech must be one of {PARTS_OF_SPEECH}")
    for field in ("definition", "context", "examples", "tags", "difficulty", "part_of_speech"):
        if field in changes:
            setattr(row, field, changes[field])

    outcome = None
    if req.performance is not None:
        now = datetime.utcnow()
        state = ReviewState(
            easiness_factor=row.easiness_factor,
            repetitions=row.repetitions,
            interval=row.interval,
            mastery=row.mastery,
        )
        outcome = review(state, req.performance, now)
        row.easiness_factor = outcome.easiness_factor
        row.repetitions = outcome.repetitions
        row.interval = outcome.interval
        row.mastery = outcome.mastery
        row.last_reviewed = now
        row.next_review = outcome.next_review
        row.review_history = list(row.review_history or []) + [{
            "date": now.isoformat(),
            "performance": Performance(req.performance).name.lower(),
            "mastery": outcome.mastery,
        }]
    db.commit()

    rewards = None
    if outcome is not None:
        rewards = try_award_xp(db, user.username, "vocabulary", "review_word", {"word_id": row.id})
        if outcome.newly_mastered:
            rewards = try_award_xp(db, user.username, "vocabulary", "master_word", {"word_id": row.id}) or rewards
    body = _word_to_dict(row)
    body["rewards"] = rewards
    return body


@router.post("/word/{word_id}/favorite")
async def toggle_favorite(word_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = get_owned(db, VocabularyWord, word_id, user.username, label="Word")
    row.favorite = not row.favorite
    db.commit()
    return {"id": row.id, "favorite": row.favorite}


@router.delete("/word/{word_id}")
async def delete_word(word_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = get_owned(db, VocabularyWord, word_id, user.username, label="Word")
    db.delete(row)
    db.commit()
    return {"ok": True}
