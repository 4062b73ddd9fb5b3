from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..access import get_owned, iso
from ..cefr import level_to_exam, normalize_level, reading_complexity_score, reading_level_score
from ..db import get_db
from ..gamification import try_award_xp
from ..gemini_client import AI_ERRORS, GeminiClient, get_ai_client
from ..grading import (
    comprehension_score,
    count_words,
    estimate_reading_time,
    fallback_answer_feedback,
    grade_answers,
    normalize_questions,
    normalize_vocabulary,
    overall_feedback,
    public_questions,
)
from ..models import ReadingSession
from .auth import User, get_current_user


router = APIRouter(prefix="/reading", tags=["reading"])

logger = logging.getLogger(__name__)

LENGTHS: Dict[str, str] = {"short": "150-200", "medium": "250-350", "long": "400-500"}


class GenerateRequest(BaseModel):
    level: Optional[str] = None
    topic: Optional[str] = Field(default=None, max_length=128)
    length: str = "medium"
    question_count: int = Field(default=5, ge=1, le=10)


class ProgressUpdate(BaseModel):
    time_spent: Optional[int] = Field(default=None, ge=0)
    questions_answered: Optional[int] = Field(default=None, ge=0)
    correct_answers: Optional[int] = Field(default=None, ge=0)
    vocabulary_reviewed: Optional[List[str]] = None
    comprehension_score: Optional[int] = Field(default=None, ge=0, le=100)
    completion_time: Optional[datetime] = None


class AnswerItem(BaseModel):
    question_id: str
    answer: str


class AnswersRequest(BaseModel):
    answers: List[AnswerItem]


def _generation_prompt(level: str, topic: str, length: str, question_count: int) -> str:
    return (
        "You are an expert ESL reading writer.\n"
        f"Write a self-contained reading passage aligned to CEFR {level} "
        f"(vocabulary and structures typical of Cambridge {level_to_exam(level)}).\n"
        f"Topic: {topic}. Length: {LENGTHS.get(length, LENGTHS['medium'])} words.\n"
        f"Then write {question_count} comprehension questions mixing multiple-choice, true-false and fill-blank.\n"
        "Return ONLY compact JSON with keys:\n"
        '  title (string), content (string),\n'
        '  questions (array of {type, question, options (array, empty for fill-blank), correct_answer, explanation}),\n'
        '  vocabulary (array of {word, definition, example}),\n'
        '  grammar_focus (array of short strings).\n'
        "For multiple-choice, correct_answer must equal one of the options. For true-false use \"true\" or \"false\".\n"
        "No markdown, no extra commentary."
    )


def _session_to_dict(row: ReadingSession) -> Dict[str, Any]:
    completed = row.completion_time is not None
    return {
        "id": row.id,
        "title": row.title,
        "content": row.content,
        "level": row.level,
        "topic": row.topic,
        "word_count": row.word_count,
        "estimated_reading_time": row.estimated_reading_time,
        "reading_level": row.reading_level,
        "complexity": row.complexity,
        "questions": public_questions(row.questions or [], reveal=completed),
        "vocabulary": row.vocabulary or [],
        "grammar_focus": row.grammar_focus or [],
        "progress": {
            "time_spent": row.time_spent,
            "questions_answered": row.questions_answered,
            "correct_answers": row.correct_answers,
            "vocabulary_reviewed": row.vocabulary_reviewed or [],
            "comprehension_score": row.comprehension_score,
            "completion_time": iso(row.completion_time),
        },
        "completed": completed,
        "created_at": iso(row.created_at),
    }


def _merge_counters(row: ReadingSession, questions_answered: int, correct_answers: int) -> None:
    # Counters only move forward and stay within the question count
    row.questions_answered = min(max(row.questions_answered, questions_answered), len(row.questions or []))
    row.correct_answers = min(max(row.correct_answers, correct_answers), row.questions_answered)


@router.post("/sessions/generate", status_code=201)
async def generate_session(
    req: GenerateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: Optional[GeminiClient] = Depends(get_ai_client),
):
    if req.length not in LENGTHS:
        raise HTTPException(status_code=400, detail=f"length must be one of {list(LENGTHS)}")
    if client is None:
        raise HTTPException(status_code=500, detail="AI provider is not configured")
    level = normalize_level(req.level)
    topic = (req.topic or "").strip() or "everyday life"
    try:
        data = await client.generate_json(_generation_prompt(level, topic, req.length, req.question_count))
    except AI_ERRORS as e:
        logger.warning("Reading generation failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to generate reading content")
    content = str(data.get("content") or "").strip()
    questions = normalize_questions(data.get("questions"))
    if not content or not questions:
        raise HTTPException(status_code=500, detail="AI returned incomplete reading content")
    words = count_words(content)
    row = ReadingSession(
        username=user.username,
        title=str(data.get("title") or topic.title()).strip()[:256],
        content=content,
        level=level,
        topic=topic,
        word_count=words,
        estimated_reading_time=estimate_reading_time(words),
        questions=questions,
        vocabulary=normalize_vocabulary(data.get("vocabulary")),
        grammar_focus=[str(g) for g in data.get("grammar_focus") or [] if g],
        reading_level=reading_level_score(level),
        complexity=reading_complexity_score(level),
        vocabulary_reviewed=[],
        user_answers={},
    )
    db.add(row)
    db.commit()
    return _session_to_dict(row)


@router.get("/sessions")
async def list_sessions(
    limit: int = 20,
    offset: int = 0,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    limit = max(1, min(limit, 100))
    query = db.query(ReadingSession).filter(ReadingSession.username == user.username)
    total = query.count()
    rows = query.order_by(ReadingSession.created_at.desc()).offset(max(0, offset)).limit(limit).all()
    return {"sessions": [_session_to_dict(r) for r in rows], "total": total, "limit": limit, "offset": offset}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _session_to_dict(get_owned(db, ReadingSession, session_id, user.username))


@router.patch("/sessions/{session_id}")
async def update_progress(
    session_id: str,
    req: ProgressUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned(db, ReadingSession, session_id, user.username)
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    was_completed = row.completion_time is not None

    if "time_spent" in changes:
        row.time_spent = changes["time_spent"]
    if "questions_answered" in changes or "correct_answers" in changes:
        _merge_counters(row, changes.get("questions_answered", 0), changes.get("correct_answers", 0))
    if "vocabulary_reviewed" in changes:
        merged = list(row.vocabulary_reviewed or [])
        for word in changes["vocabulary_reviewed"]:
            if word not in merged:
                merged.append(word)
        row.vocabulary_reviewed = merged
    if "comprehension_score" in changes:
        row.comprehension_score = changes["comprehension_score"]
    if "completion_time" in changes and not was_completed:
        row.completion_time = changes["completion_time"].replace(tzinfo=None)
    db.commit()

    rewards = None
    if row.completion_time is not None and not was_completed:
        rewards = try_award_xp(db, user.username, "reading", "complete_session", {"session_id": row.id, "level": row.level})
        if row.correct_answers:
            try_award_xp(db, user.username, "reading", "correct_answer", {"session_id": row.id, "count": row.correct_answers})
    body = _session_to_dict(row)
    body["rewards"] = rewards
    return body


@router.post("/sessions/{session_id}/answers")
async def submit_answers(
    session_id: str,
    req: AnswersRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned(db, ReadingSession, session_id, user.username)
    answers = [item for item in req.answers if item.answer.strip()]
    if not answers:
        raise HTTPException(status_code=400, detail="At least one answer is required")
    merged = dict(row.user_answers or {})
    for item in answers:
        merged[item.question_id] = item.answer
    questions = row.questions or []
    graded = grade_answers(questions, merged)
    submitted_ids = {item.question_id for item in answers}
    answered = len(graded)
    correct = sum(1 for g in graded if g["is_correct"])
    score = comprehension_score(correct, answered)
    row.user_answers = {g["question_id"]: g["user_answer"] for g in graded}
    _merge_counters(row, answered, correct)
    row.comprehension_score = score
    db.commit()
    results = [
        {**g, "feedback": fallback_answer_feedback(g["is_correct"], g["correct_answer"])}
        for g in graded
        if g["question_id"] in submitted_ids
    ]
    return {
        "results": results,
        "questions_answered": row.questions_answered,
        "total_questions": len(questions),
        "correct_answers": row.correct_answers,
        "comprehension_score": score,
        "overall_feedback": overall_feedback(score),
    }


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = get_owned(db, ReadingSession, session_id, user.username)
    db.delete(row)
    db.commit()
    return {"ok": True}


@router.get("/stats")
async def stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    base = db.query(ReadingSession).filter(ReadingSession.username == user.username)
    completed = base.filter(ReadingSession.completion_time.is_not(None))
    avg_score = completed.with_entities(func.avg(ReadingSession.comprehension_score)).scalar()
    return {
        "total_sessions": base.count(),
        "completed_sessions": completed.count(),
        "average_comprehension": round(avg_score) if avg_score is not None else None,
        "total_time_spent": base.with_entities(func.coalesce(func.sum(ReadingSession.time_spent), 0)).scalar(),
        "words_read": completed.with_entities(func.coalesce(func.sum(ReadingSession.word_count), 0)).scalar(),
    }
