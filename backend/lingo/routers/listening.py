"""
Listening Module
================

AI-generated listening exercises: a transcript (rendered to audio by the
client's text-to-speech), comprehension questions and key vocabulary.

Answers can be submitted several times. Each submission is merged with the
earlier ones, so a learner may fix a wrong answer (or break a right one) and
the running totals follow. A session completes when every question has been
answered and every vocabulary item reviewed; completion XP is awarded once.

API Endpoints:
- POST /listening/generate
- GET /listening, GET /listening/{id}, DELETE /listening/{id}
- POST /listening/{id}/feedback
- POST /listening/{id}/vocabulary
- GET /listening/stats
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..access import get_owned, iso
from ..cefr import level_to_exam, normalize_level
from ..db import get_db
from ..gamification import try_award_xp
from ..gemini_client import AI_ERRORS, GeminiClient, get_ai_client
from ..grading import (
    compare_answers,
    comprehension_score,
    count_words,
    extract_relevant_transcript_part,
    fallback_answer_feedback,
    fallback_overall_feedback,
    normalize_questions,
    normalize_vocabulary,
    overall_feedback,
    public_questions,
)
from ..models import ListeningSession
from .auth import User, get_current_user


router = APIRouter(prefix="/listening", tags=["listening"])

logger = logging.getLogger(__name__)

# Spoken English runs at roughly 150 words per minute
SPEAKING_WORDS_PER_MINUTE = 150


# ============================================================================
# REQUEST MODELS
# ============================================================================

class GenerateRequest(BaseModel):
    level: Optional[str] = None
    topic: Optional[str] = Field(default=None, max_length=128)
    format: str = Field(default="monologue", description="monologue | dialogue | news | lecture")
    question_count: int = Field(default=5, ge=1, le=10)


class AnswerItem(BaseModel):
    question_id: str
    answer: str


class FeedbackRequest(BaseModel):
    answers: List[AnswerItem]
    time_spent: Optional[int] = Field(default=None, ge=0)
    vocabulary_reviewed: Optional[List[str]] = None
    use_ai: bool = True


class VocabularyReviewRequest(BaseModel):
    words: List[str]


# ============================================================================
# HELPERS
# ============================================================================

def _generation_prompt(level: str, topic: str, fmt: str, question_count: int) -> str:
    return (
        "You are an expert ESL listening materials writer.\n"
        f"Write a {fmt} script for a listening exercise at CEFR {level} "
        f"(Cambridge {level_to_exam(level)} style), topic: {topic}. 150-300 words, natural spoken English.\n"
        f"Then write {question_count} comprehension questions mixing multiple-choice, true-false and fill-blank.\n"
        "Return ONLY compact JSON with keys: title, transcript,\n"
        "  questions (array of {type, question, options, correct_answer, explanation}),\n"
        "  vocabulary (array of {word, definition, example}).\n"
        "No markdown, no extra commentary."
    )


def _feedback_prompt(row: ListeningSession, graded: List[Dict[str, Any]], score: int) -> str:
    lines = []
    for g in graded:
        lines.append(
            f"- id={g['question_id']} question={g['question']!r} learner={g['user_answer']!r} "
            f"expected={g['correct_answer']!r} correct={g['is_correct']} "
            f"context={extract_relevant_transcript_part(row.transcript, g['correct_answer'])!r}"
        )
    return (
        f"You are a supportive ESL listening tutor. The learner is at CEFR {row.level} and scored {score}%.\n"
        "For each answer below give one or two sentences of feedback that point to the relevant part of the recording.\n"
        + "\n".join(lines)
        + "\nReturn ONLY JSON: {\"feedback\": [{\"question_id\", \"feedback\"}], \"overall\": string}"
    )


async def _ai_feedback(client: Optional[GeminiClient], row: ListeningSession, graded: List[Dict[str, Any]], score: int) -> Dict[str, Any]:
    per_answer = {g["question_id"]: fallback_answer_feedback(g["is_correct"], g["correct_answer"]) for g in graded}
    overall = fallback_overall_feedback(score)
    if client is None or not graded:
        return {"per_answer": per_answer, "overall": overall}
    try:
        data = await client.generate_json(_feedback_prompt(row, graded, score))
    except AI_ERRORS as e:
        logger.warning("Listening feedback generation failed: %s", e)
        return {"per_answer": per_answer, "overall": overall}
    items = data.get("feedback")
    for item in items if isinstance(items, list) else []:
        if isinstance(item, dict) and item.get("question_id") in per_answer and item.get("feedback"):
            per_answer[item["question_id"]] = str(item["feedback"])
    if data.get("overall"):
        overall = str(data["overall"])
    return {"per_answer": per_answer, "overall": overall}


def _merge_reviewed(row: ListeningSession, words: List[str]) -> None:
    merged = list(row.vocabulary_reviewed or [])
    for word in words:
        word = word.strip()
        if word and word not in merged:
            merged.append(word)
    row.vocabulary_reviewed = merged


def _is_complete(row: ListeningSession) -> bool:
    questions = row.questions or []
    answered = set((row.user_answers or {}).keys())
    all_answered = bool(questions) and all(q["id"] in answered for q in questions)
    reviewed = {w.lower() for w in row.vocabulary_reviewed or []}
    all_reviewed = all(v["word"].lower() in reviewed for v in row.vocabulary or [])
    return all_answered and all_reviewed


def _complete_if_ready(db: Session, row: ListeningSession, username: str) -> Optional[Dict[str, Any]]:
    """Mark the session complete once; returns the XP summary when it happens."""
    if row.completed or not _is_complete(row):
        return None
    row.completed = True
    row.completed_at = datetime.utcnow()
    db.commit()
    rewards = try_award_xp(db, username, "listening", "complete_session", {"session_id": row.id, "level": row.level})
    if row.correct_answers:
        try_award_xp(db, username, "listening", "correct_answer", {"session_id": row.id, "count": row.correct_answers})
    if row.vocabulary_reviewed:
        try_award_xp(db, username, "listening", "review_word", {"session_id": row.id, "count": len(row.vocabulary_reviewed)})
    return rewards


def _session_to_dict(row: ListeningSession) -> Dict[str, Any]:
    return {
        "id": row.id,
        "title": row.title,
        "transcript": row.transcript,
        "level": row.level,
        "topic": row.topic,
        "duration_seconds": row.duration_seconds,
        "questions": public_questions(row.questions or [], reveal=row.completed),
        "vocabulary": row.vocabulary or [],
        "progress": {
            "time_spent": row.time_spent,
            "questions_answered": row.questions_answered,
            "correct_answers": row.correct_answers,
            "vocabulary_reviewed": row.vocabulary_reviewed or [],
            "comprehension_score": row.comprehension_score,
        },
        "completed": row.completed,
        "completed_at": iso(row.completed_at),
        "created_at": iso(row.created_at),
    }


# ============================================================================
# API ENDPOINTS
# ============================================================================

@router.post("/generate", status_code=201)
async def generate(
    req: GenerateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: Optional[GeminiClient] = Depends(get_ai_client),
):
    if client is None:
        raise HTTPException(status_code=500, detail="AI provider is not configured")
    level = normalize_level(req.level)
    topic = (req.topic or "").strip() or "daily routines"
    try:
        data = await client.generate_json(_generation_prompt(level, topic, req.format, req.question_count))
    except AI_ERRORS as e:
        logger.warning("Listening generation failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to generate listening content")
    transcript = str(data.get("transcript") or "").strip()
    questions = normalize_questions(data.get("questions"))
    if not transcript or not questions:
        raise HTTPException(status_code=500, detail="AI returned incomplete listening content")
    row = ListeningSession(
        username=user.username,
        title=str(data.get("title") or topic.title()).strip()[:256],
        transcript=transcript,
        level=level,
        topic=topic,
        duration_seconds=round(count_words(transcript) / SPEAKING_WORDS_PER_MINUTE * 60),
        questions=questions,
        vocabulary=normalize_vocabulary(data.get("vocabulary")),
        vocabulary_reviewed=[],
        user_answers={},
    )
    db.add(row)
    db.commit()
    return _session_to_dict(row)


@router.get("")
async def list_sessions(limit: int = 20, offset: int = 0, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    limit = max(1, min(limit, 100))
    query = db.query(ListeningSession).filter(ListeningSession.username == user.username)
    rows = query.order_by(ListeningSession.created_at.desc()).offset(max(0, offset)).limit(limit).all()
    return {"sessions": [_session_to_dict(r) for r in rows], "total": query.count()}


@router.get("/stats")
async def stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    base = db.query(ListeningSession).filter(ListeningSession.username == user.username)
    completed = base.filter(ListeningSession.completed.is_(True))
    avg_score = completed.with_entities(func.avg(ListeningSession.comprehension_score)).scalar()
    return {
        "total_sessions": base.count(),
        "completed_sessions": completed.count(),
        "average_comprehension": round(avg_score) if avg_score is not None else None,
        "total_time_spent": base.with_entities(func.coalesce(func.sum(ListeningSession.time_spent), 0)).scalar(),
    }


@router.get("/{session_id}")
async def get_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _session_to_dict(get_owned(db, ListeningSession, session_id, user.username))


@router.post("/{session_id}/feedback")
async def submit_feedback(
    session_id: str,
    req: FeedbackRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: Optional[GeminiClient] = Depends(get_ai_client),
):
    """Grade submitted answers, merging them with earlier submissions."""
    row = get_owned(db, ListeningSession, session_id, user.username)
    # Blank answers leave any earlier answer in place
    answers = [item for item in req.answers if item.answer.strip()]
    if not answers:
        raise HTTPException(status_code=400, detail="At least one answer is required")
    by_id = {q["id"]: q for q in row.questions or []}
    previous: Dict[str, Dict[str, Any]] = dict(row.user_answers or {})
    merged = dict(previous)
    graded: List[Dict[str, Any]] = []
    newly_correct = 0
    lost_correct = 0
    for item in answers:
        question = by_id.get(item.question_id)
        if question is None:
            raise HTTPException(status_code=400, detail=f"Unknown question id: {item.question_id}")
        is_correct = compare_answers(item.answer, question["correct_answer"], question["type"])
        was_correct = bool((previous.get(item.question_id) or {}).get("is_correct"))
        if is_correct and not was_correct:
            newly_correct += 1
        elif was_correct and not is_correct:
            lost_correct += 1
        merged[item.question_id] = {"answer": item.answer, "is_correct": is_correct}
        graded.append({
            "question_id": item.question_id,
            "question": question["question"],
            "user_answer": item.answer,
            "correct_answer": question["correct_answer"],
            "is_correct": is_correct,
            "explanation": question.get("explanation"),
        })

    row.user_answers = merged
    row.questions_answered = len(merged)
    row.correct_answers = sum(1 for a in merged.values() if a.get("is_correct"))
    row.comprehension_score = comprehension_score(row.correct_answers, row.questions_answered)
    if req.time_spent is not None:
        row.time_spent = max(row.time_spent, req.time_spent)
    if req.vocabulary_reviewed:
        _merge_reviewed(row, req.vocabulary_reviewed)
    db.commit()
    score = row.comprehension_score

    feedback = await _ai_feedback(client if req.use_ai else None, row, graded, score)
    rewards = _complete_if_ready(db, row, user.username)
    return {
        "results": [{**g, "feedback": feedback["per_answer"][g["question_id"]]} for g in graded],
        "newly_correct": newly_correct,
        "lost_correct": lost_correct,
        "questions_answered": row.questions_answered,
        "total_questions": len(by_id),
        "correct_answers": row.correct_answers,
        "comprehension_score": score,
        "score_band": overall_feedback(score),
        "overall_feedback": feedback["overall"],
        "completed": row.completed,
        "rewards": rewards,
    }


@router.post("/{session_id}/vocabulary")
async def review_vocabulary(
    session_id: str,
    req: VocabularyReviewRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_owned(db, ListeningSession, session_id, user.username)
    known = {v["word"].lower(): v["word"] for v in row.vocabulary or []}
    unknown = [w for w in req.words if w.strip().lower() not in known]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Words not in this session: {', '.join(unknown)}")
    _merge_reviewed(row, [known[w.strip().lower()] for w in req.words])
    db.commit()
    rewards = _complete_if_ready(db, row, user.username)
    return {"vocabulary_reviewed": row.vocabulary_reviewed, "completed": row.completed, "rewards": rewards}


@router.delete("/{session_id}")
async def delete_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = get_owned(db, ListeningSession, session_id, user.username)
    db.delete(row)
    db.commit()
    return {"ok": True}
