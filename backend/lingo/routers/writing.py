from __future__ import annotations
import logging
import random
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..access import get_owned, iso
from ..cefr import LEVELS, estimate_level_from_text, level_to_exam, normalize_level
from ..db import get_db
from ..gamification import try_award_xp
from ..gemini_client import AI_ERRORS, GeminiClient, get_ai_client
from ..grading import count_words
from ..models import GrammarIssue, WritingSession
from .auth import get_current_user, User


router = APIRouter(prefix="/writing", tags=["writing"])

logger = logging.getLogger(__name__)

PROMPT_TYPES = ["essay", "email", "story", "review", "report", "opinion"]
MAX_TEXT_CHARS = 8000

_FALLBACK_PROMPTS: Dict[str, str] = {
	"essay": "Some people think technology makes us less social. Write an essay giving your opinion with reasons and examples.",
	"email": "Write an email to a friend inviting them to spend a weekend in your town. Suggest activities and explain why they would enjoy them.",
	"story": "Write a story that begins with the sentence: 'When I opened the door, I couldn't believe my eyes.'",
	"review": "Write a review of a film, book or restaurant you enjoyed recently. Say what you liked and who you would recommend it to.",
	"report": "Your school wants to improve its facilities. Write a report describing the current situation and making recommendations.",
	"opinion": "Is it better to live in a city or in the countryside? Give your opinion and support it with reasons.",
}

# Heuristic scores used when no AI provider answers
_LEVEL_SCORES = {"A1": 35, "A2": 50, "B1": 62, "B2": 74, "C1": 85, "C2": 94}


class GeneratePromptRequest(BaseModel):
	level: Optional[str] = None
	type: Optional[str] = None
	topic: Optional[str] = Field(default=None, max_length=128)


class CreateSessionRequest(BaseModel):
	prompt: str = Field(min_length=1, max_length=2000)
	type: str = "essay"
	topic: Optional[str] = None
	level: Optional[str] = None
	target_length: int = Field(default=200, ge=20, le=2000)
	requirements: List[str] = []


class UpdateSessionRequest(BaseModel):
	content: Optional[str] = Field(default=None, max_length=20000)
	status: Optional[str] = None
	time_spent: Optional[int] = Field(default=None, ge=0)


def _target_length_for(level: str) -> int:
	return {"A1": 80, "A2": 100, "B1": 150, "B2": 220, "C1": 280, "C2": 320}.get(level, 200)


def _build_prompt_generation_prompt(level: str, prompt_type: str, topic: Optional[str]) -> str:
	return (
		"You are an English assessment content writer. Generate ONE writing task.\n"
		f"Task type: {prompt_type}. Learner level: CEFR {level} (Cambridge {level_to_exam(level)}).\n"
		+ (f"Topic: {topic}.\n" if topic else "Choose an everyday topic with no cultural bias.\n")
		+ f"The learner should write about {_target_length_for(level)} words.\n"
		"Return ONLY a compact JSON object with keys: prompt (string), topic (string), requirements (array of short strings)."
	)


def _build_analysis_prompt(text: str, session: WritingSession) -> str:
	prompt = session.prompt or {}
	return (
		"You are an English writing examiner. Assess the student's text against the task.\n"
		f"Task ({prompt.get('type', 'essay')}): {prompt.get('text', '')}\n"
		f"Target length: about {prompt.get('target_length', 200)} words. Learner level: {session.level or 'unknown'}.\n"
		"Score each dimension from 0-100: grammar, vocabulary, coherence, style, and overall.\n"
		"List grammar_issues as an array of {type, text, correction, explanation, category} quoting the learner's exact text.\n"
		"Return ONLY a JSON object with keys: scores (object with grammar, vocabulary, coherence, style, overall),\n"
		"estimated_level (A1-C2), feedback (string), strengths (array), improvements (array), grammar_issues (array).\n\n"
		f"Student writing:\n{text}"
	)


def _clamp_score(value: Any, default: int) -> int:
	try:
		return max(0, min(100, round(float(value))))
	except (TypeError, ValueError):
		return default


def _heuristic_analysis(text: str, target_length: int) -> Dict[str, Any]:
	estimate = estimate_level_from_text(text)
	base = _LEVEL_SCORES[estimate["level"]]
	words = count_words(text)
	# Penalise answers far from the requested length
	length_ratio = words / target_length if target_length else 1.0
	task_penalty = 0 if 0.7 <= length_ratio <= 1.5 else 10
	scores = {
		"grammar": base,
		"vocabulary": base,
		"coherence": max(0, base - task_penalty),
		"style": base,
	}
	scores["overall"] = round(sum(scores.values()) / 4)
	return {
		"scores": scores,
		"estimated_level": estimate["level"],
		"feedback": estimate["feedback"],
		"strengths": [],
		"improvements": [estimate["feedback"]],
		"grammar_issues": [],
		"source": "heuristic",
	}


def _normalize_analysis(data: Dict[str, Any], fallback: Dict[str, Any]) -> Dict[str, Any]:
	raw_scores = data.get("scores") if isinstance(data.get("scores"), dict) else {}
	scores = {k: _clamp_score(raw_scores.get(k), fallback["scores"][k]) for k in ("grammar", "vocabulary", "coherence", "style")}
	scores["overall"] = _clamp_score(raw_scores.get("overall"), round(sum(scores.values()) / 4))
	issues = []
	for item in data.get("grammar_issues") or []:
		if isinstance(item, dict) and item.get("text") and item.get("correction"):
			issues.append({
				"type": str(item.get("type") or "grammar"),
				"text": str(item["text"]),
				"correction": str(item["correction"]),
				"explanation": str(item.get("explanation") or "") or None,
				"category": str(item.get("category") or "general").lower(),
			})
	level = str(data.get("estimated_level") or "").upper()
	return {
		"scores": scores,
		"estimated_level": level if level in LEVELS else fallback["estimated_level"],
		"feedback": str(data.get("feedback") or fallback["feedback"]),
		"strengths": [str(s) for s in data.get("strengths") or []],
		"improvements": [str(s) for s in data.get("improvements") or []],
		"grammar_issues": issues,
		"source": "ai",
	}


def _session_to_dict(row: WritingSession) -> Dict[str, Any]:
	return {
		"id": row.id,
		"prompt": row.prompt,
		"level": row.level,
		"content": row.content,
		"drafts": row.drafts or [],
		"final_version": row.final_version,
		"analysis": row.analysis,
		"status": row.status,
		"word_count": row.word_count,
		"time_spent": row.time_spent,
		"submitted_at": iso(row.submitted_at),
		"completed_at": iso(row.completed_at),
		"created_at": iso(row.created_at),
	}


@router.post("/prompts/generate")
async def generate_prompt(
	req: GeneratePromptRequest,
	user: User = Depends(get_current_user),
	client: Optional[GeminiClient] = Depends(get_ai_client),
):
	level = normalize_level(req.level)
	prompt_type = (req.type or random.choice(PROMPT_TYPES)).lower()
	if prompt_type not in PROMPT_TYPES:
		raise HTTPException(status_code=400, detail=f"type must be one of {PROMPT_TYPES}")
	result = {
		"text": _FALLBACK_PROMPTS[prompt_type],
		"type": prompt_type,
		"topic": req.topic,
		"level": level,
		"target_length": _target_length_for(level),
		"requirements": [],
	}
	if client is None:
		return result
	try:
		data = await client.generate_json(_build_prompt_generation_prompt(level, prompt_type, req.topic))
	except AI_ERRORS as e:
		logger.warning("Writing prompt generation failed, using fallback: %s", e)
		return result
	text = str(data.get("prompt") or "").strip()
	if text:
		result["text"] = text
		result["topic"] = data.get("topic") or req.topic
		result["requirements"] = [str(r) for r in data.get("requirements") or []]
	return result


@router.post("/sessions", status_code=201)
async def create_session(req: CreateSessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if req.type not in PROMPT_TYPES:
		raise HTTPException(status_code=400, detail=f"type must be one of {PROMPT_TYPES}")
	row = WritingSession(
		username=user.username,
		prompt={
			"text": req.prompt.strip(),
			"type": req.type,
			"topic": req.topic,
			"target_length": req.target_length,
			"requirements": req.requirements,
		},
		level=normalize_level(req.level) if req.level else None,
		content="",
		drafts=[],
		status="draft",
	)
	db.add(row)
	db.commit()
	return _session_to_dict(row)


@router.get("/sessions")
async def list_sessions(status: Optional[str] = None, limit: int = 20, offset: int = 0, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	query = db.query(WritingSession).filter(WritingSession.username == user.username)
	if status:
		query = query.filter(WritingSession.status == status)
	limit = max(1, min(limit, 100))
	rows = query.order_by(WritingSession.created_at.desc()).offset(max(0, offset)).limit(limit).all()
	return {"sessions": [_session_to_dict(r) for r in rows], "total": query.count()}


@router.get("/stats")
async def stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	base = db.query(WritingSession).filter(WritingSession.username == user.username)
	completed = base.filter(WritingSession.status == "completed").all()
	overall = [r.analysis["scores"]["overall"] for r in completed if r.analysis]
	return {
		"total_sessions": base.count(),
		"completed_sessions": len(completed),
		"total_words": base.with_entities(func.coalesce(func.sum(WritingSession.word_count), 0)).scalar(),
		"average_score": round(sum(overall) / len(overall)) if overall else None,
	}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return _session_to_dict(get_owned(db, WritingSession, session_id, user.username))


@router.patch("/sessions/{session_id}")
async def update_session(session_id: str, req: UpdateSessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_owned(db, WritingSession, session_id, user.username)
	if req.content is None and req.status is None and req.time_spent is None:
		raise HTTPException(status_code=400, detail="No valid fields to update")
	if req.content is not None:
		if row.status != "draft":
			raise HTTPException(status_code=400, detail="Only draft sessions can be edited")
		if req.content != row.content:
			words = count_words(req.content)
			row.content = req.content
			row.word_count = words
			row.drafts = list(row.drafts or []) + [{
				"content": req.content,
				"word_count": words,
				"saved_at": datetime.utcnow().isoformat(),
			}]
	if req.time_spent is not None:
		row.time_spent = max(row.time_spent, req.time_spent)
	if req.status is not None and req.status != row.status:
		if req.status != "submitted" or row.status != "draft":
			raise HTTPException(status_code=400, detail=f"Cannot change status from {row.status} to {req.status}")
		if not row.content.strip():
			raise HTTPException(status_code=400, detail="Cannot submit an empty text")
		row.status = "submitted"
		row.final_version = row.content
		row.submitted_at = datetime.utcnow()
	db.commit()
	return _session_to_dict(row)


@router.post("/sessions/{session_id}/analyze")
async def analyze_session(
	session_id: str,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: Optional[GeminiClient] = Depends(get_ai_client),
):
	row = get_owned(db, WritingSession, session_id, user.username)
	if row.status != "submitted":
		raise HTTPException(status_code=400, detail="Only submitted sessions can be analyzed")
	text = (row.final_version or "")[:MAX_TEXT_CHARS]
	fallback = _heuristic_analysis(text, (row.prompt or {}).get("target_length", 200))
	analysis = fallback
	if client is not None:
		try:
			analysis = _normalize_analysis(await client.generate_json(_build_analysis_prompt(text, row)), fallback)
		except AI_ERRORS as e:
			logger.warning("Writing analysis failed, using heuristic scores: %s", e)
	for issue in analysis["grammar_issues"]:
		db.add(GrammarIssue(
			username=user.username,
			source_module="writing",
			source_session_id=row.id,
			issue_type=issue["type"],
			text=issue["text"],
			correction=issue["correction"],
			explanation=issue["explanation"],
			cefr_level=analysis["estimated_level"],
			category=issue["category"],
		))
	row.analysis = analysis
	row.status = "analyzed"
	db.commit()
	return _session_to_dict(row)


@router.post("/sessions/{session_id}/complete")
async def complete_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_owned(db, WritingSession, session_id, user.username)
	if row.status != "analyzed":
		raise HTTPException(status_code=400, detail="Only analyzed sessions can be completed")
	row.status = "completed"
	row.completed_at = datetime.utcnow()
	db.commit()
	rewards = try_award_xp(db, user.username, "writing", "complete_session", {"session_id": row.id, "word_count": row.word_count})
	body = _session_to_dict(row)
	body["rewards"] = rewards
	return body


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_owned(db, WritingSession, session_id, user.username)
	db.delete(row)
	db.commit()
	return {"ok": True}
