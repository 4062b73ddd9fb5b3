"""
Speaking Module
===============

Conversation practice with an AI partner, followed by an evaluation of the
learner's side of the conversation.

Key Features:
- Conversation sessions persisted turn by turn
- Evaluation combining Speech-to-Text pronunciation scores with AI language scoring
- Heuristic CEFR estimate as fallback when the AI provider is unavailable
- Duplicate evaluation requests for the same session are skipped while one runs
- Evaluation results saved with optimistic-concurrency retries

API Endpoints:
- POST /speaking/conversation/start: Begin a conversation
- POST /speaking/conversation/respond: Add a learner turn and get the partner's reply
- POST /speaking/conversation/end: Close the conversation
- POST /speaking/evaluate: Score a conversation
- POST /speaking/pronunciation/analyze: Score a single recording
- GET /speaking/sessions, GET/DELETE /speaking/sessions/{id}
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .. import speech_analysis
from ..access import get_owned, iso
from ..cefr import LEVELS, dedupe_transcript, estimate_level_from_text, level_to_exam, normalize_level
from ..db import get_db
from ..gamification import try_award_xp
from ..gemini_client import AI_ERRORS, GeminiClient, get_ai_client
from ..inflight import InFlightGuard
from ..models import GrammarIssue, SpeakingSession
from ..settings import settings
from .auth import User, get_current_user


router = APIRouter(prefix="/speaking", tags=["speaking"])

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS AND CONFIGURATION
# ============================================================================

# Audio chunks analysed per batch; at most two batches are scored per evaluation
AUDIO_BATCH_SIZE = 3
AUDIO_MAX_BATCHES = 2

# Heuristic language scores by estimated level
_LEVEL_SCORES = {"A1": 35, "A2": 50, "B1": 62, "B2": 74, "C1": 85, "C2": 94}

_FALLBACK_OPENER = "Hi! Let's practise speaking. Tell me a little about {topic}. What do you think about it?"
_FALLBACK_REPLY = "That's interesting. Could you tell me more about that, and why you feel that way?"

# Marks sessions whose evaluation is running or finished in the last few seconds
evaluation_guard = InFlightGuard(settings.evaluation_guard_seconds)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class StartRequest(BaseModel):
	"""Request model for starting a conversation."""
	topic: Optional[str] = Field(default=None, max_length=256)
	level: Optional[str] = Field(default=None, description="CEFR level A1–C2 (default B1)")


class RespondRequest(BaseModel):
	"""A learner turn: the recognised text plus, optionally, the recording."""
	session_id: str
	text: str = Field(min_length=1, max_length=4000)
	audio_base64: Optional[str] = None


class SessionRequest(BaseModel):
	session_id: str


class PronunciationRequest(BaseModel):
	audio_base64: str
	reference_text: str = ""


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def _turn(role: str, text: str) -> Dict[str, str]:
	return {"role": role, "text": text, "at": datetime.utcnow().isoformat()}


def _user_text(row: SpeakingSession) -> str:
	return " ".join(t["text"] for t in row.transcripts or [] if t.get("role") == "user").strip()


def _conversation_prompt(row: SpeakingSession, history: List[Dict[str, str]]) -> str:
	lines = [f"{t['role']}: {t['text']}" for t in history[-12:]]
	return (
		"You are a friendly English conversation partner for a language learner.\n"
		f"Learner level: CEFR {row.level} (Cambridge {level_to_exam(row.level or 'B1')}). Topic: {row.topic}.\n"
		"Keep replies short (1-3 sentences), natural, and end with a question that keeps the learner talking.\n"
		"Use vocabulary suited to the learner's level. Do not correct mistakes explicitly.\n\n"
		"Conversation so far:\n" + "\n".join(lines) + "\nassistant:"
	)


def _evaluation_prompt(row: SpeakingSession, transcript: str) -> str:
	return (
		"You are an English speaking examiner. Evaluate ONLY the learner's language in this transcript.\n"
		f"Topic: {row.topic}. Target level: {row.level}.\n"
		"Score each dimension 0-100: grammar, vocabulary, fluency, coherence, overall.\n"
		"Return ONLY JSON with keys: scores (object), estimated_level (A1-C2), feedback (string),\n"
		"strengths (array), improvements (array), grammar_issues (array of {type, text, correction, explanation, category}).\n\n"
		f"Learner transcript:\n{transcript}"
	)


def _heuristic_language_scores(transcript: str) -> Dict[str, Any]:
	"""Level-based scores from the lexical/grammatical estimator."""
	estimate = estimate_level_from_text(transcript)
	base = _LEVEL_SCORES[estimate["level"]]
	return {
		"scores": {"grammar": base, "vocabulary": base, "fluency": base, "coherence": base, "overall": base},
		"estimated_level": estimate["level"],
		"feedback": estimate["feedback"],
		"strengths": [],
		"improvements": [estimate["feedback"]],
		"grammar_issues": [],
		"source": "heuristic",
	}


def _clamp(value: Any, default: int) -> int:
	try:
		return max(0, min(100, round(float(value))))
	except (TypeError, ValueError):
		return default


async def _language_scores(client: Optional[GeminiClient], row: SpeakingSession, transcript: str) -> Dict[str, Any]:
	fallback = _heuristic_language_scores(transcript)
	if client is None:
		return fallback
	try:
		data = await client.generate_json(_evaluation_prompt(row, transcript))
	except AI_ERRORS as e:
		logger.warning("Speaking evaluation via AI failed, using heuristic: %s", e)
		return fallback
	raw = data.get("scores") if isinstance(data.get("scores"), dict) else {}
	scores = {k: _clamp(raw.get(k), fallback["scores"][k]) for k in ("grammar", "vocabulary", "fluency", "coherence", "overall")}
	level = str(data.get("estimated_level") or "").upper()
	issues = [
		i for i in data.get("grammar_issues") or []
		if isinstance(i, dict) and i.get("text") and i.get("correction")
	]
	return {
		"scores": scores,
		"estimated_level": level if level in LEVELS else fallback["estimated_level"],
		"feedback": str(data.get("feedback") or fallback["feedback"]),
		"strengths": [str(s) for s in data.get("strengths") or []],
		"improvements": [str(s) for s in data.get("improvements") or []],
		"grammar_issues": issues,
		"source": "ai",
	}


async def _pronunciation_scores(audio: List[str], reference_text: str) -> Dict[str, Any]:
	"""Analyse up to two batches of recordings and average whatever scored.

	Chunks within a batch are analysed concurrently; batches run one after the other.
	"""
	keys = ("pronunciation_score", "accuracy_score", "fluency_score", "completeness_score")
	collected: Dict[str, List[float]] = {k: [] for k in keys}
	analysed = 0
	for batch_index in range(AUDIO_MAX_BATCHES):
		batch = audio[batch_index * AUDIO_BATCH_SIZE:(batch_index + 1) * AUDIO_BATCH_SIZE]
		if not batch:
			break
		results = await asyncio.gather(*(speech_analysis.analyze_pronunciation(chunk, reference_text) for chunk in batch))
		for result in results:
			analysed += 1
			for k in keys:
				if result.get(k) is not None:
					collected[k].append(float(result[k]))
	averaged = {k: (round(sum(v) / len(v), 1) if v else None) for k, v in collected.items()}
	averaged["recordings_analysed"] = analysed
	return averaged


def _session_to_dict(row: SpeakingSession) -> Dict[str, Any]:
	return {
		"id": row.id,
		"topic": row.topic,
		"level": row.level,
		"status": row.status,
		"transcripts": row.transcripts or [],
		"recordings": len(row.audio or []),
		"feedback": row.feedback,
		"evaluation_progress": row.evaluation_progress,
		"created_at": iso(row.created_at),
		"ended_at": iso(row.ended_at),
	}


def _active_session(db: Session, session_id: str, username: str) -> SpeakingSession:
	row = get_owned(db, SpeakingSession, session_id, username)
	if row.status != "active":
		raise HTTPException(status_code=400, detail="Conversation has already ended")
	return row


async def save_with_retry(db: Session, session_id: str, apply: Callable[[SpeakingSession], None]) -> SpeakingSession:
	"""Apply ``apply`` to a fresh copy of the session and commit, retrying on version conflicts.

	Waits ``backoff * attempt`` seconds between attempts and gives up after
	``SAVE_RETRY_ATTEMPTS`` tries.
	"""
	attempts = max(1, settings.save_retry_attempts)
	for attempt in range(1, attempts + 1):
		row = db.get(SpeakingSession, session_id, populate_existing=True)
		if row is None:
			raise HTTPException(status_code=404, detail="Session not found")
		apply(row)
		try:
			db.commit()
			return row
		except StaleDataError:
			db.rollback()
			if attempt == attempts:
				logger.error("Giving up saving speaking session %s after %s attempts", session_id, attempts)
				raise
			logger.warning("Version conflict saving speaking session %s (attempt %s/%s)", session_id, attempt, attempts)
			await asyncio.sleep(settings.save_retry_backoff_seconds * attempt)
	raise RuntimeError("unreachable")


def _set_progress(db: Session, row: SpeakingSession, value: int) -> None:
	row.evaluation_progress = value
	db.commit()


# ============================================================================
# API ENDPOINTS
# ============================================================================

@router.post("/conversation/start", status_code=201)
async def start_conversation(
	req: StartRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: Optional[GeminiClient] = Depends(get_ai_client),
):
	topic = (req.topic or "").strip() or "your daily life"
	row = SpeakingSession(
		username=user.username,
		topic=topic,
		level=normalize_level(req.level),
		transcripts=[],
		audio=[],
		status="active",
	)
	opener = _FALLBACK_OPENER.format(topic=topic)
	if client is not None:
		try:
			text = (await client.generate(_conversation_prompt(row, []))).strip()
			opener = text or opener
		except AI_ERRORS as e:
			logger.warning("Conversation opener generation failed: %s", e)
	row.transcripts = [_turn("assistant", opener)]
	db.add(row)
	db.commit()
	return _session_to_dict(row)


@router.post("/conversation/respond")
async def respond(
	req: RespondRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: Optional[GeminiClient] = Depends(get_ai_client),
):
	row = _active_session(db, req.session_id, user.username)
	text = dedupe_transcript(req.text)
	if not text:
		raise HTTPException(status_code=400, detail="text is required")
	history = list(row.transcripts or []) + [_turn("user", text)]
	reply = _FALLBACK_REPLY
	if client is not None:
		try:
			reply = (await client.generate(_conversation_prompt(row, history))).strip() or reply
		except AI_ERRORS as e:
			logger.warning("Conversation reply generation failed: %s", e)
	row.transcripts = history + [_turn("assistant", reply)]
	if req.audio_base64:
		row.audio = list(row.audio or []) + [req.audio_base64]
	db.commit()
	return {"reply": reply, "session": _session_to_dict(row)}


@router.post("/conversation/end")
async def end_conversation(req: SessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _active_session(db, req.session_id, user.username)
	row.status = "ended"
	row.ended_at = datetime.utcnow()
	db.commit()
	rewards = None
	if _user_text(row):
		rewards = try_award_xp(db, user.username, "speaking", "conversation_session", {"session_id": row.id})
	return {"session": _session_to_dict(row), "rewards": rewards}


@router.post("/evaluate")
async def evaluate(
	req: SessionRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	client: Optional[GeminiClient] = Depends(get_ai_client),
):
	"""Score the learner's side of a conversation.

	A second request for the same session while one is running (or shortly
	after it finished) is answered with ``alreadyProcessing`` instead of
	repeating the work.
	"""
	row = get_owned(db, SpeakingSession, req.session_id, user.username)
	transcript = dedupe_transcript(_user_text(row))
	if not transcript:
		raise HTTPException(status_code=400, detail="No user speech to evaluate")
	if not evaluation_guard.try_acquire(row.id):
		return {"message": "Evaluation already in progress for this session", "alreadyProcessing": True}
	try:
		first_evaluation = row.feedback is None
		_set_progress(db, row, 20)
		pronunciation = await _pronunciation_scores(list(row.audio or []), transcript)
		_set_progress(db, row, 40)
		language = await _language_scores(client, row, transcript)
		_set_progress(db, row, 60)

		overall_parts = [language["scores"]["overall"]]
		if pronunciation["pronunciation_score"] is not None:
			overall_parts.append(pronunciation["pronunciation_score"])
		feedback = {
			"language": language,
			"pronunciation": pronunciation,
			"overall_score": round(sum(overall_parts) / len(overall_parts)),
			"estimated_level": language["estimated_level"],
			"evaluated_at": datetime.utcnow().isoformat(),
		}
		_set_progress(db, row, 80)

		def _apply(fresh: SpeakingSession) -> None:
			fresh.feedback = feedback
			fresh.evaluation_progress = 100

		try:
			row = await save_with_retry(db, req.session_id, _apply)
		except StaleDataError:
			logger.exception("Failed to save evaluation for speaking session %s", req.session_id)
			raise HTTPException(status_code=500, detail="Failed to save evaluation")

		for issue in language["grammar_issues"]:
			db.add(GrammarIssue(
				username=user.username,
				source_module="speaking",
				source_session_id=row.id,
				issue_type=str(issue.get("type") or "grammar"),
				text=str(issue["text"]),
				correction=str(issue["correction"]),
				explanation=str(issue.get("explanation") or "") or None,
				cefr_level=language["estimated_level"],
				category=str(issue.get("category") or "general").lower(),
			))
		db.commit()
		rewards = try_award_xp(db, user.username, "speaking", "complete_session", {"session_id": row.id}) if first_evaluation else None
	finally:
		evaluation_guard.release(req.session_id)
	return {"session": _session_to_dict(row), "feedback": feedback, "rewards": rewards}


@router.post("/pronunciation/analyze")
async def analyze_pronunciation(req: PronunciationRequest, user: User = Depends(get_current_user)):
	if not req.audio_base64:
		raise HTTPException(status_code=400, detail="audio_base64 is required")
	return await speech_analysis.analyze_pronunciation(req.audio_base64, req.reference_text)


@router.get("/sessions")
async def list_sessions(limit: int = 20, offset: int = 0, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	limit = max(1, min(limit, 100))
	query = db.query(SpeakingSession).filter(SpeakingSession.username == user.username)
	rows = query.order_by(SpeakingSession.created_at.desc()).offset(max(0, offset)).limit(limit).all()
	return {"sessions": [_session_to_dict(r) for r in rows], "total": query.count()}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return _session_to_dict(get_owned(db, SpeakingSession, session_id, user.username))


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = get_owned(db, SpeakingSession, session_id, user.username)
	db.delete(row)
	db.commit()
	return {"ok": True}
