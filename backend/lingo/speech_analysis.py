from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from typing import Any, Dict, List, Optional

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import speech_v1p1beta1 as speech

from .settings import settings


logger = logging.getLogger(__name__)

# Gap between consecutive words counted as a hesitation
LONG_PAUSE_SECONDS = 0.7


def _unavailable(message: str) -> Dict[str, Any]:
	return {
		"pronunciation_score": None,
		"accuracy_score": None,
		"fluency_score": None,
		"completeness_score": None,
		"recognized_text": "",
		"feedback": message,
	}


def _seconds(offset: Any) -> float:
	if offset is None:
		return 0.0
	if hasattr(offset, "total_seconds"):
		return offset.total_seconds()
	return float(getattr(offset, "seconds", 0)) + float(getattr(offset, "nanos", 0)) / 1e9


def score_words(words: List[Dict[str, Any]], reference_text: str = "") -> Dict[str, Optional[float]]:
	"""Derive 0-100 scores from recognised words.

	``words`` items carry ``word``, ``confidence``, ``start`` and ``end`` (seconds).
	Accuracy is mean recognition confidence, fluency is penalised per long
	pause, completeness is the share of reference words that were recognised.
	"""
	if not words:
		return {"pronunciation_score": None, "accuracy_score": None, "fluency_score": None, "completeness_score": None}
	accuracy = sum(float(w.get("confidence") or 0.0) for w in words) / len(words) * 100
	pauses = 0
	for prev, cur in zip(words, words[1:]):
		if float(cur.get("start", 0.0)) - float(prev.get("end", 0.0)) > LONG_PAUSE_SECONDS:
			pauses += 1
	fluency = max(0.0, 100.0 - pauses * 10.0)
	reference = re.findall(r"[a-z']+", (reference_text or "").lower())
	completeness: Optional[float] = None
	if reference:
		heard = {re.sub(r"[^a-z']", "", str(w.get("word", "")).lower()) for w in words}
		completeness = sum(1 for r in reference if r in heard) / len(reference) * 100
	parts = [accuracy, fluency] + ([completeness] if completeness is not None else [])
	return {
		"pronunciation_score": round(sum(parts) / len(parts), 1),
		"accuracy_score": round(accuracy, 1),
		"fluency_score": round(fluency, 1),
		"completeness_score": round(completeness, 1) if completeness is not None else None,
	}


def _recognize(audio_content: bytes) -> Any:
	client = speech.SpeechClient()
	config = speech.RecognitionConfig(
		enable_word_time_offsets=True,
		enable_word_confidence=True,
		language_code=settings.speech_language_code,
		enable_automatic_punctuation=True,
		use_enhanced=True,
	)
	return client.recognize(config=config, audio=speech.RecognitionAudio(content=audio_content))


async def analyze_pronunciation(audio_base64: str, reference_text: str = "") -> Dict[str, Any]:
	"""Score a recording with Google Cloud Speech-to-Text.

	Never raises: provider problems come back as ``None`` scores with a message.
	"""
	if not audio_base64:
		return _unavailable("No audio provided for pronunciation analysis.")
	try:
		audio_content = base64.b64decode(audio_base64, validate=True)
	except (binascii.Error, ValueError):
		return _unavailable("Audio payload is not valid base64.")
	if not audio_content:
		return _unavailable("Empty audio payload received.")
	try:
		response = await asyncio.to_thread(_recognize, audio_content)
	except (GoogleAPIError, GoogleAuthError) as e:
		logger.warning("Speech-to-Text request failed: %s", e)
		return _unavailable(f"Pronunciation assessment unavailable: {e}")
	words: List[Dict[str, Any]] = []
	texts: List[str] = []
	for result in response.results:
		if not result.alternatives:
			continue
		best = result.alternatives[0]
		texts.append(best.transcript)
		for w in best.words:
			words.append({
				"word": w.word,
				"confidence": w.confidence,
				"start": _seconds(w.start_time),
				"end": _seconds(w.end_time),
			})
	if not words:
		return _unavailable("No speech recognized for pronunciation assessment.")
	scores = score_words(words, reference_text)
	return {
		**scores,
		"recognized_text": " ".join(t.strip() for t in texts).strip(),
		"feedback": "Scores derived from speech recognition confidence and pacing.",
	}
