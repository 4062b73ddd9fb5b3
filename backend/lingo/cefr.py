from __future__ import annotations
import re
from typing import Dict, List

LEVELS: List[str] = ["A1", "A2", "B1", "B2", "C1", "C2"]

_LEVEL_SCORES = {"A1": 1, "A2": 3, "B1": 5, "B2": 7, "C1": 9, "C2": 10}
_COMPLEXITY_SCORES = {"A1": 2, "A2": 3, "B1": 5, "B2": 7, "C1": 9, "C2": 10}


def normalize_level(level: str | None, default: str = "B1") -> str:
	candidate = (level or "").strip().upper()
	return candidate if candidate in LEVELS else default


def level_to_exam(level: str) -> str:
	"""Cambridge exam aligned with a CEFR level (KET for A1/A2, PET for B1, FCE above)."""
	if level in ("A1", "A2"):
		return "KET"
	if level == "B1":
		return "PET"
	return "FCE"


def reading_level_score(level: str | None) -> int:
	return _LEVEL_SCORES.get((level or "").upper(), 5)


def reading_complexity_score(level: str | None) -> int:
	return _COMPLEXITY_SCORES.get((level or "").upper(), 5)


def dedupe_transcript(text: str) -> str:
	"""Collapse repeated 1-3 word phrases and extra whitespace.

	Speech recognition often repeats phrases when interim and final results overlap.
	"""
	s = re.sub(r"\s+", " ", text or "").strip()
	if not s:
		return s
	patterns = [
		(r"\b(\w+\s+\w+\s+\w+)(?:\s+\1\b)+", r"\1"),
		(r"\b(\w+\s+\w+)(?:\s+\1\b)+", r"\1"),
		(r"\b(\w+)(?:\s+\1\b)+", r"\1"),
	]
	for pat, rep in patterns:
		s = re.sub(pat, rep, s, flags=re.IGNORECASE)
	return re.sub(r"\s+", " ", s).strip()


def estimate_level_from_text(text: str) -> Dict[str, str]:
	"""Feature-count CEFR estimate used when the AI provider is unavailable.

	Returns ``{"level", "feedback"}``.
	"""
	text = (text or "").strip()
	if not text:
		return {"level": "A1", "feedback": "No language detected. Try to produce a few complete sentences."}
	words = re.findall(r"[A-Za-z']+", text)
	num_words = len(words)
	unique_words = len(set(w.lower() for w in words))
	type_token_ratio = (unique_words / num_words) if num_words else 0.0
	long_ratio = (len([w for w in words if len(w) >= 8]) / num_words) if num_words else 0.0
	sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
	avg_sentence_len = (num_words / len(sentences)) if sentences else num_words
	subords = len(re.findall(r"\b(although|though|whereas|while|because|since|unless|until|when|after|before|if)\b", text, re.IGNORECASE))
	relatives = len(re.findall(r"\b(who|which|that|whose|whom)\b", text, re.IGNORECASE))
	modals = len(re.findall(r"\b(would|could|should|might|must|may|can|will|shall)\b", text, re.IGNORECASE))
	perfect = len(re.findall(r"\b(have|has|had)\s+\w+(?:ed|en)\b", text, re.IGNORECASE))
	linkers = len(re.findall(r"\b(however|therefore|moreover|furthermore|in addition|on the other hand|for example|for instance|in conclusion|nevertheless)\b", text, re.IGNORECASE))
	passive = len(re.findall(r"\b(is|are|was|were|be|been|being)\s+\w+ed\b", text, re.IGNORECASE))

	score = 0
	for threshold, points in ((120, 6), (80, 5), (50, 4), (30, 3), (15, 2)):
		if num_words >= threshold:
			score += points
			break
	else:
		score += 1
	score += min(4, subords) + min(3, relatives) + min(3, modals) + min(3, perfect) + min(3, linkers) + min(2, passive)
	if long_ratio > 0.15:
		score += 3
	elif long_ratio > 0.08:
		score += 2
	elif long_ratio > 0.04:
		score += 1
	if type_token_ratio > 0.6:
		score += 2
	elif type_token_ratio > 0.45:
		score += 1
	if avg_sentence_len >= 20:
		score += 2
	elif avg_sentence_len >= 12:
		score += 1

	if score <= 5:
		level = "A1"
	elif score <= 7:
		level = "A2"
	elif score <= 10:
		level = "B1"
	elif score <= 13:
		level = "B2"
	elif score <= 16:
		level = "C1"
	else:
		level = "C2"

	suggestions: List[str] = []
	if num_words < 50:
		suggestions.append("Try to develop your ideas further with examples.")
	if linkers < 1:
		suggestions.append("Use linkers (e.g., however, for example) to connect ideas.")
	if modals < 1:
		suggestions.append("Include modal verbs to express opinions and suggestions.")
	if perfect < 1:
		suggestions.append("Show a wider range of tenses (e.g., present perfect).")
	if avg_sentence_len < 12:
		suggestions.append("Combine clauses to create more complex sentences.")
	return {"level": level, "feedback": " ".join(suggestions[:2]) or "Clear and coherent language."}
