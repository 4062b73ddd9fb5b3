from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Optional


MULTIPLE_CHOICE = "multiple-choice"
TRUE_FALSE = "true-false"
FILL_BLANK = "fill-blank"

_TYPE_ALIASES = {
    "multiple-choice": MULTIPLE_CHOICE,
    "multiplechoice": MULTIPLE_CHOICE,
    "mcq": MULTIPLE_CHOICE,
    "choice": MULTIPLE_CHOICE,
    "true-false": TRUE_FALSE,
    "truefalse": TRUE_FALSE,
    "true/false": TRUE_FALSE,
    "tf": TRUE_FALSE,
    "fill-blank": FILL_BLANK,
    "fill-in-the-blank": FILL_BLANK,
    "fill-in-blank": FILL_BLANK,
    "fillblank": FILL_BLANK,
    "short-answer": FILL_BLANK,
}

_TRUE_TOKENS = {"true", "a"}
_FALSE_TOKENS = {"false", "b"}

WORD_OVERLAP_THRESHOLD = 0.75
READING_WORDS_PER_MINUTE = 200


def normalize_question_type(question_type: Optional[str]) -> str:
    key = re.sub(r"[\s_]+", "-", (question_type or "").strip().lower())
    return _TYPE_ALIASES.get(key, MULTIPLE_CHOICE)


def _normalize_text(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value if value is not None else "")).strip().lower()


def _truth_value(token: str) -> Optional[bool]:
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def compare_answers(user_answer: Any, correct_answer: Any, question_type: Optional[str] = None) -> bool:
    """Decide whether a learner's answer matches the expected one.

    Multiple choice compares case-insensitively. True/false accepts ``a``/``b``
    for ``true``/``false``. Fill-in-the-blank is lenient: equality after
    whitespace normalisation, containment in either direction, or at least
    75% of words in common.
    """
    user = _normalize_text(user_answer)
    correct = _normalize_text(correct_answer)
    if not user or not correct:
        return False
    kind = normalize_question_type(question_type)
    if kind == MULTIPLE_CHOICE:
        return user == correct
    if kind == TRUE_FALSE:
        user_truth = _truth_value(user)
        correct_truth = _truth_value(correct)
        if user_truth is None or correct_truth is None:
            return user == correct
        return user_truth == correct_truth
    if user == correct or user in correct or correct in user:
        return True
    return word_overlap_ratio(user, correct) >= WORD_OVERLAP_THRESHOLD


def word_overlap_ratio(a: str, b: str) -> float:
    words_a = _normalize_text(a).split(" ")
    words_b = _normalize_text(b).split(" ")
    if not words_a or not words_b:
        return 0.0
    correct_words = set(words_b)
    common = sum(1 for w in words_a if w in correct_words)
    return common / max(len(words_a), len(words_b))


def comprehension_score(correct: int, answered: int) -> int:
    if answered <= 0:
        return 0
    return round(correct / answered * 100)


def overall_feedback(score: int) -> str:
    if score >= 90:
        return "Excellent work! You demonstrated strong comprehension of the material."
    if score >= 70:
        return "Good job! You understood most of the key points."
    if score >= 50:
        return "You're making progress. Review the questions you missed to strengthen your understanding."
    return "This was challenging. Go through the material again and focus on the main ideas."


def fallback_answer_feedback(is_correct: bool, correct_answer: Any) -> str:
    if is_correct:
        return "Correct answer!"
    return f"Incorrect. The correct answer is: {correct_answer}"


def fallback_overall_feedback(score: int) -> str:
    return f"You scored {score}%. Keep practicing to improve your comprehension skills."


def extract_relevant_transcript_part(transcript: str, answer: Any, window: int = 100) -> str:
    text = transcript or ""
    needle = _normalize_text(answer)
    if needle:
        idx = text.lower().find(needle)
        if idx != -1:
            start = max(0, idx - window)
            end = min(len(text), idx + len(needle) + window)
            return text[start:end]
    if len(text) > 300:
        return text[:300] + "..."
    return text


def count_words(text: str) -> int:
    return len(re.findall(r"\S+", text or ""))


def estimate_reading_time(word_count: int) -> int:
    """Minutes at a steady reading pace, never less than one."""
    return max(1, math.ceil(word_count / READING_WORDS_PER_MINUTE))


def grade_answers(questions: List[Dict[str, Any]], answers: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Grade ``answers`` (question id -> answer) against stored questions.

    Unknown question ids are ignored.
    """
    by_id = {str(q.get("id")): q for q in questions}
    results: List[Dict[str, Any]] = []
    for question_id, user_answer in answers.items():
        question = by_id.get(str(question_id))
        if question is None:
            continue
        correct_answer = question.get("correct_answer")
        is_correct = compare_answers(user_answer, correct_answer, question.get("type"))
        results.append({
            "question_id": str(question_id),
            "user_answer": user_answer,
            "correct_answer": correct_answer,
            "is_correct": is_correct,
            "explanation": question.get("explanation"),
        })
    return results


def normalize_questions(raw: Any) -> List[Dict[str, Any]]:
    """Clean model-generated questions; drops entries without a question or answer."""
    questions: List[Dict[str, Any]] = []
    if not isinstance(raw, list):
        return questions
    for item in raw:
        if not isinstance(item, dict):
            continue
        text = str(item.get("question") or "").strip()
        answer = item.get("correct_answer", item.get("answer"))
        if not text or answer is None or str(answer).strip() == "":
            continue
        options = item.get("options")
        questions.append({
            "id": f"q{len(questions) + 1}",
            "type": normalize_question_type(item.get("type")),
            "question": text,
            "options": [str(o) for o in options] if isinstance(options, list) else [],
            "correct_answer": str(answer).strip(),
            "explanation": str(item.get("explanation") or "").strip() or None,
        })
    return questions


def normalize_vocabulary(raw: Any) -> List[Dict[str, Any]]:
    words: List[Dict[str, Any]] = []
    if not isinstance(raw, list):
        return words
    for item in raw:
        if isinstance(item, dict) and str(item.get("word") or "").strip():
            words.append({
                "word": str(item["word"]).strip(),
                "definition": str(item.get("definition") or "").strip(),
                "example": str(item.get("example") or "").strip() or None,
            })
    return words


def public_questions(questions: List[Dict[str, Any]], reveal: bool) -> List[Dict[str, Any]]:
    if reveal:
        return questions
    return [{k: v for k, v in q.items() if k not in ("correct_answer", "explanation")} for q in questions]
