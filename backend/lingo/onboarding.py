"""
Onboarding
==========

Placement test and personal learning path for new learners.

The placement test is a fixed pool of grammar, vocabulary and reading
questions. Its overall score maps to a CEFR level; per-skill scores mark weak
areas and strengths, which then shape the recommended module order.
"""
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from .cefr import LEVELS, estimate_level_from_text
from .grading import MULTIPLE_CHOICE, compare_answers


SKILLS = ("grammar", "vocabulary", "reading")
LEARNING_MODULES = ("reading", "writing", "listening", "speaking", "vocabulary", "grammar")

TIME_OPTIONS = ("15min", "30min", "60min", "flexible")
DIFFICULTIES = ("easy", "moderate", "challenging")

WEAK_BELOW = 50
STRONG_FROM = 75
NEEDS_WORK_BELOW = 70

# (minimum overall score, level), checked top down
_LEVEL_THRESHOLDS = ((85, "C2"), (75, "C1"), (65, "B2"), (45, "B1"), (30, "A2"))

PLACEMENT_PASSAGE = {
    "id": "passage",
    "title": "Working From Home",
    "content": (
        "Ten years ago, only a small number of office workers spent their week at home. Today, many companies "
        "let staff choose where they work for at least part of the week. Supporters say that people save hours "
        "they once lost in traffic and can organise their day around family life. Managers were worried at first "
        "that productivity would fall, but several studies have found the opposite: people who work from home "
        "often finish the same tasks in less time.\n\n"
        "Not everyone is convinced. Some employees feel lonely without colleagues around them, and younger staff "
        "say they learn less when they cannot watch experienced people at work. Others find it hard to stop "
        "working in the evening because their office is also their living room. For this reason, a growing "
        "number of firms now ask teams to meet in person on fixed days while keeping the rest of the week flexible."
    ),
}

PLACEMENT_QUESTIONS: List[Dict[str, Any]] = [
    {"id": "g1", "skill": "grammar", "difficulty": "A1", "question": "My brother _____ in a bank.", "options": ["work", "works", "working", "is work"], "correct_answer": "works"},
    {"id": "g2", "skill": "grammar", "difficulty": "A2", "question": "We _____ dinner when the lights went out.", "options": ["had", "were having", "have", "are having"], "correct_answer": "were having"},
    {"id": "g3", "skill": "grammar", "difficulty": "B1", "question": "If it _____ tomorrow, we will stay inside.", "options": ["rains", "will rain", "rained", "would rain"], "correct_answer": "rains"},
    {"id": "g4", "skill": "grammar", "difficulty": "B1", "question": "This bridge _____ in 1890.", "options": ["built", "was built", "has built", "is building"], "correct_answer": "was built"},
    {"id": "g5", "skill": "grammar", "difficulty": "B2", "question": "By next June she _____ here for ten years.", "options": ["works", "will work", "will have worked", "has worked"], "correct_answer": "will have worked"},
    {"id": "g6", "skill": "grammar", "difficulty": "C1", "question": "Had I known about the delay, I _____ a later train.", "options": ["would take", "would have taken", "took", "had taken"], "correct_answer": "would have taken"},
    {"id": "v1", "skill": "vocabulary", "difficulty": "A1", "question": "Which word is the opposite of 'hot'?", "options": ["warm", "cold", "wet", "dry"], "correct_answer": "cold"},
    {"id": "v2", "skill": "vocabulary", "difficulty": "A2", "question": "A person who repairs cars is a _____.", "options": ["mechanic", "chef", "pilot", "farmer"], "correct_answer": "mechanic"},
    {"id": "v3", "skill": "vocabulary", "difficulty": "B1", "question": "To 'postpone' a meeting means to _____ it.", "options": ["cancel", "delay", "start", "record"], "correct_answer": "delay"},
    {"id": "v4", "skill": "vocabulary", "difficulty": "B2", "question": "Her explanation was so _____ that everyone understood at once.", "options": ["vague", "lucid", "brief", "tedious"], "correct_answer": "lucid"},
    {"id": "v5", "skill": "vocabulary", "difficulty": "C1", "question": "Something 'ubiquitous' is _____.", "options": ["very rare", "found everywhere", "extremely old", "hard to see"], "correct_answer": "found everywhere"},
    {"id": "r1", "skill": "reading", "difficulty": "B1", "question": "What did managers first expect?", "options": ["Higher productivity", "Lower productivity", "Longer holidays", "Fewer staff"], "correct_answer": "Lower productivity"},
    {"id": "r2", "skill": "reading", "difficulty": "B1", "question": "Why do younger staff prefer the office?", "options": ["It is closer to home", "They learn from experienced colleagues", "The pay is better", "They dislike their family"], "correct_answer": "They learn from experienced colleagues"},
    {"id": "r3", "skill": "reading", "difficulty": "B2", "question": "What are many firms doing now?", "options": ["Closing their offices", "Mixing office days with flexible days", "Banning home working", "Hiring only young staff"], "correct_answer": "Mixing office days with flexible days"},
    {"id": "r4", "skill": "reading", "difficulty": "B2", "question": "What is the main idea of the text?", "options": ["Home working has clear benefits and some drawbacks", "Home working always fails", "Traffic is getting worse", "Offices are too expensive"], "correct_answer": "Home working has clear benefits and some drawbacks"},
]

# Module order per level before focus areas and weak areas are applied
_BASE_ORDER: Dict[str, List[str]] = {
    "A1": ["vocabulary", "reading", "grammar", "writing", "listening", "speaking", "games"],
    "A2": ["reading", "vocabulary", "grammar", "writing", "listening", "speaking", "games"],
    "B1": ["reading", "writing", "vocabulary", "grammar", "listening", "speaking", "games"],
    "B2": ["writing", "reading", "speaking", "listening", "vocabulary", "grammar", "games"],
    "C1": ["writing", "speaking", "reading", "listening", "vocabulary", "grammar", "games"],
    "C2": ["speaking", "writing", "listening", "reading", "vocabulary", "grammar", "games"],
}

_BASE_WEEKS = {"A1": 12, "A2": 10, "B1": 8, "B2": 7, "C1": 6, "C2": 5}
_TIME_FACTOR = {"15min": 1.4, "30min": 1.0, "60min": 0.7, "flexible": 0.9}
_DIFFICULTY_FACTOR = {"easy": 0.8, "moderate": 1.0, "challenging": 1.2}
_DAILY_MINUTES = {"15min": 15, "30min": 30, "60min": 60, "flexible": 45}

_GOAL_MODULES = (("business", "writing"), ("travel", "speaking"), ("academic", "reading"), ("conversation", "speaking"))


def placement_test() -> Dict[str, Any]:
    """Questions as shown to the learner, without answers."""
    return {
        "passage": dict(PLACEMENT_PASSAGE),
        "questions": [{k: v for k, v in q.items() if k != "correct_answer"} for q in PLACEMENT_QUESTIONS],
        "total_questions": len(PLACEMENT_QUESTIONS),
    }


def level_for_score(overall: float, reading: float) -> str:
    level = "A1"
    for minimum, candidate in _LEVEL_THRESHOLDS:
        if overall >= minimum:
            level = candidate
            break
    # A much weaker reading result pulls the placement down one step
    if reading < overall - 25 and reading < 35 and level != "A1":
        level = LEVELS[LEVELS.index(level) - 1]
    return level


def score_placement(answers: Dict[str, Any], writing_sample: Optional[str] = None) -> Dict[str, Any]:
    """Grade a placement attempt. Unanswered questions count as wrong."""
    totals = {skill: [0, 0] for skill in SKILLS}
    correct = 0
    for question in PLACEMENT_QUESTIONS:
        given = answers.get(question["id"])
        is_correct = given is not None and compare_answers(given, question["correct_answer"], MULTIPLE_CHOICE)
        totals[question["skill"]][1] += 1
        if is_correct:
            totals[question["skill"]][0] += 1
            correct += 1
    overall = correct / len(PLACEMENT_QUESTIONS) * 100
    skill_scores = {skill: round(hits / count * 100) if count else 0 for skill, (hits, count) in totals.items()}
    result = {
        "total_questions": len(PLACEMENT_QUESTIONS),
        "correct_answers": correct,
        "overall_score": round(overall),
        "skill_scores": skill_scores,
        "level": level_for_score(overall, skill_scores["reading"]),
        "weak_areas": [s for s, v in skill_scores.items() if v < WEAK_BELOW],
        "strengths": [s for s, v in skill_scores.items() if v >= STRONG_FROM],
        "writing_level": None,
    }
    if writing_sample and writing_sample.strip():
        result["writing_level"] = estimate_level_from_text(writing_sample)["level"]
    return result


def _daily_breakdown(daily_minutes: int) -> Dict[str, int]:
    if daily_minutes <= 15:
        return {"vocabulary": 5, "grammar": 5, "reading": 3, "review": 2}
    if daily_minutes <= 30:
        return {"main_skill": 15, "vocabulary": 8, "grammar": 5, "review": 2}
    return {"main_skill": 25, "second_skill": 15, "vocabulary": 10, "grammar": 7, "review": 3}


def build_learning_path(
    level: str,
    weak_areas: List[str],
    skill_scores: Dict[str, int],
    goals: List[str],
    time_available: str = "flexible",
    difficulty: str = "moderate",
    focus_areas: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Recommended module order, up to three focus modules and a time plan."""
    focus_areas = [a for a in focus_areas or [] if a in LEARNING_MODULES]
    order = list(_BASE_ORDER.get(level, _BASE_ORDER["B1"]))
    if difficulty == "easy":
        order.remove("games")
        order.insert(2, "games")
    elif difficulty == "challenging" and "grammar" in order[3:]:
        order.remove("grammar")
        order.insert(0, "grammar")
    order = [m for m in focus_areas if m in order] + [m for m in order if m not in focus_areas]
    weak = [m for m in weak_areas if m in order]
    order = weak + [m for m in order if m not in weak]

    primary: List[str] = focus_areas[:2]
    for area in weak:
        if len(primary) >= 3:
            break
        if area not in primary:
            primary.append(area)
    for goal, module in _GOAL_MODULES:
        if goal in goals and module not in primary:
            primary.append(module)
    for module in LEARNING_MODULES:
        if len(primary) >= 3:
            break
        if module in skill_scores and skill_scores[module] < NEEDS_WORK_BELOW and module not in primary:
            primary.append(module)

    weeks = _BASE_WEEKS.get(level, 8) * _TIME_FACTOR.get(time_available, 1.0) * _DIFFICULTY_FACTOR.get(difficulty, 1.0)
    daily = _DAILY_MINUTES.get(time_available, 45)
    return {
        "primary_focus": primary[:3],
        "suggested_order": order,
        "estimated_weeks": max(4, min(16, math.floor(weeks + 0.5))),
        "time": {
            "daily_minutes": daily,
            "weekly_minutes": daily * 7,
            "sessions_per_week": "5-7" if time_available == "flexible" else "7",
            "breakdown": _daily_breakdown(daily),
        },
    }
