"""
Gamification
============

XP awards, levels, daily streaks, achievements and badges.

Every learning module reports finished work through :func:`award_xp`, which
records a ``UserActivity`` row and folds the result into the learner's
``GamificationProfile``. Leaderboards (see ``leaderboard.py``) aggregate those
rows.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import GamificationProfile, UserActivity, VocabularyWord
from .spaced_repetition import MASTERED_THRESHOLD


logger = logging.getLogger(__name__)

MODULES: List[str] = ["reading", "listening", "writing", "speaking", "vocabulary", "grammar", "games"]
CORE_MODULES: List[str] = ["reading", "listening", "writing", "speaking", "vocabulary", "grammar"]

XP_CONFIG: Dict[str, Dict[str, int]] = {
	"reading": {"complete_session": 20, "correct_answer": 5, "review_word": 2},
	"writing": {"complete_session": 30, "words_200_plus": 10, "words_500_plus": 20},
	"listening": {"complete_session": 20, "correct_answer": 5, "review_word": 2},
	"speaking": {"complete_session": 30, "conversation_session": 40},
	"vocabulary": {"review_word": 2, "master_word": 5},
	"grammar": {"complete_lesson": 15, "complete_exercise": 10},
	"games": {"complete_game": 15},
}

GAME_SCORE_BONUS = 25

# Activity types repeated per item; ``count`` in the details multiplies them
_PER_ITEM_ACTIVITIES = {"correct_answer", "review_word"}
_COMPLETION_ACTIVITIES = ("complete_session", "conversation_session")

ACHIEVEMENTS: List[Dict[str, Any]] = [
	{"id": "first_steps", "name": "First Steps", "description": "Complete your first activity", "type": "total_activities", "threshold": 1, "xp_reward": 10},
	{"id": "reading_enthusiast", "name": "Reading Enthusiast", "description": "Complete 10 reading sessions", "type": "completion_count", "module": "reading", "threshold": 10, "xp_reward": 50},
	{"id": "attentive_listener", "name": "Attentive Listener", "description": "Complete 10 listening sessions", "type": "completion_count", "module": "listening", "threshold": 10, "xp_reward": 50},
	{"id": "prolific_writer", "name": "Prolific Writer", "description": "Complete 10 writing sessions", "type": "completion_count", "module": "writing", "threshold": 10, "xp_reward": 50},
	{"id": "conversationalist", "name": "Conversationalist", "description": "Complete 10 speaking sessions", "type": "completion_count", "module": "speaking", "threshold": 10, "xp_reward": 50},
	{"id": "word_collector", "name": "Word Collector", "description": "Master 50 vocabulary words", "type": "mastered_words", "threshold": 50, "xp_reward": 100},
	{"id": "week_warrior", "name": "Week Warrior", "description": "Keep a 7-day learning streak", "type": "streak", "threshold": 7, "xp_reward": 50},
	{"id": "monthly_dedication", "name": "Monthly Dedication", "description": "Keep a 30-day learning streak", "type": "streak", "threshold": 30, "xp_reward": 200},
	{"id": "rising_star", "name": "Rising Star", "description": "Reach level 5", "type": "level", "threshold": 5, "xp_reward": 50},
	{"id": "seasoned_learner", "name": "Seasoned Learner", "description": "Reach level 10", "type": "level", "threshold": 10, "xp_reward": 100},
	{"id": "xp_hunter", "name": "XP Hunter", "description": "Earn 1000 XP", "type": "total_xp", "threshold": 1000, "xp_reward": 50},
	{"id": "regular", "name": "Regular", "description": "Learn on 30 different days", "type": "active_days", "threshold": 30, "xp_reward": 100},
	{"id": "all_rounder", "name": "All-Rounder", "description": "Try every learning module", "type": "all_modules", "threshold": 1, "xp_reward": 50},
	{"id": "centurion", "name": "Centurion", "description": "Complete 100 activities", "type": "total_activities", "threshold": 100, "xp_reward": 150},
]

BADGE_TIERS = (("bronze", 10), ("silver", 50), ("gold", 200))
STREAK_BADGES = (7, 30, 100)


# ============================================================================
# XP AND LEVELS
# ============================================================================

def calculate_xp(module: str, activity_type: str, details: Optional[Dict[str, Any]] = None) -> int:
	details = details or {}
	table = XP_CONFIG.get(module, {})
	base = table.get(activity_type, 0)
	if activity_type in _PER_ITEM_ACTIVITIES:
		base *= max(0, int(details.get("count", 1)))
	if module == "writing" and activity_type == "complete_session":
		words = int(details.get("word_count", 0) or 0)
		if words >= 500:
			base += table["words_500_plus"]
		elif words >= 200:
			base += table["words_200_plus"]
	if module == "games" and activity_type == "complete_game":
		score = float(details.get("score", 0) or 0)
		max_score = float(details.get("max_score", 0) or 0)
		if max_score > 0:
			base += math.floor(GAME_SCORE_BONUS * min(score / max_score, 1.0))
	return base


def xp_for_level(level: int) -> int:
	return math.floor(100 * level ** 1.5)


def calculate_level_from_xp(total_xp: int) -> Dict[str, int]:
	level = 1
	while total_xp >= xp_for_level(level + 1):
		level += 1
	next_threshold = xp_for_level(level + 1)
	return {
		"level": level,
		"experience": total_xp,
		"experience_to_next_level": next_threshold - total_xp,
	}


# ============================================================================
# PROFILE
# ============================================================================

def get_or_create_profile(db: Session, username: str) -> GamificationProfile:
	profile = db.get(GamificationProfile, username)
	if profile is None:
		profile = GamificationProfile(
			username=username,
			level=1,
			experience=0,
			experience_to_next_level=xp_for_level(2),
			total_xp=0,
			streak_current=0,
			streak_longest=0,
			active_days=0,
			module_activity={},
			achievements=[],
			badges=[],
		)
		db.add(profile)
		db.flush()
	return profile


def update_streak(profile: GamificationProfile, now: datetime) -> bool:
	"""Advance the calendar-day streak. Returns True on the first activity of a day."""
	last = profile.streak_last_activity
	new_day = True
	if last is None:
		profile.streak_current = 1
	else:
		gap = (now.date() - last.date()).days
		if gap <= 0:
			new_day = False
		elif gap == 1:
			profile.streak_current = (profile.streak_current or 0) + 1
		else:
			profile.streak_current = 1
	if new_day:
		profile.active_days = (profile.active_days or 0) + 1
	profile.streak_longest = max(profile.streak_longest or 0, profile.streak_current or 0)
	profile.streak_last_activity = now
	return new_day


def _bump_module(profile: GamificationProfile, module: str, xp: int, now: datetime) -> None:
	activity = dict(profile.module_activity or {})
	entry = dict(activity.get(module) or {"count": 0, "xp": 0})
	entry["count"] = int(entry.get("count", 0)) + 1
	entry["xp"] = int(entry.get("xp", 0)) + xp
	entry["last_activity"] = now.isoformat()
	activity[module] = entry
	profile.module_activity = activity


def _apply_level(profile: GamificationProfile) -> bool:
	previous = profile.level or 1
	info = calculate_level_from_xp(profile.total_xp or 0)
	profile.level = info["level"]
	profile.experience = info["experience"]
	profile.experience_to_next_level = info["experience_to_next_level"]
	return profile.level > previous


# ============================================================================
# ACHIEVEMENTS AND BADGES
# ============================================================================

def _module_count(profile: GamificationProfile, module: str) -> int:
	return int(((profile.module_activity or {}).get(module) or {}).get("count", 0))


def _completion_count(db: Session, username: str, module: str) -> int:
	return (
		db.query(func.count(UserActivity.id))
		.filter(
			UserActivity.username == username,
			UserActivity.module == module,
			UserActivity.activity_type.in_(_COMPLETION_ACTIVITIES),
		)
		.scalar()
		or 0
	)


def _achievement_progress(db: Session, profile: GamificationProfile, achievement: Dict[str, Any]) -> int:
	kind = achievement["type"]
	if kind == "completion_count":
		return _completion_count(db, profile.username, achievement["module"])
	if kind == "mastered_words":
		return (
			db.query(func.count(VocabularyWord.id))
			.filter(VocabularyWord.username == profile.username, VocabularyWord.mastery >= MASTERED_THRESHOLD)
			.scalar()
			or 0
		)
	if kind == "streak":
		return profile.streak_current or 0
	if kind == "level":
		return profile.level or 1
	if kind == "total_xp":
		return profile.total_xp or 0
	if kind == "active_days":
		return profile.active_days or 0
	if kind == "all_modules":
		return int(all(_module_count(profile, m) > 0 for m in CORE_MODULES))
	if kind == "total_activities":
		return sum(int((v or {}).get("count", 0)) for v in (profile.module_activity or {}).values())
	return 0


def check_achievements(db: Session, profile: GamificationProfile, now: datetime) -> List[Dict[str, Any]]:
	unlocked_ids = {a.get("id") for a in (profile.achievements or [])}
	unlocked: List[Dict[str, Any]] = []
	for achievement in ACHIEVEMENTS:
		if achievement["id"] in unlocked_ids:
			continue
		if _achievement_progress(db, profile, achievement) >= achievement["threshold"]:
			unlocked.append({
				"id": achievement["id"],
				"name": achievement["name"],
				"description": achievement["description"],
				"xp_reward": achievement["xp_reward"],
				"unlocked_at": now.isoformat(),
			})
	if unlocked:
		profile.achievements = list(profile.achievements or []) + unlocked
	return unlocked


def eligible_badges(profile: GamificationProfile) -> List[str]:
	badges: List[str] = []
	for module in MODULES:
		count = _module_count(profile, module)
		for tier, threshold in BADGE_TIERS:
			if count >= threshold:
				badges.append(f"{module}_{tier}")
	core_counts = [_module_count(profile, m) for m in CORE_MODULES]
	if min(core_counts) >= 10:
		badges.append("all_rounder_bronze")
	if min(core_counts) >= 50:
		badges.append("all_rounder_silver")
	for days in STREAK_BADGES:
		if (profile.streak_longest or 0) >= days:
			badges.append(f"streak_master_{days}")
	return badges


def check_badges(profile: GamificationProfile, now: datetime) -> List[Dict[str, Any]]:
	owned = {b.get("id") for b in (profile.badges or [])}
	new_badges = [{"id": b, "earned_at": now.isoformat()} for b in eligible_badges(profile) if b not in owned]
	if new_badges:
		profile.badges = list(profile.badges or []) + new_badges
	return new_badges


# ============================================================================
# AWARDING
# ============================================================================

def award_xp(
	db: Session,
	username: str,
	module: str,
	activity_type: str,
	details: Optional[Dict[str, Any]] = None,
	now: Optional[datetime] = None,
) -> Dict[str, Any]:
	"""Record an activity and update the learner's profile. Commits the session."""
	now = now or datetime.utcnow()
	xp = calculate_xp(module, activity_type, details)
	profile = get_or_create_profile(db, username)
	db.add(UserActivity(
		username=username,
		module=module,
		activity_type=activity_type,
		xp_earned=xp,
		details=details or {},
		created_at=now,
	))
	profile.total_xp = (profile.total_xp or 0) + xp
	update_streak(profile, now)
	_bump_module(profile, module, xp, now)
	leveled_up = _apply_level(profile)
	db.flush()

	new_achievements = check_achievements(db, profile, now)
	for achievement in new_achievements:
		reward = achievement["xp_reward"]
		profile.total_xp += reward
		db.add(UserActivity(
			username=username,
			module="achievements",
			activity_type=achievement["id"],
			xp_earned=reward,
			details={"achievement": achievement["name"]},
			created_at=now,
		))
	if new_achievements:
		leveled_up = _apply_level(profile) or leveled_up
	new_badges = check_badges(profile, now)
	db.commit()
	logger.info("Awarded %s XP to %s for %s/%s", xp, username, module, activity_type)
	return {
		"xp_earned": xp,
		"total_xp": profile.total_xp,
		"level": profile.level,
		"leveled_up": leveled_up,
		"streak": profile.streak_current,
		"new_achievements": new_achievements,
		"new_badges": new_badges,
	}


def try_award_xp(db: Session, username: str, module: str, activity_type: str, details: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
	"""award_xp for callers whose own write already succeeded; failures are logged."""
	try:
		return award_xp(db, username, module, activity_type, details)
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Failed to award XP to %s for %s/%s", username, module, activity_type)
		return None


def profile_to_dict(profile: GamificationProfile) -> Dict[str, Any]:
	return {
		"username": profile.username,
		"level": profile.level,
		"experience": profile.experience,
		"experience_to_next_level": profile.experience_to_next_level,
		"total_xp": profile.total_xp,
		"streak": {
			"current": profile.streak_current,
			"longest": profile.streak_longest,
			"last_activity": profile.streak_last_activity.isoformat() if profile.streak_last_activity else None,
		},
		"active_days": profile.active_days,
		"module_activity": profile.module_activity or {},
		"achievements": profile.achievements or [],
		"badges": profile.badges or [],
	}
