from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Float, ForeignKey, Integer, JSON, Text, UniqueConstraint
from .db import Base


def _new_id() -> str:
	return uuid.uuid4().hex


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	display_name = Column(String(128), nullable=True)
	role = Column(String(16), default="user", nullable=False)
	cefr_level = Column(String(4), nullable=True)
	native_language = Column(String(64), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# JWT jti
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), index=True, nullable=False)
	user_agent = Column(String(512), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	expires_at = Column(DateTime, nullable=True)
	is_active = Column(Boolean, default=True, nullable=False)
	terminated_at = Column(DateTime, nullable=True)
	# logout | concurrent_login | expired | forced
	termination_reason = Column(String(32), nullable=True)


class ReadingSession(Base):
	__tablename__ = "reading_sessions"
	id = Column(String(32), primary_key=True, default=_new_id)
	username = Column(String(128), index=True, nullable=False)
	title = Column(String(256), nullable=False)
	content = Column(Text, nullable=False)
	level = Column(String(4), nullable=False)
	topic = Column(String(128), nullable=True)
	word_count = Column(Integer, default=0, nullable=False)
	estimated_reading_time = Column(Integer, default=1, nullable=False)
	questions = Column(JSON, default=list, nullable=False)
	vocabulary = Column(JSON, default=list, nullable=False)
	grammar_focus = Column(JSON, default=list, nullable=False)
	reading_level = Column(Integer, default=5, nullable=False)
	complexity = Column(Integer, default=5, nullable=False)
	time_spent = Column(Integer, default=0, nullable=False)
	questions_answered = Column(Integer, default=0, nullable=False)
	correct_answers = Column(Integer, default=0, nullable=False)
	vocabulary_reviewed = Column(JSON, default=list, nullable=False)
	comprehension_score = Column(Integer, nullable=True)
	user_answers = Column(JSON, default=dict, nullable=False)
	completion_time = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ListeningSession(Base):
	__tablename__ = "listening_sessions"
	id = Column(String(32), primary_key=True, default=_new_id)
	username = Column(String(128), index=True, nullable=False)
	title = Column(String(256), nullable=False)
	transcript = Column(Text, nullable=False)
	level = Column(String(4), nullable=False)
	topic = Column(String(128), nullable=True)
	duration_seconds = Column(Integer, default=0, nullable=False)
	questions = Column(JSON, default=list, nullable=False)
	vocabulary = Column(JSON, default=list, nullable=False)
	time_spent = Column(Integer, default=0, nullable=False)
	questions_answered = Column(Integer, default=0, nullable=False)
	correct_answers = Column(Integer, default=0, nullable=False)
	vocabulary_reviewed = Column(JSON, default=list, nullable=False)
	comprehension_score = Column(Integer, nullable=True)
	user_answers = Column(JSON, default=dict, nullable=False)
	completed = Column(Boolean, default=False, nullable=False)
	completed_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class WritingSession(Base):
	__tablename__ = "writing_sessions"
	id = Column(String(32), primary_key=True, default=_new_id)
	username = Column(String(128), index=True, nullable=False)
	# {"text", "type", "topic", "target_length", "requirements"}
	prompt = Column(JSON, nullable=False)
	level = Column(String(4), nullable=True)
	content = Column(Text, default="", nullable=False)
	drafts = Column(JSON, default=list, nullable=False)
	final_version = Column(Text, nullable=True)
	analysis = Column(JSON, nullable=True)
	# draft -> submitted -> analyzed -> completed
	status = Column(String(16), default="draft", nullable=False)
	word_count = Column(Integer, default=0, nullable=False)
	time_spent = Column(Integer, default=0, nullable=False)
	submitted_at = Column(DateTime, nullable=True)
	completed_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class SpeakingSession(Base):
	__tablename__ = "speaking_sessions"
	id = Column(String(32), primary_key=True, default=_new_id)
	username = Column(String(128), index=True, nullable=False)
	topic = Column(String(256), nullable=True)
	level = Column(String(4), nullable=True)
	# [{"role": "user"|"assistant", "text", "at"}]
	transcripts = Column(JSON, default=list, nullable=False)
	# base64 audio chunks uploaded alongside user turns
	audio = Column(JSON, default=list, nullable=False)
	feedback = Column(JSON, nullable=True)
	evaluation_progress = Column(Integer, default=0, nullable=False)
	status = Column(String(16), default="active", nullable=False)
	ended_at = Column(DateTime, nullable=True)
	version = Column(Integer, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__mapper_args__ = {"version_id_col": version}


class GrammarIssue(Base):
	__tablename__ = "grammar_issues"
	id = Column(String(32), primary_key=True, default=_new_id)
	username = Column(String(128), index=True, nullable=False)
	source_module = Column(String(16), nullable=False)
	source_session_id = Column(String(32), nullable=True)
	issue_type = Column(String(64), nullable=False)
	text = Column(Text, nullable=False)
	correction = Column(Text, nullable=False)
	explanation = Column(Text, nullable=True)
	cefr_level = Column(String(4), nullable=True)
	category = Column(String(64), default="general", nullable=False)
	resolved = Column(Boolean, default=False, nullable=False)
	priority = Column(Integer, default=1, nullable=False)
	review_count = Column(Integer, default=0, nullable=False)
	interval_days = Column(Integer, default=1, nullable=False)
	next_review_at = Column(DateTime, nullable=True)
	last_reviewed_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GrammarProgress(Base):
	__tablename__ = "grammar_progress"
	username = Column(String(128), primary_key=True)
	challenge_streak = Column(Integer, default=0, nullable=False)
	last_daily_challenge = Column(DateTime, nullable=True)
	badges = Column(JSON, default=list, nullable=False)
	# [{"category", "level", "last_practiced"}]
	mastery = Column(JSON, default=list, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class VocabularyWord(Base):
	__tablename__ = "vocabulary_words"
	__table_args__ = (UniqueConstraint("username", "word_key", name="uq_vocabulary_user_word"),)
	id = Column(String(32), primary_key=True, default=_new_id)
	username = Column(String(128), index=True, nullable=False)
	word = Column(String(128), nullable=False)
	# lowercased word, used for duplicate detection
	word_key = Column(String(128), nullable=False)
	definition = Column(Text, nullable=False)
	part_of_speech = Column(String(16), default="other", nullable=False)
	pronunciation = Column(String(128), nullable=True)
	context = Column(Text, nullable=True)
	examples = Column(JSON, default=list, nullable=False)
	tags = Column(JSON, default=list, nullable=False)
	source = Column(String(32), default="manual", nullable=False)
	difficulty = Column(Integer, default=5, nullable=False)
	mastery = Column(Integer, default=0, nullable=False)
	easiness_factor = Column(Float, default=2.5, nullable=False)
	repetitions = Column(Integer, default=0, nullable=False)
	interval = Column(Integer, default=0, nullable=False)
	last_reviewed = Column(DateTime, nullable=True)
	next_review = Column(DateTime, nullable=True)
	review_history = Column(JSON, default=list, nullable=False)
	favorite = Column(Boolean, default=False, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GamificationProfile(Base):
	__tablename__ = "gamification_profiles"
	username = Column(String(128), primary_key=True)
	level = Column(Integer, default=1, nullable=False)
	experience = Column(Integer, default=0, nullable=False)
	experience_to_next_level = Column(Integer, default=100, nullable=False)
	total_xp = Column(Integer, default=0, nullable=False)
	streak_current = Column(Integer, default=0, nullable=False)
	streak_longest = Column(Integer, default=0, nullable=False)
	streak_last_activity = Column(DateTime, nullable=True)
	active_days = Column(Integer, default=0, nullable=False)
	# {"reading": {"count", "xp", "last_activity"}, ...}
	module_activity = Column(JSON, default=dict, nullable=False)
	achievements = Column(JSON, default=list, nullable=False)
	badges = Column(JSON, default=list, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class UserActivity(Base):
	__tablename__ = "user_activities"
	id = Column(Integer, primary_key=True, autoincrement=True)
	username = Column(String(128), index=True, nullable=False)
	module = Column(String(32), index=True, nullable=False)
	activity_type = Column(String(64), nullable=False)
	xp_earned = Column(Integer, default=0, nullable=False)
	details = Column(JSON, default=dict, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)


class Leaderboard(Base):
	__tablename__ = "leaderboards"
	id = Column(Integer, primary_key=True, autoincrement=True)
	period = Column(String(16), nullable=False)
	category = Column(String(32), nullable=False)
	module = Column(String(32), nullable=True)
	entries = Column(JSON, default=list, nullable=False)
	refreshed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	expires_at = Column(DateTime, nullable=False)


class LearningGroup(Base):
	__tablename__ = "learning_groups"
	id = Column(String(32), primary_key=True, default=_new_id)
	name = Column(String(128), nullable=False)
	description = Column(Text, default="", nullable=False)
	is_private = Column(Boolean, default=False, nullable=False)
	join_require_approval = Column(Boolean, default=True, nullable=False)
	created_by = Column(String(128), nullable=False)
	total_xp = Column(Integer, default=0, nullable=False)
	active_members = Column(Integer, default=0, nullable=False)
	average_streak = Column(Float, default=0.0, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class GroupMember(Base):
	__tablename__ = "group_members"
	group_id = Column(String(32), ForeignKey("learning_groups.id", ondelete="CASCADE"), primary_key=True)
	username = Column(String(128), primary_key=True, index=True)
	# admin | moderator | member
	role = Column(String(16), default="member", nullable=False)
	# active | pending
	status = Column(String(16), default="active", nullable=False)
	joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class FeedbackTicket(Base):
	__tablename__ = "feedback_tickets"
	id = Column(Integer, primary_key=True, autoincrement=True)
	username = Column(String(128), index=True, nullable=False)
	rating = Column(Integer, nullable=False)
	category = Column(String(32), nullable=False)
	subject = Column(String(200), nullable=False)
	message = Column(Text, nullable=False)
	details = Column(JSON, default=dict, nullable=False)
	# new | in_review | resolved | dismissed
	status = Column(String(16), default="new", nullable=False)
	admin_notes = Column(Text, nullable=True)
	admin_response = Column(Text, nullable=True)
	responded_at = Column(DateTime, nullable=True)
	responded_by = Column(String(128), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class OnboardingState(Base):
	__tablename__ = "onboarding_states"
	username = Column(String(128), primary_key=True)
	current_step = Column(Integer, default=0, nullable=False)
	completed = Column(Boolean, default=False, nullable=False)
	skipped = Column(Boolean, default=False, nullable=False)
	completed_at = Column(DateTime, nullable=True)
	# {"completed", "level", "overall_score", "skill_scores", "weak_areas", "strengths", "assessed_at"}
	assessment = Column(JSON, default=dict, nullable=False)
	preferences = Column(JSON, default=dict, nullable=False)
	learning_path = Column(JSON, default=dict, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


# Every table holding rows owned by a single user; used for account deletion
USER_OWNED_MODELS = (
	ReadingSession,
	ListeningSession,
	WritingSession,
	SpeakingSession,
	GrammarIssue,
	GrammarProgress,
	VocabularyWord,
	GamificationProfile,
	UserActivity,
	FeedbackTicket,
	OnboardingState,
	AuthSession,
)
