"""Tests for leaderboard windows, ranking and caching."""

from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from lingo.gamification import award_xp
from lingo.leaderboard import get_leaderboard, period_bounds, refresh_leaderboard
from lingo.models import AuthUser, Leaderboard


# A Wednesday
NOW = datetime(2024, 5, 8, 15, 30, 0)


class TestPeriodBounds:
    """Window start and cache expiry per period."""

    def test_weekly(self):
        start, expires = period_bounds("weekly", NOW)
        assert start == datetime(2024, 5, 6, 0, 0, 0)
        assert expires == datetime(2024, 5, 12, 23, 59, 59, 999999)

    def test_monthly(self):
        start, expires = period_bounds("monthly", NOW)
        assert start == datetime(2024, 5, 1)
        assert expires == datetime(2024, 5, 31, 23, 59, 59, 999999)

    def test_all_time(self):
        start, expires = period_bounds("all-time", NOW)
        assert start is None
        assert expires == datetime(2024, 5, 15, 23, 59, 59, 999999)


class TestLeaderboard:
    """Aggregation and caching."""

    def _seed(self, db):
        db.add(AuthUser(username="alice", password_hash="x", display_name="Alice"))
        db.commit()
        award_xp(db, "alice", "reading", "complete_session", now=NOW - timedelta(hours=1))
        award_xp(db, "alice", "writing", "complete_session", now=NOW - timedelta(hours=1))
        award_xp(db, "bob", "reading", "complete_session", now=NOW - timedelta(hours=2))
        # Last week's activity only counts for all-time boards
        award_xp(db, "carol", "speaking", "conversation_session", now=NOW - timedelta(days=10))
        award_xp(db, "carol", "speaking", "conversation_session", now=NOW - timedelta(days=10))

    def test_weekly_xp_ranking(self, db_session):
        self._seed(db_session)
        board = get_leaderboard(db_session, "weekly", "xp", now=NOW)
        entries = board.entries
        assert [e["username"] for e in entries] == ["alice", "bob"]
        assert [e["rank"] for e in entries] == [1, 2]
        assert entries[0]["display_name"] == "Alice"
        assert entries[1]["display_name"] == "Unknown User"

    def test_all_time_xp_uses_profile_totals(self, db_session):
        self._seed(db_session)
        board = get_leaderboard(db_session, "all-time", "xp", now=NOW)
        assert board.entries[0]["username"] == "carol"

    def test_module_specific_counts_activities(self, db_session):
        self._seed(db_session)
        board = get_leaderboard(db_session, "weekly", "module-specific", module="reading", now=NOW)
        assert {e["username"]: e["value"] for e in board.entries} == {"alice": 1, "bob": 1}

    def test_module_specific_requires_module(self, db_session):
        with pytest.raises(HTTPException) as exc:
            get_leaderboard(db_session, "weekly", "module-specific", now=NOW)
        assert exc.value.status_code == 400

    def test_invalid_period(self, db_session):
        with pytest.raises(HTTPException):
            get_leaderboard(db_session, "daily", "xp", now=NOW)

    def test_cached_until_expiry(self, db_session):
        self._seed(db_session)
        first = get_leaderboard(db_session, "all-time", "xp", now=NOW)
        award_xp(db_session, "dave", "writing", "complete_session", {"word_count": 600}, now=NOW)
        cached = get_leaderboard(db_session, "all-time", "xp", now=NOW + timedelta(minutes=5))
        assert cached.id == first.id
        assert "dave" not in [e["username"] for e in cached.entries]
        later = get_leaderboard(db_session, "all-time", "xp", now=NOW + timedelta(days=8))
        assert "dave" in [e["username"] for e in later.entries]

    def test_refresh_regenerates(self, db_session):
        self._seed(db_session)
        get_leaderboard(db_session, "weekly", "xp", now=NOW)
        award_xp(db_session, "dave", "writing", "complete_session", now=NOW)
        board = refresh_leaderboard(db_session, "weekly", "xp", now=NOW)
        assert "dave" in [e["username"] for e in board.entries]
        assert db_session.query(Leaderboard).count() == 1

    def test_streak_category(self, db_session):
        self._seed(db_session)
        board = get_leaderboard(db_session, "all-time", "streak", now=NOW)
        assert all(e["value"] >= 1 for e in board.entries)
