"""Tests for grammar issues, daily challenges and flashcards."""

import random
from datetime import datetime, timedelta

import pytest

from lingo.models import GrammarIssue, GrammarProgress
from lingo.routers.grammar import (
    build_challenge_options,
    flashcard_category,
    generate_incorrect_option,
    update_mastery,
)


NOW = datetime(2024, 5, 1, 12, 0, 0)


class TestDistractors:
    """Rule-based wrong options."""

    def test_verb_agreement(self):
        assert generate_incorrect_option("She is happy today", 0) == "She are happy today"

    def test_verb_tense(self):
        assert generate_incorrect_option("We walked home", 0) == "We walking home"

    def test_article_swap(self):
        assert generate_incorrect_option("I saw a cat", 1) == "I saw the cat"
        assert generate_incorrect_option("The cat sleeps", 1) == "A cat sleeps"

    def test_word_order(self):
        assert generate_incorrect_option("I really like green tea", 2) == "I like really green tea"
        assert generate_incorrect_option("Cats sleep often", 2) is None

    def test_nothing_to_change(self):
        assert generate_incorrect_option("Go", 0) is None
        assert generate_incorrect_option("", 1) is None

    def test_challenge_options_point_at_correction(self):
        issue = GrammarIssue(text="She are happy", correction="She is happy today")
        built = build_challenge_options(issue, random.Random(3))
        assert built["options"][built["correct_option"]] == "She is happy today"
        assert "She are happy" in built["options"]
        assert len(built["options"]) == len(set(built["options"]))


class TestFlashcardMastery:
    def test_category_from_id(self):
        assert flashcard_category("default_tenses_3") == "tenses"
        assert flashcard_category("articles_1") == "articles"

    def test_mastery_moves_within_bounds(self):
        mastery = update_mastery([], "tenses", True, NOW)
        assert mastery[0]["level"] == 1.2
        mastery = update_mastery(mastery, "tenses", False, NOW)
        assert mastery[0]["level"] == 1.0
        mastery = update_mastery([{"category": "tenses", "level": 4.9}], "tenses", True, NOW)
        assert mastery[0]["level"] == 5.0


def _issue(client, headers, **overrides):
    body = {"source_module": "speaking", "text": "He go to school", "correction": "He goes to school", "category": "agreement"}
    body.update(overrides)
    response = client.post("/grammar/issues", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestIssues:
    def test_create_and_filter(self, client, auth_headers):
        _issue(client, auth_headers)
        _issue(client, auth_headers, category="Articles", text="I have cat", correction="I have a cat")
        issues = client.get("/grammar/issues?category=articles", headers=auth_headers).json()["issues"]
        assert [i["text"] for i in issues] == ["I have cat"]

    def test_invalid_source(self, client, auth_headers):
        response = client.post("/grammar/issues", json={"source_module": "reading", "text": "x", "correction": "y"}, headers=auth_headers)
        assert response.status_code == 400

    def test_review_interval_doubles(self, client, auth_headers):
        issue = _issue(client, auth_headers)
        url = f"/grammar/issues/{issue['id']}"
        intervals = [client.patch(url, json={"reviewed": True}, headers=auth_headers).json()["interval_days"] for _ in range(4)]
        assert intervals == [1, 2, 4, 8]
        due = client.get("/grammar/issues/due", headers=auth_headers).json()["issues"]
        assert due == []

    def test_empty_update(self, client, auth_headers):
        issue = _issue(client, auth_headers)
        assert client.patch(f"/grammar/issues/{issue['id']}", json={}, headers=auth_headers).status_code == 400


class TestDailyChallenge:
    def test_no_issues_no_challenge(self, client, auth_headers):
        body = client.get("/grammar/challenge/daily", headers=auth_headers).json()
        assert body == {"has_completed_today": False, "streak": 0, "challenge": None}

    def test_challenge_is_stable_for_the_day(self, client, auth_headers):
        _issue(client, auth_headers)
        _issue(client, auth_headers, text="I have cat", correction="I have a cat")
        first = client.get("/grammar/challenge/daily", headers=auth_headers).json()["challenge"]
        second = client.get("/grammar/challenge/daily", headers=auth_headers).json()["challenge"]
        assert first == second
        assert first["options"][first["correct_option"]] in {"He goes to school", "I have a cat"}

    def test_submit_once_per_day(self, client, auth_headers):
        issue = _issue(client, auth_headers)
        body = client.post("/grammar/challenge/submit", json={"challenge_id": issue["id"], "is_correct": True}, headers=auth_headers).json()
        assert body["streak"] == 1
        assert body["rewards"]["xp_earned"] == 10
        again = client.post("/grammar/challenge/submit", json={"challenge_id": issue["id"], "is_correct": True}, headers=auth_headers).json()
        assert again["already_completed"] is True
        assert again["message"] == "Daily challenge already completed"
        resolved = client.get("/grammar/issues?resolved=true", headers=auth_headers).json()["issues"]
        assert [i["id"] for i in resolved] == [issue["id"]]

    def test_missing_fields(self, client, auth_headers):
        response = client.post("/grammar/challenge/submit", json={"challenge_id": "abc"}, headers=auth_headers)
        assert response.status_code == 400

    def test_wrong_answer_resets_streak(self, client, auth_headers, db_session):
        db_session.add(GrammarProgress(username="alice", challenge_streak=4, badges=[], mastery=[], last_daily_challenge=datetime.utcnow() - timedelta(days=1)))
        db_session.commit()
        body = client.post("/grammar/challenge/submit", json={"challenge_id": "x", "is_correct": False}, headers=auth_headers).json()
        assert body["streak"] == 0
        assert body["rewards"] is None

    def test_week_streak_badge(self, client, auth_headers, db_session):
        db_session.add(GrammarProgress(username="alice", challenge_streak=6, badges=[], mastery=[], last_daily_challenge=datetime.utcnow() - timedelta(days=1)))
        db_session.commit()
        body = client.post("/grammar/challenge/submit", json={"challenge_id": "x", "is_correct": True}, headers=auth_headers).json()
        assert body["streak"] == 7
        assert body["new_badge"]["id"] == "grammar_week_streak"


class TestFlashcards:
    def test_review_updates_progress(self, client, auth_headers):
        body = client.post("/grammar/flashcards/review", json={"flashcard_id": "default_tenses_1", "known": True}, headers=auth_headers).json()
        assert body == {"category": "tenses", "mastery_level": 1.2}
        progress = client.get("/grammar/progress", headers=auth_headers).json()
        assert progress["mastery"][0]["category"] == "tenses"

    @pytest.mark.parametrize("payload", [{"known": True}, {"flashcard_id": "tenses_1"}])
    def test_missing_fields(self, client, auth_headers, payload):
        assert client.post("/grammar/flashcards/review", json=payload, headers=auth_headers).status_code == 400
