"""Tests for speaking conversations, evaluation and pronunciation scoring."""

import pytest
from sqlalchemy import text
from sqlalchemy.orm.exc import StaleDataError

from lingo import speech_analysis
from lingo.models import GrammarIssue, SpeakingSession
from lingo.routers.speaking import evaluation_guard, save_with_retry
from lingo.settings import settings


def _start(client, headers, **body):
    response = client.post("/speaking/conversation/start", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _say(client, headers, session_id, words, audio=None):
    body = {"session_id": session_id, "text": words}
    if audio:
        body["audio_base64"] = audio
    response = client.post("/speaking/conversation/respond", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def fake_pronunciation(monkeypatch):
    calls = []

    async def _analyze(audio_base64, reference_text=""):
        calls.append(audio_base64)
        return {
            "pronunciation_score": 80.0,
            "accuracy_score": 85.0,
            "fluency_score": 75.0,
            "completeness_score": None,
            "recognized_text": reference_text,
            "feedback": "ok",
        }

    monkeypatch.setattr(speech_analysis, "analyze_pronunciation", _analyze)
    return calls


class TestConversation:
    """Starting, replying and ending."""

    def test_start_with_ai_opener(self, client, auth_headers, fake_ai):
        fake_ai.text_responses.append("Hello! What did you do last weekend?")
        session = _start(client, auth_headers, topic="weekends", level="b2")
        assert session["level"] == "B2"
        assert session["status"] == "active"
        assert session["transcripts"][0]["text"] == "Hello! What did you do last weekend?"

    def test_start_without_ai(self, no_ai, auth_headers):
        session = _start(no_ai, auth_headers, topic="music")
        assert "music" in session["transcripts"][0]["text"]

    def test_respond_dedupes_and_stores_audio(self, client, auth_headers, fake_ai):
        session = _start(client, auth_headers)
        fake_ai.text_responses.append("Nice! Which one is your favourite?")
        body = _say(client, auth_headers, session["id"], "I like I like   films", audio="YWJj")
        assert body["reply"] == "Nice! Which one is your favourite?"
        assert body["session"]["transcripts"][1]["text"] == "I like films"
        assert body["session"]["recordings"] == 1

    def test_reply_falls_back_when_ai_fails(self, client, auth_headers, fake_ai):
        session = _start(client, auth_headers)
        fake_ai.fail = True
        body = _say(client, auth_headers, session["id"], "I enjoy cooking.")
        assert body["reply"].startswith("That's interesting.")

    def test_end_awards_xp_once(self, client, auth_headers):
        session = _start(client, auth_headers)
        _say(client, auth_headers, session["id"], "I enjoy cooking.")
        body = client.post("/speaking/conversation/end", json={"session_id": session["id"]}, headers=auth_headers).json()
        assert body["session"]["status"] == "ended"
        assert body["rewards"]["xp_earned"] == 40
        again = client.post("/speaking/conversation/end", json={"session_id": session["id"]}, headers=auth_headers)
        assert again.status_code == 400
        closed = client.post("/speaking/conversation/respond", json={"session_id": session["id"], "text": "hi"}, headers=auth_headers)
        assert closed.status_code == 400

    def test_other_user_forbidden(self, client, auth_headers, other_headers):
        session = _start(client, auth_headers)
        assert client.get(f"/speaking/sessions/{session['id']}", headers=other_headers).status_code == 403


class TestEvaluation:
    """POST /speaking/evaluate."""

    def test_requires_user_speech(self, client, auth_headers):
        session = _start(client, auth_headers)
        response = client.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json() == {"error": "No user speech to evaluate"}

    def test_ai_evaluation_with_audio(self, client, auth_headers, fake_ai, fake_pronunciation):
        session = _start(client, auth_headers)
        for i in range(4):
            _say(client, auth_headers, session["id"], f"Sentence number {i} about my day.", audio=f"chunk{i}")
        fake_ai.json_responses.append({
            "scores": {"grammar": 70, "vocabulary": 72, "fluency": 68, "coherence": 75, "overall": 70},
            "estimated_level": "B1",
            "feedback": "Good range of everyday vocabulary.",
            "grammar_issues": [{"type": "tense", "text": "I go yesterday", "correction": "I went yesterday", "category": "Tenses"}],
        })
        body = client.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers).json()
        feedback = body["feedback"]
        assert feedback["language"]["source"] == "ai"
        assert feedback["pronunciation"]["pronunciation_score"] == 80.0
        assert feedback["pronunciation"]["recordings_analysed"] == 4
        assert feedback["overall_score"] == 75
        assert body["session"]["evaluation_progress"] == 100
        assert body["rewards"]["xp_earned"] == 30
        assert len(fake_pronunciation) == 4

        issues = client.get("/grammar/issues", headers=auth_headers).json()["issues"]
        assert [(i["source_module"], i["category"]) for i in issues] == [("speaking", "tenses")]

    def test_heuristic_without_ai_or_audio(self, no_ai, auth_headers, fake_pronunciation):
        session = _start(no_ai, auth_headers)
        _say(no_ai, auth_headers, session["id"], "I like football because it is fun.")
        body = no_ai.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers).json()
        feedback = body["feedback"]
        assert feedback["language"]["source"] == "heuristic"
        assert feedback["pronunciation"]["pronunciation_score"] is None
        assert feedback["overall_score"] == feedback["language"]["scores"]["overall"]
        assert fake_pronunciation == []

    def test_duplicate_request_is_skipped(self, no_ai, auth_headers):
        session = _start(no_ai, auth_headers)
        _say(no_ai, auth_headers, session["id"], "I like football.")
        assert evaluation_guard.try_acquire(session["id"])
        body = no_ai.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers).json()
        assert body == {"message": "Evaluation already in progress for this session", "alreadyProcessing": True}

    def test_repeat_shortly_after_finish_is_skipped(self, no_ai, auth_headers):
        session = _start(no_ai, auth_headers)
        _say(no_ai, auth_headers, session["id"], "I like football.")
        first = no_ai.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers).json()
        assert "feedback" in first
        second = no_ai.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers).json()
        assert second["alreadyProcessing"] is True

    def test_reevaluation_does_not_award_again(self, no_ai, auth_headers):
        session = _start(no_ai, auth_headers)
        _say(no_ai, auth_headers, session["id"], "I like football.")
        no_ai.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers)
        evaluation_guard.clear()
        body = no_ai.post("/speaking/evaluate", json={"session_id": session["id"]}, headers=auth_headers).json()
        assert body["rewards"] is None


class TestSaveWithRetry:
    """Optimistic-concurrency retries when saving evaluation results."""

    def _session(self, db):
        row = SpeakingSession(username="alice", topic="t", level="B1", transcripts=[], audio=[], status="active")
        db.add(row)
        db.commit()
        return row.id

    @pytest.mark.asyncio
    async def test_recovers_from_conflict(self, db_session, monkeypatch):
        monkeypatch.setattr(settings, "save_retry_backoff_seconds", 0.0)
        session_id = self._session(db_session)
        attempts = []

        def apply(fresh):
            attempts.append(fresh.version)
            if len(attempts) == 1:
                # Someone else saved in between
                db_session.execute(text("UPDATE speaking_sessions SET version = version + 1 WHERE id = :id"), {"id": fresh.id})
            fresh.evaluation_progress = 100

        saved = await save_with_retry(db_session, session_id, apply)
        assert len(attempts) == 2
        assert saved.evaluation_progress == 100

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, db_session, monkeypatch):
        monkeypatch.setattr(settings, "save_retry_backoff_seconds", 0.0)
        monkeypatch.setattr(settings, "save_retry_attempts", 3)
        session_id = self._session(db_session)
        attempts = []

        def apply(fresh):
            attempts.append(1)
            db_session.execute(text("UPDATE speaking_sessions SET version = version + 1 WHERE id = :id"), {"id": fresh.id})
            fresh.evaluation_progress = 100

        with pytest.raises(StaleDataError):
            await save_with_retry(db_session, session_id, apply)
        assert len(attempts) == 3


class TestScoreWords:
    """Pronunciation scores from recognised words."""

    def test_no_words(self):
        assert speech_analysis.score_words([])["pronunciation_score"] is None

    def test_scores(self):
        words = [
            {"word": "Hello", "confidence": 0.9, "start": 0.0, "end": 0.4},
            {"word": "world", "confidence": 0.7, "start": 1.5, "end": 1.9},
        ]
        scores = speech_analysis.score_words(words, "hello big world")
        assert scores["accuracy_score"] == 80.0
        assert scores["fluency_score"] == 90.0
        assert scores["completeness_score"] == pytest.approx(66.7)
        assert scores["pronunciation_score"] == pytest.approx(78.9)

    @pytest.mark.asyncio
    async def test_invalid_audio_never_raises(self):
        result = await speech_analysis.analyze_pronunciation("not base64!!")
        assert result["pronunciation_score"] is None
        assert result["feedback"] == "Audio payload is not valid base64."
