"""Tests for listening sessions: merged answer submissions and completion."""

import pytest


SCRIPT = {
    "title": "At the Station",
    "transcript": "The train to Leeds leaves from platform four at nine o'clock. Passengers should buy tickets before boarding.",
    "questions": [
        {"type": "multiple-choice", "question": "Which platform?", "options": ["two", "four"], "correct_answer": "four"},
        {"type": "true-false", "question": "Tickets can be bought on board.", "correct_answer": "false"},
    ],
    "vocabulary": [{"word": "platform", "definition": "where you board a train"}],
}


@pytest.fixture
def listening_session(client, auth_headers, fake_ai):
    fake_ai.json_responses.append(dict(SCRIPT))
    response = client.post("/listening/generate", json={"level": "A2", "topic": "travel"}, headers=auth_headers)
    assert response.status_code == 201, response.text
    return response.json()


def _feedback(client, headers, session_id, answers, **extra):
    body = {"answers": [{"question_id": q, "answer": a} for q, a in answers], **extra}
    response = client.post(f"/listening/{session_id}/feedback", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


class TestGeneration:
    def test_session_shape(self, listening_session):
        assert listening_session["level"] == "A2"
        assert listening_session["duration_seconds"] == 7
        assert [q["id"] for q in listening_session["questions"]] == ["q1", "q2"]
        assert listening_session["completed"] is False

    def test_generation_failure(self, client, auth_headers, fake_ai):
        fake_ai.fail = True
        response = client.post("/listening/generate", json={}, headers=auth_headers)
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to generate listening content"}


class TestFeedback:
    """Answer submissions are merged and re-scored."""

    def test_partial_then_corrected(self, client, auth_headers, listening_session, fake_ai):
        sid = listening_session["id"]
        first = _feedback(client, auth_headers, sid, [("q1", "two")], use_ai=False)
        assert first["correct_answers"] == 0
        assert first["lost_correct"] == 0
        assert first["results"][0]["feedback"] == "Incorrect. The correct answer is: four"
        assert first["overall_feedback"] == "You scored 0%. Keep practicing to improve your comprehension skills."

        second = _feedback(client, auth_headers, sid, [("q1", "four"), ("q2", "false")], use_ai=False)
        assert second["newly_correct"] == 2
        assert second["questions_answered"] == 2
        assert second["comprehension_score"] == 100
        # Vocabulary not reviewed yet
        assert second["completed"] is False

        third = _feedback(client, auth_headers, sid, [("q2", "true")], use_ai=False)
        assert third["lost_correct"] == 1
        assert third["comprehension_score"] == 50
        # Only the generation prompt reached the model
        assert len(fake_ai.prompts) == 1

    def test_ai_feedback_used_when_available(self, client, auth_headers, listening_session, fake_ai):
        fake_ai.json_responses.append({
            "feedback": [{"question_id": "q1", "feedback": "Listen again for the platform number."}],
            "overall": "Nice start.",
        })
        body = _feedback(client, auth_headers, listening_session["id"], [("q1", "two")])
        assert body["results"][0]["feedback"] == "Listen again for the platform number."
        assert body["overall_feedback"] == "Nice start."
        assert "platform four" in fake_ai.prompts[-1]

    def test_ai_failure_falls_back(self, client, auth_headers, listening_session, fake_ai):
        fake_ai.fail = True
        body = _feedback(client, auth_headers, listening_session["id"], [("q1", "four")])
        assert body["results"][0]["feedback"] == "Correct answer!"

    def test_list_shaped_model_output_falls_back(self, client, auth_headers, listening_session, fake_ai):
        fake_ai.json_responses.append('[{"question_id": "q1", "feedback": "ok"}]')
        body = _feedback(client, auth_headers, listening_session["id"], [("q1", "two")])
        assert body["results"][0]["feedback"] == "Incorrect. The correct answer is: four"
        assert body["questions_answered"] == 1

    def test_unknown_question(self, client, auth_headers, listening_session):
        response = client.post(
            f"/listening/{listening_session['id']}/feedback",
            json={"answers": [{"question_id": "q9", "answer": "x"}]},
            headers=auth_headers,
        )
        assert response.status_code == 400

    def test_completion_needs_vocabulary_and_awards_once(self, client, auth_headers, listening_session):
        sid = listening_session["id"]
        _feedback(client, auth_headers, sid, [("q1", "four"), ("q2", "false")], use_ai=False)
        response = client.post(f"/listening/{sid}/vocabulary", json={"words": ["Platform"]}, headers=auth_headers)
        body = response.json()
        assert body["completed"] is True
        assert body["rewards"]["xp_earned"] == 20

        again = _feedback(client, auth_headers, sid, [("q1", "four")], use_ai=False)
        assert again["completed"] is True
        assert again["rewards"] is None
        session = client.get(f"/listening/{sid}", headers=auth_headers).json()
        assert session["questions"][0]["correct_answer"] == "four"

    def test_completion_with_vocabulary_in_feedback(self, client, auth_headers, listening_session):
        body = _feedback(
            client, auth_headers, listening_session["id"],
            [("q1", "four"), ("q2", "false")], use_ai=False, vocabulary_reviewed=["platform"],
        )
        assert body["completed"] is True

    def test_completion_awards_reviewed_vocabulary(self, client, auth_headers, listening_session):
        sid = listening_session["id"]
        _feedback(client, auth_headers, sid, [("q1", "four"), ("q2", "false")], use_ai=False)
        client.post(f"/listening/{sid}/vocabulary", json={"words": ["platform"]}, headers=auth_headers)
        profile = client.get("/gamification/profile", headers=auth_headers).json()
        # session 20 + first_steps 10 + two correct answers at 5 + one word at 2
        assert profile["total_xp"] == 42
        activities = client.get("/gamification/activities", params={"module": "listening"}, headers=auth_headers).json()["activities"]
        review = [a for a in activities if a["activity_type"] == "review_word"]
        assert len(review) == 1
        assert review[0]["xp_earned"] == 2

    def test_blank_answers_are_ignored(self, client, auth_headers, listening_session):
        sid = listening_session["id"]
        body = _feedback(client, auth_headers, sid, [("q1", "four"), ("q2", "  ")], use_ai=False)
        assert body["questions_answered"] == 1
        assert [r["question_id"] for r in body["results"]] == ["q1"]

        # A blank resubmission keeps the earlier answer
        body = _feedback(client, auth_headers, sid, [("q1", ""), ("q2", "false")], use_ai=False)
        assert body["questions_answered"] == 2
        assert body["correct_answers"] == 2

    def test_only_blank_answers_rejected(self, client, auth_headers, listening_session):
        response = client.post(
            f"/listening/{listening_session['id']}/feedback",
            json={"answers": [{"question_id": "q1", "answer": ""}, {"question_id": "q2", "answer": "  "}]},
            headers=auth_headers,
        )
        assert response.status_code == 400
        session = client.get(f"/listening/{listening_session['id']}", headers=auth_headers).json()
        assert session["progress"]["questions_answered"] == 0

    def test_unknown_vocabulary_word(self, client, auth_headers, listening_session):
        response = client.post(f"/listening/{listening_session['id']}/vocabulary", json={"words": ["ticket"]}, headers=auth_headers)
        assert response.status_code == 400


class TestListingAndStats:
    def test_list_stats_delete(self, client, auth_headers, listening_session, other_headers):
        assert client.get("/listening", headers=auth_headers).json()["total"] == 1
        assert client.get("/listening", headers=other_headers).json()["total"] == 0
        assert client.get(f"/listening/{listening_session['id']}", headers=other_headers).status_code == 403
        assert client.get("/listening/stats", headers=auth_headers).json()["total_sessions"] == 1
        client.delete(f"/listening/{listening_session['id']}", headers=auth_headers)
        assert client.get("/listening/stats", headers=auth_headers).json()["total_sessions"] == 0
