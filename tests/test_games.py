"""Tests for saving game results: XP with score bonus and level promotion."""

from conftest import login


def _result(**overrides):
    body = {"game_id": "word-match", "score": 8, "max_score": 10, "correct_answers": 8, "total_questions": 10}
    body.update(overrides)
    return body


def _register_with_level(client, username, level):
    response = client.post(
        "/auth/register",
        json={"username": username, "password": "secret123", "email": f"{username}@example.com", "cefr_level": level},
    )
    assert response.status_code == 201, response.text
    return login(client, username)


class TestSaveResult:
    def test_xp_includes_score_bonus(self, client, auth_headers):
        response = client.post("/games/results", json=_result(), headers=auth_headers)
        assert response.status_code == 201
        body = response.json()
        # 15 for the game + floor(25 * 8 / 10)
        assert body["xp_earned"] == 35
        assert body["level_changed"] is False
        assert body["cefr_level"] is None

        stats = client.get("/gamification/modules/games/stats", headers=auth_headers).json()
        assert stats["count"] == 1
        assert stats["xp"] == 35

    def test_without_max_score_no_bonus(self, client, auth_headers):
        body = client.post("/games/results", json=_result(max_score=None), headers=auth_headers).json()
        assert body["xp_earned"] == 15

    def test_history(self, client, auth_headers):
        client.post("/games/results", json=_result(), headers=auth_headers)
        client.post("/games/results", json=_result(game_id="speed-quiz", score=3, max_score=12), headers=auth_headers)
        results = client.get("/games/results", headers=auth_headers).json()["results"]
        assert [r["game_id"] for r in results] == ["speed-quiz", "word-match"]
        assert results[0]["xp_earned"] == 15 + 6

    def test_invalid_results(self, client, auth_headers):
        assert client.post("/games/results", json=_result(correct_answers=11), headers=auth_headers).status_code == 400
        assert client.post("/games/results", json=_result(score=20), headers=auth_headers).status_code == 400
        response = client.post("/games/results", json=_result(difficulty="extreme"), headers=auth_headers)
        assert response.status_code == 400
        assert client.get("/games/results", headers=auth_headers).json()["results"] == []


class TestPromotion:
    def test_strong_result_on_harder_game_raises_level(self, client):
        headers = _register_with_level(client, "carol", "A2")
        body = client.post(
            "/games/results", json=_result(correct_answers=9, difficulty="hard"), headers=headers,
        ).json()
        assert body["level_changed"] is True
        assert body["cefr_level"] == "C1"
        assert client.get("/user/profile", headers=headers).json()["cefr_level"] == "C1"

    def test_no_promotion_to_an_easier_level(self, client):
        headers = _register_with_level(client, "carol", "B2")
        body = client.post(
            "/games/results", json=_result(correct_answers=10, difficulty="medium"), headers=headers,
        ).json()
        assert body["level_changed"] is False
        assert body["cefr_level"] == "B2"

    def test_accuracy_must_exceed_threshold(self, client):
        headers = _register_with_level(client, "carol", "A1")
        body = client.post(
            "/games/results", json=_result(correct_answers=8, difficulty="medium"), headers=headers,
        ).json()
        assert body["level_changed"] is False
        assert body["cefr_level"] == "A1"
