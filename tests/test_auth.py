"""Tests for registration, login, single-session enforcement and session validation."""

from datetime import datetime, timedelta

from conftest import login, register

from lingo.cleanup import purge_expired
from lingo.models import AuthSession
from lingo.settings import settings


class TestRegistration:
    """Account creation rules."""

    def test_register_and_login(self, client):
        register(client, "alice")
        headers = login(client, "alice")
        response = client.get("/auth/me", headers=headers)
        assert response.status_code == 200
        assert response.json()["username"] == "alice"
        assert response.json()["role"] == "user"

    def test_duplicate_username(self, client):
        register(client, "alice")
        response = client.post("/auth/register", json={"username": "alice", "password": "secret123", "email": "a@example.com"})
        assert response.status_code == 409

    def test_short_password(self, client):
        response = client.post("/auth/register", json={"username": "alice", "password": "abc", "email": "a@example.com"})
        assert response.status_code == 400
        assert "password" in response.json()["error"]

    def test_invalid_email(self, client):
        response = client.post("/auth/register", json={"username": "alice", "password": "secret123", "email": "nope"})
        assert response.status_code == 400

    def test_missing_field_is_bad_request(self, client):
        response = client.post("/auth/register", json={"username": "alice"})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid input data")

    def test_cefr_level_is_normalized(self, client):
        response = client.post(
            "/auth/register",
            json={"username": "alice", "password": "secret123", "email": "a@example.com", "cefr_level": " b2 "},
        )
        assert response.status_code == 201
        profile = client.get("/user/profile", headers=login(client, "alice")).json()
        assert profile["cefr_level"] == "B2"

    def test_invalid_cefr_level(self, client):
        response = client.post(
            "/auth/register",
            json={"username": "alice", "password": "secret123", "email": "a@example.com", "cefr_level": "D7"},
        )
        assert response.status_code == 400
        assert "cefr_level" in response.json()["error"]

    def test_wrong_password(self, client):
        register(client, "alice")
        response = client.post("/auth/token", data={"username": "alice", "password": "wrong-one"})
        assert response.status_code == 401
        assert response.json() == {"error": "Incorrect username or password"}

    def test_admin_role_from_settings(self, client, admin_headers):
        assert client.get("/auth/me", headers=admin_headers).json()["role"] == "admin"


class TestSingleSession:
    """A new login terminates the previous session."""

    def test_second_login_invalidates_first(self, client):
        register(client, "alice")
        first = login(client, "alice", user_agent="laptop")
        second = login(client, "alice", user_agent="phone")
        assert client.get("/auth/me", headers=first).status_code == 401
        assert client.get("/auth/me", headers=second).status_code == 200

        response = client.get("/session/validate", headers=first)
        assert response.status_code == 401
        assert response.json() == {
            "isValid": False,
            "error": "Session is no longer valid",
            "reason": "session_terminated",
        }

    def test_multiple_sessions_when_disabled(self, client, monkeypatch):
        monkeypatch.setattr(settings, "single_session_per_user", False)
        register(client, "alice")
        first = login(client, "alice")
        second = login(client, "alice")
        assert client.get("/auth/me", headers=first).status_code == 200
        assert client.get("/auth/me", headers=second).status_code == 200

    def test_logout(self, client, auth_headers):
        assert client.post("/auth/logout", headers=auth_headers).json() == {"ok": True}
        assert client.get("/auth/me", headers=auth_headers).status_code == 401

    def test_expired_session_is_rejected(self, client, auth_headers, db_session):
        row = db_session.query(AuthSession).filter_by(username="alice").one()
        row.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db_session.commit()
        response = client.get("/session/validate", headers=auth_headers)
        assert response.status_code == 401
        db_session.refresh(row)
        assert row.is_active is False
        assert row.termination_reason == "expired"


class TestSessionValidation:
    """GET and POST /session/validate."""

    def test_valid_session(self, client, auth_headers):
        response = client.get("/session/validate", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"isValid": True, "username": "alice"}

    def test_no_token(self, client):
        response = client.get("/session/validate")
        assert response.status_code == 401
        assert response.json()["reason"] == "no_token"

    def test_garbage_token(self, client):
        response = client.get("/session/validate", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["reason"] == "validation_error"

    def test_history(self, client):
        register(client, "alice")
        login(client, "alice", user_agent="laptop")
        headers = login(client, "alice", user_agent="phone")
        body = client.get("/session/validate?history=true", headers=headers).json()
        history = body["sessionHistory"]
        assert len(history) == 2
        assert {h["user_agent"] for h in history} == {"laptop", "phone"}
        assert {h["termination_reason"] for h in history} == {None, "concurrent_login"}

    def test_force_logout(self, client, monkeypatch):
        monkeypatch.setattr(settings, "single_session_per_user", False)
        register(client, "alice")
        first = login(client, "alice")
        second = login(client, "alice")
        response = client.post("/session/validate", json={"action": "force_logout"}, headers=second)
        assert response.json() == {"success": True, "loggedOutCount": 2}
        assert client.get("/auth/me", headers=first).status_code == 401
        assert client.get("/auth/me", headers=second).status_code == 401

    def test_unknown_action(self, client, auth_headers):
        response = client.post("/session/validate", json={"action": "dance"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid action"}


class TestCleanup:
    """Expiry and retention of old sessions."""

    def test_purge_removes_old_inactive_sessions(self, db_session):
        now = datetime(2024, 5, 1, 12, 0, 0)
        db_session.add_all([
            AuthSession(session_id="old", username="alice", is_active=False, terminated_at=now - timedelta(days=30)),
            AuthSession(session_id="recent", username="alice", is_active=False, terminated_at=now - timedelta(days=1)),
            AuthSession(session_id="stale", username="alice", is_active=True, expires_at=now - timedelta(hours=1)),
            AuthSession(session_id="live", username="alice", is_active=True, expires_at=now + timedelta(hours=1)),
        ])
        db_session.commit()
        result = purge_expired(db_session, now)
        assert result["expired_sessions"] == 1
        assert result["purged_sessions"] == 1
        remaining = {r.session_id: r for r in db_session.query(AuthSession).all()}
        assert set(remaining) == {"recent", "stale", "live"}
        assert remaining["stale"].is_active is False

    def test_cleanup_endpoint_requires_admin(self, client, auth_headers, admin_headers):
        assert client.post("/session/cleanup", headers=auth_headers).status_code == 403
        response = client.post("/session/cleanup", headers=admin_headers)
        assert response.status_code == 200
        assert "purged_sessions" in response.json()


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
