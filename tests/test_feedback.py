"""Tests for user feedback tickets."""

import pytest


def _submit(client, headers, **overrides):
    body = {"rating": 4, "category": "features", "subject": "Dark mode", "message": "Please add a dark theme."}
    body.update(overrides)
    response = client.post("/feedback", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestSubmit:
    def test_submit_and_list_mine(self, client, auth_headers):
        ticket = _submit(client, auth_headers, metadata={"page": "/settings"})
        assert ticket["status"] == "new"
        assert ticket["metadata"] == {"page": "/settings"}
        mine = client.get("/feedback/mine", headers=auth_headers).json()["feedback"]
        assert [t["id"] for t in mine] == [ticket["id"]]

    @pytest.mark.parametrize("overrides", [{"rating": 6}, {"category": "praise"}, {"subject": ""}])
    def test_invalid_input(self, client, auth_headers, overrides):
        body = {"rating": 4, "category": "features", "subject": "Dark mode", "message": "Please add a dark theme."}
        body.update(overrides)
        response = client.post("/feedback", json=body, headers=auth_headers)
        assert response.status_code == 400

    def test_blank_subject(self, client, auth_headers):
        body = {"rating": 4, "category": "general", "subject": "   ", "message": "hello"}
        assert client.post("/feedback", json=body, headers=auth_headers).status_code == 400


class TestAdmin:
    def test_listing_requires_admin(self, client, auth_headers):
        assert client.get("/feedback", headers=auth_headers).status_code == 403

    def test_listing_with_stats(self, client, auth_headers, admin_headers):
        _submit(client, auth_headers, rating=5)
        _submit(client, auth_headers, rating=2, category="bug_report", subject="Crash")
        body = client.get("/feedback?category=bug_report", headers=admin_headers).json()
        assert [t["subject"] for t in body["feedback"]] == ["Crash"]
        assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}
        assert body["stats"] == {"total": 2, "average_rating": 3.5, "new": 2, "resolved": 0}

    def test_respond_and_resolve(self, client, auth_headers, admin_headers):
        ticket = _submit(client, auth_headers)
        body = client.patch(
            f"/feedback/{ticket['id']}",
            json={"status": "resolved", "admin_response": "Shipped in 2.1"},
            headers=admin_headers,
        ).json()
        assert body["status"] == "resolved"
        assert body["responded_by"] == "admin"
        assert body["responded_at"] is not None
        assert client.get(f"/feedback/{ticket['id']}", headers=auth_headers).json()["admin_response"] == "Shipped in 2.1"

    def test_owner_or_admin_only(self, client, auth_headers, other_headers, admin_headers):
        ticket = _submit(client, auth_headers)
        assert client.get(f"/feedback/{ticket['id']}", headers=other_headers).status_code == 403
        assert client.get(f"/feedback/{ticket['id']}", headers=admin_headers).status_code == 200

    def test_delete(self, client, auth_headers, admin_headers):
        ticket = _submit(client, auth_headers)
        assert client.delete(f"/feedback/{ticket['id']}", headers=auth_headers).status_code == 403
        assert client.delete(f"/feedback/{ticket['id']}", headers=admin_headers).json() == {"ok": True}
        assert client.get(f"/feedback/{ticket['id']}", headers=admin_headers).status_code == 404
