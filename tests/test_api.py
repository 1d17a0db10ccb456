"""HTTP and WebSocket surface, driven through FastAPI's TestClient."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from ekyc_portal.main import create_app

PASSWORD = "correct-horse-battery"
ADMIN_EMAIL = "admin@example.com"


@pytest.fixture
def client(backend):
    asyncio.run(backend.ensure_admin_user(ADMIN_EMAIL, PASSWORD))
    app = create_app(backend)
    with TestClient(app) as client:
        yield client


def _login(client, email, password=PASSWORD):
    response = client.post("/auth/token", data={"username": email, "password": password})
    assert response.status_code == 200, response.text
    assert "access_token" in response.cookies
    # Keep requests explicit: authenticate with the bearer header only
    client.cookies.clear()
    return response.json()


def _headers(token):
    return {"Authorization": f"Bearer {token['access_token']}"}


def _applicant(client, email="applicant@example.com"):
    response = client.post("/auth/signup", json={"email": email, "password": PASSWORD, "full_name": "Ada"})
    assert response.status_code == 201, response.text
    return _login(client, email)


@pytest.fixture
def submission_body():
    return {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "dob": "1990-12-10",
        "address": "12 Analytical Row",
        "document_type": "passport",
        "document_number": "P1234567",
    }


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestAuthRoutes:

    def test_signup_and_session(self, client):
        token = _applicant(client)
        assert token["role"] == "user"
        assert token["is_admin"] is False

        session = client.get("/auth/session", headers=_headers(token)).json()
        assert session["is_authenticated"] is True
        assert session["user"]["email"] == "applicant@example.com"
        assert session["profile"]["role"] == "user"

    def test_anonymous_session(self, client):
        session = client.get("/auth/session").json()
        assert session["is_authenticated"] is False
        assert session["role"] is None

    def test_short_password_rejected(self, client):
        response = client.post("/auth/signup", json={"email": "x@example.com", "password": "short"})
        assert response.status_code == 422

    def test_bad_credentials(self, client):
        response = client.post("/auth/token", data={"username": ADMIN_EMAIL, "password": "wrong-password"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid login credentials"

    def test_logout_revokes_token(self, client):
        token = _applicant(client)
        assert client.post("/auth/logout", headers=_headers(token)).status_code == 200
        assert client.get("/api/v1/kyc/submissions", headers=_headers(token)).status_code == 401

    def test_profile_update(self, client):
        token = _applicant(client)
        response = client.patch("/auth/profile", headers=_headers(token),
                                json={"full_name": "Ada King", "phone": "+44 20 7946 0000"})
        assert response.status_code == 200
        assert response.json()["full_name"] == "Ada King"

        bad = client.patch("/auth/profile", headers=_headers(token), json={"dob": "10-12-1815"})
        assert bad.status_code == 422
        assert bad.json()["code"] == "invalid_date"


class TestApplicantRoutes:

    def test_requires_authentication(self, client):
        assert client.get("/api/v1/kyc/submissions").status_code == 401

    def test_create_list_update_delete(self, client, submission_body):
        headers = _headers(_applicant(client))

        created = client.post("/api/v1/kyc/submissions", headers=headers, json=submission_body)
        assert created.status_code == 201
        submission = created.json()
        assert submission["status"] == "pending"
        assert submission["dob"] == "1990-12-10"

        listing = client.get("/api/v1/kyc/submissions", headers=headers).json()
        assert [s["id"] for s in listing] == [submission["id"]]

        patched = client.patch(f"/api/v1/kyc/submissions/{submission['id']}", headers=headers,
                               json={"address": "  New Address  ", "status": "approved"})
        assert patched.status_code == 200
        assert patched.json()["address"] == "New Address"
        assert patched.json()["status"] == "pending"

        deleted = client.delete(f"/api/v1/kyc/submissions/{submission['id']}", headers=headers)
        assert deleted.json() == {"success": True, "id": submission["id"]}
        missing = client.delete(f"/api/v1/kyc/submissions/{submission['id']}", headers=headers)
        assert missing.status_code == 404

    def test_malformed_date_is_422(self, client, submission_body):
        headers = _headers(_applicant(client))
        response = client.post("/api/v1/kyc/submissions", headers=headers,
                               json=dict(submission_body, dob="12/10/1990"))
        assert response.status_code == 422
        assert response.json() == {"detail": "DOB must be in YYYY-MM-DD format", "code": "invalid_date"}
        assert client.get("/api/v1/kyc/submissions", headers=headers).json() == []

    def test_document_upload(self, client, submission_body):
        headers = _headers(_applicant(client))
        submission = client.post("/api/v1/kyc/submissions", headers=headers, json=submission_body).json()
        url = f"/api/v1/kyc/submissions/{submission['id']}/documents"

        response = client.post(url, headers=headers, data={"doc_type": "id_front"},
                               files={"file": ("front.jpg", b"\xff\xd8\xff", "image/jpeg")})
        assert response.status_code == 200, response.text
        documents = response.json()["documents"]
        assert len(documents) == 1
        assert documents[0]["content_type"] == "image/jpeg"
        assert documents[0]["visibility"] == "private"

        rejected = client.post(url, headers=headers, data={"doc_type": "id_front"},
                               files={"file": ("notes.txt", b"hello", "text/plain")})
        assert rejected.status_code == 422

        patched = client.patch(f"/api/v1/kyc/submissions/{submission['id']}", headers=headers,
                               json={"address": "Elsewhere", "documents": []})
        assert patched.status_code == 200, patched.text
        assert patched.json()["address"] == "Elsewhere"
        assert len(patched.json()["documents"]) == 1

    def test_reviewer_routes_forbidden(self, client):
        headers = _headers(_applicant(client))
        assert client.get("/api/admin/kyc/submissions", headers=headers).status_code == 403


class TestReviewerRoutes:

    def test_review_queue_and_decisions(self, client, submission_body):
        applicant = _headers(_applicant(client))
        admin = _headers(_login(client, ADMIN_EMAIL))
        first = client.post("/api/v1/kyc/submissions", headers=applicant, json=submission_body).json()
        second = client.post("/api/v1/kyc/submissions", headers=applicant,
                             json=dict(submission_body, first_name="Grace", last_name="Hopper")).json()

        queue = client.get("/api/admin/kyc/submissions", headers=admin, params={"search": "hopper"}).json()
        assert queue["total"] == 1
        assert queue["items"][0]["id"] == second["id"]

        base = f"/api/admin/kyc/submissions/{first['id']}"
        info = client.post(f"{base}/request-info", headers=admin, json={"notes": "need a clearer scan"})
        assert info.status_code == 200
        assert info.json()["audit_entry"]["action"] == "request_info"

        blank = client.post(f"{base}/reject", headers=admin, json={"notes": "  "})
        assert blank.status_code == 422
        assert blank.json()["code"] == "notes_required"

        approved = client.post(f"{base}/approve", headers=admin, json={})
        assert approved.status_code == 200
        assert approved.json()["submission"]["status"] == "approved"
        assert approved.json()["audit_error"] is None

        conflict = client.post(f"{base}/reject", headers=admin, json={"notes": "too late"})
        assert conflict.status_code == 409

        trail = client.get(f"{base}/audit", headers=admin).json()
        assert [entry["action"] for entry in trail] == ["request_info", "approved"]

        detail = client.get(base, headers=admin).json()
        assert detail["status"] == "approved"
        assert client.get("/api/admin/kyc/submissions/nope", headers=admin).status_code == 404


class TestRealtimeSocket:

    def test_refuses_unauthenticated(self, client):
        with client.websocket_connect("/ws/kyc") as ws:
            assert ws.receive_json() == {"error": "unauthorized"}

    def test_streams_own_changes_and_acks_pings(self, client, submission_body):
        token = _applicant(client)
        with client.websocket_connect(f"/ws/kyc?token={token['access_token']}") as ws:
            hello = ws.receive_json()
            assert hello["event"] == "connected"
            assert hello["user_id"] == token["user_id"]

            ws.send_text("ping")
            assert ws.receive_text() == "ack:ping"

            created = client.post("/api/v1/kyc/submissions", headers=_headers(token), json=submission_body)
            event = ws.receive_json()
            assert event["event_type"] == "INSERT"
            assert event["table"] == "kyc_submissions"
            assert event["new"]["id"] == created.json()["id"]
            assert event["new"]["status"] == "pending"

    def test_closing_socket_releases_its_channel(self, backend, client):
        token = _applicant(client, "leaving@example.com")
        with client.websocket_connect(f"/ws/kyc?token={token['access_token']}") as ws:
            assert ws.receive_json()["event"] == "connected"
            assert any(c.name.startswith("ws_kyc_") for c in backend.feed.channels)

        assert not any(c.name.startswith("ws_kyc_") for c in backend.feed.channels)
