"""Integration tests for the HTTP authentication flow.

Tests the complete flow including:
- Registration and email verification
- Login, lockout and logout
- Session refresh, rotation and listing
- Password reset
- Profile management
"""

import re
from datetime import timedelta
from urllib.parse import urlsplit

import pytest
from fastapi.testclient import TestClient

from sessionauth import app as app_module
from sessionauth.service.email import EmailService
from sessionauth.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassw0rd"


def _register(client, email, password):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "confirm_password": password},
    )


def _login(client, email, password):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def logged_in(client, outbox, test_user_email, test_user_password):
    """Register, verify and log in; returns the bearer token."""
    _register(client, test_user_email, test_user_password)
    client.post("/v1/auth/verify-email", json={"token": outbox.last_verification_token()})
    response = _login(client, test_user_email, test_user_password)
    assert response.status_code == 200
    return response.json()["data"]["token"]


class TestRegistrationFlow:
    """Tests for user registration and verification."""

    def test_register_verify_login(self, client, outbox):
        response = _register(client, "Test@Example.com", "Passw0rd")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "test@example.com"
        assert data["user"]["email_verified"] is False

        blocked = _login(client, "test@example.com", "Passw0rd")
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "email_not_verified"

        verified = client.post(
            "/v1/auth/verify-email", json={"token": outbox.last_verification_token()}
        )
        assert verified.status_code == 200

        login = _login(client, "test@example.com", "Passw0rd")
        assert login.status_code == 200
        body = login.json()["data"]
        assert len(body["token"]) == 128
        assert body["token_type"] == "bearer"
        assert body["expires_at"] > body["user"]["created_at"]

    def test_register_rejects_duplicate_email(self, client, outbox, test_user_email, test_user_password):
        _register(client, test_user_email, test_user_password)
        response = _register(client, test_user_email.upper(), test_user_password)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_reports_all_validation_errors(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "nope", "password": "weak", "confirm_password": "other"},
        )
        assert response.status_code == 400
        errors = response.json()["error"]["details"]["errors"]
        assert "Invalid email format" in errors
        assert "Passwords do not match" in errors

    def test_bad_verification_token(self, client):
        response = client.post("/v1/auth/verify-email", json={"token": "0" * 128})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_token"

    def test_mailed_verification_link_verifies(self, client, monkeypatch, test_user_email, test_user_password):
        mails = []
        monkeypatch.setattr(
            EmailService, "send", lambda self, to, subject, text, html=None: mails.append(text) or True
        )
        _register(client, test_user_email, test_user_password)
        link = re.search(r"https?://\S+verify-email\?token=\S+", mails[-1]).group(0)
        parsed = urlsplit(link)

        response = client.get(f"{parsed.path}?{parsed.query}")
        assert response.status_code == 200
        assert _login(client, test_user_email, test_user_password).status_code == 200

    def test_already_verified_is_rejected(self, client, outbox, test_user_email, test_user_password):
        user_id = _register(client, test_user_email, test_user_password).json()["data"]["user"]["id"]
        get_runtime().store.users[user_id].email_verified = True
        response = client.get(
            "/v1/auth/verify-email", params={"token": outbox.last_verification_token()}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "already_verified"
        assert response.json()["error"]["message"] == "Email is already verified"

    def test_resend_is_uniform(self, client, outbox, test_user_email, test_user_password):
        _register(client, test_user_email, test_user_password)
        known = client.post("/v1/auth/resend-verification", json={"email": test_user_email})
        unknown = client.post("/v1/auth/resend-verification", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]


class TestLoginFlow:
    def test_wrong_password_counts_down_then_locks(self, client, logged_in, test_user_email):
        messages = []
        for _ in range(5):
            response = _login(client, test_user_email, "Wr0ngPassword")
            assert response.status_code == 401
            messages.append(response.json()["error"]["message"])
        assert messages[0] == "Invalid email or password. 4 attempt(s) remaining."
        assert messages[-1] == "Invalid email or password."

        locked = _login(client, test_user_email, "TestPassw0rd")
        assert locked.status_code == 429
        assert locked.json()["error"]["code"] == "rate_limited"
        assert int(locked.headers["Retry-After"]) > 1700

    def test_unknown_email_matches_wrong_password(self, client, logged_in, test_user_email):
        unknown = _login(client, "ghost@example.com", "Wr0ngPassword")
        wrong = _login(client, test_user_email, "Wr0ngPassword")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_logout_revokes_token(self, client, logged_in):
        assert client.get("/v1/me", headers=_bearer(logged_in)).status_code == 200
        assert client.post("/v1/auth/logout", headers=_bearer(logged_in)).status_code == 200
        assert client.get("/v1/me", headers=_bearer(logged_in)).status_code == 401

    def test_logout_requires_bearer(self, client):
        assert client.post("/v1/auth/logout").status_code == 401

    def test_logout_all_keeps_current(self, client, logged_in, test_user_email, test_user_password):
        other = _login(client, test_user_email, test_user_password).json()["data"]["token"]
        response = client.post("/v1/auth/logout-all", headers=_bearer(logged_in))
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/me", headers=_bearer(logged_in)).status_code == 200
        assert client.get("/v1/me", headers=_bearer(other)).status_code == 401


class TestSessionLifecycle:
    def test_refresh_sets_expiry_header(self, client, logged_in):
        response = client.post("/v1/auth/session/refresh", headers=_bearer(logged_in))
        assert response.status_code == 200
        assert response.headers["X-Session-Expires-At"]

    def test_rotation_invalidates_old_token(self, client, logged_in):
        response = client.post("/v1/auth/session/rotate", headers=_bearer(logged_in))
        assert response.status_code == 200
        new_token = response.json()["data"]["token"]
        assert new_token != logged_in
        assert client.get("/v1/me", headers=_bearer(logged_in)).status_code == 401
        assert client.get("/v1/me", headers=_bearer(new_token)).status_code == 200
        again = client.post("/v1/auth/session/rotate", headers=_bearer(logged_in))
        assert again.status_code == 401

    def test_auto_refresh_near_expiry(self, client, logged_in):
        runtime = get_runtime()
        runtime.sessions.refresh_threshold = timedelta(days=2)
        response = client.get("/v1/me", headers=_bearer(logged_in))
        assert response.status_code == 200
        assert "X-Session-Expires-At" in response.headers

    def test_no_refresh_header_when_far_from_expiry(self, client, logged_in):
        response = client.get("/v1/me", headers=_bearer(logged_in))
        assert "X-Session-Expires-At" not in response.headers

    def test_list_and_revoke_sessions(self, client, logged_in, test_user_email, test_user_password):
        _login(client, test_user_email, test_user_password)
        listed = client.get("/v1/me/sessions", headers=_bearer(logged_in)).json()["data"]["sessions"]
        assert len(listed) == 2
        assert sum(1 for s in listed if s["current"]) == 1
        assert all(s["user_agent"] == "testclient" for s in listed)

        other_id = next(s["id"] for s in listed if not s["current"])
        revoked = client.delete(f"/v1/me/sessions/{other_id}", headers=_bearer(logged_in))
        assert revoked.status_code == 200
        again = client.delete(f"/v1/me/sessions/{other_id}", headers=_bearer(logged_in))
        assert again.status_code == 404


class TestPasswordResetFlow:
    def test_full_reset(self, client, outbox, logged_in, test_user_email):
        known = client.post("/v1/auth/forgot-password", json={"email": test_user_email})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.json()["data"] == unknown.json()["data"]

        token = outbox.last_reset_token(test_user_email)
        check = client.get("/v1/auth/reset-password/validate", params={"token": token})
        assert check.json()["data"] == {"valid": True, "email": test_user_email, "message": None}

        reset = client.post(
            "/v1/auth/reset-password",
            json={"token": token, "password": "Fresh1Pass", "confirm_password": "Fresh1Pass"},
        )
        assert reset.status_code == 200
        assert client.get("/v1/me", headers=_bearer(logged_in)).status_code == 401
        assert _login(client, test_user_email, "Fresh1Pass").status_code == 200

        reused = client.post(
            "/v1/auth/reset-password",
            json={"token": token, "password": "Other1Pass", "confirm_password": "Other1Pass"},
        )
        assert reused.status_code == 400
        assert reused.json()["error"] == {
            "code": "invalid_token",
            "message": "Invalid or expired reset token",
            "details": None,
        }
        invalid = client.get("/v1/auth/reset-password/validate", params={"token": token})
        assert invalid.json()["data"]["valid"] is False

    def test_weak_password_is_rejected(self, client):
        response = client.post(
            "/v1/auth/reset-password",
            json={"token": "abc", "password": "weak", "confirm_password": "weak"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestProfile:
    def test_get_and_update_profile(self, client, outbox, logged_in):
        me = client.get("/v1/me", headers=_bearer(logged_in)).json()["data"]
        assert me["email_verified"] is True

        updated = client.put(
            "/v1/me", json={"email": "Renamed@Example.com"}, headers=_bearer(logged_in)
        ).json()["data"]
        assert updated["email"] == "renamed@example.com"
        assert updated["email_verified"] is False
        assert outbox.verifications[-1][0] == "renamed@example.com"

    def test_change_password(self, client, logged_in, test_user_email, test_user_password):
        other = _login(client, test_user_email, test_user_password).json()["data"]["token"]
        response = client.post(
            "/v1/me/change-password",
            json={
                "current_password": test_user_password,
                "new_password": "Changed1Pass",
                "confirm_password": "Changed1Pass",
            },
            headers=_bearer(logged_in),
        )
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/me", headers=_bearer(other)).status_code == 401
        assert client.get("/v1/me", headers=_bearer(logged_in)).status_code == 200

    def test_delete_account(self, client, logged_in, test_user_email, test_user_password):
        wrong = client.request(
            "DELETE", "/v1/me", json={"password": "Wr0ngPassword"}, headers=_bearer(logged_in)
        )
        assert wrong.status_code == 401
        deleted = client.request(
            "DELETE", "/v1/me", json={"password": test_user_password}, headers=_bearer(logged_in)
        )
        assert deleted.status_code == 200
        assert client.get("/v1/me", headers=_bearer(logged_in)).status_code == 401
        assert _login(client, test_user_email, test_user_password).status_code == 401


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"
    assert body["checks"]["redis"] == {"status": "not_configured"}
