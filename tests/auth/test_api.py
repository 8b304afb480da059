"""Tests for auth API routes, through the assembled app."""

import inspect

import pyotp
import pytest
import redis
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from api.app import create_app
from auth.api import create_auth_router
from auth.notifications import QUEUE_KEY
from tests.conftest import TEST_EMAIL, TEST_PASSWORD


@pytest.fixture
def client(auth_service, token_issuer):
    """App wired to the in-memory auth stack."""
    return TestClient(create_app(auth_service, token_issuer))


@pytest.fixture
def tokens(client, user):
    response = client.post("/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})
    return response.json()["data"]["tokens"]


def _bearer(tokens: dict) -> dict:
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def _queued_token(valkey) -> str:
    return valkey.pop_json(QUEUE_KEY)["link"].split("token=", 1)[1]


class TestRegisterAndLogin:
    """Public credential routes."""

    def test_register(self, client):
        response = client.post(
            "/auth/register",
            json={"email": "new@example.com", "password": TEST_PASSWORD, "nickname": "Neo"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["user"]["email"] == "new@example.com"
        assert body["data"]["user"]["email_verified"] is False
        assert "password_hash" not in body["data"]["user"]
        assert body["data"]["tokens"]["token_type"] == "Bearer"

    def test_register_duplicate(self, client, user):
        response = client.post("/auth/register", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ALREADY_EXISTS"

    def test_register_weak_password_lists_violations(self, client):
        response = client.post("/auth/register", json={"email": "new@example.com", "password": "aaa"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "WEAK_PASSWORD"
        assert len(error["details"]) == 3

    def test_register_invalid_email(self, client):
        response = client.post("/auth/register", json={"email": "nope", "password": TEST_PASSWORD})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_login(self, client, user):
        response = client.post("/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requires_mfa"] is False
        assert data["tokens"]["expires_in"] == 900

    def test_login_wrong_password(self, client, user):
        response = client.post("/auth/login", json={"email": TEST_EMAIL, "password": "Wrong!Pass1"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_login_rate_limited(self, client, user, clock):
        clock.align_to_window(300)
        for _ in range(5):
            client.post("/auth/login", json={"email": TEST_EMAIL, "password": "Wrong!Pass1"})

        response = client.post("/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"

    def test_login_inactive(self, client, make_user):
        make_user(is_active=False)

        response = client.post("/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCOUNT_INACTIVE"

    def test_mfa_login(self, client, make_user):
        secret = pyotp.random_base32()
        make_user(mfa_enabled=True, mfa_secret=secret)

        first = client.post("/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})
        data = first.json()["data"]
        assert data["requires_mfa"] is True
        assert data["tokens"] is None

        second = client.post(
            "/auth/login/mfa",
            json={"mfa_token": data["mfa_token"], "code": pyotp.TOTP(secret).now()},
        )

        assert second.status_code == 200
        assert second.json()["data"]["tokens"]["access_token"]

    def test_cache_outage_is_503(self, client, user, valkey):
        valkey.fail_with = redis.ConnectionError("down")

        response = client.post("/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


class TestSessionRoutes:
    """Refresh, me and logout."""

    def test_me(self, client, tokens, user):
        response = client.get("/auth/me", headers=_bearer(tokens))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == str(user.id)

    def test_me_without_token(self, client):
        assert client.get("/auth/me").status_code == 401

    def test_refresh_rotates(self, client, tokens):
        first = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        second = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != tokens["refresh_token"]
        assert second.status_code == 401
        assert second.json()["error"]["code"] == "INVALID_TOKEN"

    def test_logout_revokes_access(self, client, tokens):
        response = client.post(
            "/auth/logout", headers=_bearer(tokens), json={"refresh_token": tokens["refresh_token"]}
        )

        assert response.status_code == 200
        assert client.get("/auth/me", headers=_bearer(tokens)).status_code == 401
        refresh = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_without_body(self, client, tokens):
        assert client.post("/auth/logout", headers=_bearer(tokens)).status_code == 200

    def test_change_password_ends_session(self, client, tokens):
        response = client.post(
            "/auth/change-password",
            headers=_bearer(tokens),
            json={"old_password": TEST_PASSWORD, "new_password": "N3w!Secret"},
        )

        assert response.status_code == 200
        assert client.get("/auth/me", headers=_bearer(tokens)).status_code == 401

    def test_request_id_echoed(self, client, tokens):
        response = client.get("/auth/me", headers={**_bearer(tokens), "X-Request-ID": "req-7"})

        assert response.headers["X-Request-ID"] == "req-7"
        assert response.json()["meta"]["request_id"] == "req-7"


class TestEmailRoutes:
    """Verification and password reset links."""

    def test_verify_email(self, client, make_user, valkey):
        make_user()

        sent = client.post("/auth/verification-email", json={"email": TEST_EMAIL})
        verified = client.post("/auth/verify-email", json={"token": _queued_token(valkey)})

        assert sent.status_code == 200
        assert verified.status_code == 200

    def test_verification_email_unknown_user(self, client):
        response = client.post("/auth/verification-email", json={"email": "nobody@example.com"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_verification_email_already_verified(self, client, user):
        response = client.post("/auth/verification-email", json={"email": TEST_EMAIL})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ALREADY_VERIFIED"

    def test_reset_email_same_answer_for_unknown(self, client, user):
        known = client.post("/auth/password-reset-email", json={"email": TEST_EMAIL})
        unknown = client.post("/auth/password-reset-email", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password(self, client, user, valkey):
        client.post("/auth/password-reset-email", json={"email": TEST_EMAIL})

        response = client.post(
            "/auth/reset-password",
            json={"token": _queued_token(valkey), "new_password": "N3w!Secret"},
        )

        assert response.status_code == 200
        login = client.post("/auth/login", json={"email": TEST_EMAIL, "password": "N3w!Secret"})
        assert login.status_code == 200

    def test_reset_password_bad_token(self, client):
        response = client.post("/auth/reset-password", json={"token": "junk", "new_password": "N3w!Secret"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"


class TestPasswordRoutes:
    """Informational password endpoints."""

    def test_policy(self, client):
        data = client.get("/auth/password-policy").json()["data"]

        assert data["min_length"] == 8
        assert data["max_length"] == 128

    def test_strength(self, client):
        data = client.post("/auth/password-strength", json={"password": TEST_PASSWORD}).json()["data"]

        assert data == {"score": 75, "label": "Strong", "violations": []}

    def test_strength_reports_violations(self, client):
        data = client.post("/auth/password-strength", json={"password": "password"}).json()["data"]

        assert data["label"] == "VeryWeak"
        assert data["violations"]


class TestMfaRoutes:
    """Enrollment through the API."""

    def test_enroll_confirm_disable(self, client, tokens):
        enrollment = client.post("/auth/mfa/enroll", headers=_bearer(tokens)).json()["data"]
        code = pyotp.TOTP(enrollment["secret"]).now()

        confirmed = client.post("/auth/mfa/confirm", headers=_bearer(tokens), json={"code": code})
        assert confirmed.json()["data"] == {"mfa_enabled": True}

        login = client.post("/auth/login", json={"email": TEST_EMAIL, "password": TEST_PASSWORD})
        assert login.json()["data"]["requires_mfa"] is True

        disabled = client.post("/auth/mfa/disable", headers=_bearer(tokens), json={"password": TEST_PASSWORD})
        assert disabled.json()["data"] == {"mfa_enabled": False}

    def test_enroll_requires_auth(self, client):
        assert client.post("/auth/mfa/enroll").status_code == 401


class TestHandlers:
    """Service calls block on bcrypt, Postgres and Valkey."""

    def test_auth_routes_run_in_threadpool(self, auth_service):
        routes = [r for r in create_auth_router(auth_service).routes if isinstance(r, APIRoute)]

        assert routes
        assert [r.path for r in routes if inspect.iscoroutinefunction(r.endpoint)] == []


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "ok"}
