"""Integration tests for the end-user authentication flows.

Covers password registration and login, the claim link (preview, continue
without claiming, claim, login grant) and the session status endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from claimgate import app as app_module
from claimgate.service.runtime import get_runtime
from claimgate.storage.models import Role


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def invitation():
    return get_runtime().claims.issue_claim("invitee@example.com", "Invitee")


PASSWORD = "CorrectHorse42"


def _register(client, email="user@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "name": "Test User", "password": password},
    )


class TestPasswordAccounts:
    def test_register_signs_in(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "user@example.com"
        assert body["data"]["user"]["claimed"] is True
        assert client.cookies.get("session_id")

        me = client.get("/v1/me")
        assert me.status_code == 200
        assert me.json()["data"]["session"]["auth_type"] == "credentials"

    def test_register_normalizes_email(self, client):
        response = _register(client, email="  Mixed.Case@Example.COM ")

        assert response.json()["data"]["user"]["email"] == "mixed.case@example.com"

    def test_register_duplicate_is_conflict(self, client):
        _register(client)

        response = _register(TestClient(app_module.app))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_over_pending_invitation_is_conflict(self, client, invitation):
        response = _register(client, email="invitee@example.com")

        assert response.status_code == 409

    def test_short_password_rejected(self, client):
        response = _register(client, password="short")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_login_and_logout(self, client):
        _register(TestClient(app_module.app))

        login = client.post(
            "/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200
        assert client.get("/v1/me").status_code == 200

        assert client.post("/v1/auth/logout").status_code == 200
        assert client.get("/v1/me").status_code == 401

    def test_session_header_accepted(self, client):
        _register(client)
        session_id = client.cookies.get("session_id")

        fresh = TestClient(app_module.app)
        response = fresh.get("/v1/me", headers={"session_id": session_id})

        assert response.status_code == 200

    @pytest.mark.parametrize(
        "email,password",
        [("user@example.com", "WrongPassword1"), ("nobody@example.com", PASSWORD)],
    )
    def test_bad_credentials_indistinguishable(self, client, email, password):
        _register(TestClient(app_module.app))

        response = client.post("/v1/auth/login", json={"email": email, "password": password})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_unclaimed_account_cannot_log_in(self, client, invitation):
        response = client.post(
            "/v1/auth/login", json={"email": "invitee@example.com", "password": PASSWORD}
        )

        assert response.status_code == 401


class TestClaimFlow:
    def test_preview(self, client, invitation):
        response = client.get("/v1/auth/claim", params={"token": invitation.claim_token})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == "invitee@example.com"
        assert data["role"] == "USER"

    def test_preview_unknown_token(self, client):
        response = client.get("/v1/auth/claim", params={"token": "nope"})

        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"action": "request_new_invitation"}

    def test_continue_then_claim_then_grant(self, client, invitation):
        cont = client.post("/v1/auth/continue", json={"token": invitation.claim_token})
        assert cont.status_code == 200
        assert cont.json()["data"]["is_temporary"] is True
        assert client.cookies.get("temp_session_token")

        status = client.get("/v1/auth/session").json()["data"]
        assert status["is_temporary"] is True
        assert status["auth_type"] == "token"
        assert status["status"] == "authenticated_temporary"
        assert status["permissions"]["can_claim_account"] is True
        assert status["permissions"]["can_access_admin"] is False

        token_info = client.get("/v1/auth/claim-token")
        assert token_info.status_code == 200
        assert token_info.json()["data"]["claim_token"] == invitation.claim_token

        claimed = client.post(
            "/v1/auth/claim", json={"token": invitation.claim_token, "password": PASSWORD}
        )
        assert claimed.status_code == 200
        grant = claimed.json()["data"]["login_grant"]
        assert claimed.json()["data"]["user"]["claimed"] is True
        assert not client.cookies.get("temp_session_token")

        redeemed = client.post("/v1/auth/grant", json={"grant": grant})
        assert redeemed.status_code == 200
        assert client.cookies.get("session_id")

        status = client.get("/v1/auth/session").json()["data"]
        assert status["auth_type"] == "credentials"
        assert status["is_temporary"] is False

        login = TestClient(app_module.app).post(
            "/v1/auth/login", json={"email": "invitee@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200

    def test_claim_token_single_use(self, client, invitation):
        first = client.post(
            "/v1/auth/claim", json={"token": invitation.claim_token, "password": PASSWORD}
        )
        second = client.post(
            "/v1/auth/claim", json={"token": invitation.claim_token, "password": PASSWORD}
        )

        assert first.status_code == 200
        assert second.status_code == 401
        assert second.json()["error"]["code"] == "unauthorized"

    def test_login_grant_single_use(self, client, invitation):
        claimed = client.post(
            "/v1/auth/claim", json={"token": invitation.claim_token, "password": PASSWORD}
        )
        grant = claimed.json()["data"]["login_grant"]

        assert client.post("/v1/auth/grant", json={"grant": grant}).status_code == 200
        assert client.post("/v1/auth/grant", json={"grant": grant}).status_code == 401

    def test_claim_with_short_password_leaves_token_usable(self, client, invitation):
        response = client.post(
            "/v1/auth/claim", json={"token": invitation.claim_token, "password": "short"}
        )

        assert response.status_code == 400
        assert client.get(
            "/v1/auth/claim", params={"token": invitation.claim_token}
        ).status_code == 200

    def test_admin_invitation_cannot_continue(self, client):
        admin_invite = get_runtime().claims.issue_claim(
            "boss@example.com", "Boss", role=Role.ADMIN
        )

        response = client.post("/v1/auth/continue", json={"token": admin_invite.claim_token})

        assert response.status_code == 403
        assert not client.cookies.get("temp_session_token")

    def test_logout_temp(self, client, invitation):
        client.post("/v1/auth/continue", json={"token": invitation.claim_token})

        assert client.post("/v1/auth/logout-temp").status_code == 200
        assert client.get("/v1/me").status_code == 401
        assert get_runtime().temp_sessions.list_for_account(invitation.account.id) == []

    def test_claim_token_endpoint_requires_temporary_session(self, client):
        _register(client)

        assert client.get("/v1/auth/claim-token").status_code == 403
        assert TestClient(app_module.app).get("/v1/auth/claim-token").status_code == 401


class TestLinkLogin:
    def test_valid_token_redirects_to_claim_page(self, client, invitation):
        response = client.get(
            "/v1/auth/link-login",
            params={"token": invitation.claim_token},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == invitation.claim_url

    @pytest.mark.parametrize("token", ["", "bogus"])
    def test_invalid_token_redirects_to_signin(self, client, token):
        response = client.get(
            "/v1/auth/link-login", params={"token": token}, follow_redirects=False
        )

        assert response.status_code == 302
        assert response.headers["location"].endswith("/auth/signin?error=invalid-token")


class TestSessionStatus:
    def test_anonymous(self, client):
        data = client.get("/v1/auth/session").json()["data"]

        assert data["user"] is None
        assert data["auth_type"] == "none"
        assert data["permissions"]["is_authenticated"] is False

    def test_me_requires_authentication(self, client):
        response = client.get("/v1/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
