"""Unit tests for session resolution precedence and derived capabilities."""

from datetime import datetime, timedelta, timezone

import pytest

from claimgate.service.claims import ClaimTokenManager
from claimgate.service.resolver import (
    AuthStatus,
    AuthType,
    ResolvedSession,
    SessionResolver,
    token_auth_permitted,
)
from claimgate.service.temp_sessions import TemporarySessionManager
from claimgate.storage.models import Account, Role


@pytest.fixture
def claims(store, hasher, settings):
    return ClaimTokenManager(store, hasher, settings)


@pytest.fixture
def temp_sessions(store, claims, settings):
    return TemporarySessionManager(store, claims, settings)


@pytest.fixture
def resolver(store, temp_sessions):
    return SessionResolver(store, temp_sessions)


def _claimed(store, email, role=Role.USER):
    return store.create_account(email, email.split("@")[0], role=role, password_hash="digest")


class TestPrecedence:
    def test_nothing_presented(self, resolver):
        resolved = resolver.resolve()

        assert resolved.status == AuthStatus.UNAUTHENTICATED
        assert resolved.auth_type == AuthType.NONE
        assert not resolved.can_access_authenticated_area

    def test_credential_session_for_admin(self, resolver, store):
        admin = _claimed(store, "boss@x.com", Role.ADMIN)
        session = store.create_credential_session(admin.id, timedelta(hours=1))

        resolved = resolver.resolve(credential_session_id=session.id)

        assert resolved.status == AuthStatus.AUTHENTICATED_ADMIN
        assert resolved.role == Role.ADMIN
        assert resolved.auth_type == AuthType.CREDENTIALS
        assert resolved.can_access_admin_area
        assert not resolved.can_initiate_claim

    def test_credential_session_wins_over_temp_session(
        self, resolver, store, claims, temp_sessions
    ):
        user = _claimed(store, "u@x.com")
        session = store.create_credential_session(user.id, timedelta(hours=1))
        invitation = claims.issue_claim("a@x.com", "Alice")
        temp = temp_sessions.create_from_claim(invitation.claim_token)

        resolved = resolver.resolve(credential_session_id=session.id, temp_session_token=temp.token)

        assert resolved.account_id == user.id
        assert resolved.is_temporary is False

    def test_invalid_credential_session_falls_through_to_temp(
        self, resolver, claims, temp_sessions
    ):
        invitation = claims.issue_claim("a@x.com", "Alice")
        temp = temp_sessions.create_from_claim(invitation.claim_token)

        resolved = resolver.resolve(credential_session_id="stale", temp_session_token=temp.token)

        assert resolved.status == AuthStatus.AUTHENTICATED_TEMPORARY
        assert resolved.account_id == invitation.account.id

    def test_scenario_temp_session_is_temporary_user(self, resolver, claims, temp_sessions):
        invitation = claims.issue_claim("a@x.com", "Alice")
        temp = temp_sessions.create_from_claim(invitation.claim_token)

        resolved = resolver.resolve(temp_session_token=temp.token)

        assert resolved.is_authenticated
        assert resolved.is_temporary is True
        assert resolved.role == Role.USER
        assert resolved.auth_type == AuthType.TOKEN
        assert resolved.can_access_authenticated_area
        assert resolved.can_initiate_claim
        assert not resolved.can_access_admin_area


class TestTemporaryNeverAdmin:
    def test_account_promoted_after_temp_session_issued(
        self, resolver, store, claims, temp_sessions
    ):
        invitation = claims.issue_claim("a@x.com", "Alice")
        temp = temp_sessions.create_from_claim(invitation.claim_token)
        store.update_account(invitation.account.id, role=Role.ADMIN)

        resolved = resolver.resolve(temp_session_token=temp.token)

        assert resolved.role != Role.ADMIN
        assert not resolved.can_access_admin_area
        assert resolved.status == AuthStatus.UNAUTHENTICATED

    def test_temporary_identity_forces_user_role(self):
        """Even a stored ADMIN role comes out as USER for a token-link identity."""
        account = Account(id="1", email="a@x.com", name="A", role=Role.ADMIN)

        resolved = ResolvedSession.for_temporary(account, datetime.now(timezone.utc))

        assert resolved.role == Role.USER
        assert resolved.is_admin is False
        assert resolved.can_access_admin_area is False

    def test_central_rule(self):
        assert token_auth_permitted(Account(id="1", email="a", name="a", role=Role.USER))
        assert not token_auth_permitted(Account(id="2", email="b", name="b", role=Role.ADMIN))


class TestLazyCleanup:
    def test_expired_credential_session_deleted(self, resolver, store):
        user = _claimed(store, "u@x.com")
        session = store.create_credential_session(user.id, timedelta(hours=1))
        store.credential_sessions[session.id].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )

        resolved = resolver.resolve(credential_session_id=session.id)

        assert resolved.status == AuthStatus.UNAUTHENTICATED
        assert store.get_credential_session(session.id) is None

    def test_expired_temp_session_deleted(self, resolver, store, claims, temp_sessions):
        invitation = claims.issue_claim("a@x.com", "Alice")
        temp = temp_sessions.create_from_claim(invitation.claim_token)
        store.temp_sessions[temp.token].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )

        resolved = resolver.resolve(temp_session_token=temp.token)

        assert resolved.status == AuthStatus.UNAUTHENTICATED
        assert store.get_temp_session(temp.token) is None

    def test_permissions_bundle(self, resolver, store):
        user = _claimed(store, "u@x.com")
        session = store.create_credential_session(user.id, timedelta(hours=1))

        perms = resolver.resolve(credential_session_id=session.id).permissions()

        assert perms["is_authenticated"] is True
        assert perms["is_admin"] is False
        assert perms["can_claim_account"] is False
        assert perms["auth_type"] == "credentials"
