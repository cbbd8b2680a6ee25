"""Unit tests for the in-memory store contract."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from claimgate.storage.errors import DuplicateEmail, MissingAccount
from claimgate.storage.models import Role


def _invite(store, email="a@x.com", hours=24):
    return store.create_account(
        email,
        "Alice",
        claim_token=f"token-{email}",
        claim_token_expires=datetime.now(timezone.utc) + timedelta(hours=hours),
    )


class TestAccounts:
    def test_account_needs_exactly_one_credential_shape(self, store):
        with pytest.raises(ValueError):
            store.create_account("a@x.com", "A")
        with pytest.raises(ValueError):
            store.create_account(
                "a@x.com",
                "A",
                password_hash="h",
                claim_token="t",
                claim_token_expires=datetime.now(timezone.utc),
            )

    def test_duplicate_email(self, store):
        store.create_account("a@x.com", "A", password_hash="h")

        with pytest.raises(DuplicateEmail):
            _invite(store)

    def test_returned_objects_are_copies(self, store):
        account = _invite(store)
        account.name = "Mallory"

        assert store.get_account(account.id).name == "Alice"

    def test_update_whitelists_fields(self, store):
        account = _invite(store)

        with pytest.raises(ValueError):
            store.update_account(account.id, claimed=True)
        assert store.update_account(account.id, role=Role.ADMIN).role == Role.ADMIN
        assert store.update_account("missing", name="x") is None

    def test_list_filters_and_pages(self, store):
        for i in range(5):
            store.create_account(f"user{i}@x.com", f"U{i}", password_hash="h")
        store.create_account("boss@x.com", "Boss", role=Role.ADMIN, password_hash="h")

        admins, total_admins = store.list_accounts(role=Role.ADMIN)
        page, total = store.list_accounts(offset=2, limit=2)
        matching, _ = store.list_accounts(email="USER3")

        assert [a.email for a in admins] == ["boss@x.com"] and total_admins == 1
        assert len(page) == 2 and total == 6
        assert [a.email for a in matching] == ["user3@x.com"]

    def test_delete_cascades(self, store):
        account = store.create_account("a@x.com", "A", password_hash="h")
        store.create_credential_session(account.id, timedelta(hours=1))
        store.create_temp_session(account.id, timedelta(hours=1))
        grant = store.create_login_grant(account.id, timedelta(minutes=2))

        assert store.delete_account(account.id) is True
        assert store.delete_account(account.id) is False
        assert store.credential_sessions == {}
        assert store.temp_sessions == {}
        assert store.pop_login_grant(grant.token) is None

    def test_sessions_need_an_account(self, store):
        with pytest.raises(MissingAccount):
            store.create_temp_session("ghost", timedelta(hours=1))


class TestConditionalClaim:
    def test_claim_clears_token(self, store):
        account = _invite(store)

        claimed = store.claim_account(account.claim_token, "digest", datetime.now(timezone.utc))

        assert claimed.claimed is True
        assert claimed.password_hash == "digest"
        assert claimed.claim_token is None and claimed.claim_token_expires is None

    def test_expired_token_loses(self, store):
        account = _invite(store)
        later = datetime.now(timezone.utc) + timedelta(hours=25)

        assert store.claim_account(account.claim_token, "digest", later) is None
        assert store.get_account(account.id).claimed is False

    def test_threads_race_single_winner(self, store):
        account = _invite(store)
        winners = []
        barrier = threading.Barrier(8)

        def attempt(i):
            barrier.wait()
            if store.claim_account(account.claim_token, f"d{i}", datetime.now(timezone.utc)):
                winners.append(i)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1

    def test_reissue_refused_after_claim(self, store):
        account = _invite(store)
        store.claim_account(account.claim_token, "digest", datetime.now(timezone.utc))

        assert store.reissue_claim_token(account.id, "new", datetime.now(timezone.utc)) is None


class TestGrantsAndClients:
    def test_login_grant_pops_once(self, store):
        account = store.create_account("a@x.com", "A", password_hash="h")
        grant = store.create_login_grant(account.id, timedelta(minutes=2))

        assert store.pop_login_grant(grant.token).account_id == account.id
        assert store.pop_login_grant(grant.token) is None

    def test_service_client_update_whitelist(self, store):
        store.create_service_client("c", "C", "secret", allowed_scopes=["user:read"])

        with pytest.raises(ValueError):
            store.update_service_client("c", id="other")
        assert store.update_service_client("missing", name="x") is None
        assert store.update_service_client("c", name="Renamed").name == "Renamed"

    def test_expired_login_grants_deleted(self, store):
        account = store.create_account("a@x.com", "A", password_hash="h")
        live = store.create_login_grant(account.id, timedelta(minutes=2))
        store.create_login_grant(account.id, timedelta(seconds=-1))

        assert store.delete_expired_login_grants(datetime.now(timezone.utc)) == 1
        assert list(store.login_grants) == [live.token]
