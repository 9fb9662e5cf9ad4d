import threading
from datetime import timedelta

import pytest

from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.memory import MemoryStore
from storefront_auth.storage.models import RefreshTokenRecord, User, UserStatus, utcnow


@pytest.fixture
def store():
    return MemoryStore()


def _record(user_id: str, digest: str, ttl=timedelta(days=1)) -> RefreshTokenRecord:
    return RefreshTokenRecord.new(user_id, digest, ttl)


class TestUsers:
    def test_email_is_unique_case_insensitively(self, store):
        store.insert_user(User.new("Alice@Example.com", "h"))
        with pytest.raises(ConstraintViolation):
            store.insert_user(User.new("alice@example.com", "h"))

    def test_find_by_email_normalizes(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        assert store.find_user_by_email("  ALICE@example.com ").id == user.id
        assert store.find_user_by_email("bob@example.com") is None

    def test_returned_users_are_copies(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        user.role = "admin"
        assert store.find_user_by_id(user.id).role == "customer"

    def test_update_user_fields(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        updated = store.update_user_fields(
            user.id, email_verified=True, status=UserStatus.SUSPENDED
        )
        assert updated.email_verified is True
        assert updated.is_active is False
        assert store.update_user_fields("missing", email_verified=True) is None

    def test_update_rejects_unknown_fields(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        with pytest.raises(ValueError):
            store.update_user_fields(user.id, email="new@example.com")


class TestRefreshTokens:
    def test_insert_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.insert_refresh_token(_record("ghost", "d1"))

    def test_digest_is_unique(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        store.insert_refresh_token(_record(user.id, "d1"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_refresh_token(_record(user.id, "d1"))
        assert excinfo.value.detail == {"field": "token_digest"}

    def test_conditional_revoke(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        record = store.insert_refresh_token(_record(user.id, "d1"))
        stamp = utcnow()
        revoked = store.revoke_refresh_token_if_active(record.id, used_at=stamp)
        assert revoked.is_revoked is True
        assert revoked.last_used_at == stamp
        assert store.revoke_refresh_token_if_active(record.id) is None
        assert store.revoke_refresh_token_if_active("missing") is None

    def test_conditional_revoke_has_one_winner_across_threads(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        record = store.insert_refresh_token(_record(user.id, "d1"))
        barrier = threading.Barrier(8)
        wins = []

        def worker():
            barrier.wait()
            if store.revoke_refresh_token_if_active(record.id):
                wins.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1

    def test_delete_expired_clears_digest_index(self, store):
        user = store.insert_user(User.new("alice@example.com", "h"))
        store.insert_refresh_token(_record(user.id, "old", ttl=timedelta(seconds=-5)))
        store.insert_refresh_token(_record(user.id, "new"))
        assert store.delete_expired_refresh_tokens() == 1
        assert store.find_refresh_token_by_digest("old") is None
        assert store.find_refresh_token_by_digest("new") is not None
        # digest slot is free again
        store.insert_refresh_token(_record(user.id, "old"))
