import hashlib
import hmac
from datetime import timedelta

import pytest

from storefront_auth.service.errors import EmptyInputError
from storefront_auth.service.refresh_tokens import RefreshTokenStore
from storefront_auth.storage.memory import MemoryStore
from storefront_auth.storage.models import User

PEPPER = "unit-test-pepper-abcdefghijklmnopqrstuvwxyz"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.insert_user(User.new("shopper@example.com", "hash"))


@pytest.fixture
def tokens(store):
    return RefreshTokenStore(store, PEPPER, ttl=timedelta(days=30))


class TestDigest:
    def test_digest_is_hmac_sha256_with_pepper(self, tokens):
        expected = hmac.new(PEPPER.encode(), b"secret-value", hashlib.sha256).hexdigest()
        assert tokens.digest("secret-value") == expected

    def test_pepper_changes_digest(self, store, tokens):
        other = RefreshTokenStore(store, PEPPER + "-rotated")
        assert other.digest("secret-value") != tokens.digest("secret-value")

    def test_compare_matches_only_the_right_secret(self, tokens):
        digest = tokens.digest("secret-value")
        assert tokens.compare("secret-value", digest) is True
        assert tokens.compare("secret-valuf", digest) is False
        assert tokens.compare("", digest) is False
        assert tokens.compare("secret-value", None) is False

    def test_compare_uses_constant_time_comparison(self, tokens, monkeypatch):
        calls = []
        real = hmac.compare_digest

        def spy(a, b):
            calls.append((a, b))
            return real(a, b)

        monkeypatch.setattr("storefront_auth.service.refresh_tokens.hmac.compare_digest", spy)
        tokens.compare("secret-value", tokens.digest("secret-value"))
        assert len(calls) == 1

    def test_pepper_required(self, store):
        with pytest.raises(ValueError):
            RefreshTokenStore(store, "")


class TestCreate:
    def test_only_digest_is_persisted(self, store, tokens, user):
        plaintext, record = tokens.create(user.id, ip="10.0.0.1", user_agent="pytest")
        stored = store.list_refresh_tokens(user.id)
        assert len(stored) == 1
        assert stored[0].token_digest == tokens.digest(plaintext)
        assert plaintext not in repr(stored[0])
        assert record.ip_address == "10.0.0.1"
        assert record.user_agent == "pytest"
        assert record.is_revoked is False
        assert record.last_used_at is None

    def test_expiry_uses_ttl(self, tokens, user):
        _, record = tokens.create(user.id)
        assert record.expires_at - record.created_at == timedelta(days=30)
        _, short = tokens.create(user.id, ttl=timedelta(minutes=5))
        assert short.expires_at - short.created_at == timedelta(minutes=5)

    def test_each_create_is_a_new_secret(self, tokens, user):
        first, _ = tokens.create(user.id)
        second, _ = tokens.create(user.id)
        assert first != second


class TestLookupAndRevoke:
    def test_find_by_plaintext(self, tokens, user):
        plaintext, record = tokens.create(user.id)
        found = tokens.find_by_plaintext(plaintext)
        assert found is not None
        assert found.id == record.id
        assert tokens.find_by_plaintext(plaintext + "x") is None

    def test_unencodable_secret_is_unknown(self, tokens, user):
        tokens.create(user.id)
        assert tokens.find_by_plaintext("abc\ud800def") is None
        assert tokens.compare("abc\ud800def", tokens.digest("abcdef")) is False

    def test_find_requires_secret(self, tokens):
        with pytest.raises(EmptyInputError):
            tokens.find_by_plaintext("")

    def test_revoke_stamps_last_used(self, tokens, user):
        plaintext, record = tokens.create(user.id)
        revoked = tokens.revoke(record.id)
        assert revoked.is_revoked is True
        assert revoked.last_used_at is not None
        assert tokens.find_by_plaintext(plaintext).is_revoked is True

    def test_revoke_unknown_record(self, tokens):
        assert tokens.revoke("missing") is None

    def test_consume_succeeds_once(self, tokens, user):
        _, record = tokens.create(user.id)
        assert tokens.consume(record.id) is not None
        assert tokens.consume(record.id) is None

    def test_revoke_all_for_user(self, store, tokens, user):
        other = store.insert_user(User.new("other@example.com", "hash"))
        for _ in range(3):
            tokens.create(user.id)
        other_secret, _ = tokens.create(other.id)
        assert tokens.revoke_all_for_user(user.id) == 3
        assert all(r.is_revoked for r in store.list_refresh_tokens(user.id))
        assert tokens.find_by_plaintext(other_secret).is_revoked is False
        assert tokens.revoke_all_for_user(user.id) == 0


class TestPrune:
    def test_prune_removes_only_expired(self, tokens, user):
        expired_secret, _ = tokens.create(user.id, ttl=timedelta(seconds=-1))
        live_secret, _ = tokens.create(user.id)
        assert tokens.prune_expired() == 1
        assert tokens.find_by_plaintext(expired_secret) is None
        assert tokens.find_by_plaintext(live_secret) is not None
        assert tokens.prune_expired() == 0
