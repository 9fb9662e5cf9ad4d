import base64
import hashlib
import hmac
import json
import re
import time

import pytest

from storefront_auth.service.errors import InvalidOrExpiredTokenError
from storefront_auth.service.tokens import (
    EMAIL_VERIFY_PURPOSE,
    PASSWORD_RESET_PURPOSE,
    TokenSigner,
    generate_opaque_token,
)

SECRET = "unit-test-signing-secret-0123456789abcdef"


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _forge(payload: dict, *, secret: str = SECRET, alg: str = "HS256") -> str:
    signing_input = f"{_segment({'alg': alg, 'typ': 'JWT'})}.{_segment(payload)}"
    sig = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{base64.urlsafe_b64encode(sig).decode().rstrip('=')}"


@pytest.fixture
def signer():
    return TokenSigner(SECRET, issuer="storefront-auth", access_ttl_seconds=900)


class TestOpaqueTokens:
    def test_url_safe_without_padding(self):
        token = generate_opaque_token(48)
        assert re.fullmatch(r"[A-Za-z0-9_-]+", token)
        assert "=" not in token
        assert len(token) == 64

    def test_tokens_are_unique(self):
        assert len({generate_opaque_token() for _ in range(200)}) == 200

    def test_rejects_low_entropy(self):
        with pytest.raises(ValueError):
            generate_opaque_token(8)


class TestAccessTokens:
    def test_issue_and_verify(self, signer):
        token = signer.issue_access_token("user-1", "customer")
        claims = signer.verify_access_token(token)
        assert claims.subject == "user-1"
        assert claims.role == "customer"
        assert claims.expires_at - claims.issued_at == 900
        assert claims.token_id

    def test_payload_claims(self, signer):
        token = signer.issue_access_token("user-1", "admin")
        payload = signer.decode(token)
        assert payload["iss"] == "storefront-auth"
        assert payload["token_type"] == "access"
        assert {"sub", "role", "iat", "exp", "jti"} <= set(payload)

    def test_expired_token_rejected(self):
        now = int(time.time())
        token = _forge(
            {"sub": "u", "role": "customer", "iat": now - 60, "exp": now - 1,
             "iss": "storefront-auth", "token_type": "access"}
        )
        signer = TokenSigner(SECRET, issuer="storefront-auth")
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_access_token(token)

    def test_token_valid_for_an_hour_accepted(self):
        now = int(time.time())
        token = _forge(
            {"sub": "u", "role": "customer", "iat": now, "exp": now + 3600,
             "iss": "storefront-auth", "token_type": "access"}
        )
        signer = TokenSigner(SECRET, issuer="storefront-auth")
        assert signer.verify_access_token(token).subject == "u"

    def test_wrong_secret_rejected(self, signer):
        other = TokenSigner("another-secret-entirely-0123456789", issuer="storefront-auth")
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_access_token(other.issue_access_token("u", "customer"))

    def test_tampered_payload_rejected(self, signer):
        header, _, sig = signer.issue_access_token("u", "customer").split(".")
        now = int(time.time())
        forged_payload = _segment(
            {"sub": "u", "role": "admin", "iat": now, "exp": now + 900,
             "iss": "storefront-auth", "token_type": "access"}
        )
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_access_token(f"{header}.{forged_payload}.{sig}")

    def test_alg_none_rejected(self, signer):
        now = int(time.time())
        token = _forge(
            {"sub": "u", "role": "customer", "exp": now + 60,
             "iss": "storefront-auth", "token_type": "access"},
            alg="none",
        )
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_access_token(token)

    def test_wrong_issuer_rejected(self, signer):
        now = int(time.time())
        token = _forge(
            {"sub": "u", "role": "customer", "exp": now + 60,
             "iss": "someone-else", "token_type": "access"}
        )
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_access_token(token)

    @pytest.mark.parametrize(
        "token",
        [
            None,
            "",
            "abc",
            "a.b",
            "a.b.c.d",
            "!!!.???.***",
            "e30.e30.é",
            # valid HS256 header, lone surrogate in the payload segment
            "eyJhbGciOiJIUzI1NiJ9.e30\ud800.abc",
        ],
    )
    def test_malformed_tokens_rejected(self, signer, token):
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_access_token(token)

    def test_action_token_is_not_an_access_token(self, signer):
        token = signer.issue_action_token("u", EMAIL_VERIFY_PURPOSE, 60)
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_access_token(token)

    def test_secret_required(self):
        with pytest.raises(ValueError):
            TokenSigner("", issuer="storefront-auth")


class TestActionTokens:
    def test_purpose_round_trip(self, signer):
        token = signer.issue_action_token("user-9", PASSWORD_RESET_PURPOSE, 3600)
        assert signer.verify_action_token(token, PASSWORD_RESET_PURPOSE) == "user-9"

    def test_purpose_mismatch_rejected(self, signer):
        token = signer.issue_action_token("user-9", EMAIL_VERIFY_PURPOSE, 3600)
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_action_token(token, PASSWORD_RESET_PURPOSE)

    def test_access_token_cannot_reset_password(self, signer):
        token = signer.issue_access_token("user-9", "customer")
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_action_token(token, PASSWORD_RESET_PURPOSE)

    def test_expired_action_token_rejected(self, signer):
        token = signer.issue_action_token("user-9", EMAIL_VERIFY_PURPOSE, -1)
        with pytest.raises(InvalidOrExpiredTokenError):
            signer.verify_action_token(token, EMAIL_VERIFY_PURPOSE)
