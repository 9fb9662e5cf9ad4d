from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from storefront_auth.logging import get_logger
from storefront_auth.service.errors import InvalidOrExpiredTokenError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
EMAIL_VERIFY_PURPOSE = "email_verify"
PASSWORD_RESET_PURPOSE = "password_reset"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def generate_opaque_token(byte_length: int = 48) -> str:
    """Random bearer secret, base64url without padding, no embedded structure."""
    if byte_length < 16:
        raise ValueError("opaque tokens need at least 16 bytes of entropy")
    return _encode_segment(secrets.token_bytes(byte_length))


@dataclass
class AccessTokenClaims:
    subject: str
    role: str
    issued_at: int
    expires_at: int
    token_id: Optional[str] = None


class TokenSigner:
    """Issues and verifies HS256 JWTs.

    Access tokens are short-lived and have no server-side revocation; the
    lifetime passed in here bounds how long a leaked token stays usable.
    Single-purpose action tokens (email verification, password reset) are
    issued by a signer constructed with a separate secret.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        access_ttl_seconds: int = 15 * 60,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.leeway_seconds = leeway_seconds

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: Optional[str]) -> dict[str, Any]:
        """Check structure, algorithm, signature, issuer and expiry; return the payload."""
        if not token:
            raise InvalidOrExpiredTokenError("token missing")
        if not token.isascii():
            raise InvalidOrExpiredTokenError("token malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidOrExpiredTokenError("token malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidOrExpiredTokenError("token header unreadable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidOrExpiredTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected_sig, sig_b64.encode("utf-8", "replace")):
            raise InvalidOrExpiredTokenError("token signature mismatch")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidOrExpiredTokenError("token payload unreadable")
        if not isinstance(payload, dict):
            raise InvalidOrExpiredTokenError("token payload unreadable")
        if payload.get("iss") != self.issuer:
            raise InvalidOrExpiredTokenError("token issuer mismatch")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidOrExpiredTokenError("token expiry missing")
        if exp_ts <= time.time() - self.leeway_seconds:
            raise InvalidOrExpiredTokenError("token expired")
        return payload

    def issue_access_token(self, subject_id: str, role: str) -> str:
        now = int(time.time())
        return self.encode(
            {
                "sub": subject_id,
                "role": role,
                "iat": now,
                "exp": now + self.access_ttl_seconds,
                "iss": self.issuer,
                "jti": str(uuid.uuid4()),
                "token_type": ACCESS_TOKEN_TYPE,
            }
        )

    def verify_access_token(self, token: Optional[str]) -> AccessTokenClaims:
        payload = self.decode(token)
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise InvalidOrExpiredTokenError("not an access token")
        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise InvalidOrExpiredTokenError("token subject missing")
        return AccessTokenClaims(
            subject=subject,
            role=str(payload.get("role") or ""),
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
            token_id=payload.get("jti"),
        )

    def issue_action_token(self, subject_id: str, purpose: str, ttl_seconds: int) -> str:
        now = int(time.time())
        return self.encode(
            {
                "sub": subject_id,
                "purpose": purpose,
                "iat": now,
                "exp": now + ttl_seconds,
                "iss": self.issuer,
                "jti": str(uuid.uuid4()),
                "token_type": "action",
            }
        )

    def verify_action_token(self, token: Optional[str], purpose: str) -> str:
        """Return the subject id when the token is valid for ``purpose``."""
        payload = self.decode(token)
        if payload.get("token_type") != "action" or payload.get("purpose") != purpose:
            raise InvalidOrExpiredTokenError("token purpose mismatch")
        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise InvalidOrExpiredTokenError("token subject missing")
        return subject
