from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from storefront_auth.logging import get_logger
from storefront_auth.service.errors import EmptyInputError
from storefront_auth.service.tokens import generate_opaque_token
from storefront_auth.storage.models import RefreshTokenRecord, utcnow


class RefreshTokenRepository(Protocol):
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def find_refresh_token_by_digest(self, digest: str) -> Optional[RefreshTokenRecord]: ...

    def update_refresh_token(self, token_id: str, **patch) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token_if_active(
        self, token_id: str, used_at: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, used_at: Optional[datetime] = None
    ) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class RefreshTokenStore:
    """Mints, looks up and revokes opaque refresh tokens.

    Only ``HMAC-SHA256(pepper, secret)`` is persisted. Losing the pepper
    invalidates every outstanding refresh token, and a leaked table cannot be
    replayed without it.
    """

    def __init__(
        self,
        repository: RefreshTokenRepository,
        pepper: str,
        *,
        ttl: timedelta = timedelta(days=30),
        token_bytes: int = 48,
    ) -> None:
        if not pepper:
            raise ValueError("refresh token pepper is required")
        self.repository = repository
        self._pepper = pepper.encode()
        self.ttl = ttl
        self.token_bytes = token_bytes
        self.logger = get_logger(__name__)

    def digest(self, plaintext: str) -> str:
        return hmac.new(self._pepper, plaintext.encode(), hashlib.sha256).hexdigest()

    def compare(self, plaintext: Optional[str], digest: Optional[str]) -> bool:
        if not plaintext or not digest:
            return False
        try:
            expected = self.digest(plaintext)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(expected.encode(), digest.encode())

    def create(
        self,
        user_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> Tuple[str, RefreshTokenRecord]:
        """Return ``(plaintext, record)``; the plaintext is not retrievable later."""
        plaintext = generate_opaque_token(self.token_bytes)
        record = RefreshTokenRecord.new(
            user_id,
            self.digest(plaintext),
            ttl or self.ttl,
            ip_address=ip,
            user_agent=user_agent,
        )
        stored = self.repository.insert_refresh_token(record)
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            record_id=stored.id,
            expires_at=stored.expires_at.isoformat(),
        )
        return plaintext, stored

    def find_by_plaintext(self, plaintext: Optional[str]) -> Optional[RefreshTokenRecord]:
        if not plaintext:
            raise EmptyInputError("refresh token is required", detail={"field": "refreshToken"})
        try:
            digest = self.digest(plaintext)
        except UnicodeEncodeError:
            # lone surrogates; never one of our tokens
            return None
        return self.repository.find_refresh_token_by_digest(digest)

    def revoke(self, record_id: str) -> Optional[RefreshTokenRecord]:
        return self.repository.update_refresh_token(
            record_id, is_revoked=True, last_used_at=utcnow()
        )

    def consume(self, record_id: str) -> Optional[RefreshTokenRecord]:
        """Revoke only if still active; ``None`` means another caller got there first."""
        return self.repository.revoke_refresh_token_if_active(record_id, used_at=utcnow())

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.repository.revoke_user_refresh_tokens(user_id, used_at=utcnow())
        self.logger.warning("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    def prune_expired(self) -> int:
        removed = self.repository.delete_expired_refresh_tokens(utcnow())
        if removed:
            self.logger.info("refresh_tokens_pruned", count=removed)
        return removed
