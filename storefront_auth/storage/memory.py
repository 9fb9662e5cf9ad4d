from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from storefront_auth.logging import get_logger
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.models import RefreshTokenRecord, User, utcnow

_USER_MUTABLE_FIELDS = frozenset(
    {
        "password_hash",
        "status",
        "role",
        "email_verified",
        "first_name",
        "last_name",
        "last_login_at",
    }
)
_REFRESH_MUTABLE_FIELDS = frozenset({"is_revoked", "last_used_at"})


class MemoryStore:
    """In-process store for development and tests.

    Records are copied on the way in and out so callers never share state
    with the store, the same way rows behave when read from PostgreSQL.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._digest_index: Dict[str, str] = {}
        # RLock for all data operations; conditional updates rely on it
        self._data_lock = threading.RLock()

    # users
    def insert_user(self, user: User) -> User:
        with self._data_lock:
            email = user.email.lower()
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            return replace(stored)

    def find_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user_fields(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **fields)
            self.users[user_id] = updated
            return replace(updated)

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if record.token_digest in self._digest_index:
                raise ConstraintViolation("refresh token digest collision", {"field": "token_digest"})
            stored = replace(record)
            self.refresh_tokens[stored.id] = stored
            self._digest_index[stored.token_digest] = stored.id
            return replace(stored)

    def find_refresh_token_by_digest(self, digest: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            token_id = self._digest_index.get(digest)
            record = self.refresh_tokens.get(token_id) if token_id else None
            return replace(record) if record else None

    def update_refresh_token(self, token_id: str, **patch) -> Optional[RefreshTokenRecord]:
        unknown = set(patch) - _REFRESH_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported refresh token fields: {sorted(unknown)}")
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record:
                return None
            updated = replace(record, **patch)
            self.refresh_tokens[token_id] = updated
            return replace(updated)

    def revoke_refresh_token_if_active(
        self, token_id: str, used_at: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]:
        """Compare-and-revoke; returns None when the row was missing or already revoked."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.is_revoked:
                return None
            updated = replace(record, is_revoked=True, last_used_at=used_at or utcnow())
            self.refresh_tokens[token_id] = updated
            return replace(updated)

    def revoke_user_refresh_tokens(
        self, user_id: str, used_at: Optional[datetime] = None
    ) -> int:
        stamp = used_at or utcnow()
        with self._data_lock:
            revoked = 0
            for token_id, record in list(self.refresh_tokens.items()):
                if record.user_id != user_id or record.is_revoked:
                    continue
                self.refresh_tokens[token_id] = replace(
                    record, is_revoked=True, last_used_at=stamp
                )
                revoked += 1
            return revoked

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [
                token_id
                for token_id, record in self.refresh_tokens.items()
                if record.expires_at < cutoff
            ]
            for token_id in expired:
                record = self.refresh_tokens.pop(token_id)
                self._digest_index.pop(record.token_digest, None)
            return len(expired)

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return [
                replace(r) for r in self.refresh_tokens.values() if r.user_id == user_id
            ]

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
