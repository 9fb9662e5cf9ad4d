from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper; every stored timestamp is aware."""
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    status: UserStatus = UserStatus.ACTIVE
    role: str = "customer"
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        role: str = "customer",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verified: bool = False,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            role=role,
            first_name=first_name,
            last_name=last_name,
            email_verified=email_verified,
        )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class RefreshTokenRecord:
    """Stored half of a refresh token. The plaintext secret is never kept."""

    id: str
    user_id: str
    token_digest: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_digest: str,
        ttl: timedelta,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_digest=token_digest,
            created_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at
