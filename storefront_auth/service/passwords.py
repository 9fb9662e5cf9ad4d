from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storefront_auth.logging import get_logger
from storefront_auth.service.errors import EmptyInputError, ValidationError

logger = get_logger(__name__)


class SecretHasher:
    """argon2id password hashing with tunable cost.

    Hash strings are self-describing (algorithm, version, cost, salt), so a
    hasher configured with lighter parameters can still verify hashes made
    with heavier ones and report them through :meth:`needs_rehash`.
    """

    def __init__(
        self,
        *,
        memory_cost: int = 131072,
        time_cost: int = 4,
        parallelism: int = 2,
    ) -> None:
        self._hasher = PasswordHasher(
            type=Type.ID,
            memory_cost=memory_cost,
            time_cost=time_cost,
            parallelism=parallelism,
        )
        # Verified against when the account is unknown so failed logins cost
        # the same regardless of whether the email exists.
        self.dummy_hash = self._hasher.hash("storefront-auth-timing-equalizer")

    @classmethod
    def from_settings(cls, settings) -> "SecretHasher":
        return cls(
            memory_cost=settings.argon_memory_cost,
            time_cost=settings.argon_time_cost,
            parallelism=settings.argon_parallelism,
        )

    def hash(self, password: Optional[str]) -> str:
        if not password:
            raise EmptyInputError("password is required", detail={"field": "password"})
        try:
            return self._hasher.hash(password)
        except UnicodeEncodeError:
            raise ValidationError(
                "password contains unencodable characters", detail={"field": "password"}
            )

    def verify(self, password: Optional[str], hash_string: Optional[str]) -> bool:
        if not password or not hash_string:
            return False
        try:
            return self._hasher.verify(hash_string, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False
        except UnicodeEncodeError:
            # argon2 wants an ascii hash and a utf-8 password
            logger.warning("password_verify_unencodable")
            return False

    def needs_rehash(self, hash_string: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hash_string)
        except (InvalidHash, UnicodeEncodeError):
            return True
