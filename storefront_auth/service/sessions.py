from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger
from storefront_auth.service.email import DeliveryReceipt, EmailService
from storefront_auth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    ReuseDetectedError,
    TokenExpiredError,
    ValidationError,
)
from storefront_auth.service.passwords import SecretHasher
from storefront_auth.service.refresh_tokens import RefreshTokenRepository, RefreshTokenStore
from storefront_auth.service.tokens import (
    EMAIL_VERIFY_PURPOSE,
    PASSWORD_RESET_PURPOSE,
    TokenSigner,
)
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.models import RefreshTokenRecord, User, UserStatus, utcnow


class AuthStore(RefreshTokenRepository, Protocol):
    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    def insert_user(self, user: User) -> User: ...

    def update_user_fields(self, user_id: str, **fields) -> Optional[User]: ...


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


@dataclass
class Principal:
    user_id: str
    role: str
    email: str


class SessionController:
    """Register, login, refresh and logout flows plus the link-based
    verification and reset flows that hang off them.

    Refresh lineage: a record is ``active`` until it is rotated out (consumed
    and replaced) or expires. Presenting a consumed record again is treated as
    theft: every refresh token of the owner is revoked and an alert is mailed.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        hasher: SecretHasher,
        signer: TokenSigner,
        action_signer: TokenSigner,
        refresh_tokens: RefreshTokenStore,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.signer = signer
        self.action_signer = action_signer
        self.refresh_tokens = refresh_tokens
        self.email = email
        self.settings = settings
        self.logger = get_logger(__name__)

    async def _send_mail(
        self, event: str, sender: Callable[..., DeliveryReceipt], *args: Any, **kwargs: Any
    ) -> bool:
        """Run a blocking mail call off the event loop; failures only log."""
        try:
            receipt = await asyncio.to_thread(sender, *args, **kwargs)
        except Exception as exc:
            self.logger.error(f"{event}_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        if not receipt.delivered:
            self.logger.warning(f"{event}_not_delivered", reason=receipt.error)
        return receipt.delivered

    def _issue(
        self, user: User, *, ip: Optional[str], user_agent: Optional[str]
    ) -> AuthResult:
        access_token = self.signer.issue_access_token(user.id, user.role)
        plaintext, record = self.refresh_tokens.create(user.id, ip=ip, user_agent=user_agent)
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=plaintext,
            refresh_expires_at=record.expires_at,
        )

    async def register(
        self,
        email: str,
        password: str,
        profile: Optional[dict] = None,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        email = (email or "").strip().lower()
        if not email:
            raise ValidationError("email is required", detail={"field": "email"})
        if self.store.find_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        password_hash = self.hasher.hash(password)
        profile = profile or {}
        user = User.new(
            email,
            password_hash,
            first_name=profile.get("first_name"),
            last_name=profile.get("last_name"),
            email_verified=self.settings.auto_verify_new_users,
        )
        try:
            user = self.store.insert_user(user)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration for the same address
            raise ConflictError("email already registered", detail=exc.detail)

        result = self._issue(user, ip=ip, user_agent=user_agent)
        self.logger.info("user_registered", user_id=user.id, email=user.email)
        if not user.email_verified:
            token = self.action_signer.issue_action_token(
                user.id, EMAIL_VERIFY_PURPOSE, self.settings.email_verify_ttl_hours * 3600
            )
            await self._send_mail(
                "verification_email",
                self.email.send_email_verification,
                user.email,
                token,
                ttl_hours=self.settings.email_verify_ttl_hours,
            )
        return result

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.find_user_by_email(email or "")
        if not user:
            self.hasher.verify(password or "", self.hasher.dummy_hash)
            self.logger.warning("login_failed", reason="unknown_email", email=email)
            raise InvalidCredentialsError("unknown email")
        if not self.hasher.verify(password, user.password_hash):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError("wrong password")
        if not user.is_active:
            self.logger.warning(
                "login_failed", reason="inactive", user_id=user.id, status=user.status.value
            )
            raise InvalidCredentialsError("account not active")

        fields: dict[str, Any] = {"last_login_at": utcnow()}
        if self.hasher.needs_rehash(user.password_hash):
            fields["password_hash"] = self.hasher.hash(password)
            self.logger.info("password_rehashed", user_id=user.id)
        user = self.store.update_user_fields(user.id, **fields) or user
        result = self._issue(user, ip=ip, user_agent=user_agent)
        self.logger.info("login_succeeded", user_id=user.id)
        return result

    async def refresh(
        self,
        secret: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not secret:
            raise InvalidTokenError("refresh token missing")
        record = self.refresh_tokens.find_by_plaintext(secret)
        if not record:
            self.logger.info("refresh_rejected", reason="unknown_token")
            raise InvalidTokenError("refresh token not found")
        if record.is_expired():
            self.logger.info("refresh_rejected", reason="expired", user_id=record.user_id)
            raise TokenExpiredError("refresh token expired")
        if record.is_revoked:
            await self._handle_reuse(record, ip=ip, user_agent=user_agent)

        user = self.store.find_user_by_id(record.user_id)
        if not user or not user.is_active:
            self.refresh_tokens.revoke(record.id)
            self.logger.warning("refresh_rejected", reason="user_unavailable", user_id=record.user_id)
            raise InvalidTokenError("user unavailable")

        if not self.refresh_tokens.consume(record.id):
            # another request rotated this record between our read and write
            await self._handle_reuse(record, ip=ip, user_agent=user_agent, race=True)

        result = self._issue(user, ip=ip, user_agent=user_agent)
        self.logger.info("refresh_rotated", user_id=user.id, previous_record_id=record.id)
        return result

    async def _handle_reuse(
        self,
        record: RefreshTokenRecord,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
        race: bool = False,
    ) -> None:
        detected_at = utcnow()
        revoked = self.refresh_tokens.revoke_all_for_user(record.user_id)
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            record_id=record.id,
            revoked=revoked,
            concurrent_rotation=race,
            ip=ip,
            user_agent=user_agent,
        )
        user = self.store.find_user_by_id(record.user_id)
        if user:
            recipients = [user.email]
            if self.settings.security_alert_email:
                recipients.append(self.settings.security_alert_email)
            for recipient in recipients:
                await self._send_mail(
                    "security_alert_email",
                    self.email.send_security_alert,
                    recipient,
                    account_email=user.email,
                    detected_at=detected_at,
                    ip_address=ip,
                    user_agent=user_agent,
                )
        raise ReuseDetectedError("refresh token reuse detected")

    async def logout(self, secret: Optional[str]) -> None:
        if not secret:
            return
        record = self.refresh_tokens.find_by_plaintext(secret)
        if not record:
            self.logger.info("logout_unknown_token")
            return
        if not record.is_revoked:
            self.refresh_tokens.revoke(record.id)
        self.logger.info("logout", user_id=record.user_id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidOrExpiredTokenError("bearer token missing")
        claims = self.signer.verify_access_token(token)
        user = self.store.find_user_by_id(claims.subject)
        if not user or not user.is_active:
            raise InvalidOrExpiredTokenError("token subject unavailable")
        return Principal(user_id=user.id, role=user.role, email=user.email)

    async def get_profile(self, user_id: str) -> User:
        user = self.store.find_user_by_id(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def request_email_verification(self, email: str) -> None:
        """Send a fresh verification link; silent for unknown or verified accounts."""
        user = self.store.find_user_by_email(email or "")
        if not user or user.email_verified:
            self.logger.info("verification_request_skipped", email=email)
            return
        token = self.action_signer.issue_action_token(
            user.id, EMAIL_VERIFY_PURPOSE, self.settings.email_verify_ttl_hours * 3600
        )
        await self._send_mail(
            "verification_email",
            self.email.send_email_verification,
            user.email,
            token,
            ttl_hours=self.settings.email_verify_ttl_hours,
        )

    async def verify_email(self, token: Optional[str]) -> User:
        user_id = self.action_signer.verify_action_token(token, EMAIL_VERIFY_PURPOSE)
        user = self.store.find_user_by_id(user_id)
        if not user:
            raise InvalidOrExpiredTokenError("verification subject missing")
        if not user.email_verified:
            user = self.store.update_user_fields(user.id, email_verified=True) or user
            self.logger.info("email_verified", user_id=user.id)
        return user

    async def request_password_reset(self, email: str) -> None:
        user = self.store.find_user_by_email(email or "")
        if not user or user.status != UserStatus.ACTIVE:
            self.logger.info("password_reset_request_ignored", email=email)
            return
        token = self.action_signer.issue_action_token(
            user.id, PASSWORD_RESET_PURPOSE, self.settings.password_reset_ttl_minutes * 60
        )
        await self._send_mail(
            "password_reset_email",
            self.email.send_password_reset,
            user.email,
            token,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    async def confirm_password_reset(self, token: Optional[str], new_password: str) -> None:
        user_id = self.action_signer.verify_action_token(token, PASSWORD_RESET_PURPOSE)
        user = self.store.find_user_by_id(user_id)
        if not user:
            raise InvalidOrExpiredTokenError("reset subject missing")
        password_hash = self.hasher.hash(new_password)
        self.store.update_user_fields(user.id, password_hash=password_hash)
        revoked = self.refresh_tokens.revoke_all_for_user(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
