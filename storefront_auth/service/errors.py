from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)

    ``public_message`` is what the client sees. It defaults to ``message``;
    authentication failures override it so the client cannot tell the
    reasons apart while the log keeps ``message``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def client_message(self) -> str:
        return self.public_message or self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class EmptyInputError(ValidationError):
    """A required secret (password, token) was absent or empty."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    public_message = "unauthorized"

    def __init__(self, message: str = "unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password, or an account that may not sign in."""
    pass


class InvalidTokenError(AuthenticationError):
    """Refresh secret does not match any stored record."""
    pass


class TokenExpiredError(AuthenticationError):
    """Refresh record exists but is past its expiry."""
    pass


class ReuseDetectedError(AuthenticationError):
    """A revoked refresh secret was presented again."""
    pass


class InvalidOrExpiredTokenError(AuthenticationError):
    """Signed token failed signature, structure, purpose or expiry checks."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    public_message = "internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "EmptyInputError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ReuseDetectedError",
    "InvalidOrExpiredTokenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
