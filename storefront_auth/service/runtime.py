from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from storefront_auth.config import Environment, Settings, get_settings, reset_settings_cache
from storefront_auth.logging import get_logger
from storefront_auth.service.email import EmailService
from storefront_auth.service.passwords import SecretHasher
from storefront_auth.service.pruner import RefreshTokenPruner
from storefront_auth.service.refresh_tokens import RefreshTokenStore
from storefront_auth.service.sessions import SessionController
from storefront_auth.service.tokens import TokenSigner
from storefront_auth.storage.memory import MemoryStore
from storefront_auth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """postgresql://app:hunter2@db/x -> postgresql://app:***@db/x"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the wired service graph for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = SecretHasher.from_settings(self.settings)
        self.signer = TokenSigner(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            access_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
        )
        self.action_signer = TokenSigner(
            self.settings.action_token_secret,
            issuer=self.settings.jwt_issuer,
        )
        self.refresh_tokens = RefreshTokenStore(
            self.store,
            self.settings.refresh_token_pepper,
            ttl=timedelta(days=self.settings.refresh_token_ttl_days),
            token_bytes=self.settings.refresh_token_bytes,
        )
        self.email = EmailService.from_settings(self.settings)
        self.sessions = SessionController(
            self.store,
            hasher=self.hasher,
            signer=self.signer,
            action_signer=self.action_signer,
            refresh_tokens=self.refresh_tokens,
            email=self.email,
            settings=self.settings,
        )
        self.pruner = RefreshTokenPruner(
            self.refresh_tokens, self.settings.prune_interval_seconds
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            email_configured=self.email.is_configured,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_days=self.settings.refresh_token_ttl_days,
        )

    async def close(self) -> None:
        await self.pruner.stop()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment for an isolated test."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed with APP_ENV=test")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime(settings)
        return runtime
