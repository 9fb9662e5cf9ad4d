from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from storefront_auth.logging import get_logger
from storefront_auth.service.refresh_tokens import RefreshTokenStore

logger = get_logger(__name__)


class RefreshTokenPruner:
    """Periodically deletes expired refresh-token rows.

    Pure storage hygiene: expired rows are already rejected by the refresh
    flow, so a failed sweep is logged and retried on the next tick.
    """

    def __init__(self, refresh_tokens: RefreshTokenStore, interval_seconds: int) -> None:
        self.refresh_tokens = refresh_tokens
        self.interval_seconds = max(interval_seconds, 1)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> int:
        try:
            return await asyncio.to_thread(self.refresh_tokens.prune_expired)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "refresh_token_prune_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return 0

    async def _run(self) -> None:
        try:
            while True:
                await self.sweep_once()
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("refresh_token_pruner_cancelled")

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("refresh_token_pruner_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
