import asyncio
from datetime import timedelta

from storefront_auth.service.pruner import RefreshTokenPruner
from storefront_auth.service.refresh_tokens import RefreshTokenStore
from storefront_auth.storage.memory import MemoryStore
from storefront_auth.storage.models import User


class ExplodingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def delete_expired_refresh_tokens(self, now=None):
        self.calls += 1
        raise RuntimeError("database went away")


def _tokens(store):
    return RefreshTokenStore(store, "pruner-test-pepper-0123456789")


async def test_sweep_removes_expired_rows():
    store = MemoryStore()
    user = store.insert_user(User.new("a@example.com", "h"))
    tokens = _tokens(store)
    tokens.create(user.id, ttl=timedelta(seconds=-1))
    tokens.create(user.id)
    pruner = RefreshTokenPruner(tokens, interval_seconds=60)
    assert await pruner.sweep_once() == 1
    assert len(store.list_refresh_tokens(user.id)) == 1


async def test_failures_are_logged_and_loop_survives():
    store = ExplodingStore()
    pruner = RefreshTokenPruner(_tokens(store), interval_seconds=1)
    assert await pruner.sweep_once() == 0

    await pruner.start()
    await asyncio.sleep(0.2)
    assert pruner.running
    await pruner.stop()
    assert not pruner.running
    assert store.calls >= 2


async def test_start_is_idempotent_and_stop_without_start():
    pruner = RefreshTokenPruner(_tokens(MemoryStore()), interval_seconds=3600)
    await pruner.stop()
    await pruner.start()
    task = pruner._task
    await pruner.start()
    assert pruner._task is task
    await pruner.stop()
