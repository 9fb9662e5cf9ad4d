import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything imports the settings or the app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_PEPPER", "test-refresh-pepper-for-testing-only-0123456789")
os.environ.setdefault("AUTO_VERIFY_NEW_USERS", "true")
os.environ.setdefault("ARGON_MEMORY_COST", "8192")
os.environ.setdefault("ARGON_TIME_COST", "2")
os.environ.setdefault("ARGON_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from storefront_auth.service.email import DeliveryReceipt, EmailService  # noqa: E402
from storefront_auth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from storefront_auth.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def sessions(runtime):
    return runtime.sessions


class RecordingEmailService(EmailService):
    """EmailService that keeps every rendered message instead of delivering it."""

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.sent = []

    def send(self, message):
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append(message)
        return DeliveryReceipt(delivered=True, transport="memory")


@pytest.fixture
def outbox(runtime):
    recorder = RecordingEmailService()
    runtime.sessions.email = recorder
    return recorder


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
