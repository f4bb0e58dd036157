import asyncio
import inspect
import os
import sys
from datetime import timedelta
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0001")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-0002")
os.environ.setdefault("JWT_VERIFY_EMAIL_SECRET", "test-verify-secret-for-automation-only-0003")
os.environ.setdefault("JWT_RESET_PASSWORD_SECRET", "test-reset-secret-for-automation-only-0004")
# Cheapest Argon2 parameters so hashing does not dominate the suite
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "8")
os.environ.setdefault("SECRET_HASH_TIME_COST", "1")
os.environ.setdefault("SECRET_HASH_MEMORY_KIB", "8")
# In-process locks only; the Redis path is covered with fakes
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.config import Settings  # noqa: E402
from gatehouse.service.activity import ActivityLogService  # noqa: E402
from gatehouse.service.errors import DeliveryError  # noqa: E402
from gatehouse.service.gate import AccessDecisionGate  # noqa: E402
from gatehouse.service.hashing import SecretHasher  # noqa: E402
from gatehouse.service.locks import UserLocks  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.service.second_factor import SecondFactorEngine  # noqa: E402
from gatehouse.service.sessions import SessionEngine  # noqa: E402
from gatehouse.service.tokens import TokenSigner  # noqa: E402
from gatehouse.storage.memory import MemoryStore  # noqa: E402
from gatehouse.storage.models import utcnow  # noqa: E402


class FakeClock:
    """Settable clock shared by the signer and the engines."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Notifier that keeps every message instead of sending it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def _record(self, kind, to, **payload):
        if self.fail:
            raise DeliveryError("email delivery failed")
        self.sent.append({"kind": kind, "to": to, **payload})

    async def send_verification_email(self, to, link, name):
        self._record("verify_email", to, link=link, name=name)

    async def send_reset_password_email(self, to, link):
        self._record("reset_password", to, link=link)

    async def send_second_factor_code(self, to, code):
        self._record("second_factor_code", to, code=code)

    def last(self, kind):
        matching = [message for message in self.sent if message["kind"] == kind]
        return matching[-1] if matching else None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings read from the test environment."""
    return Settings.from_env()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def hasher(settings):
    return SecretHasher(settings)


@pytest.fixture
def signer(settings, clock):
    return TokenSigner(settings, clock=clock)


@pytest.fixture
def locks(settings):
    return UserLocks(timeout=settings.lock_timeout_seconds)


@pytest.fixture
def activity(store, settings):
    return ActivityLogService(store, store_timeout=settings.store_timeout_seconds)


@pytest.fixture
def sessions(store, hasher, signer, notifier, locks, activity, settings, clock):
    """Session engine wired to the memory store and a recording notifier."""
    return SessionEngine(
        store, hasher, signer, notifier, locks, activity, settings, clock=clock
    )


@pytest.fixture
def second_factor(store, hasher, notifier, locks, settings, clock):
    return SecondFactorEngine(store, hasher, notifier, locks, settings, clock=clock)


@pytest.fixture
def gate(store, second_factor, settings):
    return AccessDecisionGate(store, second_factor, settings)


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
