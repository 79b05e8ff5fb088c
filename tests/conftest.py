import asyncio
import inspect
import os
import sys
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("HASH_TIME_COST", "1")
os.environ.setdefault("HASH_MEMORY_COST_KIB", "8")
os.environ.setdefault("HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.config import Settings  # noqa: E402
from warden.service.credentials import AssertionRejected  # noqa: E402
from warden.service.hashing import CredentialHasher  # noqa: E402
from warden.service.runtime import Runtime  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
GOOGLE_CLIENT_ID = "test-client.apps.googleusercontent.com"

STRONG_PASSWORDS = (
    "Vx9#mQ2!pLr7",
    "Tz4$kW8@nHc5",
    "Bq7&jR3%fYd2",
    "Gm5*wK9^sPt6",
    "Hn8!cX2#vLq4",
    "Jd3@rT7$yMb9",
    "Lp6%hZ4&gNw2",
)


class FakeClock:
    """Deterministic UTC clock that ticks forward a little on every read."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(milliseconds=10)):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        self.now = self.now + self.step
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeIdentityProvider:
    """Maps raw assertion strings to provider payloads."""

    def __init__(self):
        self.assertions: dict[str, dict] = {}
        self.calls = 0

    def add(
        self,
        raw: str,
        *,
        sub: str,
        email: str,
        name: str | None = None,
        email_verified: bool = True,
    ) -> str:
        payload = {
            "sub": sub,
            "email": email,
            "email_verified": "true" if email_verified else "false",
            "iss": "https://accounts.google.com",
            "aud": GOOGLE_CLIENT_ID,
            "exp": str(int(time.time()) + 3600),
        }
        if name:
            payload["name"] = name
        self.assertions[raw] = payload
        return raw

    async def verify(self, raw_assertion: str) -> dict:
        self.calls += 1
        payload = self.assertions.get(raw_assertion)
        if payload is None:
            raise AssertionRejected("unknown assertion")
        return dict(payload)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple] = []

    async def notify(self, kind, email, context):
        self.sent.append((kind, email, dict(context)))

    def kinds(self) -> list:
        return [kind for kind, _, _ in self.sent]


class RecordingAuditSink:
    def __init__(self):
        self.events: list = []

    async def record(self, event):
        self.events.append(event)

    def actions(self, *, success: bool | None = None) -> list:
        return [
            e.action
            for e in self.events
            if success is None or e.success is success
        ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Fast hashing, no Redis, no persistence."""
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        shared_fs_root=str(tmp_path),
        test_mode=True,
        redis_url=None,
        hash_time_cost=1,
        hash_memory_cost_kib=8,
        hash_parallelism=1,
        google_client_id=GOOGLE_CLIENT_ID,
    )


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost_kib=8, parallelism=1)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def runtime(settings, identity_provider, notifier, audit_sink, hasher, clock):
    return Runtime(
        settings,
        identity_provider=identity_provider,
        notifier=notifier,
        audit=audit_sink,
        hasher=hasher,
        clock=clock,
    )


@pytest.fixture
def orchestrator(runtime):
    return runtime.auth


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
