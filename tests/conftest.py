import asyncio
import inspect
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Set before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from stepguard.config import Settings  # noqa: E402
from stepguard.service.attempts import AttemptTracker  # noqa: E402
from stepguard.service.audit import MemorySink, SecurityEventLog  # noqa: E402
from stepguard.service.auth import AuthOrchestrator  # noqa: E402
from stepguard.service.channels import ChannelDispatcher, OTPMessage  # noqa: E402
from stepguard.service.tokens import TokenIssuer  # noqa: E402
from stepguard.storage.memory import MemoryStore  # noqa: E402
from stepguard.storage.models import ChannelKind  # noqa: E402
from stepguard.storage.sessions import SessionStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "TestPassword123!"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class RecordingTransport:
    """Channel transport that keeps every delivered code in memory.

    ``failures`` is consumed front to back: each entry is raised instead of
    delivering, ``None`` means deliver normally.
    """

    sent: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    delay: float = 0.0

    async def send(self, destination: str, message: OTPMessage) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        self.sent.append((destination, message.code))
        return f"msg-{len(self.sent)}"

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]

    @property
    def last_destination(self) -> str:
        return self.sent[-1][0]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        otp_ttl_minutes=10,
        otp_max_attempts=5,
        otp_resend_cooldown_seconds=60,
        otp_hash_secret="test-otp-hash-secret",
        test_mode=True,
    )


@pytest.fixture
def email_transport():
    return RecordingTransport()


@pytest.fixture
def messaging_transport():
    return RecordingTransport()


@pytest.fixture
def harness(settings, clock, email_transport, messaging_transport):
    """Fully wired orchestrator over in-memory collaborators."""
    store = MemoryStore()
    sessions = SessionStore(ttl_minutes=settings.otp_ttl_minutes, clock=clock)
    attempts = AttemptTracker(
        max_attempts=settings.otp_max_attempts,
        login_threshold=settings.login_lockout_threshold,
        login_window=timedelta(minutes=settings.login_lockout_window_minutes),
        login_lockout=timedelta(minutes=settings.login_lockout_minutes),
        clock=clock,
    )
    dispatcher = ChannelDispatcher(
        {ChannelKind.EMAIL: email_transport, ChannelKind.MESSAGING: messaging_transport},
        timeout_seconds=1.0,
        max_retries=1,
        clock=clock,
    )
    tokens = TokenIssuer(settings, clock=clock)
    sink = MemorySink()
    audit = SecurityEventLog([sink], maxsize=100, clock=clock)
    auth = AuthOrchestrator(
        store,
        sessions,
        attempts,
        dispatcher,
        tokens,
        audit,
        settings,
        clock=clock,
    )
    return SimpleNamespace(
        auth=auth,
        store=store,
        sessions=sessions,
        attempts=attempts,
        dispatcher=dispatcher,
        tokens=tokens,
        audit=audit,
        events=sink,
        email=email_transport,
        messaging=messaging_transport,
        clock=clock,
        settings=settings,
    )


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
