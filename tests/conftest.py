import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="estatevault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests: rate limits and blacklist checks use the in-process fallbacks
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from estatevault.config import Settings  # noqa: E402
from estatevault.service.auth import AuthService, RequestContext  # noqa: E402
from estatevault.service.runtime import reset_runtime_for_tests  # noqa: E402
from estatevault.storage.memory import MemoryStore  # noqa: E402
from estatevault.storage.models import (  # noqa: E402
    Account,
    AccountStatus,
    PasswordChangeReason,
    Role,
)

PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Deterministic UTC clock that tests advance by hand."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDelivery:
    """Delivery double that records every message; set ``fail_codes`` to simulate outages."""

    def __init__(self):
        self.codes = []
        self.alerts = []
        self.admin_events = []
        self.verifications = []
        self.resets = []
        self.fail_codes = False

    async def send_one_time_code(self, destination, code, channel):
        if self.fail_codes:
            return False
        self.codes.append((destination, code, channel))
        return True

    async def send_security_alert(self, account_email, alert):
        self.alerts.append((account_email, alert))
        return True

    async def notify_admins(self, event):
        self.admin_events.append(event)
        return True

    async def send_email_verification(self, email, token):
        self.verifications.append((email, token))
        return True

    async def send_password_reset(self, email, token):
        self.resets.append((email, token))
        return True

    @property
    def last_code(self):
        return self.codes[-1][1]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    # Fresh snapshot directory per test so memory-store state never leaks across tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("runtime")))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        max_failed_logins=5,
        lockout_minutes=30,
        admin_alert_emails="",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path), encryption_key="unit-test-key", persist=False)


@pytest.fixture
def auth_service(store, settings, delivery, clock):
    return AuthService(store, settings, delivery, clock=clock)


@pytest.fixture
def ctx():
    return RequestContext(ip_address="203.0.113.10", user_agent="pytest", country="PT")


@pytest.fixture
def make_account(store, auth_service):
    """Create an active, verified account with ``PASSWORD``."""

    def _make(email="owner@example.com", role=Role.INVESTOR, **kwargs):
        kwargs.setdefault("status", AccountStatus.ACTIVE)
        kwargs.setdefault("email_verified", True)
        account = Account.new(email, role, **kwargs)
        store.create_account(account)
        problem = auth_service.credentials.set_password(
            account, PASSWORD, PasswordChangeReason.INITIAL
        )
        assert problem is None
        return store.get_account(account.id)

    return _make


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


@pytest.fixture
def password():
    return PASSWORD
