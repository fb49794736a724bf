import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_ACTION_SECRET", "test-action-secret-for-testing-only-0123456789")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client.apps.googleusercontent.com")
os.environ.setdefault("REFRESH_PURGE_INTERVAL_SECONDS", "0")
os.environ.setdefault("STATE_DIR", tempfile.mkdtemp(prefix="marketauth_test_"))
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from marketauth.config import Settings  # noqa: E402
from marketauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingMailer:
    """Captures deliveries instead of sending them."""

    def __init__(self, result: bool = True):
        self.result = result
        self.sent = []

    def deliver(self, email, kind, token):
        self.sent.append((email, kind, token))
        return self.result

    def last_token(self, kind):
        for _email, sent_kind, token in reversed(self.sent):
            if sent_kind == kind:
                return token
        raise AssertionError(f"no {kind} delivery recorded")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings.from_env()


@pytest.fixture
def mailer():
    return RecordingMailer()


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
