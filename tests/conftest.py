import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT_BACKEND", "memory")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionauth.service.email import EmailService  # noqa: E402
from sessionauth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own persisted memory store
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class Outbox:
    """Captures outgoing verification and reset mails instead of sending them."""

    def __init__(self):
        self.verifications = []
        self.resets = []
        self.fail = False

    def last_verification_token(self, email=None):
        for to_email, token in reversed(self.verifications):
            if email is None or to_email == email:
                return token
        raise AssertionError(f"no verification mail captured for {email}")

    def last_reset_token(self, email=None):
        for to_email, token in reversed(self.resets):
            if email is None or to_email == email:
                return token
        raise AssertionError(f"no reset mail captured for {email}")


@pytest.fixture
def outbox(monkeypatch):
    box = Outbox()

    def _send_verification(self, to_email, token, *, ttl_hours=24):
        box.verifications.append((to_email, token))
        return not box.fail

    def _send_reset(self, to_email, token, *, ttl_minutes=60):
        box.resets.append((to_email, token))
        return not box.fail

    monkeypatch.setattr(EmailService, "send_email_verification", _send_verification)
    monkeypatch.setattr(EmailService, "send_password_reset", _send_reset)
    return box


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
