import asyncio
import concurrent.futures
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Browsers drop Secure cookies over plain http; the test clients talk plain http
os.environ.setdefault("COOKIE_SECURE", "false")
# No Redis in unit tests; the runtime falls back to in-process rate limits under TEST_MODE
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh memory-store snapshot directory per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class InlineExecutor(concurrent.futures.Executor):
    """Runs background mail jobs on submit so tests can read the outbox at once."""

    def submit(self, fn, /, *args, **kwargs):
        future = concurrent.futures.Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing mail instead of talking to SMTP.

    Each entry is ``(kind, to_email, token_id, raw_secret)``.
    """
    runtime = get_runtime()
    sent = []

    def _reset(to_email, token_id, raw_secret):
        sent.append(("reset", to_email, token_id, raw_secret))

    def _verify(to_email, token_id, raw_secret):
        sent.append(("verify", to_email, token_id, raw_secret))

    monkeypatch.setattr(runtime.email, "send_password_reset", _reset)
    monkeypatch.setattr(runtime.email, "send_email_verification", _verify)
    monkeypatch.setattr(runtime, "_mail_executor", InlineExecutor())
    return sent


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
