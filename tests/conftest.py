import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure env before any imports that might initialize runtime or settings
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekey_test_")
os.environ.setdefault("FILE_STORAGE_PATH", str(Path(_test_tmp_dir) / "store"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekey.service.passwords import PasswordHasher  # noqa: E402
from gatekey.service.runtime import reset_runtime_for_tests, shutdown_runtime  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own users log so registrations never leak between tests
    monkeypatch.setenv("FILE_STORAGE_PATH", str(tmp_path / "store"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DB_DSN", raising=False)
    reset_runtime_for_tests()
    yield
    shutdown_runtime()


@pytest.fixture
def fast_hasher():
    """argon2id with minimal cost parameters so unit tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


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
