import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports userhub.config
_test_tmp_dir = tempfile.mkdtemp(prefix="userhub_test_")
os.environ.setdefault("UPLOAD_DIR", os.path.join(_test_tmp_dir, "uploads"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Empty REDIS_URL selects the in-process cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from userhub.config import Settings  # noqa: E402
from userhub.service.auth import AuthService  # noqa: E402
from userhub.service.runtime import reset_runtime_for_tests  # noqa: E402
from userhub.storage.memory import MemoryStore  # noqa: E402
from userhub.storage.memory_cache import MemoryCache  # noqa: E402


class FakeClock:
    """Wall clock (epoch seconds) that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        upload_dir=str(tmp_path / "uploads"),
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache(clock):
    # cache TTLs follow the same fake clock as token expiry
    return MemoryCache(clock=clock)


@pytest.fixture
def auth_service(memory_store, memory_cache, settings, clock):
    return AuthService(memory_store, memory_cache, settings, clock=clock)


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
