import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any yoink imports read settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("CLOCK", "fake")
os.environ.setdefault("SESSION_CLEANUP_INTERVAL_SECONDS", "0")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from yoink.config import Settings  # noqa: E402
from yoink.service.clock import FakeClock  # noqa: E402
from yoink.service.hashing import Argon2SecretHasher  # noqa: E402
from yoink.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from yoink.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        session_ttl_minutes=7 * 24 * 60,
        session_refresh_threshold_minutes=24 * 60,
        max_tokens_per_user=3,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    return Argon2SecretHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, store, clock, hasher):
    """Fully wired services over a private memory store and a fake clock."""
    return Runtime(settings, store=store, clock=clock, hasher=hasher)


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
