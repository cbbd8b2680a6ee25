import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything initializes settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper-do-not-use-in-production")
os.environ.setdefault("SERVICE_JWT_SECRET", "test-service-secret-do-not-use-in-production")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
# Empty REDIS_URL selects the process-local nonce cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from claimgate.config import Settings  # noqa: E402
from claimgate.service.passwords import CredentialHasher  # noqa: E402
from claimgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from claimgate.storage.memory import MemoryStore  # noqa: E402


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
        password_pepper="unit-test-pepper",
        service_jwt_secret="unit-test-service-secret",
        argon2_time_cost=1,
        argon2_memory_cost_kib=8,
        argon2_parallelism=1,
        app_base_url="https://portal.example.com",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher(settings):
    return CredentialHasher.from_settings(settings)


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
