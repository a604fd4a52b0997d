import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything imports rolegate.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "access-secret-for-the-test-suite-only-0001")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-the-test-suite-only-0002")
os.environ.setdefault("BOT_API_SECRET", "real-secret")
os.environ.setdefault("ADMIN_API_SECRET", "admin-secret-for-tests")
os.environ.setdefault("DISCORD_CLIENT_ID", "123456789")
os.environ.setdefault("DISCORD_CLIENT_SECRET", "discord-client-secret")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("API_URL", "http://api.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rolegate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
