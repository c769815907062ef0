import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Set up the environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="hrsession_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STATE_BACKEND", "memory")
os.environ.setdefault("STATE_PATH", os.path.join(_test_tmp_dir, "state.json"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hrsession.config import reset_settings_cache  # noqa: E402
from hrsession.service.health import SessionHealthStore  # noqa: E402
from hrsession.service.request_cache import GenericRequestCache  # noqa: E402
from hrsession.service.session import SessionSupervisor  # noqa: E402
from hrsession.service.session_token import LocalSessionTokenStore  # noqa: E402
from hrsession.service.tokens import TokenLifecycleManager  # noqa: E402
from hrsession.service.user_cache import UserRecordCache  # noqa: E402
from hrsession.storage.memory import MemoryIdentityProvider  # noqa: E402
from hrsession.storage.state import MemoryStateStore, StateKeys  # noqa: E402


class FakeClock:
    """Manually advanced wall clock, usable wherever a ``clock`` callable is taken."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keys():
    return StateKeys()


@pytest.fixture
def state():
    return MemoryStateStore()


@pytest.fixture
def provider(state, keys, clock):
    return MemoryIdentityProvider(state, keys=keys, clock=clock)


@pytest.fixture
def health(state, keys, clock):
    return SessionHealthStore(state, keys=keys, purge=("ems-", "sb-"), clock=clock)


@pytest.fixture
def make_supervisor(provider, state, keys, health, clock):
    """Build a fully wired supervisor over the in-memory provider.

    Background intervals default to an hour so tests drive checks explicitly.
    """

    def build(**overrides):
        cache = GenericRequestCache(clock=clock)
        tokens = TokenLifecycleManager(provider, clock=clock, monotonic=clock)
        user_cache = UserRecordCache(
            provider, health, clock=clock, wait=overrides.pop("user_cache_wait", 0.05)
        )
        session_tokens = LocalSessionTokenStore(state, provider, keys=keys)
        options = {
            "bootstrap_timeout": 8.0,
            "revocation_poll_interval": 3600.0,
            "inactivity_check_interval": 3600.0,
            "monotonic": clock,
        }
        options.update(overrides)
        return SessionSupervisor(
            provider,
            health=health,
            cache=cache,
            tokens=tokens,
            user_cache=user_cache,
            session_tokens=session_tokens,
            **options,
        )

    return build


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
