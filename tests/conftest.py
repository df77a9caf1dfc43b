import os
import sys
import asyncio
import inspect
import itertools

import pytest

# Ensure project root is on sys.path so `import visit_tracker` works in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from visit_tracker.config import Settings
from visit_tracker.locations import LocationCatalog
from visit_tracker.service import VisitService
from visit_tracker.session.confidence import ConfidenceTable
from visit_tracker.session.engine import SessionEngine
from visit_tracker.store import MemoryKVStore


# 2023-11-14T22:13:20Z
T0 = 1_700_000_000_000
MINUTE = 60 * 1000
HOUR = 60 * MINUTE


class FakeClock:
    """Settable clock for MemoryKVStore, in epoch seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def pytest_pyfunc_call(pyfuncitem):
    """Allow running async tests without pytest-asyncio.

    If the test function is a coroutine, run it in a fresh event loop.
    """
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        funcargs = pyfuncitem.funcargs
        sig = inspect.signature(testfunction)
        # Filter only the parameters that the test function expects
        allowed = {name: funcargs[name] for name in sig.parameters.keys() if name in funcargs}
        asyncio.run(testfunction(**allowed))
        return True
    return None


@pytest.fixture
def config():
    return Settings(
        REDIS_URL=None,
        STORE_RETRY_BACKOFF_BASE=0.0,
        STORE_RETRY_MAX_DELAY=0.0,
        LEASE_WAIT_SECONDS=0.2,
    )


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda: f"SC-TEST-{next(counter)}"


@pytest.fixture
def engine(config, id_factory):
    return SessionEngine(ConfidenceTable.from_settings(config), config.session_window_ms, id_factory)


@pytest.fixture
def store():
    return MemoryKVStore()


@pytest.fixture
def service(store, engine, config):
    return VisitService(store, LocationCatalog(), engine=engine, config=config)
