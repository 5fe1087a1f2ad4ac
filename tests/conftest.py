import threading
from contextlib import contextmanager
from pathlib import Path

import fakeredis
import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from relayqueue.db import Base, make_engine, make_session_factory
from relayqueue.ledger import DispatchLedger
from relayqueue.queue import QueueService
from relayqueue.settings import Settings

PNG = b"\x89PNG\r\n\x1a\nfake"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakePage:
    def __init__(self, launcher):
        self.launcher = launcher

    def goto(self, url, timeout=None, wait_until=None):
        self.launcher.visited.append(url)
        if self.launcher.on_goto:
            self.launcher.on_goto()
        if self.launcher.fail_on == "goto":
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded.")

    def wait_for_timeout(self, timeout):
        pass

    def screenshot(self, path=None, type="png", timeout=None):
        if self.launcher.fail_on == "screenshot":
            raise RuntimeError("target closed")
        if path:
            Path(path).write_bytes(PNG)
        return PNG


class FakeContext:
    def __init__(self, launcher):
        self.launcher = launcher

    def new_page(self):
        return FakePage(self.launcher)


class FakeBrowser:
    def __init__(self, launcher):
        self.launcher = launcher

    def new_context(self, user_agent=None):
        return FakeContext(self.launcher)


class FakeLauncher:
    """Stands in for launch_chromium and counts browser processes."""

    def __init__(self, fail_on=None, on_goto=None):
        self.fail_on = fail_on
        self.on_goto = on_goto
        self.launched = 0
        self.closed = 0
        self.visited = []
        self.tags = []
        self._lock = threading.Lock()

    @contextmanager
    def __call__(self, executable_path, timeout_ms, headless=True, tag=None):
        if self.fail_on == "launch":
            raise PlaywrightError("Executable doesn't exist at /usr/bin/chromium")
        with self._lock:
            self.launched += 1
            self.tags.append(tag)
        try:
            yield FakeBrowser(self)
        finally:
            with self._lock:
                self.closed += 1


@pytest.fixture
def settings(tmp_path):
    return Settings(
        redis_url="redis://localhost:6379/15",
        database_url="sqlite+pysqlite:///:memory:",
        pool_size=1,
        max_attempts=3,
        lease_seconds=30,
        action_timeout_seconds=5,
        settle_seconds=0,
        worker_poll_seconds=0.01,
        reap_interval_seconds=0.05,
        retry_backoff_base=0,
        evidence_dir=str(tmp_path / "evidence"),
        node_name="test-node",
    )


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_conn(server):
    return fakeredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def ledger():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return DispatchLedger(make_session_factory(engine))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(redis_conn, settings, ledger, clock):
    return QueueService(redis_conn, settings, ledger=ledger, clock=clock)


@pytest.fixture
def make_launcher():
    return FakeLauncher
