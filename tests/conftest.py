import tempfile
import threading
import time
from pathlib import Path

import pytest

from docqueue.config import WorkerConfig
from docqueue.dedup import DedupCache
from docqueue.job_store import JobStore
from docqueue.renderer import Renderer
from docqueue.storage import LocalObjectStore
from docqueue.store import SQLiteStore


class CountingRenderer(Renderer):
    """Fake renderer that records every call.

    Fails the first ``fail_times`` calls, then returns ``data``. When ``gate``
    is set, each call blocks until the event is set.
    """

    def __init__(self, data=b"ok", delay=0.0, fail_times=0, gate=None):
        self.data = data
        self.delay = delay
        self.fail_times = fail_times
        self.gate = gate
        self.calls = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    @property
    def call_count(self):
        with self._lock:
            return len(self.calls)

    def render(self, job_type, payload):
        with self._lock:
            self.calls.append((job_type, dict(payload)))
            attempt = len(self.calls)
        self.started.set()

        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.delay:
            time.sleep(self.delay)
        if attempt <= self.fail_times:
            raise RuntimeError(f"render failed (attempt {attempt})")
        return self.data


def _wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll predicate until it is truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def temp_dir():
    """Create temporary directory for store and artifacts."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir):
    return str(temp_dir / "store.db")


@pytest.fixture
def kv(db_path):
    store = SQLiteStore(db_path)
    yield store
    store.close()


@pytest.fixture
def job_store(kv):
    return JobStore(kv, key_prefix="test")


@pytest.fixture
def object_store(temp_dir):
    return LocalObjectStore(str(temp_dir / "artifacts"))


@pytest.fixture
def cache(object_store):
    return DedupCache(object_store)


@pytest.fixture
def fast_config():
    """Single slot, short tick, no periodic reclamation."""
    return WorkerConfig(
        max_concurrent_workers=1,
        max_retries=3,
        processing_timeout_s=5.0,
        poll_interval_s=0.05,
        shutdown_grace_s=5.0,
        reclaim_interval_s=None,
    )
