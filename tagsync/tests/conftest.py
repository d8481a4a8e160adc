"""
Pytest configuration and shared fixtures for the tag synchronization tests.
"""
import threading
import time

import pytest

from tagsync.app.callbacks import HostCallbackSink
from tagsync.config.app_config import SyncConfig
from tagsync.sync.remote_store import MemoryRemoteStore
from tagsync.sync.sync_engine import SyncEngine


class RecordingSink(HostCallbackSink):
    """Sink that records every host callback as a tuple."""

    def __init__(self):
        self.events = []
        self._condition = threading.Condition()

    def _record(self, *event):
        with self._condition:
            self.events.append(event)
            self._condition.notify_all()

    def on_data_changed(self, tag, value):
        self._record('DataChanged', tag, value)

    def on_got_value(self, tag, value):
        self._record('GotValue', tag, value)

    def on_first_removed(self, value):
        self._record('FirstRemoved', value)

    def on_tag_list(self, tags):
        self._record('TagList', tags)

    def on_error(self, message):
        self._record('Error', message)

    def of(self, kind):
        """Payloads of every recorded event of one kind."""
        return [event[1:] if len(event) > 2 else event[1] for event in list(self.events) if event[0] == kind]

    @property
    def errors(self):
        return self.of('Error')

    def wait_for(self, predicate, timeout=5.0):
        """Block until ``predicate(sink)`` holds. Returns False on timeout."""
        with self._condition:
            return self._condition.wait_for(lambda: predicate(self), timeout)


def _wait_until(condition, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def wait_until():
    """Poll a condition until it holds or the timeout expires."""
    return _wait_until


@pytest.fixture
def store():
    """In-memory backend."""
    return MemoryRemoteStore()


@pytest.fixture
def sync_config():
    """Configuration whose namespace is 'dev/game/'."""
    return SyncConfig(
        developer_bucket="dev",
        project_bucket="game",
        developer_token="dev-token"
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_engine(store, sync_config):
    """Factory for engines on the shared store; every engine is closed at teardown."""
    engines = []

    def factory(sink=None, connect=True, config=None, backend=None, **kwargs):
        engine = SyncEngine(config or sync_config, backend or store, sink=sink, max_workers=8, **kwargs)
        engines.append(engine)
        if connect:
            assert engine.connect().result(timeout=5).value is True
        return engine

    yield factory

    for engine in engines:
        engine.close()


@pytest.fixture
def engine(make_engine, sink):
    """Connected engine reporting to ``sink``."""
    return make_engine(sink=sink)
