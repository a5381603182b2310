import asyncio

import pytest

from compute_jobs.observability import get_metrics_collector
from compute_jobs.store import JobStore


class RecordingChannel:
    """Stands in for BroadcastChannel and keeps every published event."""

    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)
        return "broker"

    def types(self):
        return [e.type for e in self.events]


async def no_sleep(_delay):
    return None


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def store(tmp_path):
    s = JobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    s.init_schema()
    yield s
    s.dispose()


@pytest.fixture
def channel():
    return RecordingChannel()


def run(coro):
    return asyncio.run(coro)


class FakeSocket:
    """Client-side websocket double: records sends, iterates until closed."""

    def __init__(self):
        self.sent = []
        self._closed = asyncio.Event()

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._closed.wait()
        raise StopAsyncIteration


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)
