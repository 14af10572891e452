import asyncio
import json

import httpx
import pytest

from polychat.client import ChatClient
from polychat.storage import SessionStore

VALID_KEY = "k" * 32


class FakeSettings:
    """In-memory settings with the same read contract as ``Settings``."""

    def __init__(self, credential=VALID_KEY, provider="glm", model="glm-4.7", timeout=30, stream=True):
        self.credential = credential
        self.provider = provider
        self.model = model
        self.timeout = timeout
        self.stream = stream

    def get_credential(self):
        return self.credential

    def get_selected_provider(self):
        return self.provider

    def get_model_name(self):
        return self.model

    def get_request_timeout_seconds(self):
        return self.timeout

    def get_stream_responses(self):
        return self.stream


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event, **fields):
        self.events.append((event, fields))

    def names(self):
        return [name for name, _ in self.events]


class ScriptedClient:
    """Stand-in for ChatClient whose streams are fed event by event from the test."""

    def __init__(self):
        self.requests = []
        self.closed = []
        self._queues = {}

    def queue(self, index):
        return self._queues.setdefault(index, asyncio.Queue())

    def push(self, index, *items):
        for item in items:
            self.queue(index).put_nowait(item)

    async def stream(self, provider, credential, request, timeout):
        index = len(self.requests)
        self.requests.append(request)
        queue = self.queue(index)
        try:
            while True:
                item = await queue.get()
                if isinstance(item, Exception):
                    raise item
                yield item
                if item.is_final:
                    return
        finally:
            self.closed.append(index)

    async def complete(self, provider, credential, request, timeout):
        raise AssertionError("one-shot mode not expected")


def sse_body(*contents, done=True):
    frames = [
        "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": c}}]}) + "\n\n"
        for c in contents
    ]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode()


async def wait_until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def store(tmp_path):
    s = SessionStore(tmp_path / "polychat.db")
    yield s
    s.close()


@pytest.fixture
def settings():
    return FakeSettings()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def scripted_client():
    return ScriptedClient()


@pytest.fixture
def mock_client():
    """Factory for a ChatClient whose HTTP traffic goes to ``handler``."""

    def make(handler):
        return ChatClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    return make
