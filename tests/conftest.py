from typing import Any

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from chatrelay.agent.turn import TurnOrchestrator
from chatrelay.providers.base import GenerationClient, GenerationError
from chatrelay.session.store import SessionStore, StoreHandle


class ScriptedGenerator(GenerationClient):
    """按脚本回放固定回复；可以在调用前直接失败，或在流式输出中途失败。"""

    def __init__(
        self,
        chunks: list[str] | None = None,
        fail_generate: Exception | None = None,
        fail_stream_after: int | None = None,
        stream_error: Exception | None = None,
    ):
        self.chunks = ["Hello", ", ", "world", "!"] if chunks is None else chunks
        self.fail_generate = fail_generate
        self.fail_stream_after = fail_stream_after
        self.stream_error = stream_error or GenerationError("model went away")
        self.calls: list[list[dict[str, Any]]] = []
        self.stream_closed = False

    async def generate(self, messages):
        self.calls.append(messages)
        if self.fail_generate is not None:
            raise self.fail_generate
        return "".join(self.chunks)

    async def stream(self, messages):
        self.calls.append(messages)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_stream_after is not None and i == self.fail_stream_after:
                    raise self.stream_error
                yield chunk
        finally:
            self.stream_closed = True

    def get_default_model(self) -> str:
        return "scripted"


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def make_handle(server):
    def _make() -> StoreHandle:
        return StoreHandle("redis://fake:6379", factory=lambda: FakeRedis(server=server, decode_responses=True))
    return _make


@pytest.fixture
async def handle(make_handle):
    h = make_handle()
    yield h
    await h.close()


@pytest.fixture
def store(handle):
    return SessionStore(handle, max_messages=20)


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
async def orchestrator(store, generator):
    orch = TurnOrchestrator(store=store, generator=generator)
    yield orch
    await orch.drain()
