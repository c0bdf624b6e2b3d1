import asyncio

import pytest

from chatrelay.agent.context import ContextBuilder
from chatrelay.agent.turn import TurnOrchestrator
from chatrelay.providers.base import GenerationError
from chatrelay.session.store import Message, SessionStore, StoreError

from tests.conftest import ScriptedGenerator


async def test_prepare_turn_builds_input_from_history_before_write(orchestrator, store):
    await store.append_message("u1", "user", "earlier question")
    await store.append_message("u1", "assistant", "earlier answer")

    turn = await orchestrator.prepare_turn("u1", "new question")

    assert turn.messages[0]["role"] == "system"
    assert turn.messages[1:] == [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
        {"role": "user", "content": "new question"},
    ]
    assert await orchestrator.settle(turn.pending_user_write)
    history = await store.get_history("u1")
    assert history[-1] == Message("user", "new question")


async def test_system_instruction_comes_from_context(store, generator):
    orch = TurnOrchestrator(store, generator, ContextBuilder("Be brief."))
    turn = await orch.prepare_turn("u1", "hi")
    assert turn.messages[0] == {"role": "system", "content": "Be brief."}
    await orch.drain()


async def test_run_turn_persists_both_sides(orchestrator, store):
    reply = await orchestrator.run_turn("u1", "hi", "billing", "refunds")
    await orchestrator.drain()

    assert reply == "Hello, world!"
    assert await store.get_history("u1", "billing", "refunds") == [
        Message("user", "hi"),
        Message("assistant", "Hello, world!"),
    ]
    assert orchestrator.stats == {"background_writes": 2, "background_failures": 0}


async def test_history_fetch_failure_aborts_turn(orchestrator, generator, server):
    server.connected = False

    with pytest.raises(StoreError):
        await orchestrator.run_turn("u1", "hi")
    with pytest.raises(StoreError):
        await orchestrator.open_stream("u1", "hi")
    assert generator.calls == []


async def test_generation_failure_persists_no_assistant_text(store):
    generator = ScriptedGenerator(fail_generate=GenerationError("model down"))
    orch = TurnOrchestrator(store, generator)

    with pytest.raises(GenerationError):
        await orch.run_turn("u1", "hi")
    await orch.drain()

    assert await store.get_history("u1") == [Message("user", "hi")]


async def test_streamed_chunks_equal_persisted_reply(orchestrator, store):
    turn = await orchestrator.open_stream("u1", "hi")
    delivered = [chunk async for chunk in turn]
    await orchestrator.drain()

    assert turn.completed
    history = await store.get_history("u1")
    assert history[-1] == Message("assistant", "".join(delivered))
    assert history[0] == Message("user", "hi")


async def test_pipe_delivers_to_sink(orchestrator, store):
    sink: list[str] = []

    async def write(chunk: str) -> None:
        sink.append(chunk)

    turn = await orchestrator.open_stream("u1", "hi")
    text = await turn.pipe(write)
    await orchestrator.drain()

    assert text == "".join(sink) == "Hello, world!"
    assert (await store.get_history("u1"))[-1].content == text


async def test_mid_stream_failure_writes_marker_and_skips_persistence(store):
    generator = ScriptedGenerator(chunks=["par", "tial", "!"], fail_stream_after=2)
    orch = TurnOrchestrator(store, generator)

    turn = await orch.open_stream("u1", "hi")
    delivered = [chunk async for chunk in turn]
    await orch.drain()

    assert delivered == ["par", "tial", "\n[error] model went away"]
    assert not turn.completed
    assert await store.get_history("u1") == [Message("user", "hi")]


async def test_assistant_write_outage_does_not_touch_delivered_chunks(orchestrator, store, monkeypatch):
    real_append = store.append_message

    async def flaky_append(user_id, role, content, domain=None, category=None):
        if role == "assistant":
            raise StoreError("redis unavailable")
        await real_append(user_id, role, content, domain, category)

    monkeypatch.setattr(store, "append_message", flaky_append)

    turn = await orchestrator.open_stream("u1", "hi")
    delivered = [chunk async for chunk in turn]
    await orchestrator.drain()

    assert delivered == ["Hello", ", ", "world", "!"]
    assert turn.completed
    assert orchestrator.stats["background_failures"] == 1
    assert await store.get_history("u1") == [Message("user", "hi")]


async def test_user_write_failure_does_not_block_reply(orchestrator, store, monkeypatch):
    async def failing_append(*args, **kwargs):
        raise StoreError("redis unavailable")

    monkeypatch.setattr(store, "append_message", failing_append)

    reply = await orchestrator.run_turn("u1", "hi")
    await orchestrator.drain()

    assert reply == "Hello, world!"
    assert orchestrator.stats["background_failures"] == 2


async def test_chunks_flow_before_user_write_completes(orchestrator, store, monkeypatch):
    release = asyncio.Event()
    real_append = store.append_message

    async def slow_append(user_id, role, content, domain=None, category=None):
        if role == "user":
            await release.wait()
        await real_append(user_id, role, content, domain, category)

    monkeypatch.setattr(store, "append_message", slow_append)

    turn = await orchestrator.open_stream("u1", "hi")
    stream = turn.__aiter__()
    first = await stream.__anext__()
    assert first == "Hello"
    assert not turn.turn.pending_user_write.done()

    release.set()
    rest = [chunk async for chunk in stream]
    await orchestrator.drain()

    assert first + "".join(rest) == "Hello, world!"
    assert await store.get_history("u1") == [
        Message("user", "hi"),
        Message("assistant", "Hello, world!"),
    ]


async def test_empty_reply_is_not_persisted(store):
    orch = TurnOrchestrator(store, ScriptedGenerator(chunks=[]))
    assert await orch.run_turn("u1", "hi") == ""
    await orch.drain()
    assert await store.get_history("u1") == [Message("user", "hi")]


async def test_concurrent_turns_on_same_session_lose_no_updates(handle):
    store = SessionStore(handle, max_messages=100)
    orch = TurnOrchestrator(store, ScriptedGenerator(chunks=["ok"]))

    await asyncio.gather(*(orch.run_turn("u1", f"q{i}") for i in range(10)))
    await orch.drain()

    history = await store.get_history("u1")
    assert len(history) == 20
    assert sorted(m.content for m in history if m.role == "user") == sorted(f"q{i}" for i in range(10))
    assert all(m.content == "ok" for m in history if m.role == "assistant")
