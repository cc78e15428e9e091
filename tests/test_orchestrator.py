"""
Tests for the conversation orchestrator.
Run with: pytest tests/test_orchestrator.py
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from parley.errors import GenerationError, SessionBusy, StorageError
from parley.orchestrator import ConversationOrchestrator
from parley.prompts import DEFAULT_SYSTEM_PROMPT
from parley.sessions import SessionRegistry
from parley.storage.models import Role

from conftest import ScriptedBackend


def _orchestrator(store, backend, **kwargs):
    return ConversationOrchestrator(store=store, backend=backend, **kwargs)


async def _collect(turn) -> list[str]:
    return [fragment async for fragment in turn.stream()]


def _roles(store, sid):
    return [(m.role, m.content) for m in store.list_messages(sid)]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_new_session_gets_id_and_reply(store):
    """No session id: one is synthesized, reply streamed, both sides stored."""
    backend = ScriptedBackend(["Hi", " there", "!"])
    orch = _orchestrator(store, backend)

    turn = await orch.start_turn(None, "hello")
    fragments = await _collect(turn)

    assert turn.session_id
    assert fragments == ["Hi", " there", "!"]
    assert _roles(store, turn.session_id) == [
        (Role.USER, "hello"),
        (Role.ASSISTANT, "Hi there!"),
    ]
    assert not orch.sessions.is_busy(turn.session_id)


@pytest.mark.asyncio
async def test_unknown_session_id_is_fresh(store):
    orch = _orchestrator(store, ScriptedBackend(["hey"]))

    sid, reply = await orch.chat("never-seen-before", "hello")

    assert sid == "never-seen-before"
    assert reply == "hey"
    assert len(store.list_messages(sid)) == 2


@pytest.mark.asyncio
async def test_blank_session_id_is_replaced(store):
    orch = _orchestrator(store, ScriptedBackend(["x"]))
    sid, _ = await orch.chat("   ", "hello")
    assert sid.strip()
    assert sid != "   "


@pytest.mark.asyncio
async def test_prompt_carries_history_in_order(store):
    """Second turn sees system prompt, A, reply to A, then B."""
    backend = ScriptedBackend(["reply A"], ["reply B"])
    orch = _orchestrator(store, backend)

    sid, _ = await orch.chat(None, "A")
    await orch.chat(sid, "B")

    assert backend.prompts[0] == [
        {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
        {"role": "user", "content": "A"},
    ]
    assert backend.prompts[1] == [
        {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
        {"role": "user", "content": "A"},
        {"role": "assistant", "content": "reply A"},
        {"role": "user", "content": "B"},
    ]


@pytest.mark.asyncio
async def test_system_prompt_never_stored(store):
    orch = _orchestrator(store, ScriptedBackend(["ok"]), system_prompt="Be terse.")
    sid, _ = await orch.chat(None, "hi")

    assert all(m.role is not Role.SYSTEM for m in store.list_messages(sid))
    assert orch.backend.prompts[0][0] == {"role": "system", "content": "Be terse."}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_immediate_generation_failure_keeps_user_message(store):
    backend = ScriptedBackend([GenerationError("model down")])
    orch = _orchestrator(store, backend)

    with pytest.raises(GenerationError) as exc_info:
        await orch.start_turn("s1", "are you there?")

    assert exc_info.value.session_id == "s1"
    assert _roles(store, "s1") == [(Role.USER, "are you there?")]
    assert not orch.sessions.is_busy("s1")


@pytest.mark.asyncio
async def test_unexpected_backend_error_becomes_generation_error(store):
    orch = _orchestrator(store, ScriptedBackend([RuntimeError("kaboom")]))

    with pytest.raises(GenerationError, match="kaboom"):
        await orch.start_turn("s1", "hi")
    assert _roles(store, "s1") == [(Role.USER, "hi")]


@pytest.mark.asyncio
async def test_no_output_is_generation_error(store):
    orch = _orchestrator(store, ScriptedBackend([]))

    with pytest.raises(GenerationError):
        await orch.start_turn("s1", "hi")
    assert _roles(store, "s1") == [(Role.USER, "hi")]


@pytest.mark.asyncio
async def test_whitespace_reply_not_stored(store):
    orch = _orchestrator(store, ScriptedBackend(["  ", "\n\t"]))

    turn = await orch.start_turn("s1", "hi")
    fragments = await _collect(turn)

    assert fragments == ["  ", "\n\t"]
    assert turn.assistant_message is None
    assert _roles(store, "s1") == [(Role.USER, "hi")]


@pytest.mark.asyncio
async def test_mid_stream_failure_ends_stream_and_keeps_partial(store):
    backend = ScriptedBackend(["Hello", " wor", GenerationError("connection reset")])
    orch = _orchestrator(store, backend)

    turn = await orch.start_turn("s1", "hi")
    fragments = await _collect(turn)

    assert fragments == ["Hello", " wor"]
    assert _roles(store, "s1") == [(Role.USER, "hi"), (Role.ASSISTANT, "Hello wor")]
    assert not orch.sessions.is_busy("s1")


@pytest.mark.asyncio
async def test_client_disconnect_discards_reply(store):
    backend = ScriptedBackend(["one", "two", "three"])
    orch = _orchestrator(store, backend)

    turn = await orch.start_turn("s1", "hi")
    stream = turn.stream()
    assert await stream.__anext__() == "one"
    await stream.aclose()

    assert _roles(store, "s1") == [(Role.USER, "hi")]
    assert backend.closed == 1
    assert not orch.sessions.is_busy("s1")


@pytest.mark.asyncio
async def test_unconsumed_turn_can_be_abandoned(store):
    orch = _orchestrator(store, ScriptedBackend(["never read"]))

    turn = await orch.start_turn("s1", "hi")
    assert orch.sessions.is_busy("s1")
    await turn.aclose()

    assert not orch.sessions.is_busy("s1")
    assert _roles(store, "s1") == [(Role.USER, "hi")]


@pytest.mark.asyncio
async def test_storage_failure_before_streaming(store):
    broken = MagicMock()
    broken.ensure_session.side_effect = StorageError("disk gone")
    backend = ScriptedBackend(["unused"])
    orch = _orchestrator(broken, backend)

    with pytest.raises(StorageError) as exc_info:
        await orch.start_turn("s1", "hi")

    assert exc_info.value.session_id == "s1"
    assert backend.prompts == []
    broken.append_message.assert_not_called()
    assert not orch.sessions.is_busy("s1")


@pytest.mark.asyncio
async def test_assistant_store_failure_does_not_break_stream(store):
    orch = _orchestrator(store, ScriptedBackend(["fine"]))
    turn = await orch.start_turn("s1", "hi")
    store.delete_session("s1")  # assistant append now hits an unknown session

    assert await _collect(turn) == ["fine"]
    assert turn.assistant_message is None
    assert not orch.sessions.is_busy("s1")


# ---------------------------------------------------------------------------
# Per-session serialization
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_turn_same_session_rejected(store):
    gate = asyncio.Event()
    backend = ScriptedBackend(["first", gate, " done"], ["other"])
    orch = _orchestrator(store, backend)

    turn = await orch.start_turn("s1", "A")

    with pytest.raises(SessionBusy):
        await orch.start_turn("s1", "B")

    # Other sessions are unaffected.
    sid, reply = await orch.chat("s2", "C")
    assert reply == "other"

    gate.set()
    assert "".join(await _collect(turn)) == "first done"
    assert _roles(store, "s1") == [(Role.USER, "A"), (Role.ASSISTANT, "first done")]


@pytest.mark.asyncio
async def test_wait_policy_queues_second_turn(store):
    gate = asyncio.Event()
    backend = ScriptedBackend(["reply A", gate], ["reply B"])
    orch = _orchestrator(store, backend, sessions=SessionRegistry(busy_policy="wait", wait_timeout=5))

    turn = await orch.start_turn("s1", "A")
    second = asyncio.create_task(orch.chat("s1", "B"))
    await asyncio.sleep(0.01)
    assert not second.done()

    gate.set()
    await _collect(turn)
    _, reply = await second

    assert reply == "reply B"
    assert _roles(store, "s1") == [
        (Role.USER, "A"),
        (Role.ASSISTANT, "reply A"),
        (Role.USER, "B"),
        (Role.ASSISTANT, "reply B"),
    ]
    assert backend.prompts[1][-2] == {"role": "assistant", "content": "reply A"}


@pytest.mark.asyncio
async def test_wait_policy_times_out(store):
    gate = asyncio.Event()
    backend = ScriptedBackend(["x", gate])
    orch = _orchestrator(store, backend, sessions=SessionRegistry(busy_policy="wait", wait_timeout=0.05))

    turn = await orch.start_turn("s1", "A")
    with pytest.raises(SessionBusy):
        await orch.start_turn("s1", "B")

    # The queued request never touched the history.
    assert _roles(store, "s1") == [(Role.USER, "A")]
    gate.set()
    await _collect(turn)
