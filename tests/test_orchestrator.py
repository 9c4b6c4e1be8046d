"""Tests for the turn orchestrator."""

from __future__ import annotations

import asyncio
import json

import pytest

from chatrelay.errors import (
    ClientDisconnected,
    ConversationBusyError,
    ConversationNotFoundError,
    UpstreamConnectionError,
    UpstreamStatusError,
)
from chatrelay.llm.types import TurnStatus
from chatrelay.orchestrator.core import TurnOrchestrator, TurnRequest, TurnState
from chatrelay.prompts import (
    EMPTY_REPLY,
    ERROR_APOLOGY,
    EXTRACTED_TEXT_PREFIX,
    EXTRACTED_TEXT_PROMPT,
    SYSTEM_PROMPT,
    TOOL_APOLOGY,
)
from chatrelay.relay.sink import CollectingSink, QueueSink
from chatrelay.session.store import ConversationStore
from chatrelay.tools.base import ToolDefinition
from chatrelay.tools.registry import ToolRegistry
from chatrelay.types import ErrorCode, ToolResult
from tests.mock_providers import (
    DONE,
    ScriptedProvider,
    content_payload,
    split_bytes,
    sse,
    text_stream,
    tool_call_stream,
    tool_payload,
)
from tests.mock_tools import EchoTool, FailingTool


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(tmp_path):
    s = ConversationStore(str(tmp_path / "history.db"))
    await s.init()
    yield s
    await s.close()


@pytest.fixture
async def conversation_id(store):
    return await store.create_conversation()


@pytest.fixture
def echo_tool():
    return EchoTool()


@pytest.fixture
def failing_tool():
    return FailingTool()


@pytest.fixture
def registry(echo_tool, failing_tool):
    reg = ToolRegistry(tool_timeout=5.0)
    reg.register(echo_tool)
    reg.register(failing_tool)
    reg.freeze()
    return reg


class HookSink(CollectingSink):
    """Collects frames and calls *on_frame* after each one."""

    def __init__(self, on_frame=None) -> None:
        super().__init__()
        self.on_frame = on_frame

    async def _send(self, frame) -> None:
        await super()._send(frame)
        if self.on_frame is not None:
            self.on_frame(frame)


class DisconnectingSink(CollectingSink):
    """Accepts *accept* frames, then behaves like a closed connection."""

    def __init__(self, accept: int) -> None:
        super().__init__()
        self.accept = accept

    async def _send(self, frame) -> None:
        if len(self.frames) >= self.accept:
            raise ClientDisconnected("client went away")
        await super()._send(frame)


def _make(store, registry, provider, sink=None) -> tuple[TurnOrchestrator, CollectingSink]:
    sink = sink if sink is not None else CollectingSink()
    return TurnOrchestrator(store, registry, provider, sink), sink


def _assistant_turns(history):
    return [t for t in history if t.role == "assistant"]


# ---------------------------------------------------------------------------
# Plain text turns
# ---------------------------------------------------------------------------


class TestTextTurn:
    async def test_scenario_plain_text_split_across_reads(self, store, registry, conversation_id):
        """Deltas reach the client one by one and the full text is persisted."""
        body = sse(content_payload("Hel")) + sse(content_payload("lo")) + DONE
        provider = ScriptedProvider([split_bytes(body, 5)])
        orch, sink = _make(store, registry, provider)

        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))

        assert sink.contents == ["Hel", "lo"]
        assert sink.finished_count == 1
        assert sink.frames[-1].finished
        assert outcome.state == TurnState.DONE
        assert outcome.status == TurnStatus.COMPLETE
        assert outcome.content == "Hello"

        history = await store.read_history(conversation_id)
        assert [(t.role, t.content) for t in history] == [("user", "Hi"), ("assistant", "Hello")]
        assert history[1].status == TurnStatus.COMPLETE
        assert not history[0].is_streaming
        assert provider.closed_count == 1

    async def test_state_transitions(self, store, registry, conversation_id):
        provider = ScriptedProvider([[text_stream("ok")]])
        orch, _ = _make(store, registry, provider)
        await orch.run(TurnRequest(conversation_id, "Hi"))
        assert orch.transitions == [
            TurnState.BUILDING_REQUEST,
            TurnState.STREAMING_PRIMARY,
            TurnState.FINALIZING,
            TurnState.DONE,
        ]

    async def test_stream_without_sentinel(self, store, registry, conversation_id):
        body = sse(content_payload("no ")) + b'data: {"choices":[{"delta":{"content":"sentinel"}}]}'
        provider = ScriptedProvider([[body]])
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))
        assert outcome.content == "no sentinel"
        assert sink.finished_count == 1

    async def test_malformed_frame_skipped(self, store, registry, conversation_id):
        body = sse(content_payload("a")) + b"data: {oops\n\n" + sse(content_payload("b")) + DONE
        provider = ScriptedProvider([[body]])
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))
        assert sink.contents == ["a", "b"]
        assert outcome.status == TurnStatus.COMPLETE

    async def test_wrong_shape_frame_skipped(self, store, registry, conversation_id):
        body = (
            sse(content_payload("Hel"))
            + sse({"choices": ["heartbeat"]})
            + sse(content_payload("lo"))
            + DONE
        )
        provider = ScriptedProvider([[body]])
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))
        assert sink.contents == ["Hel", "lo"]
        assert sink.error_frames == []
        assert outcome.state == TurnState.DONE
        assert outcome.content == "Hello"

    async def test_empty_reply_gets_default_message(self, store, registry, conversation_id):
        provider = ScriptedProvider([[DONE]])
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))
        assert sink.contents == [EMPTY_REPLY]
        assert outcome.content == EMPTY_REPLY
        history = await store.read_history(conversation_id)
        assert _assistant_turns(history)[0].content == EMPTY_REPLY


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


class TestRequestBuilding:
    async def test_system_prompt_and_tools_sent(self, store, registry, conversation_id):
        provider = ScriptedProvider([[text_stream("ok")]])
        orch, _ = _make(store, registry, provider)
        await orch.run(TurnRequest(conversation_id, "Hi"))

        messages, tools = provider.requests[0]
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert messages[-1] == {"role": "user", "content": "Hi"}
        assert sorted(t["function"]["name"] for t in tools) == ["echo", "explode"]

    async def test_history_replayed_in_order(self, store, registry, conversation_id):
        provider = ScriptedProvider([[text_stream("first reply")], [text_stream("second reply")]])
        first, _ = _make(store, registry, provider)
        await first.run(TurnRequest(conversation_id, "one"))
        second, _ = _make(store, registry, provider)
        await second.run(TurnRequest(conversation_id, "two"))

        messages, _ = provider.requests[1]
        assert [(m["role"], m["content"]) for m in messages[1:]] == [
            ("user", "one"),
            ("assistant", "first reply"),
            ("user", "two"),
        ]

    async def test_extracted_text(self, store, registry, conversation_id):
        provider = ScriptedProvider([[text_stream("It says EXIT.")], [text_stream("ok")]])
        first, _ = _make(store, registry, provider)
        await first.run(
            TurnRequest(
                conversation_id,
                "What does the sign say?",
                extracted_text="EXIT",
                attachments=[{"url": "https://example.com/sign.png"}],
            )
        )

        messages, _ = provider.requests[0]
        assert messages[0]["content"] == EXTRACTED_TEXT_PROMPT
        assert messages[-2]["content"][0] == {"type": "text", "text": "What does the sign say?"}
        assert messages[-1] == {"role": "user", "content": EXTRACTED_TEXT_PREFIX + "EXIT"}

        second, _ = _make(store, registry, provider)
        await second.run(TurnRequest(conversation_id, "Thanks"))
        messages, _ = provider.requests[1]
        assert messages[0]["content"] == SYSTEM_PROMPT
        assert messages[2] == {"role": "user", "content": EXTRACTED_TEXT_PREFIX + "EXIT"}
        assert messages[3]["role"] == "assistant"


# ---------------------------------------------------------------------------
# Upstream failures
# ---------------------------------------------------------------------------


class TestUpstreamFailure:
    async def test_http_500_before_any_content(self, store, registry, echo_tool, conversation_id):
        provider = ScriptedProvider([UpstreamStatusError(500, "boom")])
        orch, sink = _make(store, registry, provider)

        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))

        assert [f.content for f in sink.error_frames] == [ERROR_APOLOGY]
        assert sink.finished_count == 1
        assert echo_tool.calls == []
        assert outcome.state == TurnState.FAILED
        assert outcome.status == TurnStatus.ERROR

        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert len(assistant) == 1
        assert assistant[0].content == ERROR_APOLOGY
        assert assistant[0].status == TurnStatus.ERROR

    async def test_failure_mid_stream_keeps_partial_content(self, store, registry, conversation_id):
        provider = ScriptedProvider(
            [[sse(content_payload("partial ")), UpstreamConnectionError("read timed out")]]
        )
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))

        assert sink.contents == ["partial ", ERROR_APOLOGY]
        assert sink.finished_count == 1
        assert outcome.content == "partial " + ERROR_APOLOGY
        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert assistant[0].content == "partial " + ERROR_APOLOGY
        assert provider.closed_count == 1

    async def test_streaming_marker_cleared_on_failure(self, store, registry, conversation_id):
        provider = ScriptedProvider([UpstreamConnectionError("refused")])
        orch, _ = _make(store, registry, provider)
        await orch.run(TurnRequest(conversation_id, "Hi"))
        user = (await store.read_history(conversation_id))[0]
        assert not user.is_streaming


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    async def test_successful_tool_then_follow_up(self, store, registry, echo_tool, conversation_id):
        provider = ScriptedProvider(
            [
                split_bytes(tool_call_stream("echo", {"message": "hi"}, content_prefix="Let me check."), 9),
                [text_stream("Done.")],
            ]
        )
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "echo hi"))

        assert echo_tool.calls == [{"message": "hi"}]
        assert sink.contents == ["Let me check.", "\n\nEchoed: hi\n\n", "Done."]
        assert sink.finished_count == 1
        assert provider.call_count == 2
        assert orch.transitions == [
            TurnState.BUILDING_REQUEST,
            TurnState.STREAMING_PRIMARY,
            TurnState.DISPATCHING_TOOLS,
            TurnState.STREAMING_FOLLOWUP,
            TurnState.FINALIZING,
            TurnState.DONE,
        ]

        followup_messages, _ = provider.requests[1]
        assistant_call, tool_reply = followup_messages[-2:]
        assert assistant_call == {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": "call_abc123",
                    "type": "function",
                    "function": {"name": "echo", "arguments": '{"message": "hi"}'},
                }
            ],
        }
        assert tool_reply["role"] == "tool"
        assert tool_reply["tool_call_id"] == "call_abc123"
        assert json.loads(tool_reply["content"]) == {"status": "success", "echo": "hi"}

        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert len(assistant) == 1
        assert assistant[0].content == "Let me check.\n\nEchoed: hi\n\nDone."
        assert outcome.tool_results[0][1].success

    async def test_tool_arguments_never_relayed(self, store, registry, conversation_id):
        provider = ScriptedProvider(
            [[tool_call_stream("echo", {"message": "secret-args"})], [text_stream("ok")]]
        )
        orch, sink = _make(store, registry, provider)
        await orch.run(TurnRequest(conversation_id, "go"))
        assert not any("{" in c for c in sink.contents)

    async def test_failed_tool_apologizes_without_follow_up(
        self, store, registry, failing_tool, conversation_id
    ):
        provider = ScriptedProvider([[tool_call_stream("explode", {})]])
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "do it"))

        assert len(failing_tool.calls) == 1
        assert provider.call_count == 1
        assert sink.contents == [TOOL_APOLOGY]
        assert sink.finished_count == 1
        assert outcome.status == TurnStatus.COMPLETE
        assert outcome.tool_results[0][1].error_code == ErrorCode.TOOL_EXCEPTION
        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert assistant[0].content == TOOL_APOLOGY

    async def test_unparseable_arguments_never_invoke_handler(
        self, store, registry, echo_tool, conversation_id
    ):
        provider = ScriptedProvider([[tool_call_stream("echo", '{"message": ')]])
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "echo"))

        assert echo_tool.calls == []
        assert provider.call_count == 1
        assert sink.contents == [TOOL_APOLOGY]
        assert outcome.tool_results[0][1].error_code == ErrorCode.ARGUMENT_PARSE_ERROR

    async def test_unknown_tool(self, store, registry, conversation_id):
        provider = ScriptedProvider([[tool_call_stream("does_not_exist", {"a": 1})]])
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "go"))
        assert sink.contents == [TOOL_APOLOGY]
        assert outcome.tool_results[0][1].error_code == ErrorCode.UNKNOWN_TOOL
        assert provider.call_count == 1

    async def test_mixed_results_dispatch_in_order(
        self, store, registry, echo_tool, failing_tool, conversation_id
    ):
        body = (
            sse(tool_payload(0, call_id="call_a", name="explode", arguments="{}"))
            + sse(tool_payload(1, call_id="call_b", name="echo"))
            + sse(tool_payload(1, arguments='{"message": "x"}'))
            + DONE
        )
        provider = ScriptedProvider([[body], [text_stream("Summary.")]])
        orch, sink = _make(store, registry, provider)
        await orch.run(TurnRequest(conversation_id, "both"))

        assert [r.name for r, _ in orch.tool_results] == ["explode", "echo"]
        assert sink.contents == [TOOL_APOLOGY, "\n\nEchoed: x\n\n", "Summary."]
        assert provider.call_count == 2

        followup_messages, _ = provider.requests[1]
        tool_replies = [m for m in followup_messages if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_replies] == ["call_a", "call_b"]

    async def test_follow_up_failure(self, store, registry, conversation_id):
        provider = ScriptedProvider(
            [[tool_call_stream("echo", {"message": "hi"})], UpstreamStatusError(502)]
        )
        orch, sink = _make(store, registry, provider)
        outcome = await orch.run(TurnRequest(conversation_id, "echo"))

        assert sink.contents == ["\n\nEchoed: hi\n\n", ERROR_APOLOGY]
        assert sink.finished_count == 1
        assert outcome.status == TurnStatus.ERROR
        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert len(assistant) == 1
        assert assistant[0].content == "\n\nEchoed: hi\n\n" + ERROR_APOLOGY

    async def test_failing_confirmation_falls_back_to_default(self, store, conversation_id):
        calls = []

        def handler(arguments):
            calls.append(arguments)
            return ToolResult.ok(payload={"saved": True}, user_message="Noted")

        def confirmation(arguments, result):
            raise KeyError("title")

        reg = ToolRegistry()
        reg.register(
            ToolDefinition(
                "note",
                "Saves a note.",
                {"type": "object", "properties": {}},
                handler,
                confirmation=confirmation,
            )
        )
        reg.freeze()
        provider = ScriptedProvider(
            [[tool_call_stream("note", {})], [text_stream("All set.")]]
        )
        orch, sink = _make(store, reg, provider)

        outcome = await orch.run(TurnRequest(conversation_id, "note this"))

        assert calls == [{}]
        assert sink.contents == ["\n\nNoted\n\n", "All set."]
        assert sink.error_frames == []
        assert provider.call_count == 2
        assert outcome.state == TurnState.DONE


# ---------------------------------------------------------------------------
# Stop, disconnect, cancellation
# ---------------------------------------------------------------------------


class TestEarlyTermination:
    async def test_stop_persists_partial_as_stopped(self, store, registry, conversation_id):
        chunks = [sse(content_payload("a")), sse(content_payload("b")), DONE]
        provider = ScriptedProvider([chunks])
        sink = HookSink()
        orch, _ = _make(store, registry, provider, sink)
        sink.on_frame = lambda frame: orch.stop()

        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))

        assert sink.contents == ["a"]
        assert sink.finished_count == 1
        assert sink.error_frames == []
        assert outcome.state == TurnState.STOPPED
        assert provider.closed_count == 1

        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert len(assistant) == 1
        assert assistant[0].content == "a"
        assert assistant[0].status == TurnStatus.STOPPED

    async def test_client_disconnect(self, store, registry, conversation_id):
        chunks = [sse(content_payload("a")), sse(content_payload("b")), sse(content_payload("c")), DONE]
        provider = ScriptedProvider([chunks])
        sink = DisconnectingSink(accept=1)
        orch, _ = _make(store, registry, provider, sink)

        outcome = await orch.run(TurnRequest(conversation_id, "Hi"))

        assert outcome.status == TurnStatus.STOPPED
        assert sink.finished_count == 0
        assert provider.closed_count == 1
        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert len(assistant) == 1
        assert assistant[0].status == TurnStatus.STOPPED
        assert assistant[0].content.startswith("a")
        assert "c" not in assistant[0].content

    async def test_disconnect_during_tool_only_stream(self, store, registry, echo_tool, conversation_id):
        chunks = split_bytes(tool_call_stream("echo", {"message": "hi"}), 5)
        provider = ScriptedProvider([chunks], delay=0.01)
        sink = QueueSink()
        orch, _ = _make(store, registry, provider, sink)

        task = asyncio.create_task(orch.run(TurnRequest(conversation_id, "echo hi")))
        while provider.chunks_read < 2:
            await asyncio.sleep(0.005)
        sink.disconnect()
        outcome = await asyncio.wait_for(task, timeout=2.0)

        assert outcome.status == TurnStatus.STOPPED
        assert echo_tool.calls == []
        assert provider.chunks_read < len(chunks)
        assert provider.closed_count == 1
        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert len(assistant) == 1
        assert assistant[0].status == TurnStatus.STOPPED

    async def test_already_disconnected_client_never_reaches_upstream(
        self, store, registry, echo_tool, conversation_id
    ):
        provider = ScriptedProvider([[tool_call_stream("echo", {"message": "hi"})]])
        sink = QueueSink()
        sink.disconnect()
        orch, _ = _make(store, registry, provider, sink)

        outcome = await orch.run(TurnRequest(conversation_id, "echo hi"))

        assert outcome.state == TurnState.STOPPED
        assert provider.chunks_read == 0
        assert echo_tool.calls == []

    async def test_cancellation_persists_and_propagates(self, store, registry, conversation_id):
        chunks = [sse(content_payload("a")), sse(content_payload("b")), DONE]
        provider = ScriptedProvider([chunks], delay=0.05)
        first_frame = asyncio.Event()
        sink = HookSink(on_frame=lambda frame: first_frame.set())
        orch, _ = _make(store, registry, provider, sink)

        task = asyncio.create_task(orch.run(TurnRequest(conversation_id, "Hi")))
        await asyncio.wait_for(first_frame.wait(), timeout=2.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sink.finished_count == 1
        assert provider.closed_count == 1
        assistant = _assistant_turns(await store.read_history(conversation_id))
        assert len(assistant) == 1
        assert assistant[0].content == "a"
        assert assistant[0].status == TurnStatus.STOPPED


# ---------------------------------------------------------------------------
# Conversation guards
# ---------------------------------------------------------------------------


class TestConversationGuards:
    async def test_concurrent_request_rejected(self, store, registry, conversation_id):
        provider = ScriptedProvider([[text_stream("unused")]])
        orch, sink = _make(store, registry, provider)

        async with store.conversation_lock(conversation_id):
            with pytest.raises(ConversationBusyError):
                await orch.run(TurnRequest(conversation_id, "Hi"))

        assert sink.finished_count == 1
        assert len(sink.error_frames) == 1
        assert provider.call_count == 0
        assert await store.read_history(conversation_id) == []

    async def test_unknown_conversation(self, store, registry):
        provider = ScriptedProvider([[text_stream("unused")]])
        orch, sink = _make(store, registry, provider)
        with pytest.raises(ConversationNotFoundError):
            await orch.run(TurnRequest("missing", "Hi"))
        assert sink.finished_count == 1
        assert provider.call_count == 0

    async def test_lock_released_after_turn(self, store, registry, conversation_id):
        provider = ScriptedProvider([[text_stream("one")], [text_stream("two")]])
        for _ in range(2):
            orch, sink = _make(store, registry, provider)
            await orch.run(TurnRequest(conversation_id, "Hi"))
            assert sink.finished_count == 1
        assert len(_assistant_turns(await store.read_history(conversation_id))) == 2
