"""
Turn orchestrator -- the state machine that ties everything together.

For one client request the orchestrator:
1. Builds the upstream message list from conversation history
2. Streams the primary turn: bytes -> FrameDecoder -> DeltaAggregator -> sink
3. Dispatches any assembled tool calls once the primary stream has drained
4. Streams a follow-up turn if at least one tool succeeded
5. Persists exactly one assistant turn and sends exactly one finished frame

States::

    BUILDING_REQUEST -> STREAMING_PRIMARY -> FINALIZING -> DONE
    BUILDING_REQUEST -> STREAMING_PRIMARY -> DISPATCHING_TOOLS
        -> STREAMING_FOLLOWUP -> FINALIZING -> DONE

Any state may end in FAILED (upstream or internal error) or STOPPED (caller
stop, client disconnect, task cancellation).  Both still persist whatever
content was accumulated.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from chatrelay.errors import (
    ClientDisconnected,
    ConversationBusyError,
    ConversationNotFoundError,
    RelayClosedError,
    RelayError,
    UpstreamError,
)
from chatrelay.llm.aggregator import DeltaAggregator
from chatrelay.llm.frame_decoder import FrameDecoder
from chatrelay.llm.providers.base import Provider
from chatrelay.llm.types import ToolCallRecord, Turn, TurnStatus
from chatrelay.prompts import (
    EMPTY_REPLY,
    ERROR_APOLOGY,
    EXTRACTED_TEXT_PREFIX,
    EXTRACTED_TEXT_PROMPT,
    SYSTEM_PROMPT,
    TOOL_APOLOGY,
    select_system_prompt,
)
from chatrelay.relay.sink import RelaySink
from chatrelay.session.store import ConversationStore
from chatrelay.tools.base import Tool
from chatrelay.tools.registry import ToolRegistry
from chatrelay.types import ToolResult

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    BUILDING_REQUEST = "building_request"
    STREAMING_PRIMARY = "streaming_primary"
    DISPATCHING_TOOLS = "dispatching_tools"
    STREAMING_FOLLOWUP = "streaming_followup"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"


class StopRequested(RelayError):
    """The caller asked the orchestrator to stop the current turn."""


@dataclass
class TurnRequest:
    conversation_id: str
    message: str
    extracted_text: str | None = None
    attachments: list[dict] | None = None


@dataclass
class TurnOutcome:
    content: str
    state: TurnState
    status: str
    assistant_turn: Turn | None = None
    tool_results: list[tuple[ToolCallRecord, ToolResult]] = field(default_factory=list)


class TurnOrchestrator:
    """
    Drives one client-facing request.

    Create one instance per request; the registry and provider may be shared
    between instances, the sink may not.

    Parameters
    ----------
    store : ConversationStore
        Conversation history collaborator.
    registry : ToolRegistry
        Registered tools (read-only here).
    provider : Provider
        Upstream chat-completion service.
    sink : RelaySink
        Client connection for this request.
    system_prompt : str
        System prompt for ordinary turns.
    extracted_text_prompt : str
        System prompt used when the request carries extracted text.
    """

    def __init__(
        self,
        store: ConversationStore,
        registry: ToolRegistry,
        provider: Provider,
        sink: RelaySink,
        system_prompt: str = SYSTEM_PROMPT,
        extracted_text_prompt: str = EXTRACTED_TEXT_PROMPT,
        error_apology: str = ERROR_APOLOGY,
        tool_apology: str = TOOL_APOLOGY,
        empty_reply: str = EMPTY_REPLY,
    ) -> None:
        self.store = store
        self.registry = registry
        self.provider = provider
        self.sink = sink
        self.system_prompt = system_prompt
        self.extracted_text_prompt = extracted_text_prompt
        self.error_apology = error_apology
        self.tool_apology = tool_apology
        self.empty_reply = empty_reply

        self.state = TurnState.BUILDING_REQUEST
        self.transitions: list[TurnState] = []
        self.tool_results: list[tuple[ToolCallRecord, ToolResult]] = []
        self._committed: list[str] = []
        self._current: DeltaAggregator | None = None
        self._stop_requested = False
        self._persisted = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def content(self) -> str:
        """ContentBuffer: everything relayed (or being relayed) so far."""
        parts = list(self._committed)
        if self._current is not None:
            parts.append(self._current.content)
        return "".join(parts)

    def stop(self) -> None:
        """
        Ask the current turn to stop.

        Checked before each upstream read is processed; cancel the running
        task instead to interrupt a read that is blocked.
        """
        self._stop_requested = True

    async def run(self, request: TurnRequest) -> TurnOutcome:
        """
        Process *request* end to end.

        Upstream and tool failures are handled here and reported through the
        returned ``TurnOutcome``.  ``ConversationNotFoundError`` and
        ``ConversationBusyError`` are raised after the client has been sent an
        error frame and the finished frame.
        """
        if await self.store.get_conversation(request.conversation_id) is None:
            await self._reject(ConversationNotFoundError(request.conversation_id))
        try:
            async with self.store.conversation_lock(request.conversation_id):
                return await self._run_locked(request)
        except ConversationBusyError as exc:
            await self._reject(exc)
            raise

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run_locked(self, request: TurnRequest) -> TurnOutcome:
        user_turn: Turn | None = None
        status = TurnStatus.COMPLETE
        cancelled: asyncio.CancelledError | None = None

        try:
            self._transition(TurnState.BUILDING_REQUEST)
            messages, user_turn = await self._build_request(request)

            self._transition(TurnState.STREAMING_PRIMARY)
            primary = await self._drive_stream(messages)
            records = primary.finalize()

            if records:
                self._transition(TurnState.DISPATCHING_TOOLS)
                if await self._dispatch_tools(records, messages):
                    self._transition(TurnState.STREAMING_FOLLOWUP)
                    followup = await self._drive_stream(messages)
                    if followup.finalize():
                        logger.warning(
                            "Ignoring %d tool call(s) requested in the follow-up turn",
                            len(followup.finalize()),
                        )
            elif not self.content:
                await self._relay(self.empty_reply)

            self._transition(TurnState.FINALIZING)
        except (StopRequested, ClientDisconnected) as exc:
            logger.info(
                "Turn stopped for conversation %s: %s", request.conversation_id, exc
            )
            self._transition(TurnState.STOPPED)
            status = TurnStatus.STOPPED
        except asyncio.CancelledError as exc:
            logger.info("Turn cancelled for conversation %s", request.conversation_id)
            self._transition(TurnState.STOPPED)
            status = TurnStatus.STOPPED
            cancelled = exc
        except UpstreamError as exc:
            logger.error(
                "Upstream failure in %s for conversation %s: %s",
                self.state.value,
                request.conversation_id,
                exc,
            )
            self._transition(TurnState.FAILED)
            status = TurnStatus.ERROR
            await self._apologize()
        except Exception:
            logger.exception(
                "Unexpected error in %s for conversation %s",
                self.state.value,
                request.conversation_id,
            )
            self._transition(TurnState.FAILED)
            status = TurnStatus.ERROR
            await self._apologize()

        assistant_turn = await self._finalize(request, user_turn, status)
        if cancelled is not None:
            raise cancelled

        if status == TurnStatus.COMPLETE:
            self._transition(TurnState.DONE)
        return TurnOutcome(
            content=assistant_turn.content,
            state=self.state,
            status=status,
            assistant_turn=assistant_turn,
            tool_results=list(self.tool_results),
        )

    def _transition(self, state: TurnState) -> None:
        logger.debug("Turn state %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    # ------------------------------------------------------------------
    # BUILDING_REQUEST
    # ------------------------------------------------------------------

    async def _build_request(self, request: TurnRequest) -> tuple[list[Turn], Turn]:
        history = await self.store.read_history(request.conversation_id)

        prompt = select_system_prompt(
            bool(request.extracted_text),
            self.system_prompt,
            self.extracted_text_prompt,
        )
        messages: list[Turn] = [Turn(role="system", content=prompt)]

        for turn in history:
            messages.append(turn)
            if turn.role == "user" and turn.extracted_text:
                messages.append(
                    Turn(role="user", content=EXTRACTED_TEXT_PREFIX + turn.extracted_text)
                )

        user_turn = Turn(
            role="user",
            content=request.message,
            attachments=request.attachments or None,
            extracted_text=request.extracted_text or None,
            is_streaming=True,
        )
        messages.append(user_turn)
        if request.extracted_text:
            messages.append(
                Turn(role="user", content=EXTRACTED_TEXT_PREFIX + request.extracted_text)
            )

        user_turn = await self.store.append_turn(request.conversation_id, user_turn)
        return messages, user_turn

    # ------------------------------------------------------------------
    # STREAMING_PRIMARY / STREAMING_FOLLOWUP
    # ------------------------------------------------------------------

    async def _drive_stream(self, messages: list[Turn]) -> DeltaAggregator:
        """
        Drive one upstream streaming turn to completion.

        Every content delta is relayed as soon as it is decoded.  The upstream
        connection is closed when this returns or raises.
        """
        self._check_stop()
        decoder = FrameDecoder()
        aggregator = DeltaAggregator(self.sink)
        self._current = aggregator
        tools = self.registry.to_openai_schema() or None

        try:
            async with self.provider.stream(messages, tools) as chunks:
                async for chunk in chunks:
                    self._check_stop()
                    for frame in decoder.feed(chunk):
                        await aggregator.consume(frame)
                    if decoder.finished:
                        break
                else:
                    for frame in decoder.flush():
                        await aggregator.consume(frame)
        finally:
            self._committed.append(aggregator.content)
            self._current = None

        if decoder.dropped:
            logger.warning("Dropped %d malformed frame(s) in this turn", decoder.dropped)
        return aggregator

    def _check_stop(self) -> None:
        if self._stop_requested:
            raise StopRequested("stopped by caller")
        if self.sink.disconnected:
            raise ClientDisconnected("client disconnected")

    # ------------------------------------------------------------------
    # DISPATCHING_TOOLS
    # ------------------------------------------------------------------

    async def _dispatch_tools(
        self, records: list[ToolCallRecord], messages: list[Turn]
    ) -> bool:
        """
        Run every assembled tool call in first-appearance order.

        Returns ``True`` when at least one call succeeded, i.e. a follow-up
        turn is needed.
        """
        succeeded = 0
        for record in records:
            self._check_stop()
            result = await self.registry.dispatch(record)
            self.tool_results.append((record, result))

            descriptor = record.to_wire()
            messages.append(
                Turn(role="assistant", content="", tool_calls=[descriptor])
            )
            messages.append(
                Turn(
                    role="tool",
                    content=json.dumps(result.payload, default=str),
                    tool_call_id=descriptor["id"],
                )
            )

            if result.success:
                succeeded += 1
                await self._relay(self._confirmation(record, result))
            else:
                logger.warning(
                    "Tool %s failed (%s): %s",
                    record.name,
                    result.error_code,
                    result.user_message,
                )
                await self._relay(self.tool_apology)
        return succeeded > 0

    def _confirmation(self, record: ToolCallRecord, result: ToolResult) -> str:
        tool = self.registry.get(record.name)
        try:
            return tool.confirmation(record.parsed_arguments(), result)
        except Exception:
            logger.exception("Confirmation for tool %s failed", record.name)
            return Tool.confirmation(tool, record.parsed_arguments(), result)

    # ------------------------------------------------------------------
    # Relay helpers
    # ------------------------------------------------------------------

    async def _relay(self, text: str) -> None:
        self._committed.append(text)
        await self.sink.emit(text)

    async def _apologize(self) -> None:
        self._committed.append(self.error_apology)
        try:
            await self.sink.emit(self.error_apology, error=True)
        except (ClientDisconnected, RelayClosedError) as exc:
            logger.info("Could not relay apology: %s", exc)

    async def _finish_client(self) -> None:
        try:
            await self.sink.emit_finished()
        except ClientDisconnected:
            logger.info("Client gone before the finished frame")

    async def _reject(self, exc: RelayError) -> None:
        logger.warning("Rejecting request: %s", exc)
        try:
            await self.sink.emit(self.error_apology, error=True)
        except (ClientDisconnected, RelayClosedError) as send_exc:
            logger.info("Could not relay rejection: %s", send_exc)
        await self._finish_client()
        raise exc

    # ------------------------------------------------------------------
    # FINALIZING
    # ------------------------------------------------------------------

    async def _finalize(
        self, request: TurnRequest, user_turn: Turn | None, status: str
    ) -> Turn:
        """
        Persist the single assistant turn, clear the streaming marker and
        send the finished frame.

        A completed turn is persisted before the client is released.  After a
        failure or stop the client is released first.  The finished frame is
        sent even if persisting fails.
        """
        if status != TurnStatus.COMPLETE:
            await self._finish_client()
        try:
            return await self._persist(request, user_turn, status)
        finally:
            await self._finish_client()

    async def _persist(
        self, request: TurnRequest, user_turn: Turn | None, status: str
    ) -> Turn:
        assistant_turn = Turn(role="assistant", content=self.content, status=status)
        if not self._persisted:
            self._persisted = True
            assistant_turn = await self.store.append_turn(
                request.conversation_id, assistant_turn
            )
        if user_turn is not None and user_turn.id:
            await self.store.mark_streaming(user_turn.id, False)
        return assistant_turn
