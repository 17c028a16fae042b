"""Orchestration loop -- the ReAct state machine driving a task.

    IDLE -> THINKING -> TOOL_CALL_PENDING -> AWAITING_APPROVAL -> EXECUTING
         -> OBSERVATION_APPENDED -> THINKING ...
    THINKING -> FINAL_TEXT -> READY

Terminal states and what the UI sees for them:

    READY              stream-end(complete)   status "Ready"
    DENIED             stream-end(denied)     status "Denied"
    MAX_STEPS_REACHED  stream-end(max_steps)  status "Max steps reached"
    CANCELLED          stream-end(cancelled)  status "Cancelled"
    PROVIDER_ERROR     stream-end(error)      status "API Error"

Commands arrive on a bounded queue consumed by one task, so only one task
runs at a time. Cancel, UserFeedback and SetConnectionMode bypass the queue:
they act on shared state (the cancellation token, the approval slot, the
provider handle) while a task is suspended.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from zox.agent.approval import ApprovalSlot
from zox.agent.cancellation import CancellationToken, OperationCancelled
from zox.agent.context import ContextBuilder
from zox.agent.history import Conversation, HistoryStore, Mode
from zox.agent.memory import ConversationMemory, Role, Turn
from zox.agent.parser import (
    ParsedText,
    ParsedTextThenTools,
    StreamingParser,
    ToolCallComplete,
    extract_thinking,
)
from zox.agent.prompts import CHAT_SYSTEM_PROMPT, observation, turbo_prompt
from zox.config import Settings
from zox.events import Event
from zox.providers.base import ModelProvider, ProviderError
from zox.retrieval.store import SemanticStore
from zox.tools.executor import ToolExecutor, ToolStatus
from zox.tools.registry import ToolRegistry
from zox.tools.workspace import Workspace

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    TOOL_CALL_PENDING = "tool_call_pending"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    OBSERVATION_APPENDED = "observation_appended"
    FINAL_TEXT = "final_text"
    READY = "ready"
    DENIED = "denied"
    MAX_STEPS_REACHED = "max_steps_reached"
    CANCELLED = "cancelled"
    PROVIDER_ERROR = "provider_error"


# state -> (stream-end reason, final status)
TERMINAL_OUTCOMES: dict[LoopState, tuple[str, str]] = {
    LoopState.READY: ("complete", "Ready"),
    LoopState.DENIED: ("denied", "Denied"),
    LoopState.MAX_STEPS_REACHED: ("max_steps", "Max steps reached"),
    LoopState.CANCELLED: ("cancelled", "Cancelled"),
    LoopState.PROVIDER_ERROR: ("error", "API Error"),
}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StartTask:
    prompt: str
    mode: Mode = "turbo"


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class UserFeedback:
    approved: bool


@dataclass(frozen=True)
class SetConnectionMode:
    offline: bool


@dataclass(frozen=True)
class NewConversation:
    mode: Mode = "turbo"


@dataclass(frozen=True)
class LoadConversation:
    conversation_id: str


Command = (
    StartTask | Cancel | UserFeedback | SetConnectionMode | NewConversation | LoadConversation
)


@dataclass
class TaskResult:
    state: LoopState
    steps: int
    text: str | None = None
    error: str | None = None

    @property
    def reason(self) -> str:
        return TERMINAL_OUTCOMES[self.state][0]


class EventSink(Protocol):
    async def emit(self, event: Event) -> None: ...


ProviderFactory = Callable[[str], ModelProvider]


class AgentLoop:
    """Owns memory, the current conversation and the parser for its lifetime."""

    def __init__(
        self,
        settings: Settings,
        providers: ProviderFactory,
        registry: ToolRegistry,
        workspace: Workspace,
        retrieval: SemanticStore,
        bus: EventSink,
        history: HistoryStore | None = None,
        approvals: ApprovalSlot | None = None,
    ) -> None:
        self._settings = settings
        self._provider_factory = providers
        self._providers: dict[str, ModelProvider] = {}
        self._registry = registry
        self._retrieval = retrieval
        self._bus = bus
        self._history = history
        self.approvals = approvals or ApprovalSlot()

        self._memory = ConversationMemory(settings.context_window_tokens)
        self._parser = StreamingParser()
        self._context = ContextBuilder(
            retrieval,
            compress_after=settings.compress_after_turns,
            keep_recent=settings.recent_turns_kept,
            k=settings.retrieval_k,
        )
        self._executor = ToolExecutor(
            registry,
            workspace,
            self.approvals,
            self._emit,
            timeout=settings.tool_timeout,
            approval_timeout=settings.approval_timeout,
        )
        self._token = CancellationToken()
        self._queue: asyncio.Queue[Command] = asyncio.Queue(maxsize=settings.command_queue_size)
        self._consumer: asyncio.Task | None = None
        self._summary_task: asyncio.Task | None = None

        self._provider_kind = "local" if settings.start_offline else "cloud"
        self._provider = self._provider_for(self._provider_kind)
        self._conversation: Conversation | None = None
        self._state = LoopState.IDLE
        self._steps = 0
        self._active_label: str | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def steps(self) -> int:
        return self._steps

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    @property
    def provider_kind(self) -> str:
        return self._provider_kind

    @property
    def memory(self) -> ConversationMemory:
        return self._memory

    @property
    def conversation(self) -> Conversation | None:
        return self._conversation

    @property
    def busy(self) -> bool:
        return self._state not in (LoopState.IDLE, *TERMINAL_OUTCOMES)

    def status(self) -> dict[str, Any]:
        tier = self._provider.active_tier()
        return {
            "state": self._state.value,
            "steps": self._steps,
            "provider": self._provider_kind,
            "active_model": tier.label if tier else None,
            "conversation_id": self._conversation.id if self._conversation else None,
            "memory": {"turns": len(self._memory), "estimated_tokens": self._memory.estimate},
            "pending_approval": self.approvals.pending is not None,
            "queued_commands": self._queue.qsize(),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._consumer is not None:
            return
        self._consumer = asyncio.create_task(self._consume(), name="agent-loop")
        logger.info("Agent loop started (provider=%s)", self._provider_kind)

    async def stop(self) -> None:
        self.cancel()
        for task in (self._consumer, self._summary_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumer = None
        self._summary_task = None
        for provider in self._providers.values():
            await provider.close()
        logger.info("Agent loop stopped")

    # ------------------------------------------------------------------
    # Command surface
    # ------------------------------------------------------------------

    async def submit(self, command: Command) -> None:
        """Deliver a command. Control commands act immediately, the rest queue up."""
        if isinstance(command, Cancel):
            self.cancel()
        elif isinstance(command, UserFeedback):
            self.respond_approval(command.approved)
        elif isinstance(command, SetConnectionMode):
            await self.set_connection_mode(command.offline)
        else:
            await self._queue.put(command)

    def cancel(self) -> None:
        """Abort the running task: fire the token and deny any pending approval."""
        self._token.cancel()
        self.approvals.cancel()

    def respond_approval(self, approved: bool) -> bool:
        resolved = self.approvals.respond(approved)
        if not resolved:
            logger.debug("Approval response (%s) with nothing pending", approved)
        return resolved

    async def set_connection_mode(self, offline: bool) -> None:
        kind = "local" if offline else "cloud"
        if kind == self._provider_kind:
            return
        # In-flight requests keep their reference to the previous provider
        self._provider = self._provider_for(kind)
        self._provider_kind = kind
        logger.info("Switched provider to %s", kind)
        await self._emit(
            "status", {"text": "Switched to offline mode" if offline else "Switched to cloud mode"}
        )
        await self._emit_active_model(self._provider)

    async def new_conversation(self, mode: Mode = "turbo") -> Conversation:
        self._memory.clear()
        self._context.reset()
        self._conversation = Conversation(mode=mode)
        logger.info("Started conversation %s", self._conversation.id)
        return self._conversation

    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        if self._history is None:
            return None
        conversation = await self._history.load(conversation_id)
        if conversation is None:
            return None
        self._memory.load(conversation.to_turns())
        self._context.reset()
        self._conversation = conversation
        logger.info(
            "Loaded conversation %s (%d turns, %d in memory)",
            conversation.id, len(conversation.turns), len(self._memory),
        )
        return conversation

    async def _consume(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                if isinstance(command, StartTask):
                    await self.run_task(command.prompt, command.mode)
                elif isinstance(command, NewConversation):
                    await self.new_conversation(command.mode)
                elif isinstance(command, LoadConversation):
                    await self.load_conversation(command.conversation_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Command %s failed", type(command).__name__)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    async def run_task(self, prompt: str, mode: Mode = "turbo") -> TaskResult:
        """Run one task to a terminal state."""
        self._token.reset()
        self._steps = 0
        provider = self._provider
        if mode == "turbo" and not provider.capabilities().supports_tools:
            logger.info("Provider %s has no tool support, using chat mode", provider.kind)
            mode = "chat"
        if self._conversation is None:
            self._conversation = Conversation(mode=mode)
        self._conversation.mode = mode

        logger.info("Task started (mode=%s, conversation=%s)", mode, self._conversation.id)
        await self._emit("streaming", {"active": True})
        await self._emit("status", {"text": "Thinking..."})
        await self._append(Role.USER, prompt)

        try:
            result = await self._run_steps(mode)
        except OperationCancelled:
            result = TaskResult(LoopState.CANCELLED, self._steps)
        except ProviderError as e:
            logger.error("Provider error after %d steps: %s", self._steps, e)
            result = TaskResult(LoopState.PROVIDER_ERROR, self._steps, error=str(e))

        await self._finish(result)
        return result

    async def _run_steps(self, mode: Mode) -> TaskResult:
        max_steps = 1 if mode == "chat" else self._settings.max_steps
        while self._steps < max_steps:
            self._token.raise_if_cancelled()
            self._steps += 1
            self._set_state(LoopState.THINKING)

            provider = self._provider
            turns = await self._context.build(self._memory)
            raw = await self._stream_completion(provider, mode, turns)
            self._token.raise_if_cancelled()

            if mode == "chat":
                await self._append(Role.MODEL, raw)
                return await self._complete(self._parser.final_text(), surface=False)

            parsed = self._parser.finalize()
            await self._append(Role.MODEL, raw)
            if isinstance(parsed, ParsedText):
                return await self._complete(parsed.content, surface=True)

            if isinstance(parsed, ParsedTextThenTools):
                logger.debug("Narration before tool call withheld: %.80s", parsed.text)
            if len(parsed.calls) > 1:
                logger.info(
                    "Model issued %d tool calls, executing only %s",
                    len(parsed.calls), parsed.calls[0].tool,
                )
            call = parsed.calls[0]

            self._set_state(LoopState.TOOL_CALL_PENDING)
            tool = self._registry.get(call.tool)
            gated = tool is not None and tool.requires_approval
            self._set_state(LoopState.AWAITING_APPROVAL if gated else LoopState.EXECUTING)
            outcome = await self._executor.execute(call, self._token)

            if outcome.status == ToolStatus.HARD_DENIED:
                return TaskResult(LoopState.DENIED, self._steps)

            denied = outcome.status == ToolStatus.DENIED
            # Executed results are indexed as tool results below
            await self._append(Role.USER, observation(outcome.result), index=denied)
            self._set_state(LoopState.OBSERVATION_APPENDED)
            if denied:
                await self._emit("status", {"text": "Responding..."})
            else:
                await self._retrieval.store_tool_result(call.tool, outcome.result)
                await self._emit("status", {"text": "Thinking..."})

        logger.warning("Task reached max_steps=%d without a final answer", max_steps)
        return TaskResult(LoopState.MAX_STEPS_REACHED, self._steps)

    async def _stream_completion(self, provider: ModelProvider, mode: Mode, turns: list[Turn]) -> str:
        """Stream one completion through the parser. Returns the raw reply."""
        self._parser.reset(mode)
        if mode == "chat":
            stream = await self._token.run(provider.chat(CHAT_SYSTEM_PROMPT, turns))
        else:
            system_prompt = turbo_prompt(self._registry.describe())
            stream = await self._token.run(provider.agent(system_prompt, turns))
        await self._emit_active_model(provider)

        chunk_chars = self._settings.stream_chunk_chars
        parts: list[str] = []
        display = ""
        sent = ""
        last_thinking: str | None = None

        async for fragment in self._token.iterate(stream):
            parts.append(fragment)
            for event in self._parser.feed(fragment):
                if isinstance(event, ToolCallComplete):
                    await self._emit("status", {"text": f"Tool detected: {event.call.tool}"})
                elif mode == "chat":
                    display = event.text if event.replace else display + event.text
                # Turbo text stays hidden until the final parse says it is an answer

            if mode == "chat" and (
                not display.startswith(sent) or len(display) - len(sent) >= chunk_chars
            ):
                await self._emit("stream-chunk", {"text": display})
                sent = display

            thinking = extract_thinking(self._parser.buffer)
            if thinking and thinking != last_thinking:
                last_thinking = thinking
                await self._emit("thinking", {"text": thinking})

        if mode == "chat":
            final = self._parser.final_text()
            if final and final != sent:
                await self._emit("stream-chunk", {"text": final})
        return "".join(parts)

    async def _complete(self, text: str, surface: bool) -> TaskResult:
        self._set_state(LoopState.FINAL_TEXT)
        if surface and text:
            await self._emit("stream-chunk", {"text": text})
        await self._emit("message-complete", {"role": Role.MODEL.value, "content": text})
        return TaskResult(LoopState.READY, self._steps, text=text)

    async def _finish(self, result: TaskResult) -> None:
        self._set_state(result.state)
        reason, status = TERMINAL_OUTCOMES[result.state]
        logger.info("Task finished: %s after %d steps", reason, result.steps)
        await self._emit("status", {"text": status})
        await self._emit("streaming", {"active": False})
        end: dict[str, Any] = {"reason": reason}
        if result.error:
            end["error"] = result.error
        await self._emit("stream-end", end)
        if result.state == LoopState.READY:
            self._schedule_summary()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _provider_for(self, kind: str) -> ModelProvider:
        provider = self._providers.get(kind)
        if provider is None:
            provider = self._provider_factory(kind)
            self._providers[kind] = provider
        return provider

    def _set_state(self, state: LoopState) -> None:
        if state != self._state:
            logger.debug("Loop state %s -> %s", self._state.value, state.value)
        self._state = state

    async def _append(self, role: Role, content: str, index: bool = True) -> None:
        """Append a turn to memory, the conversation record and the retrieval store."""
        self._memory.add(Turn(role, content))
        conversation = self._conversation
        if conversation is None:
            return
        conversation.add_turn(role, content)
        if self._history is not None:
            try:
                await self._history.save(conversation)
            except OSError as e:
                logger.warning("Failed to persist conversation %s: %s", conversation.id, e)
        if index:
            await self._retrieval.store_turn(conversation.id, role.value, content)

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        conversation_id = self._conversation.id if self._conversation else None
        await self._bus.emit(Event(type=event_type, data=data, conversation_id=conversation_id))

    async def _emit_active_model(self, provider: ModelProvider) -> None:
        tier = provider.active_tier()
        label = tier.label if tier else provider.kind
        if label != self._active_label:
            self._active_label = label
            await self._emit("active-model-changed", {"label": label})

    def _schedule_summary(self) -> None:
        if self._summary_task is not None and not self._summary_task.done():
            return
        if not self._provider.capabilities().supports_summarization:
            return
        self._summary_task = asyncio.create_task(
            self._refresh_summary(self._provider), name="context-summary"
        )

    async def _refresh_summary(self, provider: ModelProvider) -> None:
        try:
            await self._context.refresh_summary(self._memory, provider, self._emit)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background summary failed")
