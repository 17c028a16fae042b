"""Tool executor -- approval gate, timeout and error capture.

Tool failures never escape as exceptions: unknown tools, argument errors,
handler exceptions and timeouts all come back as text observations. A
handler may raise ToolRefused to end the task instead. The only exception
that propagates is OperationCancelled, raised when the task's cancellation
token fires while waiting for approval or execution.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from zox.agent.approval import ApprovalSlot
from zox.agent.cancellation import CancellationToken, OperationCancelled
from zox.agent.parser import ToolCall
from zox.tools.registry import ToolRegistry
from zox.tools.workspace import Workspace

logger = logging.getLogger(__name__)

Emit = Callable[[str, dict[str, Any]], Awaitable[None]]


class ToolStatus(str, Enum):
    EXECUTED = "executed"
    DENIED = "denied"  # model gets to acknowledge
    HARD_DENIED = "hard_denied"  # handler refused the call, task ends


class ToolRefused(Exception):
    """Raised by a tool handler to refuse a call outright, ending the task."""


@dataclass(frozen=True)
class ToolOutcome:
    status: ToolStatus
    result: str


def denial_message(tool: str) -> str:
    return (
        f"User DENIED the {tool} tool. Acknowledge this gracefully and ask what "
        "they would like to do instead. Do not retry the tool."
    )


class ToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        workspace: Workspace,
        approvals: ApprovalSlot,
        emit: Emit,
        timeout: float = 30.0,
        approval_timeout: float | None = None,
    ) -> None:
        self._registry = registry
        self._workspace = workspace
        self._approvals = approvals
        self._emit = emit
        self._timeout = timeout
        self._approval_timeout = approval_timeout

    async def execute(self, call: ToolCall, cancel: CancellationToken) -> ToolOutcome:
        tool = self._registry.get(call.tool)
        if tool is None:
            logger.warning("Model requested unknown tool: %s", call.tool)
            result = f"Error: Tool '{call.tool}' not found"
            await self._emit_result(call, result)
            return ToolOutcome(ToolStatus.EXECUTED, result)

        if tool.requires_approval:
            request = self._approvals.open(call.tool, call.parameters)
            await self._emit("approval-request", request.to_dict())
            await self._emit("status", {"text": "Waiting Approval..."})
            try:
                decision = await cancel.run(request.wait(self._approval_timeout))
            finally:
                self._approvals.discard(request)
            cancel.raise_if_cancelled()
            if not decision.approved:
                if decision.explicit:
                    logger.info("User denied %s", call.tool)
                else:
                    logger.info("Approval for %s dropped without an answer, treating as denied", call.tool)
                return ToolOutcome(ToolStatus.DENIED, denial_message(call.tool))

        await self._emit("status", {"text": f"Executing: {call.tool}"})
        if tool.file_access is not None:
            path = str(call.parameters.get("path") or ".")
            await self._emit("file-access", {"action": tool.file_access, "path": path})

        try:
            result = await cancel.run(
                asyncio.wait_for(tool.execute(call.parameters, self._workspace), self._timeout)
            )
        except OperationCancelled:
            raise
        except ToolRefused as e:
            logger.info("Tool %s refused the call: %s", call.tool, e)
            return ToolOutcome(ToolStatus.HARD_DENIED, str(e))
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", call.tool, self._timeout)
            result = f"Tool execution timed out after {self._timeout:g} seconds"
        except Exception as e:
            logger.exception("Tool execution error for %s", call.tool)
            result = f"Tool execution error: {e}"

        await self._emit_result(call, result)
        return ToolOutcome(ToolStatus.EXECUTED, result)

    async def _emit_result(self, call: ToolCall, result: str) -> None:
        await self._emit(
            "tool-result",
            {"tool": call.tool, "parameters": call.parameters, "result": result},
        )
