"""Human approval rendezvous for side-effecting tools.

An ApprovalRequest is a single-resolution future: the tool gate creates
it, the external approver resolves it once. Later resolutions are ignored;
a dropped request (cancelled, superseded or timed out) resolves to denied
and is marked as not explicitly answered.

ApprovalSlot holds the one pending request. Its lock guards only the slot
swap and is never held across an await.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalDecision:
    approved: bool
    explicit: bool  # False when dropped rather than answered


class ApprovalRequest:
    def __init__(self, tool: str, parameters: dict[str, Any]) -> None:
        self.id = str(uuid4())
        self.tool = tool
        self.parameters = parameters
        self._future: asyncio.Future[ApprovalDecision] = (
            asyncio.get_running_loop().create_future()
        )

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, approved: bool) -> bool:
        """Answer the request. Returns False if it was already resolved."""
        return self._settle(ApprovalDecision(approved=bool(approved), explicit=True))

    def drop(self) -> bool:
        return self._settle(ApprovalDecision(approved=False, explicit=False))

    def _settle(self, decision: ApprovalDecision) -> bool:
        if self._future.done():
            return False
        self._future.set_result(decision)
        return True

    async def wait(self, timeout: float | None = None) -> ApprovalDecision:
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            logger.warning("Approval for %s timed out after %ss", self.tool, timeout)
            self.drop()
            return self._future.result()

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "tool": self.tool, "parameters": self.parameters}


class ApprovalSlot:
    """The single pending-approval slot shared with the approver."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: ApprovalRequest | None = None

    @property
    def pending(self) -> ApprovalRequest | None:
        with self._lock:
            return self._pending

    def open(self, tool: str, parameters: dict[str, Any]) -> ApprovalRequest:
        """Create the pending request, dropping any previous one."""
        request = ApprovalRequest(tool, parameters)
        with self._lock:
            previous, self._pending = self._pending, request
        if previous is not None and previous.drop():
            logger.warning("Superseded unanswered approval for %s", previous.tool)
        return request

    def respond(self, approved: bool) -> bool:
        """Resolve the pending request. Returns False when nothing was pending."""
        with self._lock:
            request, self._pending = self._pending, None
        if request is None:
            return False
        return request.resolve(approved)

    def cancel(self) -> bool:
        with self._lock:
            request, self._pending = self._pending, None
        if request is None:
            return False
        return request.drop()

    def discard(self, request: ApprovalRequest) -> None:
        with self._lock:
            if self._pending is request:
                self._pending = None
