"""REST + SSE surface for the agent loop.

Endpoints:
  POST   /tasks                    - Start a task {prompt, mode}
  POST   /cancel                   - Cancel the running task
  POST   /approval                 - Answer the pending approval {approved}
  POST   /feedback                 - Legacy approval command {approved}
  POST   /connection               - Switch cloud/offline {offline}
  GET    /events                   - Server-sent event stream
  GET    /conversations            - Conversation metadata, newest first
  POST   /conversations            - Start a fresh conversation {mode}
  GET    /conversations/{id}       - Full conversation record
  POST   /conversations/{id}/load  - Make a stored conversation current
  DELETE /conversations/{id}       - Delete a stored conversation
  GET    /tools                    - Tool schemas
  GET    /status                   - Loop state, provider, memory stats
  GET    /health                   - Liveness
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from zox.agent.history import HistoryStore
from zox.agent.loop import (
    AgentLoop,
    Cancel,
    NewConversation,
    SetConnectionMode,
    StartTask,
    UserFeedback,
)
from zox.config import Settings
from zox.events import EventBus
from zox.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_MODES = ("chat", "turbo")
_KEEPALIVE_SECONDS = 15.0


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


def create_app(
    loop: AgentLoop,
    bus: EventBus,
    history: HistoryStore,
    registry: ToolRegistry,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def start_task(request: Request) -> JSONResponse:
        """POST /tasks - Queue a StartTask command."""
        body = await _json_body(request)
        if body is None:
            return _bad_request("Invalid JSON body")
        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return _bad_request("Missing required field: prompt")
        mode = body.get("mode")
        if mode is None:
            mode = "turbo" if body.get("is_turbo", True) else "chat"
        if mode not in _MODES:
            return _bad_request(f"mode must be one of {', '.join(_MODES)}")

        try:
            await asyncio.wait_for(loop.submit(StartTask(prompt=prompt, mode=mode)), timeout=1.0)
        except asyncio.TimeoutError:
            return JSONResponse({"error": "Command queue is full"}, status_code=503)
        return JSONResponse({"status": "queued", "mode": mode}, status_code=202)

    async def cancel(request: Request) -> JSONResponse:
        """POST /cancel - Fire the cancellation token and deny any pending approval."""
        await loop.submit(Cancel())
        return JSONResponse({"status": "cancelling"})

    async def approval(request: Request) -> JSONResponse:
        """POST /approval - Resolve the pending ApprovalRequest."""
        body = await _json_body(request)
        if body is None or not isinstance(body.get("approved"), bool):
            return _bad_request("Missing required boolean field: approved")
        resolved = loop.respond_approval(body["approved"])
        return JSONResponse({"resolved": resolved})

    async def feedback(request: Request) -> JSONResponse:
        """POST /feedback - Legacy UserFeedback command."""
        body = await _json_body(request)
        if body is None or not isinstance(body.get("approved"), bool):
            return _bad_request("Missing required boolean field: approved")
        await loop.submit(UserFeedback(approved=body["approved"]))
        return JSONResponse({"status": "ok"})

    async def connection(request: Request) -> JSONResponse:
        """POST /connection - Switch between cloud and local provider."""
        body = await _json_body(request)
        if body is None or not isinstance(body.get("offline"), bool):
            return _bad_request("Missing required boolean field: offline")
        await loop.submit(SetConnectionMode(offline=body["offline"]))
        return JSONResponse({"provider": loop.provider_kind})

    async def events(request: Request) -> StreamingResponse:
        """GET /events - SSE stream of every bus event."""
        queue = bus.subscribe()

        async def event_generator():
            try:
                while True:
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield f"event: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"
            finally:
                bus.unsubscribe(queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Metadata only, newest first."""
        metas = await history.list()
        return JSONResponse({"conversations": [m.model_dump(mode="json") for m in metas]})

    async def create_conversation(request: Request) -> JSONResponse:
        """POST /conversations - Reset the loop onto a new conversation."""
        body = await _json_body(request) or {}
        mode = body.get("mode", "turbo")
        if mode not in _MODES:
            return _bad_request(f"mode must be one of {', '.join(_MODES)}")
        if loop.busy:
            await loop.submit(NewConversation(mode=mode))
            return JSONResponse({"status": "queued"}, status_code=202)
        conversation = await loop.new_conversation(mode)
        return JSONResponse({"id": conversation.id, "mode": mode}, status_code=201)

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{id} - Full record."""
        conversation_id = request.path_params["conversation_id"]
        try:
            conversation = await history.load(conversation_id)
        except ValueError as e:
            return _bad_request(str(e))
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse(conversation.model_dump(mode="json"))

    async def load_conversation(request: Request) -> JSONResponse:
        """POST /conversations/{id}/load - Restore into memory."""
        conversation_id = request.path_params["conversation_id"]
        if loop.busy:
            return JSONResponse({"error": "A task is running"}, status_code=409)
        try:
            conversation = await loop.load_conversation(conversation_id)
        except ValueError as e:
            return _bad_request(str(e))
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse(conversation.meta().model_dump(mode="json"))

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /conversations/{id}."""
        conversation_id = request.path_params["conversation_id"]
        try:
            deleted = await history.delete(conversation_id)
        except ValueError as e:
            return _bad_request(str(e))
        if not deleted:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"status": "deleted", "id": conversation_id})

    async def tools(request: Request) -> JSONResponse:
        """GET /tools - Advertised tool schemas."""
        return JSONResponse({"tools": registry.tool_definitions()})

    async def status(request: Request) -> JSONResponse:
        """GET /status - Loop overview."""
        return JSONResponse({**loop.status(), "workspace": settings.workspace_dir})

    async def health(request: Request) -> JSONResponse:
        """GET /health."""
        return JSONResponse({"status": "healthy"})

    routes = [
        Route("/tasks", start_task, methods=["POST"]),
        Route("/cancel", cancel, methods=["POST"]),
        Route("/approval", approval, methods=["POST"]),
        Route("/feedback", feedback, methods=["POST"]),
        Route("/connection", connection, methods=["POST"]),
        Route("/events", events, methods=["GET"]),
        Route("/conversations", list_conversations, methods=["GET"]),
        Route("/conversations", create_conversation, methods=["POST"]),
        Route("/conversations/{conversation_id}", get_conversation, methods=["GET"]),
        Route("/conversations/{conversation_id}/load", load_conversation, methods=["POST"]),
        Route("/conversations/{conversation_id}", delete_conversation, methods=["DELETE"]),
        Route("/tools", tools, methods=["GET"]),
        Route("/status", status, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
