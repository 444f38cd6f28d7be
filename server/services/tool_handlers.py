"""
Tool Handlers
=============

Host-side handlers for MCP requests that arrive through the bridge.

Each handler returns a complete JSON-RPC response dict; the bridge router
sends it back unchanged.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from mcp.types import (
    LATEST_PROTOCOL_VERSION,
    CallToolResult,
    Implementation,
    InitializeResult,
    ListToolsResult,
    ServerCapabilities,
    TextContent,
    Tool,
    ToolsCapability,
)

import registry

from .worktree_manager import get_session_work_path, release_worktree

logger = logging.getLogger(__name__)

SERVER_NAME = "agentpod"
SERVER_VERSION = "0.1.0"


@dataclass(frozen=True)
class McpContext:
    """Who is calling: the session the container belongs to."""
    session_id: str | None
    user_id: str | None = None


TOOLS = [
    Tool(
        name="get_session",
        description="Get details of a session, including its effective working directory.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": {
                    "type": "string",
                    "description": "Session id (defaults to the calling session)",
                },
            },
        },
    ),
    Tool(
        name="list_project_sessions",
        description="List sessions of the calling session's project.",
        inputSchema={
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": [s.value for s in registry.SessionStatus],
                    "description": "Only return sessions with this status",
                },
            },
        },
    ),
    Tool(
        name="update_session_status",
        description="Move a session to a new status. Marking a session done releases its worktree.",
        inputSchema={
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": [s.value for s in registry.SessionStatus],
                },
                "session_id": {
                    "type": "string",
                    "description": "Session id (defaults to the calling session)",
                },
            },
            "required": ["status"],
        },
    ),
]


class ToolInputError(Exception):
    """Invalid tool arguments or a target outside the caller's project."""
    pass


def _response(request_id: Any, result) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "result": result.model_dump(mode="json", by_alias=True, exclude_none=True),
    }


def _text_result(payload: Any, is_error: bool = False) -> CallToolResult:
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2)
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


def handle_initialize(request_id: Any) -> dict:
    result = InitializeResult(
        protocolVersion=LATEST_PROTOCOL_VERSION,
        capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
        serverInfo=Implementation(name=SERVER_NAME, version=SERVER_VERSION),
    )
    return _response(request_id, result)


def handle_tools_list(request_id: Any) -> dict:
    return _response(request_id, ListToolsResult(tools=TOOLS))


def _session_info(session: registry.SessionRecord) -> dict:
    info = {
        "id": session.id,
        "project_id": session.project_id,
        "agent_id": session.agent_id,
        "mode": session.mode.value,
        "status": session.status.value,
        "worktree_path": session.worktree_path,
    }
    project = registry.get_project(session.project_id)
    if project is not None:
        info["work_path"] = str(get_session_work_path(session.id, project.path))
    return info


def _caller_session(ctx: McpContext) -> registry.SessionRecord:
    session = registry.get_session(ctx.session_id) if ctx.session_id else None
    if session is None:
        raise ToolInputError("No calling session")
    return session


def _target_session(ctx: McpContext, arguments: dict) -> registry.SessionRecord:
    """Resolve session_id argument, restricted to the caller's project."""
    caller = _caller_session(ctx)
    target_id = arguments.get("session_id") or caller.id
    if target_id == caller.id:
        return caller
    target = registry.get_session(target_id)
    if target is None or target.project_id != caller.project_id:
        raise ToolInputError(f"Session '{target_id}' not found")
    return target


async def _get_session(ctx: McpContext, arguments: dict) -> CallToolResult:
    return _text_result(_session_info(_target_session(ctx, arguments)))


async def _list_project_sessions(ctx: McpContext, arguments: dict) -> CallToolResult:
    caller = _caller_session(ctx)
    status = arguments.get("status")
    sessions = registry.list_sessions(caller.project_id)
    if status:
        sessions = [s for s in sessions if s.status.value == status]
    return _text_result([_session_info(s) for s in sessions])


async def _update_session_status(ctx: McpContext, arguments: dict) -> CallToolResult:
    target = _target_session(ctx, arguments)
    try:
        status = registry.SessionStatus(arguments.get("status"))
    except ValueError:
        raise ToolInputError(f"Invalid status: {arguments.get('status')!r}")

    registry.update_session_status(target.id, status)
    logger.info(f"Session {target.id} status -> {status.value} (via bridge)")

    released = False
    if status.is_terminal:
        released = await release_worktree(target.id)
    return _text_result({"id": target.id, "status": status.value, "worktree_released": released})


_HANDLERS = {
    "get_session": _get_session,
    "list_project_sessions": _list_project_sessions,
    "update_session_status": _update_session_status,
}


async def handle_tool_call(request_id: Any, params: dict | None, ctx: McpContext) -> dict:
    """
    Dispatch a tools/call request.

    Bad arguments come back as an isError result; anything else raised
    here is turned into a JSON-RPC internal error by the caller.
    """
    params = params or {}
    name = params.get("name")
    arguments = params.get("arguments") or {}

    handler = _HANDLERS.get(name)
    if handler is None:
        return _response(request_id, _text_result(f"Unknown tool: {name}", is_error=True))

    try:
        result = await handler(ctx, arguments)
    except ToolInputError as e:
        result = _text_result(f"Error: {e}", is_error=True)
    return _response(request_id, result)
