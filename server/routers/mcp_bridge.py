"""
MCP Bridge Router
=================

HTTP endpoint for JSON-RPC requests coming from agent containers.

POST /api/mcp-bridge?sessionId=xxx&userId=yyy
Body: JSON-RPC request
Response: JSON-RPC response

The session id in the query string is the only credential a container
has, so it must name a registered session.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

import registry

from ..services.container_manager import get_container_manager
from ..services.tool_handlers import (
    McpContext,
    handle_initialize,
    handle_tool_call,
    handle_tools_list,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mcp-bridge", tags=["mcp-bridge"])

# JSON-RPC error codes
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000


def rpc_error(request_id: Any, code: int, message: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}},
    )


@router.post("")
async def mcp_bridge(
    request: Request,
    session_id: str = Query(default="", alias="sessionId"),
    user_id: str = Query(default="", alias="userId"),
):
    """Authorize the calling session and dispatch one JSON-RPC message."""
    if not registry.session_exists(session_id):
        logger.warning(f"Rejected bridge request for unknown session {session_id!r}")
        return rpc_error(None, SERVER_ERROR, "Invalid session", status_code=403)

    try:
        msg = json.loads(await request.body())
    except (ValueError, UnicodeDecodeError):
        return rpc_error(None, INVALID_REQUEST, "Invalid request: body is not JSON", status_code=400)

    if not isinstance(msg, dict) or not msg.get("method") or not isinstance(msg["method"], str):
        request_id = msg.get("id") if isinstance(msg, dict) else None
        return rpc_error(request_id, INVALID_REQUEST, "Invalid request: missing method", status_code=400)

    method = msg["method"]
    request_id = msg.get("id")
    get_container_manager().touch(session_id)

    if method.startswith("notifications/"):
        return {"jsonrpc": "2.0", "id": request_id, "result": {}}

    ctx = McpContext(session_id=session_id, user_id=user_id or None)
    try:
        if method == "initialize":
            return handle_initialize(request_id)
        if method == "tools/list":
            return handle_tools_list(request_id)
        if method == "tools/call":
            return await handle_tool_call(request_id, msg.get("params"), ctx)
    except Exception as e:
        logger.exception(f"Bridge handler for {method} failed (session {session_id})")
        return rpc_error(request_id, INTERNAL_ERROR, str(e))

    return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
