"""
MCP Bridge Proxy
================

stdio-to-HTTP proxy that runs inside agent containers.

The agent talks MCP over stdio to this script. Each stdin line is one
JSON-RPC message; it is POSTed to the host's bridge endpoint and the raw
response body is written back to stdout as one line.

The script source is shipped into the container through the
MCP_PROXY_SCRIPT environment variable, so it must only use the standard
library and must run on whatever python3 the agent image provides.

Environment Variables:
    SESSION_ID: Session this container belongs to
    USER_ID: Owner of the session (optional)
    MCP_BRIDGE_HOST: Hostname of the host server on the agent network
    MCP_BRIDGE_PORT: Port of the host server
"""

import json
import os
import sys
import threading
import urllib.error
import urllib.parse
import urllib.request

SESSION_ID = os.environ.get("SESSION_ID", "")
USER_ID = os.environ.get("USER_ID", "")
BRIDGE_HOST = os.environ.get("MCP_BRIDGE_HOST", "agentpod")
BRIDGE_PORT = int(os.environ.get("MCP_BRIDGE_PORT", "8888"))

REQUEST_TIMEOUT = 300

_stdout_lock = threading.Lock()


def bridge_url(session_id=SESSION_ID, user_id=USER_ID, host=BRIDGE_HOST, port=BRIDGE_PORT):
    query = urllib.parse.urlencode({"sessionId": session_id, "userId": user_id})
    return f"http://{host}:{port}/api/mcp-bridge?{query}"


def write_line(text, out=None):
    out = out or sys.stdout
    with _stdout_lock:
        out.write(text + "\n")
        out.flush()


def error_response(line, message):
    """JSON-RPC error for a request that never reached the host, or None for notifications."""
    try:
        request = json.loads(line)
    except ValueError:
        return None
    if not isinstance(request, dict) or request.get("id") is None:
        return None
    return json.dumps({
        "jsonrpc": "2.0",
        "id": request["id"],
        "error": {"code": -32000, "message": f"MCP bridge error: {message}"},
    })


def forward(line, url=None, out=None):
    """POST one message and write the host's reply (or a synthesized error) to stdout."""
    request = urllib.request.Request(
        url or bridge_url(),
        data=line.encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        # 4xx/5xx still carry a JSON-RPC body from the bridge
        body = e.read().decode("utf-8")
    except (urllib.error.URLError, OSError) as e:
        reason = getattr(e, "reason", e)
        body = error_response(line, str(reason))
        if body is None:
            return

    write_line(body.strip(), out)


def main(stdin=None):
    stdin = stdin or sys.stdin
    threads = []
    for raw in stdin:
        line = raw.strip()
        if not line:
            continue
        thread = threading.Thread(target=forward, args=(line,), daemon=True)
        thread.start()
        threads.append(thread)
        threads = [t for t in threads if t.is_alive()]

    for thread in threads:
        thread.join(timeout=REQUEST_TIMEOUT)
    return 0


if __name__ == "__main__":
    sys.exit(main())
