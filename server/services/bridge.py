"""
Bridge Delivery
===============

Ships the MCP bridge proxy into agent containers.

The proxy source travels in the MCP_PROXY_SCRIPT environment variable;
the agent's MCP config writes it to /tmp/mcp-proxy.py and runs it, so no
file has to be baked into the agent image.
"""

import json
import os
from functools import lru_cache
from pathlib import Path

PROXY_SOURCE = Path(__file__).resolve().parents[2] / "mcp_server" / "bridge_proxy.py"
PROXY_PATH_IN_CONTAINER = "/tmp/mcp-proxy.py"
MCP_SERVER_NAME = "agentpod"


def get_bridge_host() -> str:
    return os.getenv("MCP_BRIDGE_HOST", "agentpod")


def get_bridge_port() -> int:
    return int(os.getenv("MCP_BRIDGE_PORT", "8888"))


@lru_cache(maxsize=1)
def get_proxy_script() -> str:
    """Source text of the in-container proxy."""
    return PROXY_SOURCE.read_text()


def bridge_env(session_id: str, user_id: str | None = None) -> dict[str, str]:
    """Environment an agent exec needs to reach the host bridge."""
    env = {
        "SESSION_ID": session_id,
        "MCP_BRIDGE_HOST": get_bridge_host(),
        "MCP_BRIDGE_PORT": str(get_bridge_port()),
        "MCP_PROXY_SCRIPT": get_proxy_script(),
    }
    if user_id:
        env["USER_ID"] = user_id
    return env


def mcp_config_json() -> str:
    """MCP server config for the agent CLI (--mcp-config)."""
    launch = f'printf "%s" "$MCP_PROXY_SCRIPT" > {PROXY_PATH_IN_CONTAINER} && exec python3 {PROXY_PATH_IN_CONTAINER}'
    config = {
        "mcpServers": {
            MCP_SERVER_NAME: {
                "command": "sh",
                "args": ["-c", launch],
            }
        }
    }
    return json.dumps(config)
