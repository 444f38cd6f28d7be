"""
Backend Services
================

Container lifecycle, command execution, image resolution, worktree
isolation and the MCP bridge.
"""

from .agent_runner import AgentRunner, get_agent_runner
from .container_manager import ContainerManager, check_docker_health, get_container_manager

__all__ = [
    "AgentRunner",
    "get_agent_runner",
    "ContainerManager",
    "check_docker_health",
    "get_container_manager",
]
