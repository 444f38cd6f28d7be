"""
Pydantic Schemas
================

Request/Response models for the API endpoints and the agent runner.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Docker / Image Schemas
# ============================================================================

class DockerHealth(BaseModel):
    """Docker prerequisites for running agents."""
    model_config = ConfigDict(populate_by_name=True)

    socket_connected: bool = Field(default=False, alias="socketConnected")
    image_available: bool = Field(default=False, alias="imageAvailable")
    network_exists: bool = Field(default=False, alias="networkExists")
    error: str | None = None  # Includes a remediation hint when set


class AgentImage(BaseModel):
    """Locally available agent image."""
    name: str
    full_tag: str


# ============================================================================
# Container Schemas
# ============================================================================

class ContainerStatus(BaseModel):
    """Per-session container status."""
    session_id: str
    tracked: bool
    container_name: str
    container_id: str | None = None
    state: Literal["active", "despawning"] | None = None
    idle_seconds: int = 0
    running: bool = False  # True while an agent exec is in flight
    work_path: str | None = None


class AgentActionResponse(BaseModel):
    """Response for agent control actions."""
    success: bool
    status: str
    message: str = ""


# ============================================================================
# Agent Run Schemas
# ============================================================================

class RunOptions(BaseModel):
    """Per-run options passed to the agent command."""
    model: str | None = None
    system_prompt: str | None = None
    max_turns: int | None = Field(default=None, ge=1)
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    image: str | None = None  # Explicit image override
    env: dict[str, str] = Field(default_factory=dict)


class AgentEvent(BaseModel):
    """One event parsed from the agent's stream-json output."""
    type: Literal["init", "text", "tool_use", "tool_result", "done", "error"]
    session_id: str | None = None  # Resumable agent token (init)
    text: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    is_error: bool = False
    cost_usd: float | None = None
    interrupted: bool = False
    error: str | None = None
