"""
Agent Router
============

API endpoints for agent container control: Docker health, available
images, and per-session status/cancel/despawn.
"""

import logging

from fastapi import APIRouter, HTTPException

import registry

from ..schemas import AgentActionResponse, AgentImage, ContainerStatus, DockerHealth
from ..services.agent_runner import get_agent_runner
from ..services.container_manager import check_docker_health, get_container_manager
from ..services.docker_client import ContainerError, get_docker_client
from ..services.image_resolver import list_agent_images
from ..services.worktree_manager import get_session_work_path

logger = logging.getLogger(__name__)

router = APIRouter(tags=["agent"])


def _require_session(session_id: str) -> registry.SessionRecord:
    session = registry.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return session


def _unavailable(e: ContainerError) -> HTTPException:
    return HTTPException(status_code=503, detail=e.user_message())


@router.get("/api/agent/health", response_model=DockerHealth)
async def agent_health():
    """Check the Docker socket, default agent image and agent network."""
    return await check_docker_health()


@router.get("/api/agent/images", response_model=list[AgentImage])
async def agent_images():
    """List locally built agent images."""
    try:
        client = get_docker_client()
        return await list_agent_images(client)
    except ContainerError as e:
        raise _unavailable(e)
    except Exception as e:
        logger.warning(f"Failed to list agent images: {e}")
        raise HTTPException(status_code=503, detail=f"Could not list images: {e}")


@router.get("/api/sessions/{session_id}/agent/status", response_model=ContainerStatus)
async def agent_status(session_id: str):
    session = _require_session(session_id)
    status = get_container_manager().container_status(session_id)

    project = registry.get_project(session.project_id)
    work_path = get_session_work_path(session_id, project.path) if project else None
    return ContainerStatus(
        **status,
        running=get_agent_runner().is_running(session_id),
        work_path=str(work_path) if work_path else None,
    )


@router.post("/api/sessions/{session_id}/agent/cancel", response_model=AgentActionResponse)
async def cancel_agent(session_id: str):
    """Interrupt the running agent turn. The container is kept."""
    _require_session(session_id)
    cancelled = await get_agent_runner().cancel(session_id)
    return AgentActionResponse(
        success=cancelled,
        status="cancelled" if cancelled else "idle",
        message="" if cancelled else "No agent running for this session",
    )


@router.post("/api/sessions/{session_id}/agent/despawn", response_model=AgentActionResponse)
async def despawn_agent(session_id: str):
    """Stop and remove the session's container and forget its resumable token."""
    _require_session(session_id)
    try:
        despawned = await get_agent_runner().despawn(session_id)
    except ContainerError as e:
        raise _unavailable(e)
    return AgentActionResponse(
        success=True,
        status="despawned",
        message="" if despawned else "No container was tracked for this session",
    )
