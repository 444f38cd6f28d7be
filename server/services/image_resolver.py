"""
Image Resolver
==============

Picks the container image for a session and checks it exists locally
before any container is created.

Resolution order (first non-empty wins):
    explicit override / session image -> agent image -> project image
    -> AGENT_DEFAULT_IMAGE -> built-in fallback
"""

import asyncio
import logging
import os

import docker

import registry

from .docker_client import ImageNotFoundError

logger = logging.getLogger(__name__)

# Image used when nothing else is configured
FALLBACK_IMAGE = "agentpod-agent-base"

# Repository prefix shared by the agent images we build
AGENT_IMAGE_PREFIX = "agentpod-agent"


def get_default_image() -> str:
    """Process-wide default image (read on every call so operators can change it)."""
    return os.getenv("AGENT_DEFAULT_IMAGE") or FALLBACK_IMAGE


def pick_image(
    override: str | None,
    agent_image: str | None,
    project_image: str | None,
    default: str | None = None,
) -> str:
    """Apply the precedence rules to already-loaded preferences."""
    for candidate in (override, agent_image, project_image, default):
        if candidate and candidate.strip():
            return candidate.strip()
    return FALLBACK_IMAGE


def resolve_image(session_id: str, override: str | None = None) -> str:
    """
    Resolve the image for a session.

    Args:
        session_id: Session to resolve for.
        override: Image supplied by the caller; wins over everything.

    Raises:
        registry.SessionNotFound: If the session does not exist.
    """
    session = registry.get_session(session_id)
    if session is None:
        raise registry.SessionNotFound(f"Session '{session_id}' not found")

    agent_image = None
    if session.agent_id:
        agent = registry.get_agent(session.agent_id)
        if agent is not None:
            agent_image = agent.docker_image

    project = registry.get_project(session.project_id)
    project_image = project.agent_image if project is not None else None

    image = pick_image(override or session.agent_image, agent_image, project_image, get_default_image())
    logger.debug(f"Resolved image {image} for session {session_id}")
    return image


async def validate_image_exists(image: str, client: docker.DockerClient) -> bool:
    """
    Check an image is present via the control socket.

    Any failure, including an unreachable socket, counts as missing.
    """
    try:
        await asyncio.to_thread(client.images.get, image)
        return True
    except Exception as e:
        logger.warning(f"Image {image} not available: {e}")
        return False


async def require_image(image: str, client: docker.DockerClient, session_id: str | None = None) -> None:
    """Raise ImageNotFoundError unless the image exists."""
    if not await validate_image_exists(image, client):
        raise ImageNotFoundError(image, session_id=session_id)


async def list_agent_images(client: docker.DockerClient, prefix: str = AGENT_IMAGE_PREFIX) -> list[dict[str, str]]:
    """
    List local agent images.

    Returns:
        List of {"name": repository, "full_tag": repository:tag} dicts.
    """
    images = await asyncio.to_thread(client.images.list)
    found = []
    seen = set()
    for image in images:
        for tag in image.tags or []:
            if not tag.startswith(prefix) or tag in seen:
                continue
            seen.add(tag)
            name = tag.rsplit(":", 1)[0] if ":" in tag else tag
            found.append({"name": name, "full_tag": tag})
    return sorted(found, key=lambda item: item["full_tag"])
