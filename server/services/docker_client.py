"""
Docker Client
=============

Shared Docker Engine client over the local control socket, plus the typed
errors raised by the container lifecycle layer.
"""

import logging
import os
import threading

import docker
from docker.errors import DockerException

logger = logging.getLogger(__name__)

# Path of the local Docker control socket
DOCKER_SOCKET_PATH = os.getenv("DOCKER_SOCKET_PATH", "/var/run/docker.sock")


# =============================================================================
# Exceptions
# =============================================================================

class ContainerError(Exception):
    """Base class for lifecycle failures that must reach the caller.

    Carries the session id (when known) and a remediation hint so the
    message shown to a user says what failed and how to fix it.
    """

    remediation = ""

    def __init__(self, message: str, session_id: str | None = None, remediation: str | None = None):
        super().__init__(message)
        self.session_id = session_id
        if remediation is not None:
            self.remediation = remediation

    def user_message(self) -> str:
        message = str(self)
        if self.remediation:
            message = f"{message} Remediation: {self.remediation}"
        return message


class DockerUnavailableError(ContainerError):
    """The Docker control socket cannot be reached."""

    remediation = (
        f"Ensure Docker is running and {DOCKER_SOCKET_PATH} is mounted into this "
        "container and readable by the server user."
    )


class ImageNotFoundError(ContainerError):
    """The requested agent image is not present locally."""

    def __init__(self, image: str, session_id: str | None = None):
        super().__init__(
            f"Agent image '{image}' not found.",
            session_id=session_id,
            remediation=f"Build it first, e.g. `docker compose build` or `docker build -t {image} .`",
        )
        self.image = image


class NetworkError(ContainerError):
    """The shared bridge network could not be listed or created."""

    remediation = "Check `docker network ls` and that the server may create networks."


class ContainerStartError(ContainerError):
    """Container creation or start failed."""

    remediation = "Inspect `docker logs` for the container and the configured resource limits."


class ExecError(ContainerError):
    """An exec inside a running container could not be started."""

    remediation = "The container is still usable; retry the command."


# =============================================================================
# Client
# =============================================================================

_client: docker.DockerClient | None = None
_client_lock = threading.Lock()


def get_docker_client() -> docker.DockerClient:
    """
    Get or create the shared Docker client (thread-safe).

    Raises:
        DockerUnavailableError: If the control socket cannot be opened.
    """
    global _client

    with _client_lock:
        if _client is None:
            try:
                _client = docker.DockerClient(base_url=f"unix://{DOCKER_SOCKET_PATH}")
            except DockerException as e:
                raise DockerUnavailableError(f"Docker socket not accessible: {e}") from e
            logger.info(f"Connected Docker client to {DOCKER_SOCKET_PATH}")
        return _client


def reset_docker_client() -> None:
    """Drop the cached client so the next call reconnects."""
    global _client

    with _client_lock:
        if _client is not None:
            try:
                _client.close()
            except Exception as e:
                logger.debug(f"Error closing Docker client: {e}")
        _client = None
