"""
Container Manager
=================

Manages Docker containers for per-session agent execution.
Each session gets its own sandboxed, resource-limited container that is
kept alive between turns and despawned after an idle period.

Container lifecycle (per entry):
- active: container running, reused by every exec for the session
- despawning: idle timeout elapsed or despawn requested, teardown pending

Entries live only in memory. After a restart nothing is tracked and
reconcile_orphans() removes whatever the previous process left behind.
"""

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import docker
from docker.errors import APIError, NotFound
from docker.models.containers import Container

import registry

from ..schemas import DockerHealth
from .docker_client import (
    DOCKER_SOCKET_PATH,
    ContainerError,
    ContainerStartError,
    DockerUnavailableError,
    ImageNotFoundError,
    NetworkError,
    get_docker_client,
)
from .image_resolver import get_default_image, require_image, validate_image_exists
from .keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

# Every agent container name starts with this prefix
CONTAINER_PREFIX = "agentpod-agent-"

# Shared bridge network for agent containers and the host server
NETWORK_NAME = os.getenv("AGENT_NETWORK", "agentpod-net")

# Idle timeout in minutes (despawn containers with no activity)
IDLE_TIMEOUT_MINUTES = float(os.getenv("AGENT_IDLE_TIMEOUT_MINUTES", "15"))

# Grace period before a stopping container is killed
STOP_TIMEOUT_SECONDS = 5

# Keeps the container alive between execs
KEEPALIVE_COMMAND = ["sleep", "infinity"]

WORKSPACE_DIR = "/workspace"
CONTAINER_HOME = "/home/node"
SESSION_LABEL = "agentpod.session"
CPU_PERIOD = 100_000

# Host paths mounted into every container when configured: (env var, target, mode)
CREDENTIAL_MOUNTS = [
    ("HOST_CLAUDE_DIR", f"{CONTAINER_HOME}/.claude", "rw"),
    ("HOST_CLAUDE_JSON", f"{CONTAINER_HOME}/.claude.json", "ro"),
    ("HOST_GH_DIR", f"{CONTAINER_HOME}/.config/gh", "ro"),
    ("HOST_AWS_DIR", f"{CONTAINER_HOME}/.aws", "ro"),
    ("HOST_GITCONFIG", f"{CONTAINER_HOME}/.gitconfig", "ro"),
]

GIT_IDENTITY_VARS = [
    "GIT_AUTHOR_NAME",
    "GIT_AUTHOR_EMAIL",
    "GIT_COMMITTER_NAME",
    "GIT_COMMITTER_EMAIL",
]

# Patterns for sensitive data that should be redacted from output
SENSITIVE_PATTERNS = [
    r'sk-ant[a-zA-Z0-9_-]*',  # Anthropic API keys (sk-ant-...)
    r'sk-[a-zA-Z0-9]{20,}',  # Generic sk- keys with 20+ chars
    r'gh[pousr]_[a-zA-Z0-9]{20,}',  # GitHub tokens
    r'ANTHROPIC_API_KEY=[^\s]+',
    r'GITHUB_TOKEN=[^\s]+',
    r'api[_-]?key[=:][^\s]+',
    r'token[=:][^\s]+',
    r'password[=:][^\s]+',
    r'secret[=:][^\s]+',
]


def sanitize_output(line: str) -> str:
    """Remove sensitive information from output lines."""
    for pattern in SENSITIVE_PATTERNS:
        line = re.sub(pattern, '[REDACTED]', line, flags=re.IGNORECASE)
    return line


def container_name_for(session_id: str) -> str:
    """Deterministic container name for a session."""
    return f"{CONTAINER_PREFIX}{session_id}"


def to_host_path(path: str | Path) -> str:
    """
    Translate a path as seen by this process to the Docker host's view.

    The server runs in a sibling container, so bind sources must be host
    paths. Paths under AGENT_PROJECTS_DIR are rewritten onto
    HOST_PROJECTS_DIR; anything else is returned unchanged.
    """
    path = Path(path).as_posix()
    host_dir = os.getenv("HOST_PROJECTS_DIR")
    if not host_dir:
        return path

    projects_dir = os.getenv("AGENT_PROJECTS_DIR", "/projects").rstrip("/")
    if path != projects_dir and not path.startswith(projects_dir + "/"):
        return path

    relative = path[len(projects_dir):].lstrip("/")
    host_dir = host_dir.rstrip("/")
    return f"{host_dir}/{relative}" if relative else host_dir


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ContainerLimits:
    """Resource limits and runtime options applied to every agent container."""
    memory: str = "4g"
    cpu_quota: int = 200_000  # microseconds per CPU_PERIOD, 200000 = 2 CPUs
    pids_limit: int = 512
    runtime: str | None = None  # e.g. "runsc" for gVisor
    mount_docker_socket: bool = False
    docker_gid: str | None = None

    @classmethod
    def from_env(cls) -> "ContainerLimits":
        defaults = cls()
        return cls(
            memory=os.getenv("AGENT_MEMORY_LIMIT", defaults.memory),
            cpu_quota=int(os.getenv("AGENT_CPU_QUOTA", str(defaults.cpu_quota))),
            pids_limit=int(os.getenv("AGENT_PIDS_LIMIT", str(defaults.pids_limit))),
            runtime=os.getenv("AGENT_RUNTIME") or None,
            mount_docker_socket=_env_flag("AGENT_DOCKER_SOCKET"),
            docker_gid=os.getenv("DOCKER_GID") or None,
        )


def build_volumes(project_path: str | Path | None, limits: ContainerLimits) -> dict[str, dict[str, str]]:
    """Bind mounts for a new container, keyed by host path."""
    volumes: dict[str, dict[str, str]] = {}
    if project_path:
        volumes[to_host_path(project_path)] = {"bind": WORKSPACE_DIR, "mode": "rw"}

    for env_var, target, mode in CREDENTIAL_MOUNTS:
        host_path = os.getenv(env_var)
        if host_path:
            volumes[host_path] = {"bind": target, "mode": mode}

    if limits.mount_docker_socket:
        volumes[DOCKER_SOCKET_PATH] = {"bind": "/var/run/docker.sock", "mode": "rw"}

    return volumes


def build_environment(env: dict[str, str | None] | None) -> dict[str, str]:
    """Container environment: git identity passthrough plus caller values."""
    merged: dict[str, str | None] = {name: os.getenv(name) for name in GIT_IDENTITY_VARS}
    merged["HOME"] = CONTAINER_HOME
    merged.update(env or {})
    return {key: value for key, value in merged.items() if value is not None}


class ContainerState(str, Enum):
    ACTIVE = "active"
    DESPAWNING = "despawning"


@dataclass(frozen=True)
class ContainerHandle:
    """Reference to a live session container."""
    session_id: str
    container_id: str
    name: str


@dataclass(eq=False)
class ContainerEntry:
    """In-memory record of one session's running container."""
    handle: ContainerHandle
    container: Container
    state: ContainerState = ContainerState.ACTIVE
    last_activity: float = field(default_factory=time.monotonic)
    active_execs: int = 0  # commands in flight; the idle timer is held off while > 0
    idle_timer: asyncio.TimerHandle | None = None
    exit_watcher: asyncio.Task | None = None

    def cancel_idle_timer(self) -> None:
        if self.idle_timer is not None:
            self.idle_timer.cancel()
            self.idle_timer = None

    def idle_seconds(self) -> int:
        return int(time.monotonic() - self.last_activity)


class ContainerManager:
    """
    Registry of per-session agent containers.

    All mutation happens on the event loop. ensure_container() and
    despawn() for the same session are serialized by a per-session lock;
    idle timers and exit watchers only act on the exact entry they were
    created for, so they never touch a newer container.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        limits: ContainerLimits | None = None,
        idle_timeout_seconds: float | None = None,
        network: str = NETWORK_NAME,
    ):
        self._client = client
        self.limits = limits or ContainerLimits.from_env()
        if idle_timeout_seconds is None:
            idle_timeout_seconds = IDLE_TIMEOUT_MINUTES * 60
        self.idle_timeout = idle_timeout_seconds
        self.network = network
        self._entries: dict[str, ContainerEntry] = {}
        self._locks = KeyedLock()
        self._background: set[asyncio.Task] = set()

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = get_docker_client()
        return self._client

    # =========================================================================
    # Lookup
    # =========================================================================

    def get_entry(self, session_id: str) -> ContainerEntry | None:
        return self._entries.get(session_id)

    def tracked_sessions(self) -> list[str]:
        return list(self._entries)

    def container_status(self, session_id: str) -> dict:
        """Get current status of a session's container as a dictionary."""
        entry = self._entries.get(session_id)
        return {
            "session_id": session_id,
            "tracked": entry is not None,
            "container_name": container_name_for(session_id),
            "container_id": entry.handle.container_id if entry else None,
            "state": entry.state.value if entry else None,
            "idle_seconds": entry.idle_seconds() if entry else 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def ensure_container(
        self,
        session_id: str,
        image: str,
        project_path: str | Path | None = None,
        env: dict[str, str | None] | None = None,
    ) -> ContainerHandle:
        """
        Return the session's running container, creating it if needed.

        Raises:
            ImageNotFoundError: The image is not present locally.
            NetworkError: The bridge network could not be ensured.
            ContainerStartError: Docker refused to create/start the container.
            DockerUnavailableError: The control socket is unreachable.
        """
        async with self._locks.hold(session_id):
            entry = self._entries.get(session_id)
            if entry is not None:
                if entry.state is ContainerState.DESPAWNING:
                    await self._teardown(entry)
                elif await self._is_running(entry.container):
                    self.touch(session_id)
                    return entry.handle
                else:
                    logger.warning(
                        f"Container {entry.handle.name} for session {session_id} is no longer running, recreating"
                    )
                    self._discard_dead(entry)

            return await self._create(session_id, image, project_path, env)

    async def despawn(self, session_id: str, expected: ContainerEntry | None = None) -> bool:
        """
        Stop and remove a session's container and clear its resumable token.

        Args:
            session_id: Session whose container should go away.
            expected: Only act if this exact entry is still current
                (used by the idle timer).

        Returns:
            True if a tracked container was despawned.
        """
        async with self._locks.hold(session_id):
            entry = self._entries.get(session_id)
            if expected is not None and entry is not expected:
                return False

            if entry is not None:
                await self._teardown(entry)
                logger.info(f"Despawned container {entry.handle.name}")
                return True

            # Not tracked (e.g. after a restart): make sure nothing is left behind
            try:
                await self._remove_by_name(container_name_for(session_id))
            except ContainerError as e:
                logger.warning(f"Could not remove untracked container for session {session_id}: {e}")
            registry.clear_agent_session_id(session_id)
            return False

    def touch(self, session_id: str) -> None:
        """Record activity and restart the session's idle timer (unless a command is running)."""
        entry = self._entries.get(session_id)
        if entry is None or entry.state is not ContainerState.ACTIVE:
            return
        entry.last_activity = time.monotonic()
        if entry.active_execs == 0:
            self._schedule_idle(entry)

    def begin_exec(self, session_id: str) -> None:
        """A command started in the session's container; it is not idle until end_exec()."""
        entry = self._entries.get(session_id)
        if entry is None:
            return
        entry.active_execs += 1
        entry.last_activity = time.monotonic()
        entry.cancel_idle_timer()

    def end_exec(self, session_id: str) -> None:
        """A command finished; re-arm the idle timer once none are left."""
        entry = self._entries.get(session_id)
        if entry is None:
            return
        entry.active_execs = max(0, entry.active_execs - 1)
        self.touch(session_id)

    async def despawn_all(self) -> None:
        """Despawn every tracked container (server shutdown)."""
        for session_id in list(self._entries):
            try:
                await self.despawn(session_id)
            except Exception as e:
                logger.warning(f"Error despawning container for session {session_id}: {e}")

    async def reconcile_orphans(self) -> int:
        """
        Remove agent containers not tracked by this process.

        Returns:
            Number of containers removed.
        """
        try:
            containers = await asyncio.to_thread(
                self.client.containers.list,
                all=True,
                filters={"name": CONTAINER_PREFIX},
            )
        except Exception as e:
            raise DockerUnavailableError(f"Docker socket not accessible: {e}") from e

        tracked = {entry.handle.name for entry in self._entries.values()}
        removed = 0
        for container in containers:
            if not container.name.startswith(CONTAINER_PREFIX) or container.name in tracked:
                continue
            logger.info(f"Removing orphaned agent container: {container.name}")
            await self._stop_and_remove(container)
            removed += 1
        return removed

    # =========================================================================
    # Internals
    # =========================================================================

    async def _create(
        self,
        session_id: str,
        image: str,
        project_path: str | Path | None,
        env: dict[str, str | None] | None,
    ) -> ContainerHandle:
        client = self.client
        name = container_name_for(session_id)

        await require_image(image, client, session_id)
        await self._ensure_network()
        await self._remove_by_name(name)

        volumes = build_volumes(project_path, self.limits)
        run_kwargs = dict(
            image=image,
            command=KEEPALIVE_COMMAND,
            name=name,
            detach=True,
            init=True,
            working_dir=WORKSPACE_DIR,
            environment=build_environment(env),
            volumes=volumes,
            network=self.network,
            labels={SESSION_LABEL: session_id},
            mem_limit=self.limits.memory,
            cpu_period=CPU_PERIOD,
            cpu_quota=self.limits.cpu_quota,
            pids_limit=self.limits.pids_limit,
        )
        if self.limits.runtime:
            run_kwargs["runtime"] = self.limits.runtime
        if self.limits.mount_docker_socket and self.limits.docker_gid:
            run_kwargs["group_add"] = [self.limits.docker_gid]

        logger.info(f"Creating container {name} from image {image}")
        binds = ", ".join(f"{source}:{spec['bind']}" for source, spec in volumes.items())
        logger.debug(f"Binds for {name}: {binds}")
        try:
            container = await asyncio.to_thread(client.containers.run, **run_kwargs)
        except Exception as e:
            raise ContainerStartError(
                f"Failed to start container {name} from image {image}: {e}",
                session_id=session_id,
            ) from e

        entry = ContainerEntry(
            handle=ContainerHandle(session_id=session_id, container_id=container.id, name=name),
            container=container,
        )
        self._entries[session_id] = entry
        self._schedule_idle(entry)
        entry.exit_watcher = asyncio.create_task(self._watch_exit(entry))
        logger.info(f"Container {name} started ({container.id[:12]})")
        return entry.handle

    async def _teardown(self, entry: ContainerEntry) -> None:
        entry.state = ContainerState.DESPAWNING
        self._discard(entry)
        await self._stop_and_remove(entry.container)
        registry.clear_agent_session_id(entry.handle.session_id)

    def _discard(self, entry: ContainerEntry) -> None:
        """Forget an entry; timer first so it can never fire afterwards."""
        entry.cancel_idle_timer()
        watcher = entry.exit_watcher
        if watcher is not None and not watcher.done() and watcher is not asyncio.current_task():
            watcher.cancel()
        session_id = entry.handle.session_id
        if self._entries.get(session_id) is entry:
            del self._entries[session_id]

    def _discard_dead(self, entry: ContainerEntry) -> None:
        """Forget a container that died on its own; its agent state went with it."""
        self._discard(entry)
        registry.clear_agent_session_id(entry.handle.session_id)

    async def _is_running(self, container: Container) -> bool:
        try:
            await asyncio.to_thread(container.reload)
        except NotFound:
            return False
        except Exception as e:
            raise DockerUnavailableError(f"Docker socket not accessible: {e}") from e
        return container.status == "running"

    async def _ensure_network(self) -> None:
        """Create the shared bridge network unless it exists."""
        try:
            networks = await asyncio.to_thread(self.client.networks.list, names=[self.network])
            if any(network.name == self.network for network in networks):
                return
            await asyncio.to_thread(self.client.networks.create, self.network, driver="bridge")
            logger.info(f"Created network {self.network}")
        except APIError as e:
            # Another session created it concurrently
            if e.status_code == 409 or "already exists" in str(e).lower():
                return
            raise NetworkError(f"Failed to ensure network {self.network}: {e}") from e
        except Exception as e:
            raise NetworkError(f"Failed to ensure network {self.network}: {e}") from e

    async def _remove_by_name(self, name: str) -> bool:
        try:
            container = await asyncio.to_thread(self.client.containers.get, name)
        except NotFound:
            return False
        except Exception as e:
            raise DockerUnavailableError(f"Docker socket not accessible: {e}") from e
        logger.info(f"Removing leftover container {name}")
        await self._stop_and_remove(container)
        return True

    async def _stop_and_remove(self, container: Container) -> None:
        try:
            await asyncio.to_thread(container.stop, timeout=STOP_TIMEOUT_SECONDS)
        except NotFound:
            return
        except APIError as e:
            logger.debug(f"Stop of {container.name} failed: {e}")
        try:
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            pass
        except APIError as e:
            # 409: removal already in progress
            if e.status_code != 409:
                logger.warning(f"Failed to remove container {container.name}: {e}")

    def _schedule_idle(self, entry: ContainerEntry) -> None:
        entry.cancel_idle_timer()
        loop = asyncio.get_running_loop()
        entry.idle_timer = loop.call_later(self.idle_timeout, self._on_idle_timeout, entry)

    def _on_idle_timeout(self, entry: ContainerEntry) -> None:
        entry.idle_timer = None
        session_id = entry.handle.session_id
        if self._entries.get(session_id) is not entry or entry.state is not ContainerState.ACTIVE:
            return
        if entry.active_execs > 0:
            return
        logger.info(f"Container {entry.handle.name} idle for {entry.idle_seconds()}s, despawning")
        entry.state = ContainerState.DESPAWNING
        self._run_background(self.despawn(session_id, expected=entry), f"idle despawn of {entry.handle.name}")

    async def _watch_exit(self, entry: ContainerEntry) -> None:
        """Discard the entry when its container exits on its own."""
        container = entry.container
        while True:
            try:
                result = await asyncio.to_thread(container.wait)
                status_code = result.get("StatusCode") if isinstance(result, dict) else result
                break
            except NotFound:
                status_code = None
                break
            except Exception as e:
                try:
                    if not await self._is_running(container):
                        status_code = None
                        break
                except DockerUnavailableError:
                    logger.warning(f"Lost track of container {entry.handle.name}: {e}")
                    return
                await asyncio.sleep(1)

        session_id = entry.handle.session_id
        if self._entries.get(session_id) is not entry or entry.state is not ContainerState.ACTIVE:
            return
        logger.warning(
            f"Container {entry.handle.name} for session {session_id} exited unexpectedly "
            f"(status {status_code})"
        )
        self._discard_dead(entry)

    def _run_background(self, coro, description: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(f"Error during {description}: {t.exception()}")

        task.add_done_callback(_done)


# =============================================================================
# Health
# =============================================================================

async def check_docker_health(
    client: docker.DockerClient | None = None,
    image: str | None = None,
    network: str = NETWORK_NAME,
) -> DockerHealth:
    """
    Report socket reachability, default image availability and network existence.

    Each failure carries a remediation message in ``error``.
    """
    image = image or get_default_image()
    health = DockerHealth()

    try:
        client = client or get_docker_client()
        await asyncio.to_thread(client.ping)
    except Exception as e:
        health.error = DockerUnavailableError(f"Docker socket not accessible: {e}").user_message()
        return health
    health.socket_connected = True

    if not await validate_image_exists(image, client):
        health.error = ImageNotFoundError(image).user_message()
        return health
    health.image_available = True

    try:
        networks = await asyncio.to_thread(client.networks.list, names=[network])
        health.network_exists = any(n.name == network for n in networks)
    except Exception as e:
        health.error = NetworkError(f"Failed to list networks: {e}").user_message()
        return health

    if not health.network_exists:
        health.error = (
            f"Network '{network}' not found. Remediation: it is created on the first agent start, "
            f"or run `docker network create {network}`."
        )
    return health


# Process-wide registry of session containers
_manager: ContainerManager | None = None


def get_container_manager() -> ContainerManager:
    """Get or create the process-wide container manager."""
    global _manager
    if _manager is None:
        _manager = ContainerManager()
    return _manager


def clear_container_manager() -> None:
    """Forget the process-wide container manager (tests, shutdown)."""
    global _manager
    _manager = None
