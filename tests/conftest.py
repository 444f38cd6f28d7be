"""
Pytest Configuration and Fixtures
=================================

Shared fixtures for the agentpod test suite.
Provides an isolated registry database, real temporary git repositories
and mock Docker clients.
"""

import os
import shutil
import subprocess
import tempfile
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from docker.errors import NotFound


# =============================================================================
# Environment Setup
# =============================================================================

# Variables that change container/bridge behaviour and must not leak in from the host
_HOST_ENV_VARS = [
    "HOST_PROJECTS_DIR",
    "HOST_CLAUDE_DIR",
    "HOST_CLAUDE_JSON",
    "HOST_GH_DIR",
    "HOST_AWS_DIR",
    "HOST_GITCONFIG",
    "AGENT_DEFAULT_IMAGE",
    "AGENT_RUNTIME",
    "AGENT_DOCKER_SOCKET",
    "DOCKER_GID",
    "MCP_BRIDGE_HOST",
    "MCP_BRIDGE_PORT",
    "AGENT_COMMAND",
]


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables."""
    original_env = os.environ.copy()

    test_data_dir = tempfile.mkdtemp(prefix="agentpod_test_")
    os.environ["AGENTPOD_DATA_DIR"] = test_data_dir
    for name in _HOST_ENV_VARS:
        os.environ.pop(name, None)

    yield test_data_dir

    os.environ.clear()
    os.environ.update(original_env)
    if Path(test_data_dir).exists():
        shutil.rmtree(test_data_dir, ignore_errors=True)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test_registry.db"


@pytest.fixture
def isolated_registry(temp_db_path: Path, monkeypatch):
    """
    Provide an isolated registry database for testing.

    Patches the registry module to use a fresh database for each test.
    """
    import registry

    original_engine = registry._engine
    original_session = registry._SessionLocal

    registry._engine = None
    registry._SessionLocal = None

    monkeypatch.setattr(registry, "get_registry_path", lambda: temp_db_path)

    temp_config = temp_db_path.parent / "agentpod"
    temp_config.mkdir(parents=True, exist_ok=True)
    monkeypatch.setattr(registry, "get_config_dir", lambda: temp_config)

    yield registry

    if registry._engine is not None:
        registry._engine.dispose()
    registry._engine = original_engine
    registry._SessionLocal = original_session


@pytest.fixture
def make_session(isolated_registry, tmp_path: Path):
    """
    Factory creating a session (and its project unless one is given).

    Returns the session id.
    """
    def _make(
        project_path: Path | None = None,
        project_id: str | None = None,
        mode=isolated_registry.SessionMode.EXECUTE,
        status=isolated_registry.SessionStatus.IN_PROGRESS,
        **kwargs,
    ) -> str:
        if project_id is None:
            path = project_path or (tmp_path / "project")
            project_id = isolated_registry.create_project("project", path)
        return isolated_registry.create_session(project_id, mode=mode, status=status, **kwargs)

    return _make


# =============================================================================
# Git Fixtures
# =============================================================================

@pytest.fixture
def git_env(tmp_path: Path, monkeypatch):
    """Deterministic git identity with no user/system config."""
    gitconfig = tmp_path / "gitconfig"
    gitconfig.write_text("")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


@pytest.fixture
def git_repo(tmp_path: Path, git_env) -> Path:
    """A git repository with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    subprocess.run(["git", "init", "-q"], cwd=repo, check=True, capture_output=True)
    (repo / "README.md").write_text("# Test repo\n")
    subprocess.run(["git", "add", "README.md"], cwd=repo, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-q", "-m", "Initial commit"], cwd=repo, check=True, capture_output=True)
    return repo


# =============================================================================
# Docker Fixtures
# =============================================================================

def make_mock_container(name: str, container_id: str) -> MagicMock:
    """
    Mock docker Container whose wait() blocks until stop/remove/exit.

    Set ``container.exited`` to simulate the container dying on its own.
    """
    container = MagicMock()
    container.name = name
    container.id = container_id
    container.status = "running"
    exited = threading.Event()
    container.exited = exited

    def _stop(*args, **kwargs):
        container.status = "exited"
        exited.set()

    def _wait(*args, **kwargs):
        exited.wait(timeout=10)
        return {"StatusCode": 0}

    container.stop.side_effect = _stop
    container.remove.side_effect = lambda *args, **kwargs: exited.set()
    container.wait.side_effect = _wait
    return container


@pytest.fixture
def mock_docker_client():
    """
    MagicMock DockerClient: image present, no network yet, no existing containers.

    Containers created through containers.run are collected in ``client.created``.
    """
    client = MagicMock()
    created = []

    def _run(**kwargs):
        container = make_mock_container(kwargs["name"], f"{len(created) + 1:064x}")
        container.run_kwargs = kwargs
        created.append(container)
        return container

    client.created = created
    client.containers.run.side_effect = _run
    client.containers.get.side_effect = NotFound("No such container")
    client.containers.list.return_value = []
    client.networks.list.return_value = []
    client.images.get.return_value = MagicMock()

    yield client

    for container in created:
        container.exited.set()


@pytest.fixture
def container_manager(mock_docker_client):
    """ContainerManager on the mock client with default limits."""
    from server.services.container_manager import ContainerLimits, ContainerManager

    return ContainerManager(client=mock_docker_client, limits=ContainerLimits(), idle_timeout_seconds=900)


@pytest.fixture
def make_container():
    """Factory for standalone mock containers (leftovers, orphans)."""
    made = []

    def _make(name: str, container_id: str = "0" * 64) -> MagicMock:
        container = make_mock_container(name, container_id)
        made.append(container)
        return container

    yield _make

    for container in made:
        container.exited.set()
