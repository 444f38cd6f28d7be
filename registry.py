"""
Session Registry Module
=======================

Isolation store for projects, agent personas and sessions.
Uses SQLite database stored at ~/.agentpod/registry.db.

The session record is the single authority for which worktree a session
maps to and which resumable agent token it holds. Container state is
tracked in memory by the container manager and is never persisted here.
"""

import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class RegistryError(Exception):
    """Base registry exception."""
    pass


class ProjectNotFound(RegistryError):
    """Project id is not registered."""
    pass


class SessionNotFound(RegistryError):
    """Session id is not registered."""
    pass


# =============================================================================
# Enumerations
# =============================================================================

class SessionMode(str, Enum):
    """How a session may touch the project checkout."""
    EXPLORE = "explore"  # read-only
    EXECUTE = "execute"

    @property
    def is_read_only(self) -> bool:
        return self is SessionMode.EXPLORE


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.BACKLOG, SessionStatus.IN_PROGRESS)

    @property
    def is_terminal(self) -> bool:
        return self is SessionStatus.DONE


def _enum_check(column: str, enum_cls: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# =============================================================================
# SQLAlchemy Models
# =============================================================================

Base = declarative_base()


class Project(Base):
    """SQLAlchemy model for registered projects."""
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    path = Column(String, nullable=False)  # container-internal path, e.g. /projects/foo
    agent_image = Column(String(200), nullable=True)  # project-level default image
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class Agent(Base):
    """SQLAlchemy model for agent personas."""
    __tablename__ = "agents"

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    model = Column(String(100), nullable=True)
    docker_image = Column(String(200), nullable=False, default="")  # empty = no preference
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class Session(Base):
    """SQLAlchemy model for user sessions."""
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id = Column(String(36), ForeignKey("agents.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(String(36), nullable=True)
    mode = Column(String(20), nullable=False, default=SessionMode.EXECUTE.value)
    status = Column(String(20), nullable=False, default=SessionStatus.BACKLOG.value)
    agent_image = Column(String(200), nullable=True)
    worktree_path = Column(String, nullable=True)
    agent_session_id = Column(String(100), nullable=True)  # resumable agent token
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        CheckConstraint(_enum_check("mode", SessionMode), name="valid_session_mode"),
        CheckConstraint(_enum_check("status", SessionStatus), name="valid_session_status"),
    )


# =============================================================================
# Record Snapshots
# =============================================================================

@dataclass(frozen=True)
class ProjectRecord:
    id: str
    name: str
    path: Path
    agent_image: str | None


@dataclass(frozen=True)
class AgentRecord:
    id: str
    name: str
    model: str | None
    docker_image: str


@dataclass(frozen=True)
class SessionRecord:
    id: str
    project_id: str
    agent_id: str | None
    user_id: str | None
    mode: SessionMode
    status: SessionStatus
    agent_image: str | None
    worktree_path: str | None
    agent_session_id: str | None


def _project_record(project: Project) -> ProjectRecord:
    return ProjectRecord(
        id=project.id,
        name=project.name,
        path=Path(project.path),
        agent_image=project.agent_image or None,
    )


def _agent_record(agent: Agent) -> AgentRecord:
    return AgentRecord(
        id=agent.id,
        name=agent.name,
        model=agent.model,
        docker_image=agent.docker_image or "",
    )


def _session_record(session: Session) -> SessionRecord:
    return SessionRecord(
        id=session.id,
        project_id=session.project_id,
        agent_id=session.agent_id,
        user_id=session.user_id,
        mode=SessionMode(session.mode),
        status=SessionStatus(session.status),
        agent_image=session.agent_image or None,
        worktree_path=session.worktree_path,
        agent_session_id=session.agent_session_id,
    )


# =============================================================================
# Database Connection
# =============================================================================

# Module-level singleton for database engine
_engine = None
_SessionLocal = None


def get_config_dir() -> Path:
    """
    Get the config directory.

    Uses AGENTPOD_DATA_DIR environment variable if set (for Docker),
    otherwise defaults to ~/.agentpod/

    Returns:
        Path to config directory (created if it doesn't exist)
    """
    data_dir = os.getenv("AGENTPOD_DATA_DIR")
    if data_dir:
        config_dir = Path(data_dir) / "agentpod"
    else:
        config_dir = Path.home() / ".agentpod"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_registry_path() -> Path:
    """Get the path to the registry database."""
    return get_config_dir() / "registry.db"


def _get_engine():
    """
    Get or create the database engine (singleton pattern).

    Returns:
        Tuple of (engine, SessionLocal)
    """
    global _engine, _SessionLocal

    if _engine is None:
        db_path = get_registry_path()
        db_url = f"sqlite:///{db_path.as_posix()}"
        _engine = create_engine(db_url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=_engine)
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
        logger.debug("Initialized registry database at: %s", db_path)

    return _engine, _SessionLocal


@contextmanager
def _get_session():
    """
    Context manager for database sessions with automatic commit/rollback.

    Yields:
        SQLAlchemy session
    """
    _, SessionLocal = _get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Project Functions
# =============================================================================

def create_project(name: str, path: str | Path, agent_image: str | None = None,
                   project_id: str | None = None) -> str:
    """
    Register a project.

    Args:
        name: Display name.
        path: Project root as seen by this process.
        agent_image: Optional project-level default container image.
        project_id: Optional explicit id (generated otherwise).

    Returns:
        The project id.
    """
    if not name:
        raise ValueError("Project name cannot be empty")

    project_id = project_id or _new_id()
    with _get_session() as session:
        session.add(Project(
            id=project_id,
            name=name,
            path=Path(path).as_posix(),
            agent_image=agent_image or None,
            created_at=datetime.now(),
        ))

    logger.info("Registered project '%s' (%s) at %s", name, project_id, path)
    return project_id


def get_project(project_id: str) -> ProjectRecord | None:
    """Look up a project by id."""
    with _get_session() as session:
        project = session.get(Project, project_id)
        return _project_record(project) if project else None


def list_projects() -> list[ProjectRecord]:
    """Get all registered projects."""
    with _get_session() as session:
        return [_project_record(p) for p in session.query(Project).all()]


def update_project_agent_image(project_id: str, agent_image: str | None) -> bool:
    """
    Set or clear a project's default image.

    Returns:
        True if updated, False if project wasn't found.
    """
    with _get_session() as session:
        project = session.get(Project, project_id)
        if not project:
            return False
        project.agent_image = agent_image or None
    return True


def delete_project(project_id: str) -> bool:
    """
    Remove a project and its sessions.

    Returns:
        True if removed, False if project wasn't found.
    """
    with _get_session() as session:
        project = session.get(Project, project_id)
        if not project:
            logger.debug("Attempted to delete non-existent project: %s", project_id)
            return False
        session.query(Session).filter(Session.project_id == project_id).delete()
        session.delete(project)

    logger.info("Deleted project: %s", project_id)
    return True


# =============================================================================
# Agent Functions
# =============================================================================

def create_agent(name: str, docker_image: str = "", model: str | None = None,
                 agent_id: str | None = None) -> str:
    """Register an agent persona and return its id."""
    agent_id = agent_id or _new_id()
    with _get_session() as session:
        session.add(Agent(
            id=agent_id,
            name=name,
            model=model,
            docker_image=docker_image or "",
            created_at=datetime.now(),
        ))
    return agent_id


def get_agent(agent_id: str) -> AgentRecord | None:
    """Look up an agent persona by id."""
    with _get_session() as session:
        agent = session.get(Agent, agent_id)
        return _agent_record(agent) if agent else None


# =============================================================================
# Session Functions
# =============================================================================

def create_session(
    project_id: str,
    agent_id: str | None = None,
    user_id: str | None = None,
    mode: SessionMode = SessionMode.EXECUTE,
    status: SessionStatus = SessionStatus.BACKLOG,
    agent_image: str | None = None,
    session_id: str | None = None,
) -> str:
    """
    Create a session for a project.

    Raises:
        ProjectNotFound: If the project id is not registered.

    Returns:
        The session id.
    """
    session_id = session_id or _new_id()
    with _get_session() as session:
        if session.get(Project, project_id) is None:
            raise ProjectNotFound(f"Project '{project_id}' not found")
        now = datetime.now()
        session.add(Session(
            id=session_id,
            project_id=project_id,
            agent_id=agent_id,
            user_id=user_id,
            mode=SessionMode(mode).value,
            status=SessionStatus(status).value,
            agent_image=agent_image or None,
            created_at=now,
            updated_at=now,
        ))

    logger.info("Created session %s for project %s (mode=%s)", session_id, project_id, SessionMode(mode).value)
    return session_id


def get_session(session_id: str) -> SessionRecord | None:
    """Look up a session by id."""
    with _get_session() as session:
        row = session.get(Session, session_id)
        return _session_record(row) if row else None


def session_exists(session_id: str) -> bool:
    """Check whether a session id is registered."""
    if not session_id:
        return False
    with _get_session() as session:
        return session.get(Session, session_id) is not None


def list_sessions(project_id: str | None = None) -> list[SessionRecord]:
    """List sessions, optionally restricted to one project."""
    with _get_session() as session:
        query = session.query(Session)
        if project_id is not None:
            query = query.filter(Session.project_id == project_id)
        return [_session_record(s) for s in query.order_by(Session.created_at).all()]


def _update_session(session_id: str, **fields) -> None:
    with _get_session() as session:
        row = session.get(Session, session_id)
        if row is None:
            raise SessionNotFound(f"Session '{session_id}' not found")
        for key, value in fields.items():
            setattr(row, key, value)
        row.updated_at = datetime.now()


def update_session_status(session_id: str, status: SessionStatus) -> None:
    """Transition a session to a new status."""
    _update_session(session_id, status=SessionStatus(status).value)


def set_session_worktree(session_id: str, worktree_path: str | Path | None) -> None:
    """Record (or clear) the worktree directory assigned to a session."""
    value = Path(worktree_path).as_posix() if worktree_path else None
    _update_session(session_id, worktree_path=value)


def set_agent_session_id(session_id: str, agent_session_id: str | None) -> None:
    """Record the resumable agent token reported by the agent program."""
    _update_session(session_id, agent_session_id=agent_session_id or None)


def clear_agent_session_id(session_id: str) -> bool:
    """
    Clear a session's resumable agent token.

    Returns:
        True if the session exists, False otherwise.
    """
    with _get_session() as session:
        row = session.get(Session, session_id)
        if row is None:
            return False
        if row.agent_session_id is not None:
            row.agent_session_id = None
            row.updated_at = datetime.now()
    return True


def delete_session(session_id: str) -> bool:
    """
    Remove a session.

    Returns:
        True if removed, False if session wasn't found.
    """
    with _get_session() as session:
        row = session.get(Session, session_id)
        if row is None:
            return False
        session.delete(row)
    logger.info("Deleted session: %s", session_id)
    return True


def list_active_write_sessions_on_main(project_id: str, exclude_session_id: str) -> list[str]:
    """
    Sessions occupying the project's main checkout.

    A session counts when it belongs to the project, is not the excluded
    session, is active, is not read-only and has no worktree of its own.

    Returns:
        List of session ids.
    """
    active = [s.value for s in SessionStatus if s.is_active]
    with _get_session() as session:
        rows = session.query(Session.id).filter(
            Session.project_id == project_id,
            Session.id != exclude_session_id,
            Session.status.in_(active),
            Session.mode != SessionMode.EXPLORE.value,
            Session.worktree_path.is_(None),
        ).all()
        return [row.id for row in rows]
