"""
Worktree Manager
================

Gives concurrent write sessions on the same project their own git worktree.

The first write session on a project uses the main checkout. A later write
session that starts while another one still occupies the main checkout gets
``<project>/.worktrees/<session id>`` on branch ``session/<first 8 chars>``.
"""

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path

import registry

from .keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

WORKTREES_DIR = ".worktrees"
BRANCH_PREFIX = "session/"

# Timeout for every git invocation (seconds)
GIT_TIMEOUT = 15

# One lock per project so assignment decisions never interleave
_project_locks = KeyedLock()


class WorktreeError(Exception):
    """A git worktree operation failed."""
    pass


async def _git(args: list[str], cwd: str | Path) -> subprocess.CompletedProcess:
    try:
        return await asyncio.to_thread(
            subprocess.run,
            ["git", "-C", str(cwd), *args],
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
        )
    except subprocess.TimeoutExpired as e:
        raise WorktreeError(f"git {args[0]} timed out after {GIT_TIMEOUT}s in {cwd}") from e
    except OSError as e:
        raise WorktreeError(f"Could not run git in {cwd}: {e}") from e


def branch_name_for(session_id: str) -> str:
    return f"{BRANCH_PREFIX}{session_id[:8]}"


def worktree_path_for(session_id: str, project_path: str | Path) -> Path:
    return Path(project_path) / WORKTREES_DIR / session_id


async def is_git_repo(path: str | Path) -> bool:
    """Check whether path is inside a git working tree."""
    if not Path(path).is_dir():
        return False
    try:
        result = await _git(["rev-parse", "--is-inside-work-tree"], path)
    except WorktreeError:
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


async def needs_worktree(session_id: str, project_path: str | Path | None = None) -> bool:
    """
    Decide whether a session must be isolated from the main checkout.

    False for read-only sessions, non-git projects, and when no other
    active write session is using the main checkout.
    """
    session = registry.get_session(session_id)
    if session is None or session.mode.is_read_only:
        return False

    if project_path is None:
        project = registry.get_project(session.project_id)
        if project is None:
            return False
        project_path = project.path

    if not await is_git_repo(project_path):
        return False

    occupying = registry.list_active_write_sessions_on_main(session.project_id, session_id)
    return len(occupying) > 0


def ensure_gitignore(project_path: str | Path) -> None:
    """Append .worktrees to the project's .gitignore if not already present."""
    gitignore = Path(project_path) / ".gitignore"
    try:
        if gitignore.exists():
            content = gitignore.read_text()
            if WORKTREES_DIR in content:
                return
            prefix = "" if content.endswith("\n") or not content else "\n"
            with open(gitignore, "a") as f:
                f.write(f"{prefix}\n# agentpod session worktrees\n{WORKTREES_DIR}\n")
        else:
            gitignore.write_text(f"# agentpod session worktrees\n{WORKTREES_DIR}\n")
    except OSError as e:
        logger.error(f"Failed to update .gitignore in {project_path}: {e}")


async def create_worktree(session_id: str, project_path: str | Path) -> Path:
    """
    Create a worktree on a new branch from HEAD.

    Raises:
        WorktreeError: If git refuses (dirty state, existing branch, no commits...).
    """
    path = worktree_path_for(session_id, project_path)
    branch = branch_name_for(session_id)
    path.parent.mkdir(parents=True, exist_ok=True)

    result = await _git(["worktree", "add", "-b", branch, str(path)], project_path)
    if result.returncode != 0:
        raise WorktreeError(
            f"git worktree add failed for session {session_id}: {result.stderr.strip()}"
        )

    ensure_gitignore(project_path)
    logger.info(f"Created worktree {path} on branch {branch}")
    return path


async def remove_worktree(session_id: str, project_path: str | Path) -> None:
    """Remove a session's worktree directory and delete its branch."""
    path = worktree_path_for(session_id, project_path)
    branch = branch_name_for(session_id)

    if path.exists():
        try:
            result = await _git(["worktree", "remove", "--force", str(path)], project_path)
            failed = result.returncode != 0
            detail = result.stderr.strip()
        except WorktreeError as e:
            failed, detail = True, str(e)

        if failed:
            logger.warning(f"Failed to remove worktree {path}: {detail}")
            shutil.rmtree(path, ignore_errors=True)
            try:
                await _git(["worktree", "prune"], project_path)
            except WorktreeError as e:
                logger.debug(f"worktree prune failed: {e}")

    # Branch may not exist
    try:
        result = await _git(["branch", "-D", branch], project_path)
        if result.returncode == 0:
            logger.info(f"Deleted branch {branch}")
    except WorktreeError as e:
        logger.debug(f"branch -D {branch} failed: {e}")


def get_session_work_path(session_id: str, project_path: str | Path) -> Path:
    """Effective working directory: the recorded worktree if still on disk, else the project root."""
    session = registry.get_session(session_id)
    if session is not None and session.worktree_path:
        worktree = Path(session.worktree_path)
        if worktree.exists():
            return worktree
    return Path(project_path)


async def assign_worktree(session_id: str) -> Path | None:
    """
    Give a starting session its own worktree if it needs one.

    Returns:
        The worktree path, or None when the session uses the main checkout.

    Raises:
        registry.SessionNotFound, registry.ProjectNotFound, WorktreeError
    """
    session = registry.get_session(session_id)
    if session is None:
        raise registry.SessionNotFound(f"Session '{session_id}' not found")
    project = registry.get_project(session.project_id)
    if project is None:
        raise registry.ProjectNotFound(f"Project '{session.project_id}' not found")

    if session.worktree_path and Path(session.worktree_path).exists():
        return Path(session.worktree_path)

    async with _project_locks.hold(project.id):
        if not await needs_worktree(session_id, project.path):
            if session.worktree_path:
                registry.set_session_worktree(session_id, None)
            return None

        path = worktree_path_for(session_id, project.path)
        if not path.exists():
            try:
                path = await create_worktree(session_id, project.path)
            except WorktreeError as e:
                logger.error(f"Could not isolate session {session_id}: {e}")
                raise
        registry.set_session_worktree(session_id, path)
        return path


async def release_worktree(session_id: str) -> bool:
    """
    Remove the session's worktree (session completed or about to be deleted).

    Returns:
        True if a worktree was removed.
    """
    session = registry.get_session(session_id)
    if session is None or not session.worktree_path:
        return False
    project = registry.get_project(session.project_id)
    if project is None:
        return False

    async with _project_locks.hold(project.id):
        await remove_worktree(session_id, project.path)
        registry.set_session_worktree(session_id, None)
    return True


async def cleanup_stale_worktrees(project_path: str | Path) -> list[str]:
    """
    Remove worktrees whose session no longer exists or is done.

    Returns:
        Session ids whose worktrees were removed.
    """
    if not await is_git_repo(project_path):
        return []

    worktrees_dir = Path(project_path) / WORKTREES_DIR
    if not worktrees_dir.is_dir():
        return []

    removed = []
    for entry in sorted(worktrees_dir.iterdir()):
        if not entry.is_dir():
            continue
        session_id = entry.name
        session = registry.get_session(session_id)
        if session is not None and not session.status.is_terminal:
            continue

        logger.info(f"Removing stale worktree for session {session_id}")
        await remove_worktree(session_id, project_path)
        if session is not None:
            registry.set_session_worktree(session_id, None)
        removed.append(session_id)

    try:
        await _git(["worktree", "prune"], project_path)
    except WorktreeError as e:
        logger.warning(f"worktree prune failed in {project_path}: {e}")
    return removed


async def cleanup_all_stale_worktrees() -> dict[str, list[str]]:
    """
    Sweep every registered project.

    Returns:
        Dict mapping project id to removed session ids (projects with none omitted).
    """
    results = {}
    for project in registry.list_projects():
        if not project.path.exists():
            continue
        try:
            removed = await cleanup_stale_worktrees(project.path)
        except Exception as e:
            logger.warning(f"Worktree cleanup failed for {project.name}: {e}")
            continue
        if removed:
            results[project.id] = removed
    return results
