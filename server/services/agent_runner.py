"""
Agent Runner
============

Runs one agent turn for a session inside its container and turns the
agent's stream-json output into AgentEvents.

Flow per turn:
    resolve image -> assign worktree -> ensure container -> exec agent CLI
    -> parse stdout line by line -> persist resumable token -> release container for idling
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import AsyncIterator

import registry

from ..schemas import AgentEvent, RunOptions
from .bridge import bridge_env, mcp_config_json
from .container_manager import WORKSPACE_DIR, ContainerManager, get_container_manager, sanitize_output
from .docker_client import ContainerError
from .exec_channel import ExecSession, execute
from .image_resolver import resolve_image
from .worktree_manager import WorktreeError, assign_worktree, get_session_work_path

logger = logging.getLogger(__name__)

# Tool results are truncated before being emitted
TOOL_RESULT_LIMIT = 2000


def get_agent_command() -> str:
    return os.getenv("AGENT_COMMAND", "claude")


def build_agent_command(
    prompt: str,
    options: RunOptions,
    resume_token: str | None = None,
    mcp_config: str | None = None,
) -> list[str]:
    """Build the agent CLI invocation for one turn."""
    args = [
        get_agent_command(),
        "--print",
        "--output-format", "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
    ]
    if mcp_config:
        args += ["--mcp-config", mcp_config]
    if options.system_prompt:
        args += ["--system-prompt", options.system_prompt]
    if options.model:
        args += ["--model", options.model]
    if options.allowed_tools:
        args += ["--allowedTools", ",".join(options.allowed_tools)]
    if options.disallowed_tools:
        args += ["--disallowedTools", ",".join(options.disallowed_tools)]
    if options.max_turns:
        args += ["--max-turns", str(options.max_turns)]
    if resume_token:
        args += ["--resume", resume_token]

    # -- keeps a prompt starting with "-" from being read as a flag
    args += ["--", prompt]
    return args


def _tool_result_text(content) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content if content is not None else "")


def parse_stream_event(raw: dict, tool_names: dict[str, str] | None = None) -> list[AgentEvent]:
    """
    Convert one stream-json record into zero or more events.

    Args:
        raw: Decoded JSON record.
        tool_names: tool_use_id -> tool name, filled from tool_use blocks
            and used to label later tool_result blocks.
    """
    if tool_names is None:
        tool_names = {}
    kind = raw.get("type")
    events = []

    if kind == "system" and raw.get("subtype") == "init":
        events.append(AgentEvent(type="init", session_id=raw.get("session_id")))

    elif kind == "assistant":
        content = (raw.get("message") or {}).get("content")
        for block in content if isinstance(content, list) else []:
            if block.get("type") == "text" and block.get("text"):
                events.append(AgentEvent(type="text", text=block["text"]))
            elif block.get("type") == "tool_use":
                tool_use_id = block.get("id")
                if tool_use_id:
                    tool_names[tool_use_id] = block.get("name", "unknown")
                events.append(AgentEvent(
                    type="tool_use",
                    tool_name=block.get("name"),
                    tool_input=block.get("input") or {},
                    tool_use_id=tool_use_id,
                ))

    elif kind == "user":
        content = (raw.get("message") or {}).get("content")
        if isinstance(content, list):
            for block in content:
                if block.get("type") != "tool_result":
                    continue
                tool_use_id = block.get("tool_use_id")
                events.append(AgentEvent(
                    type="tool_result",
                    tool_name=tool_names.get(tool_use_id, "unknown"),
                    tool_use_id=tool_use_id,
                    text=_tool_result_text(block.get("content"))[:TOOL_RESULT_LIMIT],
                    is_error=bool(block.get("is_error", False)),
                ))
        elif raw.get("tool_use_result") is not None:
            # Older CLI versions
            result = raw["tool_use_result"]
            value = result.get("result") if isinstance(result, dict) else result
            events.append(AgentEvent(
                type="tool_result",
                tool_name="unknown",
                text=_tool_result_text(value)[:TOOL_RESULT_LIMIT],
            ))

    elif kind == "result":
        events.append(AgentEvent(
            type="done",
            text=raw.get("result") or "",
            cost_usd=raw.get("total_cost_usd"),
            is_error=bool(raw.get("is_error", False)),
        ))

    return events


def container_workdir(work_path: str | Path, project_path: str | Path) -> str:
    """Map an effective working directory on this side to its path inside the container."""
    try:
        relative = Path(work_path).relative_to(project_path)
    except ValueError:
        return WORKSPACE_DIR
    if relative == Path("."):
        return WORKSPACE_DIR
    return f"{WORKSPACE_DIR}/{relative.as_posix()}"


class AgentRunner:
    """Runs agent turns and tracks the in-flight exec per session."""

    def __init__(self, manager: ContainerManager | None = None):
        self._manager = manager
        self._active: dict[str, ExecSession] = {}

    @property
    def manager(self) -> ContainerManager:
        if self._manager is None:
            self._manager = get_container_manager()
        return self._manager

    def is_running(self, session_id: str) -> bool:
        exec_session = self._active.get(session_id)
        return exec_session is not None and not exec_session.done

    async def cancel(self, session_id: str) -> bool:
        """Interrupt the session's running agent; the container stays up."""
        exec_session = self._active.get(session_id)
        if exec_session is None:
            return False
        return await exec_session.cancel()

    async def despawn(self, session_id: str) -> bool:
        """Interrupt any running turn and tear the session's container down."""
        await self.cancel(session_id)
        return await self.manager.despawn(session_id)

    async def _start(self, session: registry.SessionRecord, prompt: str, options: RunOptions) -> ExecSession:
        project = registry.get_project(session.project_id)
        if project is None:
            raise registry.ProjectNotFound(f"Project '{session.project_id}' not found")

        image = resolve_image(session.id, options.image)
        await assign_worktree(session.id)
        work_path = get_session_work_path(session.id, project.path)

        container_env = {"SESSION_ID": session.id, "USER_ID": session.user_id}
        handle = await self.manager.ensure_container(session.id, image, project.path, env=container_env)

        exec_env = {
            **bridge_env(session.id, session.user_id),
            "PROJECT_PATH": WORKSPACE_DIR,
            **options.env,
        }
        command = build_agent_command(prompt, options, session.agent_session_id, mcp_config_json())
        workdir = container_workdir(work_path, project.path)
        logger.info(f"Starting agent for session {session.id} in {handle.name} ({workdir})")
        self.manager.begin_exec(session.id)
        try:
            return await execute(self.manager.client, handle, command, env=exec_env, workdir=workdir)
        except Exception:
            self.manager.end_exec(session.id)
            raise

    async def run(self, session_id: str, prompt: str, options: RunOptions | None = None) -> AsyncIterator[AgentEvent]:
        """
        Run one agent turn, yielding events as they are produced.

        Lifecycle failures are yielded as a single error event carrying
        the remediation text; nothing falls back to running outside a container.
        """
        options = options or RunOptions()
        session = registry.get_session(session_id)
        if session is None:
            yield AgentEvent(type="error", error=f"Session '{session_id}' not found")
            return

        # One turn per session at a time
        if self.is_running(session_id):
            await self.cancel(session_id)

        try:
            exec_session = await self._start(session, prompt, options)
        except ContainerError as e:
            logger.error(f"Agent start failed for session {session_id}: {e}")
            yield AgentEvent(type="error", error=e.user_message())
            return
        except (WorktreeError, registry.RegistryError) as e:
            logger.error(f"Agent start failed for session {session_id}: {e}")
            yield AgentEvent(type="error", error=str(e))
            return

        self._active[session_id] = exec_session
        diagnostics_task = asyncio.create_task(exec_session.diagnostics.read())
        tool_names: dict[str, str] = {}
        text_parts = []
        saw_done = False
        exit_code = None
        diagnostics = ""

        try:
            while True:
                try:
                    line = await exec_session.output.readline()
                except ValueError as e:
                    logger.warning(f"Dropped oversized output line from session {session_id}: {e}")
                    continue
                if not line:
                    break
                for event in self._parse_line(session_id, line, tool_names):
                    if event.type == "init" and event.session_id:
                        registry.set_agent_session_id(session_id, event.session_id)
                    elif event.type == "text" and event.text:
                        text_parts.append(event.text)
                    elif event.type == "done":
                        saw_done = True
                    yield event

            exit_code = await exec_session.wait()
            diagnostics = (await diagnostics_task).decode("utf-8", errors="replace")
        finally:
            if self._active.get(session_id) is exec_session:
                del self._active[session_id]
            if not diagnostics_task.done():
                diagnostics_task.cancel()
            self.manager.end_exec(session_id)

        if diagnostics.strip():
            logger.debug(f"Agent stderr for session {session_id}: {sanitize_output(diagnostics.strip())[:2000]}")

        full_text = "".join(text_parts)
        if exec_session.cancelled:
            logger.info(f"Agent for session {session_id} interrupted")
            if full_text:
                yield AgentEvent(type="done", text=full_text, interrupted=True)
            return

        if not saw_done and not full_text and (diagnostics.strip() or exit_code):
            message = diagnostics.strip() or f"Agent exited with code {exit_code}"
            yield AgentEvent(type="error", error=sanitize_output(message))

    def _parse_line(self, session_id: str, line: bytes, tool_names: dict[str, str]) -> list[AgentEvent]:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return []
        try:
            raw = json.loads(text)
        except ValueError:
            logger.debug(f"Non-JSON output from session {session_id}: {sanitize_output(text[:200])}")
            return []
        if not isinstance(raw, dict):
            return []
        return parse_stream_event(raw, tool_names)


_runner: AgentRunner | None = None


def get_agent_runner() -> AgentRunner:
    """Get or create the process-wide agent runner."""
    global _runner
    if _runner is None:
        _runner = AgentRunner()
    return _runner
