"""
Agent Runner Unit Tests
=======================

Tests for the agent CLI invocation, stream-json parsing and the per-turn
run loop (with the container manager and exec channel mocked).
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from server.schemas import RunOptions
from server.services.agent_runner import (
    TOOL_RESULT_LIMIT,
    AgentRunner,
    build_agent_command,
    container_workdir,
    parse_stream_event,
)
from server.services.container_manager import ContainerHandle
from server.services.docker_client import ExecError, ImageNotFoundError


# =============================================================================
# Helpers
# =============================================================================

class FakeExec:
    """Stands in for ExecSession with pre-fed output streams."""

    def __init__(self, lines=(), stderr=b"", exit_code=0, cancelled=False):
        self.output = asyncio.StreamReader()
        self.diagnostics = asyncio.StreamReader()
        for line in lines:
            data = line if isinstance(line, bytes) else json.dumps(line).encode()
            self.output.feed_data(data + b"\n")
        self.output.feed_eof()
        self.diagnostics.feed_data(stderr)
        self.diagnostics.feed_eof()
        self.exit_code = exit_code
        self.cancelled = cancelled
        self.done = False

    async def wait(self):
        self.done = True
        return self.exit_code

    async def cancel(self):
        return False


def make_manager(session_id="s"):
    manager = MagicMock()
    manager.ensure_container = AsyncMock(
        return_value=ContainerHandle(session_id=session_id, container_id="c1", name=f"agentpod-agent-{session_id}")
    )
    manager.despawn = AsyncMock(return_value=True)
    return manager


async def collect(runner, session_id, prompt="hi", options=None):
    return [event async for event in runner.run(session_id, prompt, options)]


INIT = {"type": "system", "subtype": "init", "session_id": "agent-token-1"}
ASSISTANT = {
    "type": "assistant",
    "message": {"content": [
        {"type": "text", "text": "Looking"},
        {"type": "tool_use", "id": "tu1", "name": "Read", "input": {"path": "a.py"}},
    ]},
}
TOOL_RESULT = {
    "type": "user",
    "message": {"content": [{"type": "tool_result", "tool_use_id": "tu1", "content": "print(1)"}]},
}
RESULT = {"type": "result", "result": "Looking", "total_cost_usd": 0.01, "is_error": False}


# =============================================================================
# Command Construction
# =============================================================================

class TestBuildAgentCommand:
    """Tests for the agent CLI invocation."""

    @pytest.mark.unit
    def test_minimal(self):
        args = build_agent_command("do it", RunOptions())

        assert args[0] == "claude"
        assert args[args.index("--output-format") + 1] == "stream-json"
        assert "--print" in args
        assert args[-2:] == ["--", "do it"]
        assert "--resume" not in args
        assert "--mcp-config" not in args

    @pytest.mark.unit
    def test_all_options(self):
        options = RunOptions(
            model="sonnet",
            system_prompt="Be brief",
            max_turns=3,
            allowed_tools=["Read", "Edit"],
            disallowed_tools=["Bash"],
        )

        args = build_agent_command("-x", options, resume_token="tok", mcp_config="{}")

        assert args[args.index("--model") + 1] == "sonnet"
        assert args[args.index("--system-prompt") + 1] == "Be brief"
        assert args[args.index("--max-turns") + 1] == "3"
        assert args[args.index("--allowedTools") + 1] == "Read,Edit"
        assert args[args.index("--disallowedTools") + 1] == "Bash"
        assert args[args.index("--resume") + 1] == "tok"
        assert args[args.index("--mcp-config") + 1] == "{}"
        assert args[-2:] == ["--", "-x"]

    @pytest.mark.unit
    def test_command_override(self, monkeypatch):
        monkeypatch.setenv("AGENT_COMMAND", "/opt/agent")

        assert build_agent_command("p", RunOptions())[0] == "/opt/agent"


# =============================================================================
# Stream Parsing
# =============================================================================

class TestParseStreamEvent:
    """Tests for stream-json record conversion."""

    @pytest.mark.unit
    def test_init(self):
        events = parse_stream_event(INIT)

        assert [e.type for e in events] == ["init"]
        assert events[0].session_id == "agent-token-1"

    @pytest.mark.unit
    def test_assistant_blocks_and_tool_name_tracking(self):
        names = {}

        events = parse_stream_event(ASSISTANT, names)

        assert [e.type for e in events] == ["text", "tool_use"]
        assert events[1].tool_name == "Read"
        assert events[1].tool_input == {"path": "a.py"}
        assert names == {"tu1": "Read"}

    @pytest.mark.unit
    def test_tool_result_labelled_and_truncated(self):
        raw = {
            "type": "user",
            "message": {"content": [
                {"type": "tool_result", "tool_use_id": "tu1", "content": "x" * 5000, "is_error": True},
            ]},
        }

        events = parse_stream_event(raw, {"tu1": "Bash"})

        assert events[0].tool_name == "Bash"
        assert len(events[0].text) == TOOL_RESULT_LIMIT
        assert events[0].is_error is True

    @pytest.mark.unit
    def test_structured_tool_result_serialized(self):
        raw = {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "x", "content": [{"type": "text"}]}]},
        }

        events = parse_stream_event(raw)

        assert events[0].tool_name == "unknown"
        assert json.loads(events[0].text) == [{"type": "text"}]

    @pytest.mark.unit
    def test_legacy_tool_use_result(self):
        events = parse_stream_event({"type": "user", "tool_use_result": {"result": "ok"}})

        assert events[0].type == "tool_result"
        assert events[0].text == "ok"

    @pytest.mark.unit
    def test_result(self):
        events = parse_stream_event(RESULT)

        assert events[0].type == "done"
        assert events[0].cost_usd == 0.01
        assert events[0].is_error is False

    @pytest.mark.unit
    def test_unknown_record_ignored(self):
        assert parse_stream_event({"type": "stream_event"}) == []


class TestContainerWorkdir:
    """Tests for mapping the effective directory into the container."""

    @pytest.mark.unit
    def test_project_root(self, tmp_path):
        assert container_workdir(tmp_path, tmp_path) == "/workspace"

    @pytest.mark.unit
    def test_worktree(self, tmp_path):
        assert container_workdir(tmp_path / ".worktrees" / "s1", tmp_path) == "/workspace/.worktrees/s1"

    @pytest.mark.unit
    def test_outside_project(self, tmp_path):
        assert container_workdir("/elsewhere", tmp_path) == "/workspace"


# =============================================================================
# Run Loop
# =============================================================================

@pytest.fixture
def no_worktree():
    with patch("server.services.agent_runner.assign_worktree", AsyncMock(return_value=None)) as assign:
        yield assign


class TestRun:
    """Tests for one agent turn."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_turn(self, isolated_registry, make_session, no_worktree):
        session_id = make_session(user_id="u1")
        manager = make_manager(session_id)
        fake = FakeExec([INIT, ASSISTANT, b"not json", TOOL_RESULT, RESULT])

        with patch("server.services.agent_runner.execute", AsyncMock(return_value=fake)) as execute:
            events = await collect(AgentRunner(manager), session_id)

        assert [e.type for e in events] == ["init", "text", "tool_use", "tool_result", "done"]
        assert events[3].tool_name == "Read"
        assert isolated_registry.get_session(session_id).agent_session_id == "agent-token-1"
        manager.begin_exec.assert_called_once_with(session_id)
        manager.end_exec.assert_called_once_with(session_id)

        _, image, project_path = manager.ensure_container.call_args.args
        assert image == "agentpod-agent-base"
        assert manager.ensure_container.call_args.kwargs["env"]["SESSION_ID"] == session_id

        env = execute.call_args.kwargs["env"]
        assert env["SESSION_ID"] == session_id
        assert env["USER_ID"] == "u1"
        assert "MCP_PROXY_SCRIPT" in env
        assert execute.call_args.kwargs["workdir"] == "/workspace"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resumes_with_stored_token(self, isolated_registry, make_session, no_worktree):
        session_id = make_session()
        isolated_registry.set_agent_session_id(session_id, "previous")

        with patch("server.services.agent_runner.execute", AsyncMock(return_value=FakeExec([RESULT]))) as execute:
            await collect(AgentRunner(make_manager(session_id)), session_id)

        command = execute.call_args.args[2]
        assert command[command.index("--resume") + 1] == "previous"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_options_env_and_image_override(self, make_session, no_worktree):
        session_id = make_session()
        manager = make_manager(session_id)
        options = RunOptions(image="custom:1", env={"FOO": "bar"})

        with patch("server.services.agent_runner.execute", AsyncMock(return_value=FakeExec([RESULT]))) as execute:
            await collect(AgentRunner(manager), session_id, options=options)

        assert manager.ensure_container.call_args.args[1] == "custom:1"
        assert execute.call_args.kwargs["env"]["FOO"] == "bar"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_worktree_sets_workdir(self, isolated_registry, make_session, tmp_path):
        session_id = make_session()
        worktree = tmp_path / "project" / ".worktrees" / session_id
        worktree.mkdir(parents=True)
        isolated_registry.set_session_worktree(session_id, worktree)

        with patch("server.services.agent_runner.assign_worktree", AsyncMock(return_value=worktree)), \
                patch("server.services.agent_runner.execute", AsyncMock(return_value=FakeExec([RESULT]))) as execute:
            await collect(AgentRunner(make_manager(session_id)), session_id)

        assert execute.call_args.kwargs["workdir"] == f"/workspace/.worktrees/{session_id}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_session(self, isolated_registry):
        events = await collect(AgentRunner(make_manager()), "missing")

        assert len(events) == 1
        assert events[0].type == "error"
        assert "missing" in events[0].error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_image_becomes_error_event(self, make_session, no_worktree):
        session_id = make_session()
        manager = make_manager(session_id)
        manager.ensure_container.side_effect = ImageNotFoundError("agentpod-agent-base", session_id)

        events = await collect(AgentRunner(manager), session_id)

        assert [e.type for e in events] == ["error"]
        assert "not found" in events[0].error
        assert "docker compose build" in events[0].error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_silent_failure_reports_stderr(self, make_session, no_worktree):
        session_id = make_session()
        fake = FakeExec([], stderr=b"auth failed: token=sk-ant-REDACTED\n", exit_code=1)

        with patch("server.services.agent_runner.execute", AsyncMock(return_value=fake)):
            events = await collect(AgentRunner(make_manager(session_id)), session_id)

        assert [e.type for e in events] == ["error"]
        assert "auth failed" in events[0].error
        assert "sk-ant-REDACTED" not in events[0].error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nonzero_exit_without_output(self, make_session, no_worktree):
        session_id = make_session()

        with patch("server.services.agent_runner.execute", AsyncMock(return_value=FakeExec([], exit_code=137))):
            events = await collect(AgentRunner(make_manager(session_id)), session_id)

        assert events[-1].type == "error"
        assert "137" in events[-1].error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clean_exit_without_output_yields_nothing(self, make_session, no_worktree):
        session_id = make_session()

        with patch("server.services.agent_runner.execute", AsyncMock(return_value=FakeExec([]))):
            events = await collect(AgentRunner(make_manager(session_id)), session_id)

        assert events == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_turn_reports_partial_text(self, make_session, no_worktree):
        session_id = make_session()
        fake = FakeExec([ASSISTANT], exit_code=143, cancelled=True)

        with patch("server.services.agent_runner.execute", AsyncMock(return_value=fake)):
            events = await collect(AgentRunner(make_manager(session_id)), session_id)

        assert events[-1].type == "done"
        assert events[-1].interrupted is True
        assert events[-1].text == "Looking"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exec_start_failure_releases_container(self, make_session, no_worktree):
        session_id = make_session()
        manager = make_manager(session_id)
        failure = ExecError("container is not running", session_id=session_id)

        with patch("server.services.agent_runner.execute", AsyncMock(side_effect=failure)):
            events = await collect(AgentRunner(manager), session_id)

        assert [e.type for e in events] == ["error"]
        manager.begin_exec.assert_called_once_with(session_id)
        manager.end_exec.assert_called_once_with(session_id)


class TestCancelDespawn:
    """Tests for interrupting and tearing down."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_without_run(self):
        assert await AgentRunner(make_manager()).cancel("s") is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_despawn_cancels_then_removes(self):
        manager = make_manager()
        runner = AgentRunner(manager)
        exec_session = MagicMock()
        exec_session.cancel = AsyncMock(return_value=True)
        runner._active["s"] = exec_session

        assert await runner.despawn("s") is True

        exec_session.cancel.assert_awaited_once()
        manager.despawn.assert_awaited_once_with("s")
