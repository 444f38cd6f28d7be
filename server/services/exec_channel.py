"""
Exec Channel
============

Runs a command inside a session's running container and exposes its
stdout and stderr as two independent async streams.

The Docker SDK stream is blocking, so a pump thread reads the demuxed
frames and feeds them into asyncio.StreamReaders on the event loop.
Cancelling an exec signals only that process; the container keeps running.
"""

import asyncio
import logging
import shlex
import threading
import uuid

import docker

from .container_manager import WORKSPACE_DIR, ContainerHandle
from .docker_client import ExecError

logger = logging.getLogger(__name__)

# Where the wrapped command records its in-container PID
PID_FILE_TEMPLATE = "/tmp/agentpod-exec-{token}.pid"

# stream-json records can be large (tool results, file contents)
STREAM_LIMIT = 16 * 1024 * 1024


def wrap_command(command: list[str], pid_file: str) -> list[str]:
    """
    Wrap a command so its PID is recorded in pid_file while it runs.

    The file is removed once the command exits and the wrapper exits with
    the command's status.
    """
    quoted = shlex.quote(pid_file)
    script = f'"$@" & pid=$!; echo $pid > {quoted}; wait $pid; code=$?; rm -f {quoted}; exit $code'
    return ["sh", "-c", script, "sh", *command]


class ExecSession:
    """
    A single in-flight command inside a container.

    Attributes:
        output: stdout of the command.
        diagnostics: stderr of the command.
    """

    def __init__(self, client: docker.DockerClient, handle: ContainerHandle, exec_id: str, pid_file: str):
        self._client = client
        self.handle = handle
        self.exec_id = exec_id
        self.pid_file = pid_file
        self.output = asyncio.StreamReader(limit=STREAM_LIMIT)
        self.diagnostics = asyncio.StreamReader(limit=STREAM_LIMIT)
        self.cancelled = False
        self._done = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self._thread: threading.Thread | None = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def start(self, stream) -> None:
        self._thread = threading.Thread(
            target=self._pump,
            args=(stream,),
            name=f"exec-pump-{self.exec_id[:12]}",
            daemon=True,
        )
        self._thread.start()

    def _pump(self, stream) -> None:
        try:
            for stdout_chunk, stderr_chunk in stream:
                if stdout_chunk:
                    self._loop.call_soon_threadsafe(self.output.feed_data, stdout_chunk)
                if stderr_chunk:
                    self._loop.call_soon_threadsafe(self.diagnostics.feed_data, stderr_chunk)
        except Exception as e:
            logger.warning(f"Exec stream in {self.handle.name} ended with error: {e}")
        finally:
            self._loop.call_soon_threadsafe(self._finish)

    def _finish(self) -> None:
        self.output.feed_eof()
        self.diagnostics.feed_eof()
        self._done.set()

    async def wait(self) -> int | None:
        """Wait for end-of-stream and return the exit code (None if unknown)."""
        await self._done.wait()
        try:
            info = await asyncio.to_thread(self._client.api.exec_inspect, self.exec_id)
        except Exception as e:
            logger.warning(f"Could not inspect exec {self.exec_id[:12]}: {e}")
            return None
        return info.get("ExitCode")

    async def cancel(self) -> bool:
        """
        Send SIGTERM to the command.

        Returns:
            True if the command was signalled. False if it had already
            finished or the kill did not reach it.
        """
        if self._done.is_set():
            return False

        try:
            info = await asyncio.to_thread(self._client.api.exec_inspect, self.exec_id)
        except Exception as e:
            logger.warning(f"Could not inspect exec {self.exec_id[:12]}: {e}")
            return False
        if not info.get("Running"):
            return False

        pid_file = shlex.quote(self.pid_file)
        kill_script = f'kill -TERM "$(cat {pid_file})"'
        try:
            kill_exec = await asyncio.to_thread(
                self._client.api.exec_create,
                self.handle.container_id,
                cmd=["sh", "-c", kill_script],
                stdout=True,
                stderr=True,
            )
            await asyncio.to_thread(self._client.api.exec_start, kill_exec["Id"])
            result = await asyncio.to_thread(self._client.api.exec_inspect, kill_exec["Id"])
        except Exception as e:
            logger.warning(f"Failed to signal exec in {self.handle.name}: {e}")
            return False
        # Non-zero when the PID file is missing or the process is already gone
        if result.get("ExitCode") != 0:
            logger.warning(
                f"Kill for exec {self.exec_id[:12]} in {self.handle.name} exited with {result.get('ExitCode')}"
            )
            return False

        self.cancelled = True
        logger.info(f"Sent SIGTERM to exec {self.exec_id[:12]} in {self.handle.name}")
        return True


async def execute(
    client: docker.DockerClient,
    handle: ContainerHandle,
    command: list[str],
    env: dict[str, str] | None = None,
    workdir: str = WORKSPACE_DIR,
) -> ExecSession:
    """
    Start a command in a running container.

    Raises:
        ExecError: If the exec could not be created or started.
    """
    pid_file = PID_FILE_TEMPLATE.format(token=uuid.uuid4().hex[:12])
    try:
        created = await asyncio.to_thread(
            client.api.exec_create,
            handle.container_id,
            cmd=wrap_command(command, pid_file),
            stdin=False,
            stdout=True,
            stderr=True,
            tty=False,
            environment=env or None,
            workdir=workdir,
        )
        exec_id = created["Id"]
        stream = await asyncio.to_thread(client.api.exec_start, exec_id, stream=True, demux=True)
    except Exception as e:
        raise ExecError(f"Failed to start command in {handle.name}: {e}", session_id=handle.session_id) from e

    session = ExecSession(client, handle, exec_id, pid_file)
    session.start(stream)
    logger.debug(f"Started exec {exec_id[:12]} in {handle.name}: {command[0]}")
    return session
