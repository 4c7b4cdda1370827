"""Session gateway backed by tmux.

Worker sessions live on a dedicated tmux socket so they never mix with the
user's own sessions. Session metadata is kept in the tmux session
environment, which survives engine restarts.
"""

import asyncio
import shlex
import socket
from datetime import datetime
from typing import Optional

from ..errors import GatewayError
from ..models import SessionMetadata, SessionStatus, WorkerSession


SOCKET_NAME = "epicorch"
SHELL_COMMANDS = {"bash", "zsh", "sh", "fish"}

ENV_ISSUE_REF = "EPICORCH_ISSUE_REF"
ENV_REPO = "EPICORCH_REPO"
ENV_WORKTREE = "EPICORCH_WORKTREE"
ENV_AGENT_TYPE = "EPICORCH_AGENT_TYPE"
ENV_MACHINE_ID = "EPICORCH_MACHINE_ID"
ENV_STARTED_AT = "EPICORCH_STARTED_AT"

LIST_FORMAT = "#{session_name}\t#{session_attached}\t#{session_windows}\t#{session_created}"

DEFAULT_AGENT_COMMANDS = {
    "claude": "claude",
    "codex": "codex",
    "aider": "aider",
}


def parse_session_line(line: str) -> Optional[tuple[str, bool, Optional[datetime]]]:
    """Parse one ``list-sessions`` line into (name, attached, created)."""
    parts = line.split("\t")
    if len(parts) < 4 or not parts[0]:
        return None
    created = datetime.fromtimestamp(int(parts[3])) if parts[3].isdigit() else None
    return parts[0], parts[1] == "1", created


def parse_environment(output: str) -> SessionMetadata:
    """Build metadata from ``show-environment`` output."""
    env = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.startswith("EPICORCH_"):
            env[key] = value

    started_at = None
    if env.get(ENV_STARTED_AT):
        try:
            started_at = datetime.fromisoformat(env[ENV_STARTED_AT])
        except ValueError:
            started_at = None

    return SessionMetadata(
        issue_ref=env.get(ENV_ISSUE_REF),
        repo=env.get(ENV_REPO),
        worktree=env.get(ENV_WORKTREE),
        agent_type=env.get(ENV_AGENT_TYPE, "unknown"),
        machine_id=env.get(ENV_MACHINE_ID, "unknown"),
        started_at=started_at,
    )


def metadata_environment(metadata: SessionMetadata) -> dict[str, str]:
    """Environment variables stored for a session's metadata."""
    values = {
        ENV_ISSUE_REF: metadata.issue_ref,
        ENV_REPO: metadata.repo,
        ENV_WORKTREE: metadata.worktree,
        ENV_AGENT_TYPE: metadata.agent_type,
        ENV_MACHINE_ID: metadata.machine_id,
        ENV_STARTED_AT: metadata.started_at.isoformat() if metadata.started_at else None,
    }
    return {key: value for key, value in values.items() if value}


def status_from_pane_command(command: str) -> SessionStatus:
    """Running unless the pane is back at a bare shell prompt."""
    command = command.strip()
    if not command or command in SHELL_COMMANDS:
        return SessionStatus.STOPPED
    return SessionStatus.RUNNING


def agent_command(commands: dict[str, str], agent_type: str, prompt: Optional[str] = None) -> Optional[str]:
    """Shell line that starts ``agent_type``, with the prompt as a quoted argument."""
    command = commands.get(agent_type)
    if not command:
        return None
    return f"{command} {shlex.quote(prompt)}" if prompt else command


def is_no_server_error(stderr: str) -> bool:
    return "no server running" in stderr or "no sessions" in stderr


class TmuxSessionGateway:
    """``SessionGateway`` implementation over tmux."""

    def __init__(
        self,
        prefix: str = "epicorch-agent-",
        socket_name: str = SOCKET_NAME,
        agent_commands: Optional[dict[str, str]] = None,
    ):
        """Initialize the gateway.

        Args:
            prefix: Only sessions whose name starts with this are listed
            socket_name: tmux socket (``-L``)
            agent_commands: Command started in a new session, per agent type
        """
        self.prefix = prefix
        self.socket_name = socket_name
        self.agent_commands = {**DEFAULT_AGENT_COMMANDS, **(agent_commands or {})}

    async def _run(self, *args: str, check: bool = True) -> tuple[int, str, str]:
        """Run a tmux command on our socket."""
        command = ["tmux", "-L", self.socket_name, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise GatewayError("tmux is not installed", command=command) from e

        stdout, stderr = await process.communicate()
        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace").strip()
        if check and process.returncode != 0:
            raise GatewayError(f"tmux {args[0]} failed: {err}", command=command, stderr=err)
        return process.returncode, out, err

    async def list_sessions(self) -> list[WorkerSession]:
        code, out, err = await self._run("list-sessions", "-F", LIST_FORMAT, check=False)
        if code != 0:
            if is_no_server_error(err):
                return []
            raise GatewayError(f"tmux list-sessions failed: {err}", stderr=err)

        sessions = []
        for line in out.splitlines():
            parsed = parse_session_line(line)
            if parsed is None or not parsed[0].startswith(self.prefix):
                continue
            name, attached, created = parsed
            sessions.append(WorkerSession(
                name=name,
                status=await self._status(name),
                attached=attached,
                created=created,
                metadata=await self._metadata(name),
            ))
        return sessions

    async def _status(self, name: str) -> SessionStatus:
        code, out, _ = await self._run("list-panes", "-t", name, "-F", "#{pane_current_command}", check=False)
        if code != 0:
            return SessionStatus.STOPPED
        first = out.strip().splitlines()[0] if out.strip() else ""
        return status_from_pane_command(first)

    async def _metadata(self, name: str) -> Optional[SessionMetadata]:
        code, out, _ = await self._run("show-environment", "-t", name, check=False)
        if code != 0:
            return None
        metadata = parse_environment(out)
        if metadata.issue_ref is None and metadata.agent_type == "unknown":
            return None
        return metadata

    async def create_session(
        self,
        name: str,
        working_dir: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
        prompt: Optional[str] = None,
        start_agent: bool = True,
    ) -> None:
        args = ["new-session", "-d", "-s", name]
        if working_dir:
            args += ["-c", working_dir]
        await self._run(*args)

        if metadata is None:
            return
        for key, value in metadata_environment(metadata).items():
            await self._run("set-environment", "-t", name, key, value)

        command = agent_command(self.agent_commands, metadata.agent_type, prompt)
        if start_agent and command:
            await self.send_command(name, command)

    async def kill_session(self, name: str) -> None:
        code, _, err = await self._run("kill-session", "-t", name, check=False)
        # Already gone is fine
        if code != 0 and "can't find session" not in err and not is_no_server_error(err):
            raise GatewayError(f"tmux kill-session failed: {err}", stderr=err)

    async def send_command(self, name: str, text: str) -> None:
        await self._run("send-keys", "-t", name, text, "Enter")

    async def read_output(self, name: str, max_lines: int = 100) -> str:
        _, out, _ = await self._run("capture-pane", "-p", "-t", name, "-S", f"-{max_lines}")
        return out

    def current_machine_id(self) -> str:
        return socket.gethostname() or "unknown"
