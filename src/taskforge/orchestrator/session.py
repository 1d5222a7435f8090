"""tmux-backed agent sessions with output piped to an append-only log."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from taskforge.orchestrator.errors import ExternalToolError, ValidationError
from taskforge.orchestrator.runner import ProcessRunner, SubprocessRunner

logger = logging.getLogger(__name__)

_LOG_PATH_RE = re.compile(r"^[A-Za-z0-9 _./'-]+$")
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,80}$")


def shell_quote(value: str) -> str:
    """POSIX single-quote ``value``; every shell string built here goes through this."""

    return "'" + value.replace("'", "'\"'\"'") + "'"


def validate_log_path(log_path: str) -> str:
    """Allow-list check; anything outside ``[A-Za-z0-9 _./'-]`` is rejected, not escaped."""

    if not log_path or not _LOG_PATH_RE.fullmatch(log_path):
        raise ValidationError(f"Unsafe log path: {log_path!r}")
    return log_path


def build_pipe_command(log_path: str) -> str:
    return f"cat >> {shell_quote(validate_log_path(log_path))}"


def validate_session_id(session_id: str) -> str:
    if not _SESSION_ID_RE.fullmatch(session_id):
        raise ValidationError(f"Invalid session id: {session_id!r}")
    return session_id


class SessionManager:
    """Start and stop detached tmux sessions bound to a working directory."""

    def __init__(self, runner: ProcessRunner | None = None, *, tmux_bin: str = "tmux") -> None:
        self.runner = runner or SubprocessRunner()
        self.tmux_bin = tmux_bin

    def start(self, session_id: str, workdir: Path, log_path: Path) -> None:
        validate_session_id(session_id)
        pipe_command = build_pipe_command(str(log_path))
        log_path.parent.mkdir(parents=True, exist_ok=True)

        self.runner.run(self.tmux_bin, "new-session", "-d", "-s", session_id, "-c", str(workdir))
        self.runner.run(self.tmux_bin, "pipe-pane", "-t", session_id, "-o", pipe_command)
        logger.info("Started session %s in %s (log=%s)", session_id, workdir, log_path)

    def stop(self, session_id: str) -> bool:
        """Kill the session; returns False when it was already gone."""

        validate_session_id(session_id)
        if not self.exists(session_id):
            logger.info("Session %s already stopped", session_id)
            return False
        self.runner.run(self.tmux_bin, "kill-session", "-t", session_id)
        logger.info("Stopped session %s", session_id)
        return True

    def exists(self, session_id: str) -> bool:
        try:
            self.runner.run(self.tmux_bin, "has-session", "-t", session_id)
        except ExternalToolError as error:
            if error.exit_code is None:
                raise
            return False
        return True

    def list_sessions(self, prefix: str = "") -> list[str]:
        try:
            output = self.runner.run(self.tmux_bin, "list-sessions", "-F", "#{session_name}")
        except ExternalToolError as error:
            # tmux exits non-zero when no server is running
            if error.exit_code is None:
                raise
            return []
        names = [line.strip() for line in output.splitlines() if line.strip()]
        return [name for name in names if name.startswith(prefix)]


def read_log_from_offset(log_path: Path, offset: int) -> tuple[list[str], int]:
    """Return complete lines appended after ``offset`` and the new offset.

    A partial trailing line stays unread until its newline arrives. A log
    shorter than ``offset`` (rotated or truncated) is read from the start.
    """

    if not log_path.exists():
        return [], offset
    size = log_path.stat().st_size
    if offset > size:
        offset = 0
    with log_path.open("rb") as handle:
        handle.seek(offset)
        chunk = handle.read()
    last_newline = chunk.rfind(b"\n")
    if last_newline < 0:
        return [], offset
    complete = chunk[: last_newline + 1]
    lines = complete.decode("utf-8", errors="replace").splitlines()
    return lines, offset + len(complete)
