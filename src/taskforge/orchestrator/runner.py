"""Process execution boundary: the only way the engine touches git and tmux."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Protocol

from taskforge.orchestrator.errors import ExternalToolError

logger = logging.getLogger(__name__)


class ProcessRunner(Protocol):
    """Run a named executable with an argv list and return its stdout."""

    def run(self, name: str, *args: str, cwd: Path | None = None) -> str:
        """Raise ExternalToolError on non-zero exit or missing executable."""


class SubprocessRunner:
    """Production runner: argv exec without a shell, blocking until exit."""

    def run(self, name: str, *args: str, cwd: Path | None = None) -> str:
        argv = [name, *args]
        logger.debug("exec %s (cwd=%s)", shlex.join(argv), cwd or ".")
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as error:
            raise ExternalToolError(
                f"Command not found: {name}",
                command=argv,
            ) from error
        except OSError as error:
            raise ExternalToolError(
                f"Failed to start {name}: {error}",
                command=argv,
            ) from error

        if completed.returncode != 0:
            output = (completed.stderr or completed.stdout or "").strip()
            raise ExternalToolError(
                f"{shlex.join(argv)} failed with exit code {completed.returncode}: {output}",
                command=argv,
                exit_code=completed.returncode,
                output=output,
            )
        return completed.stdout
