"""Subprocess helpers shared by the builder steps."""

import asyncio
import logging
import shlex
from typing import NamedTuple

logger = logging.getLogger(__name__)


class CommandResult(NamedTuple):
    """Outcome of an external command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def diagnostic(self) -> str:
        """Best available description of why the command failed."""
        return self.stderr.strip() or self.stdout.strip() or f"exit status {self.returncode}"


def format_command(cmd: list[str]) -> str:
    """Render a command line the way a shell `set -x` trace would."""
    return " ".join(shlex.quote(part) for part in cmd)


async def run_command(*cmd: str, capture: bool = True) -> CommandResult:
    """Run an external command to completion.

    Args:
        cmd: Program and arguments
        capture: Capture stdout/stderr. When False the command shares the controller's terminal,
            which is required for interactive prompts such as sudo's.

    Raises:
        OSError: If the program cannot be executed at all.
    """
    logger.debug(f"Running: {format_command(list(cmd))}")

    stream = asyncio.subprocess.PIPE if capture else None
    process = await asyncio.create_subprocess_exec(*cmd, stdout=stream, stderr=stream)
    stdout, stderr = await process.communicate()

    return CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )
