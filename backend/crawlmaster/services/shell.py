import asyncio
import logging
import shlex
from dataclasses import dataclass

from crawlmaster.config import settings

logger = logging.getLogger(__name__)


class ShellCommandError(Exception):
    def __init__(self, command: list[str], returncode: int | None, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"{shlex.join(command)} exited with {returncode}: {stderr.strip()[:500]}"
        )


@dataclass
class CommandResult:
    stdout: str
    stderr: str


async def run(
    command: list[str], *, timeout: float | None = None, dry_run: bool | None = None
) -> CommandResult:
    """Run a command without a shell, raising ShellCommandError on failure."""
    if dry_run is None:
        dry_run = settings.dry_run
    if dry_run:
        logger.info("[dry-run] %s", shlex.join(command))
        return CommandResult(stdout="", stderr="")

    logger.debug("Running %s", shlex.join(command))
    proc = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ShellCommandError(command, None, f"timed out after {timeout}s")

    result = CommandResult(
        stdout=stdout.decode(errors="replace"), stderr=stderr.decode(errors="replace")
    )
    if proc.returncode != 0:
        raise ShellCommandError(command, proc.returncode, result.stderr)
    return result
