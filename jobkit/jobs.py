"""Job handler base class and the built-in ``shell`` job."""

import asyncio
import logging
import shlex
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from .errors import CommandFailed
from .registry import JobRegistry

logger = logging.getLogger(__name__)

SHELL_JOB = "shell"


class Job(ABC):
    """A job handler. A new instance is created for every run.

    Override ``close`` (sync or async) to release per-run resources; it is
    called once ``run`` finishes, whether or not it raised.
    """

    @abstractmethod
    async def run(self, data: Any) -> None:
        ...

    def close(self) -> None:
        pass


@dataclass
class CommandPayload:
    command: str
    timeout: int = 20


class ShellCommandJob(Job):
    async def run(self, data: CommandPayload) -> None:
        if not data.command or not data.command.strip():
            raise CommandFailed(data.command, 1, "Command cannot be empty.")
        args = shlex.split(data.command, posix=(sys.platform != "win32"))

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise CommandFailed(data.command, 127, f"Command not found: {data.command}")
        except OSError as e:
            raise CommandFailed(data.command, 126, f"Cannot run command {data.command!r}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=data.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandFailed(
                data.command, 124, f"Command timed out after {data.timeout}s: {data.command}"
            )

        if stdout:
            logger.info("%s", stdout.decode(errors="replace").strip())
        if stderr:
            logger.warning("%s", stderr.decode(errors="replace").strip())
        if proc.returncode != 0:
            raise CommandFailed(
                data.command, proc.returncode, f"exit_code={proc.returncode}: {data.command}"
            )


def default_registry() -> JobRegistry:
    registry = JobRegistry()
    registry.register(SHELL_JOB, ShellCommandJob, CommandPayload)
    return registry
