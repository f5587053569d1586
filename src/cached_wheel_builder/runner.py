"""External command execution.

Every stage that shells out (build, git, gh, pip) goes through a ``CommandRunner``
so tests can substitute a fake that records calls and returns canned results.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from loguru import logger

from cached_wheel_builder.core.exceptions import ExternalToolError


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> CommandResult:
        """Return self, or raise ExternalToolError for a non-zero exit."""
        if not self.ok:
            raise ExternalToolError(list(self.args), self.returncode, self.stdout, self.stderr)
        return self


class CommandRunner(Protocol):
    def run(
        self,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """Runs commands with ``subprocess.run`` (no shell).

    ``env`` is merged over the current process environment.
    """

    def run(
        self,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        merged_env = None
        if env:
            merged_env = {**os.environ, **env}
        logger.info(f"$ {' '.join(args)}")
        try:
            proc = subprocess.run(
                list(args),
                cwd=cwd,
                env=merged_env,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            # 127 mirrors the shell's "command not found"
            return CommandResult(tuple(args), 127, "", str(exc))
        if proc.stdout:
            logger.debug(proc.stdout.rstrip())
        if proc.stderr:
            logger.debug(proc.stderr.rstrip())
        return CommandResult(tuple(args), proc.returncode, proc.stdout, proc.stderr)
