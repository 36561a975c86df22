"""External command execution for disk operations."""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import Mapping

from nodeprep.domain import CommandResult
from nodeprep.logging import LoggerFactory
from nodeprep.storage.exceptions import CommandExecutionError


class CommandRunner:
    """Runs external tools and captures their output.

    ``tmp_dir`` is exported as ``TMPDIR`` to every child process instead of
    being changed for the whole agent.
    """

    def __init__(self, tmp_dir: str | None = None, env: Mapping[str, str] | None = None):
        self.tmp_dir = tmp_dir
        self._env = dict(env) if env is not None else None
        self._log = LoggerFactory.for_commands()

    def _child_env(self) -> dict[str, str] | None:
        if self.tmp_dir is None and self._env is None:
            return None
        env = dict(os.environ if self._env is None else self._env)
        if self.tmp_dir is not None:
            env["TMPDIR"] = self.tmp_dir
        return env

    def run(self, *command: str, stdin: str | None = None) -> CommandResult:
        """Run ``command`` and return its output.

        Raises:
            CommandExecutionError: non-zero exit status or the executable
                could not be started
        """
        self._log.debug(f"Running command: {' '.join(command)}")
        try:
            result = subprocess.run(
                list(command),
                input=stdin,
                text=True,
                capture_output=True,
                env=self._child_env(),
                check=False,
            )
        except OSError as error:
            self._log.debug(f"Command failed to start: {' '.join(command)}")
            raise CommandExecutionError(command, None, "", str(error)) from error

        if result.returncode != 0:
            self._log.debug(f"Command failed: {' '.join(command)}")
            if result.stdout:
                self._log.debug(f"stdout: {result.stdout.strip()}")
            if result.stderr:
                self._log.debug(f"stderr: {result.stderr.strip()}")
            raise CommandExecutionError(
                command, result.returncode, result.stdout or "", result.stderr or ""
            )

        self._log.trace(f"Command completed with return code {result.returncode}")
        return CommandResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.returncode,
        )

    def exists(self, name: str) -> bool:
        """Whether ``name`` is an executable on PATH."""
        return shutil.which(name) is not None
