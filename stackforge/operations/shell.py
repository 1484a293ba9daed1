"""
Shell operation - runs a command or script in the project root.

Params (from the registry entry):
    command: Command line (string, run through the shell) or argv list
    script: Script path relative to the project root (alternative to command)
    interpreter: Interpreter for ``script`` (default: bash)
    rollback: Command line or argv list that undoes the operation
    env: Extra environment variables
    cwd: Working directory relative to the project root
    requires_paths: Paths that must exist before the operation runs
    requires_commands: Executables that must be on PATH
"""

import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Any, Optional, Union

from stackforge.operations.base import Operation, OperationResult
from stackforge.schemas import PlannedEffect

Command = Union[str, list[str]]


class ShellOperation(Operation):
    """Run a shell command or script as a provisioning step."""

    @property
    def cwd(self) -> Path:
        cwd = self.context.params.get("cwd")
        if cwd is None:
            return self.context.project_root
        path = Path(cwd)
        return path if path.is_absolute() else self.context.project_root / path

    def _command(self) -> Optional[Command]:
        params = self.context.params
        if params.get("command"):
            return params["command"]
        if params.get("script"):
            interpreter = params.get("interpreter", "bash")
            return [interpreter, str(self.context.project_root / params["script"])]
        return None

    @staticmethod
    def _render(command: Command) -> str:
        if isinstance(command, str):
            return command
        return " ".join(shlex.quote(str(part)) for part in command)

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in (self.context.params.get("env") or {}).items()})
        for name, value in self.context.flags.items():
            env[f"STACKFORGE_FLAG_{name}"] = "true" if value else "false"
        return env

    def validate(self) -> OperationResult:
        params = self.context.params
        if self._command() is None:
            return OperationResult.fail("no 'command' or 'script' given")

        script = params.get("script")
        if script and not (self.context.project_root / script).is_file():
            return OperationResult.fail(f"script not found: {script}")

        missing_paths = [
            p for p in params.get("requires_paths") or []
            if not (self.context.project_root / p).exists()
        ]
        if missing_paths:
            return OperationResult.fail(f"required paths missing: {', '.join(missing_paths)}")

        missing_commands = [c for c in params.get("requires_commands") or [] if shutil.which(c) is None]
        if missing_commands:
            return OperationResult.fail(f"required commands not on PATH: {', '.join(missing_commands)}")

        return OperationResult.ok()

    def dry_run(self) -> PlannedEffect:
        command = self._command()
        commands = (self._render(command),) if command is not None else ()
        return PlannedEffect(
            operation_key=self.definition.key,
            commands=commands,
            estimated_duration=self.definition.estimated_duration,
        )

    def execute(self) -> OperationResult:
        command = self._command()
        if command is None:
            return OperationResult.fail("no 'command' or 'script' given")
        return self._run(command)

    def rollback(self) -> OperationResult:
        command = self.context.params.get("rollback")
        if not command:
            return OperationResult.fail("no 'rollback' command declared")
        return self._run(command)

    def _run(self, command: Command) -> OperationResult:
        rendered = self._render(command)
        self.logger.debug(
            f"Executing: {rendered}",
            extra={"event": "shell.exec", "metadata": {"key": self.definition.key, "cwd": str(self.cwd)}},
        )

        kwargs: dict[str, Any] = {
            "cwd": self.cwd,
            "env": self._env(),
            "capture_output": True,
            "text": True,
            "check": False,
            "timeout": self.context.timeout,
        }
        try:
            if isinstance(command, str):
                result = subprocess.run(command, shell=True, **kwargs)
            else:
                result = subprocess.run([str(part) for part in command], **kwargs)
        except subprocess.TimeoutExpired:
            return OperationResult.fail(f"timed out after {self.context.timeout}s: {rendered}")
        except OSError as e:
            return OperationResult.fail(f"cannot run {rendered}: {e}")

        if result.stdout:
            self.logger.debug(result.stdout.rstrip())

        if result.returncode != 0:
            error_msg = f"command failed with exit code {result.returncode}"
            if result.stderr:
                error_msg += f": {result.stderr.strip()[:500]}"
            return OperationResult.fail(error_msg)

        return OperationResult.ok()
