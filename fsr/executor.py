from __future__ import annotations

import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

from .errors import CommandExecutionError
from .settings import settings


Command = Sequence[str] | str


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandExecutionError(self.argv, self.returncode, self.stderr)
        return self


@dataclass
class SpawnedProcess:
    pid: int
    handle: subprocess.Popen | None = None


def _argv(cmd: Command) -> tuple[str, ...]:
    # Declared command strings may use pipes and &&, so they go through a shell.
    if isinstance(cmd, str):
        return ("/bin/sh", "-c", cmd)
    return tuple(cmd)


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class ProcessExecutor:
    """Single seam for every external command the reconciler issues.

    Every call is blocking with a timeout; nothing is retried.
    """

    def __init__(self, default_timeout_s: float | None = None):
        self.default_timeout_s = default_timeout_s or settings.command_timeout_s

    def run(
        self,
        cmd: Command,
        cwd: str | None = None,
        timeout_s: float | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = False,
    ) -> CommandResult:
        argv = _argv(cmd)
        timeout = timeout_s or self.default_timeout_s
        full_env = {**os.environ, **env} if env else None
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise CommandExecutionError(argv, 127, str(e)) from e

        try:
            out, err = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            proc.communicate()
            raise CommandExecutionError(argv, None, f"timed out after {timeout}s")

        result = CommandResult(argv=argv, returncode=proc.returncode, stdout=out or "", stderr=err or "")
        if check:
            result.check()
        return result

    def spawn(self, cmd: Command, log_path: str | None = None, cwd: str | None = None) -> SpawnedProcess:
        """Start a detached background process that outlives this one."""
        argv = _argv(cmd)
        log = open(log_path, "ab") if log_path else subprocess.DEVNULL
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        except FileNotFoundError as e:
            raise CommandExecutionError(argv, 127, str(e)) from e
        finally:
            if log_path:
                log.close()
        return SpawnedProcess(pid=proc.pid, handle=proc)

    def is_alive(self, process: SpawnedProcess) -> bool:
        if process.handle is not None:
            return process.handle.poll() is None
        try:
            os.kill(process.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self, pid: int, sig: int = signal.SIGTERM) -> None:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass
