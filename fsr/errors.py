from __future__ import annotations

from typing import Sequence


class ReconcilerError(Exception):
    pass


class ConfigError(ReconcilerError):
    pass


class PassFatalError(ReconcilerError):
    """Aborts the whole reconciliation pass."""


class ServiceError(ReconcilerError):
    """Aborts the remaining stages of one service only."""


class AuthenticationError(PassFatalError):
    pass


class TunnelStartupError(PassFatalError):
    pass


class PrerequisiteError(PassFatalError):
    pass


class CommandExecutionError(ServiceError):
    """An external command exited non-zero, timed out or could not be started."""

    def __init__(self, argv: Sequence[str] | str, returncode: int | None, stderr: str = "", message: str | None = None):
        self.argv = argv if isinstance(argv, str) else tuple(argv)
        self.returncode = returncode
        self.stderr = stderr
        shown = argv if isinstance(argv, str) else " ".join(argv)
        detail = stderr.strip() or "no output"
        super().__init__(message or f"`{shown}` failed (exit {returncode}): {detail}")


class ImagePullError(ServiceError):
    pass


class RepositoryStateError(ServiceError):
    pass


class BuildError(ServiceError):
    pass


class DeployError(ServiceError):
    pass


class InstallError(ServiceError):
    pass


class LockHeldError(ServiceError):
    def __init__(self, path: str, held_since: str | None):
        self.path = path
        self.held_since = held_since
        super().__init__(f"Lock {path} is held since {held_since or 'unknown time'}")
