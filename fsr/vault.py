from __future__ import annotations

from typing import Mapping

from .db import log_event
from .errors import AuthenticationError, CommandExecutionError
from .executor import ProcessExecutor
from .models import EnvValue, SecretReference
from .settings import settings


SENSITIVE_MARKERS = ("password", "secret", "token")


def is_sensitive(field: str) -> bool:
    f = field.lower()
    return any(m in f for m in SENSITIVE_MARKERS)


class SecretResolver:
    """Resolves vault references through the `op` CLI.

    Nothing is cached: every pass resolves again.
    """

    def __init__(self, executor: ProcessExecutor, vault: str, binary: str = "op"):
        self.executor = executor
        self.vault = vault
        self.binary = binary
        self._authenticated = False

    def ensure_authenticated(self) -> None:
        result = self.executor.run([self.binary, "whoami"], timeout_s=settings.query_timeout_s)
        if not result.ok:
            self._authenticated = False
            raise AuthenticationError(
                f"Not signed in to the secret backend. Run `eval $({self.binary} signin)` and retry. ({result.stderr.strip()})"
            )
        self._authenticated = True
        log_event("DEBUG", "Secret backend session is valid", phase="prerequisites")

    def resolve(self, item: str, field: str) -> str:
        if not self._authenticated:
            raise AuthenticationError("Secret backend session not established; call ensure_authenticated() first")
        argv = [self.binary, "item", "get", item, "--vault", self.vault, "--fields", field]
        if is_sensitive(field):
            argv.append("--reveal")
        result = self.executor.run(argv, timeout_s=settings.query_timeout_s)
        if not result.ok:
            # The argv carries no secret material, only names.
            raise CommandExecutionError(argv, result.returncode, result.stderr,
                                        message=f"Could not resolve secret {item}/{field}: {result.stderr.strip()}")
        return result.stdout.strip()

    def resolve_value(self, value: EnvValue) -> str:
        if isinstance(value, SecretReference):
            return self.resolve(value.item, value.field)
        return value

    def resolve_all(self, values: Mapping[str, EnvValue]) -> dict[str, str]:
        return {key: self.resolve_value(v) for key, v in values.items()}
