from __future__ import annotations

from .db import log_event
from .executor import ProcessExecutor
from .settings import settings


OVERRIDE_FILENAME = "compose.override.yml"


class ComposeStack:
    """`docker compose` operations run from inside a checkout."""

    def __init__(self, executor: ProcessExecutor, binary: str = "docker"):
        self.executor = executor
        self.binary = binary

    def is_running(self, path: str) -> bool:
        result = self.executor.run([self.binary, "compose", "ps", "-q"], cwd=path, timeout_s=settings.query_timeout_s)
        return result.ok and bool(result.stdout.strip())

    def up(self, path: str, service_name: str | None = None) -> None:
        log_event("INFO", f"Bringing compose stack up in {path}...", service_name=service_name)
        self.executor.run(
            [self.binary, "compose", "up", "--wait", "--detach"],
            cwd=path,
            timeout_s=settings.build_timeout_s,
            check=True,
        )
        log_event("INFO", "Compose stack is up.", service_name=service_name)

    def down(self, path: str, service_name: str | None = None) -> None:
        log_event("INFO", f"Bringing compose stack down in {path}...", service_name=service_name)
        self.executor.run([self.binary, "compose", "down"], cwd=path, timeout_s=settings.command_timeout_s, check=True)
