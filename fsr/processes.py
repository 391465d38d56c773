from __future__ import annotations

import time
from typing import Callable

from .db import log_event
from .executor import ProcessExecutor
from .models import ProcessDescriptor
from .runtime import Outcome
from .settings import settings


class ProcessSupervisor:
    """Keeps bare OS processes running.

    The check is advisory: a start is not verified beyond the detection
    command on the next pass.
    """

    def __init__(self, executor: ProcessExecutor, grace_s: float | None = None, sleep: Callable[[float], None] = time.sleep):
        self.executor = executor
        self.grace_s = settings.process_grace_s if grace_s is None else grace_s
        self.sleep = sleep

    def is_running(self, d: ProcessDescriptor) -> bool:
        result = self.executor.run(d.detection, timeout_s=settings.query_timeout_s)
        return result.ok and bool(result.stdout.strip())

    def ensure_running(self, d: ProcessDescriptor) -> Outcome:
        if self.is_running(d):
            log_event("INFO", "Already running.", service_name=d.name)
            return Outcome.unchanged(d.name)

        log_event("INFO", f"Not running, starting it with: {d.start_command}", service_name=d.name)
        self.executor.spawn(d.start_command)
        self.sleep(self.grace_s)
        log_event("INFO", "Service started.", service_name=d.name)
        return Outcome.converged(d.name, "started")
