from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Callable

from .db import log_event
from .executor import ProcessExecutor
from .locks import AdvisoryLock, last_success, lock_path, mark_success
from .models import JobDescriptor
from .runtime import Outcome
from .settings import settings


def success_path(name: str) -> str:
    return os.path.join(settings.lock_dir, f"{name}.last_success")


class JobRunner:
    """Runs long auxiliary jobs (exports, backups) one at a time.

    Each job holds its own advisory lock for the whole run and is skipped
    while its last success is younger than `min_interval_s`.
    """

    def __init__(self, executor: ProcessExecutor, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.executor = executor
        self.clock = clock

    def run(self, job: JobDescriptor) -> Outcome:
        if not job.enabled:
            log_event("INFO", "Job disabled, skipping.", service_name=job.name, phase="job")
            return Outcome.unchanged(job.name, "disabled")

        with AdvisoryLock(lock_path(job.name), clock=self.clock):
            last = last_success(success_path(job.name))
            if last is not None and (self.clock() - last).total_seconds() < job.min_interval_s:
                log_event("INFO", f"Skipping; last success at {last.isoformat()}.", service_name=job.name, phase="job")
                return Outcome.unchanged(job.name, "ran recently")

            log_event("INFO", f"Running: {job.command}", service_name=job.name, phase="job")
            started = self.clock()
            self.executor.run(job.command, timeout_s=job.timeout_s, check=True)
            mark_success(success_path(job.name), clock=self.clock)
            elapsed = (self.clock() - started).total_seconds()
            log_event("INFO", f"Completed in {elapsed:.2f}s.", service_name=job.name, phase="job")
            return Outcome.converged(job.name, "completed")
