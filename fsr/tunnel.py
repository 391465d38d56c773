from __future__ import annotations

import os
import time
from typing import Callable

from .db import log_event
from .errors import TunnelStartupError
from .executor import ProcessExecutor, SpawnedProcess
from .models import TunnelDescriptor
from .runtime import Outcome
from .settings import settings


class TunnelManager:
    """Keeps the reverse tunnel up; the tunnel is the only way in from outside."""

    def __init__(self, executor: ProcessExecutor, grace_s: float | None = None, sleep: Callable[[float], None] = time.sleep):
        self.executor = executor
        self.grace_s = settings.tunnel_grace_s if grace_s is None else grace_s
        self.sleep = sleep

    def running_pids(self, d: TunnelDescriptor) -> list[int]:
        result = self.executor.run(["pgrep", "-f", f"{d.binary} tunnel"], timeout_s=settings.query_timeout_s)
        if not result.ok:
            return []
        return [int(p) for p in result.stdout.split() if p.strip().isdigit()]

    def start(self, d: TunnelDescriptor) -> SpawnedProcess:
        log_event("INFO", f"Starting tunnel {d.tunnel_name}...", service_name=d.name)
        log_dir = os.path.dirname(d.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        process = self.executor.spawn(
            [d.binary, "tunnel", "--config", d.config_path, "run", d.tunnel_name],
            log_path=d.log_file,
        )

        log_event("INFO", f"Waiting {self.grace_s:g}s for the tunnel to establish connections...", service_name=d.name)
        self.sleep(self.grace_s)

        if not self.executor.is_alive(process):
            log_event("ERROR", f"Tunnel failed to start. Check the log at {d.log_file}.", service_name=d.name)
            raise TunnelStartupError(f"Tunnel {d.tunnel_name} did not stay up; see {d.log_file}")

        log_event("INFO", f"Tunnel started (pid {process.pid}).", service_name=d.name)
        return process

    def handover(self, d: TunnelDescriptor, old_pids: list[int]) -> SpawnedProcess:
        """Start a replacement first; signal the old processes only once it is alive."""
        process = self.start(d)
        for pid in old_pids:
            if pid == process.pid:
                continue
            log_event("INFO", f"Stopping previous tunnel process {pid}.", service_name=d.name)
            self.executor.terminate(pid)
        return process

    def ensure_running(self, d: TunnelDescriptor, topology_changed: bool = False) -> Outcome:
        pids = self.running_pids(d)
        if not pids:
            log_event("INFO", "Tunnel not running, starting a new one...", service_name=d.name)
            self.start(d)
            return Outcome.converged(d.name, "started")

        if not topology_changed:
            log_event("INFO", "Tunnel already running. No action needed.", service_name=d.name)
            return Outcome.unchanged(d.name)

        log_event("INFO", f"Code changed, replacing tunnel process(es) {pids}...", service_name=d.name)
        self.handover(d, pids)
        return Outcome.converged(d.name, "handed over to a new process")
