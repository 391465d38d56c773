from __future__ import annotations

import os
from typing import Callable, TypeVar

from . import db
from .compose import ComposeStack
from .docker_ops import ContainerRuntime
from .errors import PassFatalError, PrerequisiteError, ServiceError, TunnelStartupError
from .executor import ProcessExecutor
from .git_ops import GitEngine
from .heartbeat import report_uptime
from .locks import AdvisoryLock, lock_path
from .models import FleetConfig, GitBuildDescriptor, ServiceBase
from .processes import ProcessSupervisor
from .runtime import Outcome, PassReport, utc_now
from .settings import settings
from .tunnel import TunnelManager
from .vault import SecretResolver


D = TypeVar("D", bound=ServiceBase)


class Orchestrator:
    """Runs one reconciliation pass over the declared fleet.

    Phases run in a fixed order: prerequisites, tunnel, processes, containers,
    git services, uptime heartbeat. A failure in one service is recorded and
    the pass moves on; only PassFatalError stops it.
    """

    def __init__(
        self,
        fleet: FleetConfig,
        executor: ProcessExecutor | None = None,
        secrets: SecretResolver | None = None,
        runtime: ContainerRuntime | None = None,
        compose: ComposeStack | None = None,
        git: GitEngine | None = None,
        processes: ProcessSupervisor | None = None,
        tunnel: TunnelManager | None = None,
        heartbeat: Callable[[str], tuple[bool, str, float | None]] = report_uptime,
    ):
        self.fleet = fleet
        self.executor = executor or ProcessExecutor()
        self.secrets = secrets or SecretResolver(self.executor, fleet.vault)
        self.runtime = runtime or ContainerRuntime(self.secrets, fleet.network)
        self.compose = compose or ComposeStack(self.executor)
        self.git = git or GitEngine(self.executor, self.runtime, self.compose, self.secrets)
        self.processes = processes or ProcessSupervisor(self.executor)
        self.tunnel = tunnel or TunnelManager(self.executor)
        self.heartbeat = heartbeat

    def run_pass(self, topology_changed: bool = False) -> PassReport:
        report = PassReport(topology_changed=topology_changed)
        pass_id = db.begin_pass(report)
        db.log_event("INFO", f"Reconciliation pass started (topology_changed={topology_changed}).", phase="pass")

        try:
            self.ensure_prerequisites()
            self.reconcile_tunnel(pass_id, report, topology_changed)
            self._phase(pass_id, report, "processes", self.fleet.processes, self.processes.ensure_running)
            self._phase(pass_id, report, "containers", self.fleet.containers, self.runtime.ensure_running)
            self._phase(pass_id, report, "repositories", self.fleet.repositories, self.reconcile_repository)
        except PassFatalError as e:
            db.log_event("ERROR", f"Pass aborted: {type(e).__name__}: {e}", phase="pass")
            db.finish_pass(pass_id, "aborted")
            raise
        except Exception as e:
            db.log_event("ERROR", f"Pass aborted by unexpected error: {type(e).__name__}: {e}", phase="pass")
            db.finish_pass(pass_id, "aborted")
            raise

        self.report_uptime()

        report.finished_at = utc_now()
        db.finish_pass(pass_id, "completed")
        db.log_event("INFO", f"Pass completed: {report.summary()}.", phase="pass")
        return report

    def ensure_prerequisites(self) -> None:
        for directory in self.fleet.host_directories():
            if not os.path.isdir(directory):
                db.log_event("INFO", f"Creating directory: {directory}", phase="prerequisites")
                try:
                    os.makedirs(directory, exist_ok=True)
                except OSError as e:
                    raise PrerequisiteError(f"Could not create directory {directory}: {e}") from e

        self.secrets.ensure_authenticated()

        try:
            self.runtime.ensure_network()
        except ServiceError as e:
            # Container services will each fail on their own; the pass goes on.
            db.log_event("ERROR", f"Could not ensure network '{self.fleet.network}': {e}", phase="prerequisites")

    def reconcile_tunnel(self, pass_id: int, report: PassReport, topology_changed: bool) -> None:
        d = self.fleet.tunnel
        if d is None:
            db.log_event("INFO", "No tunnel declared.", phase="tunnel")
            return
        try:
            outcome = self.tunnel.ensure_running(d, topology_changed)
        except ServiceError as e:
            raise TunnelStartupError(f"Tunnel {d.name} could not be started: {e}") from e
        self._record(pass_id, report, outcome)

    def reconcile_repository(self, d: GitBuildDescriptor) -> Outcome:
        if not settings.checkout_locks:
            return self.git.reconcile(d)
        with AdvisoryLock(lock_path(f"checkout-{d.name}")):
            return self.git.reconcile(d)

    def _phase(self, pass_id: int, report: PassReport, phase: str, descriptors: list[D], fn: Callable[[D], Outcome]) -> None:
        if not descriptors:
            return
        db.log_event("INFO", f"Reconciling {len(descriptors)} {phase}...", phase=phase)
        for d in descriptors:
            try:
                outcome = fn(d)
            except PassFatalError:
                raise
            except Exception as e:
                db.log_event("ERROR", f"Reconciliation failed: {type(e).__name__}: {e}", service_name=d.name, phase=phase)
                outcome = Outcome.failed(d.name, e)
            self._record(pass_id, report, outcome)

    def _record(self, pass_id: int, report: PassReport, outcome: Outcome) -> None:
        report.add(outcome)
        db.record_outcome(pass_id, outcome)

    def report_uptime(self) -> None:
        """Best effort; whatever goes wrong here never reaches the pass result."""
        if self.fleet.uptime is None:
            return
        db.log_event("INFO", "Reporting to uptime monitor...", phase="uptime")
        try:
            url = self.secrets.resolve_value(self.fleet.uptime.url)
            ok, msg, latency_ms = self.heartbeat(url)
        except Exception as e:
            db.log_event("WARN", f"Uptime report skipped: {type(e).__name__}: {e}", phase="uptime")
            return
        level = "INFO" if ok else "WARN"
        db.log_event(level, f"Uptime monitor answered: {msg} ({latency_ms} ms)", phase="uptime")
