from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict

from . import db
from .config import load_fleet
from .errors import ConfigError, PassFatalError, ReconcilerError
from .executor import ProcessExecutor
from .jobs import JobRunner
from .reconciler import Orchestrator
from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="fsr", description="Fleet State Reconciler")
    p.add_argument(
        "trigger",
        nargs="?",
        choices=["code_changed"],
        help="Pass 'code_changed' when the reconciler's own code was updated; the tunnel is handed over",
    )
    p.add_argument("--config", default=settings.config_path, help="Fleet declaration (YAML)")
    p.add_argument("--job", metavar="NAME", help="Run one auxiliary job instead of a reconciliation pass")
    p.add_argument("--events", type=int, metavar="N", help="Print the last N journal events and exit")
    p.add_argument("--passes", type=int, metavar="N", help="Print the last N passes with their outcomes and exit")

    args = p.parse_args(argv)

    if args.events is not None:
        _print(list(reversed(db.latest_events(args.events))))
        return 0

    if args.passes is not None:
        _print(
            [
                dict(asdict(row), outcomes=[asdict(o) for o in db.list_outcomes(row.id)])
                for row in db.list_passes(args.passes)
            ]
        )
        return 0

    try:
        fleet = load_fleet(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    executor = ProcessExecutor()

    if args.job:
        job = fleet.job(args.job)
        if job is None:
            print(f"Configuration error: no job named '{args.job}'", file=sys.stderr)
            return 2
        try:
            outcome = JobRunner(executor).run(job)
        except ReconcilerError as e:
            db.log_event("ERROR", f"Job failed: {type(e).__name__}: {e}", service_name=job.name, phase="job")
            return 1
        _print({"job": outcome.service, "status": outcome.status, "detail": outcome.detail})
        return 0

    orchestrator = Orchestrator(fleet, executor=executor)
    try:
        report = orchestrator.run_pass(topology_changed=args.trigger == "code_changed")
    except PassFatalError as e:
        print(f"Reconciliation aborted: {e}", file=sys.stderr)
        return 1

    _print(
        {
            "topology_changed": report.topology_changed,
            "started_at": report.started_at,
            "finished_at": report.finished_at,
            "outcomes": [{"service": o.service, "status": o.status, "detail": o.detail} for o in report.outcomes],
        }
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
