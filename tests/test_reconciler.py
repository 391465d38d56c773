import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from fsr import db
from fsr.errors import AuthenticationError, PrerequisiteError, TunnelStartupError
from fsr.locks import format_timestamp, lock_path
from fsr.models import FleetConfig
from fsr.reconciler import Orchestrator
from fsr.runtime import CONVERGED, FAILED, UNCHANGED


def _clone_into_dest(argv, cwd):
    dest = Path(argv[-1])
    (dest / ".git").mkdir(parents=True)
    (dest / "index.html").write_text("v1")


@pytest.fixture
def fleet(tmp_path):
    return FleetConfig.model_validate(
        {
            "vault": "Infra",
            "directories": [str(tmp_path / "data")],
            "uptime": {"url": "https://heartbeat.test/abc"},
            "services": [
                # Declared out of phase order on purpose.
                {"kind": "git", "name": "site", "repo_url": "https://github.com/acme/site.git",
                 "local_path": str(tmp_path / "apps" / "site"), "build_command": "npm run build"},
                {"kind": "container", "name": "web", "image": "nginx", "depends_on": ["db"]},
                {"kind": "container", "name": "db", "image": "postgres:16"},
                {"kind": "process", "name": "worker", "detection": "pgrep -f worker.js", "start_command": "node worker.js"},
                {"kind": "tunnel", "name": "edge", "tunnel_name": "home", "config_path": "/etc/cf.yml",
                 "log_file": str(tmp_path / "logs" / "tunnel.log")},
            ],
        }
    )


@pytest.fixture
def heartbeats():
    return []


@pytest.fixture
def orchestrator(fleet, executor, secrets, runtime, compose, git_engine, heartbeats):
    def heartbeat(url):
        heartbeats.append(url)
        return True, "HTTP 200", 1.0

    executor.on("git clone", effect=_clone_into_dest)
    executor.on("pgrep", returncode=1)
    return Orchestrator(fleet, executor=executor, secrets=secrets, runtime=runtime, compose=compose,
                        git=git_engine, heartbeat=heartbeat)


def test_first_pass_converges_in_phase_order(orchestrator, executor, docker_client, heartbeats, tmp_path):
    report = orchestrator.run_pass()

    assert [o.service for o in report.outcomes] == ["edge", "worker", "db", "web", "site"]
    assert all(o.status == CONVERGED for o in report.outcomes)
    assert (tmp_path / "data").is_dir()
    assert (tmp_path / "logs").is_dir()
    assert docker_client.networks.created == ["fsr"]
    assert len(executor.ran("op whoami")) == 2
    assert heartbeats == ["https://heartbeat.test/abc"]

    p = db.list_passes()[0]
    assert p.status == "completed"
    assert len(db.list_outcomes(p.id)) == 5


def test_second_pass_changes_nothing(orchestrator, executor, docker_client):
    orchestrator.run_pass()
    executor.on("pgrep -f cloudflared tunnel", stdout="4001\n")
    executor.on("pgrep -f worker.js", stdout="4002\n")
    docker_client.log.clear()
    spawned = len(executor.spawned)

    report = orchestrator.run_pass()

    assert [o.status for o in report.outcomes] == [UNCHANGED] * 5
    assert docker_client.log == []
    assert len(executor.spawned) == spawned
    assert len(executor.ran("npm run build")) == 1


def test_one_failing_service_does_not_stop_the_pass(orchestrator, executor, docker_client):
    docker_client.containers.fail_run = True

    report = orchestrator.run_pass()

    statuses = {o.service: o.status for o in report.outcomes}
    assert statuses == {"edge": CONVERGED, "worker": CONVERGED, "db": FAILED, "web": FAILED, "site": CONVERGED}
    assert report.failed[0].detail.startswith("CommandExecutionError")
    assert db.list_passes()[0].status == "completed"


def test_missing_secret_session_aborts_the_pass(orchestrator, executor, docker_client):
    executor.on("op whoami", returncode=1, stderr="not signed in")

    with pytest.raises(AuthenticationError):
        orchestrator.run_pass()

    assert executor.spawned == []
    assert docker_client.log == []
    assert db.list_passes()[0].status == "aborted"


def test_uncreatable_directory_aborts_the_pass(orchestrator, executor, tmp_path):
    (tmp_path / "data").write_text("a file where a directory belongs")

    with pytest.raises(PrerequisiteError) as info:
        orchestrator.run_pass()

    assert str(tmp_path / "data") in str(info.value)
    assert executor.spawned == []
    assert db.list_passes()[0].status == "aborted"


def test_unexpected_error_still_closes_the_pass(orchestrator, monkeypatch):
    def boom():
        raise RuntimeError("vault CLI vanished")

    monkeypatch.setattr(orchestrator.secrets, "ensure_authenticated", boom)

    with pytest.raises(RuntimeError):
        orchestrator.run_pass()

    assert db.list_passes()[0].status == "aborted"
    assert any("vault CLI vanished" in e["message"] for e in db.latest_events(50))


def test_tunnel_failure_aborts_the_pass(orchestrator, executor):
    executor.alive = False

    with pytest.raises(TunnelStartupError):
        orchestrator.run_pass()

    assert len(executor.spawned) == 1
    assert not executor.ran("pgrep -f worker.js")


def test_code_changed_hands_the_tunnel_over(orchestrator, executor):
    executor.on("pgrep -f cloudflared tunnel", stdout="900\n")

    report = orchestrator.run_pass(topology_changed=True)

    assert report.outcomes[0].status == CONVERGED
    assert executor.terminated == [900]
    assert db.list_passes()[0].topology_changed == 1


def test_network_failure_is_logged_and_pass_goes_on(orchestrator, docker_client, monkeypatch):
    from docker.errors import APIError

    def refuse(name, driver=None, **kwargs):
        raise APIError("network create refused")

    monkeypatch.setattr(docker_client.networks, "create", refuse)

    report = orchestrator.run_pass()

    assert len(report.outcomes) == 5
    errors = [e for e in db.latest_events(200) if e["level"] == "ERROR"]
    assert any("Could not ensure network" in e["message"] for e in errors)


def test_failed_heartbeat_does_not_fail_the_pass(fleet, executor, secrets, runtime, compose, git_engine):
    def heartbeat(url):
        raise RuntimeError("dns failure")

    executor.on("git clone", effect=_clone_into_dest)
    executor.on("pgrep", returncode=1)
    orch = Orchestrator(fleet, executor=executor, secrets=secrets, runtime=runtime, compose=compose,
                        git=git_engine, heartbeat=heartbeat)

    report = orch.run_pass()

    assert not report.failed
    assert report.finished_at is not None


def test_held_checkout_lock_fails_only_that_service(orchestrator, executor, test_settings):
    os.makedirs(test_settings.lock_dir, exist_ok=True)
    with open(lock_path("checkout-site"), "w") as f:
        f.write(format_timestamp(datetime.now(timezone.utc)))

    report = orchestrator.run_pass()

    statuses = {o.service: o.status for o in report.outcomes}
    assert statuses["site"] == FAILED
    assert "LockHeldError" in report.failed[0].detail
    assert not executor.ran("git clone")
    assert statuses["web"] == CONVERGED


def test_checkout_locks_can_be_disabled(orchestrator, executor, test_settings, monkeypatch):
    import dataclasses

    monkeypatch.setattr("fsr.reconciler.settings", dataclasses.replace(test_settings, checkout_locks=False))
    os.makedirs(test_settings.lock_dir, exist_ok=True)
    with open(lock_path("checkout-site"), "w") as f:
        f.write(format_timestamp(datetime.now(timezone.utc)))

    report = orchestrator.run_pass()

    assert not report.failed
    assert executor.ran("git clone")
