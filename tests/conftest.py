from __future__ import annotations

import dataclasses
from dataclasses import dataclass

import pytest
from docker.errors import APIError, DockerException, NotFound

from fsr.compose import ComposeStack
from fsr.docker_ops import ContainerRuntime
from fsr.executor import CommandResult, SpawnedProcess, _argv
from fsr.git_ops import GitEngine
from fsr.settings import settings as base_settings
from fsr.vault import SecretResolver


# Every module that reads the settings singleton at call time.
SETTINGS_MODULES = (
    "fsr.cli",
    "fsr.compose",
    "fsr.db",
    "fsr.docker_ops",
    "fsr.executor",
    "fsr.git_ops",
    "fsr.heartbeat",
    "fsr.jobs",
    "fsr.locks",
    "fsr.processes",
    "fsr.reconciler",
    "fsr.tunnel",
    "fsr.vault",
)


@pytest.fixture(autouse=True)
def test_settings(tmp_path, monkeypatch):
    """Journal, locks and grace periods isolated per test."""
    s = dataclasses.replace(
        base_settings,
        db_path=str(tmp_path / "journal.db"),
        lock_dir=str(tmp_path / "locks"),
        process_grace_s=0,
        tunnel_grace_s=0,
        release_api_url="https://api.github.test",
    )
    for module in SETTINGS_MODULES:
        monkeypatch.setattr(f"{module}.settings", s)
    return s


# -- external commands ------------------------------------------------------


@dataclass
class Call:
    argv: tuple[str, ...]
    cwd: str | None
    line: str


def _line(cmd) -> str:
    return cmd if isinstance(cmd, str) else " ".join(cmd)


class FakeExecutor:
    """Records commands and answers them from prefix-matched canned results.

    Unmatched commands succeed with empty output. A response may be a callable
    taking (argv, cwd); it may return a CommandResult or None for success.
    Responses registered later win over earlier ones.
    """

    def __init__(self):
        self.responses: list[tuple[str, object]] = []
        self.calls: list[Call] = []
        self.spawned: list[tuple[str, str | None]] = []
        self.terminated: list[int] = []
        self.alive = True
        self._next_pid = 4000

    def on(self, prefix: str, stdout: str = "", returncode: int = 0, stderr: str = "", effect=None) -> None:
        if effect is not None:
            self.responses.insert(0, (prefix, effect))
        else:
            self.responses.insert(0, (prefix, dict(stdout=stdout, returncode=returncode, stderr=stderr)))

    def run(self, cmd, cwd=None, timeout_s=None, env=None, check=False) -> CommandResult:
        argv = _argv(cmd)
        line = _line(cmd)
        self.calls.append(Call(argv, cwd, line))
        result = CommandResult(argv, 0)
        for prefix, response in self.responses:
            if line.startswith(prefix):
                if callable(response):
                    result = response(argv, cwd) or CommandResult(argv, 0)
                else:
                    result = CommandResult(argv, **response)
                break
        if check:
            result.check()
        return result

    def spawn(self, cmd, log_path=None, cwd=None) -> SpawnedProcess:
        self.spawned.append((_line(cmd), log_path))
        self._next_pid += 1
        return SpawnedProcess(pid=self._next_pid)

    def is_alive(self, process: SpawnedProcess) -> bool:
        return self.alive

    def terminate(self, pid: int, sig: int = 15) -> None:
        self.terminated.append(pid)

    def ran(self, prefix: str) -> list[Call]:
        return [c for c in self.calls if c.line.startswith(prefix)]

    @property
    def lines(self) -> list[str]:
        return [c.line for c in self.calls]


# -- docker SDK -------------------------------------------------------------


class FakeContainer:
    def __init__(self, client: "FakeDockerClient", name: str, image: str, status: str = "running"):
        self.client = client
        self.name = name
        self.id = f"id-{name}"
        self.status = status
        self.attrs = {"Config": {"Image": image}, "Image": f"sha256:{image}"}
        self.fail_stop = False
        self.fail_remove = False

    def stop(self, timeout=None):
        if self.fail_stop:
            raise APIError("cannot stop container")
        self.status = "exited"
        self.client.log.append(("stop", self.name))

    def remove(self):
        if self.fail_remove:
            raise APIError("removal of container is already in progress")
        self.client.containers.by_name.pop(self.name, None)
        self.client.log.append(("remove", self.name))

    def restart(self, timeout=None):
        self.status = "running"
        self.client.log.append(("restart", self.name))


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client
        self.by_name: dict[str, FakeContainer] = {}
        self.run_calls: list[dict] = []
        self.fail_run = False

    def add(self, name: str, image: str, status: str = "running") -> FakeContainer:
        c = FakeContainer(self.client, name, image, status)
        self.by_name[name] = c
        return c

    def get(self, name: str) -> FakeContainer:
        if name in self.by_name:
            return self.by_name[name]
        for c in self.by_name.values():
            if c.id == name:
                return c
        raise NotFound(f"No such container: {name}")

    def run(self, image, command=None, name=None, **kwargs):
        if self.fail_run:
            raise APIError("port is already allocated")
        self.run_calls.append(dict(image=image, command=command, name=name, **kwargs))
        self.client.log.append(("run", name))
        return self.add(name, image)


class FakeImages:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client
        self.pulls: list[tuple[str, str]] = []
        self.builds: list[dict] = []
        self.failing: set[str] = set()

    def pull(self, repository, tag=None):
        if repository in self.failing:
            raise APIError(f"pull access denied for {repository}")
        self.pulls.append((repository, tag))
        self.client.log.append(("pull", f"{repository}:{tag}"))

    def build(self, path=None, tag=None, rm=False, **kwargs):
        self.builds.append(dict(path=path, tag=tag, rm=rm))
        self.client.log.append(("build", tag))
        return object(), []


class FakeNetworks:
    def __init__(self):
        self.names: set[str] = set()
        self.created: list[str] = []

    def get(self, name):
        if name not in self.names:
            raise NotFound(f"network {name} not found")
        return name

    def create(self, name, driver=None, **kwargs):
        self.names.add(name)
        self.created.append(name)
        return name


class FakeDockerClient:
    def __init__(self):
        self.log: list[tuple[str, str]] = []
        self.available = True
        self.containers = FakeContainers(self)
        self.images = FakeImages(self)
        self.networks = FakeNetworks()

    def ping(self):
        if not self.available:
            raise DockerException("Error while fetching server API version: connection refused")
        return True


# -- fixtures ---------------------------------------------------------------


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def docker_client():
    return FakeDockerClient()


@pytest.fixture
def secrets(executor):
    resolver = SecretResolver(executor, vault="Infra")
    resolver.ensure_authenticated()
    return resolver


@pytest.fixture
def runtime(secrets, docker_client):
    return ContainerRuntime(secrets, network="fsr", client=docker_client)


@pytest.fixture
def compose(executor):
    return ComposeStack(executor)


@pytest.fixture
def git_engine(executor, runtime, compose, secrets):
    return GitEngine(executor, runtime, compose, secrets)
