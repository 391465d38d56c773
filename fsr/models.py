from __future__ import annotations

import os
import re
from typing import Annotated, Any, Literal, Sequence, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


SERVICE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,62}$")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SecretReference(_Frozen):
    provider: Literal["vault"] = "vault"
    item: str = Field(..., min_length=1, description="Item name in the secret backend")
    field: str = Field(..., min_length=1, description="Field within the item")


EnvValue = Union[SecretReference, str]


def _literal(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _expand(path: str | None) -> str | None:
    return os.path.expanduser(path) if path else path


class ContainerSpec(_Frozen):
    image: str = Field(..., min_length=1, description="Image reference, repository[:tag]")
    ports: tuple[str, ...] = Field((), description="host:container, ip:host:container, optional /proto")
    volumes: tuple[str, ...] = Field((), description="host_path:container_path[:mode]")
    environment: dict[str, EnvValue] = Field(default_factory=dict)
    command: str | None = None

    @field_validator("environment", mode="before")
    @classmethod
    def _coerce_literals(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): _literal(val) for k, val in v.items()}
        return v

    @field_validator("volumes")
    @classmethod
    def _expand_volumes(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(os.path.expanduser(x) for x in v)


class ServiceBase(_Frozen):
    name: str = Field(..., description="Unique across the whole descriptor set")
    auto_update: bool = False
    depends_on: frozenset[str] = frozenset()

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not SERVICE_NAME_RE.match(v):
            raise ValueError(
                "Invalid service name. Use letters, numbers, '_', '.', '-', starting with a letter or number (max 63 chars)."
            )
        return v


class ContainerDescriptor(ServiceBase, ContainerSpec):
    kind: Literal["container"] = "container"


class PostDeployAction(_Frozen):
    type: Literal["restart_container"] = "restart_container"
    target: str = Field(..., min_length=1, description="Name of the container the action applies to")


class GitBuildDescriptor(ServiceBase):
    kind: Literal["git"] = "git"
    repo_url: str = Field(..., min_length=1)
    local_path: str = Field(..., min_length=1)
    branch: str | None = Field(None, description="Branch or tag pin")
    track_releases: bool = Field(False, description="Follow the latest published release tag")
    build_command: str | None = None
    install_command: str | None = Field(None, description="Runs once, right after the first clone")
    deploy_path: str | None = None
    build_in_scratch: bool = Field(False, description="Build in a throwaway copy so the checkout stays clean")
    container: ContainerSpec | None = None
    env_file: EnvValue | None = Field(None, description="Payload rendered to <checkout>/.env")
    compose_override: dict[str, Any] | None = None
    post_deploy: PostDeployAction | None = None
    force_update: bool = False

    @field_validator("local_path", "deploy_path")
    @classmethod
    def _expand_paths(cls, v: str | None) -> str | None:
        return _expand(v)

    @model_validator(mode="after")
    def _scratch_needs_build_and_deploy(self) -> "GitBuildDescriptor":
        if self.build_in_scratch and not (self.build_command and self.deploy_path):
            raise ValueError("build_in_scratch requires both build_command and deploy_path")
        return self

    def container_descriptor(self) -> ContainerDescriptor | None:
        if self.container is None:
            return None
        return ContainerDescriptor(name=self.name, **self.container.model_dump())


class ProcessDescriptor(ServiceBase):
    kind: Literal["process"] = "process"
    detection: str = Field(..., min_length=1, description="Shell command; non-empty output means running")
    start_command: str = Field(..., min_length=1)


class TunnelDescriptor(ServiceBase):
    kind: Literal["tunnel"] = "tunnel"
    tunnel_name: str = Field(..., min_length=1)
    config_path: str = Field(..., min_length=1)
    log_file: str = Field(..., min_length=1)
    binary: str = "cloudflared"

    @field_validator("config_path", "log_file")
    @classmethod
    def _expand_paths(cls, v: str) -> str:
        return os.path.expanduser(v)


ServiceDescriptor = Annotated[
    Union[ContainerDescriptor, GitBuildDescriptor, ProcessDescriptor, TunnelDescriptor],
    Field(discriminator="kind"),
]


class UptimeConfig(_Frozen):
    url: EnvValue


class JobDescriptor(_Frozen):
    name: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1, description="Shell command")
    min_interval_s: int = Field(0, ge=0, description="Skip when the last success is more recent")
    timeout_s: int = Field(3600, ge=1)
    enabled: bool = True


S = TypeVar("S", bound=ServiceBase)


def dependency_order(services: Sequence[S]) -> list[S]:
    """Stable topological order on depends_on, restricted to the given services.

    Dependencies outside the given set are ignored. Raises ValueError on a cycle.
    """
    names = {s.name for s in services}
    placed: set[str] = set()
    ordered: list[S] = []
    pending = list(services)
    while pending:
        for s in pending:
            if (s.depends_on & names) <= placed:
                ordered.append(s)
                placed.add(s.name)
                pending.remove(s)
                break
        else:
            cycle = ", ".join(s.name for s in pending)
            raise ValueError(f"Dependency cycle between: {cycle}")
    return ordered


class FleetConfig(_Frozen):
    network: str = Field("fsr", min_length=1, description="Shared container network")
    vault: str = Field("", description="Secret backend vault identifier")
    directories: tuple[str, ...] = ()
    services: tuple[ServiceDescriptor, ...] = ()
    uptime: UptimeConfig | None = None
    jobs: tuple[JobDescriptor, ...] = ()

    @field_validator("directories")
    @classmethod
    def _expand_dirs(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(os.path.expanduser(x) for x in v)

    @model_validator(mode="after")
    def _check_descriptor_set(self) -> "FleetConfig":
        seen: set[str] = set()
        for s in self.services:
            if s.name in seen:
                raise ValueError(f"Duplicate service name '{s.name}'")
            seen.add(s.name)
        for s in self.services:
            unknown = s.depends_on - seen
            if unknown:
                raise ValueError(f"Service '{s.name}' depends on unknown services: {sorted(unknown)}")
        if len(self._of_kind(TunnelDescriptor)) > 1:
            raise ValueError("At most one tunnel may be declared")
        dependency_order(list(self.services))
        job_names = [j.name for j in self.jobs]
        if len(job_names) != len(set(job_names)):
            raise ValueError("Duplicate job name")
        return self

    def _of_kind(self, cls: type[S]) -> list[S]:
        return [s for s in self.services if isinstance(s, cls)]

    @property
    def tunnel(self) -> TunnelDescriptor | None:
        found = self._of_kind(TunnelDescriptor)
        return found[0] if found else None

    @property
    def processes(self) -> list[ProcessDescriptor]:
        return dependency_order(self._of_kind(ProcessDescriptor))

    @property
    def containers(self) -> list[ContainerDescriptor]:
        return dependency_order(self._of_kind(ContainerDescriptor))

    @property
    def repositories(self) -> list[GitBuildDescriptor]:
        return dependency_order(self._of_kind(GitBuildDescriptor))

    def service(self, name: str) -> ServiceBase | None:
        for s in self.services:
            if s.name == name:
                return s
        return None

    def job(self, name: str) -> JobDescriptor | None:
        for j in self.jobs:
            if j.name == name:
                return j
        return None

    def host_directories(self) -> list[str]:
        """Directories that must exist before any service is reconciled."""
        dirs = list(self.directories)
        t = self.tunnel
        if t is not None:
            dirs.append(os.path.dirname(t.log_file))
        for r in self._of_kind(GitBuildDescriptor):
            dirs.append(os.path.dirname(r.local_path))
        return [d for d in dict.fromkeys(dirs) if d]
