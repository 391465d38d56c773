from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .errors import BuildError, CommandExecutionError, ImagePullError
from .models import ContainerDescriptor
from .runtime import Outcome
from .settings import settings
from .vault import SecretResolver


@dataclass(frozen=True)
class ImageDetails:
    full_reference: str
    internal_id: str


def normalize(image: str) -> str:
    """Docker assumes ':latest' when no tag is given; make that explicit."""
    if "@" in image:
        return image
    # A ':' before the last '/' belongs to a registry port, not a tag.
    if ":" in image.rsplit("/", 1)[-1]:
        return image
    return f"{image}:latest"


def split_reference(image: str) -> tuple[str, str]:
    ref = normalize(image)
    if "@" in ref:
        repo, digest = ref.split("@", 1)
        return repo, digest
    repo, tag = ref.rsplit(":", 1)
    return repo, tag


def parse_port(mapping: str) -> tuple[str, Any]:
    """Translate `[ip:]host:container[/proto]` into the SDK's ports entry."""
    spec, _, proto = mapping.partition("/")
    parts = spec.split(":")
    key = f"{parts[-1]}/{proto or 'tcp'}"
    if len(parts) == 1:
        return key, None
    if len(parts) == 2:
        return key, int(parts[0])
    if len(parts) == 3:
        return key, (parts[0], int(parts[1]))
    raise ValueError(f"Invalid port mapping '{mapping}'")


def _explain(e: Exception) -> str:
    return str(getattr(e, "explanation", None) or e)


class ContainerRuntime:
    """Lifecycle of single containers attached to the shared network."""

    def __init__(
        self,
        secrets: SecretResolver,
        network: str,
        client: docker.DockerClient | None = None,
        slow_client: docker.DockerClient | None = None,
    ):
        self.secrets = secrets
        self.network = network
        self._client = client
        self._slow_client = slow_client or client

    @property
    def client(self) -> docker.DockerClient:
        # Queries: short timeout.
        if self._client is None:
            self._client = docker.from_env(timeout=settings.query_timeout_s)
        return self._client

    @property
    def slow_client(self) -> docker.DockerClient:
        # Pulls, builds, runs: long timeout.
        if self._slow_client is None:
            self._slow_client = docker.from_env(timeout=settings.build_timeout_s)
        return self._slow_client

    def docker_available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    def ensure_network(self, name: str | None = None) -> bool:
        """Create the network if absent. Returns True when it was created."""
        name = name or self.network
        if not self.docker_available():
            log_event("ERROR", "Docker is not available; container services will fail this pass.", phase="prerequisites")
            return False
        try:
            self.client.networks.get(name)
            return False
        except NotFound:
            pass
        try:
            self.client.networks.create(name, driver="bridge")
        except DockerException as e:
            raise CommandExecutionError(("docker", "network", "create", name), None, _explain(e)) from e
        log_event("INFO", f"Created docker network '{name}'.", phase="prerequisites")
        return True

    def _get(self, name: str) -> Any:
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None
        except DockerException as e:
            raise CommandExecutionError(("docker", "inspect", name), None, _explain(e)) from e

    def container_id(self, name: str) -> str | None:
        c = self._get(name)
        return c.id if c is not None else None

    def is_running(self, name: str) -> bool:
        c = self._get(name)
        return c is not None and c.status == "running"

    def image_of(self, container_id: str) -> ImageDetails:
        c = self._get(container_id)
        if c is None:
            raise CommandExecutionError(("docker", "inspect", container_id), None, "no such container")
        return ImageDetails(full_reference=c.attrs["Config"]["Image"], internal_id=c.attrs["Image"])

    def start(self, d: ContainerDescriptor) -> str:
        for volume in d.volumes:
            host_path = volume.split(":", 1)[0]
            if host_path.startswith("/"):
                os.makedirs(host_path, exist_ok=True)

        env = self.secrets.resolve_all(d.environment)
        ports = dict(parse_port(p) for p in d.ports)

        log_event("INFO", f"Starting container from image {d.image}", service_name=d.name)
        try:
            container = self.slow_client.containers.run(
                d.image,
                command=d.command,
                detach=True,
                name=d.name,
                environment=env,
                network=self.network,
                volumes=list(d.volumes),
                ports=ports,
                restart_policy={"Name": "unless-stopped"},
            )
        except DockerException as e:
            raise CommandExecutionError(("docker", "run", "--name", d.name, d.image), None, _explain(e)) from e

        log_event("INFO", "Container started successfully.", service_name=d.name)
        return container.id

    def stop(self, name: str) -> bool:
        """Stop and remove as one unit. Returns False when there was nothing to stop."""
        c = self._get(name)
        if c is None:
            return False

        if c.status == "running":
            log_event("INFO", "Stopping container...", service_name=name)
            try:
                c.stop(timeout=settings.stop_timeout_s)
            except DockerException as e:
                raise CommandExecutionError(("docker", "stop", name), None, _explain(e)) from e

        log_event("INFO", "Removing container...", service_name=name)
        try:
            c.remove()
        except DockerException as e:
            raise CommandExecutionError(
                ("docker", "rm", name),
                None,
                _explain(e),
                message=f"Container {name} was stopped but could not be removed: {_explain(e)}",
            ) from e

        log_event("INFO", "Container stopped and removed.", service_name=name)
        return True

    def restart(self, name: str) -> bool:
        c = self._get(name)
        if c is None:
            log_event("WARN", "Container not found, cannot restart.", service_name=name)
            return False

        log_event("INFO", "Restarting container...", service_name=name)
        try:
            c.restart(timeout=settings.stop_timeout_s)
        except DockerException as e:
            raise CommandExecutionError(("docker", "restart", name), None, _explain(e)) from e
        log_event("INFO", "Container restarted.", service_name=name)
        return True

    def _pull(self, image: str) -> None:
        repo, tag = split_reference(image)
        try:
            self.slow_client.images.pull(repo, tag=tag)
        except DockerException as e:
            raise ImagePullError(f"Failed to pull image {image}: {_explain(e)}") from e

    def pull(self, image: str) -> bool:
        """Best effort: a failed pull is logged and reported, never raised."""
        log_event("INFO", f"Pulling image {image}...")
        try:
            self._pull(image)
        except ImagePullError as e:
            log_event("WARN", str(e))
            return False
        log_event("INFO", f"Pulled image {image}.")
        return True

    def build_image(self, path: str, tag: str) -> None:
        log_event("INFO", f"Building image {tag} from {path}...")
        try:
            self.slow_client.images.build(path=path, tag=tag, rm=True)
        except DockerException as e:
            raise BuildError(f"Image build for {tag} failed: {_explain(e)}") from e
        log_event("INFO", f"Image {tag} built.")

    def ensure_running(self, d: ContainerDescriptor) -> Outcome:
        desired = normalize(d.image)

        if not self.is_running(d.name):
            log_event("INFO", "Container is not running, starting it now...", service_name=d.name)
            if d.auto_update:
                self.pull(desired)
            # A stopped leftover would keep the name taken.
            self.stop(d.name)
            self.start(d)
            return Outcome.converged(d.name, f"started {desired}")

        cid = self.container_id(d.name)
        running = normalize(self.image_of(cid).full_reference)

        if running == desired:
            log_event("INFO", f"Already running {running}.", service_name=d.name)
            return Outcome.unchanged(d.name)

        if not d.auto_update:
            log_event("INFO", f"Running {running}, declared {desired}; auto_update is off, leaving it.", service_name=d.name)
            return Outcome.unchanged(d.name, "image differs, auto_update disabled")

        log_event("INFO", f"Running {running}, declared {desired}; updating.", service_name=d.name)
        if not self.pull(desired):
            log_event("WARN", "Could not fetch the declared image, keeping the existing container.", service_name=d.name)
            return Outcome.unchanged(d.name, "pull failed, kept running container")

        self.stop(d.name)
        self.start(d)
        return Outcome.converged(d.name, f"replaced {running} with {desired}")
