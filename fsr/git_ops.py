from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from typing import Callable

import httpx
import yaml

from .compose import OVERRIDE_FILENAME, ComposeStack
from .db import log_event
from .docker_ops import ContainerRuntime
from .errors import BuildError, CommandExecutionError, DeployError, InstallError, RepositoryStateError
from .executor import CommandResult, ProcessExecutor
from .models import GitBuildDescriptor, PostDeployAction
from .runtime import Outcome
from .settings import settings
from .vault import SecretResolver


GITHUB_REPO_RE = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")

# Commit of the last completed deploy, kept inside the git dir.
DEPLOYED_MARKER = "fsr-deployed"


@dataclass(frozen=True)
class RepositoryState:
    path: str
    exists: bool
    valid: bool
    current_ref: str | None = None


def parse_github_repo(repo_url: str) -> tuple[str, str] | None:
    """Extract (owner, repo) from https or ssh GitHub URLs."""
    m = GITHUB_REPO_RE.search(repo_url.strip())
    if not m:
        return None
    return m.group(1), m.group(2)


def strip_quotes(content: str) -> str:
    content = content.strip()
    if len(content) >= 2 and content[0] == content[-1] and content[0] in {'"', "'"}:
        return content[1:-1]
    return content


def write_if_changed(path: str, content: str) -> bool:
    if os.path.isfile(path):
        with open(path, encoding="utf-8") as f:
            if f.read() == content:
                return False
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return True


def replace_tree_contents(source: str, dest: str) -> None:
    """Clear dest, then copy everything from source except git metadata."""
    os.makedirs(dest, exist_ok=True)
    for entry in os.scandir(dest):
        if entry.is_dir(follow_symlinks=False):
            shutil.rmtree(entry.path)
        else:
            os.unlink(entry.path)
    shutil.copytree(source, dest, dirs_exist_ok=True, symlinks=True, ignore=shutil.ignore_patterns(".git"))


PostDeployHandler = Callable[["GitEngine", PostDeployAction], None]


def _restart_container(engine: "GitEngine", action: PostDeployAction) -> None:
    engine.runtime.restart(action.target)


POST_DEPLOY_ACTIONS: dict[str, PostDeployHandler] = {
    "restart_container": _restart_container,
}


class GitEngine:
    """Clone/update, build, deploy and run services that live in git repositories.

    Per service: NotCloned -> Cloned -> UpToDate|Updated -> [Built] -> [Deployed]
    -> [container or compose stack running]. A failing stage raises and aborts
    only the remaining stages of that service.
    """

    def __init__(
        self,
        executor: ProcessExecutor,
        runtime: ContainerRuntime,
        compose: ComposeStack,
        secrets: SecretResolver,
        http: httpx.Client | None = None,
    ):
        self.executor = executor
        self.runtime = runtime
        self.compose = compose
        self.secrets = secrets
        self.http = http

    # -- git primitives -----------------------------------------------------

    def _git(self, path: str, *args: str, timeout_s: float | None = None, check: bool = True) -> CommandResult:
        return self.executor.run(
            ["git", *args],
            cwd=path,
            timeout_s=timeout_s or settings.command_timeout_s,
            check=check,
        )

    def _query(self, path: str, *args: str) -> str | None:
        r = self._git(path, *args, timeout_s=settings.query_timeout_s, check=False)
        out = r.stdout.strip()
        return out if r.ok and out else None

    def current_ref(self, path: str) -> str | None:
        return (
            self._query(path, "symbolic-ref", "--short", "-q", "HEAD")
            or self._query(path, "describe", "--tags", "--exact-match", "HEAD")
            or self._query(path, "rev-parse", "--short", "HEAD")
        )

    def head_commit(self, path: str) -> str | None:
        return self._query(path, "rev-parse", "HEAD")

    def tag_commit(self, path: str, tag: str) -> str | None:
        return self._query(path, "rev-parse", f"{tag}^{{commit}}")

    def on_tag(self, path: str, tag: str) -> bool:
        """True when HEAD is the commit tag points at, whatever other tags share it."""
        head = self.head_commit(path)
        return head is not None and head == self.tag_commit(path, tag)

    def inspect(self, path: str) -> RepositoryState:
        # An empty directory is as good as no directory: clone into it.
        if not os.path.isdir(path) or not os.listdir(path):
            return RepositoryState(path, exists=False, valid=False)
        if not os.path.exists(os.path.join(path, ".git")):
            return RepositoryState(path, exists=True, valid=False)
        if not self._git(path, "rev-parse", "--git-dir", timeout_s=settings.query_timeout_s, check=False).ok:
            return RepositoryState(path, exists=True, valid=False)
        return RepositoryState(path, exists=True, valid=True, current_ref=self.current_ref(path))

    def _follows_releases(self, d: GitBuildDescriptor) -> bool:
        # An explicit pin wins over release tracking.
        return d.track_releases and not d.branch

    def clone(self, d: GitBuildDescriptor) -> None:
        log_event("INFO", f"Cloning {d.repo_url} to {d.local_path}...", service_name=d.name)
        os.makedirs(os.path.dirname(os.path.abspath(d.local_path)), exist_ok=True)
        argv = ["git", "clone"]
        if self._follows_releases(d):
            argv.append("--no-checkout")
        elif d.branch:
            argv += ["--branch", d.branch]
        argv += [d.repo_url, d.local_path]
        self.executor.run(argv, timeout_s=settings.build_timeout_s, check=True)
        log_event("INFO", "Repository cloned.", service_name=d.name)

    def fetch(self, path: str) -> None:
        self._git(path, "fetch", "--tags")

    def remote_ref(self, path: str, pin: str | None) -> str:
        """Ref to compare HEAD against: origin/<branch>, or the tag itself."""
        pin = pin or settings.default_branch
        if self._git(path, "rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{pin}",
                     timeout_s=settings.query_timeout_s, check=False).ok:
            return f"origin/{pin}"
        if self._git(path, "rev-parse", "--verify", "--quiet", f"refs/tags/{pin}",
                     timeout_s=settings.query_timeout_s, check=False).ok:
            return f"refs/tags/{pin}"
        return f"origin/{pin}"

    def ahead_count(self, path: str, remote_ref: str) -> int:
        r = self._git(path, "rev-list", f"HEAD..{remote_ref}", "--count", timeout_s=settings.query_timeout_s)
        try:
            return int(r.stdout.strip() or 0)
        except ValueError as e:
            raise CommandExecutionError(r.argv, r.returncode, f"unexpected rev-list output: {r.stdout!r}") from e

    def has_changes(self, path: str, branch: str | None = None) -> bool:
        if not os.path.isdir(path):
            return True
        self.fetch(path)
        return self.ahead_count(path, self.remote_ref(path, branch)) > 0

    def update(self, d: GitBuildDescriptor) -> None:
        path = d.local_path
        log_event("INFO", "Fetching latest changes...", service_name=d.name)
        self.fetch(path)
        if d.branch:
            log_event("INFO", f"Checking out {d.branch}...", service_name=d.name)
            self._git(path, "checkout", d.branch)
        if self.remote_ref(path, d.branch).startswith("refs/tags/"):
            # A tag pin has nothing to pull.
            return
        log_event("INFO", "Pulling latest changes...", service_name=d.name)
        self._git(path, "pull", "--ff-only")
        log_event("INFO", "Repository updated.", service_name=d.name)

    # -- release tags -------------------------------------------------------

    def _http_get(self, url: str) -> httpx.Response:
        headers = {"Accept": "application/vnd.github+json"}
        if self.http is not None:
            return self.http.get(url, headers=headers)
        with httpx.Client(timeout=settings.http_timeout_s, follow_redirects=True) as client:
            return client.get(url, headers=headers)

    def latest_release_tag(self, repo_url: str) -> str | None:
        """Latest published release tag, or None when it cannot be determined."""
        parsed = parse_github_repo(repo_url)
        if parsed is None:
            log_event("WARN", f"Cannot derive owner/repo from {repo_url}; no release pin available.")
            return None
        owner, repo = parsed
        url = f"{settings.release_api_url.rstrip('/')}/repos/{owner}/{repo}/releases/latest"
        try:
            resp = self._http_get(url)
            resp.raise_for_status()
            tag = resp.json()["tag_name"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log_event("WARN", f"Could not fetch latest release tag for {repo_url}: {type(e).__name__}: {e}")
            return None
        if not isinstance(tag, str) or not tag:
            return None
        log_event("INFO", f"Latest release tag for {owner}/{repo}: {tag}")
        return tag

    def checkout_tag(self, path: str, tag: str | None, force: bool = False) -> None:
        if not tag:
            return
        if not force and self.on_tag(path, tag):
            log_event("INFO", f"Already on tag {tag}.")
            return
        args = ["checkout", "--force", tag] if force else ["checkout", tag]
        r = self._git(path, *args, check=False)
        if r.ok or f"Already on '{tag}'" in r.stderr or "is already checked out at" in r.stderr:
            log_event("INFO", f"Checked out tag {tag}.")
            return
        raise CommandExecutionError(r.argv, r.returncode, r.stderr)

    def _follow_latest_release(self, d: GitBuildDescriptor, just_cloned: bool) -> bool:
        tag = self.latest_release_tag(d.repo_url)
        if tag is None:
            if just_cloned:
                # Cloned with --no-checkout; materialise the default branch instead.
                self._git(d.local_path, "reset", "--hard", "HEAD")
            return False
        if not just_cloned and self.on_tag(d.local_path, tag):
            log_event("INFO", f"Already on latest release {tag}.", service_name=d.name)
            return False
        self.checkout_tag(d.local_path, tag, force=just_cloned)
        return True

    # -- stages -------------------------------------------------------------

    def run_install(self, d: GitBuildDescriptor) -> None:
        log_event("INFO", f"Running install command: {d.install_command}", service_name=d.name)
        try:
            self.executor.run(d.install_command, cwd=d.local_path, timeout_s=settings.build_timeout_s, check=True)
        except CommandExecutionError as e:
            raise InstallError(
                f"Install command failed: {e.stderr.strip() or e}. Manual intervention may be required in {d.local_path}."
            ) from e
        log_event("INFO", "Install command completed.", service_name=d.name)

    def render_env_file(self, d: GitBuildDescriptor) -> bool:
        content = strip_quotes(self.secrets.resolve_value(d.env_file))
        env_path = os.path.join(d.local_path, ".env")
        changed = write_if_changed(env_path, content)
        if changed:
            log_event("INFO", f"Environment configuration saved to {env_path}.", service_name=d.name)
        return changed

    def render_compose_override(self, d: GitBuildDescriptor) -> bool:
        content = yaml.safe_dump(d.compose_override, sort_keys=False, default_flow_style=False)
        override_path = os.path.join(d.local_path, OVERRIDE_FILENAME)
        changed = write_if_changed(override_path, content)
        if changed:
            log_event("INFO", f"Compose override saved to {override_path}.", service_name=d.name)
        return changed

    def build(self, path: str, command: str, service_name: str | None = None) -> None:
        log_event("INFO", f"Running build command in {path}: {command}", service_name=service_name)
        try:
            self.executor.run(command, cwd=path, timeout_s=settings.build_timeout_s, check=True)
        except CommandExecutionError as e:
            raise BuildError(f"Build failed in {path}: {e.stderr.strip() or e}") from e
        log_event("INFO", "Build completed.", service_name=service_name)

    def deploy_files(self, source: str, dest: str, service_name: str | None = None) -> None:
        log_event("INFO", f"Deploying files from {source} to {dest}...", service_name=service_name)
        try:
            replace_tree_contents(source, dest)
        except OSError as e:
            raise DeployError(f"Deploy to {dest} failed: {e}") from e
        log_event("INFO", "Files deployed.", service_name=service_name)

    def deploy_with_scratch(self, d: GitBuildDescriptor) -> None:
        """Build in a throwaway copy so the persistent checkout never holds build artifacts."""
        scratch = f"{d.local_path.rstrip(os.sep)}-build"
        log_event("INFO", f"Building in scratch copy {scratch}...", service_name=d.name)
        if os.path.exists(scratch):
            shutil.rmtree(scratch)
        try:
            try:
                shutil.copytree(d.local_path, scratch, symlinks=True, ignore=shutil.ignore_patterns(".git"))
            except OSError as e:
                raise DeployError(f"Could not prepare scratch copy {scratch}: {e}") from e
            self.build(scratch, d.build_command, d.name)
            self.deploy_files(scratch, d.deploy_path, d.name)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def build_and_deploy(self, d: GitBuildDescriptor) -> None:
        if d.build_in_scratch:
            self.deploy_with_scratch(d)
        else:
            if d.build_command:
                self.build(d.local_path, d.build_command, d.name)
            if d.deploy_path:
                self.deploy_files(d.local_path, d.deploy_path, d.name)
        if d.container is not None:
            self.runtime.build_image(d.local_path, d.container.image)

    def ensure_running(self, d: GitBuildDescriptor, rebuilt: bool, stack_dirty: bool) -> bool:
        """Bring the service's container or compose stack up. Returns True if anything was (re)started."""
        cd = d.container_descriptor()
        if cd is not None:
            if not rebuilt and self.runtime.is_running(cd.name):
                log_event("INFO", "Container is already running and up to date.", service_name=d.name)
                return False
            self.runtime.stop(cd.name)
            self.runtime.start(cd)
            return True

        if d.compose_override is not None:
            if rebuilt:
                self.compose.down(d.local_path, d.name)
                self.compose.up(d.local_path, d.name)
                return True
            if stack_dirty or not self.compose.is_running(d.local_path):
                self.compose.up(d.local_path, d.name)
                return True
            log_event("INFO", "Compose services are already running.", service_name=d.name)
        return False

    def post_deploy(self, d: GitBuildDescriptor) -> None:
        action = d.post_deploy
        handler = POST_DEPLOY_ACTIONS.get(action.type)
        if handler is None:
            raise DeployError(f"Unknown post-deploy action '{action.type}'")
        log_event("INFO", f"Post-deploy: {action.type} {action.target}", service_name=d.name)
        handler(self, action)

    def _deployed_marker(self, path: str) -> str:
        return os.path.join(path, ".git", DEPLOYED_MARKER)

    def deployed_commit(self, path: str) -> str | None:
        try:
            with open(self._deployed_marker(path), encoding="utf-8") as f:
                return f.read().strip() or None
        except FileNotFoundError:
            return None

    def mark_deployed(self, path: str) -> None:
        head = self.head_commit(path)
        if head is None or not os.path.isdir(os.path.join(path, ".git")):
            return
        write_if_changed(self._deployed_marker(path), head)

    def deploy_pending(self, path: str) -> bool:
        """HEAD has not been through a completed deploy, e.g. an earlier build failed."""
        head = self.head_commit(path)
        return head is not None and head != self.deployed_commit(path)

    # -- reconciliation -----------------------------------------------------

    def reconcile(self, d: GitBuildDescriptor, force: bool = False) -> Outcome:
        log_event("INFO", "Processing git service...", service_name=d.name)
        force = force or d.force_update
        path = d.local_path
        releases = self._follows_releases(d)
        state = self.inspect(path)
        just_cloned = False
        changed = False

        if not state.exists:
            log_event("INFO", "Repository not found locally, cloning...", service_name=d.name)
            self.clone(d)
            just_cloned = changed = True
        elif not state.valid:
            raise RepositoryStateError(f"{path} exists but is not a valid git repository. Remove or fix it manually.")
        elif not d.auto_update:
            log_event("INFO", "Auto-update disabled; repository is valid, not pulling.", service_name=d.name)
        elif releases:
            self.fetch(path)
        elif self.has_changes(path, d.branch) or force:
            log_event("INFO", "Changes detected in repository, updating...", service_name=d.name)
            self.update(d)
            changed = True
        else:
            log_event("INFO", "No changes detected in repository.", service_name=d.name)

        if releases and (d.auto_update or just_cloned):
            changed = self._follow_latest_release(d, just_cloned) or changed

        if just_cloned and d.install_command:
            self.run_install(d)

        stack_dirty = False
        if d.env_file is not None:
            stack_dirty = self.render_env_file(d) or stack_dirty
        if d.compose_override is not None:
            stack_dirty = self.render_compose_override(d) or stack_dirty

        pending = not changed and not force and self.deploy_pending(path)
        if pending:
            log_event("WARN", "Checked-out commit was never deployed successfully, redeploying.", service_name=d.name)

        rebuilt = changed or force or pending
        if rebuilt:
            self.build_and_deploy(d)

        started = self.ensure_running(d, rebuilt, stack_dirty)

        if rebuilt:
            if d.post_deploy is not None:
                self.post_deploy(d)
            self.mark_deployed(path)

        if just_cloned:
            return Outcome.converged(d.name, "cloned and deployed")
        if pending:
            return Outcome.converged(d.name, "redeployed after incomplete deploy")
        if rebuilt:
            return Outcome.converged(d.name, "updated and redeployed")
        if started:
            return Outcome.converged(d.name, "started")
        return Outcome.unchanged(d.name)
