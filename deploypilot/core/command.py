"""
Remote command construction.

A deployment request plus resolved secrets is turned into a ``CommandPlan``:
an ordered tuple of tagged steps (reset, stage-key, fetch-with-fallback,
invoke-script, teardown). ``ShellRenderer`` lowers the plan into a small
expression tree (sequence, fallback pair, directory guard, finally) and
renders that tree to a single ``sh`` command string. Every value that
reaches the command line goes through ``sh_quote``; nothing else in the
package formats shell text.

Building is pure: identical inputs give byte-identical commands.
"""

import base64
import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from deploypilot.core.exceptions import ValidationError
from deploypilot.core.models import (
    ENV_NAME_PATTERN,
    PRIVATE_KEY_ENV,
    REPO_PATTERN,
    DeploymentRequest,
)

DEPLOY_SCRIPT = "deploy.sh"
CLEANUP_SCRIPT = "cleanup.sh"
PREVIEW_LIMIT = 500
REDACTED = "[REDACTED]"


def sh_quote(value: str) -> str:
    """Quote one word for a POSIX shell."""
    return shlex.quote(value)


# Plan steps


@dataclass(frozen=True)
class ResetWorkspace:
    """Remove, recreate and enter the workspace."""

    path: str


@dataclass(frozen=True)
class StageKey:
    """Write a deploy key and an ssh config that pins it for git."""

    ssh_dir: str
    key_b64: str
    git_host: str

    @property
    def key_file(self) -> str:
        return f"{self.ssh_dir}/repo_private_key"

    @property
    def config_file(self) -> str:
        return f"{self.ssh_dir}/config"

    @property
    def known_hosts_file(self) -> str:
        return f"{self.ssh_dir}/known_hosts"


@dataclass(frozen=True)
class FetchSource:
    """Shallow clone of the branch, falling back to a full fetch of the commit."""

    url: str
    branch: str
    commit: str
    dest: str
    ssh_config: Optional[str] = None


@dataclass(frozen=True)
class InvokeScript:
    """Run a deploy script with an exported environment."""

    deploy_dir: str
    script: str
    env: Tuple[Tuple[str, str], ...]
    guarded: bool = False


@dataclass(frozen=True)
class Teardown:
    """Remove the workspace."""

    path: str


@dataclass(frozen=True)
class Abort:
    """Refuse to run; exits non-zero with a message."""

    message: str


Step = Union[ResetWorkspace, StageKey, FetchSource, InvokeScript, Teardown, Abort]


@dataclass(frozen=True)
class CommandPlan:
    """Ordered steps for one run. Never reused across runs."""

    steps: Tuple[Step, ...]
    workspace: str = ""

    @property
    def aborted(self) -> bool:
        return any(isinstance(step, Abort) for step in self.steps)

    @classmethod
    def abort(cls, message: str) -> "CommandPlan":
        return cls(steps=(Abort(message),))


# Expression tree


@dataclass(frozen=True)
class Cmd:
    """A simple command, already quoted."""

    text: str

    @classmethod
    def argv(cls, *args: str) -> "Cmd":
        return cls(" ".join(sh_quote(a) for a in args))


@dataclass(frozen=True)
class Seq:
    """Each node gates the next (``&&``)."""

    nodes: Tuple["Node", ...]


@dataclass(frozen=True)
class Fallback:
    """Run ``alternative`` whenever ``primary`` exits non-zero."""

    primary: "Node"
    alternative: "Node"


@dataclass(frozen=True)
class IfDir:
    """Run ``body`` only if ``path`` is a directory; a missing one is not an error."""

    path: str
    body: "Node"


@dataclass(frozen=True)
class Finally:
    """Run ``cleanup`` after ``body`` and exit with the body's status."""

    body: "Node"
    cleanup: "Node"


@dataclass(frozen=True)
class Fail:
    message: str


Node = Union[Cmd, Seq, Fallback, IfDir, Finally, Fail]


class ShellRenderer:
    """Lowers a CommandPlan to an expression tree and renders it for ``sh``."""

    def render(self, plan: CommandPlan) -> str:
        return self.render_node(self.lower(plan))

    def lower(self, plan: CommandPlan) -> Node:
        for step in plan.steps:
            if isinstance(step, Abort):
                return Fail(step.message)

        steps = list(plan.steps)
        teardown = None
        if steps and isinstance(steps[-1], Teardown):
            teardown = self.lower_step(steps.pop())

        body = Seq(tuple(self.lower_step(step) for step in steps))
        if teardown is None:
            return body
        return Finally(body, teardown)

    def lower_step(self, step: Step) -> Node:
        if isinstance(step, ResetWorkspace):
            path = _checked_path(step.path)
            return Seq((
                Cmd.argv("rm", "-rf", path),
                Cmd.argv("mkdir", "-p", path),
                Cmd.argv("cd", path),
            ))

        if isinstance(step, StageKey):
            return self._lower_stage_key(step)

        if isinstance(step, FetchSource):
            return self._lower_fetch(step)

        if isinstance(step, InvokeScript):
            assignments = " ".join(f"{name}={sh_quote(value)}" for name, value in step.env)
            run = Cmd(f"{assignments} bash ./{sh_quote(step.script)}".lstrip())
            body = Seq((
                Cmd.argv("cd", step.deploy_dir),
                Cmd.argv("chmod", "+x", step.script),
                run,
            ))
            if step.guarded:
                return IfDir(step.deploy_dir, body)
            return body

        if isinstance(step, Teardown):
            return Cmd.argv("rm", "-rf", _checked_path(step.path))

        if isinstance(step, Abort):
            return Fail(step.message)

        raise TypeError(f"Unknown plan step: {step!r}")

    def _lower_stage_key(self, step: StageKey) -> Node:
        config_lines = [
            f"Host {step.git_host}",
            f"    HostName {step.git_host}",
            "    User git",
            f"    IdentityFile {step.key_file}",
            "    IdentitiesOnly yes",
            "    StrictHostKeyChecking accept-new",
            f"    UserKnownHostsFile {step.known_hosts_file}",
        ]
        # base64 output never contains shell metacharacters
        write_key = Cmd(
            f"(umask 077 && printf '%s' {sh_quote(step.key_b64)} | base64 -d > "
            f"{sh_quote(step.key_file)})"
        )
        write_config = Cmd(
            "printf '%s\\n' "
            + " ".join(sh_quote(line) for line in config_lines)
            + f" > {sh_quote(step.config_file)}"
        )
        return Seq((
            Cmd.argv("mkdir", "-p", step.ssh_dir),
            Cmd.argv("chmod", "700", step.ssh_dir),
            write_key,
            Cmd.argv("chmod", "600", step.key_file),
            write_config,
            Cmd.argv("chmod", "600", step.config_file),
        ))

    def _lower_fetch(self, step: FetchSource) -> Node:
        dest = step.dest
        commit_ref = f"{step.commit}^{{commit}}"
        head_matches = Cmd(
            f'[ "$(git -C {sh_quote(dest)} rev-parse HEAD)" = '
            f'"$(git -C {sh_quote(dest)} rev-parse --verify --quiet {sh_quote(commit_ref)})" ]'
        )
        shallow = Seq((
            Cmd.argv("git", "clone", "--depth=1", "--branch", step.branch, step.url, dest),
            head_matches,
        ))
        full = Seq((
            Cmd.argv("rm", "-rf", dest),
            Cmd.argv("git", "clone", "--no-checkout", step.url, dest),
            Fallback(
                Cmd.argv("git", "-C", dest, "cat-file", "-e", commit_ref),
                Cmd.argv("git", "-C", dest, "fetch", "origin", step.commit),
            ),
            Cmd.argv("git", "-C", dest, "checkout", "-q", "--detach", step.commit),
        ))
        fetch = Fallback(shallow, full)
        if step.ssh_config:
            git_ssh = f"ssh -F {sh_quote(step.ssh_config)}"
            return Seq((Cmd(f"export GIT_SSH_COMMAND={sh_quote(git_ssh)}"), fetch))
        return fetch

    def render_node(self, node: Node) -> str:
        if isinstance(node, Cmd):
            return node.text

        if isinstance(node, Seq):
            return " && ".join(self.render_node(child) for child in node.nodes)

        if isinstance(node, Fallback):
            # braces keep the pair atomic inside an && chain
            return (
                f"{{ ( {self.render_node(node.primary)} ) || "
                f"( {self.render_node(node.alternative)} ); }}"
            )

        if isinstance(node, IfDir):
            return (
                f"if [ -d {sh_quote(node.path)} ]; then "
                f"{self.render_node(node.body)}; fi"
            )

        if isinstance(node, Finally):
            return (
                f"( {self.render_node(node.body)} ); rc=$?; "
                f"{self.render_node(node.cleanup)}; exit $rc"
            )

        if isinstance(node, Fail):
            return f"echo {sh_quote('Error: ' + node.message)} >&2; exit 1"

        raise TypeError(f"Unknown command node: {node!r}")


def _has_space(value: str) -> bool:
    return any(c.isspace() for c in value)


def _checked_path(path: str) -> str:
    parts = [p for p in path.split("/") if p]
    if not path.startswith("/") or len(parts) < 2 or ".." in parts:
        raise ValidationError(f"Refusing to operate on unsafe path {path!r}")
    return path


class RemoteCommandBuilder:
    """
    Builds the command plan for a deployment or cleanup run.

    Workspace layout on the target host::

        {base_path}/{environment}/{repo}/          workspace
        {base_path}/{environment}/{repo}/.ssh/     staged deploy key
        {base_path}/{environment}/{repo}/repo/     checkout
        .../repo/.deploy/{environment}/            deploy.sh, cleanup.sh

    The workspace path is derived from the environment and repository only,
    so two concurrent runs for the same pair share it. Callers serialize
    same-target runs.
    """

    def __init__(self, base_path: str, git_host: str = "github.com"):
        self.base_path = (base_path or "").rstrip("/")
        self.git_host = git_host
        self.renderer = ShellRenderer()

    def workspace_path(self, request: DeploymentRequest) -> str:
        return f"{self.base_path}/{request.metadata.environment}/{request.source.repo}"

    def build(self, request: DeploymentRequest, secrets: Optional[Dict[str, str]] = None) -> CommandPlan:
        """Build the plan, or an aborting plan when inputs are unusable."""
        secrets = secrets or {}
        problem = self._check(request, secrets)
        if problem:
            return CommandPlan.abort(problem)

        if request.is_deploy:
            return self._build_deploy(request, secrets)
        return self._build_cleanup(request, secrets)

    def render(self, request: DeploymentRequest, secrets: Optional[Dict[str, str]] = None) -> str:
        return self.renderer.render(self.build(request, secrets))

    def _check(self, request: DeploymentRequest, secrets: Dict[str, str]) -> Optional[str]:
        repo = request.source.repo
        if not repo:
            return "Source.Repo is required but was empty"
        if not REPO_PATTERN.match(repo) or ".." in repo:
            return f"Source.Repo {repo!r} is not a valid owner/name identifier"
        environment = request.metadata.environment
        if not environment:
            return "Metadata.Environment is required but was empty"
        if "/" in environment or environment in (".", "..") or _has_space(environment):
            return f"Metadata.Environment {environment!r} is not a valid name"
        if request.is_deploy:
            if not request.source.branch:
                return "Source.Branch is required but was empty"
            if not request.source.commit:
                return "Source.Commit is required but was empty"
        if not self.base_path or not self.base_path.startswith("/"):
            return "SSH BasePath is required but was empty"
        if _has_space(self.base_path):
            return f"SSH BasePath {self.base_path!r} must not contain whitespace"

        for name in secrets:
            if not ENV_NAME_PATTERN.match(name):
                return f"Secret name {name!r} is not a valid environment variable name"

        private_key = secrets.get(PRIVATE_KEY_ENV, "")
        if private_key and ("BEGIN" not in private_key or "END" not in private_key):
            return f"{PRIVATE_KEY_ENV} must contain BEGIN and END markers"
        return None

    def _build_deploy(self, request: DeploymentRequest, secrets: Dict[str, str]) -> CommandPlan:
        workspace = self.workspace_path(request)
        repo_dir = f"{workspace}/repo"
        private_key = secrets.get(PRIVATE_KEY_ENV, "")

        steps: List[Step] = [ResetWorkspace(workspace)]

        ssh_config = None
        if private_key:
            key_text = private_key.strip() + "\n"
            stage = StageKey(
                ssh_dir=f"{workspace}/.ssh",
                key_b64=base64.b64encode(key_text.encode("utf-8")).decode("ascii"),
                git_host=self.git_host,
            )
            steps.append(stage)
            ssh_config = stage.config_file

        steps.append(
            FetchSource(
                url=self.repo_url(request.source.repo, private=bool(private_key)),
                branch=request.source.branch,
                commit=request.source.commit,
                dest=repo_dir,
                ssh_config=ssh_config,
            )
        )
        steps.append(
            InvokeScript(
                deploy_dir=self._deploy_dir(repo_dir, request),
                script=DEPLOY_SCRIPT,
                env=self.script_env(request, secrets),
            )
        )
        steps.append(Teardown(workspace))
        return CommandPlan(steps=tuple(steps), workspace=workspace)

    def _build_cleanup(self, request: DeploymentRequest, secrets: Dict[str, str]) -> CommandPlan:
        workspace = self.workspace_path(request)
        steps: Tuple[Step, ...] = (
            InvokeScript(
                deploy_dir=self._deploy_dir(f"{workspace}/repo", request),
                script=CLEANUP_SCRIPT,
                env=self.script_env(request, secrets),
                guarded=True,
            ),
            Teardown(workspace),
        )
        return CommandPlan(steps=steps, workspace=workspace)

    @staticmethod
    def _deploy_dir(repo_dir: str, request: DeploymentRequest) -> str:
        return f"{repo_dir}/.deploy/{request.metadata.environment}"

    def repo_url(self, repo: str, private: bool) -> str:
        if private:
            return f"git@{self.git_host}:{repo}.git"
        return f"https://{self.git_host}/{repo}"

    @staticmethod
    def script_env(request: DeploymentRequest, secrets: Dict[str, str]) -> Tuple[Tuple[str, str], ...]:
        """Metadata variables first, then secrets sorted by name."""
        env = [("REPO_NAME", request.source.repo)]
        if request.source.pr_number:
            env.append(("PR_NUMBER", request.source.pr_number))
        env.append(("TRACE_ID", request.trace_id))
        env.append(("ENVIRONMENT", request.metadata.environment))
        for name in sorted(secrets):
            if name != PRIVATE_KEY_ENV:
                env.append((name, secrets[name]))
        return tuple(env)


def redact(command: str, secrets: Optional[Dict[str, str]] = None) -> str:
    """Mask secret assignments and the staged key in a command."""
    for name, value in (secrets or {}).items():
        if not value:
            continue
        if name == PRIVATE_KEY_ENV:
            key_b64 = base64.b64encode((value.strip() + "\n").encode("utf-8")).decode("ascii")
            command = command.replace(key_b64, REDACTED)
        else:
            command = command.replace(f"{name}={sh_quote(value)}", f"{name}={REDACTED}")
    return command


def preview(command: str, secrets: Optional[Dict[str, str]] = None, limit: int = PREVIEW_LIMIT) -> str:
    """Redacted, truncated command for logs."""
    text = redact(command, secrets)
    if len(text) > limit:
        text = text[:limit] + "... (truncated)"
    return text
