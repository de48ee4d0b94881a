"""Unit tests for remote command construction and rendering."""

import base64
import dataclasses
import os
import shlex
import shutil
import stat
import subprocess

import pytest

from deploypilot.core.command import (
    Abort,
    Cmd,
    CommandPlan,
    Fail,
    Fallback,
    FetchSource,
    Finally,
    IfDir,
    InvokeScript,
    RemoteCommandBuilder,
    ResetWorkspace,
    Seq,
    ShellRenderer,
    StageKey,
    Teardown,
    preview,
    redact,
)
from deploypilot.core.exceptions import ValidationError
from deploypilot.core.models import (
    DeployMethod,
    DeploymentRequest,
    MetadataInfo,
    SourceInfo,
)

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="requires sh")
needs_bash = pytest.mark.skipif(
    shutil.which("sh") is None or shutil.which("bash") is None, reason="requires sh and bash"
)

TRICKY_VALUES = [
    "O'Brien$ecret",
    'say "hi"',
    "`whoami`",
    "$(id)",
    "a; rm -rf /",
    "spaces  and\ttabs",
    "multi\nline",
    "back\\slash",
    "'",
    "",
]


def _request(method=DeployMethod.DEPLOY, repo="org/app", branch="main", commit="abc123",
             environment="stage", pr_number="", trace_id="trace-1"):
    return DeploymentRequest(
        source=SourceInfo(repo=repo, branch=branch, commit=commit, pr_number=pr_number),
        method=method,
        metadata=MetadataInfo(project_name="shop", component="web", environment=environment),
        trace_id=trace_id,
    )


def _sh(command, cwd=None):
    return subprocess.run(
        ["sh", "-c", command], cwd=cwd, capture_output=True, text=True, timeout=30
    )


@pytest.fixture
def builder():
    return RemoteCommandBuilder("/tmp")


@pytest.fixture
def renderer():
    return ShellRenderer()


@pytest.mark.unit
class TestDeployPlan:
    """Test the deploy command."""

    def test_plan_steps(self, builder):
        plan = builder.build(_request())

        assert [type(s) for s in plan.steps] == [ResetWorkspace, FetchSource, InvokeScript, Teardown]
        assert plan.workspace == "/tmp/stage/org/app"
        assert not plan.aborted

    def test_fetch_step(self, builder):
        fetch = builder.build(_request()).steps[1]

        assert fetch == FetchSource(
            url="https://github.com/org/app",
            branch="main",
            commit="abc123",
            dest="/tmp/stage/org/app/repo",
            ssh_config=None,
        )

    def test_shallow_clone_or_full_fetch(self, builder):
        """Deploy org/app main@abc123 to stage without secrets."""
        command = builder.render(_request())

        assert "git clone --depth=1 --branch main https://github.com/org/app /tmp/stage/org/app/repo" in command
        assert ") || ( rm -rf /tmp/stage/org/app/repo && git clone --no-checkout" in command
        assert "git -C /tmp/stage/org/app/repo fetch origin abc123" in command
        assert "git -C /tmp/stage/org/app/repo checkout -q --detach abc123" in command
        assert "rev-parse --verify --quiet 'abc123^{commit}'" in command

    def test_script_invocation_exports_metadata(self, builder):
        command = builder.render(_request())

        assert (
            "cd /tmp/stage/org/app/repo/.deploy/stage && chmod +x deploy.sh && "
            "REPO_NAME=org/app TRACE_ID=trace-1 ENVIRONMENT=stage bash ./deploy.sh"
        ) in command
        assert "PR_NUMBER" not in command

    def test_pr_number_exported_when_present(self, builder):
        command = builder.render(_request(pr_number="42"))

        assert "REPO_NAME=org/app PR_NUMBER=42 TRACE_ID=trace-1" in command

    def test_reset_first_and_teardown_always(self, builder):
        command = builder.render(_request())

        assert command.startswith(
            "( rm -rf /tmp/stage/org/app && mkdir -p /tmp/stage/org/app && cd /tmp/stage/org/app && "
        )
        assert command.endswith("); rc=$?; rm -rf /tmp/stage/org/app; exit $rc")

    def test_secrets_exported_sorted_after_metadata(self, builder):
        env = RemoteCommandBuilder.script_env(_request(), {"ZED": "z", "ALPHA": "a"})

        assert [name for name, _ in env] == ["REPO_NAME", "TRACE_ID", "ENVIRONMENT", "ALPHA", "ZED"]

    def test_trailing_slash_on_base_path(self):
        assert RemoteCommandBuilder("/srv/deploy/").workspace_path(_request()) == "/srv/deploy/stage/org/app"

    def test_custom_git_host(self):
        builder = RemoteCommandBuilder("/tmp", git_host="git.example.com")

        assert builder.repo_url("org/app", private=False) == "https://git.example.com/org/app"
        assert builder.repo_url("org/app", private=True) == "git@git.example.com:org/app.git"


@pytest.mark.unit
class TestPrivateKeyStaging:
    """Test deploy key handling."""

    def test_key_is_staged_not_exported(self, builder, private_key):
        secrets = {"REPO_PRIVATE_KEY": private_key, "API_KEY": "k3y"}
        plan = builder.build(_request(), secrets)
        command = builder.renderer.render(plan)

        stage = plan.steps[1]
        assert isinstance(stage, StageKey)
        assert stage.key_file == "/tmp/stage/org/app/.ssh/repo_private_key"
        assert base64.b64decode(stage.key_b64).decode() == private_key.strip() + "\n"

        assert "BEGIN OPENSSH" not in command
        assert "REPO_PRIVATE_KEY" not in command
        assert "API_KEY=k3y" in command
        assert "umask 077" in command
        assert "base64 -d > /tmp/stage/org/app/.ssh/repo_private_key" in command

    def test_private_repo_uses_ssh_url_and_pinned_config(self, builder, private_key):
        plan = builder.build(_request(), {"REPO_PRIVATE_KEY": private_key})
        command = builder.renderer.render(plan)

        fetch = plan.steps[2]
        assert fetch.url == "git@github.com:org/app.git"
        assert fetch.ssh_config == "/tmp/stage/org/app/.ssh/config"
        assert "export GIT_SSH_COMMAND='ssh -F /tmp/stage/org/app/.ssh/config'" in command
        assert "'    IdentitiesOnly yes'" in command
        assert "'    StrictHostKeyChecking accept-new'" in command

    def test_key_without_markers_aborts(self, builder):
        plan = builder.build(_request(), {"REPO_PRIVATE_KEY": "not-a-key"})

        assert plan.aborted
        assert "BEGIN and END" in plan.steps[0].message

    @needs_sh
    @pytest.mark.skipif(shutil.which("base64") is None, reason="requires base64")
    def test_staged_key_written_with_restricted_mode(self, tmp_path, renderer, private_key):
        ssh_dir = str(tmp_path / "ws" / ".ssh")
        key_text = private_key.strip() + "\n"
        step = StageKey(
            ssh_dir=ssh_dir,
            key_b64=base64.b64encode(key_text.encode()).decode(),
            git_host="github.com",
        )

        result = _sh(renderer.render_node(renderer.lower_step(step)))

        assert result.returncode == 0, result.stderr
        with open(step.key_file) as f:
            assert f.read() == key_text
        assert stat.S_IMODE(os.stat(step.key_file).st_mode) == 0o600
        with open(step.config_file) as f:
            config = f.read()
        assert "Host github.com\n" in config
        assert f"    IdentityFile {step.key_file}\n" in config


@pytest.mark.unit
class TestCleanupPlan:
    """Test the cleanup command."""

    def test_guarded_cleanup_then_teardown(self, builder):
        """Cleanup org/app on stage."""
        plan = builder.build(_request(method=DeployMethod.CLEANUP, branch="", commit=""))
        command = builder.renderer.render(plan)

        assert [type(s) for s in plan.steps] == [InvokeScript, Teardown]
        assert plan.steps[0].guarded
        assert plan.steps[0].script == "cleanup.sh"
        assert command == (
            "( if [ -d /tmp/stage/org/app/repo/.deploy/stage ]; then "
            "cd /tmp/stage/org/app/repo/.deploy/stage && chmod +x cleanup.sh && "
            "REPO_NAME=org/app TRACE_ID=trace-1 ENVIRONMENT=stage bash ./cleanup.sh; fi ); "
            "rc=$?; rm -rf /tmp/stage/org/app; exit $rc"
        )
        assert "clone" not in command
        assert "git " not in command


@pytest.mark.unit
class TestGuards:
    """Missing or unsafe inputs never produce a destructive command."""

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"repo": ""}, "Source.Repo is required"),
            ({"repo": "../etc"}, "not a valid owner/name"),
            ({"repo": "org/.."}, "not a valid owner/name"),
            ({"environment": ""}, "Metadata.Environment is required"),
            ({"environment": "../.."}, "not a valid name"),
            ({"environment": "stage two"}, "not a valid name"),
            ({"branch": ""}, "Source.Branch is required"),
            ({"commit": ""}, "Source.Commit is required"),
        ],
    )
    def test_missing_fields_abort(self, builder, overrides, message):
        command = builder.render(_request(**overrides))

        assert message in command
        assert command.startswith("echo 'Error: ")
        assert command.endswith(" >&2; exit 1")
        assert "rm " not in command
        assert "mkdir" not in command

    @pytest.mark.parametrize("base_path", ["", "relative/path"])
    def test_missing_base_path_aborts(self, base_path):
        command = RemoteCommandBuilder(base_path).render(_request())

        assert command == "echo 'Error: SSH BasePath is required but was empty' >&2; exit 1"

    @pytest.mark.parametrize("base_path", ["/srv/deploy dir", "/srv/deploy\tdir"])
    def test_base_path_with_whitespace_aborts(self, base_path):
        plan = RemoteCommandBuilder(base_path).build(_request(), {"REPO_PRIVATE_KEY": "BEGIN k END"})

        assert plan.aborted
        assert "must not contain whitespace" in plan.steps[0].message

    def test_cleanup_still_needs_repo(self, builder):
        plan = builder.build(_request(method=DeployMethod.CLEANUP, repo=""))

        assert plan.aborted

    def test_invalid_secret_name_aborts(self, builder):
        plan = builder.build(_request(), {"BAD NAME": "x"})

        assert plan.aborted
        assert "BAD NAME" in plan.steps[0].message

    @pytest.mark.parametrize("path", ["/", "/tmp", "relative/dir", "/tmp/../etc", ""])
    def test_unsafe_paths_refused_by_renderer(self, renderer, path):
        with pytest.raises(ValidationError, match="unsafe path"):
            renderer.render(CommandPlan(steps=(ResetWorkspace(path),)))

    def test_abort_anywhere_wins(self, renderer):
        plan = CommandPlan(steps=(ResetWorkspace("/tmp/a/b"), Abort("stop"), Teardown("/tmp/a/b")))

        assert renderer.render(plan) == "echo 'Error: stop' >&2; exit 1"

    @needs_sh
    def test_abort_command_fails_without_side_effects(self, builder):
        result = _sh(builder.render(_request(repo="")))

        assert result.returncode == 1
        assert result.stderr.strip() == "Error: Source.Repo is required but was empty"


@pytest.mark.unit
class TestIdempotence:
    """Identical inputs render identical commands."""

    def test_byte_identical_rebuilds(self, builder, private_key):
        secrets = {"B": "2", "A": "1", "REPO_PRIVATE_KEY": private_key}
        reordered = {"REPO_PRIVATE_KEY": private_key, "A": "1", "B": "2"}

        first = builder.render(_request(pr_number="9"), secrets)
        second = RemoteCommandBuilder("/tmp").render(_request(pr_number="9"), reordered)

        assert first == second

    def test_plans_compare_equal(self, builder):
        assert builder.build(_request()) == builder.build(_request())


@pytest.mark.unit
class TestQuoting:
    """Secret values survive shell parsing byte for byte."""

    @pytest.mark.parametrize("value", TRICKY_VALUES)
    def test_shlex_round_trip(self, renderer, value):
        step = InvokeScript(deploy_dir="/srv/app", script="deploy.sh", env=(("SECRET", value),))
        tokens = shlex.split(renderer.render_node(renderer.lower_step(step)))

        assert f"SECRET={value}" in tokens

    @needs_bash
    @pytest.mark.parametrize("value", TRICKY_VALUES)
    def test_script_receives_exact_value(self, tmp_path, renderer, value):
        deploy_dir = tmp_path / "deploy"
        deploy_dir.mkdir()
        out_file = tmp_path / "out"
        (deploy_dir / "deploy.sh").write_text(f'printf "%s" "$SECRET" > {shlex.quote(str(out_file))}\n')

        step = InvokeScript(deploy_dir=str(deploy_dir), script="deploy.sh", env=(("SECRET", value),))
        result = _sh(renderer.render_node(renderer.lower_step(step)))

        assert result.returncode == 0, result.stderr
        assert out_file.read_text() == value

    @needs_bash
    def test_obrien_secret_end_to_end(self, tmp_path):
        """Cleanup run exporting O'Brien$ecret reaches the script intact."""
        request = dataclasses.replace(
            _request(method=DeployMethod.CLEANUP, branch="", commit=""),
            trace_id="t-1",
        )
        builder = RemoteCommandBuilder(str(tmp_path / "base"))
        workspace = tmp_path / "base" / "stage" / "org" / "app"
        deploy_dir = workspace / "repo" / ".deploy" / "stage"
        deploy_dir.mkdir(parents=True)
        out_file = tmp_path / "out"
        (deploy_dir / "cleanup.sh").write_text(
            f'printf "%s|%s|%s" "$API_KEY" "$TRACE_ID" "$REPO_NAME" > {shlex.quote(str(out_file))}\n'
        )

        result = _sh(builder.render(request, {"API_KEY": "O'Brien$ecret"}), cwd=tmp_path)

        assert result.returncode == 0, result.stderr
        assert out_file.read_text() == "O'Brien$ecret|t-1|org/app"
        assert not workspace.exists()


@pytest.mark.unit
class TestRenderSemantics:
    """Rendered control flow behaves as the tree says."""

    @needs_sh
    def test_fallback_runs_alternative_on_failure(self, renderer):
        result = _sh(renderer.render_node(Fallback(Cmd("false"), Cmd("echo fallback"))))

        assert result.returncode == 0
        assert result.stdout == "fallback\n"

    @needs_sh
    def test_fallback_skips_alternative_on_success(self, renderer):
        node = Seq((Fallback(Cmd("echo primary"), Cmd("echo alternative")), Cmd("echo after")))
        result = _sh(renderer.render_node(node))

        assert result.stdout == "primary\nafter\n"

    @needs_sh
    def test_fallback_is_atomic_inside_sequence(self, renderer):
        node = Seq((Fallback(Cmd("true"), Cmd("echo wrong")), Cmd("false"), Cmd("echo unreachable")))
        result = _sh(renderer.render_node(node))

        assert result.returncode == 1
        assert result.stdout == ""

    @needs_sh
    def test_sequence_stops_at_first_failure(self, renderer):
        result = _sh(renderer.render_node(Seq((Cmd("echo one"), Cmd("false"), Cmd("echo two")))))

        assert result.returncode == 1
        assert result.stdout == "one\n"

    @needs_sh
    def test_finally_keeps_body_status(self, renderer):
        node = Finally(Seq((Cmd("echo body"), Cmd("exit 4"))), Cmd("echo cleanup"))
        result = _sh(renderer.render_node(node))

        assert result.returncode == 4
        assert result.stdout == "body\ncleanup\n"

    @needs_sh
    def test_missing_directory_is_not_an_error(self, renderer, tmp_path):
        node = IfDir(str(tmp_path / "missing"), Cmd("false"))
        result = _sh(renderer.render_node(node))

        assert result.returncode == 0

    @needs_sh
    def test_failed_cleanup_still_tears_down(self, tmp_path):
        request = _request(method=DeployMethod.CLEANUP, branch="", commit="")
        builder = RemoteCommandBuilder(str(tmp_path / "base"))
        workspace = tmp_path / "base" / "stage" / "org" / "app"
        deploy_dir = workspace / "repo" / ".deploy" / "stage"
        deploy_dir.mkdir(parents=True)
        (deploy_dir / "cleanup.sh").write_text("exit 3\n")

        result = _sh(builder.render(request), cwd=tmp_path)

        if shutil.which("bash") is not None:
            assert result.returncode == 3
        assert not workspace.exists()

    @needs_sh
    def test_cleanup_without_workspace_succeeds(self, tmp_path):
        builder = RemoteCommandBuilder(str(tmp_path / "base"))
        result = _sh(builder.render(_request(method=DeployMethod.CLEANUP, branch="", commit="")), cwd=tmp_path)

        assert result.returncode == 0

    def test_fail_node(self, renderer):
        assert renderer.render_node(Fail("it's broken")) == "echo 'Error: it'\"'\"'s broken' >&2; exit 1"

    def test_unknown_step_rejected(self, renderer):
        with pytest.raises(TypeError):
            renderer.lower_step(object())


needs_git = pytest.mark.skipif(
    shutil.which("sh") is None or shutil.which("git") is None, reason="requires sh and git"
)

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Deploy Tests",
    "GIT_AUTHOR_EMAIL": "tests@example.com",
    "GIT_COMMITTER_NAME": "Deploy Tests",
    "GIT_COMMITTER_EMAIL": "tests@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def _git(*args, cwd):
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=dict(os.environ, **GIT_ENV),
        capture_output=True,
        text=True,
        timeout=30,
    )
    assert result.returncode == 0, result.stderr
    return result.stdout.strip()


@pytest.fixture
def origin(tmp_path):
    """Local origin repository on branch ``release`` with two commits."""
    path = tmp_path / "origin"
    path.mkdir()
    _git("init", "-q", cwd=path)
    _git("symbolic-ref", "HEAD", "refs/heads/release", cwd=path)
    for n in (1, 2):
        (path / "VERSION").write_text(f"{n}\n")
        _git("add", "VERSION", cwd=path)
        _git("commit", "-q", "-m", f"release {n}", cwd=path)
    return path


@needs_git
@pytest.mark.unit
class TestFetchAgainstGit:
    """The fetch fragment checks out exactly the requested commit."""

    def _fetch(self, renderer, origin, commit, dest):
        step = FetchSource(url=f"file://{origin}", branch="release", commit=commit, dest=str(dest))
        fragment = renderer.render_node(renderer.lower_step(step))
        return subprocess.run(
            ["sh", "-c", fragment],
            env=dict(os.environ, **GIT_ENV),
            capture_output=True,
            text=True,
            timeout=60,
        )

    def test_branch_tip_uses_shallow_clone(self, renderer, origin, tmp_path):
        tip = _git("rev-parse", "HEAD", cwd=origin)
        dest = tmp_path / "checkout"

        result = self._fetch(renderer, origin, tip, dest)

        assert result.returncode == 0, result.stderr
        assert _git("rev-parse", "HEAD", cwd=dest) == tip
        assert _git("rev-parse", "--is-shallow-repository", cwd=dest) == "true"

    def test_moved_branch_falls_back_to_exact_commit(self, renderer, origin, tmp_path):
        first = _git("rev-parse", "HEAD~1", cwd=origin)
        dest = tmp_path / "checkout"

        result = self._fetch(renderer, origin, first, dest)

        assert result.returncode == 0, result.stderr
        assert _git("rev-parse", "HEAD", cwd=dest) == first
        assert (dest / "VERSION").read_text() == "1\n"

    def test_unknown_commit_fails(self, renderer, origin, tmp_path):
        result = self._fetch(renderer, origin, "0" * 40, tmp_path / "checkout")

        assert result.returncode != 0


@pytest.mark.unit
class TestRedaction:
    """Test command redaction for logs."""

    def test_secret_assignments_masked(self, builder):
        secrets = {"API_KEY": "O'Brien$ecret", "TOKEN": "t0k"}
        command = builder.render(_request(), secrets)

        redacted = redact(command, secrets)

        assert "Brien" not in redacted
        assert "t0k" not in redacted
        assert "API_KEY=[REDACTED]" in redacted
        assert "TOKEN=[REDACTED]" in redacted
        assert "REPO_NAME=org/app" in redacted

    def test_private_key_blob_masked(self, builder, private_key):
        secrets = {"REPO_PRIVATE_KEY": private_key}
        stage = builder.build(_request(), secrets).steps[1]

        redacted = redact(builder.render(_request(), secrets), secrets)

        assert stage.key_b64 not in redacted
        assert "[REDACTED]" in redacted

    def test_preview_truncates(self):
        text = preview("x" * 600)

        assert text == "x" * 500 + "... (truncated)"

    def test_preview_short_command_unchanged(self):
        assert preview("echo hi") == "echo hi"
