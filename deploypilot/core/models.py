"""Core domain models for DeployPilot."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from deploypilot.core.exceptions import DeployPilotError, ValidationError

# Secret injected under this name is staged as a key file, never exported.
PRIVATE_KEY_ENV = "REPO_PRIVATE_KEY"

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class DeployMethod(str, Enum):
    """What a run does on the target host."""

    DEPLOY = "deploy"
    CLEANUP = "cleanup"


class Environment(str, Enum):
    """Deployment environments."""

    SNAPSHOT = "snapshot"
    DEV = "dev"
    STAGE = "stage"
    PRODUCTION = "production"


class RunState(str, Enum):
    """
    Sequencer states.

    State Machine:
    INIT -> SECRETS_FETCHED -> REMOTE_EXECUTED -> POST_ACTIONS_COMPLETE -> DONE

    FAILED is reachable from INIT, SECRETS_FETCHED and REMOTE_EXECUTED.
    """

    INIT = "init"
    SECRETS_FETCHED = "secrets_fetched"
    REMOTE_EXECUTED = "remote_executed"
    POST_ACTIONS_COMPLETE = "post_actions_complete"
    DONE = "done"
    FAILED = "failed"

    def can_transition_to(self, target: "RunState") -> bool:
        """Check if transition to target state is valid."""
        valid_transitions = {
            RunState.INIT: [
                RunState.SECRETS_FETCHED,
                RunState.REMOTE_EXECUTED,
                RunState.FAILED,
            ],
            RunState.SECRETS_FETCHED: [RunState.REMOTE_EXECUTED, RunState.FAILED],
            RunState.REMOTE_EXECUTED: [RunState.POST_ACTIONS_COMPLETE, RunState.FAILED],
            RunState.POST_ACTIONS_COMPLETE: [RunState.DONE],
            RunState.DONE: [],
            RunState.FAILED: [],
        }
        return target in valid_transitions.get(self, [])

    @property
    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (RunState.DONE, RunState.FAILED)


@dataclass(frozen=True)
class SourceInfo:
    """Where the code to deploy comes from."""

    repo: str
    branch: str = ""
    commit: str = ""
    title: str = ""
    pr_number: str = ""
    pr_title: str = ""
    pr_type: str = ""
    pr_purpose: str = ""


@dataclass(frozen=True)
class MetadataInfo:
    """Deployment target metadata."""

    project_name: str
    component: str
    environment: str


@dataclass(frozen=True)
class SecretMapping:
    """Where a secret lives upstream and the env var it is injected as."""

    path: str
    secret_name: str
    env_name: str


@dataclass(frozen=True)
class InjectSecretConfig:
    """Secret injection settings."""

    enable: bool = False
    project: str = ""
    environment: str = ""
    secrets: Tuple[SecretMapping, ...] = ()


@dataclass(frozen=True)
class SetupConfig:
    """Pre-deployment setup."""

    inject_secret: InjectSecretConfig = field(default_factory=InjectSecretConfig)


@dataclass(frozen=True)
class DomainConfig:
    """DNS record post action. ``value`` is an address placeholder."""

    enable: bool = False
    title: str = ""
    name: str = ""
    value: str = ""


@dataclass(frozen=True)
class NotifyConfig:
    """Chat notification post action."""

    enable: bool = False
    channel: str = ""


@dataclass(frozen=True)
class PostActions:
    """Best-effort actions after a successful remote run."""

    setup_domain: DomainConfig = field(default_factory=DomainConfig)
    cleanup_domain: DomainConfig = field(default_factory=DomainConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)


@dataclass(frozen=True)
class DeploymentRequest:
    """One deployment or cleanup, immutable for the lifetime of a run."""

    source: SourceInfo
    method: DeployMethod
    metadata: MetadataInfo
    setup: SetupConfig = field(default_factory=SetupConfig)
    post: PostActions = field(default_factory=PostActions)
    trace_id: str = ""

    @property
    def is_deploy(self) -> bool:
        return self.method == DeployMethod.DEPLOY

    @property
    def secret_mappings(self) -> Tuple[SecretMapping, ...]:
        return self.setup.inject_secret.secrets

    def validate(self) -> None:
        """
        Check the request invariants.

        Raises:
            ValidationError: On the first violated invariant
        """
        if not isinstance(self.method, DeployMethod):
            raise ValidationError(f"Unknown method: {self.method!r}")

        if not self.source.repo:
            raise ValidationError("source.repo is required")
        if not REPO_PATTERN.match(self.source.repo) or ".." in self.source.repo:
            raise ValidationError(
                f"source.repo must look like 'owner/name', got {self.source.repo!r}"
            )

        environment = self.metadata.environment
        if environment not in {e.value for e in Environment}:
            raise ValidationError(
                f"metadata.environment must be one of "
                f"{', '.join(e.value for e in Environment)}, got {environment!r}"
            )
        if not self.metadata.project_name:
            raise ValidationError("metadata.project_name is required")
        if not self.metadata.component:
            raise ValidationError("metadata.component is required")

        if self.is_deploy:
            if not self.source.branch:
                raise ValidationError("source.branch is required for deploy")
            if not self.source.commit:
                raise ValidationError("source.commit is required for deploy")

        self._validate_secrets()
        self._validate_post_actions()

    def _validate_secrets(self) -> None:
        inject = self.setup.inject_secret
        if not inject.enable:
            return

        if not inject.project:
            raise ValidationError("project is required when inject_secret.enable is true")
        if not inject.environment:
            raise ValidationError(
                "environment is required when inject_secret.enable is true"
            )
        if not inject.secrets:
            raise ValidationError(
                "secrets array is required when inject_secret.enable is true"
            )

        seen = set()
        for i, mapping in enumerate(inject.secrets):
            if not mapping.path:
                raise ValidationError(f"secrets[{i}].path is required")
            if not mapping.secret_name:
                raise ValidationError(f"secrets[{i}].secret_name is required")
            if not ENV_NAME_PATTERN.match(mapping.env_name or ""):
                raise ValidationError(
                    f"secrets[{i}].env_name {mapping.env_name!r} is not a valid "
                    "environment variable name"
                )
            if mapping.env_name in seen:
                raise ValidationError(
                    f"secrets[{i}].env_name {mapping.env_name!r} is used more than once",
                    details={"env_name": mapping.env_name},
                )
            seen.add(mapping.env_name)

    def _validate_post_actions(self) -> None:
        setup_domain = self.post.setup_domain
        if setup_domain.enable:
            if not setup_domain.title:
                raise ValidationError("title is required when setup_domain.enable is true")
            if not setup_domain.name:
                raise ValidationError("name is required when setup_domain.enable is true")
            if not setup_domain.value:
                raise ValidationError("value is required when setup_domain.enable is true")

        if self.post.cleanup_domain.enable and not self.post.cleanup_domain.name:
            raise ValidationError("name is required when cleanup_domain.enable is true")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRequest":
        """
        Create from the wire payload.

        Unknown keys are ignored. Structural validation is left to
        ``validate()``.
        """
        source = data.get("source") or {}
        metadata = data.get("metadata") or {}
        inject = (data.get("setup") or {}).get("inject_secret") or {}
        post = data.get("post") or {}

        try:
            method = DeployMethod(data.get("method"))
        except ValueError:
            raise ValidationError(
                f"method must be one of deploy, cleanup, got {data.get('method')!r}"
            )

        return cls(
            source=SourceInfo(
                repo=source.get("repo") or "",
                branch=source.get("branch") or "",
                commit=source.get("commit") or "",
                title=source.get("title") or "",
                pr_number=str(source.get("pr_number") or ""),
                pr_title=source.get("pr_title") or "",
                pr_type=source.get("pr_type") or "",
                pr_purpose=source.get("pr_purpose") or "",
            ),
            method=method,
            metadata=MetadataInfo(
                project_name=metadata.get("project_name") or "",
                component=metadata.get("component") or "",
                environment=metadata.get("environment") or "",
            ),
            setup=SetupConfig(
                inject_secret=InjectSecretConfig(
                    enable=bool(inject.get("enable", False)),
                    project=inject.get("project") or "",
                    environment=inject.get("environment") or "",
                    secrets=tuple(
                        SecretMapping(
                            path=s.get("path") or "",
                            secret_name=s.get("secret_name") or "",
                            env_name=s.get("env_name") or "",
                        )
                        for s in inject.get("secrets") or []
                    ),
                )
            ),
            post=PostActions(
                setup_domain=_domain_from_dict(post.get("setup_domain")),
                cleanup_domain=_domain_from_dict(post.get("cleanup_domain")),
                notify=NotifyConfig(
                    enable=bool((post.get("notify_discord") or {}).get("enable", False)),
                    channel=(post.get("notify_discord") or {}).get("channel") or "",
                ),
            ),
            trace_id=data.get("trace_id") or "",
        )


def _domain_from_dict(data: Optional[Dict[str, Any]]) -> DomainConfig:
    data = data or {}
    return DomainConfig(
        enable=bool(data.get("enable", False)),
        title=data.get("title") or "",
        name=data.get("name") or "",
        value=data.get("value") or "",
    )


@dataclass
class Transition:
    """One entry of a run's step log."""

    state: RunState
    at: datetime = field(default_factory=datetime.now)
    note: str = ""


@dataclass
class RunResult:
    """Outcome of one sequencer run."""

    trace_id: str
    state: RunState = RunState.INIT
    output: str = ""
    error: Optional[DeployPilotError] = None
    side_effect_errors: List[DeployPilotError] = field(default_factory=list)
    transitions: List[Transition] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == RunState.DONE

    @property
    def degraded(self) -> bool:
        """Successful run with at least one failed post action."""
        return self.success and bool(self.side_effect_errors)

    def raise_for_status(self) -> None:
        """Raise the fatal error of a failed run."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "trace_id": self.trace_id,
            "state": self.state.value,
            "success": self.success,
            "degraded": self.degraded,
            "error": str(self.error) if self.error else None,
            "side_effect_errors": [str(e) for e in self.side_effect_errors],
            "transitions": [
                {"state": t.state.value, "at": t.at.isoformat(), "note": t.note}
                for t in self.transitions
            ],
        }
