"""
Deployment step sequencer.

Runs one request through fetch-secrets -> execute-remote-command ->
post-actions. Secret and remote failures are fatal to the run and trigger a
single failure notification; DNS and notification failures after a
successful remote run are recorded but never fail the run.

Retries and crash recovery belong to whatever schedules runs; a run is safe
to repeat because the workspace is reset before use.
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from deploypilot.core.cache import SecretCache
from deploypilot.core.command import RemoteCommandBuilder, preview
from deploypilot.core.exceptions import (
    AuthenticationError,
    CommandExitError,
    ConfigurationError,
    DeployPilotError,
    HostVerificationError,
    RemoteExecutionError,
    SecretFetchError,
    SideEffectError,
    SourceControlError,
    ValidationError,
)
from deploypilot.core.executor import RemoteExecutor
from deploypilot.core.models import (
    PRIVATE_KEY_ENV,
    DeploymentRequest,
    RunResult,
    RunState,
    SecretMapping,
    Transition,
)
from deploypilot.core.resolver import PlaceholderResolver
from deploypilot.integrations.base import IDNSProvider, INotifier, ISecretSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteTarget:
    """The host deployments run on and the credentials used to reach it."""

    address: str
    username: str
    private_key: str

    def __repr__(self) -> str:
        return f"RemoteTarget(address={self.address!r}, username={self.username!r})"


def classify_failure(error: RemoteExecutionError) -> RemoteExecutionError:
    """
    Attach a diagnosis to a remote failure based on its captured output.

    Only the error type and message change; the output is kept as is.
    """
    output = error.output
    details = dict(error.details)
    if isinstance(error, CommandExitError):
        details.setdefault("exit_status", error.exit_status)

    if "fatal:" in output:
        line = next(l for l in output.splitlines() if "fatal:" in l).strip()
        return SourceControlError(
            f"Git operation failed: {line}. {SourceControlError.hint} "
            f"Full error: {error.message}",
            output=output,
            details=details,
        )
    if "Permission denied" in output:
        return AuthenticationError(
            f"SSH authentication failed (Permission denied). {AuthenticationError.hint} "
            f"Error: {error.message}",
            output=output,
            details=details,
        )
    if "Host key verification failed" in output:
        return HostVerificationError(
            f"SSH host key verification failed. {HostVerificationError.hint} "
            f"Error: {error.message}",
            output=output,
            details=details,
        )
    return error


class DeploymentSequencer:
    """
    Orchestrates a single deployment or cleanup run.

    The sequencer holds no per-run state; one instance can serve concurrent
    runs on different threads. The secret cache is the only shared object.
    """

    def __init__(
        self,
        builder: RemoteCommandBuilder,
        executor: RemoteExecutor,
        target: RemoteTarget,
        secret_source: Optional[ISecretSource] = None,
        cache: Optional[SecretCache] = None,
        resolver: Optional[PlaceholderResolver] = None,
        dns_provider: Optional[IDNSProvider] = None,
        notifier: Optional[INotifier] = None,
        command_timeout: Optional[float] = 600.0,
    ):
        self.builder = builder
        self.executor = executor
        self.target = target
        self.secret_source = secret_source
        self.cache = cache
        self.resolver = resolver or PlaceholderResolver()
        self.dns_provider = dns_provider
        self.notifier = notifier
        self.command_timeout = command_timeout

    def run(
        self,
        request: DeploymentRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        """
        Run the request to completion.

        Returns:
            RunResult in DONE or FAILED state; call ``raise_for_status()``
            to turn a failure into an exception
        """
        if not request.trace_id:
            request = dataclasses.replace(request, trace_id=str(uuid4()))

        result = RunResult(trace_id=request.trace_id)
        result.transitions.append(Transition(RunState.INIT))
        logger.info(
            "Run %s started: %s %s (%s/%s, environment=%s)",
            request.trace_id,
            request.method.value,
            request.source.repo,
            request.metadata.project_name,
            request.metadata.component,
            request.metadata.environment,
        )

        try:
            request.validate()
        except ValidationError as e:
            return self._fail(result, request, "Invalid Deployment Request", e)

        secrets: Dict[str, str] = {}
        if request.setup.inject_secret.enable:
            try:
                secrets = self.fetch_secrets(request)
            except SecretFetchError as e:
                return self._fail(result, request, "Secret Fetch Failed", e)
            self._advance(result, RunState.SECRETS_FETCHED, f"{len(secrets)} secrets")

        try:
            result.output = self._execute(request, secrets, cancel_event)
        except RemoteExecutionError as e:
            result.output = e.output
            return self._fail(result, request, self._title(request, False), classify_failure(e))
        except (ConfigurationError, ValidationError) as e:
            return self._fail(result, request, self._title(request, False), e)
        self._advance(result, RunState.REMOTE_EXECUTED)

        self._run_post_actions(request, result)
        self._advance(result, RunState.POST_ACTIONS_COMPLETE)
        self._advance(result, RunState.DONE)

        if result.degraded:
            logger.warning(
                "Run %s succeeded with %d failed post action(s)",
                request.trace_id,
                len(result.side_effect_errors),
            )
        else:
            logger.info("Run %s completed successfully", request.trace_id)
        return result

    def fetch_secrets(self, request: DeploymentRequest) -> Dict[str, str]:
        """
        Resolve the request's secret mappings, consulting the cache first.

        Raises:
            SecretFetchError: If any secret cannot be resolved
        """
        inject = request.setup.inject_secret
        if self.secret_source is None:
            raise SecretFetchError("Secret injection requested but no secret source is configured")

        resolved: Dict[str, str] = {}
        missing: List[SecretMapping] = []
        for mapping in inject.secrets:
            if self.cache is not None:
                value, found = self.cache.get(self._cache_key(request, mapping))
                if found:
                    resolved[mapping.env_name] = value
                    continue
            missing.append(mapping)

        logger.info(
            "Fetching %d secret(s) for %s/%s (%d cached)",
            len(missing),
            inject.project,
            inject.environment,
            len(resolved),
        )
        if not missing:
            return resolved

        try:
            fetched = self.secret_source.fetch(inject.project, inject.environment, missing)
        except SecretFetchError:
            raise
        except Exception as e:
            raise SecretFetchError(f"Secret source failed: {e}")

        for mapping in missing:
            if mapping.env_name not in fetched:
                raise SecretFetchError(
                    f"Secret source returned no value for {mapping.secret_name} "
                    f"(path {mapping.path})"
                )
            resolved[mapping.env_name] = fetched[mapping.env_name]

        if self.cache is not None:
            for mapping in missing:
                self.cache.put(self._cache_key(request, mapping), fetched[mapping.env_name])
        return resolved

    @staticmethod
    def _cache_key(request: DeploymentRequest, mapping: SecretMapping):
        inject = request.setup.inject_secret
        return SecretCache.make_key(
            inject.project, inject.environment, mapping.path, mapping.secret_name
        )

    def _execute(
        self,
        request: DeploymentRequest,
        secrets: Dict[str, str],
        cancel_event: Optional[threading.Event],
    ) -> str:
        plan = self.builder.build(request, secrets)
        if plan.aborted:
            raise ValidationError(f"Refusing to build command: {plan.steps[0].message}")

        command = self.builder.renderer.render(plan)
        logger.info(
            "Built %s command for %s: %s",
            request.method.value,
            request.source.repo,
            preview(command, secrets),
        )

        env = {name: value for name, value in secrets.items() if name != PRIVATE_KEY_ENV}
        return self.executor.execute(
            self.target.address,
            self.target.username,
            self.target.private_key,
            command,
            env=env,
            timeout=self.command_timeout,
            cancel_event=cancel_event,
        )

    def _run_post_actions(self, request: DeploymentRequest, result: RunResult) -> None:
        post = request.post

        if request.is_deploy and post.setup_domain.enable:
            self._best_effort(
                result,
                "DNS upsert",
                lambda: self._upsert_dns(post.setup_domain.name, post.setup_domain.value),
            )
        elif not request.is_deploy and post.cleanup_domain.enable:
            self._best_effort(
                result,
                "DNS removal",
                lambda: self._remove_dns(post.cleanup_domain.name),
            )

        if post.notify.enable:
            self._best_effort(
                result,
                "success notification",
                lambda: self._send_notification(request, self._title(request, True)),
            )

    def _upsert_dns(self, name: str, placeholder: str) -> None:
        if self.dns_provider is None:
            raise SideEffectError("DNS setup requested but no DNS provider is configured")
        address = self.resolver.resolve(placeholder)
        logger.info("Ensuring DNS record %s -> %s (%s)", name, address, placeholder)
        self.dns_provider.upsert(name, address)

    def _remove_dns(self, name: str) -> None:
        if self.dns_provider is None:
            raise SideEffectError("DNS cleanup requested but no DNS provider is configured")
        logger.info("Removing DNS record %s", name)
        self.dns_provider.remove(name)

    def _send_notification(
        self,
        request: DeploymentRequest,
        title: str,
        error: Optional[Exception] = None,
    ) -> None:
        if self.notifier is None:
            raise SideEffectError("Notification requested but no notifier is configured")

        message = f"{title} for {request.metadata.project_name}"
        if error is not None:
            message = f"{message}\nError: {error}"
        self.notifier.send(title, message, error is None, self._notification_metadata(request))

    @staticmethod
    def _notification_metadata(request: DeploymentRequest) -> Dict[str, str]:
        metadata = {
            "Project": request.metadata.project_name,
            "Component": request.metadata.component,
            "Environment": request.metadata.environment,
            "Method": request.method.value,
            "Repo": request.source.repo,
        }
        if request.source.branch:
            metadata["Branch"] = request.source.branch
        if request.source.commit:
            metadata["Commit"] = request.source.commit
        if request.source.pr_number:
            metadata["PR"] = request.source.pr_number
        if request.trace_id:
            metadata["Trace ID"] = request.trace_id
        return metadata

    @staticmethod
    def _title(request: DeploymentRequest, success: bool) -> str:
        noun = "Deployment" if request.is_deploy else "Cleanup"
        return f"{noun} {'Successful' if success else 'Failed'}"

    def _best_effort(self, result: RunResult, action: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except DeployPilotError as e:
            logger.error("Run %s: %s failed: %s", result.trace_id, action, e)
            result.side_effect_errors.append(e)
        except Exception as e:
            logger.error("Run %s: %s failed: %s", result.trace_id, action, e, exc_info=True)
            result.side_effect_errors.append(SideEffectError(f"{action} failed: {e}"))

    def _fail(
        self,
        result: RunResult,
        request: DeploymentRequest,
        title: str,
        error: DeployPilotError,
    ) -> RunResult:
        logger.error("Run %s failed: %s", result.trace_id, error)
        if isinstance(error, RemoteExecutionError) and error.output:
            logger.error("Run %s remote output:\n%s", result.trace_id, error.output)

        result.error = error
        self._advance(result, RunState.FAILED, str(error))

        if self.notifier is not None:
            self._best_effort(
                result,
                "failure notification",
                lambda: self._send_notification(request, title, error),
            )
        return result

    @staticmethod
    def _advance(result: RunResult, state: RunState, note: str = "") -> None:
        if not result.state.can_transition_to(state):
            raise RuntimeError(f"Invalid run transition {result.state.value} -> {state.value}")
        result.state = state
        result.transitions.append(Transition(state, note=note))
