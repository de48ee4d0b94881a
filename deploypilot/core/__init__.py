"""Core package for DeployPilot."""

from deploypilot.core.cache import SecretCache
from deploypilot.core.command import CommandPlan, RemoteCommandBuilder, ShellRenderer
from deploypilot.core.exceptions import DeployPilotError
from deploypilot.core.executor import RemoteExecutor
from deploypilot.core.models import DeploymentRequest, RunResult, RunState
from deploypilot.core.resolver import PlaceholderResolver
from deploypilot.core.sequencer import DeploymentSequencer, RemoteTarget

__all__ = [
    "SecretCache",
    "CommandPlan",
    "RemoteCommandBuilder",
    "ShellRenderer",
    "DeployPilotError",
    "RemoteExecutor",
    "DeploymentRequest",
    "RunResult",
    "RunState",
    "PlaceholderResolver",
    "DeploymentSequencer",
    "RemoteTarget",
]
