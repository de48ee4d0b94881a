"""DeployPilot - Remote deployment orchestration over SSH."""

__version__ = "0.1.0"
__author__ = "DeployPilot Team"

from deploypilot.core.models import (
    DeployMethod,
    DeploymentRequest,
    Environment,
    RunResult,
    RunState,
    SecretMapping,
)

__all__ = [
    "DeployMethod",
    "DeploymentRequest",
    "Environment",
    "RunResult",
    "RunState",
    "SecretMapping",
    "__version__",
]
