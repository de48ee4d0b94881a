"""Base interfaces for external collaborators."""

from abc import ABC, abstractmethod
from typing import Dict, Sequence

from deploypilot.core.models import SecretMapping


class ISecretSource(ABC):
    """Interface for upstream secret stores."""

    @abstractmethod
    def fetch(
        self,
        scope: str,
        environment: str,
        mappings: Sequence[SecretMapping],
    ) -> Dict[str, str]:
        """
        Fetch the secrets named by ``mappings``.

        Args:
            scope: Workspace/project the secrets belong to
            environment: Upstream environment slug
            mappings: Which secrets to fetch and the env var each becomes

        Returns:
            Mapping of env var name to secret value

        Raises:
            SecretFetchError: If any secret cannot be fetched or parsed
        """
        pass


class IDNSProvider(ABC):
    """Interface for DNS providers."""

    @abstractmethod
    def upsert(self, name: str, address: str) -> None:
        """
        Point an A record at ``address``; no-op if it already does.

        Raises:
            SideEffectError: If the provider rejects the change
        """
        pass

    @abstractmethod
    def remove(self, name: str) -> None:
        """
        Remove the A record for ``name``; no-op if there is none.

        Raises:
            SideEffectError: If the provider rejects the change
        """
        pass


class INotifier(ABC):
    """Interface for deployment notifications."""

    @abstractmethod
    def send(
        self,
        title: str,
        message: str,
        success: bool,
        metadata: Dict[str, str],
    ) -> None:
        """
        Send a notification.

        Raises:
            SideEffectError: If delivery fails
        """
        pass
