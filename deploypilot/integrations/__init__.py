"""External collaborator adapters package."""

from deploypilot.integrations.base import IDNSProvider, INotifier, ISecretSource
from deploypilot.integrations.cloudflare_adapter import CloudflareDNSProvider
from deploypilot.integrations.discord_adapter import DiscordNotifier
from deploypilot.integrations.infisical_adapter import InfisicalSecretSource

__all__ = [
    "ISecretSource",
    "IDNSProvider",
    "INotifier",
    "InfisicalSecretSource",
    "CloudflareDNSProvider",
    "DiscordNotifier",
]
