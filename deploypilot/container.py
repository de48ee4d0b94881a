"""
Dependency container.

Builds the sequencer and its collaborators from an ``AppConfig``. This is
the composition root: nothing else in the package reads configuration.

Usage:
    container = Container(ConfigManager(path).load())
    result = container.sequencer().run(request)
"""

import logging
from typing import Optional

from deploypilot.core.cache import SecretCache
from deploypilot.core.command import RemoteCommandBuilder
from deploypilot.core.executor import RemoteExecutor
from deploypilot.core.resolver import PlaceholderResolver
from deploypilot.core.sequencer import DeploymentSequencer, RemoteTarget
from deploypilot.integrations.base import IDNSProvider, INotifier, ISecretSource
from deploypilot.integrations.cloudflare_adapter import CloudflareDNSProvider
from deploypilot.integrations.discord_adapter import DiscordNotifier
from deploypilot.integrations.infisical_adapter import InfisicalSecretSource
from deploypilot.utils.config import AppConfig

logger = logging.getLogger(__name__)


class Container:
    """
    Lazily creates and holds long-lived components.

    The secret cache lives as long as the container, so sequencers created
    from the same container share it.
    """

    def __init__(self, config: AppConfig):
        self.config = config

        self._cache: Optional[SecretCache] = None
        self._resolver: Optional[PlaceholderResolver] = None
        self._secret_source: Optional[ISecretSource] = None
        self._dns_provider: Optional[IDNSProvider] = None
        self._notifier: Optional[INotifier] = None

    @property
    def cache(self) -> SecretCache:
        if self._cache is None:
            self._cache = SecretCache(ttl=self.config.secret_cache_ttl)
        return self._cache

    @property
    def resolver(self) -> PlaceholderResolver:
        if self._resolver is None:
            self._resolver = PlaceholderResolver(self.config.ip_mappings)
        return self._resolver

    @property
    def secret_source(self) -> Optional[ISecretSource]:
        """Infisical source, or None when not configured."""
        if self._secret_source is None and self.config.has_secret_source:
            self._secret_source = InfisicalSecretSource(
                base_url=self.config.infisical.base_url,
                service_token=self.config.infisical.service_token,
                timeout=self.config.infisical.timeout,
            )
        return self._secret_source

    @property
    def dns_provider(self) -> Optional[IDNSProvider]:
        if self._dns_provider is None and self.config.has_dns_provider:
            self._dns_provider = CloudflareDNSProvider(
                api_token=self.config.cloudflare.api_token,
                zone_id=self.config.cloudflare.zone_id,
                ttl=self.config.cloudflare.ttl,
                proxied=self.config.cloudflare.proxied,
            )
        return self._dns_provider

    @property
    def notifier(self) -> Optional[INotifier]:
        if self._notifier is None and self.config.has_notifier:
            self._notifier = DiscordNotifier(self.config.discord.webhook_url)
        return self._notifier

    def builder(self) -> RemoteCommandBuilder:
        return RemoteCommandBuilder(self.config.ssh.base_path, git_host=self.config.ssh.git_host)

    def executor(self) -> RemoteExecutor:
        ssh = self.config.ssh
        return RemoteExecutor(
            known_hosts_file=ssh.known_hosts_file or None,
            strict_host_key_checking=ssh.strict_host_key_checking,
            connect_timeout=ssh.connect_timeout,
        )

    def target(self) -> RemoteTarget:
        ssh = self.config.ssh
        return RemoteTarget(address=ssh.address, username=ssh.user, private_key=ssh.private_key)

    def sequencer(self, command_timeout: Optional[float] = None) -> DeploymentSequencer:
        """
        Create a sequencer wired to the configured collaborators.

        Raises:
            ConfigurationError: If the SSH settings are incomplete
        """
        self.config.validate()

        for name, component in (
            ("secret source", self.secret_source),
            ("DNS provider", self.dns_provider),
            ("notifier", self.notifier),
        ):
            if component is None:
                logger.warning("No %s configured; related steps will be skipped or fail", name)

        return DeploymentSequencer(
            builder=self.builder(),
            executor=self.executor(),
            target=self.target(),
            secret_source=self.secret_source,
            cache=self.cache,
            resolver=self.resolver,
            dns_provider=self.dns_provider,
            notifier=self.notifier,
            command_timeout=command_timeout or self.config.ssh.command_timeout,
        )
