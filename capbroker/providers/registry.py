"""
Provider Registry - maps provider types to factories and names to instances.

The registry is the only place that turns a secret reference into a backend
call: references are parsed (and their paths canonicalized) here, so every
provider sees the same traversal-free paths.
"""

import logging
from typing import Callable, Iterable, Optional

from capbroker.shared.constants import DEFAULT_PROVIDER_NAME
from capbroker.shared.errors import ConfigurationError, ProviderError, ProviderInternalError
from capbroker.shared.interfaces import ISecretsProvider
from capbroker.shared.models import HealthCheckResult
from capbroker.shared.schemas import ProviderConfig
from capbroker.shared.security import parse_reference

from .env import EnvProvider
from .filesystem import FilesystemProvider
from .vault import VaultProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderConfig], ISecretsProvider]


class ProviderRegistry:
    """
    Owns provider factories (by type) and provider instances (by name).

    Instance-scoped rather than module-global so tests and multiple brokers
    never share state.
    """

    def __init__(self, default_provider: str = DEFAULT_PROVIDER_NAME):
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[str, ISecretsProvider] = {}
        self._default_provider = default_provider

        self.register_type("filesystem", lambda c: FilesystemProvider(c.name, c.config))
        self.register_type("env", lambda c: EnvProvider(c.name, c.config))
        self.register_type("vault", lambda c: VaultProvider(c.name, c.config))

    @property
    def default_provider(self) -> str:
        return self._default_provider

    @property
    def types(self) -> list[str]:
        return sorted(self._factories)

    @property
    def names(self) -> set[str]:
        return set(self._instances)

    def register_type(self, type_name: str, factory: ProviderFactory) -> None:
        if type_name in self._factories:
            raise ConfigurationError(f'Provider type "{type_name}" is already registered')
        self._factories[type_name] = factory

    def configure(self, provider_configs: Iterable[ProviderConfig]) -> None:
        """
        Construct provider instances (not yet initialized).

        All types are checked before anything is constructed, so a typo in
        the last entry never leaves half a registry behind.
        """
        configs = list(provider_configs)
        for config in configs:
            if config.type not in self._factories:
                raise ConfigurationError(
                    f'Unknown provider type "{config.type}". Available types: {", ".join(self.types)}',
                    provider=config.name,
                )
            if config.name in self._instances:
                raise ConfigurationError(f'Provider "{config.name}" is already configured')

        for config in configs:
            self._instances[config.name] = self._factories[config.type](config)
            logger.debug(f"Configured provider '{config.name}' (type={config.type})")

    def add(self, provider: ISecretsProvider) -> None:
        """Register an already-constructed instance."""
        if provider.name in self._instances:
            raise ConfigurationError(f'Provider "{provider.name}" is already configured')
        self._instances[provider.name] = provider

    async def initialize_all(self) -> None:
        for name, provider in self._instances.items():
            await provider.initialize()
            logger.info(f"Provider '{name}' initialized (type={provider.type})")

    def get(self, name: str) -> Optional[ISecretsProvider]:
        return self._instances.get(name)

    async def resolve(self, reference: str) -> Optional[str]:
        """Resolve `provider://path` (or a bare path) to its value, or None."""
        ref = parse_reference(reference, self._default_provider)
        provider = self._instances.get(ref.provider)
        if provider is None:
            raise ConfigurationError(
                f'Provider "{ref.provider}" not found. '
                f'Available providers: {", ".join(sorted(self._instances)) or "none"}'
            )
        return await provider.get_secret(ref.path)

    async def health_check_all(self) -> dict[str, HealthCheckResult]:
        results = {}
        for name, provider in self._instances.items():
            try:
                results[name] = await provider.health_check()
            except ProviderError as e:
                results[name] = HealthCheckResult(healthy=False, error=e.message)
        return results

    async def dispose_all(self) -> None:
        """Dispose every provider, then report all failures at once."""
        failures = []
        for name, provider in self._instances.items():
            try:
                await provider.dispose()
            except Exception as e:
                failures.append(f"{name}: {type(e).__name__}: {e}")
                logger.error(f"Failed to dispose provider '{name}': {e}")
        self._instances.clear()
        if failures:
            raise ProviderInternalError("registry", f"some providers failed to dispose ({'; '.join(failures)})")
