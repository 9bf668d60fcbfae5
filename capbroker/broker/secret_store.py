"""
SecretStore - resolves opaque secret references to plaintext values.

Backed by the ProviderRegistry. A missing secret resolves to None; a
provider that cannot answer raises. Only rate-limited (retryable) provider
errors are retried, with exponential backoff. There is no fallback to a
different provider: the reference names the authoritative backend.
"""

import asyncio
import logging
from typing import Optional

from capbroker.providers.registry import ProviderRegistry
from capbroker.shared.constants import PROVIDER_BACKOFF_SECONDS, PROVIDER_MAX_RETRIES
from capbroker.shared.errors import ProviderError, SecretNotFoundError

logger = logging.getLogger(__name__)


class SecretStore:
    """Retrying front-end over the provider registry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        max_retries: int = PROVIDER_MAX_RETRIES,
        backoff_seconds: float = PROVIDER_BACKOFF_SECONDS,
    ):
        self._registry = registry
        self._max_retries = max(1, max_retries)
        self._backoff_seconds = backoff_seconds

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    async def resolve(self, reference: str) -> Optional[str]:
        attempt = 1
        while True:
            try:
                return await self._registry.resolve(reference)
            except ProviderError as e:
                if not e.retryable or attempt >= self._max_retries:
                    raise
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"{e.message} - retrying in {delay:.2f}s (attempt {attempt}/{self._max_retries})"
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def resolve_required(self, reference: str, label: str) -> str:
        """Resolve or raise SecretNotFoundError naming `label` (never the value)."""
        value = await self.resolve(reference)
        if value is None:
            raise SecretNotFoundError(label)
        return value
