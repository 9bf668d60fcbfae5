"""Process-environment secrets provider (`env://VAR_NAME`)."""

import logging
import os
from typing import Any, Optional

from capbroker.shared.errors import InvalidSecretReferenceError, ProviderInternalError
from capbroker.shared.interfaces import ISecretsProvider
from capbroker.shared.models import HealthCheckResult

logger = logging.getLogger(__name__)


class EnvProvider(ISecretsProvider):
    """Reads secrets from environment variables, optionally under a prefix."""

    type = "env"

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name)
        self._prefix = str(config.get("prefix", ""))
        self._initialized = False

    async def initialize(self) -> None:
        self._initialized = True

    async def get_secret(self, path: str) -> Optional[str]:
        self._ensure_initialized()
        if "/" in path:
            raise InvalidSecretReferenceError(f"Environment variable names cannot contain '/': {path!r}")
        return os.environ.get(f"{self._prefix}{path}")

    async def list_secrets(self, prefix: Optional[str] = None) -> list[str]:
        self._ensure_initialized()
        wanted = f"{self._prefix}{prefix or ''}"
        return sorted(
            key[len(self._prefix):] for key in os.environ
            if key.startswith(wanted)
        )

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(healthy=True, latency_ms=0.0)

    async def dispose(self) -> None:
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ProviderInternalError(self.name, "not initialized, call initialize() first")
