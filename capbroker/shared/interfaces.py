"""
Abstract interfaces (Ports) for the broker.
Following Dependency Inversion Principle - depend on abstractions, not concretions.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .errors import UnsupportedOperationError
from .models import HealthCheckResult, ProxyRequest, ProxyResponse


class ISecretsProvider(ABC):
    """
    Interface for a secrets backend.

    Paths handed to a provider are already canonicalized. `get_secret`
    returns None for a missing secret and raises a ProviderError only when
    the backend itself cannot answer (auth, availability, rate limits).
    """

    #: Provider type identifier, e.g. "filesystem", "env", "vault".
    type: str = ""

    #: True if set/delete are implemented.
    supports_writes: bool = False

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def initialize(self) -> None:
        """Connect / authenticate. Idempotent; raises on failure."""

    @abstractmethod
    async def get_secret(self, path: str) -> Optional[str]:
        """Return the secret value, or None if it does not exist."""

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Is the provider reachable and authenticated?"""

    @abstractmethod
    async def dispose(self) -> None:
        """Release connections and cached credentials."""

    async def set_secret(self, path: str, value: str) -> None:
        raise UnsupportedOperationError(self.name, "set_secret")

    async def delete_secret(self, path: str) -> None:
        raise UnsupportedOperationError(self.name, "delete_secret")

    async def list_secrets(self, prefix: Optional[str] = None) -> list[str]:
        raise UnsupportedOperationError(self.name, "list_secrets")


class IUpstreamClient(ABC):
    """Interface for the outbound HTTP call to a third-party API."""

    @abstractmethod
    async def send(
        self,
        service: str,
        url: str,
        request: ProxyRequest,
        timeout_seconds: float,
    ) -> ProxyResponse:
        """Execute the request. Raises UpstreamExecutionError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Close pooled connections."""
