"""
Error taxonomy for the broker.

Every failure the broker surfaces is a BrokerError with a stable `code`,
an HTTP status for transport layers, and a `retryable` flag. Messages must
never contain secret material: they are returned to the agent verbatim.

Secret-not-found is deliberately absent from the provider branch: providers
return None for a missing secret and only raise when they cannot answer.
"""

from dataclasses import dataclass, field
from typing import Any, Dict

# Configuration
E_CONFIG_INVALID = "CONFIG_INVALID"
E_SECRET_REFERENCE_INVALID = "SECRET_REFERENCE_INVALID"
E_SECRET_NOT_FOUND = "SECRET_NOT_FOUND"
E_SIGNING_FAILED = "SIGNING_FAILED"

# Policy
E_POLICY_DENIED = "POLICY_DENIED"
E_REASON_REQUIRED = "REASON_REQUIRED"
E_CAPABILITY_NOT_FOUND = "CAPABILITY_NOT_FOUND"
E_SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
E_BAD_REQUEST = "BAD_REQUEST"
E_INTERNAL = "INTERNAL_ERROR"

# Providers
E_PROVIDER_AUTH = "PROVIDER_AUTH_FAILED"
E_PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
E_PROVIDER_RATE_LIMITED = "PROVIDER_RATE_LIMITED"
E_PROVIDER_INTERNAL = "PROVIDER_INTERNAL"
E_PROVIDER_UNSUPPORTED = "PROVIDER_UNSUPPORTED_OPERATION"

# Upstream
E_UPSTREAM_FAILED = "UPSTREAM_FAILED"
E_UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"


@dataclass
class BrokerError(Exception):
    """Base broker exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 500
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ── Configuration errors: fail fast at load time ──────────────


class ConfigurationError(BrokerError):
    def __init__(self, message: str, code: str = E_CONFIG_INVALID, **details: Any):
        super().__init__(code=code, message=message, http_status=500, details=details)


class InvalidSecretReferenceError(ConfigurationError):
    def __init__(self, message: str, **details: Any):
        super().__init__(message, code=E_SECRET_REFERENCE_INVALID, **details)


class SecretNotFoundError(ConfigurationError):
    """A service credential reference resolved to nothing."""

    def __init__(self, reference_label: str):
        super().__init__(
            f"Secret for {reference_label} is not set in its provider",
            code=E_SECRET_NOT_FOUND,
        )


class SigningError(ConfigurationError):
    def __init__(self, message: str, **details: Any):
        super().__init__(message, code=E_SIGNING_FAILED, **details)


# ── Request-level errors ──────────────────────────────────────


class PolicyDeniedError(BrokerError):
    """Expected, terminal denial. Never conflated with a system error."""

    def __init__(self, reason: str, code: str = E_POLICY_DENIED):
        super().__init__(code=code, message=reason, http_status=403)

    @property
    def reason(self) -> str:
        return self.message


class ReasonRequiredError(PolicyDeniedError):
    def __init__(self, capability: str):
        super().__init__(f'Capability "{capability}" requires a reason', code=E_REASON_REQUIRED)


class CapabilityNotFoundError(BrokerError):
    def __init__(self, capability: str):
        super().__init__(
            code=E_CAPABILITY_NOT_FOUND,
            message=f"Unknown capability: {capability}",
            http_status=404,
        )


class SessionNotFoundError(BrokerError):
    """Unknown, expired and revoked sessions all look exactly like this."""

    def __init__(self):
        super().__init__(code=E_SESSION_NOT_FOUND, message="Session not found", http_status=401)


class BadRequestError(BrokerError):
    def __init__(self, message: str):
        super().__init__(code=E_BAD_REQUEST, message=message, http_status=400)


# ── Provider errors ───────────────────────────────────────────


class ProviderError(BrokerError):
    def __init__(self, provider: str, message: str, code: str = E_PROVIDER_INTERNAL,
                 retryable: bool = False, http_status: int = 502):
        super().__init__(
            code=code,
            message=f'Provider "{provider}": {message}',
            retryable=retryable,
            http_status=http_status,
            details={"provider": provider},
        )


class ProviderAuthError(ProviderError):
    def __init__(self, provider: str, message: str = "authentication failed"):
        super().__init__(provider, message, code=E_PROVIDER_AUTH)


class ProviderUnavailableError(ProviderError):
    def __init__(self, provider: str, message: str = "backend unavailable"):
        super().__init__(provider, message, code=E_PROVIDER_UNAVAILABLE, http_status=503)


class ProviderRateLimitedError(ProviderError):
    def __init__(self, provider: str, message: str = "rate limited"):
        super().__init__(provider, message, code=E_PROVIDER_RATE_LIMITED,
                         retryable=True, http_status=503)


class ProviderInternalError(ProviderError):
    def __init__(self, provider: str, message: str = "internal error"):
        super().__init__(provider, message, code=E_PROVIDER_INTERNAL)


class UnsupportedOperationError(ProviderError):
    def __init__(self, provider: str, operation: str):
        super().__init__(provider, f"does not support {operation}",
                         code=E_PROVIDER_UNSUPPORTED, http_status=400)


# ── Upstream errors ───────────────────────────────────────────


class UpstreamExecutionError(BrokerError):
    def __init__(self, service: str, message: str, code: str = E_UPSTREAM_FAILED,
                 http_status: int = 502):
        super().__init__(
            code=code,
            message=f'Request to service "{service}" failed: {message}',
            http_status=http_status,
            details={"service": service},
        )


class UpstreamTimeoutError(UpstreamExecutionError):
    def __init__(self, service: str, timeout_seconds: float):
        super().__init__(
            service,
            f"timed out after {timeout_seconds:g}s",
            code=E_UPSTREAM_TIMEOUT,
            http_status=504,
        )
