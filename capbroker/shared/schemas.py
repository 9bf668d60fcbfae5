"""
Pydantic schemas for the broker configuration: the single source of truth.

Services, capabilities and providers are validated once, eagerly, when the
configuration is loaded. Every problem surfaces as a ConfigurationError
before the broker serves a single request:
  - auth descriptors are a discriminated union on `type`, so a missing
    field is caught here instead of at signing time
  - capabilities must reference a known service and carry a valid TTL
  - rules must parse
  - secret references must parse and name a configured provider
"""

import re
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from capbroker.broker.policy import parse_rules
from capbroker.shared.constants import DEFAULT_PROVIDER_NAME, DEFAULT_RECV_WINDOW
from capbroker.shared.errors import ConfigurationError, InvalidSecretReferenceError
from capbroker.shared.models import Rule
from capbroker.shared.security import parse_reference

_TTL_RE = re.compile(r"^(\d+)([smhd])$")
_TTL_MULTIPLIERS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_ttl(ttl: str) -> int:
    """Parse `30s`, `15m`, `1h`, `7d` into seconds. Must be positive."""
    match = _TTL_RE.match(ttl.strip()) if isinstance(ttl, str) else None
    if not match:
        raise ValueError(f"Invalid TTL format: {ttl!r} (expected e.g. 30s, 15m, 1h, 1d)")
    seconds = int(match.group(1)) * _TTL_MULTIPLIERS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"TTL must be positive: {ttl!r}")
    return seconds


def _alias(*names: str) -> Any:
    return Field(validation_alias=AliasChoices(*names))


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ── Auth descriptors ─────────────────────────────────────────
# Every credential field holds a secret reference, never a plaintext value.


class BearerAuth(_Strict):
    """Authorization: Bearer <key>."""
    type: Literal["bearer"]
    key: str

    def references(self) -> dict[str, str]:
        return {"key": self.key}


class HeadersAuth(_Strict):
    """Static header set merged into every request."""
    type: Literal["headers"]
    headers: dict[str, str] = Field(min_length=1)

    def references(self) -> dict[str, str]:
        return {f"headers.{name}": ref for name, ref in self.headers.items()}


class HmacQueryAuth(_Strict):
    """Query-param signed HMAC (signature over query + timestamp)."""
    type: Literal["hmac-query", "hmac-mexc"]
    api_key: str = _alias("api_key", "apiKey")
    api_secret: str = _alias("api_secret", "apiSecret")

    def references(self) -> dict[str, str]:
        return {"api_key": self.api_key, "api_secret": self.api_secret}


class HmacRecvWindowAuth(_Strict):
    """Header-signed HMAC with a receive window."""
    type: Literal["hmac-recv-window", "hmac-bybit"]
    api_key: str = _alias("api_key", "apiKey")
    api_secret: str = _alias("api_secret", "apiSecret")
    recv_window: str = Field(
        default=DEFAULT_RECV_WINDOW,
        validation_alias=AliasChoices("recv_window", "recvWindow"),
    )

    @field_validator("recv_window", mode="before")
    @classmethod
    def _recv_window_digits(cls, v: Any) -> str:
        v = str(v)
        if not v.isdigit():
            raise ValueError("recv_window must be a positive integer (milliseconds)")
        return v

    def references(self) -> dict[str, str]:
        return {"api_key": self.api_key, "api_secret": self.api_secret}


class HmacPassphraseAuth(_Strict):
    """Header-signed HMAC, base64 signature, with passphrase."""
    type: Literal["hmac-passphrase", "hmac-okx"]
    api_key: str = _alias("api_key", "apiKey")
    api_secret: str = _alias("api_secret", "apiSecret")
    passphrase: str

    def references(self) -> dict[str, str]:
        return {
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "passphrase": self.passphrase,
        }


AuthDescriptor = Annotated[
    Union[BearerAuth, HeadersAuth, HmacQueryAuth, HmacRecvWindowAuth, HmacPassphraseAuth],
    Field(discriminator="type"),
]


# ── Services, capabilities, providers ────────────────────────


class ServiceConfig(_Strict):
    name: str = ""
    base_url: str = _alias("base_url", "baseUrl")
    auth: AuthDescriptor

    @field_validator("base_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL: {v!r}")
        return v.rstrip("/")


class CapabilityConfig(_Strict):
    name: str = ""
    service: str
    ttl: str
    rules: tuple[Rule, ...] = ()
    auto_approve: bool = Field(default=False, validation_alias=AliasChoices("auto_approve", "autoApprove"))
    requires_reason: bool = Field(default=False, validation_alias=AliasChoices("requires_reason", "requiresReason"))
    unrestricted: bool = False

    @field_validator("ttl")
    @classmethod
    def _valid_ttl(cls, v: str) -> str:
        parse_ttl(v)
        return v

    @field_validator("rules", mode="before")
    @classmethod
    def _parse_rules(cls, v: Any) -> tuple[Rule, ...]:
        if v is None:
            return ()
        if not isinstance(v, (list, tuple)):
            raise ValueError("rules must be an ordered list")
        try:
            return parse_rules(v)
        except ConfigurationError as e:
            raise ValueError(e.message) from e

    @property
    def ttl_seconds(self) -> int:
        return parse_ttl(self.ttl)

    def to_listing(self) -> dict:
        return {
            "name": self.name,
            "service": self.service,
            "ttl": self.ttl,
            "autoApprove": self.auto_approve,
            "requiresReason": self.requires_reason,
        }


class ProviderConfig(_Strict):
    name: str = Field(pattern=r"^[a-zA-Z][a-zA-Z0-9_-]*$")
    type: str
    config: dict[str, Any] = Field(default_factory=dict)


class BrokerConfig(_Strict):
    services: dict[str, ServiceConfig] = Field(default_factory=dict)
    capabilities: dict[str, CapabilityConfig] = Field(default_factory=dict)
    providers: list[ProviderConfig] = Field(default_factory=list)
    default_provider: str = Field(
        default=DEFAULT_PROVIDER_NAME,
        validation_alias=AliasChoices("default_provider", "defaultProvider"),
    )

    @model_validator(mode="after")
    def _link(self) -> "BrokerConfig":
        for name, service in self.services.items():
            service.name = name
        for name, cap in self.capabilities.items():
            cap.name = name
            if cap.service not in self.services:
                raise ValueError(f'Capability "{name}" references unknown service "{cap.service}"')
        seen = set()
        for provider in self.providers:
            if provider.name in seen:
                raise ValueError(f'Duplicate provider name "{provider.name}"')
            seen.add(provider.name)
        return self

    def validate_references(self, provider_names: set[str]) -> None:
        """Every credential reference must parse and name a known provider."""
        for service in self.services.values():
            for label, reference in service.auth.references().items():
                try:
                    ref = parse_reference(reference, self.default_provider)
                except InvalidSecretReferenceError as e:
                    raise ConfigurationError(
                        f'Service "{service.name}" auth.{label}: {e.message}'
                    ) from e
                if ref.provider not in provider_names:
                    raise ConfigurationError(
                        f'Service "{service.name}" auth.{label} uses unknown provider "{ref.provider}"',
                        available=sorted(provider_names),
                    )

    def get_capability(self, name: str) -> Optional[CapabilityConfig]:
        return self.capabilities.get(name)


def parse_broker_config(data: dict) -> BrokerConfig:
    """Validate a raw config mapping. Raises ConfigurationError."""
    try:
        return BrokerConfig.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors(include_url=False, include_input=False)
        ]
        raise ConfigurationError("Invalid broker configuration", errors=errors) from e
