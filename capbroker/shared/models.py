"""
Domain models for the broker.
Pure data classes with no external dependencies (Clean Architecture inner layer).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class RuleEffect(Enum):
    """Verdict a matching rule produces."""
    ALLOW = "allow"
    DENY = "deny"


class AuditOutcome(Enum):
    """Outcome recorded for every mediated request."""
    ALLOWED = "allowed"
    DENIED = "denied"
    ERROR = "error"


class DispatchState(Enum):
    """State machine states for a single mediated call."""
    RECEIVED = "received"
    CAPABILITY_RESOLVED = "capability_resolved"
    POLICY_CHECKED = "policy_checked"
    SESSION_ESTABLISHED = "session_established"
    SECRET_RESOLVED = "secret_resolved"
    SIGNED = "signed"
    EXECUTED = "executed"
    LOGGED = "logged"
    RESPONDED = "responded"


@dataclass(frozen=True)
class Rule:
    """One allow/deny rule. Patterns are matched by the PolicyEngine."""
    effect: RuleEffect
    method: str   # "GET", "post", or "*"
    path: str     # "/v1/customers/*", "*", "/v1/**/refunds"

    def describe(self) -> str:
        return f"{self.effect.value} {self.method} {self.path}"


@dataclass(frozen=True)
class PolicyDecision:
    """Result of evaluating a rule list against (method, path)."""
    allowed: bool
    reason: str
    rule: Optional[Rule] = None


@dataclass(frozen=True)
class ProviderReference:
    """A parsed `provider://path` secret reference."""
    provider: str
    path: str

    def __str__(self) -> str:
        return f"{self.provider}://{self.path}"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of a provider health probe."""
    healthy: bool
    error: Optional[str] = None
    latency_ms: Optional[float] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"healthy": self.healthy}
        if self.error is not None:
            d["error"] = self.error
        if self.latency_ms is not None:
            d["latency_ms"] = round(self.latency_ms, 2)
        return d


@dataclass
class Session:
    """
    A time-bounded, revocable grant of one capability.

    Only `revoked` is ever mutated after creation. The id is a bearer
    credential for the proxy, so it is never written to the audit log.
    """
    id: str
    capability: str
    service: str
    created_at: float     # time.time()
    expires_at: float
    reason: Optional[str] = None
    revoked: bool = False

    def is_valid(self, now: float) -> bool:
        # Unusable the instant expires_at is reached: no grace window.
        return not self.revoked and now < self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "capability": self.capability,
            "service": self.service,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "reason": self.reason,
        }


@dataclass
class ProxyRequest:
    """Outbound request shape, before signing."""
    service: str
    method: str
    path: str                 # may carry a query string
    headers: dict = field(default_factory=dict)
    body: Optional[str] = None

    @property
    def path_only(self) -> str:
        return self.path.split("?", 1)[0]

    @property
    def query_string(self) -> str:
        return self.path.split("?", 1)[1] if "?" in self.path else ""


@dataclass
class SignedRequest:
    """Headers and query parameters a signing scheme adds to a request."""
    headers: dict = field(default_factory=dict)
    query_params: dict = field(default_factory=dict)  # ordered; appended after the caller's query


@dataclass
class ProxyResponse:
    """Upstream response, passed back to the caller verbatim (minus secrets)."""
    status: int
    body: str = ""
    headers: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"status": self.status, "body": self.body}


@dataclass
class AuditRecord:
    """One append-only audit entry. Contains identifiers only, never secrets."""
    capability: str
    service: str
    method: str
    path: str
    outcome: AuditOutcome
    status: Optional[int] = None
    latency_ms: Optional[float] = None
    denial_reason: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "capability": self.capability,
            "service": self.service,
            "method": self.method,
            "path": self.path,
            "outcome": self.outcome.value,
            "status": self.status,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "denial_reason": self.denial_reason,
            "error_code": self.error_code,
        }


@dataclass
class ToolCall:
    """A tool invocation from the agent-facing transport."""
    tool_name: str
    arguments: dict = field(default_factory=dict)


@dataclass
class ToolResult:
    """Result of a tool call. `data` is JSON-serializable; `error` is sanitized."""
    tool_name: str
    success: bool
    data: Any = None
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        if self.success:
            return {"tool": self.tool_name, "success": True, "result": self.data}
        return {"tool": self.tool_name, "success": False, "error": self.error}


def iso_millis(dt: datetime) -> str:
    """`2024-01-15T10:30:00.000Z`: UTC, millisecond precision, literal Z."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _iso(ts: float) -> str:
    return iso_millis(datetime.fromtimestamp(ts, tz=timezone.utc))
