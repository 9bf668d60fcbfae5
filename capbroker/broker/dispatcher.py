"""
Dispatcher - the end-to-end mediation flow for one agent request.

  RECEIVED -> CAPABILITY_RESOLVED -> POLICY_CHECKED -> SESSION_ESTABLISHED
  -> SECRET_RESOLVED -> SIGNED -> EXECUTED -> LOGGED -> RESPONDED

A policy denial short-circuits to LOGGED with outcome `denied` and never
touches a secret or the network. Provider, signing and upstream failures are
errors (not denials): they are audited with outcome `error` and re-raised as
sanitized BrokerErrors. Nothing returned to the caller ever contains a
resolved secret value.

The Dispatcher owns the registry, session table, audit log and upstream
client; nothing else holds write access to all of them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlencode

from capbroker.broker.policy import PolicyEngine
from capbroker.broker.secret_store import SecretStore
from capbroker.broker.sessions import SessionManager, short_id
from capbroker.broker.signing import RequestSigner
from capbroker.broker.upstream import UpstreamClient
from capbroker.providers.registry import ProviderRegistry
from capbroker.shared.audit_log import AuditLogger
from capbroker.shared.config import AppConfig, effective_provider_configs, load_broker_config
from capbroker.shared.constants import ALLOWED_METHODS, HOP_BY_HOP_HEADERS, UPSTREAM_TIMEOUT_SECONDS
from capbroker.shared.errors import (
    BadRequestError,
    BrokerError,
    CapabilityNotFoundError,
    PolicyDeniedError,
    ReasonRequiredError,
    SessionNotFoundError,
    UpstreamExecutionError,
)
from capbroker.shared.interfaces import IUpstreamClient
from capbroker.shared.models import (
    AuditOutcome,
    AuditRecord,
    DispatchState,
    ProxyRequest,
    ProxyResponse,
)
from capbroker.shared.schemas import BrokerConfig, CapabilityConfig
from capbroker.shared.security import canonicalize_request_path, has_forbidden_header_chars, scrub_secrets

logger = logging.getLogger(__name__)


@dataclass
class _Call:
    """Bookkeeping for one mediated call."""
    capability: str
    service: str
    method: str
    path: str
    started: float = field(default_factory=time.perf_counter)
    state: DispatchState = DispatchState.RECEIVED

    def advance(self, state: DispatchState) -> None:
        logger.debug(f"{self.capability} {self.method} {self.path.split('?', 1)[0]}: "
                     f"{self.state.value} -> {state.value}")
        self.state = state

    @property
    def latency_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class Dispatcher:
    """Composes policy, sessions, secrets, signing, upstream and audit."""

    def __init__(
        self,
        broker_config: BrokerConfig,
        secret_store: SecretStore,
        sessions: SessionManager,
        audit_log: AuditLogger,
        upstream: Optional[IUpstreamClient] = None,
        policy: Optional[PolicyEngine] = None,
        signer: Optional[RequestSigner] = None,
        public_url: str = "http://127.0.0.1:9119",
        upstream_timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS,
    ):
        self._config = broker_config
        self._secrets = secret_store
        self._sessions = sessions
        self._audit = audit_log
        self._upstream = upstream or UpstreamClient()
        self._policy = policy or PolicyEngine()
        self._signer = signer or RequestSigner()
        self._public_url = public_url.rstrip("/")
        self._timeout = upstream_timeout_seconds
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    async def build(cls, app_config: AppConfig, broker_config: Optional[BrokerConfig] = None) -> "Dispatcher":
        """
        Wire a Dispatcher from configuration.

        Provider types and secret references are validated before any
        provider is initialized; any problem raises ConfigurationError.
        """
        broker_config = broker_config or load_broker_config(app_config.broker_config_path)
        registry = ProviderRegistry(default_provider=broker_config.default_provider)
        registry.configure(effective_provider_configs(broker_config, app_config))
        broker_config.validate_references(registry.names)
        try:
            await registry.initialize_all()
        except Exception:
            logger.error("Provider initialization failed, disposing the providers already started")
            try:
                await registry.dispose_all()
            except BrokerError as e:
                # Each failure is logged by dispose_all; the init error is the one to raise.
                logger.error(f"Cleanup after failed initialization: {e.code}")
            raise

        dispatcher = cls(
            broker_config=broker_config,
            secret_store=SecretStore(
                registry,
                max_retries=app_config.providers.max_retries,
                backoff_seconds=app_config.providers.backoff_seconds,
            ),
            sessions=SessionManager(),
            audit_log=AuditLogger(app_config.audit_dir),
            public_url=app_config.proxy.public_url,
            upstream_timeout_seconds=app_config.proxy.upstream_timeout_seconds,
        )
        logger.info(
            f"Dispatcher ready: {len(broker_config.services)} service(s), "
            f"{len(broker_config.capabilities)} capability(ies), "
            f"providers={sorted(registry.names)}"
        )
        return dispatcher

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def registry(self) -> ProviderRegistry:
        return self._secrets.registry

    @property
    def audit_log(self) -> AuditLogger:
        return self._audit

    # ── Tool operations ──────────────────────────────────────

    def list_services(self) -> list[dict]:
        return [cap.to_listing() for cap in self._config.capabilities.values()]

    async def execute(
        self,
        capability: str,
        method: str,
        path: str,
        body: Optional[str] = None,
        headers: Optional[dict] = None,
        reason: Optional[str] = None,
    ) -> ProxyResponse:
        """Policy-check, sign and forward one request under a fresh session."""
        call = _Call(capability=capability, service="", method=str(method).upper(), path=path)
        cap = self._resolve_capability(call)
        self._require_reason(call, cap, reason)
        self._check_policy(call, cap)

        session = self._sessions.create_session(cap.name, cap.service, cap.ttl_seconds, reason=reason)
        call.advance(DispatchState.SESSION_ESTABLISHED)
        logger.debug(f"execute: capability={cap.name} session={short_id(session.id)}")
        return await self._forward(call, cap, body, headers)

    async def issue_http_access(self, capability: str, reason: Optional[str] = None) -> dict:
        """
        Issue a session-bound proxy credential.

        The agent gets a URL on this broker and a bearer session id, never
        the underlying service secret. Policy is enforced per proxied request.
        """
        call = _Call(capability=capability, service="", method="-", path="/")
        cap = self._resolve_capability(call)
        self._require_reason(call, cap, reason)
        session = self._sessions.create_session(cap.name, cap.service, cap.ttl_seconds, reason=reason)
        logger.info(f"HTTP access issued: capability={cap.name} session={short_id(session.id)}")
        return {
            "url": f"{self._public_url}/{cap.service}",
            "headers": {"Authorization": f"Bearer {session.id}"},
            "expires": session.to_dict()["expires_at"],
        }

    async def proxy(
        self,
        session_id: str,
        service: str,
        method: str,
        path: str,
        body: Optional[str] = None,
        headers: Optional[dict] = None,
    ) -> ProxyResponse:
        """Forward a request made with a session from issue_http_access."""
        session = self._sessions.get_session(session_id)
        if session is None or session.service != service:
            raise SessionNotFoundError()
        cap = self._config.get_capability(session.capability)
        if cap is None:
            # Capability removed by a config reload: the session is dead too.
            self._sessions.revoke_session(session_id)
            raise SessionNotFoundError()

        call = _Call(capability=cap.name, service=cap.service, method=str(method).upper(), path=path)
        call.advance(DispatchState.CAPABILITY_RESOLVED)
        self._check_policy(call, cap)
        call.advance(DispatchState.SESSION_ESTABLISHED)
        return await self._forward(call, cap, body, headers)

    # ── Lifecycle ────────────────────────────────────────────

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sessions.run_sweeper(interval_seconds))

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self._upstream.close()
        await self._secrets.registry.dispose_all()

    # ── Steps ────────────────────────────────────────────────

    def _resolve_capability(self, call: _Call) -> CapabilityConfig:
        cap = self._config.get_capability(call.capability)
        if cap is None:
            self._deny(call, f"unknown capability: {call.capability}")
            raise CapabilityNotFoundError(call.capability)
        call.service = cap.service
        call.advance(DispatchState.CAPABILITY_RESOLVED)
        return cap

    def _require_reason(self, call: _Call, cap: CapabilityConfig, reason: Optional[str]) -> None:
        if cap.requires_reason and not (reason and reason.strip()):
            err = ReasonRequiredError(cap.name)
            self._deny(call, err.reason)
            raise err

    def _check_policy(self, call: _Call, cap: CapabilityConfig) -> None:
        if call.method not in ALLOWED_METHODS:
            self._deny(call, f"method not allowed: {call.method}")
            raise BadRequestError(f"Unsupported HTTP method: {call.method}")
        decision = self._policy.check(cap, call.method, call.path)
        call.advance(DispatchState.POLICY_CHECKED)
        if not decision.allowed:
            self._deny(call, decision.reason)
            raise PolicyDeniedError(decision.reason)
        call.path = canonicalize_request_path(call.path)

    async def _forward(
        self,
        call: _Call,
        cap: CapabilityConfig,
        body: Optional[str],
        headers: Optional[dict],
    ) -> ProxyResponse:
        service = self._config.services[cap.service]
        secret_values: list[str] = []
        try:
            forwarded = _forwardable_headers(headers)
            credentials = {}
            for label, reference in service.auth.references().items():
                value = await self._secrets.resolve_required(reference, f'service "{service.name}" auth.{label}')
                credentials[label] = value
                secret_values.append(value)
            call.advance(DispatchState.SECRET_RESOLVED)

            outbound = ProxyRequest(
                service=service.name,
                method=call.method,
                path=call.path,
                headers=forwarded,
                body=body,
            )
            signed = self._signer.sign(service.auth, credentials, outbound)
            signed_names = {name.lower() for name in signed.headers}
            outbound.headers = {
                k: v for k, v in outbound.headers.items() if k.lower() not in signed_names
            }
            outbound.headers.update(signed.headers)
            if body is not None and not any(k.lower() == "content-type" for k in outbound.headers):
                outbound.headers["Content-Type"] = "application/json"
            call.advance(DispatchState.SIGNED)

            url = f"{service.base_url}{call.path}"
            if signed.query_params:
                url += ("&" if "?" in url else "?") + urlencode(signed.query_params)

            response = await self._upstream.send(service.name, url, outbound, self._timeout)
            call.advance(DispatchState.EXECUTED)
        except BrokerError as e:
            logger.error(f"Dispatch failed at {call.state.value} for {call.capability}: {e.code}")
            self._record(call, AuditOutcome.ERROR, error_code=e.code)
            raise
        except Exception as e:
            # Type name only: the message may carry header or body content.
            logger.error(f"Dispatch failed at {call.state.value} for {call.capability}: {type(e).__name__}")
            err = UpstreamExecutionError(service.name, f"request failed at {call.state.value}")
            self._record(call, AuditOutcome.ERROR, error_code=err.code)
            raise err from e

        response.body = scrub_secrets(response.body, secret_values)
        response.headers = {k: scrub_secrets(v, secret_values) for k, v in response.headers.items()}
        self._record(call, AuditOutcome.ALLOWED, status=response.status)
        call.advance(DispatchState.RESPONDED)
        logger.info(
            f"{call.capability} {call.method} {call.path.split('?', 1)[0]} -> "
            f"{response.status} ({call.latency_ms:.0f}ms)"
        )
        return response

    def _deny(self, call: _Call, reason: str) -> None:
        self._record(call, AuditOutcome.DENIED, denial_reason=reason)

    def _record(self, call: _Call, outcome: AuditOutcome, **fields) -> None:
        self._audit.log(AuditRecord(
            capability=call.capability,
            service=call.service,
            method=call.method,
            path=call.path,
            outcome=outcome,
            latency_ms=call.latency_ms,
            **fields,
        ))
        call.advance(DispatchState.LOGGED)


def _forwardable_headers(headers: Optional[dict]) -> dict:
    """Caller headers minus hop-by-hop and any caller-supplied Authorization."""
    if not headers:
        return {}
    forwarded = {}
    for k, v in headers.items():
        name, value = str(k), str(v)
        if has_forbidden_header_chars(name) or has_forbidden_header_chars(value):
            raise BadRequestError("Header names and values must not contain CR, LF or NUL")
        if name.lower() in HOP_BY_HOP_HEADERS or name.lower() == "authorization":
            continue
        forwarded[name] = value
    return forwarded
