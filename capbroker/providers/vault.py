"""
HashiCorp Vault secrets provider (KV version 2).

References look like `vault://payments/stripe#api_key`: the part before `#`
is the KV path under the mount, the part after selects a field of the
secret's data (default: `value`).

Authentication is either a static token or AppRole. Tokens with a TTL are
renewed shortly before expiry; if renewal (and, for AppRole, re-login) fails
the provider is marked auth-failed and refuses to serve until re-initialized.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

import aiohttp

from capbroker.shared.constants import VAULT_DEFAULT_FIELD, VAULT_RENEW_MARGIN_SECONDS
from capbroker.shared.errors import (
    ConfigurationError,
    InvalidSecretReferenceError,
    ProviderAuthError,
    ProviderError,
    ProviderInternalError,
    ProviderRateLimitedError,
    ProviderUnavailableError,
)
from capbroker.shared.interfaces import ISecretsProvider
from capbroker.shared.models import HealthCheckResult

logger = logging.getLogger(__name__)


class VaultProvider(ISecretsProvider):
    """Vault KV v2 over aiohttp."""

    type = "vault"
    supports_writes = True

    def __init__(self, name: str, config: dict[str, Any], clock: Callable[[], float] = time.time):
        super().__init__(name)
        self._address = str(config.get("address") or config.get("url") or "").rstrip("/")
        if not self._address.startswith(("http://", "https://")):
            raise ConfigurationError(f'VaultProvider "{name}": address must be an http(s) URL')
        self._mount = str(config.get("mount", "secret")).strip("/")
        self._namespace = config.get("namespace")
        self._static_token = config.get("token")
        approle = config.get("approle") or {}
        self._role_id = approle.get("role_id") or approle.get("roleId")
        self._secret_id = approle.get("secret_id") or approle.get("secretId")
        if not self._static_token and not (self._role_id and self._secret_id):
            raise ConfigurationError(
                f'VaultProvider "{name}": either token or approle.role_id + approle.secret_id is required'
            )
        self._renew_margin = float(config.get("renew_margin_seconds", VAULT_RENEW_MARGIN_SECONDS))
        self._timeout = aiohttp.ClientTimeout(total=float(config.get("timeout_seconds", 10)))
        self._clock = clock

        self._session: Optional[aiohttp.ClientSession] = None
        self._token: Optional[str] = None
        self._token_expires_at: Optional[float] = None   # None = non-expiring
        self._auth_failed = False
        self._renew_lock = asyncio.Lock()

    @property
    def uses_approle(self) -> bool:
        return bool(self._role_id and self._secret_id)

    @property
    def auth_failed(self) -> bool:
        return self._auth_failed

    # ── Lifecycle ────────────────────────────────────────────

    async def initialize(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        self._auth_failed = False
        if self.uses_approle:
            await self._login()
        else:
            self._token = self._static_token
            await self._lookup_self()
        logger.info(f"Vault provider '{self.name}' authenticated against {self._address}")

    async def dispose(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._token = None
        self._token_expires_at = None

    # ── Secrets ──────────────────────────────────────────────

    async def get_secret(self, path: str) -> Optional[str]:
        kv_path, field_name = _split_field(path)
        await self._ensure_token()
        status, body = await self._request("GET", f"{self._mount}/data/{kv_path}")
        if status == 404:
            return None
        self._raise_for_status(status, body)
        data = ((body or {}).get("data") or {}).get("data") or {}
        value = data.get(field_name)
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    async def set_secret(self, path: str, value: str) -> None:
        kv_path, field_name = _split_field(path)
        await self._ensure_token()
        status, body = await self._request(
            "POST", f"{self._mount}/data/{kv_path}", json={"data": {field_name: value}}
        )
        self._raise_for_status(status, body)

    async def delete_secret(self, path: str) -> None:
        kv_path, _ = _split_field(path)
        await self._ensure_token()
        status, body = await self._request("DELETE", f"{self._mount}/metadata/{kv_path}")
        if status != 404:
            self._raise_for_status(status, body)

    async def list_secrets(self, prefix: Optional[str] = None) -> list[str]:
        await self._ensure_token()
        base = (prefix or "").strip("/")
        status, body = await self._request("LIST", f"{self._mount}/metadata/{base}")
        if status == 404:
            return []
        self._raise_for_status(status, body)
        keys = ((body or {}).get("data") or {}).get("keys") or []
        return sorted(f"{base}/{key}" if base else key for key in keys)

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        if self._auth_failed:
            return HealthCheckResult(healthy=False, error="token renewal failed")
        try:
            status, _ = await self._request("GET", "sys/health", authenticated=False)
        except ProviderError as e:
            return HealthCheckResult(
                healthy=False, error=e.message, latency_ms=(time.perf_counter() - start) * 1000
            )
        latency = (time.perf_counter() - start) * 1000
        if status != 200:
            return HealthCheckResult(healthy=False, error=f"Vault health status {status}", latency_ms=latency)
        return HealthCheckResult(healthy=True, latency_ms=latency)

    # ── Authentication ───────────────────────────────────────

    async def _login(self) -> None:
        status, body = await self._request(
            "POST",
            "auth/approle/login",
            json={"role_id": self._role_id, "secret_id": self._secret_id},
            authenticated=False,
        )
        self._raise_for_status(status, body)
        auth = (body or {}).get("auth") or {}
        if not auth.get("client_token"):
            raise ProviderAuthError(self.name, "AppRole login returned no token")
        self._token = auth["client_token"]
        self._set_expiry(auth.get("lease_duration"))

    async def _lookup_self(self) -> None:
        status, body = await self._request("GET", "auth/token/lookup-self")
        self._raise_for_status(status, body)
        self._set_expiry(((body or {}).get("data") or {}).get("ttl"))

    async def _renew(self) -> None:
        try:
            status, body = await self._request("POST", "auth/token/renew-self", json={})
            self._raise_for_status(status, body)
            self._set_expiry(((body or {}).get("auth") or {}).get("lease_duration"))
            logger.info(f"Vault provider '{self.name}' renewed its token")
            return
        except ProviderError as e:
            if not self.uses_approle:
                self._auth_failed = True
                logger.error(f"Vault provider '{self.name}' token renewal failed: {e.message}")
                raise ProviderAuthError(self.name, "token renewal failed") from e
            logger.warning(f"Vault provider '{self.name}' renew-self failed, re-logging in via AppRole")
        try:
            await self._login()
        except ProviderError as e:
            self._auth_failed = True
            logger.error(f"Vault provider '{self.name}' AppRole re-login failed: {e.message}")
            raise ProviderAuthError(self.name, "token renewal failed") from e

    async def _ensure_token(self) -> None:
        if self._auth_failed:
            raise ProviderAuthError(self.name, "token renewal failed, re-initialize the provider")
        if self._session is None or self._token is None:
            raise ProviderInternalError(self.name, "not initialized, call initialize() first")
        if self._token_expires_at is None:
            return
        if self._clock() < self._token_expires_at - self._renew_margin:
            return
        async with self._renew_lock:
            # Another caller may have renewed while we waited.
            if self._clock() >= self._token_expires_at - self._renew_margin:
                await self._renew()

    def _set_expiry(self, ttl: Any) -> None:
        try:
            ttl = int(ttl or 0)
        except (TypeError, ValueError):
            ttl = 0
        self._token_expires_at = self._clock() + ttl if ttl > 0 else None

    # ── Transport ────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        authenticated: bool = True,
    ) -> tuple[int, Optional[dict]]:
        """Single I/O point: returns (status, parsed JSON body or None)."""
        if self._session is None:
            raise ProviderInternalError(self.name, "not initialized, call initialize() first")
        headers = {}
        if authenticated and self._token:
            headers["X-Vault-Token"] = self._token
        if self._namespace:
            headers["X-Vault-Namespace"] = self._namespace
        url = f"{self._address}/v1/{path}"
        try:
            async with self._session.request(method, url, json=json, headers=headers) as resp:
                if resp.content_type == "application/json":
                    body = await resp.json()
                else:
                    await resp.read()
                    body = None
                return resp.status, body
        except asyncio.TimeoutError as e:
            raise ProviderUnavailableError(self.name, "request to Vault timed out") from e
        except aiohttp.ClientError as e:
            raise ProviderUnavailableError(self.name, f"cannot reach Vault: {type(e).__name__}") from e

    def _raise_for_status(self, status: int, body: Optional[dict]) -> None:
        if 200 <= status < 300:
            return
        if status in (401, 403):
            raise ProviderAuthError(self.name, f"Vault denied access (HTTP {status})")
        if status == 429:
            raise ProviderRateLimitedError(self.name)
        if status >= 500:
            raise ProviderUnavailableError(self.name, f"Vault returned HTTP {status}")
        errors = (body or {}).get("errors") or []
        logger.warning(f"Vault provider '{self.name}' unexpected HTTP {status}: {errors[:1]}")
        raise ProviderInternalError(self.name, f"unexpected Vault response (HTTP {status})")


def _split_field(path: str) -> tuple[str, str]:
    kv_path, sep, field_name = path.partition("#")
    if not kv_path:
        raise InvalidSecretReferenceError("Vault reference has an empty KV path")
    return kv_path, (field_name if sep and field_name else VAULT_DEFAULT_FIELD)
