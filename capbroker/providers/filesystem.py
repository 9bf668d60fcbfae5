"""
Filesystem secrets provider - the default local backend.

One file per secret path under the secrets root, each holding an
AES-256-GCM envelope (see capbroker.shared.crypto). Directories are created
0700 and files 0600. Paths arrive canonicalized; the resolved real path is
still checked against the root so a planted symlink cannot redirect a read.
"""

import asyncio
import logging
import os
import time
from typing import Any, Optional

from capbroker.shared.crypto import DecryptionError, decode_master_key, decrypt_secret, encrypt_secret
from capbroker.shared.errors import (
    ConfigurationError,
    ProviderAuthError,
    ProviderInternalError,
    ProviderUnavailableError,
)
from capbroker.shared.interfaces import ISecretsProvider
from capbroker.shared.models import HealthCheckResult
from capbroker.shared.security import canonicalize_secret_path, is_within_root

logger = logging.getLogger(__name__)


class FilesystemProvider(ISecretsProvider):
    """Encrypted one-file-per-secret store."""

    type = "filesystem"
    supports_writes = True

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name)
        master_key = config.get("master_key") or config.get("masterKey")
        if not master_key:
            raise ConfigurationError(f'FilesystemProvider "{name}": master_key is required')
        try:
            self._key = decode_master_key(master_key)
        except ValueError as e:
            raise ConfigurationError(f'FilesystemProvider "{name}": {e}') from e
        self._root = os.path.abspath(os.path.expanduser(
            config.get("path") or os.path.join("~", ".capbroker", "credentials")
        ))
        self._initialized = False

    @property
    def root(self) -> str:
        return self._root

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            os.makedirs(self._root, mode=0o700, exist_ok=True)
        except OSError as e:
            raise ProviderUnavailableError(self.name, f"cannot create secrets directory: {e.strerror}") from e
        self._initialized = True
        logger.info(f"Filesystem provider '{self.name}' ready at {self._root}")

    async def get_secret(self, path: str) -> Optional[str]:
        self._ensure_initialized()
        file_path = self._resolve(path)
        return await asyncio.to_thread(self._read, path, file_path)

    def _read(self, path: str, file_path: str) -> Optional[str]:
        if not os.path.isfile(file_path):
            return None
        try:
            with open(file_path, "r", encoding="ascii") as f:
                envelope = f.read()
        except OSError as e:
            raise ProviderUnavailableError(self.name, f"cannot read secret file: {e.strerror}") from e
        except UnicodeDecodeError as e:
            raise ProviderInternalError(self.name, f'secret "{path}" is not a valid envelope') from e
        try:
            return decrypt_secret(envelope, self._key)
        except DecryptionError as e:
            # Wrong master key and tampered ciphertext look the same under GCM.
            raise ProviderAuthError(self.name, f'failed to decrypt "{path}": {e}') from e

    async def set_secret(self, path: str, value: str) -> None:
        self._ensure_initialized()
        file_path = self._resolve(path)
        await asyncio.to_thread(self._write, file_path, value)

    def _write(self, file_path: str, value: str) -> None:
        os.makedirs(os.path.dirname(file_path), mode=0o700, exist_ok=True)
        envelope = encrypt_secret(value, self._key)
        tmp_path = f"{file_path}.tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as f:
            f.write(envelope)
        os.replace(tmp_path, file_path)

    async def delete_secret(self, path: str) -> None:
        self._ensure_initialized()
        file_path = self._resolve(path)
        await asyncio.to_thread(self._delete, file_path)

    def _delete(self, file_path: str) -> None:
        if os.path.isfile(file_path):
            os.unlink(file_path)

    async def list_secrets(self, prefix: Optional[str] = None) -> list[str]:
        self._ensure_initialized()
        search_dir = self._resolve(prefix) if prefix else self._root
        return await asyncio.to_thread(self._list, search_dir)

    def _list(self, search_dir: str) -> list[str]:
        if not os.path.isdir(search_dir):
            return []
        results = []
        for dirpath, _, files in os.walk(search_dir):
            for fname in files:
                if fname.endswith(".tmp"):
                    continue
                rel = os.path.relpath(os.path.join(dirpath, fname), self._root)
                results.append(rel.replace(os.sep, "/"))
        return sorted(results)

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        if not os.path.isdir(self._root):
            return HealthCheckResult(healthy=False, error=f"Directory not found: {self._root}")
        if not os.access(self._root, os.R_OK | os.W_OK):
            return HealthCheckResult(
                healthy=False,
                error=f"Cannot access {self._root}",
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        return HealthCheckResult(healthy=True, latency_ms=(time.perf_counter() - start) * 1000)

    async def dispose(self) -> None:
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ProviderInternalError(self.name, "not initialized, call initialize() first")

    def _resolve(self, path: str) -> str:
        canonical = canonicalize_secret_path(path)
        file_path = os.path.join(self._root, *canonical.split("/"))
        if not is_within_root(self._root, file_path):
            logger.warning(f"Path escape blocked in provider '{self.name}'")
            raise ProviderAuthError(self.name, "secret path escapes the secrets root")
        return file_path
