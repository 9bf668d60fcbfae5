"""
Secrets providers for the broker.

Each provider resolves canonicalized paths against one backend:
  - filesystem: AES-256-GCM encrypted files under a local directory
  - env: process environment variables
  - vault: HashiCorp Vault KV v2

The ProviderRegistry maps `provider://path` references onto instances.
"""

from capbroker.providers.env import EnvProvider
from capbroker.providers.filesystem import FilesystemProvider
from capbroker.providers.registry import ProviderRegistry
from capbroker.providers.vault import VaultProvider

__all__ = [
    "EnvProvider",
    "FilesystemProvider",
    "ProviderRegistry",
    "VaultProvider",
]
