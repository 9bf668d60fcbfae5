"""
Centralized configuration management for the broker.
Uses environment variables with secure defaults following 12-factor app principles.

Two layers:
  - AppConfig: process settings (paths, timeouts, logging), from the environment.
  - BrokerConfig: services, capabilities and providers, from a JSON document
    validated by capbroker.shared.schemas.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from dotenv import load_dotenv

from .constants import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    PROVIDER_BACKOFF_SECONDS,
    PROVIDER_MAX_RETRIES,
    UPSTREAM_TIMEOUT_SECONDS,
)
from .errors import ConfigurationError
from .schemas import BrokerConfig, ProviderConfig, parse_broker_config

logger = logging.getLogger(__name__)


class Environment(Enum):
    """Deployment environment."""
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


@dataclass(frozen=True)
class ProxyConfig:
    """Agent-facing HTTP surface."""
    public_url: str = "http://127.0.0.1:9119"   # base URL handed out by get_http_access
    api_host: str = "127.0.0.1"
    api_port: int = 9119
    upstream_timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ProviderDefaults:
    """Settings for the synthesized default providers and retry policy."""
    secrets_dir: str = field(default_factory=lambda: os.path.join(os.path.expanduser("~"), ".capbroker", "credentials"))
    master_key: str = ""   # base64, 32 bytes; empty = no local provider
    max_retries: int = PROVIDER_MAX_RETRIES
    backoff_seconds: float = PROVIDER_BACKOFF_SECONDS


@dataclass(frozen=True)
class AppConfig:
    """Root application configuration - assembled from environment."""
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    providers: ProviderDefaults = field(default_factory=ProviderDefaults)
    broker_config_path: str = ""
    audit_dir: str = field(default_factory=lambda: os.path.join(os.path.expanduser("~"), ".capbroker", "audit"))
    session_sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    log_file_dir: str = ""  # Directory for timestamped log files; empty = no file logging
    log_level: str = "INFO"
    environment: Environment = Environment.PRODUCTION


def load_config() -> AppConfig:
    """
    Load configuration from environment variables.
    Secure defaults are used when env vars are not set.
    """
    load_dotenv()  # Load .env file if present
    defaults = AppConfig()

    env_str = os.environ.get("ENVIRONMENT", "production").lower()
    try:
        environment = Environment(env_str)
    except ValueError:
        environment = Environment.PRODUCTION  # Fail safe

    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        log_level = "INFO"

    api_host = os.environ.get("API_HOST", "127.0.0.1")
    api_port = int(os.environ.get("API_PORT", "9119"))
    proxy = ProxyConfig(
        public_url=os.environ.get("PROXY_PUBLIC_URL", f"http://{api_host}:{api_port}").rstrip("/"),
        api_host=api_host,
        api_port=api_port,
        upstream_timeout_seconds=float(
            os.environ.get("UPSTREAM_TIMEOUT_SECONDS", str(UPSTREAM_TIMEOUT_SECONDS))
        ),
    )

    providers = ProviderDefaults(
        secrets_dir=os.environ.get("SECRETS_DIR", defaults.providers.secrets_dir),
        master_key=os.environ.get("BROKER_MASTER_KEY", ""),
        max_retries=max(1, int(os.environ.get("PROVIDER_MAX_RETRIES", str(PROVIDER_MAX_RETRIES)))),
        backoff_seconds=float(os.environ.get("PROVIDER_BACKOFF_SECONDS", str(PROVIDER_BACKOFF_SECONDS))),
    )

    return AppConfig(
        proxy=proxy,
        providers=providers,
        broker_config_path=os.environ.get("BROKER_CONFIG_PATH", ""),
        audit_dir=os.environ.get("AUDIT_DIR", defaults.audit_dir),
        session_sweep_interval_seconds=float(
            os.environ.get("SESSION_SWEEP_INTERVAL", str(DEFAULT_SWEEP_INTERVAL_SECONDS))
        ),
        log_file_dir=os.environ.get("LOG_FILE_DIR", ""),
        log_level=log_level,
        environment=environment,
    )


def load_broker_config(path: str) -> BrokerConfig:
    """Read and validate the services/capabilities JSON document."""
    if not path:
        raise ConfigurationError("BROKER_CONFIG_PATH is not set")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Broker config not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Broker config is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("Broker config must be a JSON object")
    return parse_broker_config(data)


def effective_provider_configs(broker: BrokerConfig, app: AppConfig) -> list[ProviderConfig]:
    """
    Provider instances to create.

    An explicit `providers` list is used as-is. Otherwise a filesystem
    provider named after the default provider is synthesized when a master
    key is available, plus an `env` provider.
    """
    if broker.providers:
        return list(broker.providers)
    synthesized = []
    if app.providers.master_key and broker.default_provider != "env":
        synthesized.append(ProviderConfig(
            name=broker.default_provider,
            type="filesystem",
            config={"path": app.providers.secrets_dir, "master_key": app.providers.master_key},
        ))
    elif not app.providers.master_key:
        logger.warning("BROKER_MASTER_KEY not set - local encrypted provider disabled")
    synthesized.append(ProviderConfig(name="env", type="env"))
    return synthesized
