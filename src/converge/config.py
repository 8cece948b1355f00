"""
Configuration module for the reconciliation engine.

Loads configuration from environment variables. Provider collaborators get
their own settings from the PROVIDER_CONFIGS JSON document.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STATE_BACKENDS = ("memory", "file", "postgres")


@dataclass
class StateConfig:
    """State backend configuration."""

    backend: str = "file"
    path: str = "converge.state.json"
    workspace: str = "default"

    # PostgreSQL backend
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "converge"
    db_user: str = "converge"
    db_password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 1
    max_pool_size: int = 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("CONVERGE_STATE_BACKEND", "file").lower()
        if backend not in STATE_BACKENDS:
            raise ValueError(
                f"CONVERGE_STATE_BACKEND must be one of {', '.join(STATE_BACKENDS)}, "
                f"got '{backend}'"
            )

        password = os.getenv("DB_PASSWORD", "")
        if backend == "postgres" and not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set for the postgres "
                "state backend. Database password cannot be empty."
            )

        return cls(
            backend=backend,
            path=os.getenv("CONVERGE_STATE_PATH", "converge.state.json"),
            workspace=os.getenv("CONVERGE_WORKSPACE", "default"),
            db_host=os.getenv("DB_HOST", "localhost"),
            db_port=int(os.getenv("DB_PORT", "5432")),
            db_name=os.getenv("DB_NAME", "converge"),
            db_user=os.getenv("DB_USER", "converge"),
            db_password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "5")),
        )


@dataclass
class ExecutorConfig:
    """Executor concurrency, timeout and retry configuration."""

    parallelism: int = 10
    max_attempts: int = 5
    action_timeout: Optional[float] = 300.0  # seconds per remote call
    confirm_create: bool = True

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 60.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter
    retry_budget: Optional[float] = 600.0  # total seconds per call

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        timeout = os.getenv("CONVERGE_ACTION_TIMEOUT", "300")
        budget = os.getenv("CONVERGE_RETRY_BUDGET", "600")
        return cls(
            parallelism=int(os.getenv("CONVERGE_PARALLELISM", "10")),
            max_attempts=int(os.getenv("CONVERGE_MAX_ATTEMPTS", "5")),
            action_timeout=float(timeout) if float(timeout) > 0 else None,
            confirm_create=os.getenv("CONVERGE_CONFIRM_CREATE", "true").lower() == "true",
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "60")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            retry_budget=float(budget) if float(budget) > 0 else None,
        )


@dataclass
class DriftConfig:
    """Periodic drift reconciliation configuration."""

    interval: int = 300  # seconds
    enabled: bool = True

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        interval = int(os.getenv("DRIFT_INTERVAL", "300"))
        return cls(interval=interval, enabled=interval > 0)


@dataclass
class APIConfig:
    """Inspection API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class ProviderConfig:
    """Provider selection and collaborator configuration."""

    # Entry point name of the provider to load (empty = the only one installed)
    provider: str = ""

    # Provider-specific configurations keyed by provider name
    provider_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    # File or directory of resource schema documents
    schema_path: str = "schemas"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        provider_configs = {}
        if os.getenv("PROVIDER_CONFIGS"):
            try:
                provider_configs = json.loads(os.getenv("PROVIDER_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid PROVIDER_CONFIGS: {e}")

        return cls(
            provider=os.getenv("CONVERGE_PROVIDER", ""),
            provider_configs=provider_configs,
            schema_path=os.getenv("CONVERGE_SCHEMAS", "schemas"),
        )

    def get_provider_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for a specific provider."""
        return self.provider_configs.get(name, {})


@dataclass
class Config:
    """Main configuration object."""

    state: StateConfig
    executor: ExecutorConfig
    drift: DriftConfig
    api: APIConfig
    providers: ProviderConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            state=StateConfig.from_env(),
            executor=ExecutorConfig.from_env(),
            drift=DriftConfig.from_env(),
            api=APIConfig.from_env(),
            providers=ProviderConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            state=StateConfig(),
            executor=ExecutorConfig(),
            drift=DriftConfig(),
            api=APIConfig(),
            providers=ProviderConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
