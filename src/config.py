"""
Configuration module for the IAM reconciler.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

STATE_BACKENDS = ("memory", "postgres")


@dataclass
class IAMConfig:
    """Identity service connection configuration."""

    idm_url: str = ""
    access_token: str = field(default="", repr=False)  # Never log the token
    request_timeout: int = 30  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        idm_url = os.getenv("IDM_URL", "")
        if not idm_url:
            raise ValueError("IDM_URL environment variable must be set.")

        return cls(
            idm_url=idm_url,
            access_token=os.getenv("IAM_ACCESS_TOKEN", ""),
            request_timeout=int(os.getenv("IAM_REQUEST_TIMEOUT", "30")),
        )


@dataclass
class DatabaseConfig:
    """State store configuration."""

    backend: str = "memory"
    host: str = "localhost"
    port: int = 5432
    database: str = "iam_reconciler"
    user: str = "reconciler"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 1
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STATE_BACKEND", "memory").lower()
        if backend not in STATE_BACKENDS:
            raise ValueError(
                f"STATE_BACKEND must be one of {', '.join(STATE_BACKENDS)}, "
                f"got '{backend}'"
            )

        password = os.getenv("DB_PASSWORD", "")
        if backend == "postgres" and not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            backend=backend,
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "iam_reconciler"),
            user=os.getenv("DB_USER", "reconciler"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class ControllerConfig:
    """Reconciliation controller configuration."""

    max_concurrent_reconciles: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    iam: IAMConfig
    database: DatabaseConfig
    controller: ControllerConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            iam=IAMConfig.from_env(),
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            iam=IAMConfig(),
            database=DatabaseConfig(),
            controller=ControllerConfig(),
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
