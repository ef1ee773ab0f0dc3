"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    IAMConfig,
    DatabaseConfig,
    ControllerConfig,
    Config,
    load_config,
    get_config,
    reset_config,
)


class TestIAMConfig:
    """Tests for IAMConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = IAMConfig()
        assert cfg.idm_url == ""
        assert cfg.access_token == ""
        assert cfg.request_timeout == 30

    def test_token_not_in_repr(self):
        """Test the access token is kept out of repr."""
        cfg = IAMConfig(idm_url="https://idm.example.com", access_token="tok")
        assert "tok" not in repr(cfg)

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "IDM_URL": "https://idm.example.com",
            "IAM_ACCESS_TOKEN": "secret-token",
            "IAM_REQUEST_TIMEOUT": "10",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = IAMConfig.from_env()
        assert cfg.idm_url == "https://idm.example.com"
        assert cfg.access_token == "secret-token"
        assert cfg.request_timeout == 10

    def test_from_env_requires_url(self):
        """Test missing IDM_URL raises ValueError."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                IAMConfig.from_env()
        assert "IDM_URL" in str(exc_info.value)


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = DatabaseConfig()
        assert cfg.backend == "memory"
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "iam_reconciler"
        assert cfg.user == "reconciler"
        assert cfg.password == ""
        assert cfg.min_pool_size == 1
        assert cfg.max_pool_size == 10

    def test_from_env_memory_defaults(self):
        """Test the memory backend needs no database settings."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = DatabaseConfig.from_env()
        assert cfg.backend == "memory"

    def test_from_env_postgres(self):
        """Test loading the postgres backend from environment variables."""
        env_vars = {
            "STATE_BACKEND": "POSTGRES",
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "2",
            "DB_MAX_POOL_SIZE": "4",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = DatabaseConfig.from_env()
        assert cfg.backend == "postgres"
        assert cfg.host == "envhost"
        assert cfg.port == 5434
        assert cfg.database == "envdb"
        assert cfg.user == "envuser"
        assert cfg.password == "envpassword"
        assert cfg.min_pool_size == 2
        assert cfg.max_pool_size == 4

    def test_from_env_postgres_requires_password(self):
        """Test postgres backend without DB_PASSWORD raises ValueError."""
        with patch.dict(os.environ, {"STATE_BACKEND": "postgres"}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                DatabaseConfig.from_env()
        assert "DB_PASSWORD" in str(exc_info.value)

    def test_from_env_rejects_unknown_backend(self):
        """Test an unknown STATE_BACKEND raises ValueError."""
        with patch.dict(os.environ, {"STATE_BACKEND": "redis"}, clear=True):
            with pytest.raises(ValueError) as exc_info:
                DatabaseConfig.from_env()
        assert "redis" in str(exc_info.value)


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        cfg = ControllerConfig()
        assert cfg.max_concurrent_reconciles == 5
        assert cfg.log_level == "INFO"

    def test_from_env(self):
        env_vars = {"MAX_CONCURRENT_RECONCILES": "12", "LOG_LEVEL": "DEBUG"}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = ControllerConfig.from_env()
        assert cfg.max_concurrent_reconciles == 12
        assert cfg.log_level == "DEBUG"


class TestConfig:
    """Tests for the main Config object and singleton helpers."""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_default(self):
        cfg = Config.default()
        assert isinstance(cfg.iam, IAMConfig)
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.controller, ControllerConfig)

    def test_load_config_is_singleton(self):
        """Test load_config returns the same instance until reset."""
        with patch.dict(os.environ, {"IDM_URL": "https://idm"}, clear=True):
            first = load_config()
            second = load_config()
        assert first is second
        assert get_config() is first

    def test_get_config_loads_when_unset(self):
        with patch.dict(os.environ, {"IDM_URL": "https://idm"}, clear=True):
            cfg = get_config()
        assert cfg.iam.idm_url == "https://idm"

    def test_reset_config(self):
        with patch.dict(os.environ, {"IDM_URL": "https://idm"}, clear=True):
            load_config()
        reset_config()
        assert config.config is None
