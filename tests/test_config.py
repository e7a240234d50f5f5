"""Unit tests for config module."""

from __future__ import annotations

import os

import pytest

from dbtransfer.config import ConfigError, EnvConfig, get_bool, source_config, target_config
from dbtransfer.models.connection import DialectName


class TestEnvConfig:
    """Test cases for EnvConfig class."""

    def test_init_with_valid_env(self, mock_env_vars):
        """Test EnvConfig initialization with valid environment variables."""
        config = EnvConfig("SOURCE")
        assert config.dialect is DialectName.MARIADB
        assert config.host == "db1.local"
        assert config.port == 3307
        assert config.user == "test_user"
        assert config.password == "test_password"
        assert config.database == "app"

    def test_defaults(self, mock_empty_env):
        """Test defaults when nothing is set."""
        config = EnvConfig("SOURCE")
        assert config.dialect is DialectName.MARIADB
        assert config.host == "localhost"
        assert config.port == 0
        assert config.socket is None
        assert config.database is None
        assert config.schema == "public"

    def test_dialect_aliases(self, mock_empty_env):
        """Test that postgresql and mysql are accepted."""
        os.environ["SOURCE_TYPE"] = "PostgreSQL"
        assert EnvConfig("SOURCE").dialect is DialectName.POSTGRES
        os.environ["SOURCE_TYPE"] = "mysql"
        assert EnvConfig("SOURCE").dialect is DialectName.MARIADB

    def test_invalid_dialect(self, mock_empty_env):
        """Test unsupported database types are rejected."""
        os.environ["SOURCE_TYPE"] = "oracle"
        with pytest.raises(ConfigError, match="SOURCE_TYPE=oracle is not a supported database type"):
            EnvConfig("SOURCE")

    def test_validate_port_invalid_integer(self, mock_env_vars):
        """Test port validation with invalid integer."""
        os.environ["SOURCE_PORT"] = "not_a_number"
        with pytest.raises(ConfigError, match="SOURCE_PORT=not_a_number is not a valid integer"):
            EnvConfig("SOURCE")

    def test_validate_port_out_of_range(self, mock_env_vars):
        """Test port validation with out of range port."""
        os.environ["TARGET_PORT"] = "70000"
        with pytest.raises(ConfigError, match="TARGET_PORT=70000 is not a valid port number"):
            EnvConfig("TARGET")

    def test_connection_database_override(self, mock_env_vars):
        """Test that an explicit database wins over the variable."""
        config = EnvConfig("SOURCE").connection("other")
        assert config.database == "other"
        assert config.effective_port == 3307

    def test_is_configured(self, mock_env_vars):
        """Test prefix detection."""
        assert EnvConfig.is_configured("SOURCE")
        assert not EnvConfig.is_configured("BACKUP")


class TestHelpers:
    """Test cases for module-level helpers."""

    def test_target_config(self, mock_env_vars):
        """Test target connection uses TARGET_* variables."""
        config = target_config()
        assert config.dialect is DialectName.POSTGRES
        assert config.host == "db2.local"
        assert config.database == "app_copy"
        assert config.schema == "app"

    def test_target_falls_back_to_source(self, mock_env_vars):
        """Test target connection falls back to SOURCE_* when TARGET_* is unset."""
        for key in list(os.environ):
            if key.startswith("TARGET_"):
                del os.environ[key]
        config = target_config("copy")
        assert config.host == "db1.local"
        assert config.database == "copy"

    def test_source_config(self, mock_env_vars):
        assert source_config().database == "app"

    @pytest.mark.parametrize(
        "value,expected",
        [("1", True), ("yes", True), ("ON", True), ("0", False), ("false", False), ("", True)],
    )
    def test_get_bool(self, mock_empty_env, value, expected):
        """Test boolean parsing."""
        os.environ["FLAG"] = value
        assert get_bool("FLAG", True) is expected

    def test_get_bool_invalid(self, mock_empty_env):
        os.environ["FLAG"] = "maybe"
        with pytest.raises(ConfigError, match="FLAG=maybe is not a valid boolean"):
            get_bool("FLAG", False)
