"""Tests for repo_atomic/config/settings.py Pydantic models.

Tests cover:
- TransactionConfig defaults and bounds
- HostingConfig secrets
- AtomicSettings loading from YAML
- AtomicSettings loading from environment variables
- Environment variable interpolation
- Error handling
"""

from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from repo_atomic.config.settings import (
    AtomicSettings,
    HostingConfig,
    LoggingConfig,
    TransactionConfig,
)
from repo_atomic.engine.snapshot import DEFAULT_ENVIRONMENT_ALLOWLIST
from repo_atomic.enums import IsolationLevel
from repo_atomic.exceptions import ConfigurationError


class TestTransactionConfig:
    """Test TransactionConfig validation."""

    def test_defaults(self):
        """Test default values."""
        config = TransactionConfig()

        assert config.max_operations == 100
        assert config.timeout == timedelta(minutes=30)
        assert config.auto_commit is True
        assert config.isolation_level == IsolationLevel.READ_COMMITTED
        assert config.environment_allowlist == list(DEFAULT_ENVIRONMENT_ALLOWLIST)

    @pytest.mark.parametrize("value", [0, 1001])
    def test_max_operations_bounds(self, value):
        """Test max_operations must be within 1-1000."""
        with pytest.raises(ValidationError):
            TransactionConfig(max_operations=value)

    def test_isolation_level_from_value(self):
        """Test isolation level parses from its value."""
        assert TransactionConfig(isolation_level="serializable").isolation_level == IsolationLevel.SERIALIZABLE

    def test_invalid_allowlist_name(self):
        """Test allowlist entries must be variable names."""
        with pytest.raises(ValidationError):
            TransactionConfig(environment_allowlist=["CI", "NOT A NAME"])

    def test_transaction_defaults(self):
        """Test keyword arguments for transactions."""
        defaults = TransactionConfig(max_operations=7, timeout_minutes=1, auto_commit=False).transaction_defaults()
        assert defaults == {
            "max_operations": 7,
            "timeout": timedelta(minutes=1),
            "auto_commit": False,
            "isolation_level": IsolationLevel.READ_COMMITTED,
        }


class TestHostingAndLogging:
    """Test HostingConfig and LoggingConfig."""

    def test_token_is_secret(self):
        """Test the API token is not exposed in repr."""
        config = HostingConfig(owner="acme", name="widgets", api_token="ghp_secret")
        assert "ghp_secret" not in repr(config)
        assert config.api_token.get_secret_value() == "ghp_secret"
        assert str(config.base_url) == "https://api.github.com/"

    def test_logging_level_normalized(self):
        """Test the log level is upper-cased and json alias accepted."""
        config = LoggingConfig(level="debug", json=False)
        assert config.level == "DEBUG"
        assert config.json_output is False


class TestAtomicSettingsFromYaml:
    """Test loading AtomicSettings from YAML files."""

    def test_full_config(self, tmp_path: Path, monkeypatch):
        """Test a complete configuration with interpolation."""
        monkeypatch.setenv("TEST_HOSTING_TOKEN", "tok-123")
        monkeypatch.delenv("INFRA_DIR", raising=False)
        config_file = tmp_path / "repo-atomic.yaml"
        config_file.write_text(
            """
transaction:
  max_operations: 20
  timeout_minutes: 5
  auto_commit: false
repository:
  path: /srv/repo
  default_branch: trunk
hosting:
  owner: acme
  name: widgets
  # api_token: ${NOT_SET_AND_COMMENTED}
  api_token: ${TEST_HOSTING_TOKEN}
provisioning:
  binary: terraform
  working_dir: ${INFRA_DIR:-infra}
logging:
  level: warning
  json: false
"""
        )

        settings = AtomicSettings.from_yaml(config_file)

        assert settings.transaction.max_operations == 20
        assert settings.transaction.auto_commit is False
        assert settings.repository_path == Path("/srv/repo")
        assert settings.repository.default_branch == "trunk"
        assert settings.require_hosting().api_token.get_secret_value() == "tok-123"
        assert settings.require_provisioning().working_dir == "infra"
        assert settings.provisioning.binary == "terraform"
        assert settings.logging.level == "WARNING"
        assert settings.logging.json_output is False

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        """Test an empty file yields default settings."""
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        settings = AtomicSettings.from_yaml(config_file)

        assert settings.transaction.max_operations == 100
        assert settings.hosting is None

    def test_missing_file(self, tmp_path: Path):
        """Test a missing file raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="not found"):
            AtomicSettings.from_yaml(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        """Test invalid YAML raises ConfigurationError."""
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("transaction: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            AtomicSettings.from_yaml(config_file)

    def test_non_mapping_root(self, tmp_path: Path):
        """Test a list root is rejected."""
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="YAML object"):
            AtomicSettings.from_yaml(config_file)

    def test_validation_failure(self, tmp_path: Path):
        """Test invalid values raise ConfigurationError."""
        config_file = tmp_path / "invalid.yaml"
        config_file.write_text("transaction:\n  max_operations: 0\n")
        with pytest.raises(ConfigurationError, match="Failed to validate"):
            AtomicSettings.from_yaml(config_file)

    def test_missing_required_env_var(self, tmp_path: Path, monkeypatch):
        """Test an unset required variable raises ConfigurationError."""
        monkeypatch.delenv("REPO_ATOMIC_TEST_UNSET", raising=False)
        config_file = tmp_path / "env.yaml"
        config_file.write_text("repository:\n  path: ${REPO_ATOMIC_TEST_UNSET}\n")
        with pytest.raises(ConfigurationError, match="REPO_ATOMIC_TEST_UNSET"):
            AtomicSettings.from_yaml(config_file)


class TestAtomicSettingsEnvironment:
    """Test settings from environment variables."""

    def test_nested_env_override(self, monkeypatch):
        """Test REPO_ATOMIC_ prefixed variables with __ nesting."""
        monkeypatch.setenv("REPO_ATOMIC_TRANSACTION__MAX_OPERATIONS", "12")
        monkeypatch.setenv("REPO_ATOMIC_REPOSITORY__REMOTE", "upstream")

        settings = AtomicSettings()

        assert settings.transaction.max_operations == 12
        assert settings.repository.remote == "upstream"

    def test_require_sections(self):
        """Test require_* raise when sections are missing."""
        settings = AtomicSettings()
        with pytest.raises(ConfigurationError, match="hosting"):
            settings.require_hosting()
        with pytest.raises(ConfigurationError, match="provisioning"):
            settings.require_provisioning()


class TestInterpolation:
    """Test _interpolate_env_vars directly."""

    def test_default_used_when_unset(self, monkeypatch):
        """Test ${VAR:-default} falls back to the default."""
        monkeypatch.delenv("REPO_ATOMIC_TEST_X", raising=False)
        assert AtomicSettings._interpolate_env_vars("a: ${REPO_ATOMIC_TEST_X:-fallback}") == "a: fallback"

    def test_set_value_wins(self, monkeypatch):
        """Test a set variable wins over the default."""
        monkeypatch.setenv("REPO_ATOMIC_TEST_X", "real")
        assert AtomicSettings._interpolate_env_vars("a: ${REPO_ATOMIC_TEST_X:-fallback}") == "a: real"

    def test_comments_untouched(self):
        """Test comment lines are left as-is."""
        content = "# token: ${SURELY_NOT_SET_ANYWHERE}"
        assert AtomicSettings._interpolate_env_vars(content) == content
