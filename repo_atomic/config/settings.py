"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the transaction engine and the
external systems its operations drive: the git repository, the code-hosting
API and the infrastructure-provisioning binary.
"""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_atomic.engine.snapshot import DEFAULT_ENVIRONMENT_ALLOWLIST
from repo_atomic.enums import IsolationLevel
from repo_atomic.exceptions import ConfigurationError


class TransactionConfig(BaseModel):
    """Defaults applied to every transaction a workflow creates."""

    max_operations: int = Field(default=100, ge=1, le=1000, description="Maximum operations per transaction")
    timeout_minutes: float = Field(default=30.0, gt=0, description="Advisory transaction timeout in minutes")
    auto_commit: bool = Field(default=True, description="Commit as soon as every operation succeeds")
    isolation_level: IsolationLevel = Field(
        default=IsolationLevel.READ_COMMITTED, description="Advisory isolation level"
    )
    environment_allowlist: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ENVIRONMENT_ALLOWLIST),
        description="Environment variables recorded in state snapshots",
    )
    history_size: int = Field(default=50, ge=0, description="Finished transactions kept in the registry")

    @field_validator("environment_allowlist")
    @classmethod
    def validate_allowlist(cls, value: list[str]) -> list[str]:
        """Reject names that are not plain environment variable identifiers."""
        for name in value:
            if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
                raise ValueError(f"Invalid environment variable name in allowlist: {name!r}")
        return value

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.timeout_minutes)

    def transaction_defaults(self) -> dict[str, Any]:
        """Keyword arguments for ``TransactionRegistry``/``Transaction``."""
        return {
            "max_operations": self.max_operations,
            "timeout": self.timeout,
            "auto_commit": self.auto_commit,
            "isolation_level": self.isolation_level,
        }


class RepositoryConfig(BaseModel):
    """Local git repository configuration."""

    path: str = Field(default=".", description="Path to the working tree")
    remote: str = Field(default="origin", description="Remote used for push/fetch")
    default_branch: str = Field(default="main", description="Default branch name")


class HostingConfig(BaseModel):
    """Code-hosting API configuration (GitHub-compatible REST).

    The token may be given as ``${GITHUB_TOKEN}`` and is interpolated from
    the environment when the file is loaded.
    """

    base_url: HttpUrl = Field(default=HttpUrl("https://api.github.com"), description="API base URL")
    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    api_token: SecretStr = Field(..., description="API token for authentication")
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")


class ProvisioningConfig(BaseModel):
    """Infrastructure-provisioning binary configuration."""

    binary: Literal["tofu", "terraform"] = Field(default="tofu", description="Provisioning executable")
    working_dir: str = Field(default=".", description="Directory holding the configuration")
    var_files: list[str] = Field(default_factory=list, description="Variable files passed with -var-file")
    auto_approve: bool = Field(default=True, description="Pass -auto-approve to apply/destroy")


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    json_output: bool = Field(default=True, alias="json", description="Emit JSON lines instead of console output")

    model_config = {"populate_by_name": True}

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class AtomicSettings(BaseSettings):
    """Main repo-atomic settings.

    Combines all configuration sections and provides loading from YAML files
    with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPO_ATOMIC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    transaction: TransactionConfig = Field(default_factory=TransactionConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    hosting: HostingConfig | None = Field(default=None, description="Code-hosting API, if workflows use it")
    provisioning: ProvisioningConfig | None = Field(default=None, description="Provisioning binary, if used")
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def repository_path(self) -> Path:
        """Get the repository path as a Path object."""
        return Path(self.repository.path)

    def require_hosting(self) -> HostingConfig:
        """Return the hosting section or fail with a configuration error."""
        if self.hosting is None:
            raise ConfigurationError("This workflow needs a 'hosting' section in the configuration")
        return self.hosting

    def require_provisioning(self) -> ProvisioningConfig:
        """Return the provisioning section or fail with a configuration error."""
        if self.provisioning is None:
            raise ConfigurationError("This workflow needs a 'provisioning' section in the configuration")
        return self.provisioning

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> AtomicSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            AtomicSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines (starting with #) are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
