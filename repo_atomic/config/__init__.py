"""Configuration system for repo-atomic.

This package provides type-safe configuration management using Pydantic.

Key Components:
    - AtomicSettings: Main configuration container with YAML loading support
    - TransactionConfig: Defaults for every transaction (limits, timeout, commit mode)
    - RepositoryConfig: Local git repository settings
    - HostingConfig: Code-hosting API settings
    - ProvisioningConfig: Infrastructure-provisioning binary settings

Example:
    >>> from repo_atomic.config import AtomicSettings
    >>> settings = AtomicSettings.from_yaml("repo-atomic.yaml")
    >>> settings.transaction.max_operations
    100
"""

from repo_atomic.config.settings import (
    AtomicSettings,
    HostingConfig,
    LoggingConfig,
    ProvisioningConfig,
    RepositoryConfig,
    TransactionConfig,
)

__all__ = [
    "AtomicSettings",
    "HostingConfig",
    "LoggingConfig",
    "ProvisioningConfig",
    "RepositoryConfig",
    "TransactionConfig",
]
