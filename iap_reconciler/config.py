"""Configuration management - loads reconciler.yaml and environment variables."""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from iap_reconciler.models import ReconcilerSettings


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    retryable = False


# Secrets and deployment-specific values that may come from the environment
# instead of the file: env var -> (section, key)
ENV_OVERRIDES = {
    "PACKAGE_NAME": ("application", "package_name"),
    "AUTHORITY_BASE_URL": ("authority", "base_url"),
    "AUTHORITY_ACCESS_TOKEN": ("authority", "access_token"),
    "WEBHOOK_VERIFICATION_TOKEN": ("webhook", "verification_token"),
    "WEBHOOK_OIDC_AUDIENCE": ("webhook", "oidc_audience"),
    "DOWNSTREAM_PROJECT_ID": ("downstream", "project_id"),
    "DOWNSTREAM_TOPIC": ("downstream", "topic"),
}


class Config:
    """Application configuration loader and manager.

    Loads reconciler.yaml and provides validated access to:
    - Application identity and authority connection settings
    - Acknowledgment, webhook and reconciler tuning
    - Lifecycle policy and downstream Pub/Sub settings
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to reconciler.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/reconciler.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[ReconcilerSettings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/reconciler.yaml")

    def _load_config(self) -> None:
        """Load and validate reconciler.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/reconciler.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self._config_path}")

        try:
            self._settings = ReconcilerSettings(**apply_env_overrides(raw_config))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @property
    def settings(self) -> ReconcilerSettings:
        """Get validated settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def package_name(self) -> str:
        """Get the Android package name whose purchases are reconciled.

        Returns:
            Package name (e.g., "com.example.app")
        """
        return self.settings.application.package_name

    def reload(self) -> None:
        """Reload configuration from disk.

        Components already built from the old settings keep them until the
        application context is rebuilt.
        """
        self._load_config()


def apply_env_overrides(raw_config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay ENV_OVERRIDES onto a raw configuration mapping.

    Returns:
        New mapping; the input is not modified
    """
    environ = os.environ if environ is None else environ
    merged = {section: dict(values) if isinstance(values, dict) else values for section, values in raw_config.items()}
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value:
            if not isinstance(merged.get(section), dict):
                merged[section] = {}
            merged[section][key] = value
    return merged


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
