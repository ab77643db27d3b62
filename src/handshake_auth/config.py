"""
Configuration Management for the handshake authentication engine.

Handles YAML configuration loading, environment variable support,
and validation of the handshake settings the engine binds proofs to.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Dict, Any, Optional, Union, List, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ConfigurationError


class HandshakeConfig(BaseModel):
    """Binding fields and replay policy; immutable once loaded."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    domain: StrictStr = Field(..., min_length=1, description="Domain requesting the sign-in")
    statement: StrictStr = Field(..., min_length=1, description="Statement the user signs")
    version: StrictStr = Field(..., min_length=1, description="Message version")
    prevent_replay: StrictBool = Field(..., description="Enforce single use of nonces")
    message_validity_ms: StrictInt = Field(..., gt=0, description="Challenge lifetime in milliseconds")

    @property
    def message_validity(self) -> timedelta:
        """Challenge lifetime as a timedelta."""
        return timedelta(milliseconds=self.message_validity_ms)


class NonceStoreConfig(BaseModel):
    """Nonce store configuration section."""

    backend: Literal["memory", "sqlite"] = Field("memory", description="Nonce store backend")
    path: str = Field("handshake-nonces.db", description="SQLite database path")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate database path."""
        if not v:
            raise ValueError("path cannot be empty")
        return os.path.expanduser(v)


class AuditConfig(BaseModel):
    """Audit logging configuration."""

    enabled: bool = Field(True, description="Enable audit logging")
    log_path: str = Field("", description="Path to audit log file")
    log_level: str = Field("info", description="Log level")
    log_successes: bool = Field(True, description="Log successful handshakes")
    log_failures: bool = Field(True, description="Log rejected handshakes")

    @field_validator("log_path")
    @classmethod
    def validate_log_path(cls, v: str) -> str:
        if v:
            return os.path.expanduser(v)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["debug", "info", "warning", "error", "critical"]
        if v.lower() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.lower()


class HandshakeAuthConfig(BaseModel):
    """Complete handshake authentication configuration."""

    handshake: HandshakeConfig
    nonce_store: NonceStoreConfig = Field(default_factory=NonceStoreConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)


def validate_config(config: Union[HandshakeConfig, Dict[str, Any]]) -> HandshakeConfig:
    """
    Validate handshake settings.

    Fields are checked in order: domain, statement, version, prevent_replay,
    message_validity_ms. Only the first failing field is reported.

    Args:
        config: Settings mapping or an already built HandshakeConfig

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: With ``field`` naming the offending setting
    """
    if isinstance(config, HandshakeConfig):
        return config
    if not isinstance(config, dict):
        raise ConfigurationError("Handshake options object is required")

    try:
        return HandshakeConfig(**config)
    except PydanticValidationError as e:
        error = e.errors()[0]
        field = str(error["loc"][0]) if error["loc"] else None
        raise ConfigurationError(f"Invalid or missing {field}: {error['msg']}", field=field)


class ConfigManager:
    """Manages configuration loading and validation."""

    DEFAULT_CONFIG_PATHS = [
        "/etc/handshake-auth/config.yml",
        "~/.handshake-auth/config.yml",
        "./handshake-auth.yml",
    ]

    ENV_MAPPINGS = {
        "HANDSHAKE_AUTH_DOMAIN": ("handshake", "domain"),
        "HANDSHAKE_AUTH_STATEMENT": ("handshake", "statement"),
        "HANDSHAKE_AUTH_VERSION": ("handshake", "version"),
        "HANDSHAKE_AUTH_PREVENT_REPLAY": ("handshake", "prevent_replay"),
        "HANDSHAKE_AUTH_MESSAGE_VALIDITY_MS": ("handshake", "message_validity_ms"),
        "HANDSHAKE_AUTH_NONCE_BACKEND": ("nonce_store", "backend"),
        "HANDSHAKE_AUTH_NONCE_DB_PATH": ("nonce_store", "path"),
        "HANDSHAKE_AUTH_LOG_PATH": ("audit", "log_path"),
        "HANDSHAKE_AUTH_LOG_LEVEL": ("audit", "log_level"),
    }

    def __init__(self):
        """Initialize configuration manager."""
        self._config: Optional[HandshakeAuthConfig] = None

    def load_config(
        self,
        config_path: Optional[Union[str, Path]] = None,
        config_data: Optional[Dict[str, Any]] = None
    ) -> HandshakeAuthConfig:
        """
        Load configuration from file or data.

        Args:
            config_path: Path to YAML configuration file
            config_data: Configuration dictionary (alternative to file)

        Returns:
            Validated configuration object

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if config_data is None:
            config_data = self._load_config_file(config_path)

        auth_config = dict(config_data.get("handshake_auth") or {})
        auth_config = self._apply_env_overrides(auth_config)

        handshake = validate_config(auth_config.get("handshake", {}))
        try:
            self._config = HandshakeAuthConfig(
                handshake=handshake,
                nonce_store=auth_config.get("nonce_store") or {},
                audit=auth_config.get("audit") or {},
            )
        except PydanticValidationError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        return self._config

    def get_config(self) -> HandshakeAuthConfig:
        """
        Get current configuration.

        Raises:
            ConfigurationError: If no configuration loaded
        """
        if self._config is None:
            raise ConfigurationError("No configuration loaded. Call load_config() first.")
        return self._config

    def _load_config_file(self, config_path: Optional[Union[str, Path]]) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if config_path is None:
            for path_str in self.DEFAULT_CONFIG_PATHS:
                path = Path(path_str).expanduser()
                if path.exists():
                    config_path = path
                    break

        if config_path is None:
            # Environment overrides may still supply everything
            return {}

        config_path = Path(config_path).expanduser()

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file: {e}")

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration."""
        for env_var, path in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section = dict(config_data.get(path[0]) or {})
            final_key = path[1]
            if final_key == "prevent_replay":
                section[final_key] = value.lower() in ("true", "1", "yes", "on")
            elif final_key == "message_validity_ms":
                try:
                    section[final_key] = int(value)
                except ValueError:
                    raise ConfigurationError(
                        f"{env_var} must be an integer", field=final_key
                    )
            else:
                section[final_key] = value
            config_data[path[0]] = section

        return config_data

    def save_config(self, config_path: Union[str, Path], config: Optional[HandshakeAuthConfig] = None) -> None:
        """
        Save configuration to YAML file.

        Args:
            config_path: Path to save configuration file
            config: Configuration to save (uses current if None)
        """
        if config is None:
            config = self.get_config()

        config_path = Path(config_path).expanduser()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = {"handshake_auth": config.model_dump(exclude_none=True)}

        try:
            with open(config_path, "w") as f:
                yaml.safe_dump(config_dict, f, default_flow_style=False, indent=2)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}")

    def validate_config_file(self, config_path: Union[str, Path]) -> List[str]:
        """
        Validate configuration file and return any issues.

        Returns:
            List of validation issues (empty if valid)
        """
        issues = []
        try:
            self.load_config(config_path)
        except ConfigurationError as e:
            issues.append(str(e))
        return issues
