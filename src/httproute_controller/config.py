"""
Centralized configuration for the HTTPRoute controller.

Uses Pydantic BaseSettings for environment variable integration
and validation. All configurable values should be defined here.

Configuration sources (in order of precedence):
1. Explicit constructor arguments (CLI flags end up here)
2. Environment variables (HTTPROUTE_CONTROLLER_*)
3. .env file
4. Default values

The three gateway defaults have no built-in value. A controller
started without them refuses to run.

Example:
    from httproute_controller.config import get_config

    config = get_config()
    defaults = config.gateway_defaults()

    # Override at runtime
    config = get_config(default_gateway="edge", workers=8)
"""

from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from httproute_controller.errors import ConfigurationError
from httproute_controller.intent import GatewayDefaults


class ControllerConfig(BaseSettings):
    """
    Central configuration for the controller.

    All settings can be overridden via environment variables
    prefixed with HTTPROUTE_CONTROLLER_.

    Example:
        export HTTPROUTE_CONTROLLER_DEFAULT_GATEWAY=homelab-gateway
        export HTTPROUTE_CONTROLLER_DEFAULT_GATEWAY_NAMESPACE=envoy-gateway-system
        export HTTPROUTE_CONTROLLER_DEFAULT_SECTION_NAME=https
    """

    model_config = SettingsConfigDict(
        env_prefix="HTTPROUTE_CONTROLLER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Gateway defaults (mandatory)
    default_gateway: str = Field(
        description="Gateway name used when a Service has no gateway annotation",
    )
    default_gateway_namespace: str = Field(
        description="Gateway namespace used when a Service has no gateway-namespace annotation",
    )
    default_section_name: str = Field(
        description="Listener section used when a Service has no section-name annotation",
    )

    # Watch scope
    namespace: Optional[str] = Field(
        default=None,
        description="Watch a single namespace (cluster-wide if not set)",
    )

    # Execution
    workers: int = Field(
        default=4,
        ge=1,
        description="Maximum number of concurrent reconciliations",
    )
    reconcile_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Time budget of a single reconciliation",
    )
    retry_delay_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Delay before a failed reconciliation is retried",
    )

    # Kubernetes
    kubeconfig: Optional[str] = Field(
        default=None,
        description="Path to kubeconfig file (in-cluster config is tried first if not set)",
    )

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level for the controller",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format (json for collectors, text for console)",
    )

    @field_validator("default_gateway", "default_gateway_namespace", "default_section_name")
    @classmethod
    def require_value(cls, v: str) -> str:
        """Reject empty gateway defaults."""
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("kubeconfig")
    @classmethod
    def expand_path(cls, v: Optional[str]) -> Optional[str]:
        """Expand ~ and environment variables in paths."""
        if v is None:
            return v
        return os.path.expanduser(os.path.expandvars(v))

    def gateway_defaults(self) -> GatewayDefaults:
        """Build the engine defaults from this configuration."""
        return GatewayDefaults(
            gateway=self.default_gateway,
            gateway_namespace=self.default_gateway_namespace,
            section_name=self.default_section_name,
        )


# Global singleton
_config: Optional[ControllerConfig] = None


def get_config(**overrides) -> ControllerConfig:
    """
    Get the global configuration instance.

    Creates a singleton on first call. Subsequent calls return
    the same instance unless overrides are provided. None-valued
    overrides are ignored so unset CLI flags fall through to the
    environment.

    Raises:
        ConfigurationError: if a mandatory value is missing or invalid
    """
    global _config

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides or _config is None:
        try:
            _config = ControllerConfig(**overrides)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid controller configuration: {e}") from e

    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
