"""
Application settings loaded from environment variables.

Routes can be declared either as a single default backend through the
``BACKEND_*`` variables or as a list in the JSON file named by
``COLDSTART_ROUTES_FILE``.
"""

import json
import shlex
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from coldstart.shared import ConfigurationError
from coldstart.supervisor.models import BackendConfig


class Settings(BaseSettings):
    """
    Host and backend settings loaded from environment variables.
    """

    # Debug mode
    debug_mode: bool = Field(default=False, alias="DEBUG_MODE")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8080, alias="PORT")

    # Admin endpoints are rejected when no token is configured
    admin_token: str = Field(default="", alias="COLDSTART_ADMIN_TOKEN")

    log_dir: str = Field(default="/tmp/coldstart-logs", alias="COLDSTART_LOG_DIR")
    routes_file: Optional[str] = Field(default=None, alias="COLDSTART_ROUTES_FILE")

    # -------------------------------------------------------------------------
    # Default backend (used when no routes file is configured)
    # -------------------------------------------------------------------------

    backend_name: str = Field(default="default", alias="BACKEND_NAME")
    backend_command: Optional[str] = Field(default=None, alias="BACKEND_COMMAND")
    backend_image: Optional[str] = Field(default=None, alias="BACKEND_IMAGE")
    backend_args: str = Field(default="", alias="BACKEND_ARGS")
    backend_app_path: Optional[str] = Field(default=None, alias="BACKEND_APP_PATH")
    backend_port: Optional[int] = Field(default=None, alias="BACKEND_PORT")
    backend_idle_timeout_seconds: float = Field(
        default=60.0, alias="BACKEND_IDLE_TIMEOUT_SECONDS"
    )
    backend_idle_poll_seconds: float = Field(
        default=60.0, alias="BACKEND_IDLE_POLL_SECONDS"
    )
    backend_start_timeout_seconds: float = Field(
        default=5.0, alias="BACKEND_START_TIMEOUT_SECONDS"
    )
    backend_stop_grace_seconds: float = Field(
        default=5.0, alias="BACKEND_STOP_GRACE_SECONDS"
    )
    backend_request_timeout_seconds: float = Field(
        default=10.0, alias="BACKEND_REQUEST_TIMEOUT_SECONDS"
    )
    backend_log_rotation_seconds: float = Field(
        default=3600.0, alias="BACKEND_LOG_ROTATION_SECONDS"
    )
    backend_log_retention: int = Field(default=24, alias="BACKEND_LOG_RETENTION")

    class Config:
        env_file = ".env"
        extra = "ignore"

    def backend_configs(self) -> list[BackendConfig]:
        """Build the configured routes, validating each one."""
        if self.routes_file:
            return load_routes_file(Path(self.routes_file))
        if not self.backend_command and not self.backend_image:
            return []
        try:
            return [
                BackendConfig(
                    name=self.backend_name,
                    command=self.backend_command,
                    image=self.backend_image,
                    args=tuple(shlex.split(self.backend_args)),
                    app_path=self.backend_app_path,
                    port=self.backend_port,
                    idle_timeout=self.backend_idle_timeout_seconds,
                    idle_poll_interval=self.backend_idle_poll_seconds,
                    start_timeout=self.backend_start_timeout_seconds,
                    stop_grace_timeout=self.backend_stop_grace_seconds,
                    request_timeout=self.backend_request_timeout_seconds,
                    log_rotation_interval=self.backend_log_rotation_seconds,
                    log_retention=self.backend_log_retention,
                )
            ]
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid default backend: {exc}") from exc


def load_routes_file(path: Path) -> list[BackendConfig]:
    """Parse ``{"routes": [...]}`` into backend configs.

    Raises:
        ConfigurationError: On unreadable JSON, invalid routes, or duplicate names.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot read routes file {path}: {exc}") from exc
    if not isinstance(raw, dict) or not isinstance(raw.get("routes"), list):
        raise ConfigurationError(f"Routes file {path} must contain a 'routes' list")

    configs: list[BackendConfig] = []
    seen: set[str] = set()
    for index, item in enumerate(raw["routes"]):
        try:
            config = BackendConfig.model_validate(item)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid route #{index} in {path}: {exc}") from exc
        if config.name in seen:
            raise ConfigurationError(f"Duplicate route name '{config.name}' in {path}")
        seen.add(config.name)
        configs.append(config)
    return configs


settings = Settings()
