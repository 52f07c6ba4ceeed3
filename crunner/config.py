"""Centralized configuration management using Pydantic Settings.

This module provides typed configuration for all application settings,
loaded from environment variables with sensible defaults.

Usage:
    from crunner.config import get_settings
    settings = get_settings()
    image = settings.sandbox.image
"""

from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_bool(v):
    if isinstance(v, str):
        return v.lower() in ("1", "true", "yes")
    return bool(v)


class SandboxSettings(BaseSettings):
    """Isolated environment (docker) configuration shared by build and run."""

    model_config = SettingsConfigDict(env_prefix="SANDBOX_", extra="ignore")

    image: str = Field(default="c-runner:latest", description="Prebuilt image with gcc and coreutils")
    docker_bin: str = Field(default="docker", description="Docker CLI executable")
    memory_limit: str = Field(default="256m", description="Memory ceiling (also used as swap ceiling)")
    cpu_limit: float = Field(default=0.5, gt=0, description="CPU share")
    pids_limit: int = Field(default=64, gt=0, description="Maximum process count")
    user: str = Field(default="1000:1000", description="Unprivileged uid:gid inside the container")
    workdir: str = Field(default="/workspace", description="Mount point of the workspace")
    tmpfs_size: str = Field(default="64m", description="Size of the writable /tmp")
    compiler: str = Field(default="gcc")
    compile_flags: list[str] = Field(default=["-std=c11", "-Wall", "-Wextra", "-O2"])
    compile_timeout_sec: float = Field(default=10.0, gt=0, description="Build stage bound")
    run_timeout_sec: float = Field(default=3.0, gt=0, description="Deadline enforced inside the container")
    supervisor_timeout_sec: float = Field(default=15.0, gt=0, description="Outer deadline on the docker client")
    max_output_bytes: int = Field(default=64 * 1024, gt=0, description="Per-stream capture limit")
    workspace_dir: str = Field(default="", description="Parent directory for workspaces; system temp if empty")

    @model_validator(mode="after")
    def check_supervisor_timeout(self):
        if self.supervisor_timeout_sec <= self.run_timeout_sec:
            raise ValueError("supervisor_timeout_sec must be larger than run_timeout_sec")
        return self

    @property
    def uid_gid(self) -> tuple[int, int] | None:
        """Numeric owner for workspaces, or None if `user` is a name."""
        uid, _, gid = self.user.partition(":")
        if not uid.isdigit() or (gid and not gid.isdigit()):
            return None
        return int(uid), int(gid or uid)


class LimitSettings(BaseSettings):
    """Request size ceilings enforced before any workspace is allocated."""

    model_config = SettingsConfigDict(env_prefix="RUNNER_", extra="ignore")

    max_source_bytes: int = Field(default=1024 * 1024, gt=0, description="Source size ceiling (UTF-8 bytes)")
    max_input_bytes: int = Field(default=1024 * 1024, gt=0, description="Supplied input ceiling (UTF-8 bytes)")


class InteractiveSettings(BaseSettings):
    """Interactive (terminal) session configuration."""

    model_config = SettingsConfigDict(env_prefix="INTERACTIVE_", extra="ignore")

    strip_ansi: bool = Field(default=True, description="Remove terminal control sequences from output")
    timeout_sec: float = Field(default=300.0, gt=0, description="Program lifetime inside the container")
    supervisor_timeout_sec: float = Field(default=310.0, gt=0, description="Outer deadline on the session")
    cols: int = Field(default=80, gt=0)
    rows: int = Field(default=30, gt=0)

    @field_validator("strip_ansi", mode="before")
    @classmethod
    def parse_strip_ansi(cls, v):
        return _parse_bool(v)

    @model_validator(mode="after")
    def check_supervisor_timeout(self):
        if self.supervisor_timeout_sec <= self.timeout_sec:
            raise ValueError("supervisor_timeout_sec must be larger than timeout_sec")
        return self


class RedisSettings(BaseSettings):
    """Redis connection configuration."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    host: str = Field(default="redis", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: str = Field(default="", description="Redis password")
    max_connections: int = Field(default=50, description="Maximum pool connections")
    pool_timeout_sec: float = Field(default=5.0, description="Pool timeout in seconds")
    socket_timeout: float = Field(default=5.0, description="Socket timeout in seconds")
    socket_connect_timeout: float = Field(default=5.0, description="Socket connect timeout in seconds")


class CorsSettings(BaseSettings):
    """CORS configuration."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    origins_raw: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS",
    )

    @property
    def origins(self) -> list[str]:
        """Parse comma-separated origins into list."""
        return [o.strip() for o in self.origins_raw.split(",") if o.strip()]

    @property
    def allow_credentials(self) -> bool:
        """Credentials not allowed with wildcard origins."""
        return self.origins != ["*"]


class DebugSettings(BaseSettings):
    """Debug flags configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    request: bool = Field(default=False, alias="request_debug")
    websocket: bool = Field(default=False, alias="ws_debug")

    @field_validator("*", mode="before")
    @classmethod
    def parse_bool(cls, v):
        return _parse_bool(v)


class FeatureSettings(BaseSettings):
    """Feature flags configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    event_bus: bool = Field(default=True, alias="enable_event_bus")

    @field_validator("*", mode="before")
    @classmethod
    def parse_bool(cls, v):
        return _parse_bool(v)


class Settings:
    """Main application settings combining all configuration sections.

    Each subsetting is loaded independently with its own prefix.
    """

    def __init__(self) -> None:
        self.sandbox = SandboxSettings()
        self.limits = LimitSettings()
        self.interactive = InteractiveSettings()
        self.redis = RedisSettings()
        self.cors = CorsSettings()
        self.debug = DebugSettings()
        self.features = FeatureSettings()


@lru_cache
def get_settings() -> Settings:
    """Get cached Settings instance (singleton pattern)."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear cached settings (useful for testing)."""
    get_settings.cache_clear()
