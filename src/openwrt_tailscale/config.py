"""Configuration management for the OpenWrt Tailscale installer."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from openwrt_tailscale.constants import (
    DEFAULT_RELEASE_API_URL,
    DEPENDENCY_PACKAGES,
    DOWNLOAD_TIMEOUT,
    HTTP_TIMEOUT,
    LOG_LEVELS,
)


class Settings(BaseSettings):
    """Installer settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Activation
    tailscale_advertise_route: str | None = Field(
        default=None, description="Comma-separated CIDRs to advertise on first install"
    )
    tailscale_login_server: str | None = Field(
        default=None, description="Control server URL used on first install"
    )

    # Release source
    release_api_url: str = Field(
        default=DEFAULT_RELEASE_API_URL, description="Latest-release metadata endpoint"
    )
    github_token: SecretStr | None = Field(
        default=None, description="Optional GitHub token for the release API"
    )
    http_timeout: float = Field(default=HTTP_TIMEOUT, gt=0)
    download_timeout: float = Field(default=DOWNLOAD_TIMEOUT, gt=0)

    # Filesystem
    root_dir: str = Field(default="/", description="Filesystem root for installed files")
    tmp_dir: str = Field(default="/tmp", description="Scratch space for archive and backup")

    # Behaviour
    install_dependencies: bool = Field(default=True)
    dependency_packages: list[str] = Field(default_factory=lambda: list(DEPENDENCY_PACKAGES))
    stop_grace_seconds: float = Field(default=2.0, ge=0)
    require_openwrt: bool = Field(default=True)

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["console", "json"] = Field(default="console")

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("tailscale_advertise_route", "tailscale_login_server")
    @classmethod
    def _blank_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def advertise_routes(self) -> list[str]:
        """Routes to advertise, in the order given."""
        if not self.tailscale_advertise_route:
            return []
        return [r.strip() for r in self.tailscale_advertise_route.split(",") if r.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
