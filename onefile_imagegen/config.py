"""Configuration settings for onefile_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

All persisted orchestrator state (checkpoint log, saved default build
configuration, fetch cache, stage logs, run lock) lives under ``state_dir``.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_state_dir() -> Path:
    """Return the default persisted-state root."""
    return Path.home() / ".local" / "share" / "onefile-imagegen"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ONEFILE_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ONEFILE_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    state_dir: Path = Field(
        default_factory=_default_state_dir,
        description="Root directory for checkpoints, saved defaults, cache and logs",
    )
    work_dir: Path = Field(
        default=Path("build"),
        description="Working directory for the install root and source trees",
    )
    kernel_config_dir: Path = Field(
        default=Path("kernel-configs"),
        description="Directory with base kernel configs and features/ overlays",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Resource planning
    per_worker_memory_gib: float = Field(
        default=2.0,
        gt=0,
        description="Memory budget of the heaviest compilation unit per worker",
    )
    low_memory_threshold_gib: float = Field(
        default=4.0,
        gt=0,
        description="Below this much available memory the build is memory-constrained",
    )
    swap_size_mb: int = Field(
        default=4096,
        ge=256,
        description="Size of the temporary swap file requested on low memory",
    )
    swap_path: Path = Field(
        default=Path("/tmp/onefile_imagegen_swap"),
        description="Location of the temporary swap file",
    )

    # Component versions
    alpine_version: str = Field(default="3.21.3", description="Alpine minirootfs")
    kernel_version: str = Field(default="6.12.19", description="Linux kernel")
    zfs_version: str = Field(default="2.3.0", description="OpenZFS sources")

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single source download",
    )
    stage_timeout: int = Field(
        default=14400,
        ge=60,
        description="Timeout for a single collaborator command",
    )

    artifact_name: str = Field(
        default="OneFileLinux.efi",
        description="File name of the final artifact",
    )

    @property
    def db_url(self) -> str:
        """SQLite URL of the checkpoint log."""
        return f"sqlite:///{self.state_dir / 'checkpoints.sqlite'}"

    @property
    def defaults_path(self) -> Path:
        """Location of the saved default build configuration."""
        return self.state_dir / "defaults.yaml"

    @property
    def cache_dir(self) -> Path:
        """Default cache directory for fetched components."""
        return self.state_dir / "cache"

    @property
    def logs_dir(self) -> Path:
        """Directory for per-stage collaborator logs."""
        return self.state_dir / "logs"

    @property
    def lock_path(self) -> Path:
        """Advisory run-lock file."""
        return self.state_dir / "run.lock"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
