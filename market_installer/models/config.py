"""
Pydantic model for installer configuration.
Provides robust validation for all settings.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

MIB = 1024 * 1024

DEFAULT_MARKETPLACE_ROOT = "~/.web-desktop/marketplace"

# Maps config keys to the environment variables that override them
ENV_VARS = {
    "marketplace_root": "MARKETPLACE_DIR",
    "max_artifact_bytes": "MARKETPLACE_MAX_ARTIFACT_BYTES",
    "max_unpacked_bytes": "MARKETPLACE_MAX_UNPACKED_BYTES",
    "lock_lease_seconds": "MARKETPLACE_LOCK_LEASE_SECONDS",
    "lock_timeout_seconds": "MARKETPLACE_LOCK_TIMEOUT_SECONDS",
    "retry_max_attempts": "MARKETPLACE_RETRY_MAX_ATTEMPTS",
    "retry_base_delay": "MARKETPLACE_RETRY_BASE_DELAY",
    "retry_max_delay": "MARKETPLACE_RETRY_MAX_DELAY",
    "staging_grace_seconds": "MARKETPLACE_STAGING_GRACE_SECONDS",
    "job_retention_seconds": "MARKETPLACE_JOB_RETENTION_SECONDS",
    "sweep_interval_seconds": "MARKETPLACE_SWEEP_INTERVAL_SECONDS",
    "network_timeout_seconds": "MARKETPLACE_NETWORK_TIMEOUT_SECONDS",
    "max_connections": "MARKETPLACE_MAX_CONNECTIONS",
    "job_log_enabled": "MARKETPLACE_JOB_LOG",
}


class InstallerConfig(BaseModel):
    """A validated configuration model for the installer."""

    # Layout
    marketplace_root: Path = Path(DEFAULT_MARKETPLACE_ROOT)

    # Artifact limits
    max_artifact_bytes: int = 500 * MIB
    max_unpacked_bytes: int = 2048 * MIB

    # Locking
    lock_lease_seconds: float = 60.0
    lock_timeout_seconds: float = 30.0

    # Retry & backoff
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Housekeeping
    staging_grace_seconds: float = 3600.0
    job_retention_seconds: float = 86400.0
    sweep_interval_seconds: float = 600.0

    # Network
    network_timeout_seconds: float = 300.0
    max_connections: int = 8

    job_log_enabled: bool = True

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("marketplace_root")
    @classmethod
    def expand_root(cls, v: Path) -> Path:
        """Expands '~' so every derived path is absolute-ish and stable."""
        return Path(v).expanduser()

    @field_validator("max_artifact_bytes", "max_unpacked_bytes")
    @classmethod
    def validate_byte_limits(cls, v: int) -> int:
        """Byte ceilings must be positive."""
        if v <= 0:
            raise ValueError("Byte limits must be greater than zero.")
        return v

    @field_validator("retry_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Ensures a reasonable number of attempts."""
        if v < 1 or v > 20:
            raise ValueError("Retry attempts must be between 1 and 20.")
        return v

    @field_validator("max_connections")
    @classmethod
    def validate_connections(cls, v: int) -> int:
        """Ensures a reasonable connection pool size."""
        if v < 1 or v > 64:
            raise ValueError("Max connections must be between 1 and 64.")
        return v

    @field_validator(
        "lock_lease_seconds",
        "retry_max_delay",
        "network_timeout_seconds",
        "sweep_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Durations must be greater than zero.")
        return v

    @field_validator(
        "lock_timeout_seconds",
        "retry_base_delay",
        "staging_grace_seconds",
        "job_retention_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Durations cannot be negative.")
        return v

    @model_validator(mode="after")
    def validate_limits(self) -> "InstallerConfig":
        """Checks for settings that contradict each other."""
        if self.retry_base_delay > self.retry_max_delay:
            raise ValueError("retry_base_delay cannot exceed retry_max_delay.")
        if self.max_unpacked_bytes < self.max_artifact_bytes:
            raise ValueError("max_unpacked_bytes cannot be below max_artifact_bytes.")
        return self

    @property
    def apps_dir(self) -> Path:
        return self.marketplace_root / "apps"

    @property
    def staging_dir(self) -> Path:
        return self.marketplace_root / ".staging"

    @property
    def locks_dir(self) -> Path:
        return self.marketplace_root / ".locks"

    @property
    def jobs_dir(self) -> Path:
        return self.marketplace_root / ".jobs"

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
