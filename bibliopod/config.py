"""Configuration management for BiblioPod.

This module provides centralized configuration using Pydantic Settings.
Values come from environment variables or a local ``.env`` file.

Environment Profiles:
    - DEVELOPMENT: Verbose logging, human-readable output
    - PRODUCTION: JSON logs, INFO level
    - TESTING: In-memory database, minimal logging, no log file
    - STAGING: Production-like with INFO logging

Example:
    >>> from bibliopod.config import settings
    >>> print(settings.database_path)
    /home/me/data/bibliopod.db
    >>> if settings.max_storage_bytes:
    ...     print(f"Quota: {settings.max_storage_bytes} bytes")
"""

from enum import StrEnum
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    """Runtime environment with specific behavior profiles.

    Attributes:
        DEVELOPMENT: Verbose logging, human-readable output
        PRODUCTION: Structured logs, conservative defaults
        TESTING: In-memory database, minimal logging, fast execution
        STAGING: Pre-production validation environment
    """

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Attributes:
        environment: Active runtime profile
        data_dir: Base directory for the database, payloads and logs
        database_path: Path to the SQLite database file
        files_dir: Directory holding binary book payloads
        max_storage_bytes: Optional upper bound for stored payload bytes
        stream_chunk_size: Chunk size used when copying payloads
        default_mime_type: MIME type assumed for payloads without one
        log_level: Minimum log level
        log_to_file: Also write logs to ``data_dir/bibliopod.log``
        log_json: Emit JSON logs instead of colored text
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Runtime environment (development, production, testing, staging)",
    )

    # Storage locations
    data_dir: Path = Field(
        Path("./data"),
        description="Base directory for all data files (database, payloads, logs)",
    )
    database_path: Path = Field(
        Path("bibliopod.db"),  # Resolved against data_dir by validator
        description="Path to SQLite database file (defaults to data_dir/bibliopod.db)",
    )
    files_dir: Path = Field(
        Path("book_files"),  # Resolved against data_dir by validator
        description="Directory for binary book payloads (defaults to data_dir/book_files)",
    )

    # Storage behavior
    max_storage_bytes: Optional[int] = Field(
        None,
        ge=0,
        description="Maximum total size of stored book payloads (None = unlimited)",
    )
    stream_chunk_size: int = Field(
        1024 * 1024,
        ge=4096,
        description="Chunk size in bytes used when streaming payloads",
    )
    default_mime_type: str = Field(
        "application/epub+zip",
        description="MIME type assumed for payloads stored without one",
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_to_file: bool = Field(
        default=True,
        description="Enable file logging in addition to console",
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (recommended for production)",
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand and resolve data directory path."""
        path = Path(v).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    @model_validator(mode="after")
    def resolve_storage_paths(self) -> "Settings":
        """Place the database and payload directory under data_dir unless overridden."""
        if self.database_path == Path("bibliopod.db"):
            self.database_path = self.data_dir / "bibliopod.db"
        if self.files_dir == Path("book_files"):
            self.files_dir = self.data_dir / "book_files"
        return self

    @model_validator(mode="after")
    def apply_environment_profile(self) -> "Settings":
        """Apply environment-specific defaults.

        Profiles:
            - PRODUCTION: INFO logging, JSON logs
            - DEVELOPMENT: DEBUG logging, human-readable logs
            - TESTING: In-memory database, ERROR logging, no file logging
            - STAGING: INFO logging, JSON logs

        Returns:
            Modified settings instance with environment-specific adjustments
        """
        if self.environment == Environment.PRODUCTION:
            if self.log_level == "DEBUG":
                self.log_level = "INFO"
            self.log_json = True

        elif self.environment == Environment.DEVELOPMENT:
            self.log_level = "DEBUG"
            self.log_json = False

        elif self.environment == Environment.TESTING:
            self.database_path = Path(":memory:")
            self.log_level = "ERROR"
            self.log_to_file = False
            self.log_json = False

        elif self.environment == Environment.STAGING:
            self.log_level = "INFO"
            self.log_json = True

        return self

    @property
    def export_dir(self) -> Path:
        """Get backup export directory path."""
        export_path = self.data_dir / "export"
        export_path.mkdir(parents=True, exist_ok=True)
        return export_path

    @property
    def database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        if str(self.database_path) == ":memory:":
            return "sqlite://"
        return f"sqlite:///{self.database_path}"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment == Environment.TESTING

    @property
    def is_staging(self) -> bool:
        """Check if running in staging environment."""
        return self.environment == Environment.STAGING


def get_settings() -> Settings:
    """Get a fresh settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
