"""
Configuration settings for OMOP pipeline contracts.

This module provides a settings class for the contract engine and its queue
integration, with support for loading configuration from TOML files and
environment variables.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)


class SchemaVersion(str, Enum):
    """Supported message schema revisions.

    ``v1`` is the strict legacy revision (two statuses, at least one term).
    ``v2`` is the permissive revision (four statuses, terms may be empty).
    """

    V1 = "v1"
    V2 = "v2"


class Settings(BaseSettings):
    """Main settings class for OMOP pipeline contracts.

    This class handles loading configuration from TOML files and environment variables,
    with support for custom settings sources.
    """

    model_config = SettingsConfigDict(
        toml_file=["settings.toml", "settings.custom.toml"],
        env_prefix="OMOP_CONTRACTS_",
        extra="ignore",
    )

    # Contract settings
    schema_version: SchemaVersion = SchemaVersion.V2
    chunk_max_gap: int = 2
    chunk_max_overlap: int = 0
    text_length_tolerance: float = 0.05
    stuck_timeout_seconds: float = 300.0
    clock_skew_seconds: float = 5.0

    # RabbitMQ settings
    rabbitmq_login: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_exchange: str = "omop"

    # Pipeline settings
    pipeline_retry_count: int = 3
    pipeline_retry_delay: int = 5
    pipeline_retry_max_delay: int = 120
    pipeline_ack_type: str = "when_executed"
    pipeline_result_backend_url: str | None = None
    worker_stages: list[str] = []
    pipeline_task_modules: list[str] = []

    # Logging settings
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str = str(Path.home() / "omop_contracts/logs")
    log_rotation: str = "20 MB"
    log_retention: str = "1 week"
    log_format: str | None = None  # Use default if None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the sources for settings.

        Priority order: explicit init arguments, environment variables, then TOML config files
        """
        return init_settings, env_settings, TomlConfigSettingsSource(settings_cls)

    @property
    def amqp_url(self) -> str:
        """Get the AMQP connection URL for RabbitMQ."""
        return (
            f"amqp://{self.rabbitmq_login}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    def get_log_dir(self) -> Path:
        """Get the log directory path."""
        return Path(self.log_dir)


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance, with caching.

    Returns:
        Cached Settings instance
    """
    return Settings()


# Create a global settings instance for easy imports
settings = get_settings()
