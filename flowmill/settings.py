"""
Configuration settings for Flowmill.

This module provides a settings class for Flowmill, with support for loading
configuration from TOML files and environment variables.
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


class DatabaseDriver(str, Enum):
    """Supported database drivers."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql+psycopg2"
    POSTGRESQL_ASYNC = "postgresql+asyncpg"


DEFAULT_SCHEDULE_INTERVALS: dict[str, int] = {
    "every_5_minutes": 300,
    "hourly": 3600,
    "every_2_hours": 7200,
    "every_4_hours": 14400,
    "qtrdaily": 21600,
    "twicedaily": 43200,
    "daily": 86400,
    "weekly": 604800,
}


class Settings(BaseSettings):
    """Main settings class for Flowmill.

    This class handles loading configuration from TOML files and environment variables,
    with support for custom settings sources.
    """

    model_config = SettingsConfigDict(
        toml_file=["settings.toml", "settings.custom.toml"], env_prefix="FLOWMILL_", extra="ignore"
    )

    debug: bool = False

    # Storage settings
    storage_path: str = str(Path.home() / "flowmill/data")

    # RabbitMQ settings
    rabbitmq_login: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_exchange: str = "flowmill"

    # Broker settings
    broker_retry_count: int = 3
    broker_retry_delay: int = 5
    broker_retry_max_delay: int = 120
    broker_ack_type: str = "when_executed"
    worker_concurrency: int = 4

    # Database settings
    database_driver: DatabaseDriver = DatabaseDriver.SQLITE
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "flowmill"
    database_username: str = "postgres"
    database_password: str = "postgres"
    database_pool_size: int = 20

    # Scheduler settings
    scheduler_poll_interval: float = 1.0
    scheduler_batch_size: int = 50
    schedule_intervals: dict[str, int] = DEFAULT_SCHEDULE_INTERVALS

    # Engine components loaded by the worker
    handler_modules: list[str] = []
    ai_client_factory: str | None = None

    # Workflow settings
    max_runs_per_request: int = 10
    problem_flow_threshold: int = 3
    stuck_job_timeout_minutes: int = 120
    stuck_job_sweep_interval: int = 300

    # Logging settings
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str | None = None  # If None, will use {storage_path}/logs
    log_rotation: str = "20 MB"
    log_retention: str = "1 week"
    log_format: str | None = None  # Use default if None

    @classmethod
    def settings_customize_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the sources for settings.

        Priority order: init arguments, environment variables, then TOML config files
        """
        return init_settings, env_settings, TomlConfigSettingsSource(settings_cls)

    @property
    def database_url(self) -> str:
        """Get the database URL for SQLAlchemy."""
        if self.database_driver == DatabaseDriver.SQLITE:
            return f"sqlite:///{self.database_name}.db"
        else:
            return (
                f"{self.database_driver.value}://{self.database_username}:"
                f"{self.database_password}@{self.database_host}:{self.database_port}/"
                f"{self.database_name}"
            )

    def get_log_dir(self) -> Path:
        """Get the log directory path.

        Returns:
            Path to the log directory. Uses log_dir if specified,
            otherwise creates logs directory in storage_path.
        """
        if self.log_dir:
            return Path(self.log_dir)
        return Path(self.storage_path) / "logs"

    def get_pipeline_dir(self, pipeline_id: int) -> Path:
        """Get the working directory used by a pipeline's handlers."""
        return Path(self.storage_path) / "pipelines" / f"pipeline-{pipeline_id}"


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance, with caching.

    Returns:
        Cached Settings instance
    """
    return Settings()


# Create a global settings instance for easy imports
settings = get_settings()
