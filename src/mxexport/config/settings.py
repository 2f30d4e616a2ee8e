"""
Centralized configuration management for mxexport.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.models import SinkTarget, StreamTarget, TopicTarget


KINESIS_STREAM = "kinesis-stream"
PUBSUB = "pubsub"
EXPORT_DESTINATIONS = (KINESIS_STREAM, PUBSUB)


class MongoSettings(BaseSettings):
    """MongoDB source configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    uri: str = Field(default="mongodb://localhost:27017", description="MongoDB connection URI")
    database: str = Field(default="", description="Database to watch; also the Pub/Sub topic ID")
    collection: str = Field(default="", description="Collection to watch; also the Pub/Sub subscription ID")

    # Connection settings
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")

    full_document: str = Field(
        default="updateLookup",
        description="Change stream fullDocument mode (default, updateLookup, whenAvailable, required)"
    )


class KinesisSettings(BaseSettings):
    """AWS Kinesis data stream configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KINESIS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    stream_name: str = Field(default="", description="Target Kinesis stream name")
    region: Optional[str] = Field(default=None, description="AWS region (falls back to the AWS SDK chain)")
    endpoint_url: Optional[str] = Field(default=None, description="Endpoint override, e.g. localstack")

    read_timeout: int = Field(default=30, description="Socket read timeout for PutRecord in seconds")
    max_attempts: int = Field(default=3, description="botocore retry attempts for PutRecord")


class PubSubSettings(BaseSettings):
    """Google Cloud Pub/Sub configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PUBSUB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    project_id: str = Field(default="", description="GCP project that owns the topic and subscription")
    publish_timeout: float = Field(
        default=60.0,
        description="Upper bound in seconds to wait for a publish acknowledgment"
    )


class DatabaseSettings(BaseSettings):
    """Checkpoint (resume token) database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy connection URL. Overrides individual fields if set."
    )

    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    user: str = Field(default="user", description="PostgreSQL username")
    password: str = Field(default="pass", description="PostgreSQL password")
    database: str = Field(default="mxexport", description="PostgreSQL database name")

    @property
    def connection_url(self) -> str:
        """Get the database connection URL."""
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class WatcherSettings(BaseSettings):
    """Change stream watcher configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WATCHER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    job_id: str = Field(default="mxexport", description="Checkpoint key for this exporter instance")

    # Retry settings
    max_retries: int = Field(default=5, description="Attempts per event before giving up")
    retry_backoff_base: int = Field(default=2, description="Exponential backoff base (seconds)")
    max_retry_delay: int = Field(default=60, description="Max seconds between retries")
    export_timeout: float = Field(default=60.0, gt=0, description="Deadline in seconds for one export attempt")

    skip_malformed: bool = Field(
        default=False,
        description="Log and skip events that fail to decode or encode instead of stopping"
    )


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")
    log_level: str = Field(default="INFO", description="Root log level")
    metrics_port: Optional[int] = Field(default=None, description="Expose Prometheus metrics on this port")

    export_destination: str = Field(
        default=KINESIS_STREAM,
        description="Sink to export to: kinesis-stream or pubsub"
    )

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    kinesis: KinesisSettings = Field(default_factory=KinesisSettings)
    pubsub: PubSubSettings = Field(default_factory=PubSubSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @field_validator("export_destination")
    @classmethod
    def validate_export_destination(cls, v: str) -> str:
        """Validate export destination value."""
        if v.lower() not in EXPORT_DESTINATIONS:
            raise ValueError(f"Export destination must be one of: {EXPORT_DESTINATIONS}")
        return v.lower()

    def sink_target(self) -> SinkTarget:
        """Resolve where events go for the lifetime of the process.

        Raises:
            ValueError: If a value the destination needs is not configured
        """
        if self.export_destination == KINESIS_STREAM:
            if not self.kinesis.stream_name:
                raise ValueError("KINESIS_STREAM_NAME must be set for the kinesis-stream destination")
            return StreamTarget(stream_name=self.kinesis.stream_name)

        if not self.pubsub.project_id:
            raise ValueError("PUBSUB_PROJECT_ID must be set for the pubsub destination")
        if not self.mongo.database or not self.mongo.collection:
            raise ValueError("MONGO_DATABASE and MONGO_COLLECTION must be set for the pubsub destination")
        return TopicTarget(topic=self.mongo.database, subscription=self.mongo.collection)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
