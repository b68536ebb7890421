"""
Centralized configuration management for avfeed.

Uses Pydantic Settings for validation and environment variable loading.
Sources, highest priority first: init kwargs, environment, .env file,
appSettings.json, defaults.
"""
from typing import Optional, Tuple, Type
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from avfeed.changefeed.errors import ConfigError

PLACEHOLDER_AUTH_KEY = "Super secret key"
SETTINGS_JSON_FILE = "appSettings.json"


class CosmosSettings(BaseSettings):
    """Cosmos DB account and container configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COSMOS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        json_file=SETTINGS_JSON_FILE,
        extra="ignore"
    )

    endpoint_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("COSMOS_ENDPOINT_URL", "EndPointUrl", "endpoint_url"),
        description="Account endpoint, e.g. https://<account>.documents.azure.com:443/"
    )
    authorization_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("COSMOS_AUTHORIZATION_KEY", "AuthorizationKey", "authorization_key"),
        description="Account key"
    )

    database_name: str = Field(
        default="allversionsanddeletes-ttl-delete",
        description="Database holding the demo container"
    )
    container_name: Optional[str] = Field(
        default=None,
        description="Container name. Defaults to '<database_name>-container'"
    )
    partition_key_path: str = Field(default="/id", description="Container partition key path")
    connection_mode: str = Field(default="Gateway", description="SDK connection mode")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @property
    def resolved_container_name(self) -> str:
        return self.container_name or f"{self.database_name}-container"


class FeedSettings(BaseSettings):
    """Ingestion and change feed read configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FEED_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    page_size_hint: int = Field(default=10, description="Max items per change feed page (hint)")
    ttl_seconds: int = Field(default=30, description="TTL stamped on ingested documents")
    docs_to_add: int = Field(default=50, description="Documents per ingestion run")
    retention_minutes: int = Field(
        default=10,
        description="Full fidelity change feed retention (all versions and deletes window)"
    )
    poll_interval: float = Field(default=5.0, description="Seconds between continuous poll cycles")
    starting_sequence: int = Field(default=0, description="Logical sequence number to start reading at")
    feed_id: str = Field(default="ttl-demo", description="Checkpoint key for the reader")

    @field_validator("page_size_hint", "ttl_seconds", "retention_minutes", "poll_interval")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("docs_to_add", "starting_sequence")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v


class CheckpointSettings(BaseSettings):
    """Continuation token persistence."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(default=False, description="Persist the reader's token after each page")
    url: str = Field(default="sqlite:///avfeed_checkpoints.db", description="SQLAlchemy URL")


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines instead of plain text")

    cosmos: CosmosSettings = Field(default_factory=CosmosSettings)
    feed: FeedSettings = Field(default_factory=FeedSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    def validate_credentials(self) -> None:
        """
        Check the Cosmos endpoint and key before any store call.

        Raises:
            ConfigError: If the endpoint is missing, or the key is missing or
                still the placeholder value
        """
        if not self.cosmos.endpoint_url:
            raise ConfigError(f"Please specify a valid EndPointUrl in the {SETTINGS_JSON_FILE}")
        key = self.cosmos.authorization_key
        if not key or key == PLACEHOLDER_AUTH_KEY:
            raise ConfigError(f"Please specify a valid AuthorizationKey in the {SETTINGS_JSON_FILE}")


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
