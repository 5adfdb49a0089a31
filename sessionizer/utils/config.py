# ==============================================================================
# Application Configuration
# ==============================================================================
"""
Configuration management using pydantic-settings.

All configuration is loaded from environment variables, with support for
.env files via python-dotenv.

Missing or inconsistent required settings surface as ConfigurationError so
the entry point can fail before any broker or database connection is made.
"""

from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sessionizer.utils.paths import resolve_path

# Load .env file before any settings are instantiated
load_dotenv()


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""


class KafkaSettings(BaseSettings):
    """Kafka connection and subscription settings."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    brokers: str = Field(
        ...,
        validation_alias=AliasChoices("KAFKA_BROKERS", "KAFKA_SERVICE_URI"),
        description="Comma or space separated broker list",
    )
    topic: str = Field(default="clickstream", description="Events topic name")
    group_id: str = Field(default="sessionizer", description="Consumer group ID")
    from_beginning: bool = Field(
        default=False, description="Start from the earliest offset when no offset is committed"
    )
    client_id: str = Field(default="sessionizer", description="Kafka client ID")

    security_protocol: Literal["PLAINTEXT", "SSL", "SASL_SSL"] = Field(
        default="PLAINTEXT", description="Security protocol (PLAINTEXT, SSL or SASL_SSL)"
    )

    # SSL settings for mTLS authentication
    ca_cert_path: Optional[str] = Field(default=None, description="Path to CA certificate file")
    access_cert_path: Optional[str] = Field(
        default=None, description="Path to client certificate file"
    )
    access_key_path: Optional[str] = Field(
        default=None, description="Path to client private key file"
    )

    # SASL/SCRAM credentials
    sasl_username: Optional[str] = Field(default=None, description="SCRAM username")
    sasl_password: Optional[str] = Field(default=None, description="SCRAM password")

    dead_letter_topic: Optional[str] = Field(
        default=None, description="Topic receiving rejected messages (disabled when unset)"
    )

    @property
    def broker_list(self) -> list[str]:
        """Broker addresses with URI scheme prefixes removed."""
        from sessionizer.infrastructure.kafka import parse_brokers

        return parse_brokers(self.brokers)

    @property
    def auto_offset_reset(self) -> str:
        """Offset reset policy derived from from_beginning."""
        return "earliest" if self.from_beginning else "latest"


class PostgresSettings(BaseSettings):
    """PostgreSQL connection settings."""

    model_config = SettingsConfigDict(env_prefix="PG_")

    dsn: str = Field(..., description="libpq connection string or URI")
    schema_name: str = Field(
        default="public", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$", description="Schema name"
    )
    ca_cert_path: Optional[str] = Field(default=None, description="Path to CA certificate file")
    ssl_insecure: bool = Field(
        default=False, description="Encrypt without verifying the server certificate"
    )
    pool_size: int = Field(default=5, ge=1, description="Maximum pooled connections")
    connect_timeout: int = Field(default=10, ge=1, description="Connect timeout in seconds")
    statement_timeout_ms: int = Field(
        default=30000, ge=0, description="Per-statement timeout in milliseconds (0 disables)"
    )

    @field_validator("dsn")
    @classmethod
    def _dsn_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("PG_DSN must not be empty")
        return value


class ConsumerSettings(BaseSettings):
    """Stream consumer settings."""

    model_config = SettingsConfigDict(env_prefix="CONSUMER_")

    batch_size: int = Field(default=500, ge=1, description="Max records fetched per poll")
    poll_timeout_ms: int = Field(default=1000, ge=1, description="Poll timeout in milliseconds")
    max_lanes: Optional[int] = Field(
        default=None,
        ge=1,
        description="Partition lanes processed concurrently (defaults to PG_POOL_SIZE)",
    )
    synthesize_event_id: bool = Field(
        default=True,
        description="Derive an idempotency key when the payload has no event_id",
    )
    progress_every: int = Field(
        default=250, ge=1, description="Log a progress line every N stored events"
    )
    summary_interval_seconds: float = Field(
        default=30.0, gt=0, description="Throughput summary interval in seconds"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        extra="ignore",
    )

    # Nested settings
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    consumer: ConsumerSettings = Field(default_factory=ConsumerSettings)

    # General settings
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def max_lanes(self) -> int:
        """Concurrent partition lanes, capped by the connection pool by default."""
        return self.consumer.max_lanes or self.postgres.pool_size

    def validate_runtime(self) -> None:
        """
        Check cross-field requirements that pydantic cannot express per field.

        Raises:
            ConfigurationError: If TLS material or credentials are missing
        """
        kafka = self.kafka
        if not kafka.broker_list:
            raise ConfigurationError("KAFKA_BROKERS (or KAFKA_SERVICE_URI) is empty")

        if kafka.security_protocol == "SSL":
            for env_name, value in (
                ("KAFKA_CA_CERT_PATH", kafka.ca_cert_path),
                ("KAFKA_ACCESS_CERT_PATH", kafka.access_cert_path),
                ("KAFKA_ACCESS_KEY_PATH", kafka.access_key_path),
            ):
                if not value:
                    raise ConfigurationError(f"{env_name} missing (required for SSL)")
                if not resolve_path(value).exists():
                    raise ConfigurationError(f"Missing {env_name} file: {resolve_path(value)}")

        if kafka.security_protocol == "SASL_SSL":
            if not (kafka.sasl_username and kafka.sasl_password):
                raise ConfigurationError(
                    "KAFKA_SASL_USERNAME and KAFKA_SASL_PASSWORD are required for SASL_SSL"
                )
            if kafka.ca_cert_path and not resolve_path(kafka.ca_cert_path).exists():
                raise ConfigurationError(
                    f"Missing KAFKA_CA_CERT_PATH file: {resolve_path(kafka.ca_cert_path)}"
                )

        pg = self.postgres
        if pg.ca_cert_path and not pg.ssl_insecure and not resolve_path(pg.ca_cert_path).exists():
            raise ConfigurationError(
                f"Missing PG_CA_CERT_PATH file: {resolve_path(pg.ca_cert_path)}"
            )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once and cached for subsequent calls.

    Raises:
        ConfigurationError: If required settings are missing or invalid
    """
    try:
        settings = Settings()
    except ValidationError as e:
        raise ConfigurationError(_describe_validation_error(e)) from e
    settings.validate_runtime()
    return settings


def _describe_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic ValidationError into one readable line."""
    problems = []
    for err in error.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{location or error.title}: {err.get('msg')}")
    return f"Invalid configuration ({error.title}): " + "; ".join(problems)
