# ==============================================================================
# Kafka Infrastructure
# ==============================================================================
"""
Kafka client configuration, connectivity checks, and dead-letter publishing.

Supports PLAINTEXT (local Docker), SSL (mTLS with client certificates) and
SASL_SSL (SCRAM-SHA-512) security protocols.
"""

import json
import logging
import re
from typing import TYPE_CHECKING

from sessionizer.utils.config import get_settings
from sessionizer.utils.paths import resolve_path
from sessionizer.utils.retry import KAFKA_RETRY_EXCEPTIONS, retry_light

if TYPE_CHECKING:
    from kafka import KafkaConsumer

    from sessionizer.utils.config import KafkaSettings

logger = logging.getLogger(__name__)

# URI schemes some providers prepend to broker addresses
_BROKER_SCHEME = re.compile(r"^(kafka\+ssl|ssl|kafka)://", re.IGNORECASE)


# ==============================================================================
# Configuration
# ==============================================================================


def parse_brokers(value: str) -> list[str]:
    """
    Split a broker list into host:port entries.

    Accepts comma and/or whitespace separators and strips kafka://, ssl://
    and kafka+ssl:// prefixes.

    Args:
        value: Raw broker list from configuration

    Returns:
        List of broker addresses (empty if none)
    """
    brokers = []
    for part in re.split(r"[,\s]+", value or ""):
        part = part.strip()
        if part:
            brokers.append(_BROKER_SCHEME.sub("", part))
    return brokers


def build_kafka_config(
    settings: "KafkaSettings | None" = None,
    request_timeout_ms: int | None = None,
) -> dict:
    """
    Build kafka-python client configuration from settings.

    Includes reconnect backoff so transient broker disruptions are retried by
    the client instead of surfacing to the pipeline.

    Args:
        settings: KafkaSettings instance. If None, loads from get_settings().
        request_timeout_ms: Optional request timeout in milliseconds

    Returns:
        Dict with Kafka client configuration
    """
    if settings is None:
        settings = get_settings().kafka

    config: dict = {
        "bootstrap_servers": settings.broker_list,
        "client_id": settings.client_id,
        "security_protocol": settings.security_protocol,
        # Connection retry settings (applies to all clients)
        "reconnect_backoff_ms": 1000,
        "reconnect_backoff_max_ms": 32000,
        "request_timeout_ms": request_timeout_ms or 30000,
        # Keep connections alive longer to avoid unnecessary reconnects
        "connections_max_idle_ms": 540000,  # 9 minutes
    }

    if settings.security_protocol in ("SSL", "SASL_SSL"):
        config["ssl_check_hostname"] = True
        if settings.ca_cert_path:
            config["ssl_cafile"] = str(resolve_path(settings.ca_cert_path))

    if settings.security_protocol == "SSL":
        if settings.access_cert_path:
            config["ssl_certfile"] = str(resolve_path(settings.access_cert_path))
        if settings.access_key_path:
            config["ssl_keyfile"] = str(resolve_path(settings.access_key_path))

    if settings.security_protocol == "SASL_SSL":
        config.update(
            {
                "sasl_mechanism": "SCRAM-SHA-512",
                "sasl_plain_username": settings.sasl_username,
                "sasl_plain_password": settings.sasl_password,
            }
        )

    return config


# ==============================================================================
# Clients
# ==============================================================================


@retry_light(KAFKA_RETRY_EXCEPTIONS, logger)
def create_consumer(settings: "KafkaSettings", max_poll_records: int) -> "KafkaConsumer":
    """
    Create a KafkaConsumer with manual offset commits.

    Retries briefly when no broker is reachable, then lets the error
    propagate so startup fails.

    Args:
        settings: KafkaSettings instance
        max_poll_records: Upper bound on records returned by one poll

    Returns:
        KafkaConsumer (not yet subscribed)
    """
    from kafka import KafkaConsumer

    return KafkaConsumer(
        **build_kafka_config(settings),
        group_id=settings.group_id,
        auto_offset_reset=settings.auto_offset_reset,
        enable_auto_commit=False,  # Commit only after the pipeline succeeds
        max_poll_records=max_poll_records,
    )


def check_kafka_connection(settings: "KafkaSettings | None" = None) -> bool:
    """
    Check if Kafka is reachable.

    Returns:
        True if a broker answers a metadata request, False otherwise
    """
    from kafka import KafkaConsumer
    from kafka.errors import KafkaError

    try:
        consumer = KafkaConsumer(**build_kafka_config(settings, request_timeout_ms=10000))
    except KafkaError as e:
        logger.debug("Kafka connection check failed: %s", e)
        return False
    try:
        consumer.topics()
        return True
    except KafkaError as e:
        logger.debug("Kafka connection check failed: %s", e)
        return False
    finally:
        consumer.close()


# ==============================================================================
# Dead Letters
# ==============================================================================


class DeadLetterPublisher:
    """
    Republishes rejected messages to a dead-letter topic.

    The original value is sent unchanged, keyed like the source message,
    with the rejection reason and source coordinates in headers.
    """

    def __init__(self, topic: str, settings: "KafkaSettings | None" = None, producer=None):
        """
        Initialize the publisher.

        Args:
            topic: Dead-letter topic name
            settings: KafkaSettings instance. If None, loads from get_settings().
            producer: Pre-built producer (a KafkaProducer is created when omitted)
        """
        self._topic = topic
        if producer is None:
            from kafka import KafkaProducer

            producer = KafkaProducer(**build_kafka_config(settings), acks="all", retries=5)
        self._producer = producer

    @property
    def topic(self) -> str:
        return self._topic

    def publish(
        self,
        value: bytes | None,
        key: bytes | None,
        reason: str,
        source_topic: str,
        partition: int,
        offset: int,
    ) -> None:
        """
        Send one rejected message and wait for the broker to acknowledge it.

        The source offset must not be committed before the dead letter is
        acknowledged.
        """
        headers = [
            ("dlq.reason", reason.encode("utf-8")),
            (
                "dlq.source",
                json.dumps(
                    {"topic": source_topic, "partition": partition, "offset": offset}
                ).encode("utf-8"),
            ),
        ]
        future = self._producer.send(self._topic, value=value or b"", key=key, headers=headers)
        future.get(timeout=30)

    def close(self) -> None:
        """Flush pending sends and close the producer."""
        try:
            self._producer.flush(timeout=10)
        finally:
            self._producer.close()
