# ==============================================================================
# Config Commands
# ==============================================================================
"""
Configuration display for the sessionizer CLI.

Secrets (database password, SASL password) are always masked.
"""

import json
from typing import Annotated

import typer

from sessionizer.cli.shared import EXIT_CONFIG_ERROR, C, I, mask_dsn, mask_secret
from sessionizer.utils.config import ConfigurationError, Settings, get_settings


def build_config_summary(settings: Settings) -> dict:
    """Settings as a nested dict with secrets masked."""
    kafka = settings.kafka
    pg = settings.postgres
    consumer = settings.consumer
    return {
        "kafka": {
            "brokers": kafka.broker_list,
            "topic": kafka.topic,
            "group_id": kafka.group_id,
            "from_beginning": kafka.from_beginning,
            "client_id": kafka.client_id,
            "security_protocol": kafka.security_protocol,
            "ca_cert_path": kafka.ca_cert_path,
            "access_cert_path": kafka.access_cert_path,
            "access_key_path": kafka.access_key_path,
            "sasl_username": kafka.sasl_username,
            "sasl_password": mask_secret(kafka.sasl_password),
            "dead_letter_topic": kafka.dead_letter_topic,
        },
        "postgresql": {
            "dsn": mask_dsn(pg.dsn),
            "schema": pg.schema_name,
            "ca_cert_path": pg.ca_cert_path,
            "ssl_insecure": pg.ssl_insecure,
            "pool_size": pg.pool_size,
            "connect_timeout": pg.connect_timeout,
            "statement_timeout_ms": pg.statement_timeout_ms,
        },
        "consumer": {
            "batch_size": consumer.batch_size,
            "poll_timeout_ms": consumer.poll_timeout_ms,
            "max_lanes": settings.max_lanes,
            "synthesize_event_id": consumer.synthesize_event_id,
            "progress_every": consumer.progress_every,
            "summary_interval_seconds": consumer.summary_interval_seconds,
        },
        "log_level": settings.log_level,
    }


def config_show(
    json_output: Annotated[
        bool, typer.Option("--json", "-j", help="Output configuration as JSON")
    ] = False,
) -> None:
    """Display current configuration (secrets masked)."""
    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"{C.BRIGHT_RED}{I.CROSS} {e}{C.RESET}")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    config = build_config_summary(settings)

    if json_output:
        print(json.dumps(config, indent=2))
        return

    print()
    print(f"{C.BOLD}Configuration{C.RESET}")
    print()

    kafka = config["kafka"]
    print(f"{C.CYAN}Kafka{C.RESET}")
    for i, broker in enumerate(kafka["brokers"]):
        label = "  Brokers:    " if i == 0 else "              "
        print(f"{label}{C.WHITE}{broker}{C.RESET}")
    print(f"  Security:   {C.WHITE}{kafka['security_protocol']}{C.RESET}")
    print(f"  Topic:      {C.WHITE}{kafka['topic']}{C.RESET}")
    print(f"  Group:      {C.WHITE}{kafka['group_id']}{C.RESET}")
    start = "earliest" if kafka["from_beginning"] else "latest"
    print(f"  Start:      {C.WHITE}{start}{C.RESET}")
    if kafka["sasl_username"]:
        print(f"  SASL user:  {C.WHITE}{kafka['sasl_username']}{C.RESET}")
    dead_letters = kafka["dead_letter_topic"] or "disabled"
    print(f"  DLQ:        {C.WHITE}{dead_letters}{C.RESET}")
    print()

    pg = config["postgresql"]
    print(f"{C.CYAN}PostgreSQL{C.RESET}")
    print(f"  DSN:        {C.WHITE}{pg['dsn']}{C.RESET}")
    print(f"  Schema:     {C.WHITE}{pg['schema']}{C.RESET}")
    if pg["ssl_insecure"]:
        ssl = "require (certificate not verified)"
    elif pg["ca_cert_path"]:
        ssl = f"verify-full ({pg['ca_cert_path']})"
    else:
        ssl = "per DSN"
    print(f"  SSL:        {C.WHITE}{ssl}{C.RESET}")
    print(f"  Pool size:  {C.WHITE}{pg['pool_size']}{C.RESET}")
    print()

    consumer = config["consumer"]
    print(f"{C.CYAN}Consumer{C.RESET}")
    print(f"  Batch size: {C.WHITE}{consumer['batch_size']}{C.RESET}")
    print(f"  Lanes:      {C.WHITE}{consumer['max_lanes']}{C.RESET}")
    synth = "enabled" if consumer["synthesize_event_id"] else f"{C.BRIGHT_YELLOW}disabled"
    print(f"  Event IDs:  {C.WHITE}{synth}{C.RESET}")
    print(f"  Log level:  {C.WHITE}{config['log_level']}{C.RESET}")
    print()
