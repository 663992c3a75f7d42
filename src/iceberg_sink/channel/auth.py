"""Kafka authentication config builder for the control bus clients."""

from __future__ import annotations

from typing import Any

from iceberg_sink.config.models import ControlBusConfig, KafkaAuthMechanism

_SASL_MECHANISMS = {
    KafkaAuthMechanism.SASL_PLAIN: "PLAIN",
    KafkaAuthMechanism.SASL_SCRAM_256: "SCRAM-SHA-256",
    KafkaAuthMechanism.SASL_SCRAM_512: "SCRAM-SHA-512",
}


def build_kafka_auth_config(config: ControlBusConfig) -> dict[str, Any]:
    """Build confluent_kafka config dict entries for authentication.

    Returns a dict of config keys to merge into Consumer/Producer/AdminClient
    constructor arguments.
    """
    if config.auth_mechanism == KafkaAuthMechanism.NONE:
        return {}

    auth: dict[str, Any] = {
        "security.protocol": config.security_protocol,
        "sasl.mechanism": _SASL_MECHANISMS[config.auth_mechanism],
        "sasl.username": config.sasl_username,
        "sasl.password": (
            config.sasl_password.get_secret_value() if config.sasl_password else ""
        ),
    }
    if config.ssl_ca_location:
        auth["ssl.ca.location"] = config.ssl_ca_location
    if config.ssl_certificate_location:
        auth["ssl.certificate.location"] = config.ssl_certificate_location
    if config.ssl_key_location:
        auth["ssl.key.location"] = config.ssl_key_location
    return auth


def client_config(config: ControlBusConfig, **extra: Any) -> dict[str, Any]:
    """Base client config: bootstrap servers, auth, then *extra* overrides."""
    conf: dict[str, Any] = {"bootstrap.servers": config.bootstrap_servers}
    conf.update(build_kafka_auth_config(config))
    conf.update(extra)
    return conf
