"""Pydantic configuration models for the Iceberg sink."""

from __future__ import annotations

from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class KafkaAuthMechanism(StrEnum):
    """Kafka SASL authentication mechanisms."""

    NONE = "none"
    SASL_PLAIN = "sasl_plain"
    SASL_SCRAM_256 = "sasl_scram_256"
    SASL_SCRAM_512 = "sasl_scram_512"


class ControlBusConfig(BaseModel):
    """Kafka settings for the control topic and the source consumer group."""

    bootstrap_servers: str = "localhost:9092"
    control_topic: str = "control-iceberg"
    # Consumer group of the workers reading the source topics; its partition
    # assignment is the completeness target of every round.
    source_group_id: str = "iceberg-sink"
    # Every instance consumes the control topic in a group of its own.
    control_group_prefix: str = "cg-control"
    auto_offset_reset: str = "latest"
    enable_idempotence: bool = True
    acks: str = "all"
    topic_num_partitions: int = Field(default=1, ge=1)
    topic_replication_factor: int = Field(default=1, ge=1)
    session_timeout_ms: int = Field(default=45000, ge=1000)
    poll_timeout_seconds: float = Field(default=1.0, gt=0)
    max_poll_records: int = Field(default=100, ge=1)
    # Auth / security
    security_protocol: str = "PLAINTEXT"
    auth_mechanism: KafkaAuthMechanism = KafkaAuthMechanism.NONE
    sasl_username: str | None = None
    sasl_password: SecretStr | None = None
    ssl_ca_location: str | None = None
    ssl_certificate_location: str | None = None
    ssl_key_location: str | None = None

    @model_validator(mode="after")
    def check_auth_requirements(self) -> Self:
        """Validate that SASL credentials are present when required."""
        mech = self.auth_mechanism
        if mech != KafkaAuthMechanism.NONE and (
            not self.sasl_username or not self.sasl_password
        ):
            msg = (
                "sasl_username and sasl_password are required "
                f"when auth_mechanism is '{mech.value}'"
            )
            raise ValueError(msg)
        return self


class CommitConfig(BaseModel):
    """Commit round scheduling and table-service retry policy.

    ``commit_timeout_seconds`` and ``commit_max_attempts`` are operational
    parameters and have no built-in value; they must be supplied.
    """

    group_id: str = Field(min_length=1)
    commit_interval_seconds: float = Field(default=300.0, gt=0)
    commit_timeout_seconds: float = Field(gt=0)
    commit_max_attempts: int = Field(ge=1)
    table_commit_timeout_seconds: float = Field(default=60.0, gt=0)
    retry_initial_wait_seconds: float = Field(default=0.5, ge=0)
    retry_max_wait_seconds: float = Field(default=10.0, ge=0)
    commit_threads: int = Field(default=1, ge=1)


class CatalogConfig(BaseModel):
    """Iceberg catalog connection properties (passed to ``load_catalog``)."""

    catalog_name: str = "default"
    catalog_uri: str
    warehouse: str
    s3_endpoint: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: SecretStr | None = None
    s3_region: str = "us-east-1"
    properties: dict[str, str] = Field(default_factory=dict)

    def catalog_properties(self) -> dict[str, str]:
        """Flatten into the property dict pyiceberg expects."""
        props: dict[str, str] = {
            "uri": self.catalog_uri,
            "warehouse": self.warehouse,
            "s3.region": self.s3_region,
        }
        if self.s3_endpoint is not None:
            props["s3.endpoint"] = self.s3_endpoint
        if self.s3_access_key_id is not None:
            props["s3.access-key-id"] = self.s3_access_key_id
        if self.s3_secret_access_key is not None:
            props["s3.secret-access-key"] = (
                self.s3_secret_access_key.get_secret_value()
            )
        props.update(self.properties)
        return props


class SinkConfig(BaseModel, extra="forbid"):
    """Top-level configuration for one sink deployment."""

    tables: list[str] = Field(default_factory=list)
    control: ControlBusConfig = ControlBusConfig()
    commit: CommitConfig
    catalog: CatalogConfig

    @field_validator("tables")
    @classmethod
    def validate_qualified_names(cls, v: list[str]) -> list[str]:
        """Tables must be namespace-qualified (``db.events``)."""
        for table in v:
            parts = table.split(".")
            if len(parts) < 2 or not all(parts):
                msg = (
                    f"Table '{table}' must be namespace-qualified "
                    f"(e.g. 'db.events')"
                )
                raise ValueError(msg)
        return v
