"""Health checks for the sink's external dependencies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog
from confluent_kafka.admin import AdminClient

from iceberg_sink.channel.auth import client_config
from iceberg_sink.config.models import CatalogConfig, ControlBusConfig, SinkConfig

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class SinkHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


def check_kafka(config: ControlBusConfig) -> ComponentHealth:
    """Probe broker connectivity and the presence of the control topic."""
    try:
        admin = AdminClient(client_config(config))
        meta = admin.list_topics(timeout=5)
        if config.control_topic not in meta.topics:
            return ComponentHealth(
                name="kafka",
                status=Status.UNHEALTHY,
                detail=f"control topic {config.control_topic!r} missing",
            )
        return ComponentHealth(
            name="kafka",
            status=Status.HEALTHY,
            detail=f"{len(meta.brokers)} broker(s)",
        )
    except Exception as exc:
        return ComponentHealth(name="kafka", status=Status.UNHEALTHY, detail=str(exc))


def check_catalog(config: CatalogConfig) -> ComponentHealth:
    """Probe the table catalog by listing its namespaces."""
    try:
        from pyiceberg.catalog import load_catalog

        catalog = load_catalog(config.catalog_name, **config.catalog_properties())
        namespaces = catalog.list_namespaces()
        return ComponentHealth(
            name="catalog",
            status=Status.HEALTHY,
            detail=f"{len(namespaces)} namespace(s)",
        )
    except Exception as exc:
        return ComponentHealth(name="catalog", status=Status.UNHEALTHY, detail=str(exc))


def check_sink_health(config: SinkConfig) -> SinkHealth:
    """Run all health checks and return aggregated result."""
    components = [check_kafka(config.control), check_catalog(config.catalog)]
    result = SinkHealth(components=components)
    if not result.healthy:
        logger.warning("health.degraded", components=result.summary)
    return result


def health_report(config: SinkConfig) -> dict[str, Any]:
    result = check_sink_health(config)
    return {
        "healthy": result.healthy,
        "components": [
            {"name": c.name, "status": c.status.value, "detail": c.detail}
            for c in result.components
        ],
    }
