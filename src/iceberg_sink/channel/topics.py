"""Control topic provisioning."""

from __future__ import annotations

import structlog
from confluent_kafka.admin import AdminClient, NewTopic  # type: ignore[attr-defined]

from iceberg_sink.channel.auth import client_config
from iceberg_sink.config.models import ControlBusConfig

logger = structlog.get_logger()


def control_group_id(config: ControlBusConfig, instance_id: str) -> str:
    """Consumer group for one instance's view of the control topic."""
    return f"{config.control_group_prefix}-{instance_id}"


def ensure_control_topic(config: ControlBusConfig) -> None:
    """Create the control topic if it doesn't already exist."""
    admin = AdminClient(client_config(config))
    existing = set(admin.list_topics(timeout=10).topics.keys())
    topic = config.control_topic
    if topic in existing:
        logger.info("control_topic.exists", topic=topic)
        return
    futures = admin.create_topics(
        [
            NewTopic(
                topic,
                num_partitions=config.topic_num_partitions,
                replication_factor=config.topic_replication_factor,
            )
        ]
    )
    for name, future in futures.items():
        try:
            future.result()
            logger.info("control_topic.created", topic=name)
        except Exception as exc:
            logger.error("control_topic.create_failed", topic=name, error=str(exc))
            msg = f"Failed to create control topic {name}: {exc}"
            raise RuntimeError(msg) from exc
