"""Snapshot summary properties written with every coordinated commit."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Mapping

import structlog

from iceberg_sink.channel.events import TopicPartitionOffset

logger = structlog.get_logger()

COMMIT_ID_PROP = "kafka.connect.commit-id"
VTTS_PROP = "kafka.connect.vtts"
OFFSETS_PROP_PREFIX = "kafka.connect.offsets."


def offsets_property(group_id: str) -> str:
    return f"{OFFSETS_PROP_PREFIX}{group_id}"


def build_properties(
    group_id: str,
    commit_id: uuid.UUID,
    offsets: Iterable[TopicPartitionOffset],
    valid_through_ts: int | None = None,
) -> dict[str, str]:
    """Properties attached to a table commit for one round.

    Offsets are stored as ``{"topic": {"partition": offset}}`` and only for
    partitions with a known offset.
    """
    by_topic: dict[str, dict[str, int]] = {}
    for tpo in offsets:
        if tpo.offset is None:
            continue
        by_topic.setdefault(tpo.topic, {})[str(tpo.partition)] = tpo.offset
    props = {
        COMMIT_ID_PROP: str(commit_id),
        offsets_property(group_id): json.dumps(by_topic, sort_keys=True),
    }
    if valid_through_ts is not None:
        props[VTTS_PROP] = str(valid_through_ts)
    return props


def offsets_from_summary(
    summary: Mapping[str, str], group_id: str
) -> dict[tuple[str, int], int]:
    """Recover committed offsets for *group_id* from snapshot properties."""
    raw = summary.get(offsets_property(group_id))
    if not raw:
        return {}
    try:
        by_topic = json.loads(raw)
        return {
            (topic, int(partition)): int(offset)
            for topic, partitions in by_topic.items()
            for partition, offset in partitions.items()
        }
    except (ValueError, TypeError, AttributeError) as exc:
        logger.warning(
            "snapshot_summary.invalid_offsets", group_id=group_id, error=str(exc)
        )
        return {}
