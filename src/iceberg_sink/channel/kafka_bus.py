"""Kafka implementation of the control bus."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Sequence
from contextlib import suppress
from typing import Any

import structlog
from confluent_kafka import (
    Consumer,
    KafkaError,
    KafkaException,
    Message,
    Producer,
    TopicPartition,
)
from confluent_kafka.admin import AdminClient

from iceberg_sink.channel.auth import client_config
from iceberg_sink.channel.bus import ReceivedEvent
from iceberg_sink.channel.codec import DEFAULT_CATALOG, DecodeError, decode, encode
from iceberg_sink.channel.events import Event
from iceberg_sink.channel.schemas import SchemaCatalog
from iceberg_sink.channel.topics import control_group_id
from iceberg_sink.config.models import ControlBusConfig

logger = structlog.get_logger()


def create_producer(config: ControlBusConfig) -> Producer:
    """Create an idempotent Kafka producer."""
    return Producer(
        client_config(
            config,
            **{
                "enable.idempotence": config.enable_idempotence,
                "acks": config.acks,
            },
        )
    )


class KafkaControlBus:
    """Control bus over a single Kafka topic.

    Each instance consumes the topic in a consumer group of its own so every
    worker and the coordinator see every message.  Events of other
    deployments (different ``group_id``) and undecodable messages are
    acknowledged and skipped.
    """

    def __init__(
        self,
        config: ControlBusConfig,
        group_id: str,
        *,
        catalog: SchemaCatalog = DEFAULT_CATALOG,
        instance_id: str | None = None,
    ) -> None:
        self._config = config
        self._group_id = group_id
        self._catalog = catalog
        self._instance_id = instance_id or uuid.uuid4().hex
        self._producer = create_producer(config)
        self._consumer = Consumer(
            client_config(
                config,
                **{
                    "group.id": control_group_id(config, self._instance_id),
                    "auto.offset.reset": config.auto_offset_reset,
                    "enable.auto.commit": False,
                    "session.timeout.ms": config.session_timeout_ms,
                },
            )
        )
        self._consumer.subscribe([config.control_topic])
        logger.info(
            "control_bus.subscribed",
            topic=config.control_topic,
            instance_id=self._instance_id,
        )

    @property
    def instance_id(self) -> str:
        return self._instance_id

    async def send(self, events: Sequence[Event]) -> None:
        if not events:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_blocking, list(events))

    def _send_blocking(self, events: list[Event]) -> None:
        errors: list[str] = []

        def _on_delivery(err: Any, msg: Message) -> None:
            if err is not None:
                errors.append(str(err))

        for event in events:
            self._producer.produce(
                topic=self._config.control_topic,
                key=self._group_id.encode(),
                value=encode(event, self._catalog),
                on_delivery=_on_delivery,
            )
        remaining = self._producer.flush(timeout=10)
        if remaining:
            errors.append(f"{remaining} message(s) not delivered before timeout")
        if errors:
            msg = f"Control bus send failed: {'; '.join(errors)}"
            raise KafkaException(msg)
        logger.debug(
            "control_bus.sent",
            count=len(events),
            types=[e.type.value for e in events],
        )

    async def poll(self, timeout: float) -> list[ReceivedEvent]:
        loop = asyncio.get_running_loop()
        messages = await loop.run_in_executor(
            None, self._consumer.consume, self._config.max_poll_records, timeout
        )
        received: list[ReceivedEvent] = []
        for msg in messages or []:
            err = msg.error()
            if err and err.code() == KafkaError._PARTITION_EOF:  # type: ignore[attr-defined]
                continue
            if err:
                raise KafkaException(err)
            event = self._decode(msg)
            if event is None:
                self._commit(msg.topic(), msg.partition(), msg.offset())
                continue
            received.append(
                ReceivedEvent(event=event, partition=msg.partition(), offset=msg.offset())
            )
        return received

    def _decode(self, msg: Message) -> Event | None:
        value = msg.value()
        if value is None:
            return None
        try:
            event = decode(value, self._catalog)
        except DecodeError as exc:
            logger.warning(
                "control_bus.decode_failed",
                partition=msg.partition(),
                offset=msg.offset(),
                error=str(exc),
            )
            return None
        if event.group_id != self._group_id:
            logger.debug(
                "control_bus.foreign_group",
                group_id=event.group_id,
                offset=msg.offset(),
            )
            return None
        return event

    def ack(self, received: ReceivedEvent) -> None:
        self._commit(self._config.control_topic, received.partition, received.offset)

    def _commit(self, topic: str | None, partition: int | None, offset: int | None) -> None:
        if topic is None or partition is None or offset is None:
            return
        self._consumer.commit(
            offsets=[TopicPartition(topic, partition, offset + 1)],
            asynchronous=True,
        )

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._producer.flush, 10)
        self._consumer.close()
        logger.info("control_bus.closed", instance_id=self._instance_id)


def group_assignment(admin: AdminClient, group_id: str) -> set[tuple[str, int]]:
    """Return every (topic, partition) currently assigned in *group_id*."""
    futures = admin.describe_consumer_groups([group_id])
    description = futures[group_id].result()
    partitions: set[tuple[str, int]] = set()
    for member in description.members:
        assignment = member.assignment
        if assignment is None:
            continue
        for tp in assignment.topic_partitions:
            partitions.add((tp.topic, tp.partition))
    return partitions


AssignmentCallback = Callable[[set[tuple[str, int]]], None]


class GroupAssignmentMonitor:
    """Periodically reads the source group's assignment and reports changes."""

    def __init__(
        self,
        config: ControlBusConfig,
        on_change: AssignmentCallback,
        interval: float = 10.0,
    ) -> None:
        self._config = config
        self._on_change = on_change
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._latest: set[tuple[str, int]] | None = None
        self._admin: AdminClient | None = None

    async def start(self) -> None:
        """Read the assignment once, then keep polling in the background."""
        self._admin = AdminClient(client_config(self._config))
        try:
            await self.refresh()
        except Exception as exc:
            logger.warning("group_assignment.check_failed", error=str(exc))
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def refresh(self) -> set[tuple[str, int]]:
        assert self._admin is not None
        loop = asyncio.get_running_loop()
        current = await loop.run_in_executor(
            None, group_assignment, self._admin, self._config.source_group_id
        )
        if current != self._latest:
            self._latest = current
            logger.info(
                "group_assignment.changed",
                group_id=self._config.source_group_id,
                partitions=sorted(current),
            )
            self._on_change(current)
        return current

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.refresh()
            except Exception as exc:
                logger.warning("group_assignment.check_failed", error=str(exc))
