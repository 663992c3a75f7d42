"""Sink task: wires control bus, worker agent and coordinator together."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from iceberg_sink.channel.bus import ControlBus, ReceivedEvent
from iceberg_sink.channel.events import (
    CommitCompletePayload,
    CommitReadyPayload,
    CommitRequestPayload,
    CommitResponsePayload,
    TableName,
)
from iceberg_sink.commit.coordinator import Coordinator
from iceberg_sink.commit.leadership import Leadership
from iceberg_sink.commit.worker import OffsetsCallback, WorkerAgent
from iceberg_sink.config.models import SinkConfig
from iceberg_sink.tables.base import TableService
from iceberg_sink.writer.base import FileWriter

logger = structlog.get_logger()


class SinkTask:
    """One sink instance as started by the orchestration host.

    Every task runs a worker.  The task the host designates as leader also
    runs the coordinator; the host flips that with :meth:`Leadership.promote`
    and :meth:`Leadership.demote`.  Control events are processed one at a
    time in arrival order.
    """

    def __init__(
        self,
        config: SinkConfig,
        writer: FileWriter,
        *,
        bus: ControlBus | None = None,
        tables: TableService | None = None,
        leadership: Leadership | None = None,
        on_offsets_committed: OffsetsCallback | None = None,
        monitor_assignment: bool = True,
    ) -> None:
        self._config = config
        self._leadership = leadership or Leadership()
        self._monitor_assignment = monitor_assignment
        if bus is None:
            from iceberg_sink.channel.kafka_bus import KafkaControlBus

            bus = KafkaControlBus(config.control, config.commit.group_id)
        self._bus = bus
        self._tables = tables
        self._worker = WorkerAgent(
            config.commit.group_id,
            writer,
            bus,
            on_offsets_committed=on_offsets_committed,
        )
        self._coordinator: Coordinator | None = None
        self._assignment_monitor: Any = None
        self._running = False

    @property
    def worker(self) -> WorkerAgent:
        return self._worker

    @property
    def coordinator(self) -> Coordinator | None:
        return self._coordinator

    @property
    def leadership(self) -> Leadership:
        return self._leadership

    async def start(self) -> None:
        if self._leadership.is_leader():
            await self._start_coordinator()
        logger.info(
            "sink_task.started",
            group_id=self._config.commit.group_id,
            leader=self._leadership.is_leader(),
        )

    async def _start_coordinator(self) -> None:
        if self._tables is None:
            from iceberg_sink.tables.iceberg import IcebergTableService

            service = IcebergTableService(self._config.catalog)
            service.start()
            self._tables = service

        self._coordinator = Coordinator(
            self._config.commit, self._bus, self._tables, self._leadership
        )
        await self._coordinator.start(TableName.parse(t) for t in self._config.tables)

        if self._monitor_assignment:
            from iceberg_sink.channel.kafka_bus import GroupAssignmentMonitor

            self._assignment_monitor = GroupAssignmentMonitor(
                self._config.control, self._coordinator.on_group_change
            )
            await self._assignment_monitor.start()
        logger.info("sink_task.coordinator_started", group_id=self._config.commit.group_id)

    async def _stop_coordinator(self) -> None:
        if self._assignment_monitor is not None:
            await self._assignment_monitor.stop()
            self._assignment_monitor = None
        if self._coordinator is not None:
            self._coordinator.stop()
            self._coordinator = None

    # -- host callbacks --------------------------------------------------------

    def on_partitions_assigned(self, partitions: list[tuple[str, int]]) -> None:
        self._worker.assign(partitions)

    def on_partitions_revoked(self, partitions: list[tuple[str, int]]) -> None:
        self._worker.revoke(partitions)

    def put(
        self,
        table_name: TableName,
        record: dict[str, Any],
        *,
        topic: str,
        partition: int,
        offset: int,
        timestamp: int | None = None,
    ) -> None:
        self._worker.save(
            table_name,
            record,
            topic=topic,
            partition=partition,
            offset=offset,
            timestamp=timestamp,
        )

    # -- control loop ----------------------------------------------------------

    async def process_once(self, timeout: float | None = None) -> int:
        """Poll the bus once, dispatch what arrived, then advance timers."""
        await self._sync_leadership()
        poll_timeout = (
            self._config.control.poll_timeout_seconds if timeout is None else timeout
        )
        received = await self._bus.poll(poll_timeout)
        for item in received:
            await self._dispatch(item)
            self._bus.ack(item)
        if self._coordinator is not None:
            await self._coordinator.tick()
        return len(received)

    async def _sync_leadership(self) -> None:
        leader = self._leadership.is_leader()
        if leader and self._coordinator is None:
            await self._start_coordinator()
        elif not leader and self._coordinator is not None:
            self._coordinator.cancel("demoted")
            await self._stop_coordinator()

    async def _dispatch(self, item: ReceivedEvent) -> None:
        payload = item.event.payload
        try:
            if isinstance(payload, (CommitRequestPayload, CommitCompletePayload)):
                await self._worker.handle(item.event)
            elif isinstance(payload, (CommitResponsePayload, CommitReadyPayload)):
                if self._coordinator is not None:
                    await self._coordinator.handle(item.event)
        except Exception as exc:
            logger.error(
                "sink_task.handler_error",
                type=item.event.type.value,
                partition=item.partition,
                offset=item.offset,
                error=str(exc),
            )

    async def run(self) -> None:
        """Control loop until :meth:`stop` is called."""
        self._running = True
        try:
            while self._running:
                await self.process_once()
        finally:
            await self._shutdown()

    def stop(self) -> None:
        self._running = False

    async def _shutdown(self) -> None:
        await self._stop_coordinator()
        await self._bus.close()
        logger.info("sink_task.stopped", group_id=self._config.commit.group_id)

    async def health(self) -> dict[str, Any]:
        return {
            "group_id": self._config.commit.group_id,
            "worker_state": self._worker.state.value,
            "assignments": len(self._worker.assignments),
            "coordinator": (
                self._coordinator.health() if self._coordinator is not None else None
            ),
        }


def run_task(task: SinkTask) -> None:
    """Start *task* and run its control loop (blocking)."""

    async def _main() -> None:
        await task.start()
        await task.run()

    asyncio.run(_main())
