"""Worker side of the commit protocol."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import Any

import structlog

from iceberg_sink.channel.bus import ControlBus
from iceberg_sink.channel.codec import DEFAULT_CATALOG, new_event
from iceberg_sink.channel.events import (
    CommitCompletePayload,
    CommitReadyPayload,
    CommitRequestPayload,
    CommitResponsePayload,
    Event,
    TableName,
    TopicPartitionOffset,
)
from iceberg_sink.channel.schemas import SchemaCatalog
from iceberg_sink.writer.base import FileWriter, WriteResult

logger = structlog.get_logger()

TopicPartition = tuple[str, int]
OffsetsCallback = Callable[[dict[TopicPartition, int]], None]


class WorkerState(StrEnum):
    IDLE = "idle"
    FLUSHING = "flushing"
    AWAITING_ACK = "awaiting_ack"


class WorkerAgent:
    """Answers commit requests with the files flushed since the last round.

    For every request the worker seals its buffers, sends one
    ``CommitResponse`` per table it writes to (file lists may be empty) and
    a ``CommitReady`` listing every partition it owns, so the coordinator
    can account for partitions that produced nothing.
    """

    def __init__(
        self,
        group_id: str,
        writer: FileWriter,
        bus: ControlBus,
        *,
        catalog: SchemaCatalog = DEFAULT_CATALOG,
        on_offsets_committed: OffsetsCallback | None = None,
    ) -> None:
        self._group_id = group_id
        self._writer = writer
        self._bus = bus
        self._catalog = catalog
        self._on_offsets_committed = on_offsets_committed
        self._state = WorkerState.IDLE
        self._assignments: dict[TopicPartition, TopicPartitionOffset] = {}
        self._last_responded: uuid.UUID | None = None
        self._unsent: list[WriteResult] = []

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def assignments(self) -> list[TopicPartitionOffset]:
        return [self._assignments[tp] for tp in sorted(self._assignments)]

    # -- host-facing -----------------------------------------------------------

    def assign(self, partitions: Iterable[TopicPartition]) -> None:
        for topic, partition in partitions:
            self._assignments.setdefault(
                (topic, partition), TopicPartitionOffset(topic, partition)
            )
        logger.info("worker.partitions_assigned", partitions=sorted(self._assignments))

    def revoke(self, partitions: Iterable[TopicPartition]) -> None:
        for tp in partitions:
            self._assignments.pop(tp, None)
        logger.info("worker.partitions_revoked", partitions=sorted(self._assignments))

    def save(
        self,
        table_name: TableName,
        record: dict[str, Any],
        *,
        topic: str,
        partition: int,
        offset: int,
        timestamp: int | None = None,
    ) -> None:
        """Hand one source record to the writer and note its offset."""
        self._writer.write(table_name, record)
        tp = (topic, partition)
        current = self._assignments.get(tp)
        if current is None or current.offset is None or offset > current.offset:
            self._assignments[tp] = TopicPartitionOffset(
                topic, partition, offset=offset, timestamp=timestamp
            )

    # -- control events --------------------------------------------------------

    async def handle(self, event: Event) -> None:
        payload = event.payload
        if isinstance(payload, CommitRequestPayload):
            await self._on_request(payload)
        elif isinstance(payload, CommitCompletePayload):
            self._on_complete(payload)

    async def _on_request(self, payload: CommitRequestPayload) -> None:
        commit_id = payload.commit_id
        if commit_id == self._last_responded:
            logger.debug("worker.duplicate_request", commit_id=str(commit_id))
            return
        if self._state == WorkerState.AWAITING_ACK:
            logger.info(
                "worker.previous_round_unacknowledged",
                previous=str(self._last_responded),
                commit_id=str(commit_id),
            )

        self._state = WorkerState.FLUSHING
        assignments = self.assignments
        loop = asyncio.get_running_loop()
        try:
            results = await loop.run_in_executor(None, self._writer.flush)
        except Exception as exc:
            self._state = WorkerState.IDLE
            logger.error(
                "worker.flush_failed", commit_id=str(commit_id), error=str(exc)
            )
            return

        pending = self._unsent + list(results)
        events = self._build_events(commit_id, pending, assignments)
        try:
            await self._bus.send(events)
        except Exception as exc:
            # Files are durable; report them again with the next request.
            # Part of the batch may have gone out, and the coordinator skips
            # files it already committed.
            self._unsent = pending
            self._state = WorkerState.IDLE
            logger.error(
                "worker.response_send_failed",
                commit_id=str(commit_id),
                files=sum(len(r.data_files) + len(r.delete_files) for r in pending),
                error=str(exc),
            )
            return

        self._unsent = []
        self._last_responded = commit_id
        self._state = WorkerState.AWAITING_ACK
        logger.info(
            "worker.responded",
            commit_id=str(commit_id),
            tables=len(events) - 1,
            partitions=len(assignments),
        )

    def _build_events(
        self,
        commit_id: uuid.UUID,
        results: list[WriteResult],
        assignments: list[TopicPartitionOffset],
    ) -> list[Event]:
        by_table: dict[TableName, WriteResult] = {
            table: WriteResult(table_name=table) for table in self._writer.tables()
        }
        for result in results:
            merged = by_table.setdefault(
                result.table_name, WriteResult(table_name=result.table_name)
            )
            merged.data_files.extend(result.data_files)
            merged.delete_files.extend(result.delete_files)

        events = [
            new_event(
                self._group_id,
                CommitResponsePayload(
                    commit_id=commit_id,
                    table_name=table,
                    data_files=tuple(merged.data_files),
                    delete_files=tuple(merged.delete_files),
                    assignments=tuple(assignments),
                ),
                self._catalog,
            )
            for table, merged in sorted(by_table.items())
        ]
        events.append(
            new_event(
                self._group_id,
                CommitReadyPayload(commit_id=commit_id, assignments=tuple(assignments)),
                self._catalog,
            )
        )
        return events

    def _on_complete(self, payload: CommitCompletePayload) -> None:
        if payload.commit_id != self._last_responded:
            return
        self._state = WorkerState.IDLE
        owned = {
            tpo.topic_partition: tpo.offset
            for tpo in payload.offsets or ()
            if tpo.offset is not None and tpo.topic_partition in self._assignments
        }
        logger.info(
            "worker.round_complete",
            commit_id=str(payload.commit_id),
            partitions=len(owned),
        )
        if owned and self._on_offsets_committed is not None:
            self._on_offsets_committed(owned)
