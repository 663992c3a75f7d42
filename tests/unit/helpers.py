"""In-memory fakes for the control bus, table service and file writer."""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from iceberg_sink.channel.bus import ReceivedEvent
from iceberg_sink.channel.codec import decode, encode, new_event
from iceberg_sink.channel.events import (
    CommitReadyPayload,
    CommitResponsePayload,
    DataFileDescriptor,
    DeleteFileDescriptor,
    Event,
    Payload,
    TableName,
    TopicPartitionOffset,
)
from iceberg_sink.config.models import CommitConfig
from iceberg_sink.tables.base import (
    CommitResult,
    StagedTransaction,
    Success,
)
from iceberg_sink.writer.base import WriteResult

GROUP_ID = "sink-group"
EVENTS = TableName(namespace=("db",), name="events")
ORDERS = TableName(namespace=("db",), name="orders")


def make_commit_config(**overrides: Any) -> CommitConfig:
    values: dict[str, Any] = {
        "group_id": GROUP_ID,
        "commit_interval_seconds": 60.0,
        "commit_timeout_seconds": 30.0,
        "commit_max_attempts": 3,
        "table_commit_timeout_seconds": 5.0,
        "retry_initial_wait_seconds": 0.0,
        "retry_max_wait_seconds": 0.0,
    }
    values.update(overrides)
    return CommitConfig(**values)


def data_file(path: str, records: int = 10) -> DataFileDescriptor:
    return DataFileDescriptor(path=path, record_count=records, file_size_in_bytes=records * 100)


def tpo(
    partition: int, offset: int | None, *, topic: str = "src", timestamp: int | None = None
) -> TopicPartitionOffset:
    return TopicPartitionOffset(topic, partition, offset=offset, timestamp=timestamp)


def response(
    commit_id: uuid.UUID,
    table: TableName,
    files: Sequence[DataFileDescriptor],
    assignments: Sequence[TopicPartitionOffset],
) -> Event:
    return new_event(
        GROUP_ID,
        CommitResponsePayload(
            commit_id=commit_id,
            table_name=table,
            data_files=tuple(files),
            delete_files=(),
            assignments=tuple(assignments),
        ),
    )


def ready(commit_id: uuid.UUID, assignments: Sequence[TopicPartitionOffset]) -> Event:
    return new_event(
        GROUP_ID, CommitReadyPayload(commit_id=commit_id, assignments=tuple(assignments))
    )


def reply(
    commit_id: uuid.UUID,
    assignments: Sequence[TopicPartitionOffset],
    files: Mapping[TableName, Sequence[DataFileDescriptor]],
) -> list[Event]:
    """What one worker sends for a round: a response per table, then its ready."""
    events = [
        response(commit_id, table, table_files, assignments)
        for table, table_files in sorted(files.items())
    ]
    events.append(ready(commit_id, assignments))
    return events


class FakeBus:
    """Control bus that keeps every sent event; each send round-trips the codec."""

    def __init__(self) -> None:
        self.sent: list[Event] = []
        self.inbox: list[ReceivedEvent] = []
        self.acked: list[ReceivedEvent] = []
        self.fail_sends = 0
        self.closed = False

    async def send(self, events: Sequence[Event]) -> None:
        if self.fail_sends:
            self.fail_sends -= 1
            msg = "broker unavailable"
            raise ConnectionError(msg)
        self.sent.extend(decode(encode(e)) for e in events)

    async def poll(self, timeout: float) -> list[ReceivedEvent]:
        batch, self.inbox = self.inbox, []
        return batch

    def ack(self, received: ReceivedEvent) -> None:
        self.acked.append(received)

    async def close(self) -> None:
        self.closed = True

    def deliver(self, *events: Event) -> None:
        for event in events:
            self.inbox.append(
                ReceivedEvent(event=event, partition=0, offset=len(self.acked) + len(self.inbox))
            )

    def payloads(self, kind: type) -> list[Payload]:
        return [e.payload for e in self.sent if isinstance(e.payload, kind)]


@dataclass
class CommitCall:
    table_name: TableName
    data_files: tuple[DataFileDescriptor, ...]
    metadata: dict[str, str]


@dataclass
class FakeTables:
    """Table service whose commit results are scripted per table."""

    results: dict[TableName, list[CommitResult]] = field(default_factory=dict)
    summaries: dict[TableName, dict[str, str]] = field(default_factory=dict)
    stage_error: Exception | None = None
    commits: list[CommitCall] = field(default_factory=list)
    staged: list[TableName] = field(default_factory=list)
    next_snapshot: int = 1000

    def script(self, table: TableName, *results: CommitResult) -> None:
        self.results[table] = list(results)

    def stage(
        self,
        table_name: TableName,
        data_files: Sequence[DataFileDescriptor],
        delete_files: Sequence[DeleteFileDescriptor],
    ) -> StagedTransaction:
        if self.stage_error is not None:
            raise self.stage_error
        self.staged.append(table_name)
        return StagedTransaction(table_name, tuple(data_files), tuple(delete_files))

    def commit(self, staged: StagedTransaction, metadata: Mapping[str, str]) -> CommitResult:
        self.commits.append(CommitCall(staged.table_name, staged.data_files, dict(metadata)))
        scripted = self.results.get(staged.table_name)
        if scripted:
            return scripted.pop(0)
        self.next_snapshot += 1
        return Success(snapshot_id=self.next_snapshot)

    def snapshot_properties(self, table_name: TableName) -> dict[str, str]:
        return dict(self.summaries.get(table_name, {}))

    def committed_tables(self) -> list[TableName]:
        return [c.table_name for c in self.commits]


class FakeWriter:
    """File writer that turns every buffered row into one file per flush."""

    def __init__(self) -> None:
        self.rows: dict[TableName, list[dict[str, Any]]] = {}
        self.known: set[TableName] = set()
        self.flush_error: Exception | None = None
        self.flushes = 0

    def write(self, table_name: TableName, record: dict[str, Any]) -> None:
        self.known.add(table_name)
        self.rows.setdefault(table_name, []).append(record)

    def tables(self) -> set[TableName]:
        return set(self.known)

    def flush(self) -> list[WriteResult]:
        if self.flush_error is not None:
            raise self.flush_error
        self.flushes += 1
        results = [
            WriteResult(
                table_name=table,
                data_files=[data_file(f"s3://wh/{table.name}/{self.flushes}.parquet", len(rows))],
            )
            for table, rows in sorted(self.rows.items())
            if rows
        ]
        self.rows = {}
        return results
