"""Control-channel data model.

Every message exchanged between workers and the coordinator is an
:class:`Event` wrapping one payload from a closed set of variants.  Payloads
are immutable once built; the coordinator aggregates the file descriptors
they carry without ever looking inside them.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Union


class EventType(StrEnum):
    """Tag of each payload variant on the wire."""

    COMMIT_REQUEST = "commit_request"
    COMMIT_RESPONSE = "commit_response"
    COMMIT_READY = "commit_ready"
    COMMIT_TABLE = "commit_table"
    COMMIT_COMPLETE = "commit_complete"


class FileContent(StrEnum):
    DATA = "data"
    POSITION_DELETES = "position_deletes"
    EQUALITY_DELETES = "equality_deletes"


@dataclass(frozen=True, order=True)
class TableName:
    """Namespace path plus table name; the merge key for contributions."""

    namespace: tuple[str, ...]
    name: str

    @classmethod
    def parse(cls, identifier: str) -> TableName:
        parts = identifier.split(".")
        if len(parts) < 2 or not all(parts):
            msg = f"Table identifier '{identifier}' must be namespace-qualified"
            raise ValueError(msg)
        return cls(namespace=tuple(parts[:-1]), name=parts[-1])

    @property
    def identifier(self) -> tuple[str, ...]:
        return (*self.namespace, self.name)

    def __str__(self) -> str:
        return ".".join(self.identifier)


@dataclass(frozen=True)
class TopicPartitionOffset:
    """A worker has durably processed up to and including ``offset``."""

    topic: str
    partition: int
    offset: int | None = None
    timestamp: int | None = None

    @property
    def topic_partition(self) -> tuple[str, int]:
        return (self.topic, self.partition)


@dataclass(frozen=True)
class DataFileDescriptor:
    """An already-written data file, as reported by the file writer."""

    path: str
    record_count: int
    file_size_in_bytes: int
    file_format: str = "PARQUET"
    partition: Mapping[str, str | None] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteFileDescriptor:
    """An already-written delete file."""

    path: str
    record_count: int
    file_size_in_bytes: int
    content: FileContent = FileContent.POSITION_DELETES
    file_format: str = "PARQUET"
    partition: Mapping[str, str | None] = field(default_factory=dict)
    equality_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class CommitRequestPayload:
    commit_id: uuid.UUID


@dataclass(frozen=True)
class CommitResponsePayload:
    """One worker's contribution to one table for one round.

    ``data_files`` / ``delete_files`` may be ``None`` (absent), which is
    distinct from an empty list.
    """

    commit_id: uuid.UUID
    table_name: TableName
    data_files: tuple[DataFileDescriptor, ...] | None = ()
    delete_files: tuple[DeleteFileDescriptor, ...] | None = ()
    assignments: tuple[TopicPartitionOffset, ...] | None = ()

    @property
    def has_files(self) -> bool:
        return bool(self.data_files) or bool(self.delete_files)


@dataclass(frozen=True)
class CommitReadyPayload:
    commit_id: uuid.UUID
    assignments: tuple[TopicPartitionOffset, ...] | None = ()


@dataclass(frozen=True)
class CommitTablePayload:
    commit_id: uuid.UUID
    table_name: TableName
    snapshot_id: int | None = None
    valid_through_ts: int | None = None


@dataclass(frozen=True)
class CommitCompletePayload:
    commit_id: uuid.UUID
    valid_through_ts: int | None = None
    offsets: tuple[TopicPartitionOffset, ...] | None = None


Payload = Union[
    CommitRequestPayload,
    CommitResponsePayload,
    CommitReadyPayload,
    CommitTablePayload,
    CommitCompletePayload,
]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.COMMIT_REQUEST: CommitRequestPayload,
    EventType.COMMIT_RESPONSE: CommitResponsePayload,
    EventType.COMMIT_READY: CommitReadyPayload,
    EventType.COMMIT_TABLE: CommitTablePayload,
    EventType.COMMIT_COMPLETE: CommitCompletePayload,
}


def event_type_of(payload: Payload) -> EventType:
    for event_type, cls in PAYLOAD_TYPES.items():
        if isinstance(payload, cls):
            return event_type
    msg = f"Not a control payload: {type(payload).__name__}"
    raise TypeError(msg)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Event:
    """Envelope scoping a payload to one sink deployment (``group_id``)."""

    group_id: str
    type: EventType
    payload: Payload
    schema_id: int = 1
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: int = field(default_factory=_now_ms)

    def __post_init__(self) -> None:
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            msg = (
                f"Event type {self.type.value} expects {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )
            raise TypeError(msg)

    @classmethod
    def wrap(cls, group_id: str, payload: Payload, *, schema_id: int) -> Event:
        return cls(
            group_id=group_id,
            type=event_type_of(payload),
            payload=payload,
            schema_id=schema_id,
        )
