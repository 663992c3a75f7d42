"""Avro wire codec for control-channel events.

An envelope record carries the routing fields plus the payload datum, which
is written with the sender's payload schema.  The envelope also embeds that
schema as JSON so a receiver that does not know the ``schema_id`` can still
resolve it; known ids are served from the :class:`SchemaCatalog` without
touching the embedded copy.
"""

from __future__ import annotations

import io
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from fastavro import parse_schema, schemaless_reader, schemaless_writer

from iceberg_sink.channel.events import (
    CommitCompletePayload,
    CommitReadyPayload,
    CommitRequestPayload,
    CommitResponsePayload,
    CommitTablePayload,
    DataFileDescriptor,
    DeleteFileDescriptor,
    Event,
    EventType,
    FileContent,
    Payload,
    TableName,
    TopicPartitionOffset,
    event_type_of,
)
from iceberg_sink.channel.schemas import SchemaCatalog
from iceberg_sink.errors import IcebergSinkError


class DecodeError(IcebergSinkError):
    """Raised when control-channel bytes cannot be turned into an Event."""


ENVELOPE_SCHEMA = parse_schema(
    {
        "type": "record",
        "name": "Envelope",
        "namespace": "iceberg_sink.channel",
        "fields": [
            {"name": "id", "type": "string"},
            {"name": "group_id", "type": "string"},
            {"name": "type", "type": "string"},
            {"name": "schema_id", "type": "int"},
            {"name": "timestamp", "type": "long"},
            {"name": "payload", "type": "bytes"},
            {"name": "writer_schema", "type": ["null", "string"], "default": None},
        ],
    }
)

DEFAULT_CATALOG = SchemaCatalog()


# -- payload <-> record --------------------------------------------------------


def _table_name_record(name: TableName) -> dict[str, Any]:
    return {"namespace": list(name.namespace), "name": name.name}


def _tpo_records(
    assignments: Iterable[TopicPartitionOffset] | None,
) -> list[dict[str, Any]] | None:
    if assignments is None:
        return None
    return [
        {
            "topic": a.topic,
            "partition": a.partition,
            "offset": a.offset,
            "timestamp": a.timestamp,
        }
        for a in assignments
    ]


def _data_file_record(f: DataFileDescriptor) -> dict[str, Any]:
    return {
        "path": f.path,
        "file_format": f.file_format,
        "partition": dict(f.partition),
        "record_count": f.record_count,
        "file_size_in_bytes": f.file_size_in_bytes,
    }


def _delete_file_record(f: DeleteFileDescriptor) -> dict[str, Any]:
    return {
        "path": f.path,
        "file_format": f.file_format,
        "partition": dict(f.partition),
        "record_count": f.record_count,
        "file_size_in_bytes": f.file_size_in_bytes,
        "content": f.content.value,
        "equality_ids": list(f.equality_ids),
    }


def to_record(payload: Payload) -> dict[str, Any]:
    """Flatten a payload into the dict shape of its Avro record."""
    if isinstance(payload, CommitRequestPayload):
        return {"commit_id": str(payload.commit_id)}
    if isinstance(payload, CommitResponsePayload):
        return {
            "commit_id": str(payload.commit_id),
            "table_name": _table_name_record(payload.table_name),
            "data_files": (
                None
                if payload.data_files is None
                else [_data_file_record(f) for f in payload.data_files]
            ),
            "delete_files": (
                None
                if payload.delete_files is None
                else [_delete_file_record(f) for f in payload.delete_files]
            ),
            "assignments": _tpo_records(payload.assignments),
        }
    if isinstance(payload, CommitReadyPayload):
        return {
            "commit_id": str(payload.commit_id),
            "assignments": _tpo_records(payload.assignments),
        }
    if isinstance(payload, CommitTablePayload):
        return {
            "commit_id": str(payload.commit_id),
            "table_name": _table_name_record(payload.table_name),
            "snapshot_id": payload.snapshot_id,
            "valid_through_ts": payload.valid_through_ts,
        }
    if isinstance(payload, CommitCompletePayload):
        return {
            "commit_id": str(payload.commit_id),
            "valid_through_ts": payload.valid_through_ts,
            "offsets": _tpo_records(payload.offsets),
        }
    msg = f"Not a control payload: {type(payload).__name__}"
    raise TypeError(msg)


def _uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _table_name(record: Mapping[str, Any]) -> TableName:
    return TableName(namespace=tuple(record["namespace"]), name=record["name"])


def _tpos(records: list[dict[str, Any]] | None) -> tuple[TopicPartitionOffset, ...] | None:
    if records is None:
        return None
    return tuple(
        TopicPartitionOffset(
            topic=r["topic"],
            partition=r["partition"],
            offset=r.get("offset"),
            timestamp=r.get("timestamp"),
        )
        for r in records
    )


def _data_files(records: list[dict[str, Any]] | None) -> tuple[DataFileDescriptor, ...] | None:
    if records is None:
        return None
    return tuple(
        DataFileDescriptor(
            path=r["path"],
            file_format=r["file_format"],
            partition=dict(r.get("partition") or {}),
            record_count=r["record_count"],
            file_size_in_bytes=r["file_size_in_bytes"],
        )
        for r in records
    )


def _delete_files(
    records: list[dict[str, Any]] | None,
) -> tuple[DeleteFileDescriptor, ...] | None:
    if records is None:
        return None
    return tuple(
        DeleteFileDescriptor(
            path=r["path"],
            file_format=r["file_format"],
            partition=dict(r.get("partition") or {}),
            record_count=r["record_count"],
            file_size_in_bytes=r["file_size_in_bytes"],
            content=FileContent(r["content"]),
            equality_ids=tuple(r.get("equality_ids") or ()),
        )
        for r in records
    )


def _commit_request(r: Mapping[str, Any]) -> CommitRequestPayload:
    return CommitRequestPayload(commit_id=_uuid(r["commit_id"]))


def _commit_response(r: Mapping[str, Any]) -> CommitResponsePayload:
    return CommitResponsePayload(
        commit_id=_uuid(r["commit_id"]),
        table_name=_table_name(r["table_name"]),
        data_files=_data_files(r.get("data_files")),
        delete_files=_delete_files(r.get("delete_files")),
        assignments=_tpos(r.get("assignments")),
    )


def _commit_ready(r: Mapping[str, Any]) -> CommitReadyPayload:
    return CommitReadyPayload(
        commit_id=_uuid(r["commit_id"]),
        assignments=_tpos(r.get("assignments")),
    )


def _commit_table(r: Mapping[str, Any]) -> CommitTablePayload:
    return CommitTablePayload(
        commit_id=_uuid(r["commit_id"]),
        table_name=_table_name(r["table_name"]),
        snapshot_id=r.get("snapshot_id"),
        valid_through_ts=r.get("valid_through_ts"),
    )


def _commit_complete(r: Mapping[str, Any]) -> CommitCompletePayload:
    return CommitCompletePayload(
        commit_id=_uuid(r["commit_id"]),
        valid_through_ts=r.get("valid_through_ts"),
        offsets=_tpos(r.get("offsets")),
    )


_FROM_RECORD: dict[EventType, Callable[[Mapping[str, Any]], Payload]] = {
    EventType.COMMIT_REQUEST: _commit_request,
    EventType.COMMIT_RESPONSE: _commit_response,
    EventType.COMMIT_READY: _commit_ready,
    EventType.COMMIT_TABLE: _commit_table,
    EventType.COMMIT_COMPLETE: _commit_complete,
}


def from_record(event_type: EventType, record: Mapping[str, Any]) -> Payload:
    return _FROM_RECORD[event_type](record)


# -- bytes ---------------------------------------------------------------------


def new_event(
    group_id: str, payload: Payload, catalog: SchemaCatalog = DEFAULT_CATALOG
) -> Event:
    """Wrap *payload* for sending with the newest schema version known locally."""
    event_type = event_type_of(payload)
    return Event.wrap(
        group_id, payload, schema_id=catalog.current(event_type).version
    )


def encode_envelope(
    *,
    event_id: uuid.UUID,
    group_id: str,
    event_type: EventType,
    schema_id: int,
    timestamp: int,
    payload: bytes,
    writer_schema: str | None,
) -> bytes:
    buf = io.BytesIO()
    schemaless_writer(
        buf,
        ENVELOPE_SCHEMA,
        {
            "id": str(event_id),
            "group_id": group_id,
            "type": event_type.value,
            "schema_id": schema_id,
            "timestamp": timestamp,
            "payload": payload,
            "writer_schema": writer_schema,
        },
    )
    return buf.getvalue()


def encode(
    event: Event,
    catalog: SchemaCatalog = DEFAULT_CATALOG,
    *,
    embed_schema: bool = True,
) -> bytes:
    """Serialize *event* with the payload schema named by its ``schema_id``."""
    schema = catalog.writer(event.type, event.schema_id)
    if schema is None:
        msg = f"No {event.type.value} schema with id {event.schema_id} to encode with"
        raise KeyError(msg)
    buf = io.BytesIO()
    schemaless_writer(buf, schema, to_record(event.payload))

    writer_json: str | None = None
    if embed_schema:
        writer_json = catalog.schema_json(event.type, event.schema_id)

    return encode_envelope(
        event_id=event.id,
        group_id=event.group_id,
        event_type=event.type,
        schema_id=event.schema_id,
        timestamp=event.timestamp,
        payload=buf.getvalue(),
        writer_schema=writer_json,
    )


def decode(data: bytes, known_schemas: SchemaCatalog = DEFAULT_CATALOG) -> Event:
    """Deserialize an envelope, resolving its payload against the local schema.

    Fields the sender has and the local schema lacks are dropped; optional
    fields the sender lacks decode as ``None``.
    """
    try:
        envelope = schemaless_reader(io.BytesIO(data), ENVELOPE_SCHEMA, None)
    except Exception as exc:
        msg = f"Corrupt control envelope: {exc}"
        raise DecodeError(msg) from exc
    if not isinstance(envelope, dict):
        msg = "Corrupt control envelope"
        raise DecodeError(msg)

    try:
        event_type = EventType(envelope["type"])
    except ValueError:
        msg = f"Unknown event type '{envelope['type']}'"
        raise DecodeError(msg) from None

    schema_id = envelope["schema_id"]
    writer = known_schemas.writer(event_type, schema_id)
    if writer is None:
        embedded = envelope.get("writer_schema")
        if embedded is None:
            msg = (
                f"Unknown {event_type.value} schema id {schema_id} "
                f"and no embedded writer schema"
            )
            raise DecodeError(msg)
        try:
            writer = known_schemas.learn(event_type, schema_id, embedded)
        except Exception as exc:
            msg = f"Invalid embedded schema for {event_type.value} id {schema_id}: {exc}"
            raise DecodeError(msg) from exc

    try:
        record = schemaless_reader(
            io.BytesIO(envelope["payload"]),
            writer,
            known_schemas.reader(event_type),
        )
        payload = from_record(event_type, record)  # type: ignore[arg-type]
        return Event(
            group_id=envelope["group_id"],
            type=event_type,
            payload=payload,
            schema_id=schema_id,
            id=uuid.UUID(envelope["id"]),
            timestamp=envelope["timestamp"],
        )
    except Exception as exc:
        msg = f"Failed to decode {event_type.value} payload: {exc}"
        raise DecodeError(msg) from exc
