"""Structural schemas of the control-channel payloads, declared as data.

Each payload variant owns an ordered list of :class:`FieldSpec`.  Ordinals
are positional and stable: a later version may only append fields, and an
appended field must carry a default so that older writers stay readable.
The Avro record used on the wire is derived from the field list.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from fastavro import parse_schema

from iceberg_sink.channel.events import EventType

_NO_DEFAULT = object()

_SCHEMA_NAMESPACE = "iceberg_sink.channel"

UUID_TYPE: dict[str, Any] = {"type": "string", "logicalType": "uuid"}


def optional(avro_type: Any) -> list[Any]:
    """Nullable union, ``null`` first so ``None`` can be the default."""
    return ["null", avro_type]


TABLE_NAME_TYPE: dict[str, Any] = {
    "type": "record",
    "name": "TableName",
    "fields": [
        {"name": "namespace", "type": {"type": "array", "items": "string"}},
        {"name": "name", "type": "string"},
    ],
}

TOPIC_PARTITION_OFFSET_TYPE: dict[str, Any] = {
    "type": "record",
    "name": "TopicPartitionOffset",
    "fields": [
        {"name": "topic", "type": "string"},
        {"name": "partition", "type": "int"},
        {"name": "offset", "type": optional("long"), "default": None},
        {"name": "timestamp", "type": optional("long"), "default": None},
    ],
}

_FILE_FIELDS: list[dict[str, Any]] = [
    {"name": "path", "type": "string"},
    {"name": "file_format", "type": "string"},
    {
        "name": "partition",
        "type": {"type": "map", "values": optional("string")},
        "default": {},
    },
    {"name": "record_count", "type": "long"},
    {"name": "file_size_in_bytes", "type": "long"},
]

DATA_FILE_TYPE: dict[str, Any] = {
    "type": "record",
    "name": "DataFile",
    "fields": list(_FILE_FIELDS),
}

DELETE_FILE_TYPE: dict[str, Any] = {
    "type": "record",
    "name": "DeleteFile",
    "fields": [
        *_FILE_FIELDS,
        {"name": "content", "type": "string"},
        {
            "name": "equality_ids",
            "type": {"type": "array", "items": "int"},
            "default": [],
        },
    ],
}


@dataclass(frozen=True)
class FieldSpec:
    """One payload field: name, stable ordinal, Avro type, optional default."""

    name: str
    ordinal: int
    type: Any
    default: Any = _NO_DEFAULT

    @property
    def has_default(self) -> bool:
        return self.default is not _NO_DEFAULT

    def to_avro(self) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "field-id": self.ordinal,
        }
        if self.has_default:
            spec["default"] = self.default
        return spec


@dataclass(frozen=True)
class PayloadSchema:
    """Versioned structural schema for one :class:`EventType`."""

    event_type: EventType
    version: int
    fields: tuple[FieldSpec, ...]
    _parsed: dict[str, Any] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        ordinals = [f.ordinal for f in self.fields]
        if ordinals != list(range(len(self.fields))):
            msg = (
                f"{self.event_type.value} v{self.version}: field ordinals must be "
                f"0..{len(self.fields) - 1} in declaration order, got {ordinals}"
            )
            raise ValueError(msg)

    @property
    def record_name(self) -> str:
        return "".join(part.capitalize() for part in self.event_type.value.split("_"))

    def to_avro(self) -> dict[str, Any]:
        return {
            "type": "record",
            "name": self.record_name,
            "namespace": _SCHEMA_NAMESPACE,
            "fields": [f.to_avro() for f in self.fields],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_avro(), sort_keys=True)

    @property
    def parsed(self) -> dict[str, Any]:
        if not self._parsed:
            self._parsed.update(parse_schema(self.to_avro()))
        return self._parsed

    def extend(self, *new_fields: tuple[str, Any, Any]) -> PayloadSchema:
        """Return the next version with ``(name, type, default)`` fields appended."""
        appended = list(self.fields)
        for name, avro_type, default in new_fields:
            appended.append(FieldSpec(name, len(appended), avro_type, default))
        return PayloadSchema(self.event_type, self.version + 1, tuple(appended))


COMMIT_REQUEST_V1 = PayloadSchema(
    EventType.COMMIT_REQUEST,
    1,
    (FieldSpec("commit_id", 0, UUID_TYPE),),
)

COMMIT_RESPONSE_V1 = PayloadSchema(
    EventType.COMMIT_RESPONSE,
    1,
    (
        FieldSpec("commit_id", 0, UUID_TYPE),
        FieldSpec("table_name", 1, TABLE_NAME_TYPE),
        FieldSpec("data_files", 2, optional({"type": "array", "items": DATA_FILE_TYPE}), None),
        FieldSpec(
            "delete_files", 3, optional({"type": "array", "items": DELETE_FILE_TYPE}), None
        ),
        FieldSpec(
            "assignments",
            4,
            optional({"type": "array", "items": TOPIC_PARTITION_OFFSET_TYPE}),
            None,
        ),
    ),
)

COMMIT_READY_V1 = PayloadSchema(
    EventType.COMMIT_READY,
    1,
    (
        FieldSpec("commit_id", 0, UUID_TYPE),
        FieldSpec(
            "assignments",
            1,
            optional({"type": "array", "items": TOPIC_PARTITION_OFFSET_TYPE}),
            None,
        ),
    ),
)

COMMIT_TABLE_V1 = PayloadSchema(
    EventType.COMMIT_TABLE,
    1,
    (
        FieldSpec("commit_id", 0, UUID_TYPE),
        FieldSpec("table_name", 1, TABLE_NAME_TYPE),
        FieldSpec("snapshot_id", 2, optional("long"), None),
        FieldSpec("valid_through_ts", 3, optional("long"), None),
    ),
)

COMMIT_COMPLETE_V1 = PayloadSchema(
    EventType.COMMIT_COMPLETE,
    1,
    (
        FieldSpec("commit_id", 0, UUID_TYPE),
        FieldSpec("valid_through_ts", 1, optional("long"), None),
    ),
)

COMMIT_COMPLETE_V2 = COMMIT_COMPLETE_V1.extend(
    ("offsets", optional({"type": "array", "items": TOPIC_PARTITION_OFFSET_TYPE}), None),
)

BUILTIN_SCHEMAS: tuple[PayloadSchema, ...] = (
    COMMIT_REQUEST_V1,
    COMMIT_RESPONSE_V1,
    COMMIT_READY_V1,
    COMMIT_TABLE_V1,
    COMMIT_COMPLETE_V1,
    COMMIT_COMPLETE_V2,
)


class SchemaCatalog:
    """Schemas a receiver can resolve, keyed by ``(event_type, schema_id)``.

    The newest registered version of each type doubles as the reader schema.
    Writer schemas learned from the wire are cached here so each unknown
    version is parsed once.
    """

    def __init__(self, schemas: tuple[PayloadSchema, ...] = BUILTIN_SCHEMAS) -> None:
        self._writers: dict[tuple[EventType, int], dict[str, Any]] = {}
        self._json: dict[tuple[EventType, int], str] = {}
        self._readers: dict[EventType, PayloadSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: PayloadSchema) -> None:
        self._writers[(schema.event_type, schema.version)] = schema.parsed
        self._json[(schema.event_type, schema.version)] = schema.to_json()
        current = self._readers.get(schema.event_type)
        if current is None or schema.version > current.version:
            self._readers[schema.event_type] = schema

    def learn(self, event_type: EventType, schema_id: int, schema_json: str) -> dict[str, Any]:
        """Cache a writer schema received embedded in an envelope."""
        parsed = parse_schema(json.loads(schema_json))
        self._writers[(event_type, schema_id)] = parsed
        self._json[(event_type, schema_id)] = schema_json
        return parsed

    def writer(self, event_type: EventType, schema_id: int) -> dict[str, Any] | None:
        return self._writers.get((event_type, schema_id))

    def schema_json(self, event_type: EventType, schema_id: int) -> str | None:
        return self._json.get((event_type, schema_id))

    def current(self, event_type: EventType) -> PayloadSchema:
        try:
            return self._readers[event_type]
        except KeyError:
            msg = f"No schema registered for {event_type.value}"
            raise KeyError(msg) from None

    def reader(self, event_type: EventType) -> dict[str, Any]:
        return self.current(event_type).parsed

    def known(self, event_type: EventType, schema_id: int) -> bool:
        return (event_type, schema_id) in self._writers
