"""File writer protocol.

The worker hands records to a file writer and, at commit time, asks it to
seal everything buffered into files.  How rows become columnar files is the
writer's business; the commit protocol only sees the resulting descriptors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from iceberg_sink.channel.events import (
    DataFileDescriptor,
    DeleteFileDescriptor,
    TableName,
)


@dataclass
class WriteResult:
    """Files sealed for one destination table by a flush."""

    table_name: TableName
    data_files: list[DataFileDescriptor] = field(default_factory=list)
    delete_files: list[DeleteFileDescriptor] = field(default_factory=list)


@runtime_checkable
class FileWriter(Protocol):
    """Protocol every row-to-file writer must satisfy."""

    def write(self, table_name: TableName, record: dict[str, Any]) -> None:
        """Buffer one row destined for *table_name*."""
        ...

    def tables(self) -> set[TableName]:
        """Tables this writer currently routes rows to."""
        ...

    def flush(self) -> list[WriteResult]:
        """Seal buffered rows into durable files and forget them."""
        ...
