"""Table service protocol.

New table backends implement this protocol to receive commits from the
coordinator.  Calls are blocking; the coordinator runs them in a thread
executor under a timeout.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union, runtime_checkable

from iceberg_sink.channel.events import (
    DataFileDescriptor,
    DeleteFileDescriptor,
    TableName,
)


@dataclass(frozen=True)
class StagedTransaction:
    """Uncommitted set of file additions assembled for one table."""

    table_name: TableName
    data_files: tuple[DataFileDescriptor, ...]
    delete_files: tuple[DeleteFileDescriptor, ...]
    # Backend-specific handle (e.g. the table state the stage was built on).
    handle: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Success:
    snapshot_id: int | None


@dataclass(frozen=True)
class Conflict:
    """A concurrent writer committed first; restage and retry."""

    reason: str = ""


@dataclass(frozen=True)
class Failure:
    cause: str


CommitResult = Union[Success, Conflict, Failure]


@runtime_checkable
class TableService(Protocol):
    """Protocol every table backend must satisfy."""

    def stage(
        self,
        table_name: TableName,
        data_files: Sequence[DataFileDescriptor],
        delete_files: Sequence[DeleteFileDescriptor],
    ) -> StagedTransaction:
        """Assemble a transaction on top of the table's latest state."""
        ...

    def commit(
        self, staged: StagedTransaction, metadata: Mapping[str, str]
    ) -> CommitResult:
        """Atomically apply *staged* with *metadata* as snapshot properties."""
        ...

    def snapshot_properties(self, table_name: TableName) -> dict[str, str]:
        """Summary properties of the table's current snapshot (empty if none)."""
        ...
