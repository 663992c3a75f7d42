"""In-memory registry of commit rounds, keyed by ``commit_id``.

A round is created when the coordinator issues its request and is destroyed
when it resolves (committed, failed or abandoned).  Only the coordinator's
processing sequence touches it.
"""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from iceberg_sink.channel.events import (
    CommitReadyPayload,
    CommitResponsePayload,
    DataFileDescriptor,
    DeleteFileDescriptor,
    TableName,
    TopicPartitionOffset,
)

TopicPartition = tuple[str, int]
# (partitions the sender owns, file paths it reported)
ResponseKey = tuple[frozenset[TopicPartition], frozenset[str]]


class RoundState(StrEnum):
    NOT_STARTED = "not_started"
    REQUESTED = "requested"
    COLLECTING = "collecting"
    COMMITTING = "committing"
    COMMITTED = "committed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _response_key(payload: CommitResponsePayload) -> ResponseKey:
    partitions = frozenset(a.topic_partition for a in payload.assignments or ())
    paths = frozenset(
        f.path for f in (*(payload.data_files or ()), *(payload.delete_files or ()))
    )
    return partitions, paths


def _ready_key(payload: CommitReadyPayload) -> frozenset[TopicPartitionOffset]:
    return frozenset(payload.assignments or ())


@dataclass
class CommitRound:
    """Accumulated state of one round.

    A redelivered event carries the same content as the original, so
    duplicates are recognised by content.  Two workers never report the same
    file, which keeps their responses apart even when neither owns a
    partition.
    """

    commit_id: uuid.UUID
    started_at: float
    deadline: float
    target: frozenset[TopicPartition]
    state: RoundState = RoundState.REQUESTED
    responses: dict[TableName, dict[ResponseKey, CommitResponsePayload]] = field(
        default_factory=dict
    )
    readies: dict[frozenset[TopicPartitionOffset], CommitReadyPayload] = field(
        default_factory=dict
    )

    def add_response(self, payload: CommitResponsePayload) -> bool:
        """Store *payload*; returns True when it was a redelivery."""
        by_key = self.responses.setdefault(payload.table_name, {})
        key = _response_key(payload)
        replaced = key in by_key
        by_key[key] = payload
        self.state = RoundState.COLLECTING
        return replaced

    def add_ready(self, payload: CommitReadyPayload) -> bool:
        key = _ready_key(payload)
        replaced = key in self.readies
        self.readies[key] = payload
        self.state = RoundState.COLLECTING
        return replaced

    @property
    def has_responses(self) -> bool:
        return bool(self.responses) or bool(self.readies)

    def tables(self) -> list[TableName]:
        return sorted(self.responses)

    def files_for(
        self, table: TableName
    ) -> tuple[list[DataFileDescriptor], list[DeleteFileDescriptor]]:
        """Union of every contributor's files for *table*, one entry per path."""
        seen: set[str] = set()
        data_files: list[DataFileDescriptor] = []
        delete_files: list[DeleteFileDescriptor] = []
        for response in self.responses.get(table, {}).values():
            for data_file in response.data_files or ():
                if data_file.path not in seen:
                    seen.add(data_file.path)
                    data_files.append(data_file)
            for delete_file in response.delete_files or ():
                if delete_file.path not in seen:
                    seen.add(delete_file.path)
                    delete_files.append(delete_file)
        return data_files, delete_files

    def all_assignments(self) -> list[TopicPartitionOffset]:
        assignments = [
            a
            for by_key in self.responses.values()
            for response in by_key.values()
            for a in response.assignments or ()
        ]
        assignments.extend(
            a for ready in self.readies.values() for a in ready.assignments or ()
        )
        return assignments

    def ready_offsets(self) -> dict[TopicPartition, TopicPartitionOffset]:
        """Highest offset per partition among the ready events.

        A worker sends its ready after all of its responses, so only these
        partitions are known to have reported every table they wrote to.
        """
        return _max_offsets(
            a for ready in self.readies.values() for a in ready.assignments or ()
        )

    def tables_by_partition(self) -> dict[TopicPartition, set[TableName]]:
        """Which tables each partition contributed files to in this round."""
        mapping: dict[TopicPartition, set[TableName]] = {}
        for table, by_key in self.responses.items():
            for response in by_key.values():
                if not response.has_files:
                    continue
                for a in response.assignments or ():
                    mapping.setdefault(a.topic_partition, set()).add(table)
        return mapping

    def valid_through_ts(self) -> int | None:
        """Minimum source timestamp across all assignments, if all have one."""
        timestamps = [a.timestamp for a in self.all_assignments()]
        if not timestamps or any(ts is None for ts in timestamps):
            return None
        return min(ts for ts in timestamps if ts is not None)


def _max_offsets(
    assignments: Iterable[TopicPartitionOffset],
) -> dict[TopicPartition, TopicPartitionOffset]:
    best: dict[TopicPartition, TopicPartitionOffset] = {}
    for a in assignments:
        current = best.get(a.topic_partition)
        if current is None or _offset(a) > _offset(current):
            best[a.topic_partition] = a
    return best


def _offset(tpo: TopicPartitionOffset) -> int:
    return -1 if tpo.offset is None else tpo.offset


class CommitRegistry:
    """Owns the active round and remembers recently resolved rounds.

    Besides how each round ended, the registry keeps the file paths it
    committed per table for the last *history* table commits.  A worker
    whose send failed halfway re-reports its files in a later round, and
    those already committed must not be added again.
    """

    def __init__(self, history: int = 64) -> None:
        self._active: CommitRound | None = None
        self._resolved: deque[tuple[uuid.UUID, RoundState]] = deque(maxlen=history)
        self._committed_files: deque[tuple[TableName, frozenset[str]]] = deque(
            maxlen=history
        )

    @property
    def active(self) -> CommitRound | None:
        return self._active

    def open(
        self,
        commit_id: uuid.UUID,
        *,
        started_at: float,
        timeout: float,
        target: Iterable[TopicPartition],
    ) -> CommitRound:
        if self._active is not None:
            msg = f"Round {self._active.commit_id} is still active"
            raise RuntimeError(msg)
        self._active = CommitRound(
            commit_id=commit_id,
            started_at=started_at,
            deadline=started_at + timeout,
            target=frozenset(target),
        )
        return self._active

    def get(self, commit_id: uuid.UUID) -> CommitRound | None:
        if self._active is not None and self._active.commit_id == commit_id:
            return self._active
        return None

    def resolved_state(self, commit_id: uuid.UUID) -> RoundState | None:
        for resolved_id, state in self._resolved:
            if resolved_id == commit_id:
                return state
        return None

    def close(self, commit_id: uuid.UUID, state: RoundState) -> CommitRound | None:
        """Destroy the active round, recording how it ended."""
        commit_round = self.get(commit_id)
        if commit_round is None:
            return None
        commit_round.state = state
        self._resolved.append((commit_id, state))
        self._active = None
        return commit_round

    def record_committed(self, table: TableName, paths: Iterable[str]) -> None:
        self._committed_files.append((table, frozenset(paths)))

    def committed_paths(self, table: TableName) -> set[str]:
        paths: set[str] = set()
        for committed_table, committed in self._committed_files:
            if committed_table == table:
                paths |= committed
        return paths
