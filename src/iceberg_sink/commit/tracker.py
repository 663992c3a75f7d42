"""Per-partition progress bookkeeping for commit rounds."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping

import structlog

from iceberg_sink.channel.events import TopicPartitionOffset

logger = structlog.get_logger()

TopicPartition = tuple[str, int]


class ProgressTracker:
    """Tracks which partitions reported in each round and how far they got.

    Three views are kept apart:

    - the group's current assignment, replaced on every rebalance notification;
    - per round, the partitions covered by a worker's ready event;
    - per partition, the last *committed* offset (advanced only after the
      table service confirmed a commit) and the latest *observed* offset
      (from in-flight responses).
    """

    def __init__(self) -> None:
        self._assignment: frozenset[TopicPartition] = frozenset()
        self._reported: dict[uuid.UUID, dict[TopicPartition, TopicPartitionOffset]] = {}
        self._committed: dict[TopicPartition, int] = {}
        self._observed: dict[TopicPartition, int] = {}

    # -- assignment ------------------------------------------------------------

    @property
    def assignment(self) -> frozenset[TopicPartition]:
        return self._assignment

    def update_assignment(self, partitions: Iterable[TopicPartition]) -> None:
        self._assignment = frozenset(partitions)

    # -- per round -------------------------------------------------------------

    def record_assignment(self, commit_id: uuid.UUID, tpo: TopicPartitionOffset) -> None:
        """Mark ``tpo``'s partition as reported for *commit_id*.

        Duplicate reports keep the highest offset seen.
        """
        reported = self._reported.setdefault(commit_id, {})
        tp = tpo.topic_partition
        previous = reported.get(tp)
        if previous is None or _offset_or_min(tpo) >= _offset_or_min(previous):
            reported[tp] = tpo
        if tpo.offset is not None and tpo.offset > self._observed.get(tp, -1):
            self._observed[tp] = tpo.offset

    def reported_partitions(self, commit_id: uuid.UUID) -> frozenset[TopicPartition]:
        return frozenset(self._reported.get(commit_id, {}))

    def reported_offsets(self, commit_id: uuid.UUID) -> dict[TopicPartition, TopicPartitionOffset]:
        return dict(self._reported.get(commit_id, {}))

    def is_round_complete(
        self,
        commit_id: uuid.UUID,
        current_assignment: Iterable[TopicPartition] | None = None,
    ) -> bool:
        """True when every assigned partition reported for *commit_id*.

        An empty assignment means the group has not been read yet; such a
        round is never complete and resolves at its deadline instead.
        """
        target = (
            self._assignment
            if current_assignment is None
            else frozenset(current_assignment)
        )
        reported = self._reported.get(commit_id)
        if not target or not reported:
            return False
        return target.issubset(reported.keys())

    def missing_partitions(
        self,
        commit_id: uuid.UUID,
        current_assignment: Iterable[TopicPartition] | None = None,
    ) -> frozenset[TopicPartition]:
        target = (
            self._assignment
            if current_assignment is None
            else frozenset(current_assignment)
        )
        return target - self.reported_partitions(commit_id)

    def discard_round(self, commit_id: uuid.UUID) -> None:
        self._reported.pop(commit_id, None)

    # -- offsets ---------------------------------------------------------------

    def committed_offsets(self) -> dict[TopicPartition, int]:
        return dict(self._committed)

    def observed_offsets(self) -> dict[TopicPartition, int]:
        return dict(self._observed)

    def advance(self, offsets: Mapping[TopicPartition, int]) -> dict[TopicPartition, int]:
        """Move committed offsets forward; returns the entries that changed."""
        advanced: dict[TopicPartition, int] = {}
        for tp, offset in offsets.items():
            if offset > self._committed.get(tp, -1):
                self._committed[tp] = offset
                advanced[tp] = offset
        if advanced:
            logger.debug("progress.advanced", partitions=len(advanced))
        return advanced

    def seed(self, offsets: Mapping[TopicPartition, int]) -> None:
        """Restore committed offsets recovered from table history."""
        self.advance(offsets)
        for tp, offset in offsets.items():
            if offset > self._observed.get(tp, -1):
                self._observed[tp] = offset


def _offset_or_min(tpo: TopicPartitionOffset) -> int:
    return -1 if tpo.offset is None else tpo.offset
