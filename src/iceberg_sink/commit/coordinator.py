"""Coordinator side of the commit protocol.

One round at a time: broadcast a ``CommitRequest``, collect responses until
every assigned partition is covered by a ready event or the deadline
passes, then commit one transaction per table and announce the result.
Committed offsets only move after the table service has confirmed the
commit they belong to.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from iceberg_sink.channel.bus import ControlBus
from iceberg_sink.channel.codec import DEFAULT_CATALOG, new_event
from iceberg_sink.channel.events import (
    CommitCompletePayload,
    CommitReadyPayload,
    CommitRequestPayload,
    CommitResponsePayload,
    CommitTablePayload,
    DataFileDescriptor,
    DeleteFileDescriptor,
    Event,
    TableName,
    TopicPartitionOffset,
)
from iceberg_sink.channel.schemas import SchemaCatalog
from iceberg_sink.commit.leadership import Leadership
from iceberg_sink.commit.registry import CommitRegistry, CommitRound, RoundState
from iceberg_sink.commit.tracker import ProgressTracker
from iceberg_sink.config.models import CommitConfig
from iceberg_sink.errors import IcebergSinkError
from iceberg_sink.observability.metrics import CommitStats
from iceberg_sink.tables.base import Conflict, Failure, Success, TableService
from iceberg_sink.tables.summary import build_properties, offsets_from_summary

logger = structlog.get_logger()

TopicPartition = tuple[str, int]


class CommitConflictError(IcebergSinkError):
    """The table service kept reporting concurrent commits."""


class TableCommitTimeout(IcebergSinkError):
    """A table-service call did not return within the configured timeout."""


class LeadershipLost(IcebergSinkError):
    """This instance stopped being the coordinator mid-round."""


class Coordinator:
    """Drives commit rounds for one sink deployment."""

    def __init__(
        self,
        config: CommitConfig,
        bus: ControlBus,
        tables: TableService,
        leadership: Leadership,
        *,
        tracker: ProgressTracker | None = None,
        registry: CommitRegistry | None = None,
        catalog: SchemaCatalog = DEFAULT_CATALOG,
        clock: Callable[[], float] = time.monotonic,
        stats: CommitStats | None = None,
    ) -> None:
        self._config = config
        self._bus = bus
        self._tables = tables
        self._leadership = leadership
        self._tracker = tracker or ProgressTracker()
        self._registry = registry or CommitRegistry()
        self._catalog = catalog
        self._clock = clock
        self._stats = stats or CommitStats()
        self._executor = ThreadPoolExecutor(
            max_workers=config.commit_threads, thread_name_prefix="table-commit"
        )
        self._next_commit_at = clock() + config.commit_interval_seconds
        self._trigger_requested = False

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    @property
    def registry(self) -> CommitRegistry:
        return self._registry

    @property
    def stats(self) -> CommitStats:
        return self._stats

    # -- lifecycle -------------------------------------------------------------

    async def start(self, table_names: Iterable[TableName] = ()) -> None:
        """Restore committed offsets from the tables' latest snapshots."""
        for table in table_names:
            try:
                summary = await self._call(self._tables.snapshot_properties, table)
            except Exception as exc:
                logger.warning(
                    "coordinator.offsets_restore_failed", table=str(table), error=str(exc)
                )
                continue
            offsets = offsets_from_summary(summary, self._config.group_id)
            if offsets:
                self._tracker.seed(offsets)
                logger.info(
                    "coordinator.offsets_restored",
                    table=str(table),
                    partitions=len(offsets),
                )
        self._next_commit_at = self._clock() + self._config.commit_interval_seconds

    def stop(self) -> None:
        self.cancel("stopped")
        self._executor.shutdown(wait=False)

    # -- external inputs -------------------------------------------------------

    def trigger(self) -> None:
        """Start a round at the next tick regardless of the interval."""
        self._trigger_requested = True

    def on_group_change(self, partitions: Iterable[TopicPartition]) -> None:
        """Replace the completeness target; takes effect at the next step."""
        self._tracker.update_assignment(partitions)
        active = self._registry.active
        if active is not None:
            logger.info(
                "coordinator.assignment_changed_mid_round",
                commit_id=str(active.commit_id),
                partitions=len(self._tracker.assignment),
            )

    def cancel(self, reason: str = "demoted") -> None:
        """Discard the active round without touching the table service."""
        active = self._registry.active
        if active is None:
            return
        self._registry.close(active.commit_id, RoundState.CANCELLED)
        self._tracker.discard_round(active.commit_id)
        self._stats.rounds_cancelled += 1
        logger.warning(
            "coordinator.round_cancelled", commit_id=str(active.commit_id), reason=reason
        )

    # -- processing steps ------------------------------------------------------

    async def tick(self) -> None:
        """Advance timers: start a due round, or resolve the active one."""
        if not self._leadership.is_leader():
            self.cancel()
            return

        now = self._clock()
        active = self._registry.active
        if active is None:
            if self._trigger_requested or now >= self._next_commit_at:
                await self.start_round()
            return

        if self._tracker.is_round_complete(active.commit_id):
            await self._commit(active, partial=False)
        elif now >= active.deadline:
            await self._on_deadline(active)

    async def start_round(self) -> uuid.UUID | None:
        if self._registry.active is not None:
            return None
        self._trigger_requested = False
        now = self._clock()
        self._next_commit_at = now + self._config.commit_interval_seconds

        commit_id = uuid.uuid4()
        commit_round = self._registry.open(
            commit_id,
            started_at=now,
            timeout=self._config.commit_timeout_seconds,
            target=self._tracker.assignment,
        )
        try:
            await self._bus.send(
                [new_event(self._config.group_id, CommitRequestPayload(commit_id), self._catalog)]
            )
        except Exception as exc:
            self._registry.close(commit_id, RoundState.FAILED)
            self._stats.rounds_failed += 1
            logger.error(
                "coordinator.request_send_failed", commit_id=str(commit_id), error=str(exc)
            )
            return None

        self._stats.rounds_started += 1
        logger.info(
            "coordinator.round_started",
            commit_id=str(commit_id),
            expected_partitions=len(commit_round.target),
        )
        return commit_id

    async def handle(self, event: Event) -> None:
        """Accumulate a worker's response or ready event for the active round."""
        payload = event.payload
        if not isinstance(payload, (CommitResponsePayload, CommitReadyPayload)):
            return
        if not self._leadership.is_leader():
            self.cancel()
            return

        commit_round = self._registry.get(payload.commit_id)
        if commit_round is None:
            self._on_stray(payload)
            return

        if isinstance(payload, CommitResponsePayload):
            replaced = commit_round.add_response(payload)
        else:
            # Responses only carry files. A worker's partitions count as
            # reported once its ready arrives, after all of its responses.
            replaced = commit_round.add_ready(payload)
            for tpo in payload.assignments or ():
                self._tracker.record_assignment(payload.commit_id, tpo)
        if replaced:
            self._stats.duplicate_responses += 1
            logger.info(
                "coordinator.duplicate_response",
                commit_id=str(payload.commit_id),
                type=event.type.value,
            )

        if self._tracker.is_round_complete(payload.commit_id):
            await self._commit(commit_round, partial=False)

    def _on_stray(self, payload: CommitResponsePayload | CommitReadyPayload) -> None:
        self._stats.late_responses += 1
        resolved = self._registry.resolved_state(payload.commit_id)
        if resolved is not None:
            logger.info(
                "coordinator.late_response",
                commit_id=str(payload.commit_id),
                round_state=resolved.value,
            )
        else:
            logger.warning("coordinator.unknown_commit", commit_id=str(payload.commit_id))

    async def _on_deadline(self, commit_round: CommitRound) -> None:
        commit_id = commit_round.commit_id
        if not commit_round.has_responses:
            self._registry.close(commit_id, RoundState.TIMED_OUT)
            self._tracker.discard_round(commit_id)
            self._stats.rounds_timed_out += 1
            logger.warning(
                "coordinator.round_timed_out",
                commit_id=str(commit_id),
                expected_partitions=len(self._tracker.assignment),
            )
            return

        missing = self._tracker.missing_partitions(commit_id)
        logger.warning(
            "coordinator.partial_commit",
            commit_id=str(commit_id),
            missing=sorted(missing),
        )
        await self._commit(commit_round, partial=True)

    # -- commit ----------------------------------------------------------------

    async def _commit(self, commit_round: CommitRound, *, partial: bool) -> None:
        commit_id = commit_round.commit_id
        commit_round.state = RoundState.COMMITTING
        t0 = time.monotonic()
        valid_through_ts = None if partial else commit_round.valid_through_ts()

        pending = {
            table: self._pending_files(commit_round, table)
            for table in commit_round.tables()
        }
        fed_by = commit_round.tables_by_partition()
        ready_offsets = commit_round.ready_offsets()

        # Nothing left to add counts as committed.
        outcomes: dict[TableName, bool] = {
            table: True for table, (data, deletes) in pending.items() if not data and not deletes
        }
        committed: list[CommitTablePayload] = []
        try:
            for table, (data_files, delete_files) in pending.items():
                if table in outcomes:
                    continue
                succeeded = {t for t, ok in outcomes.items() if ok}
                metadata = build_properties(
                    self._config.group_id,
                    commit_id,
                    self._durable_offsets(table, ready_offsets, fed_by, succeeded),
                    valid_through_ts,
                )
                result = await self._commit_table(
                    table, data_files, delete_files, metadata
                )
                outcomes[table] = result is not None
                if result is not None:
                    self._registry.record_committed(
                        table, [f.path for f in (*data_files, *delete_files)]
                    )
                    committed.append(
                        CommitTablePayload(
                            commit_id=commit_id,
                            table_name=table,
                            snapshot_id=result.snapshot_id,
                            valid_through_ts=valid_through_ts,
                        )
                    )
        except LeadershipLost:
            self.cancel("demoted during commit")
            return

        advanced = self._tracker.advance(self._advanceable(commit_round, outcomes))
        advanced_tpos = tuple(
            TopicPartitionOffset(
                tp[0], tp[1], offset=offset, timestamp=ready_offsets[tp].timestamp
            )
            for tp, offset in sorted(advanced.items())
        )

        failed = [str(t) for t, ok in outcomes.items() if not ok]
        if failed:
            state = RoundState.FAILED
            self._stats.rounds_failed += 1
        else:
            state = RoundState.COMMITTED
            self._stats.rounds_committed += 1
            if partial:
                self._stats.rounds_partial += 1
        self._registry.close(commit_id, state)
        self._tracker.discard_round(commit_id)
        self._stats.last_commit_duration_ms = round((time.monotonic() - t0) * 1000, 2)

        announcements = [
            new_event(self._config.group_id, payload, self._catalog) for payload in committed
        ]
        announcements.append(
            new_event(
                self._config.group_id,
                CommitCompletePayload(
                    commit_id=commit_id,
                    valid_through_ts=valid_through_ts,
                    offsets=advanced_tpos,
                ),
                self._catalog,
            )
        )
        try:
            await self._bus.send(announcements)
        except Exception as exc:
            logger.error(
                "coordinator.announce_failed", commit_id=str(commit_id), error=str(exc)
            )

        logger.info(
            "coordinator.round_resolved",
            commit_id=str(commit_id),
            state=state.value,
            partial=partial,
            tables_committed=len(committed),
            tables_failed=failed,
            partitions_advanced=len(advanced),
            duration_ms=self._stats.last_commit_duration_ms,
        )

    def _pending_files(
        self, commit_round: CommitRound, table: TableName
    ) -> tuple[list[DataFileDescriptor], list[DeleteFileDescriptor]]:
        """Files reported for *table* minus those an earlier round committed."""
        data_files, delete_files = commit_round.files_for(table)
        done = self._registry.committed_paths(table)
        if not done:
            return data_files, delete_files
        fresh_data = [f for f in data_files if f.path not in done]
        fresh_delete = [f for f in delete_files if f.path not in done]
        skipped = len(data_files) + len(delete_files) - len(fresh_data) - len(fresh_delete)
        if skipped:
            self._stats.files_already_committed += skipped
            logger.warning(
                "coordinator.files_already_committed",
                commit_id=str(commit_round.commit_id),
                table=str(table),
                files=skipped,
            )
        return fresh_data, fresh_delete

    def _durable_offsets(
        self,
        table: TableName,
        ready_offsets: Mapping[TopicPartition, TopicPartitionOffset],
        fed_by: Mapping[TopicPartition, set[TableName]],
        succeeded: set[TableName],
    ) -> list[TopicPartitionOffset]:
        """Offsets to record in *table*'s snapshot summary.

        Restarts seed from the highest offset any table recorded, so a
        partition's new offset is only written by the last table it fed,
        once every other one has committed.  Otherwise the partition's
        previously committed offset is written.
        """
        durable = {
            tp: TopicPartitionOffset(tp[0], tp[1], offset=offset)
            for tp, offset in self._tracker.committed_offsets().items()
        }
        for tp, tpo in ready_offsets.items():
            if tpo.offset is None:
                continue
            if fed_by.get(tp, set()) - {table} <= succeeded:
                durable[tp] = tpo
        return [durable[tp] for tp in sorted(durable)]

    def _advanceable(
        self, commit_round: CommitRound, outcomes: Mapping[TableName, bool]
    ) -> dict[TopicPartition, int]:
        """Offsets safe to advance: reported ready, and every table it fed committed."""
        tables_by_partition = commit_round.tables_by_partition()
        safe: dict[TopicPartition, int] = {}
        for tp, tpo in commit_round.ready_offsets().items():
            if tpo.offset is None:
                continue
            fed = tables_by_partition.get(tp, set())
            if all(outcomes.get(table, False) for table in fed):
                safe[tp] = tpo.offset
        return safe

    async def _commit_table(
        self,
        table: TableName,
        data_files: Sequence[DataFileDescriptor],
        delete_files: Sequence[DeleteFileDescriptor],
        metadata: Mapping[str, str],
    ) -> Success | None:
        """Stage and commit one table; ``None`` when it could not be committed.

        Conflicts are retried by restaging on the latest table state.
        """
        cfg = self._config
        retrying = AsyncRetrying(
            stop=stop_after_attempt(cfg.commit_max_attempts),
            wait=wait_exponential(
                multiplier=cfg.retry_initial_wait_seconds, max=cfg.retry_max_wait_seconds
            ),
            retry=retry_if_exception_type(CommitConflictError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if not self._leadership.is_leader():
                        raise LeadershipLost
                    staged = await self._call(
                        self._tables.stage, table, data_files, delete_files
                    )
                    result = await self._call(self._tables.commit, staged, metadata)
                    if isinstance(result, Conflict):
                        self._stats.table_conflicts += 1
                        logger.warning(
                            "coordinator.table_conflict",
                            table=str(table),
                            attempt=attempt.retry_state.attempt_number,
                            reason=result.reason,
                        )
                        raise CommitConflictError(result.reason)
                    if isinstance(result, Failure):
                        self._stats.table_failures += 1
                        logger.error(
                            "coordinator.table_commit_failed",
                            table=str(table),
                            cause=result.cause,
                        )
                        return None
                    if isinstance(result, Success):
                        self._stats.table_commits += 1
                        return result
        except CommitConflictError as exc:
            self._stats.table_failures += 1
            logger.error(
                "coordinator.table_commit_failed",
                table=str(table),
                cause="conflict retries exhausted",
                attempts=cfg.commit_max_attempts,
                error=str(exc),
            )
        except TableCommitTimeout:
            self._stats.table_failures += 1
            logger.warning(
                "coordinator.table_commit_timeout",
                table=str(table),
                timeout_seconds=cfg.table_commit_timeout_seconds,
            )
        except LeadershipLost:
            raise
        except Exception as exc:
            self._stats.table_failures += 1
            logger.error(
                "coordinator.table_commit_error", table=str(table), error=str(exc)
            )
        return None

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, fn, *args),
                timeout=self._config.table_commit_timeout_seconds,
            )
        except TimeoutError:
            raise TableCommitTimeout from None

    # -- introspection ---------------------------------------------------------

    def health(self) -> dict[str, Any]:
        active = self._registry.active
        return {
            "leader": self._leadership.is_leader(),
            "active_commit_id": str(active.commit_id) if active else None,
            "round_state": active.state.value if active else RoundState.NOT_STARTED.value,
            "assigned_partitions": len(self._tracker.assignment),
            "committed_partitions": len(self._tracker.committed_offsets()),
            "stats": self._stats.as_dict(),
        }
