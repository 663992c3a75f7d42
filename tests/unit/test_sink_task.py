"""Unit tests for the sink task driver loop."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from iceberg_sink.channel.codec import new_event
from iceberg_sink.channel.events import (
    CommitCompletePayload,
    CommitRequestPayload,
    CommitTablePayload,
)
from iceberg_sink.commit.leadership import Leadership
from iceberg_sink.commit.worker import WorkerState
from iceberg_sink.config.defaults import build_sink_config
from iceberg_sink.config.models import SinkConfig
from iceberg_sink.runtime.task import SinkTask
from iceberg_sink.tables.summary import build_properties

from helpers import EVENTS, GROUP_ID, ORDERS, FakeBus, FakeTables, FakeWriter, tpo


def _config() -> SinkConfig:
    return build_sink_config(
        {
            "tables": ["db.events"],
            "commit": {
                "group_id": GROUP_ID,
                "commit_timeout_seconds": 30,
                "commit_max_attempts": 3,
                "retry_initial_wait_seconds": 0,
                "retry_max_wait_seconds": 0,
            },
            "catalog": {"catalog_uri": "http://rest:8181", "warehouse": "s3://wh"},
        }
    )


class LoopbackBus(FakeBus):
    """Delivers everything sent so far on the next poll, like a shared topic."""

    def __init__(self) -> None:
        super().__init__()
        self._delivered = 0

    async def poll(self, timeout: float):
        self.deliver(*self.sent[self._delivered :])
        self._delivered = len(self.sent)
        return await super().poll(timeout)


def _task(
    bus: FakeBus,
    tables: FakeTables,
    *,
    leader: bool = True,
    committed: list | None = None,
) -> SinkTask:
    return SinkTask(
        _config(),
        FakeWriter(),
        bus=bus,
        tables=tables,
        leadership=Leadership(leader=leader),
        on_offsets_committed=committed.append if committed is not None else None,
        monitor_assignment=False,
    )


@pytest.mark.asyncio
class TestSinkTask:
    async def test_full_round_through_the_bus(self):
        bus, tables, committed = LoopbackBus(), FakeTables(), []
        task = _task(bus, tables, committed=committed)
        await task.start()
        assert task.coordinator is not None
        task.coordinator.on_group_change([("src", 0)])
        task.on_partitions_assigned([("src", 0)])
        task.put(EVENTS, {"id": 1}, topic="src", partition=0, offset=7, timestamp=99)

        task.coordinator.trigger()
        for _ in range(4):
            await task.process_once(0)

        assert tables.committed_tables() == [EVENTS]
        assert [p.table_name for p in bus.payloads(CommitTablePayload)] == [EVENTS]
        assert bus.payloads(CommitCompletePayload)[0].valid_through_ts == 99
        assert committed == [{("src", 0): 7}]
        assert task.worker.state is WorkerState.IDLE
        assert len(bus.acked) == len(bus.sent)

    async def test_worker_writing_two_tables_commits_both(self):
        bus, tables, committed = LoopbackBus(), FakeTables(), []
        task = _task(bus, tables, committed=committed)
        await task.start()
        task.coordinator.on_group_change([("src", 0)])
        task.on_partitions_assigned([("src", 0)])
        task.put(EVENTS, {"id": 1}, topic="src", partition=0, offset=5)
        task.put(ORDERS, {"id": 2}, topic="src", partition=0, offset=6)

        task.coordinator.trigger()
        for _ in range(4):
            await task.process_once(0)

        assert tables.committed_tables() == [EVENTS, ORDERS]
        assert committed == [{("src", 0): 6}]
        assert task.coordinator.stats.late_responses == 0

    async def test_coordinator_starts_with_group_assignment(self):
        task = SinkTask(
            _config(),
            FakeWriter(),
            bus=FakeBus(),
            tables=FakeTables(),
            leadership=Leadership(leader=True),
        )
        with (
            patch("iceberg_sink.channel.kafka_bus.AdminClient"),
            patch(
                "iceberg_sink.channel.kafka_bus.group_assignment",
                return_value={("src", 0), ("src", 1)},
            ),
        ):
            await task.start()
            assert task.coordinator.tracker.assignment == {("src", 0), ("src", 1)}

            task.leadership.demote()
            await task.process_once(0)
        assert task.coordinator is None

    async def test_start_seeds_offsets(self):
        tables = FakeTables()
        tables.summaries[EVENTS] = build_properties(GROUP_ID, uuid.uuid4(), [tpo(0, 4)])
        task = _task(FakeBus(), tables)
        await task.start()
        assert task.coordinator.tracker.committed_offsets() == {("src", 0): 4}

    async def test_follower_runs_no_coordinator_until_promoted(self):
        bus = FakeBus()
        task = _task(bus, FakeTables(), leader=False)
        await task.start()
        assert task.coordinator is None

        task.leadership.promote()
        await task.process_once(0)
        assert task.coordinator is not None

        task.leadership.demote()
        await task.process_once(0)
        assert task.coordinator is None

    async def test_handler_error_is_logged_and_acked(self):
        bus = FakeBus()
        task = _task(bus, FakeTables(), leader=False)
        task.worker.handle = AsyncMock(side_effect=RuntimeError("boom"))
        bus.deliver(new_event(GROUP_ID, CommitRequestPayload(commit_id=uuid.uuid4())))
        processed = await task.process_once(0)

        assert processed == 1
        assert len(bus.acked) == 1

    async def test_run_until_stopped_closes_bus(self):
        bus = FakeBus()
        task = _task(bus, FakeTables(), leader=False)

        async def _poll_then_stop(timeout: float):
            task.stop()
            return []

        bus.poll = _poll_then_stop
        await task.run()
        assert bus.closed

    async def test_health(self):
        task = _task(FakeBus(), FakeTables())
        await task.start()
        task.on_partitions_assigned([("src", 0), ("src", 1)])
        health = await task.health()
        assert health["group_id"] == GROUP_ID
        assert health["worker_state"] == "idle"
        assert health["assignments"] == 2
        assert health["coordinator"]["leader"] is True
