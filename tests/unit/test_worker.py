"""Unit tests for the worker side of the commit protocol."""

from __future__ import annotations

import uuid

import pytest

from iceberg_sink.channel.codec import new_event
from iceberg_sink.channel.events import (
    CommitCompletePayload,
    CommitReadyPayload,
    CommitRequestPayload,
    CommitResponsePayload,
)
from iceberg_sink.commit.worker import WorkerAgent, WorkerState

from helpers import EVENTS, GROUP_ID, ORDERS, FakeBus, FakeWriter, tpo


def _request(commit_id: uuid.UUID):
    return new_event(GROUP_ID, CommitRequestPayload(commit_id=commit_id))


def _complete(commit_id: uuid.UUID, *offsets):
    return new_event(
        GROUP_ID, CommitCompletePayload(commit_id=commit_id, offsets=tuple(offsets))
    )


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def writer() -> FakeWriter:
    return FakeWriter()


@pytest.mark.asyncio
class TestWorkerRequest:
    async def test_responds_per_table_then_ready(self, bus: FakeBus, writer: FakeWriter):
        worker = WorkerAgent(GROUP_ID, writer, bus)
        worker.assign([("src", 0), ("src", 1)])
        worker.save(EVENTS, {"id": 1}, topic="src", partition=0, offset=41, timestamp=1700)
        writer.known.add(ORDERS)

        cid = uuid.uuid4()
        await worker.handle(_request(cid))

        responses = bus.payloads(CommitResponsePayload)
        assert [r.table_name for r in responses] == [EVENTS, ORDERS]
        assert len(responses[0].data_files) == 1
        assert responses[1].data_files == ()
        readies = bus.payloads(CommitReadyPayload)
        assert len(readies) == 1
        assert readies[0].assignments == (
            tpo(0, 41, timestamp=1700),
            tpo(1, None),
        )
        assert isinstance(bus.sent[-1].payload, CommitReadyPayload)
        assert worker.state is WorkerState.AWAITING_ACK

    async def test_no_tables_still_sends_ready(self, bus: FakeBus, writer: FakeWriter):
        worker = WorkerAgent(GROUP_ID, writer, bus)
        worker.assign([("src", 0)])

        await worker.handle(_request(uuid.uuid4()))

        assert bus.payloads(CommitResponsePayload) == []
        assert len(bus.payloads(CommitReadyPayload)) == 1

    async def test_redelivered_request_is_ignored(self, bus: FakeBus, writer: FakeWriter):
        worker = WorkerAgent(GROUP_ID, writer, bus)
        worker.assign([("src", 0)])
        worker.save(EVENTS, {"id": 1}, topic="src", partition=0, offset=1)
        cid = uuid.uuid4()

        await worker.handle(_request(cid))
        sent = len(bus.sent)
        await worker.handle(_request(cid))

        assert len(bus.sent) == sent
        assert writer.flushes == 1

    async def test_flush_failure_sends_nothing(self, bus: FakeBus, writer: FakeWriter):
        worker = WorkerAgent(GROUP_ID, writer, bus)
        worker.save(EVENTS, {"id": 1}, topic="src", partition=0, offset=1)
        writer.flush_error = OSError("disk full")

        await worker.handle(_request(uuid.uuid4()))

        assert bus.sent == []
        assert worker.state is WorkerState.IDLE

    async def test_new_round_while_awaiting_ack_flushes_again(
        self, bus: FakeBus, writer: FakeWriter
    ):
        worker = WorkerAgent(GROUP_ID, writer, bus)
        worker.save(EVENTS, {"id": 1}, topic="src", partition=0, offset=1)
        await worker.handle(_request(uuid.uuid4()))
        assert worker.state is WorkerState.AWAITING_ACK

        worker.save(EVENTS, {"id": 2}, topic="src", partition=0, offset=2)
        second = uuid.uuid4()
        await worker.handle(_request(second))

        assert writer.flushes == 2
        latest = bus.payloads(CommitResponsePayload)[-1]
        assert latest.commit_id == second
        assert latest.assignments == (tpo(0, 2),)

    async def test_unsent_files_are_reported_next_round(
        self, bus: FakeBus, writer: FakeWriter
    ):
        worker = WorkerAgent(GROUP_ID, writer, bus)
        worker.save(EVENTS, {"id": 1}, topic="src", partition=0, offset=1)
        bus.fail_sends = 1

        await worker.handle(_request(uuid.uuid4()))
        assert bus.sent == []

        await worker.handle(_request(uuid.uuid4()))
        responses = bus.payloads(CommitResponsePayload)
        assert len(responses) == 1
        assert len(responses[0].data_files) == 1


@pytest.mark.asyncio
class TestWorkerComplete:
    async def test_complete_returns_to_idle_and_reports_own_offsets(
        self, bus: FakeBus, writer: FakeWriter
    ):
        committed: list[dict] = []
        worker = WorkerAgent(GROUP_ID, writer, bus, on_offsets_committed=committed.append)
        worker.assign([("src", 0)])
        cid = uuid.uuid4()
        await worker.handle(_request(cid))

        await worker.handle(_complete(cid, tpo(0, 41), tpo(5, 3)))

        assert worker.state is WorkerState.IDLE
        assert committed == [{("src", 0): 41}]

    async def test_complete_for_other_round_is_ignored(
        self, bus: FakeBus, writer: FakeWriter
    ):
        committed: list[dict] = []
        worker = WorkerAgent(GROUP_ID, writer, bus, on_offsets_committed=committed.append)
        worker.assign([("src", 0)])
        await worker.handle(_request(uuid.uuid4()))

        await worker.handle(_complete(uuid.uuid4(), tpo(0, 41)))

        assert worker.state is WorkerState.AWAITING_ACK
        assert committed == []

    async def test_revoke_drops_partition(self, bus: FakeBus, writer: FakeWriter):
        worker = WorkerAgent(GROUP_ID, writer, bus)
        worker.assign([("src", 0), ("src", 1)])
        worker.revoke([("src", 0)])
        assert worker.assignments == [tpo(1, None)]
