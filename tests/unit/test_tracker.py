"""Unit tests for the progress tracker and commit registry."""

from __future__ import annotations

import uuid

import pytest

from iceberg_sink.channel.events import CommitReadyPayload, CommitResponsePayload
from iceberg_sink.commit.registry import CommitRegistry, RoundState
from iceberg_sink.commit.tracker import ProgressTracker

from helpers import EVENTS, ORDERS, data_file, tpo


class TestCompleteness:
    def test_incomplete_until_every_partition_reports(self):
        tracker = ProgressTracker()
        tracker.update_assignment([("src", 0), ("src", 1)])
        cid = uuid.uuid4()

        tracker.record_assignment(cid, tpo(0, 5))
        assert not tracker.is_round_complete(cid)
        assert tracker.missing_partitions(cid) == {("src", 1)}

        tracker.record_assignment(cid, tpo(1, None))
        assert tracker.is_round_complete(cid)

    def test_monotonic_for_fixed_assignment(self):
        tracker = ProgressTracker()
        tracker.update_assignment([("src", 0)])
        cid = uuid.uuid4()
        tracker.record_assignment(cid, tpo(0, 5))
        assert tracker.is_round_complete(cid)

        tracker.record_assignment(cid, tpo(0, 3))
        tracker.record_assignment(cid, tpo(2, 1))
        assert tracker.is_round_complete(cid)
        assert tracker.reported_offsets(cid)[("src", 0)].offset == 5

    def test_empty_assignment_never_completes(self):
        tracker = ProgressTracker()
        cid = uuid.uuid4()
        tracker.record_assignment(cid, tpo(0, 1))
        assert not tracker.is_round_complete(cid)
        assert tracker.is_round_complete(cid, current_assignment=[("src", 0)])

    def test_rebalance_changes_target(self):
        tracker = ProgressTracker()
        tracker.update_assignment([("src", 0)])
        cid = uuid.uuid4()
        tracker.record_assignment(cid, tpo(0, 1))
        assert tracker.is_round_complete(cid)

        tracker.update_assignment([("src", 0), ("src", 1)])
        assert not tracker.is_round_complete(cid)
        assert tracker.is_round_complete(cid, current_assignment=[("src", 0)])

    def test_rounds_are_independent(self):
        tracker = ProgressTracker()
        tracker.update_assignment([("src", 0)])
        first, second = uuid.uuid4(), uuid.uuid4()
        tracker.record_assignment(first, tpo(0, 1))
        assert not tracker.is_round_complete(second)

        tracker.discard_round(first)
        assert tracker.reported_partitions(first) == frozenset()


class TestOffsets:
    def test_advance_never_regresses(self):
        tracker = ProgressTracker()
        assert tracker.advance({("src", 0): 10}) == {("src", 0): 10}
        assert tracker.advance({("src", 0): 4}) == {}
        assert tracker.committed_offsets() == {("src", 0): 10}

    def test_observed_tracks_in_flight_reports(self):
        tracker = ProgressTracker()
        tracker.record_assignment(uuid.uuid4(), tpo(0, 12))
        assert tracker.observed_offsets() == {("src", 0): 12}
        assert tracker.committed_offsets() == {}

    def test_seed_restores_committed_and_observed(self):
        tracker = ProgressTracker()
        tracker.seed({("src", 0): 7, ("src", 1): 3})
        assert tracker.committed_offsets() == {("src", 0): 7, ("src", 1): 3}
        assert tracker.observed_offsets() == {("src", 0): 7, ("src", 1): 3}


class TestCommitRound:
    def _open(self) -> tuple[CommitRegistry, uuid.UUID]:
        registry = CommitRegistry()
        cid = uuid.uuid4()
        registry.open(cid, started_at=0.0, timeout=10.0, target=[("src", 0)])
        return registry, cid

    def test_duplicate_response_replaces_earlier(self):
        registry, cid = self._open()
        commit_round = registry.active
        assert commit_round is not None
        first = CommitResponsePayload(
            commit_id=cid, table_name=EVENTS, data_files=(data_file("a"),), assignments=(tpo(0, 1),)
        )
        assert commit_round.add_response(first) is False
        assert commit_round.add_response(first) is True

        data_files, delete_files = commit_round.files_for(EVENTS)
        assert data_files == [data_file("a")]
        assert delete_files == []
        assert commit_round.state is RoundState.COLLECTING

    def test_contributions_union_across_workers(self):
        registry, cid = self._open()
        commit_round = registry.active
        assert commit_round is not None
        commit_round.add_response(
            CommitResponsePayload(
                commit_id=cid, table_name=EVENTS, data_files=(data_file("a"),), assignments=(tpo(0, 1),)
            )
        )
        commit_round.add_response(
            CommitResponsePayload(
                commit_id=cid, table_name=EVENTS, data_files=(data_file("b"),), assignments=(tpo(1, 9),)
            )
        )
        commit_round.add_response(
            CommitResponsePayload(commit_id=cid, table_name=ORDERS, assignments=(tpo(1, 9),))
        )

        assert [f.path for f in commit_round.files_for(EVENTS)[0]] == ["a", "b"]
        assert commit_round.tables() == [EVENTS, ORDERS]
        assert commit_round.tables_by_partition() == {
            ("src", 0): {EVENTS},
            ("src", 1): {EVENTS},
        }

    def test_valid_through_requires_every_timestamp(self):
        registry, cid = self._open()
        commit_round = registry.active
        assert commit_round is not None
        commit_round.add_ready(
            CommitReadyPayload(
                commit_id=cid, assignments=(tpo(0, 1, timestamp=50), tpo(1, 2, timestamp=30))
            )
        )
        assert commit_round.valid_through_ts() == 30

        commit_round.add_ready(CommitReadyPayload(commit_id=cid, assignments=(tpo(2, 2),)))
        assert commit_round.valid_through_ts() is None

    def test_one_active_round_at_a_time(self):
        registry, cid = self._open()
        with pytest.raises(RuntimeError, match="still active"):
            registry.open(uuid.uuid4(), started_at=1.0, timeout=1.0, target=[])

        registry.close(cid, RoundState.COMMITTED)
        assert registry.active is None
        assert registry.get(cid) is None
        assert registry.resolved_state(cid) is RoundState.COMMITTED

    def test_responses_without_partitions_stay_apart(self):
        registry, cid = self._open()
        commit_round = registry.active
        assert commit_round is not None
        for path in ("x", "y"):
            replaced = commit_round.add_response(
                CommitResponsePayload(
                    commit_id=cid, table_name=EVENTS, data_files=(data_file(path),), assignments=()
                )
            )
            assert replaced is False

        assert [f.path for f in commit_round.files_for(EVENTS)[0]] == ["x", "y"]

    def test_same_file_listed_twice_is_committed_once(self):
        registry, cid = self._open()
        commit_round = registry.active
        assert commit_round is not None
        commit_round.add_response(
            CommitResponsePayload(
                commit_id=cid, table_name=EVENTS, data_files=(data_file("a"),), assignments=(tpo(0, 1),)
            )
        )
        commit_round.add_response(
            CommitResponsePayload(
                commit_id=cid,
                table_name=EVENTS,
                data_files=(data_file("a"), data_file("b")),
                assignments=(tpo(0, 2),),
            )
        )
        assert [f.path for f in commit_round.files_for(EVENTS)[0]] == ["a", "b"]

    def test_ready_offsets_ignore_responses(self):
        registry, cid = self._open()
        commit_round = registry.active
        assert commit_round is not None
        commit_round.add_response(
            CommitResponsePayload(
                commit_id=cid, table_name=EVENTS, data_files=(data_file("a"),), assignments=(tpo(0, 7),)
            )
        )
        assert commit_round.ready_offsets() == {}

        commit_round.add_ready(CommitReadyPayload(commit_id=cid, assignments=(tpo(1, 3),)))
        assert commit_round.ready_offsets() == {("src", 1): tpo(1, 3)}


class TestCommittedFiles:
    def test_paths_remembered_per_table(self):
        registry = CommitRegistry()
        registry.record_committed(EVENTS, ["a", "b"])
        registry.record_committed(ORDERS, ["o"])
        registry.record_committed(EVENTS, ["c"])

        assert registry.committed_paths(EVENTS) == {"a", "b", "c"}
        assert registry.committed_paths(ORDERS) == {"o"}

    def test_history_is_bounded(self):
        registry = CommitRegistry(history=2)
        registry.record_committed(EVENTS, ["a"])
        registry.record_committed(EVENTS, ["b"])
        registry.record_committed(EVENTS, ["c"])

        assert registry.committed_paths(EVENTS) == {"b", "c"}
