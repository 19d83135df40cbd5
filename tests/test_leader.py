from __future__ import annotations

import asyncio
from typing import Any

import pytest

from kvprobe.errors import LeaderQueryError
from kvprobe.leader import (
    LeaderChange,
    LeaderInfo,
    LeaderState,
    LeaderTracker,
    parse_partition_status,
    replica_ordinal,
)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestLeaderState:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (None, LeaderState.no_leader),
            ("", LeaderState.no_leader),
            ("Ready", LeaderState.ready),
            ("READY", LeaderState.ready),
            ("Candidate", LeaderState.electing),
            ("NoLeader", LeaderState.no_leader),
            ("no-leader", LeaderState.no_leader),
            ("no_leader", LeaderState.no_leader),
            ("Electing", LeaderState.electing),
        ],
    )
    def test_parse(self, raw: str | None, expected: LeaderState) -> None:
        assert LeaderState.parse(raw) is expected


def test_replica_ordinal() -> None:
    assert replica_ordinal("consensus-store-1-2") == 2
    assert replica_ordinal("consensus-store-3-0") == 0
    assert replica_ordinal("leader") == -1
    assert replica_ordinal("") == -1


class TestLeaderInfo:
    def test_default_is_no_leader(self) -> None:
        info = LeaderInfo(partition_id=2)
        assert not info.has_replica
        assert not info.is_ready
        assert info.replica_index == -1
        assert info.describe() == "Partition 2: No Leader"

    def test_ready_requires_replica(self) -> None:
        assert LeaderInfo(0, "consensus-store-1-1", 3, LeaderState.ready).is_ready
        assert not LeaderInfo(0, "", 3, LeaderState.ready).is_ready
        assert not LeaderInfo(0, "consensus-store-1-1", 3, LeaderState.electing).is_ready

    def test_same_leadership_compares_replica_and_term(self) -> None:
        a = LeaderInfo(0, "consensus-store-1-1", 3, LeaderState.ready, observed_at=1.0)
        b = LeaderInfo(0, "consensus-store-1-1", 3, LeaderState.electing, observed_at=2.0)
        assert a.same_leadership(b)
        assert not a.same_leadership(LeaderInfo(0, "consensus-store-1-1", 4))
        assert not a.same_leadership(LeaderInfo(0, "consensus-store-1-2", 3))
        assert not a.same_leadership(None)

    def test_describe(self) -> None:
        info = LeaderInfo(1, "consensus-store-2-1", 7, LeaderState.ready)
        assert info.describe() == "Partition 1: consensus-store-2-1 (term: 7, Ready)"

    def test_to_dict(self) -> None:
        data = LeaderInfo(0, "consensus-store-1-2", 5, LeaderState.ready, 10.0).to_dict()
        assert data == {
            "partition_id": 0,
            "replica": "consensus-store-1-2",
            "replica_index": 2,
            "term": 5,
            "state": "Ready",
            "observed_at": 10.0,
        }


class TestParsePartitionStatus:
    def test_full_record(self) -> None:
        info = parse_partition_status(
            {"partition": 1, "leader": "consensus-store-2-3", "term": 4, "state": "Ready"}, 9.0
        )
        assert info == LeaderInfo(1, "consensus-store-2-3", 4, LeaderState.ready, 9.0)

    def test_missing_leader_is_no_leader(self) -> None:
        info = parse_partition_status({"partition": 0, "leader": None, "term": 2}, 1.0)
        assert info == LeaderInfo(0, observed_at=1.0)

    def test_malformed_term_is_no_leader(self) -> None:
        info = parse_partition_status(
            {"partition": 0, "leader": "consensus-store-1-1", "term": "abc"}, 1.0
        )
        assert not info.has_replica
        assert info.state is LeaderState.no_leader

    def test_string_term_is_parsed(self) -> None:
        info = parse_partition_status(
            {"partition": 0, "leader": "consensus-store-1-1", "term": "12", "state": "Ready"}, 1.0
        )
        assert info.term == 12

    @pytest.mark.parametrize("partition", [None, "0", True])
    def test_unidentified_partition_raises(self, partition: Any) -> None:
        with pytest.raises(ValueError, match="partition"):
            parse_partition_status({"partition": partition, "leader": "x-1"}, 1.0)


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class TestLeaderTracker:
    async def test_refresh_populates_every_partition(self, platform, tracker) -> None:
        assert tracker.current_leader(0) is None
        await tracker.refresh()
        assert tracker.refresh_count == 1
        for pid in range(3):
            leader = tracker.current_leader(pid)
            assert leader is not None
            assert leader.is_ready
            assert leader.replica == f"consensus-store-{pid + 1}-1"

    async def test_missing_partition_recorded_as_no_leader(self, platform, tracker) -> None:
        del platform.statuses[2]
        await tracker.refresh()
        leader = tracker.current_leader(2)
        assert leader is not None
        assert not leader.has_replica

    async def test_bad_record_skipped(self, platform, tracker) -> None:
        platform.statuses[9] = {"partition": "bogus", "leader": "x-1"}
        await tracker.refresh()
        assert set(tracker.snapshot()) == {0, 1, 2}

    async def test_query_failure_keeps_previous_snapshot(self, platform, tracker) -> None:
        await tracker.refresh()
        before = tracker.snapshot()
        platform.fail_leadership = 1
        with pytest.raises(LeaderQueryError):
            await tracker.refresh()
        assert tracker.snapshot() is before
        assert tracker.refresh_count == 1

    async def test_snapshot_is_read_only(self, tracker) -> None:
        await tracker.refresh()
        with pytest.raises(TypeError):
            tracker.snapshot()[0] = LeaderInfo(0)  # type: ignore[index]

    async def test_publishes_changes(self, platform, tracker) -> None:
        changes: list[LeaderChange] = []
        tracker.subscribe(changes.append)

        await tracker.refresh()
        assert [c.partition_id for c in changes] == [0, 1, 2]
        assert all(c.before is None for c in changes)

        changes.clear()
        await tracker.refresh()
        assert changes == []

        platform.set_leader(1, "consensus-store-2-2", 2)
        await tracker.refresh()
        assert len(changes) == 1
        change = changes[0]
        assert change.partition_id == 1
        assert change.before is not None and change.before.term == 1
        assert change.after.term == 2
        assert change.timestamp == change.after.observed_at

    async def test_state_change_is_published(self, platform, tracker) -> None:
        changes: list[LeaderChange] = []
        await tracker.refresh()
        tracker.subscribe(changes.append)
        platform.set_leader(0, "consensus-store-1-1", 1, "Candidate")
        await tracker.refresh()
        assert [c.after.state for c in changes] == [LeaderState.electing]

    async def test_uses_clock(self, platform) -> None:
        tracker = LeaderTracker(platform, partition_count=3, clock=lambda: 42.0)
        await tracker.refresh()
        assert tracker.current_leader(0).observed_at == 42.0  # type: ignore[union-attr]

    async def test_run_until_stopped(self, platform, tracker) -> None:
        stop = asyncio.Event()
        platform.fail_leadership = 1
        task = asyncio.create_task(tracker.run(stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert tracker.refresh_count >= 2
        assert tracker.current_leader(0) is not None

    async def test_start_and_stop(self, tracker) -> None:
        async with tracker:
            await asyncio.sleep(0.05)
        count = tracker.refresh_count
        assert count >= 1
        await asyncio.sleep(0.05)
        assert tracker.refresh_count == count
