"""Shared fixtures and in-memory fakes of the store and the cluster platform."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from kvprobe.errors import LeaderQueryError, TransientStoreError
from kvprobe.leader import LeaderTracker


class FakeStore:
    """In-memory ``KeyValueStore``.

    ``fail_puts`` / ``fail_gets`` make the next N calls raise
    ``TransientStoreError``; ``get_delays`` are consumed one per ``get`` and
    slept before answering.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.fail_puts = 0
        self.fail_gets = 0
        self.get_delays: list[float] = []
        self.put_log: list[tuple[str, str]] = []

    async def put(self, key: str, value: str) -> str | None:
        await asyncio.sleep(0)
        if self.fail_puts:
            self.fail_puts -= 1
            raise TransientStoreError(f"put {key!r} failed: connection reset")
        previous = self.data.get(key)
        self.data[key] = value
        self.put_log.append((key, value))
        return previous

    async def get(self, key: str) -> str | None:
        if self.get_delays:
            await asyncio.sleep(self.get_delays.pop(0))
        else:
            await asyncio.sleep(0)
        if self.fail_gets:
            self.fail_gets -= 1
            raise TransientStoreError(f"get {key!r} failed: connection reset")
        return self.data.get(key)

    async def entries(self) -> AsyncIterator[tuple[str, str]]:
        for key, value in list(self.data.items()):
            yield key, value


def replica_name(partition_id: int, ordinal: int) -> str:
    return f"consensus-store-{partition_id + 1}-{ordinal}"


class FakePlatform:
    """Scriptable ``ClusterPlatform``.

    Every partition starts with a Ready leader at ordinal 1, term 1.  When
    ``auto_elect`` is on, terminating a leader immediately promotes the next
    ordinal with the next term.
    """

    def __init__(self, partition_count: int = 3, *, auto_elect: bool = True) -> None:
        self.statuses: dict[int, dict[str, Any]] = {
            pid: {"partition": pid, "leader": replica_name(pid, 1), "term": 1, "state": "Ready"}
            for pid in range(partition_count)
        }
        self.auto_elect = auto_elect
        self.fail_leadership = 0
        self.terminate_error: Exception | None = None
        self.terminated: list[str] = []
        self.queries = 0

    def set_leader(
        self, partition_id: int, replica: str | None, term: int, state: str | None = "Ready"
    ) -> None:
        self.statuses[partition_id] = {
            "partition": partition_id,
            "leader": replica,
            "term": term,
            "state": state,
        }

    async def leadership(self) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        self.queries += 1
        if self.fail_leadership:
            self.fail_leadership -= 1
            raise LeaderQueryError("failed to list RaftGroups: connection refused")
        return [dict(status) for status in self.statuses.values()]

    async def terminate(self, replica: str) -> None:
        await asyncio.sleep(0)
        if self.terminate_error is not None:
            raise self.terminate_error
        self.terminated.append(replica)
        for pid, status in self.statuses.items():
            if status["leader"] != replica:
                continue
            if self.auto_elect:
                ordinal = int(replica.rsplit("-", 1)[1])
                self.set_leader(pid, replica_name(pid, ordinal % 3 + 1), status["term"] + 1)
            else:
                self.set_leader(pid, None, status["term"], None)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def tracker(platform: FakePlatform) -> LeaderTracker:
    return LeaderTracker(platform, partition_count=3, poll_interval=0.01)
