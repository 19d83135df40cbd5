"""Per-partition leadership snapshots and the tracker that keeps them fresh.

``LeaderTracker`` polls the cluster platform for leadership metadata and keeps
the latest ``LeaderInfo`` for every partition.  Snapshots are frozen and the
cached mapping is replaced wholesale on each refresh, so a reader either sees
the previous complete mapping or the new one, never a mix.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from kvprobe.errors import LeaderQueryError

if TYPE_CHECKING:
    from kvprobe.platform import ClusterPlatform, PartitionStatus


__all__ = [
    "LeaderChange",
    "LeaderInfo",
    "LeaderState",
    "LeaderTracker",
    "log_leader_change",
    "parse_partition_status",
    "replica_ordinal",
]

logger = logging.getLogger("kvprobe.tracker")


class LeaderState(Enum):
    """Leadership state of a partition as reported by the platform.

    Examples
    --------
    >>> LeaderState.parse("Ready")
    <LeaderState.ready: 'Ready'>
    >>> LeaderState.parse(None)
    <LeaderState.no_leader: 'NoLeader'>
    >>> LeaderState.parse("no-leader")
    <LeaderState.no_leader: 'NoLeader'>
    """

    no_leader = "NoLeader"
    electing = "Electing"
    ready = "Ready"

    @classmethod
    def parse(cls, raw: str | None) -> LeaderState:
        normalized = (raw or "").lower().replace("-", "").replace("_", "")
        match normalized:
            case "" | "noleader":
                return cls.no_leader
            case "ready":
                return cls.ready
            case _:
                return cls.electing


def replica_ordinal(replica: str) -> int:
    """Extract the zero-based ordinal suffix of a replica name.

    Returns ``-1`` when the name carries no numeric suffix.

    Examples
    --------
    >>> replica_ordinal("consensus-store-1-2")
    2
    >>> replica_ordinal("")
    -1
    """
    _, _, suffix = replica.rpartition("-")
    return int(suffix) if suffix.isdigit() else -1


@dataclass(frozen=True)
class LeaderInfo:
    """Point-in-time leadership snapshot of one partition.

    Parameters
    ----------
    partition_id : int
        Partition the snapshot describes.
    replica : str
        Identity of the leading replica; empty when there is none.
    term : int
        Leadership term reported by the platform.
    state : LeaderState
        Reported leadership state.
    observed_at : float
        Wall-clock time (``time.time()``) of the poll that produced it.
    """

    partition_id: int
    replica: str = ""
    term: int = 0
    state: LeaderState = LeaderState.no_leader
    observed_at: float = 0.0

    @property
    def replica_index(self) -> int:
        return replica_ordinal(self.replica)

    @property
    def has_replica(self) -> bool:
        return bool(self.replica)

    @property
    def is_ready(self) -> bool:
        return self.state is LeaderState.ready and self.has_replica

    def same_leadership(self, other: LeaderInfo | None) -> bool:
        """Two snapshots describe the same leadership iff replica and term match."""
        return (
            other is not None
            and self.replica == other.replica
            and self.term == other.term
        )

    def describe(self) -> str:
        if not self.has_replica:
            return f"Partition {self.partition_id}: No Leader"
        return (
            f"Partition {self.partition_id}: {self.replica} "
            f"(term: {self.term}, {self.state.value})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "replica": self.replica,
            "replica_index": self.replica_index,
            "term": self.term,
            "state": self.state.value,
            "observed_at": self.observed_at,
        }


@dataclass(frozen=True)
class LeaderChange:
    """Emitted by ``LeaderTracker`` when a partition's leadership differs
    from the previous refresh."""

    partition_id: int
    before: LeaderInfo | None
    after: LeaderInfo

    @property
    def timestamp(self) -> float:
        return self.after.observed_at


def parse_partition_status(status: PartitionStatus, observed_at: float) -> LeaderInfo:
    """Turn one raw platform record into a ``LeaderInfo``.

    A record without a leader, or whose term is malformed, yields a
    ``NoLeader`` snapshot for that partition.

    Raises
    ------
    ValueError
        If the record does not identify its partition.
    """
    raw_partition = status.get("partition")
    if isinstance(raw_partition, bool) or not isinstance(raw_partition, int):
        msg = f"record does not identify a partition: {dict(status)!r}"
        raise ValueError(msg)

    leader = status.get("leader")
    if not isinstance(leader, str) or not leader:
        return LeaderInfo(partition_id=raw_partition, observed_at=observed_at)

    raw_term = status.get("term", 0)
    try:
        term = int(raw_term) if raw_term is not None else 0
    except (TypeError, ValueError):
        logger.warning(
            "LEADER_ERROR: malformed term %r for partition %d", raw_term, raw_partition
        )
        return LeaderInfo(partition_id=raw_partition, observed_at=observed_at)

    state = status.get("state")
    return LeaderInfo(
        partition_id=raw_partition,
        replica=leader,
        term=term,
        state=LeaderState.parse(state if isinstance(state, str) else None),
        observed_at=observed_at,
    )


class LeaderTracker:
    """Caches the most recent leadership snapshot of every partition.

    ``refresh()`` performs one batched platform query and swaps in a new
    immutable mapping under an exclusive lock.  ``current_leader()`` is a
    plain lookup in the current mapping: no I/O, no lock, safe from any
    number of concurrent callers.

    Parameters
    ----------
    platform : ClusterPlatform
        Source of leadership metadata.
    partition_count : int
        Partitions ``0..partition_count-1`` are always present in the
        snapshot; partitions missing from a query are recorded as
        ``NoLeader``.
    poll_interval : float
        Seconds between refreshes of the background polling loop.
    clock : Callable[[], float]
        Wall-clock source stamped on each snapshot.

    Examples
    --------
    >>> tracker = LeaderTracker(platform, partition_count=3)
    >>> await tracker.refresh()
    >>> tracker.current_leader(0)
    LeaderInfo(partition_id=0, replica='consensus-store-1-2', ...)
    """

    def __init__(
        self,
        platform: ClusterPlatform,
        *,
        partition_count: int,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._platform = platform
        self._partition_count = partition_count
        self._poll_interval = poll_interval
        self._clock = clock
        self._snapshot: Mapping[int, LeaderInfo] = MappingProxyType({})
        self._write_lock = asyncio.Lock()
        self._subscribers: list[Callable[[LeaderChange], None]] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._refresh_count = 0

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    def subscribe(self, callback: Callable[[LeaderChange], None]) -> None:
        """Register *callback* to receive every ``LeaderChange``."""
        self._subscribers.append(callback)

    def current_leader(self, partition_id: int) -> LeaderInfo | None:
        """Return the cached snapshot for *partition_id*, or ``None`` if the
        partition has never been observed."""
        return self._snapshot.get(partition_id)

    def snapshot(self) -> Mapping[int, LeaderInfo]:
        """Return the read-only mapping of every cached partition."""
        return self._snapshot

    async def refresh(self) -> Mapping[int, LeaderInfo]:
        """Query the platform once and replace the cached snapshot.

        Raises
        ------
        LeaderQueryError
            If the batched query itself fails.  The previous snapshot is kept.
        """
        async with self._write_lock:
            statuses = await self._platform.leadership()
            observed_at = self._clock()

            fresh: dict[int, LeaderInfo] = {
                pid: LeaderInfo(partition_id=pid, observed_at=observed_at)
                for pid in range(self._partition_count)
            }
            for status in statuses:
                try:
                    info = parse_partition_status(status, observed_at)
                except ValueError as exc:
                    logger.warning("LEADER_ERROR: %s", exc)
                    continue
                fresh[info.partition_id] = info

            previous = self._snapshot
            self._snapshot = MappingProxyType(fresh)
            self._refresh_count += 1

        for pid in sorted(fresh):
            before = previous.get(pid)
            after = fresh[pid]
            if (
                before is None
                or not after.same_leadership(before)
                or after.state is not before.state
            ):
                self._publish(LeaderChange(partition_id=pid, before=before, after=after))

        return self._snapshot

    def _publish(self, change: LeaderChange) -> None:
        for callback in self._subscribers:
            callback(change)

    def start(self) -> None:
        """Start the background polling loop."""
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Cancel the polling loop and wait for it to finish."""
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> LeaderTracker:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def run(self, stop: asyncio.Event) -> None:
        """Poll every ``poll_interval`` until *stop* is set."""
        while not stop.is_set():
            try:
                await self.refresh()
            except LeaderQueryError as exc:
                logger.warning("LEADER_ERROR: leadership query failed: %s", exc)
            try:
                async with asyncio.timeout(self._poll_interval):
                    await stop.wait()
            except TimeoutError:
                pass

    async def _poll_loop(self) -> None:
        await self.run(asyncio.Event())


def log_leader_change(change: LeaderChange) -> None:
    """Subscriber that logs every leadership change."""
    logger.info("LEADER_CHANGE: %s", change.after.describe())
