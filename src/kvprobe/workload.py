"""Workload driver: timestamped write/read operations against the store.

Every attempted operation produces an ``OperationRecord``.  Store errors and
timeouts are captured on the record (``success=False``); they never abort the
driver, so later operations still run and can observe recovery.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from kvprobe.errors import TransientStoreError

if TYPE_CHECKING:
    from kvprobe.store import KeyValueStore

__all__ = [
    "ClientBatch",
    "OperationKind",
    "OperationRecord",
    "RecordLog",
    "SequenceCounter",
    "WorkloadDriver",
    "sequence_key",
    "sequence_number",
]

logger = logging.getLogger("kvprobe.workload")

SEQUENCE_KEY = re.compile(r"seq-(\d+)")


def sequence_key(seq: int) -> str:
    return f"seq-{seq:06d}"


def sequence_number(key: str) -> int | None:
    """Sequence number of a ``seq-NNNNNN`` key, or ``None`` for other keys."""
    match = SEQUENCE_KEY.fullmatch(key)
    return int(match.group(1)) if match else None


class OperationKind(Enum):
    write = "Write"
    read = "Read"


@dataclass(frozen=True)
class OperationRecord:
    """One completed store operation.

    Parameters
    ----------
    kind : OperationKind
        Write or read.
    client_id : str
        Logical client that issued it.
    key : str
        Store key.
    value : str | None
        Value written, or value returned by a read (``None`` if not found or
        the read failed).
    issued_at : float
        Wall-clock time the call was issued.
    completed_at : float
        Wall-clock time the call returned or failed.
    success : bool
        Whether the store call returned without error.
    error : str | None
        Error detail for failed calls.
    sequence : int | None
        Per-client sequence number (1-based) for concurrent clients.
    """

    kind: OperationKind
    client_id: str
    key: str
    value: str | None
    issued_at: float
    completed_at: float
    success: bool
    error: str | None = None
    sequence: int | None = None

    @property
    def latency(self) -> float:
        return self.completed_at - self.issued_at

    @property
    def found(self) -> bool:
        return self.success and self.value is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "client_id": self.client_id,
            "key": self.key,
            "value": self.value,
            "issued_at": self.issued_at,
            "completed_at": self.completed_at,
            "latency_ms": round(self.latency * 1000.0, 3),
            "success": self.success,
            "error": self.error,
            "sequence": self.sequence,
        }


class SequenceCounter:
    """Shared monotonically increasing counter for writers of one key space.

    ``next()`` hands out each number exactly once across all clients.

    Examples
    --------
    >>> counter = SequenceCounter()
    >>> counter.next(), counter.next()
    (1, 2)
    >>> counter.value
    2
    """

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._last = start - 1

    def next(self) -> int:
        value = next(self._counter)
        self._last = value
        return value

    @property
    def value(self) -> int:
        return self._last


class RecordLog:
    """Append-only record collection shared by concurrent clients."""

    def __init__(self) -> None:
        self._records: list[OperationRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: OperationRecord) -> None:
        async with self._lock:
            self._records.append(record)

    async def snapshot(self) -> tuple[OperationRecord, ...]:
        async with self._lock:
            return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)


@dataclass(frozen=True)
class ClientBatch:
    """Records from one run of concurrent clients against a shared key.

    Only built after every client has joined.
    """

    key: str
    client_ids: tuple[str, ...]
    records: tuple[OperationRecord, ...]

    @property
    def writes(self) -> tuple[OperationRecord, ...]:
        return tuple(r for r in self.records if r.kind is OperationKind.write)

    @property
    def reads(self) -> tuple[OperationRecord, ...]:
        return tuple(r for r in self.records if r.kind is OperationKind.read)

    def write_read_pairs(self) -> list[tuple[OperationRecord, OperationRecord]]:
        """Each write matched with the same client's read of the same sequence."""
        reads = {(r.client_id, r.sequence): r for r in self.reads}
        return [
            (w, reads[(w.client_id, w.sequence)])
            for w in self.writes
            if (w.client_id, w.sequence) in reads
        ]


def default_value(client_id: str, seq: int) -> str:
    return f"{client_id}-seq-{seq}"


class WorkloadDriver:
    """Issues store operations and records them.

    Parameters
    ----------
    store : KeyValueStore
        Store under test; shared by all clients, only its methods are called.
    operation_timeout : float
        Default bound on every store call, in seconds.
    clock : Callable[[], float]
        Wall-clock source for record timestamps.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        operation_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._operation_timeout = operation_timeout
        self._clock = clock

    async def write(
        self,
        key: str,
        value: str,
        *,
        client_id: str = "main",
        sequence: int | None = None,
        timeout: float | None = None,
    ) -> OperationRecord:
        timeout = timeout if timeout is not None else self._operation_timeout
        issued_at = self._clock()
        error: str | None = None
        try:
            async with asyncio.timeout(timeout):
                await self._store.put(key, value)
        except TimeoutError:
            error = f"put timed out after {timeout:.1f}s"
        except TransientStoreError as exc:
            error = str(exc)
        return OperationRecord(
            kind=OperationKind.write,
            client_id=client_id,
            key=key,
            value=value,
            issued_at=issued_at,
            completed_at=self._clock(),
            success=error is None,
            error=error,
            sequence=sequence,
        )

    async def read(
        self,
        key: str,
        *,
        client_id: str = "main",
        sequence: int | None = None,
        timeout: float | None = None,
    ) -> OperationRecord:
        timeout = timeout if timeout is not None else self._operation_timeout
        issued_at = self._clock()
        value: str | None = None
        error: str | None = None
        try:
            async with asyncio.timeout(timeout):
                value = await self._store.get(key)
        except TimeoutError:
            error = f"get timed out after {timeout:.1f}s"
        except TransientStoreError as exc:
            error = str(exc)
        return OperationRecord(
            kind=OperationKind.read,
            client_id=client_id,
            key=key,
            value=value,
            issued_at=issued_at,
            completed_at=self._clock(),
            success=error is None,
            error=error,
            sequence=sequence,
        )

    async def run_clients(
        self,
        key: str,
        *,
        clients: int,
        operations_per_client: int,
        pacing: float = 0.01,
        value_for: Callable[[str, int], str] = default_value,
        read_after_write: bool = False,
        client_prefix: str = "client",
        key_for: Callable[[str], str] | None = None,
    ) -> ClientBatch:
        """Run *clients* concurrent clients, each writing *key* sequentially.

        Client ``i`` (1-based) is named ``{client_prefix}-{i}`` and writes
        ``value_for(client_id, seq)`` for ``seq = 1..operations_per_client``,
        optionally reading the key back after each write, pausing *pacing*
        seconds between operations.  All clients share *key* unless *key_for*
        gives each client its own.
        """
        log = RecordLog()
        client_ids = tuple(f"{client_prefix}-{i}" for i in range(1, clients + 1))

        async def client(client_id: str) -> None:
            client_key = key_for(client_id) if key_for is not None else key
            for seq in range(1, operations_per_client + 1):
                value = value_for(client_id, seq)
                record = await self.write(
                    client_key, value, client_id=client_id, sequence=seq
                )
                await log.append(record)
                if record.success:
                    logger.debug("WRITE_SUCCESS: %s wrote %s", client_id, value)
                else:
                    logger.info(
                        "WRITE_ERROR: %s failed to write %s - %s",
                        client_id,
                        value,
                        record.error,
                    )
                if read_after_write:
                    await log.append(
                        await self.read(client_key, client_id=client_id, sequence=seq)
                    )
                await asyncio.sleep(pacing)

        async with asyncio.TaskGroup() as group:
            for client_id in client_ids:
                group.create_task(client(client_id))

        return ClientBatch(key=key, client_ids=client_ids, records=await log.snapshot())

    async def run_sequence_stream(
        self,
        stop: asyncio.Event,
        *,
        write_interval: float = 1.0,
        read_interval: float = 2.0,
        counter: SequenceCounter | None = None,
        sink: Callable[[OperationRecord], None] | None = None,
    ) -> tuple[OperationRecord, ...]:
        """Write ``seq-NNNNNN`` keys and read back the latest one until *stop* is set.

        The writer takes one number per tick from *counter*; the reader
        periodically re-reads the most recently acknowledged key.  Returns all
        records once both loops have exited.  *sink* receives each record as
        soon as it is produced, so a caller that cancels the stream still holds
        everything recorded up to that point.
        """
        counter = counter or SequenceCounter()
        log = RecordLog()
        acknowledged: dict[str, str] = {}

        async def keep(record: OperationRecord) -> None:
            await log.append(record)
            if sink is not None:
                sink(record)

        async def writer() -> None:
            while not stop.is_set():
                seq = counter.next()
                key = sequence_key(seq)
                value = f"value-{seq:06d}-{int(self._clock())}"
                record = await self.write(key, value, client_id="stream-writer", sequence=seq)
                await keep(record)
                if record.success:
                    acknowledged[key] = value
                    logger.info(
                        "WRITE_SUCCESS: %s -> %s (duration: %.3fs)", key, value, record.latency
                    )
                else:
                    logger.info(
                        "WRITE_FAILED: %s -> %s (duration: %.3fs, error: %s)",
                        key,
                        value,
                        record.latency,
                        record.error,
                    )
                await _sleep_unless(stop, write_interval)

        async def reader() -> None:
            while not stop.is_set():
                await _sleep_unless(stop, read_interval)
                if stop.is_set() or not acknowledged:
                    continue
                key = next(reversed(acknowledged))
                expected = acknowledged[key]
                record = await self.read(key, client_id="stream-reader")
                await keep(record)
                if not record.success:
                    logger.info("READ_FAILED: %s (error: %s)", key, record.error)
                elif record.value is None:
                    logger.info("READ_FAILED: %s -> key not found", key)
                elif record.value != expected:
                    logger.warning(
                        "READ_INCONSISTENT: %s -> got %r, expected %r",
                        key,
                        record.value,
                        expected,
                    )

        async with asyncio.TaskGroup() as group:
            group.create_task(writer())
            group.create_task(reader())

        return await log.snapshot()


async def _sleep_unless(stop: asyncio.Event, delay: float) -> None:
    try:
        async with asyncio.timeout(delay):
            await stop.wait()
    except TimeoutError:
        pass
