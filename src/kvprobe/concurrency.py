"""Concurrent-client batches: linearizability, durability and read-your-writes.

Each batch runs N clients against the store, waits for all of them, lets the
writes settle briefly and then takes one final read that the verifiers judge.
No leader is killed here; failover is the trial runner's job.

A batch whose judged reads could not be performed is ``incomplete``, not a
``violation``: only a value the store actually returned can break a guarantee.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from kvprobe.verify import (
    check_linearizability,
    check_no_lost_updates,
    check_read_your_writes,
)

if TYPE_CHECKING:
    from kvprobe.verify import ConsistencyVerdict
    from kvprobe.workload import ClientBatch, OperationRecord, WorkloadDriver

__all__ = ["BatchOutcome", "BatchResult", "ConcurrencyTester"]

logger = logging.getLogger("kvprobe.concurrency")


class BatchOutcome(Enum):
    passed = "passed"
    violation = "violation"
    incomplete = "incomplete"


def _judge(verdicts: tuple[ConsistencyVerdict, ...], *, reads_failed: bool) -> BatchOutcome:
    if all(v.passed for v in verdicts):
        return BatchOutcome.passed
    if reads_failed:
        return BatchOutcome.incomplete
    return BatchOutcome.violation


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one concurrent batch.

    Parameters
    ----------
    name : str
        Batch label (``"linearizability"``, ``"write-durability"``,
        ``"read-your-writes"``).
    batch : ClientBatch
        All records of the batch.
    final_read : OperationRecord | None
        The settling read judged by the verifiers, if the batch takes one.
    verdicts : tuple[ConsistencyVerdict, ...]
        One verdict per checked guarantee.
    outcome : BatchOutcome
        ``incomplete`` when a failed verdict rests on reads that errored or
        timed out rather than on a value the store returned.
    """

    name: str
    batch: ClientBatch
    final_read: OperationRecord | None
    verdicts: tuple[ConsistencyVerdict, ...]
    outcome: BatchOutcome

    @property
    def passed(self) -> bool:
        return self.outcome is BatchOutcome.passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "key": self.batch.key,
            "clients": list(self.batch.client_ids),
            "outcome": self.outcome.value,
            "passed": self.passed,
            "final_read": self.final_read.to_dict() if self.final_read else None,
            "verdicts": [v.to_dict() for v in self.verdicts],
            "records": [r.to_dict() for r in self.batch.records],
        }


class ConcurrencyTester:
    """Runs the concurrent batches through a ``WorkloadDriver``.

    Parameters
    ----------
    driver : WorkloadDriver
        Driver shared by every client.
    clients : int
        Concurrent clients per batch.
    operations_per_client : int
        Sequential writes per client.
    settle : float
        Seconds to wait after all clients join before the final read.
    """

    def __init__(
        self,
        driver: WorkloadDriver,
        *,
        clients: int = 3,
        operations_per_client: int = 5,
        settle: float = 0.1,
    ) -> None:
        self._driver = driver
        self._clients = clients
        self._operations_per_client = operations_per_client
        self._settle = settle

    async def _final_read(self, key: str) -> OperationRecord:
        await asyncio.sleep(self._settle)
        record = await self._driver.read(key, client_id="verification")
        if record.found:
            logger.info("FINAL_VALUE: %s = %s (duration: %.3fs)", key, record.value, record.latency)
        else:
            logger.warning("FINAL_READ_FAILED: %s - %s", key, record.error or "no value")
        return record

    async def linearizability(self, key: str = "shared-linearizability-key") -> BatchResult:
        """Clients write ``client-i-seq-j``; the final value must be some client's last write."""
        logger.info(
            "LINEARIZABILITY_TEST_START: %d clients x %d writes on %s",
            self._clients,
            self._operations_per_client,
            key,
        )
        batch = await self._driver.run_clients(
            key,
            clients=self._clients,
            operations_per_client=self._operations_per_client,
            pacing=0.01,
        )
        final_read = await self._final_read(key)
        verdict = check_linearizability(batch.writes, final_read)
        outcome = _judge((verdict,), reads_failed=not final_read.success)
        _log_verdict("LINEARIZABILITY", verdict, outcome)
        return BatchResult("linearizability", batch, final_read, (verdict,), outcome)

    async def write_durability(self, key: str = "shared-durability-key") -> BatchResult:
        """Clients write unique values; the final value must be an acknowledged one."""
        logger.info(
            "WRITE_DURABILITY_TEST_START: %d clients x %d writes on %s",
            self._clients,
            self._operations_per_client,
            key,
        )
        batch = await self._driver.run_clients(
            key,
            clients=self._clients,
            operations_per_client=self._operations_per_client,
            pacing=0.02,
            value_for=lambda client_id, seq: f"{client_id}-write-{seq}-{time.time_ns()}",
            client_prefix="durability-client",
        )
        final_read = await self._final_read(key)
        verdict = check_no_lost_updates(batch.writes, final_read)
        logger.info(
            "WRITE_DURABILITY_STATS: %d/%d writes acknowledged (%.1f%%)",
            verdict.acknowledged,
            verdict.attempted,
            (verdict.rate or 0.0) * 100.0,
        )
        outcome = _judge((verdict,), reads_failed=not final_read.success)
        _log_verdict("WRITE_DURABILITY", verdict, outcome)
        return BatchResult("write-durability", batch, final_read, (verdict,), outcome)

    async def read_your_writes(self, key_prefix: str = "ryw-key") -> BatchResult:
        """Each client writes its own key and immediately reads it back."""
        logger.info(
            "READ_YOUR_WRITES_TEST_START: %d clients x %d write/read pairs",
            self._clients,
            self._operations_per_client,
        )
        batch = await self._driver.run_clients(
            key_prefix,
            clients=self._clients,
            operations_per_client=self._operations_per_client,
            pacing=0.01,
            read_after_write=True,
            client_prefix="ryw-client",
            key_for=lambda client_id: f"{key_prefix}-{client_id}",
        )
        pairs = batch.write_read_pairs()
        verdict = check_read_your_writes(pairs)
        mismatched = any(w.success and r.success and r.value != w.value for w, r in pairs)
        outcome = _judge((verdict,), reads_failed=not mismatched)
        _log_verdict("READ_YOUR_WRITES", verdict, outcome)
        return BatchResult("read-your-writes", batch, None, (verdict,), outcome)

    async def run_all(self) -> list[BatchResult]:
        return [
            await self.linearizability(),
            await self.write_durability(),
            await self.read_your_writes(),
        ]


def _log_verdict(event: str, verdict: ConsistencyVerdict, outcome: BatchOutcome) -> None:
    match outcome:
        case BatchOutcome.passed:
            logger.info("%s_PASS: %s", event, verdict.detail)
        case BatchOutcome.incomplete:
            logger.warning("%s_INCOMPLETE: %s", event, verdict.detail)
        case BatchOutcome.violation:
            logger.error("%s_FAIL: %s", event, verdict.detail)
