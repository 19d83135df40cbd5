"""Consistency verifiers.

Pure functions over ``OperationRecord`` values.  Each returns a frozen
``ConsistencyVerdict`` and never raises; callers that want an exception use
``verdict.raise_for_failure()``.

A read that finds no value fails every check, and a value equal to any member
of the expected set passes (ties are not ordered).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kvprobe.errors import VerificationMismatchError
from kvprobe.workload import OperationKind, OperationRecord

__all__ = [
    "ConsistencyVerdict",
    "Guarantee",
    "ReadAvailability",
    "check_failover_durability",
    "check_immediate_read",
    "check_linearizability",
    "check_no_lost_updates",
    "check_read_your_writes",
    "classify_read",
    "pass_rate",
]


class Guarantee(Enum):
    linearizability = "Linearizability"
    read_your_writes = "Read-Your-Writes"
    no_lost_updates = "No Lost Updates"
    failover_durability = "Failover Durability"
    immediate_read = "Immediate Read Availability"


class ReadAvailability(Enum):
    available = "available"
    unavailable = "unavailable"
    missing = "missing"
    mismatch = "mismatch"


@dataclass(frozen=True)
class ConsistencyVerdict:
    """Outcome of one guarantee check.

    Parameters
    ----------
    guarantee : Guarantee
        Property that was checked.
    passed : bool
        Whether the property held.
    detail : str
        Human-readable explanation.
    observed : str | None
        Value the deciding read returned.
    expected : frozenset[str]
        Values that would have passed.
    rate : float | None
        Fraction of passing pairs, or acknowledged/attempted writes.
    acknowledged : int
        Writes the store acknowledged (``check_no_lost_updates``).
    attempted : int
        Writes attempted (``check_no_lost_updates``).
    superseded_client : str | None
        Client whose overwritten intermediate value was observed
        (``check_linearizability``).
    availability : ReadAvailability | None
        Classification of the read (``check_immediate_read``).
    """

    guarantee: Guarantee
    passed: bool
    detail: str
    observed: str | None = None
    expected: frozenset[str] = frozenset()
    rate: float | None = None
    acknowledged: int = 0
    attempted: int = 0
    superseded_client: str | None = None
    availability: ReadAvailability | None = None

    def raise_for_failure(self) -> None:
        if not self.passed:
            raise VerificationMismatchError(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "guarantee": self.guarantee.value,
            "passed": self.passed,
            "detail": self.detail,
            "observed": self.observed,
            "expected": sorted(self.expected),
            "rate": self.rate,
            "acknowledged": self.acknowledged,
            "attempted": self.attempted,
            "superseded_client": self.superseded_client,
            "availability": self.availability.value if self.availability else None,
        }


def classify_read(expected: str, read: OperationRecord) -> ReadAvailability:
    """Classify *read* against the *expected* value.

    An errored or timed-out read is ``unavailable``; a completed read that
    found nothing is ``missing``.
    """
    if not read.success:
        return ReadAvailability.unavailable
    if read.value is None:
        return ReadAvailability.missing
    if read.value != expected:
        return ReadAvailability.mismatch
    return ReadAvailability.available


def _final_read_problem(final_read: OperationRecord) -> str | None:
    if not final_read.success:
        return f"final read failed: {final_read.error}"
    if final_read.value is None:
        return "final read found no value"
    return None


def check_linearizability(
    client_writes: Iterable[OperationRecord], final_read: OperationRecord
) -> ConsistencyVerdict:
    """Final value must be the last value written by some client.

    The expected set holds each client's last *attempted* write, since an
    errored write may still have been applied.  When the observed value is
    an earlier write of some client, that client is reported as superseded.
    """
    writes = [w for w in client_writes if w.kind is OperationKind.write]
    last_by_client: dict[str, OperationRecord] = {}
    for write in writes:
        current = last_by_client.get(write.client_id)
        if current is None or (write.sequence or 0) >= (current.sequence or 0):
            last_by_client[write.client_id] = write
    expected = frozenset(w.value for w in last_by_client.values() if w.value is not None)

    problem = _final_read_problem(final_read)
    if problem is not None:
        return ConsistencyVerdict(
            guarantee=Guarantee.linearizability,
            passed=False,
            detail=problem,
            expected=expected,
        )

    observed = final_read.value
    if observed in expected:
        return ConsistencyVerdict(
            guarantee=Guarantee.linearizability,
            passed=True,
            detail=f"final value {observed} is the last write of a client",
            observed=observed,
            expected=expected,
        )

    superseded = next((w for w in writes if w.value == observed), None)
    if superseded is not None:
        latest = last_by_client[superseded.client_id].value
        return ConsistencyVerdict(
            guarantee=Guarantee.linearizability,
            passed=False,
            detail=(
                f"final value {observed} was superseded by {superseded.client_id}'s "
                f"later write {latest}; expected one of {sorted(expected)}"
            ),
            observed=observed,
            expected=expected,
            superseded_client=superseded.client_id,
        )
    return ConsistencyVerdict(
        guarantee=Guarantee.linearizability,
        passed=False,
        detail=f"final value {observed} was never written; expected one of {sorted(expected)}",
        observed=observed,
        expected=expected,
    )


def check_read_your_writes(
    pairs: Sequence[tuple[OperationRecord, OperationRecord]],
) -> ConsistencyVerdict:
    """Every read must return exactly the value its client just wrote.

    ``rate`` is the fraction of passing pairs; an empty input passes with a
    rate of 1.0.
    """
    failures = [
        (write, read)
        for write, read in pairs
        if not (write.success and read.success and read.value == write.value)
    ]
    total = len(pairs)
    rate = (total - len(failures)) / total if total else 1.0
    if not failures:
        detail = f"{total}/{total} reads returned the client's own write"
    else:
        write, read = failures[0]
        seen = read.value if read.success else f"error: {read.error}"
        detail = (
            f"{total - len(failures)}/{total} reads returned the client's own write; "
            f"first failure {write.client_id} wrote {write.value}, read {seen}"
        )
    return ConsistencyVerdict(
        guarantee=Guarantee.read_your_writes,
        passed=not failures,
        detail=detail,
        rate=rate,
    )


def check_no_lost_updates(
    writes: Iterable[OperationRecord], final_read: OperationRecord
) -> ConsistencyVerdict:
    """Final value must be one of the acknowledged (successful) writes."""
    attempted = [w for w in writes if w.kind is OperationKind.write]
    acknowledged = [w for w in attempted if w.success]
    expected = frozenset(w.value for w in acknowledged if w.value is not None)
    rate = len(acknowledged) / len(attempted) if attempted else 0.0

    problem = _final_read_problem(final_read)
    if problem is not None:
        passed = False
        detail = problem
    elif final_read.value in expected:
        passed = True
        detail = (
            f"final value {final_read.value} was acknowledged "
            f"({len(acknowledged)}/{len(attempted)} writes acknowledged)"
        )
    else:
        passed = False
        detail = f"final value {final_read.value} was never acknowledged"

    return ConsistencyVerdict(
        guarantee=Guarantee.no_lost_updates,
        passed=passed,
        detail=detail,
        observed=final_read.value if final_read.success else None,
        expected=expected,
        rate=rate,
        acknowledged=len(acknowledged),
        attempted=len(attempted),
    )


def check_failover_durability(
    write: OperationRecord, read: OperationRecord
) -> ConsistencyVerdict:
    """The post-recovery read must return exactly the acknowledged value."""
    expected = frozenset({write.value}) if write.value is not None else frozenset()
    if not write.success:
        return ConsistencyVerdict(
            guarantee=Guarantee.failover_durability,
            passed=False,
            detail=f"write of {write.key} was not acknowledged: {write.error}",
            expected=expected,
        )

    match classify_read(write.value or "", read):
        case ReadAvailability.available:
            passed, detail = True, f"{write.key} survived failover"
        case ReadAvailability.unavailable:
            passed, detail = False, f"verification read failed: {read.error}"
        case ReadAvailability.missing:
            passed, detail = False, f"{write.key} not found after failover"
        case ReadAvailability.mismatch:
            passed = False
            detail = f"{write.key} has {read.value} after failover, wrote {write.value}"

    return ConsistencyVerdict(
        guarantee=Guarantee.failover_durability,
        passed=passed,
        detail=detail,
        observed=read.value,
        expected=expected,
    )


def check_immediate_read(write: OperationRecord, read: OperationRecord) -> ConsistencyVerdict:
    """Classify a read taken before recovery was confirmed."""
    availability = classify_read(write.value or "", read)
    match availability:
        case ReadAvailability.available:
            detail = "immediate read returned the written value"
        case ReadAvailability.unavailable:
            detail = f"immediate read unavailable: {read.error}"
        case ReadAvailability.missing:
            detail = "immediate read found no value"
        case ReadAvailability.mismatch:
            detail = f"immediate read returned {read.value}, wrote {write.value}"
    return ConsistencyVerdict(
        guarantee=Guarantee.immediate_read,
        passed=availability is ReadAvailability.available,
        detail=detail,
        observed=read.value,
        expected=frozenset({write.value}) if write.value is not None else frozenset(),
        availability=availability,
    )


def pass_rate(verdicts: Iterable[ConsistencyVerdict]) -> float:
    """Fraction of passing verdicts; 0.0 when there are none."""
    results = [v.passed for v in verdicts]
    return sum(results) / len(results) if results else 0.0
