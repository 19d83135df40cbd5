"""Result aggregation and statistics.

``ResultAggregator`` collects trial results, batch results, raw operation
records and leader changes while a run is in progress, and folds them into a
frozen ``Report`` on demand.  Nothing here touches the filesystem; the CLI
persists ``Report.to_dict()`` as JSON.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from kvprobe.concurrency import BatchOutcome
from kvprobe.trial import ReadMode, TrialOutcome
from kvprobe.verify import ReadAvailability
from kvprobe.workload import OperationKind, sequence_number

if TYPE_CHECKING:
    from kvprobe.concurrency import BatchResult
    from kvprobe.leader import LeaderChange
    from kvprobe.trial import TrialResult
    from kvprobe.workload import OperationRecord

__all__ = [
    "FailoverWindow",
    "LatencyStats",
    "PerformanceComparison",
    "RecoveryStats",
    "Report",
    "ResultAggregator",
    "ScenarioSummary",
    "compare_performance",
    "detect_failover_windows",
    "detect_sequence_gaps",
    "latency_stats",
    "percentile",
]


def percentile(values: Sequence[float], p: float) -> float:
    """Linear-interpolated *p*-th percentile; 0.0 for no values.

    Examples
    --------
    >>> percentile([1.0, 2.0, 3.0, 4.0], 50)
    2.5
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    k = (len(ordered) - 1) * (p / 100.0)
    f = int(k)
    c = f + 1
    if c >= len(ordered):
        return ordered[f]
    return ordered[f] + (k - f) * (ordered[c] - ordered[f])


@dataclass(frozen=True)
class LatencyStats:
    """Latency distribution in milliseconds."""

    count: int = 0
    min_ms: float = 0.0
    max_ms: float = 0.0
    mean_ms: float = 0.0
    median_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    stddev_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {k: round(v, 3) if isinstance(v, float) else v for k, v in asdict(self).items()}


def latency_stats(latencies: Iterable[float]) -> LatencyStats:
    """Summarise latencies given in seconds.

    The standard deviation is the population one.
    """
    values = [lat * 1000.0 for lat in latencies]
    if not values:
        return LatencyStats()
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return LatencyStats(
        count=len(values),
        min_ms=min(values),
        max_ms=max(values),
        mean_ms=mean,
        median_ms=percentile(values, 50),
        p95_ms=percentile(values, 95),
        p99_ms=percentile(values, 99),
        stddev_ms=math.sqrt(variance),
    )


@dataclass(frozen=True)
class RecoveryStats:
    """Recovery durations in seconds."""

    count: int = 0
    min_s: float = 0.0
    mean_s: float = 0.0
    max_s: float = 0.0

    @classmethod
    def of(cls, durations: Sequence[float]) -> RecoveryStats:
        if not durations:
            return cls()
        return cls(
            count=len(durations),
            min_s=min(durations),
            mean_s=sum(durations) / len(durations),
            max_s=max(durations),
        )

    def to_dict(self) -> dict[str, Any]:
        return {k: round(v, 3) if isinstance(v, float) else v for k, v in asdict(self).items()}


def detect_sequence_gaps(records: Iterable[OperationRecord]) -> list[int]:
    """Sequence numbers missing between successful ``seq-N`` writes.

    Examples
    --------
    Successful writes of ``seq-000001``, ``seq-000002`` and ``seq-000005``
    give ``[3, 4]``.
    """
    seen = sorted(
        {
            n
            for r in records
            if r.kind is OperationKind.write
            and r.success
            and (n := sequence_number(r.key)) is not None
        }
    )
    gaps: list[int] = []
    for prev, cur in zip(seen, seen[1:]):
        gaps.extend(range(prev + 1, cur))
    return gaps


@dataclass(frozen=True)
class FailoverWindow:
    """Interval between two consecutive leader changes that hurt operations.

    Parameters
    ----------
    start, end : float
        Timestamps of the bounding leader changes.
    impacted_operations : int
        Failed operations issued inside the window.
    recovery_time : float | None
        Seconds from *start* to the first successful operation in the window.
    """

    start: float
    end: float
    impacted_operations: int
    recovery_time: float | None

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "duration_s": round(self.duration, 3),
            "impacted_operations": self.impacted_operations,
            "recovery_time_s": (
                round(self.recovery_time, 3) if self.recovery_time is not None else None
            ),
        }


def _transitions(changes: Iterable[LeaderChange]) -> list[float]:
    # the first observation of a partition is not a failover
    return sorted(c.timestamp for c in changes if c.before is not None)


def detect_failover_windows(
    records: Iterable[OperationRecord], changes: Iterable[LeaderChange]
) -> list[FailoverWindow]:
    """Windows between consecutive leader changes in which some operation failed."""
    ops = sorted(records, key=lambda r: r.issued_at)
    stamps = _transitions(changes)
    windows: list[FailoverWindow] = []
    for start, end in zip(stamps, stamps[1:]):
        inside = [r for r in ops if start < r.issued_at < end]
        impacted = sum(1 for r in inside if not r.success)
        if impacted == 0:
            continue
        first_ok = next((r.issued_at for r in inside if r.success), None)
        windows.append(
            FailoverWindow(
                start=start,
                end=end,
                impacted_operations=impacted,
                recovery_time=first_ok - start if first_ok is not None else None,
            )
        )
    return windows


@dataclass(frozen=True)
class PerformanceComparison:
    """Latency of successful operations before and after the first failover."""

    baseline_write: LatencyStats
    baseline_read: LatencyStats
    failover_write: LatencyStats
    failover_read: LatencyStats

    @property
    def write_impact_pct(self) -> float | None:
        """Relative change of mean write latency, or ``None`` without a baseline."""
        base = self.baseline_write.mean_ms
        if base <= 0 or self.failover_write.count == 0:
            return None
        return (self.failover_write.mean_ms - base) / base * 100.0

    def to_dict(self) -> dict[str, Any]:
        impact = self.write_impact_pct
        return {
            "baseline_write": self.baseline_write.to_dict(),
            "baseline_read": self.baseline_read.to_dict(),
            "failover_write": self.failover_write.to_dict(),
            "failover_read": self.failover_read.to_dict(),
            "write_impact_pct": round(impact, 1) if impact is not None else None,
        }


def compare_performance(
    records: Iterable[OperationRecord], changes: Iterable[LeaderChange]
) -> PerformanceComparison:
    """Split successful operations at the first leader change.

    Without any leader change everything counts as baseline.
    """
    stamps = _transitions(changes)
    first = stamps[0] if stamps else math.inf
    buckets: dict[tuple[bool, OperationKind], list[float]] = {
        (before, kind): [] for before in (True, False) for kind in OperationKind
    }
    for r in records:
        if r.success:
            buckets[(r.issued_at < first, r.kind)].append(r.latency)
    return PerformanceComparison(
        baseline_write=latency_stats(buckets[(True, OperationKind.write)]),
        baseline_read=latency_stats(buckets[(True, OperationKind.read)]),
        failover_write=latency_stats(buckets[(False, OperationKind.write)]),
        failover_read=latency_stats(buckets[(False, OperationKind.read)]),
    )


@dataclass(frozen=True)
class ScenarioSummary:
    """Counts for one (scenario, read mode) cell."""

    scenario: str
    read_mode: str
    total: int
    passed: int
    violations: int
    incomplete: int
    abandoned: int
    immediate_available: int
    immediate_total: int
    mean_duration: float | None

    @property
    def success_rate(self) -> float:
        return self.passed / self.total if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            **asdict(self),
            "success_rate": round(self.success_rate, 4),
        }


def summarise_trials(trials: Sequence[TrialResult]) -> list[ScenarioSummary]:
    cells: dict[tuple[str, str], list[TrialResult]] = {}
    for trial in trials:
        cells.setdefault((trial.scenario.value, trial.read_mode.value), []).append(trial)

    summaries: list[ScenarioSummary] = []
    for (scenario, read_mode), group in cells.items():
        outcomes = [t.outcome for t in group]
        immediate = [t.immediate_verdict for t in group if t.immediate_verdict is not None]
        durations = [t.duration for t in group if t.duration is not None and t.passed]
        summaries.append(
            ScenarioSummary(
                scenario=scenario,
                read_mode=read_mode,
                total=len(group),
                passed=outcomes.count(TrialOutcome.passed),
                violations=outcomes.count(TrialOutcome.violation),
                incomplete=outcomes.count(TrialOutcome.incomplete),
                abandoned=outcomes.count(TrialOutcome.abandoned),
                immediate_available=sum(
                    1 for v in immediate if v.availability is ReadAvailability.available
                ),
                immediate_total=len(immediate),
                mean_duration=sum(durations) / len(durations) if durations else None,
            )
        )
    return summaries


@dataclass(frozen=True)
class Report:
    """Everything a run produced, ready for ``json.dump(report.to_dict())``."""

    started_at: float
    finished_at: float
    trials: tuple[TrialResult, ...] = ()
    scenarios: tuple[ScenarioSummary, ...] = ()
    batches: tuple[BatchResult, ...] = ()
    write_latency: LatencyStats = field(default_factory=LatencyStats)
    read_latency: LatencyStats = field(default_factory=LatencyStats)
    recovery: RecoveryStats = field(default_factory=RecoveryStats)
    sequence_gaps: tuple[int, ...] = ()
    leader_changes: int = 0
    failover_windows: tuple[FailoverWindow, ...] = ()
    performance: PerformanceComparison | None = None

    def _count(self, outcome: TrialOutcome) -> int:
        return sum(1 for t in self.trials if t.outcome is outcome)

    @property
    def passed(self) -> int:
        return self._count(TrialOutcome.passed)

    @property
    def violations(self) -> int:
        return self._count(TrialOutcome.violation)

    @property
    def incomplete(self) -> int:
        return self._count(TrialOutcome.incomplete)

    @property
    def abandoned(self) -> int:
        return self._count(TrialOutcome.abandoned)

    @property
    def success_rate(self) -> float:
        return self.passed / len(self.trials) if self.trials else 0.0

    @property
    def durability_survival_rate(self) -> float | None:
        """Passed over completed trials; incomplete and abandoned ones are excluded."""
        judged = self.passed + self.violations
        return self.passed / judged if judged else None

    @property
    def immediate_read_availability(self) -> float | None:
        verdicts = [
            t.immediate_verdict
            for t in self.trials
            if t.read_mode is ReadMode.immediate and t.immediate_verdict is not None
        ]
        if not verdicts:
            return None
        available = sum(1 for v in verdicts if v.availability is ReadAvailability.available)
        return available / len(verdicts)

    def _count_batches(self, outcome: BatchOutcome) -> int:
        return sum(1 for b in self.batches if b.outcome is outcome)

    @property
    def consistent(self) -> bool:
        """No trial or batch observed a store violation; incomplete runs do not count."""
        return self.violations == 0 and self._count_batches(BatchOutcome.violation) == 0

    def to_dict(self) -> dict[str, Any]:
        survival = self.durability_survival_rate
        immediate = self.immediate_read_availability
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_s": round(self.finished_at - self.started_at, 1),
            "summary": {
                "trials": len(self.trials),
                "passed": self.passed,
                "violations": self.violations,
                "incomplete": self.incomplete,
                "abandoned": self.abandoned,
                "success_rate": round(self.success_rate, 4),
                "durability_survival_rate": (
                    round(survival, 4) if survival is not None else None
                ),
                "immediate_read_availability": (
                    round(immediate, 4) if immediate is not None else None
                ),
                "batches": len(self.batches),
                "batches_passed": self._count_batches(BatchOutcome.passed),
                "batch_violations": self._count_batches(BatchOutcome.violation),
                "batches_incomplete": self._count_batches(BatchOutcome.incomplete),
                "consistent": self.consistent,
            },
            "scenarios": [s.to_dict() for s in self.scenarios],
            "latency": {
                "write": self.write_latency.to_dict(),
                "read": self.read_latency.to_dict(),
            },
            "recovery": self.recovery.to_dict(),
            "sequence_gaps": list(self.sequence_gaps),
            "leader_changes": self.leader_changes,
            "failover_windows": [w.to_dict() for w in self.failover_windows],
            "performance": self.performance.to_dict() if self.performance else None,
            "batches": [b.to_dict() for b in self.batches],
            "trials": [t.to_dict() for t in self.trials],
        }


class ResultAggregator:
    """Accumulates results from trials, batches, streams and the tracker.

    Every ``add_*`` method is a plain synchronous append so it can be used
    directly as a trial sink or tracker subscriber.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._started_at = clock()
        self._lock = threading.Lock()
        self._trials: list[TrialResult] = []
        self._batches: list[BatchResult] = []
        self._records: list[OperationRecord] = []
        self._changes: list[LeaderChange] = []

    def add_trial(self, result: TrialResult) -> None:
        with self._lock:
            self._trials.append(result)

    def add_batch(self, result: BatchResult) -> None:
        with self._lock:
            self._batches.append(result)

    def add_record(self, record: OperationRecord) -> None:
        with self._lock:
            self._records.append(record)

    def add_leader_change(self, change: LeaderChange) -> None:
        with self._lock:
            self._changes.append(change)

    def _all_records(self) -> list[OperationRecord]:
        records = list(self._records)
        for batch in self._batches:
            records.extend(batch.batch.records)
            if batch.final_read is not None:
                records.append(batch.final_read)
        for trial in self._trials:
            for record in (
                trial.write_record,
                trial.immediate_read_record,
                trial.verification_read_record,
            ):
                if record is not None:
                    records.append(record)
        return records

    def report(self) -> Report:
        with self._lock:
            trials = tuple(self._trials)
            batches = tuple(self._batches)
            records = self._all_records()
            changes = list(self._changes)

        writes = [r.latency for r in records if r.kind is OperationKind.write and r.success]
        reads = [r.latency for r in records if r.kind is OperationKind.read and r.success]
        recoveries = [t.recovery_duration for t in trials if t.recovery_duration is not None]
        return Report(
            started_at=self._started_at,
            finished_at=self._clock(),
            trials=trials,
            scenarios=tuple(summarise_trials(trials)),
            batches=batches,
            write_latency=latency_stats(writes),
            read_latency=latency_stats(reads),
            recovery=RecoveryStats.of(recoveries),
            sequence_gaps=tuple(detect_sequence_gaps(records)),
            leader_changes=sum(1 for c in changes if c.before is not None),
            failover_windows=tuple(detect_failover_windows(records, changes)),
            performance=compare_performance(records, changes) if records else None,
        )
