"""Failover trials: write, kill the leader, wait for recovery, verify.

A trial is one pass of::

    capture Ready leader -> write -> sleep(delay) -> confirm + terminate
        -> [immediate read] -> wait for recovery -> settle -> verification read

Scenarios are plain data (``ScenarioPlan``) consumed by ``TrialRunner.run_plans``.
Every trial yields exactly one ``TrialResult``, handed to the runner's sink:
``passed``, ``violation`` (the store lost or changed the value),
``incomplete`` (the harness or infrastructure could not finish) or
``abandoned`` (cancelled mid-flight).
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from kvprobe.errors import InjectionError, RecoveryTimeoutError
from kvprobe.verify import check_failover_durability, check_immediate_read

if TYPE_CHECKING:
    from kvprobe.injector import FailureInjector
    from kvprobe.leader import LeaderInfo
    from kvprobe.partition import PartitionMapper
    from kvprobe.recovery import RecoveryDetector
    from kvprobe.verify import ConsistencyVerdict
    from kvprobe.workload import OperationRecord, WorkloadDriver

__all__ = [
    "DEFAULT_PLANS",
    "ReadMode",
    "Scenario",
    "ScenarioPlan",
    "TrialOutcome",
    "TrialPhase",
    "TrialResult",
    "TrialRunner",
]

logger = logging.getLogger("kvprobe.trial")


class Scenario(Enum):
    immediate = "Immediate Failure"
    during_replication = "During Replication"
    precision_timed = "Precision Timed"
    rapid_sequential = "Rapid Sequential"


class ReadMode(Enum):
    immediate = "Immediate"
    post_recovery = "Post-Recovery"


class TrialOutcome(Enum):
    passed = "passed"
    violation = "violation"
    incomplete = "incomplete"
    abandoned = "abandoned"


class TrialPhase(Enum):
    capturing_leader = auto()
    writing = auto()
    injecting = auto()
    immediate_read = auto()
    recovering = auto()
    verifying = auto()
    finished = auto()


@dataclass(frozen=True)
class ScenarioPlan:
    """Delays to run for one scenario.

    Parameters
    ----------
    scenario : Scenario
        Scenario label carried on each result.
    delays_ms : tuple[int, ...]
        Write-to-termination delay of each trial, in milliseconds.
    pause_between : float
        Extra seconds slept before every trial but the first.

    Examples
    --------
    >>> ScenarioPlan(Scenario.rapid_sequential, (0, 0, 0), pause_between=0.5)
    """

    scenario: Scenario
    delays_ms: tuple[int, ...]
    pause_between: float = 0.0


DEFAULT_PLANS: tuple[ScenarioPlan, ...] = (
    ScenarioPlan(Scenario.immediate, (0,)),
    ScenarioPlan(Scenario.during_replication, (50, 100, 200)),
    ScenarioPlan(Scenario.precision_timed, (10, 25, 75)),
    ScenarioPlan(Scenario.rapid_sequential, (0, 0, 0), pause_between=0.5),
)


@dataclass(frozen=True)
class TrialResult:
    """Everything observed during one trial.

    Built up phase by phase with ``dataclasses.replace``; the last value is
    final.  ``phase`` is the furthest phase reached, which locates the
    failure of an incomplete or abandoned trial.
    """

    trial_id: str
    scenario: Scenario
    read_mode: ReadMode
    delay_ms: int
    target_key: str
    target_value: str
    partition_id: int
    phase: TrialPhase = TrialPhase.capturing_leader
    outcome: TrialOutcome = TrialOutcome.incomplete
    started_at: float = 0.0
    finished_at: float | None = None
    write_record: OperationRecord | None = None
    leader_before: LeaderInfo | None = None
    termination_time: float | None = None
    leader_after: LeaderInfo | None = None
    recovery_duration: float | None = None
    immediate_read_record: OperationRecord | None = None
    immediate_verdict: ConsistencyVerdict | None = None
    verification_read_record: OperationRecord | None = None
    verdict: ConsistencyVerdict | None = None
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def passed(self) -> bool:
        return self.outcome is TrialOutcome.passed

    def to_dict(self) -> dict[str, Any]:
        def _opt(value: Any) -> Any:
            return value.to_dict() if value is not None else None

        return {
            "trial_id": self.trial_id,
            "scenario": self.scenario.value,
            "read_mode": self.read_mode.value,
            "delay_ms": self.delay_ms,
            "target_key": self.target_key,
            "target_value": self.target_value,
            "partition_id": self.partition_id,
            "phase": self.phase.name,
            "outcome": self.outcome.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "write": _opt(self.write_record),
            "leader_before": _opt(self.leader_before),
            "termination_time": self.termination_time,
            "leader_after": _opt(self.leader_after),
            "recovery_duration": self.recovery_duration,
            "immediate_read": _opt(self.immediate_read_record),
            "immediate_verdict": _opt(self.immediate_verdict),
            "verification_read": _opt(self.verification_read_record),
            "verdict": _opt(self.verdict),
            "error": self.error,
        }


class TrialRunner:
    """Runs failover trials and hands each result to *sink*.

    Parameters
    ----------
    driver : WorkloadDriver
        Issues the trial's write and reads.
    injector : FailureInjector
        Terminates the captured leader.
    detector : RecoveryDetector
        Finds the Ready leader before the trial and waits for recovery after.
    mapper : PartitionMapper
        Maps the trial key to its partition.
    sink : Callable[[TrialResult], None] | None
        Receives every finished, incomplete or abandoned result.
    immediate_read_timeout : float
        Bound on the read taken before recovery is confirmed.
    verification_read_timeout : float
        Bound on the post-recovery read.
    post_recovery_wait : float
        Seconds slept between recovery and the verification read.
    between_trials, between_modes, between_scenarios : float
        Pauses used by ``run_plans``.
    """

    def __init__(
        self,
        driver: WorkloadDriver,
        injector: FailureInjector,
        detector: RecoveryDetector,
        mapper: PartitionMapper,
        *,
        sink: Callable[[TrialResult], None] | None = None,
        immediate_read_timeout: float = 5.0,
        verification_read_timeout: float = 10.0,
        post_recovery_wait: float = 1.0,
        between_trials: float = 2.0,
        between_modes: float = 3.0,
        between_scenarios: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._driver = driver
        self._injector = injector
        self._detector = detector
        self._mapper = mapper
        self._sink = sink
        self._immediate_read_timeout = immediate_read_timeout
        self._verification_read_timeout = verification_read_timeout
        self._post_recovery_wait = post_recovery_wait
        self._between_trials = between_trials
        self._between_modes = between_modes
        self._between_scenarios = between_scenarios
        self._clock = clock
        self._ids = {mode: itertools.count(1) for mode in ReadMode}

    def _next_trial_id(self, read_mode: ReadMode) -> str:
        n = next(self._ids[read_mode])
        if read_mode is ReadMode.immediate:
            return f"imm-test-{n:06d}"
        return f"test-{n:06d}"

    def _emit(self, result: TrialResult) -> TrialResult:
        if self._sink is not None:
            self._sink(result)
        return result

    def _finish(self, result: TrialResult) -> TrialResult:
        if result.outcome is TrialOutcome.violation:
            logger.error(
                "TRIAL_RESULT: %s - Outcome: violation, Error: %s", result.trial_id, result.error
            )
        else:
            logger.info(
                "TRIAL_RESULT: %s - Outcome: %s, Error: %s",
                result.trial_id,
                result.outcome.value,
                result.error,
            )
        return self._emit(result)

    async def run_trial(
        self,
        scenario: Scenario,
        read_mode: ReadMode,
        delay_ms: int,
        *,
        trial_id: str | None = None,
    ) -> TrialResult:
        """Run one trial; always returns a result unless cancelled.

        Raises
        ------
        asyncio.CancelledError
            Re-raised after the in-flight trial is recorded as abandoned.
        """
        trial_id = trial_id or self._next_trial_id(read_mode)
        prefix = "immediate" if read_mode is ReadMode.immediate else "precision"
        key = f"{prefix}-key-{trial_id}"
        value = f"{prefix}-value-{trial_id}-{time.time_ns()}"
        result = TrialResult(
            trial_id=trial_id,
            scenario=scenario,
            read_mode=read_mode,
            delay_ms=delay_ms,
            target_key=key,
            target_value=value,
            partition_id=self._mapper(key),
            started_at=self._clock(),
        )
        logger.info(
            "TRIAL_START: %s, Scenario: %s, Mode: %s, Delay: %dms",
            trial_id,
            scenario.value,
            read_mode.value,
            delay_ms,
        )

        try:
            result = dataclasses.replace(result, phase=TrialPhase.capturing_leader)
            leader = await self._detector.wait_for_ready_leader(result.partition_id)
            result = dataclasses.replace(
                result, leader_before=leader, phase=TrialPhase.writing
            )

            logger.info(
                "TRIAL_WRITE: %s -> %s (partition %d, leader %s)",
                key,
                value,
                result.partition_id,
                leader.replica,
            )
            write = await self._driver.write(key, value)
            result = dataclasses.replace(result, write_record=write)
            if not write.success:
                result = dataclasses.replace(
                    result, error=f"write failed: {write.error}", finished_at=self._clock()
                )
                return self._finish(result)
            logger.info("WRITE_COMPLETE: %s (duration: %.3fs)", trial_id, write.latency)

            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000.0)

            result = dataclasses.replace(result, phase=TrialPhase.injecting)
            self._injector.confirm_current(leader)
            termination_time = self._clock()
            await self._injector.terminate_leader(leader)
            result = dataclasses.replace(result, termination_time=termination_time)

            if read_mode is ReadMode.immediate:
                result = dataclasses.replace(result, phase=TrialPhase.immediate_read)
                immediate = await self._driver.read(key, timeout=self._immediate_read_timeout)
                immediate_verdict = check_immediate_read(write, immediate)
                result = dataclasses.replace(
                    result,
                    immediate_read_record=immediate,
                    immediate_verdict=immediate_verdict,
                )
                logger.info(
                    "IMMEDIATE_READ_%s: %s - %s",
                    "SUCCESS" if immediate_verdict.passed else "FAILED",
                    trial_id,
                    immediate_verdict.detail,
                )

            result = dataclasses.replace(result, phase=TrialPhase.recovering)
            leader_after = await self._detector.wait_for_recovery(
                result.partition_id, leader.term
            )
            recovery_duration = self._clock() - termination_time
            result = dataclasses.replace(
                result, leader_after=leader_after, recovery_duration=recovery_duration
            )
            logger.info("LEADER_RECOVERY: %s (duration: %.3fs)", trial_id, recovery_duration)

            result = dataclasses.replace(result, phase=TrialPhase.verifying)
            await asyncio.sleep(self._post_recovery_wait)
            verification = await self._driver.read(
                key, timeout=self._verification_read_timeout
            )
            verdict = check_failover_durability(write, verification)
            if verdict.passed:
                outcome, error = TrialOutcome.passed, None
            elif verification.success:
                outcome, error = TrialOutcome.violation, verdict.detail
            else:
                outcome, error = TrialOutcome.incomplete, verdict.detail
            result = dataclasses.replace(
                result,
                phase=TrialPhase.finished,
                verification_read_record=verification,
                verdict=verdict,
                outcome=outcome,
                error=error,
                finished_at=self._clock(),
            )
        except asyncio.CancelledError:
            result = dataclasses.replace(
                result,
                outcome=TrialOutcome.abandoned,
                finished_at=self._clock(),
                error="cancelled",
            )
            logger.warning("TRIAL_ABANDONED: %s during %s", trial_id, result.phase.name)
            self._emit(result)
            raise
        except (InjectionError, RecoveryTimeoutError) as exc:
            result = dataclasses.replace(
                result,
                outcome=TrialOutcome.incomplete,
                finished_at=self._clock(),
                error=str(exc),
            )

        return self._finish(result)

    async def run_plans(
        self,
        plans: Sequence[ScenarioPlan] = DEFAULT_PLANS,
        read_modes: Sequence[ReadMode] = (ReadMode.post_recovery,),
    ) -> list[TrialResult]:
        """Run every delay of every plan once per read mode, in order.

        With several read modes each delay is run in every mode before moving
        on to the next delay, pausing ``between_modes`` in between.
        """
        results: list[TrialResult] = []
        for plan in plans:
            logger.info("SCENARIO_START: %s", plan.scenario.value)
            for i, delay_ms in enumerate(plan.delays_ms):
                if i > 0 and plan.pause_between > 0:
                    await asyncio.sleep(plan.pause_between)
                for j, read_mode in enumerate(read_modes):
                    if j > 0:
                        await asyncio.sleep(self._between_modes)
                    results.append(await self.run_trial(plan.scenario, read_mode, delay_ms))
                await asyncio.sleep(self._between_trials)
            logger.info("SCENARIO_COMPLETE: %s", plan.scenario.value)
            await asyncio.sleep(self._between_scenarios)
        return results
