from __future__ import annotations

import asyncio
from typing import Any

import pytest

from kvprobe.injector import FailureInjector
from kvprobe.leader import LeaderTracker
from kvprobe.partition import PartitionMapper
from kvprobe.recovery import RecoveryDetector
from kvprobe.trial import (
    DEFAULT_PLANS,
    ReadMode,
    Scenario,
    ScenarioPlan,
    TrialOutcome,
    TrialPhase,
    TrialResult,
    TrialRunner,
)
from kvprobe.verify import ReadAvailability
from kvprobe.workload import WorkloadDriver


def build_runner(
    store: Any, platform: Any, tracker: LeaderTracker, *, recovery_timeout: float = 1.0
) -> tuple[TrialRunner, list[TrialResult]]:
    results: list[TrialResult] = []
    detector = RecoveryDetector(
        tracker,
        poll_interval=0.01,
        settle_interval=0.01,
        timeout=recovery_timeout,
        ready_timeout=1.0,
    )
    runner = TrialRunner(
        WorkloadDriver(store, operation_timeout=1.0),
        FailureInjector(platform, tracker),
        detector,
        PartitionMapper(3),
        sink=results.append,
        immediate_read_timeout=0.05,
        verification_read_timeout=0.5,
        post_recovery_wait=0.0,
        between_trials=0.0,
        between_modes=0.0,
        between_scenarios=0.0,
    )
    return runner, results


def test_default_plans() -> None:
    assert [p.scenario for p in DEFAULT_PLANS] == list(Scenario)
    delays = {p.scenario: p.delays_ms for p in DEFAULT_PLANS}
    assert delays[Scenario.immediate] == (0,)
    assert delays[Scenario.during_replication] == (50, 100, 200)
    assert delays[Scenario.precision_timed] == (10, 25, 75)
    assert delays[Scenario.rapid_sequential] == (0, 0, 0)


# ---------------------------------------------------------------------------
# Single trials
# ---------------------------------------------------------------------------


class TestRunTrial:
    async def test_value_survives_failover(self, store, platform, tracker) -> None:
        runner, results = build_runner(store, platform, tracker)
        result = await runner.run_trial(Scenario.immediate, ReadMode.post_recovery, 0)

        assert result.outcome is TrialOutcome.passed
        assert result.passed
        assert result.phase is TrialPhase.finished
        assert result.trial_id == "test-000001"
        assert result.target_key == "precision-key-test-000001"
        assert result.target_value.startswith("precision-value-test-000001-")
        assert result.partition_id == PartitionMapper(3)(result.target_key)
        assert result.leader_before is not None
        assert result.leader_after is not None
        assert result.leader_after.term > result.leader_before.term
        assert platform.terminated == [result.leader_before.replica]
        assert result.recovery_duration is not None
        assert result.verdict is not None and result.verdict.passed
        assert result.immediate_read_record is None
        assert store.data[result.target_key] == result.target_value
        assert results == [result]

    async def test_immediate_read_unavailable_then_durable(
        self, store, platform, tracker
    ) -> None:
        runner, _ = build_runner(store, platform, tracker)
        store.get_delays = [1.0]
        result = await runner.run_trial(Scenario.precision_timed, ReadMode.immediate, 10)

        assert result.trial_id == "imm-test-000001"
        assert result.target_key.startswith("immediate-key-")
        assert result.immediate_verdict is not None
        assert result.immediate_verdict.availability is ReadAvailability.unavailable
        assert result.verdict is not None and result.verdict.passed
        assert result.outcome is TrialOutcome.passed

    async def test_lost_value_is_violation(
        self, store, platform, tracker, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        terminate = platform.terminate

        async def terminate_and_lose(replica: str) -> None:
            store.data.clear()
            await terminate(replica)

        monkeypatch.setattr(platform, "terminate", terminate_and_lose)
        runner, results = build_runner(store, platform, tracker)
        result = await runner.run_trial(Scenario.during_replication, ReadMode.post_recovery, 0)

        assert result.outcome is TrialOutcome.violation
        assert result.verdict is not None and not result.verdict.passed
        assert "not found after failover" in (result.error or "")
        assert results[0].outcome is TrialOutcome.violation

    async def test_recovery_timeout_is_incomplete(self, store, platform, tracker) -> None:
        platform.auto_elect = False
        runner, _ = build_runner(store, platform, tracker, recovery_timeout=0.1)
        result = await runner.run_trial(Scenario.immediate, ReadMode.post_recovery, 0)

        assert result.outcome is TrialOutcome.incomplete
        assert result.phase is TrialPhase.recovering
        assert result.verdict is None
        assert "timeout waiting for leader" in (result.error or "")
        assert result.finished_at is not None

    async def test_write_failure_aborts_before_kill(self, store, platform, tracker) -> None:
        store.fail_puts = 1
        runner, results = build_runner(store, platform, tracker)
        result = await runner.run_trial(Scenario.immediate, ReadMode.post_recovery, 0)

        assert result.outcome is TrialOutcome.incomplete
        assert (result.error or "").startswith("write failed:")
        assert result.write_record is not None and not result.write_record.success
        assert platform.terminated == []
        assert len(results) == 1

    async def test_termination_failure_is_incomplete(self, store, platform, tracker) -> None:
        platform.terminate_error = RuntimeError("pods is forbidden")
        runner, _ = build_runner(store, platform, tracker)
        result = await runner.run_trial(Scenario.immediate, ReadMode.post_recovery, 0)

        assert result.outcome is TrialOutcome.incomplete
        assert result.phase is TrialPhase.injecting
        assert "failed to terminate" in (result.error or "")

    async def test_failed_verification_read_is_incomplete(
        self, store, platform, tracker
    ) -> None:
        store.fail_gets = 1
        runner, _ = build_runner(store, platform, tracker)
        result = await runner.run_trial(Scenario.immediate, ReadMode.post_recovery, 0)

        assert result.outcome is TrialOutcome.incomplete
        assert result.verdict is not None and not result.verdict.passed
        assert result.verification_read_record is not None
        assert not result.verification_read_record.success

    async def test_cancelled_trial_is_abandoned(self, store, platform, tracker) -> None:
        platform.auto_elect = False
        runner, results = build_runner(store, platform, tracker, recovery_timeout=30.0)
        task = asyncio.create_task(
            runner.run_trial(Scenario.immediate, ReadMode.post_recovery, 0)
        )
        while not platform.terminated:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(results) == 1
        assert results[0].outcome is TrialOutcome.abandoned
        assert results[0].phase is TrialPhase.recovering

    async def test_explicit_trial_id(self, store, platform, tracker) -> None:
        runner, _ = build_runner(store, platform, tracker)
        result = await runner.run_trial(
            Scenario.immediate, ReadMode.post_recovery, 0, trial_id="custom-1"
        )
        assert result.target_key == "precision-key-custom-1"

    async def test_to_dict(self, store, platform, tracker) -> None:
        runner, _ = build_runner(store, platform, tracker)
        data = (await runner.run_trial(Scenario.immediate, ReadMode.post_recovery, 0)).to_dict()
        assert data["scenario"] == "Immediate Failure"
        assert data["read_mode"] == "Post-Recovery"
        assert data["outcome"] == "passed"
        assert data["phase"] == "finished"
        assert data["verdict"]["guarantee"] == "Failover Durability"


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestRunPlans:
    async def test_every_delay_in_every_mode(self, store, platform, tracker) -> None:
        runner, results = build_runner(store, platform, tracker)
        plans = (
            ScenarioPlan(Scenario.immediate, (0,)),
            ScenarioPlan(Scenario.rapid_sequential, (0, 0), pause_between=0.01),
        )
        returned = await runner.run_plans(plans, (ReadMode.immediate, ReadMode.post_recovery))

        assert returned == results
        assert [(r.scenario, r.read_mode) for r in returned] == [
            (Scenario.immediate, ReadMode.immediate),
            (Scenario.immediate, ReadMode.post_recovery),
            (Scenario.rapid_sequential, ReadMode.immediate),
            (Scenario.rapid_sequential, ReadMode.post_recovery),
            (Scenario.rapid_sequential, ReadMode.immediate),
            (Scenario.rapid_sequential, ReadMode.post_recovery),
        ]
        assert [r.trial_id for r in returned if r.read_mode is ReadMode.immediate] == [
            "imm-test-000001",
            "imm-test-000002",
            "imm-test-000003",
        ]
        assert all(r.passed for r in returned)
        assert len(platform.terminated) == 6
