from __future__ import annotations

from kvprobe.concurrency import BatchOutcome, ConcurrencyTester
from kvprobe.verify import Guarantee
from kvprobe.workload import WorkloadDriver


def make_tester(store, **kwargs) -> ConcurrencyTester:
    return ConcurrencyTester(WorkloadDriver(store), settle=0.0, **kwargs)


class TestLinearizability:
    async def test_final_value_is_a_last_write(self, store) -> None:
        result = await make_tester(store).linearizability()

        assert result.name == "linearizability"
        assert result.passed
        assert result.batch.key == "shared-linearizability-key"
        assert len(result.batch.writes) == 15
        assert result.final_read is not None
        assert result.final_read.value in {f"client-{i}-seq-5" for i in range(1, 4)}
        assert result.verdicts[0].guarantee is Guarantee.linearizability

    async def test_store_reverting_value_fails(self, store) -> None:
        tester = make_tester(store, clients=2, operations_per_client=3)
        original_get = store.get

        async def stale_get(key: str) -> str | None:
            await original_get(key)
            return "client-1-seq-1"

        store.get = stale_get
        result = await tester.linearizability()
        assert not result.passed
        assert result.outcome is BatchOutcome.violation
        assert result.verdicts[0].superseded_client == "client-1"

    async def test_final_read_timeout_is_incomplete(self, store) -> None:
        tester = ConcurrencyTester(
            WorkloadDriver(store, operation_timeout=0.05),
            clients=2,
            operations_per_client=2,
            settle=0.0,
        )
        store.get_delays = [1.0]
        result = await tester.linearizability()

        assert result.final_read is not None
        assert not result.final_read.success
        assert result.outcome is BatchOutcome.incomplete
        assert not result.passed
        assert result.to_dict()["outcome"] == "incomplete"


class TestWriteDurability:
    async def test_final_value_acknowledged(self, store) -> None:
        result = await make_tester(store, clients=2, operations_per_client=4).write_durability()

        assert result.passed
        verdict = result.verdicts[0]
        assert verdict.guarantee is Guarantee.no_lost_updates
        assert verdict.attempted == 8
        assert verdict.acknowledged == 8
        assert all(w.client_id.startswith("durability-client-") for w in result.batch.writes)
        assert all("-write-" in (w.value or "") for w in result.batch.writes)

    async def test_counts_failed_writes(self, store) -> None:
        store.fail_puts = 3
        result = await make_tester(store).write_durability()
        verdict = result.verdicts[0]
        assert verdict.attempted == 15
        assert verdict.acknowledged == 12
        assert result.passed

    async def test_failed_final_read_is_incomplete(self, store) -> None:
        tester = make_tester(store, clients=2, operations_per_client=2)
        original_get = store.get

        async def failing_get(key: str) -> str | None:
            store.fail_gets = 1
            return await original_get(key)

        store.get = failing_get
        result = await tester.write_durability()
        assert result.final_read is not None
        assert result.final_read.error is not None
        assert result.outcome is BatchOutcome.incomplete


class TestReadYourWrites:
    async def test_each_client_reads_its_own_write(self, store) -> None:
        result = await make_tester(store).read_your_writes()

        assert result.passed
        assert result.final_read is None
        assert result.verdicts[0].rate == 1.0
        assert len(result.batch.write_read_pairs()) == 15
        assert set(store.data) == {f"ryw-key-ryw-client-{i}" for i in range(1, 4)}

    async def test_failed_reads_are_incomplete(self, store) -> None:
        store.fail_gets = 2
        result = await make_tester(store).read_your_writes()
        assert not result.verdicts[0].passed
        assert result.outcome is BatchOutcome.incomplete

    async def test_wrong_value_is_a_violation(self, store) -> None:
        original_get = store.get

        async def stale_get(key: str) -> str | None:
            await original_get(key)
            return "someone-else"

        store.get = stale_get
        result = await make_tester(store, clients=1, operations_per_client=2).read_your_writes()
        assert result.outcome is BatchOutcome.violation


async def test_run_all(store) -> None:
    results = await make_tester(store, clients=2, operations_per_client=2).run_all()
    assert [r.name for r in results] == ["linearizability", "write-durability", "read-your-writes"]
    assert all(r.passed for r in results)
    data = results[0].to_dict()
    assert data["passed"] is True
    assert len(data["records"]) == 4
