from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest

from kvprobe.errors import ConfigurationError, LeaderQueryError
from kvprobe.leader import LeaderTracker
from kvprobe.platform import KubernetesPlatform, group_partition, pod_for_replica


def raft_group(name: str, leader: str | None, term: int, state: str = "Ready") -> dict[str, Any]:
    status: dict[str, Any] = {"term": term, "state": state}
    if leader is not None:
        status["leader"] = {"name": leader}
    return {"metadata": {"name": name}, "status": status}


def make_platform(handler: Any, **kwargs: Any) -> KubernetesPlatform:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://k8s.test"
    )
    return KubernetesPlatform(
        api_url="https://k8s.test", namespace="kube-system", client=client, **kwargs
    )


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


class TestPodForReplica:
    def test_offset(self) -> None:
        assert (
            pod_for_replica("consensus-store-1-2", pod_prefix="consensus-store", replica_offset=1)
            == "consensus-store-1"
        )

    def test_no_offset(self) -> None:
        assert (
            pod_for_replica("consensus-store-1-2", pod_prefix="consensus-store", replica_offset=0)
            == "consensus-store-2"
        )

    def test_missing_ordinal(self) -> None:
        with pytest.raises(ValueError, match="no ordinal"):
            pod_for_replica("leader", pod_prefix="consensus-store", replica_offset=1)

    def test_negative_pod_ordinal(self) -> None:
        with pytest.raises(ValueError, match="negative"):
            pod_for_replica("consensus-store-1-0", pod_prefix="consensus-store", replica_offset=1)


def test_group_partition() -> None:
    assert group_partition("consensus-store-1", index_base=1) == 0
    assert group_partition("consensus-store-3", index_base=1) == 2
    assert group_partition("consensus-store-0", index_base=0) == 0
    assert group_partition("consensus-store", index_base=1) is None


# ---------------------------------------------------------------------------
# Leadership query
# ---------------------------------------------------------------------------


class TestLeadership:
    async def test_lists_raft_groups_with_label_selector(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [
                        raft_group("consensus-store-1", "consensus-store-1-2", 3),
                        raft_group("consensus-store-2", None, 1, "Candidate"),
                    ]
                },
            )

        async with make_platform(handler) as platform:
            records = await platform.leadership()

        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == (
            "/apis/consensus.atomix.io/v1beta1/namespaces/kube-system/raftgroups"
        )
        assert request.url.params["labelSelector"] == "atomix.io/store=consensus-store"
        assert records == [
            {"partition": 0, "leader": "consensus-store-1-2", "term": 3, "state": "Ready"},
            {"partition": 1, "leader": None, "term": 1, "state": "Candidate"},
        ]

    async def test_unparseable_group_name_skipped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        raft_group("consensus-store", "consensus-store-1-1", 1),
                        raft_group("consensus-store-2", "consensus-store-2-1", 1),
                    ]
                },
            )

        async with make_platform(handler) as platform:
            records = await platform.leadership()
        assert [r["partition"] for r in records] == [1]

    async def test_http_error_raises_leader_query_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"message": "forbidden"})

        async with make_platform(handler) as platform:
            with pytest.raises(LeaderQueryError, match="RaftGroups"):
                await platform.leadership()

    async def test_transport_error_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"items": []})

        async with make_platform(handler) as platform:
            assert await platform.leadership() == []
        assert calls == 2

    async def test_non_json_reply_raises_leader_query_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>proxy error</html>")

        async with make_platform(handler) as platform:
            with pytest.raises(LeaderQueryError, match="not JSON"):
                await platform.leadership()

    @pytest.mark.parametrize("body", [[1, 2], {"items": "none"}])
    async def test_malformed_list_raises_leader_query_error(self, body: Any) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=body)

        async with make_platform(handler) as platform:
            with pytest.raises(LeaderQueryError, match="malformed"):
                await platform.leadership()

    async def test_malformed_items_are_skipped_or_degraded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            items = [
                "garbage",
                {"metadata": "consensus-store-1"},
                {"metadata": {"name": "consensus-store-2"}, "status": ["Ready"]},
                raft_group("consensus-store-3", "consensus-store-3-1", 4),
            ]
            return httpx.Response(200, json={"items": items})

        async with make_platform(handler) as platform:
            records = await platform.leadership()
        assert records == [
            {"partition": 1, "leader": None, "term": None, "state": None},
            {"partition": 2, "leader": "consensus-store-3-1", "term": 4, "state": "Ready"},
        ]

    async def test_tracker_keeps_polling_after_non_json_reply(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(200, content=b"OK")
            return httpx.Response(
                200, json={"items": [raft_group("consensus-store-1", "consensus-store-1-2", 2)]}
            )

        async with make_platform(handler) as platform:
            tracker = LeaderTracker(platform, partition_count=1, poll_interval=0.01)
            stop = asyncio.Event()
            task = asyncio.create_task(tracker.run(stop))
            async with asyncio.timeout(1.0):
                while tracker.refresh_count == 0:
                    await asyncio.sleep(0.01)
            stop.set()
            await task

        leader = tracker.current_leader(0)
        assert leader is not None
        assert leader.replica == "consensus-store-1-2"


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


class TestTerminate:
    async def test_deletes_pod_with_zero_grace_period(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"kind": "Pod"})

        async with make_platform(handler) as platform:
            await platform.terminate("consensus-store-2-3")

        request = seen[0]
        assert request.method == "DELETE"
        assert request.url.path == "/api/v1/namespaces/kube-system/pods/consensus-store-2"
        assert request.url.params["gracePeriodSeconds"] == "0"

    async def test_failed_delete_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"reason": "NotFound"})

        async with make_platform(handler) as platform:
            with pytest.raises(httpx.HTTPStatusError):
                await platform.terminate("consensus-store-1-1")


class TestInCluster:
    def test_outside_cluster(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
        with pytest.raises(ConfigurationError, match="inside a Kubernetes cluster"):
            KubernetesPlatform.in_cluster(service_account_dir=tmp_path)

    async def test_reads_service_account(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
        monkeypatch.setenv("KUBERNETES_SERVICE_PORT", "6443")
        (tmp_path / "token").write_text("secret-token\n")
        (tmp_path / "namespace").write_text("storage\n")

        platform = KubernetesPlatform.in_cluster(service_account_dir=tmp_path)
        try:
            assert platform._namespace == "storage"
            assert str(platform._client.base_url).startswith("https://10.0.0.1:6443")
            assert platform._client.headers["Authorization"] == "Bearer secret-token"
        finally:
            await platform.aclose()
