"""Cluster platform collaborator: leadership queries and forceful termination.

``ClusterPlatform`` is the protocol the tracker and injector depend on.
``KubernetesPlatform`` implements it against the Kubernetes API: leadership
comes from the store's ``RaftGroup`` custom resources and termination deletes
the hosting pod with a zero grace period.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

import httpx

from kvprobe.errors import ConfigurationError, LeaderQueryError
from kvprobe.internal.retry import retry
from kvprobe.leader import replica_ordinal

__all__ = [
    "ClusterPlatform",
    "KubernetesPlatform",
    "PartitionStatus",
    "pod_for_replica",
]

logger = logging.getLogger("kvprobe.platform")

type PartitionStatus = Mapping[str, Any]

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
RAFT_GROUPS_PATH = "/apis/consensus.atomix.io/v1beta1/namespaces/{namespace}/raftgroups"
POD_PATH = "/api/v1/namespaces/{namespace}/pods/{pod}"


class ClusterPlatform(Protocol):
    """What the harness needs from the platform hosting the replicas.

    ``leadership()`` returns one record per partition with the keys
    ``partition`` (int), ``leader`` (replica identity or ``None``), ``term``
    and ``state``.  It raises ``LeaderQueryError`` when the query as a whole
    fails.  ``terminate()`` forcefully kills the process hosting *replica*.
    """

    async def leadership(self) -> list[PartitionStatus]: ...

    async def terminate(self, replica: str) -> None: ...


def pod_for_replica(replica: str, *, pod_prefix: str, replica_offset: int) -> str:
    """Name of the pod hosting *replica*.

    Replica ordinals are shifted by *replica_offset* relative to pod ordinals
    in topologies where a load-balancing sidecar takes the first slot.

    Examples
    --------
    >>> pod_for_replica("consensus-store-1-2", pod_prefix="consensus-store", replica_offset=1)
    'consensus-store-1'
    """
    ordinal = replica_ordinal(replica)
    if ordinal < 0:
        msg = f"replica name {replica!r} carries no ordinal"
        raise ValueError(msg)
    pod_ordinal = ordinal - replica_offset
    if pod_ordinal < 0:
        msg = f"replica {replica!r} maps to negative pod ordinal {pod_ordinal}"
        raise ValueError(msg)
    return f"{pod_prefix}-{pod_ordinal}"


def group_partition(group_name: str, *, index_base: int) -> int | None:
    """Partition id encoded in a ``RaftGroup`` name such as ``consensus-store-1``."""
    _, _, suffix = group_name.rpartition("-")
    if not suffix.isdigit():
        return None
    return int(suffix) - index_base


class KubernetesPlatform:
    """``ClusterPlatform`` backed by the Kubernetes REST API.

    Parameters
    ----------
    api_url : str
        Base URL of the API server.
    namespace : str
        Namespace holding the store's pods and raft groups.
    store_name : str
        Store name; used as the pod name prefix and in the label selector.
    token : str | None
        Bearer token for the API server.
    verify : str | bool
        CA bundle path or ``False`` to skip TLS verification.
    replica_offset : int
        Replica ordinal minus pod ordinal (see ``pod_for_replica``).
    group_index_base : int
        Number of the first raft group (``consensus-store-1`` -> partition 0
        with the default base of 1).
    timeout : float
        Per-request timeout in seconds.
    client : httpx.AsyncClient | None
        Pre-built client, mainly for tests.
    """

    def __init__(
        self,
        *,
        api_url: str,
        namespace: str = "default",
        store_name: str = "consensus-store",
        token: str | None = None,
        verify: str | bool = True,
        replica_offset: int = 1,
        group_index_base: int = 1,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._namespace = namespace
        self._store_name = store_name
        self._replica_offset = replica_offset
        self._group_index_base = group_index_base
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=api_url, headers=headers, verify=verify, timeout=timeout
        )

    @classmethod
    def in_cluster(
        cls,
        *,
        namespace: str | None = None,
        service_account_dir: Path = SERVICE_ACCOUNT_DIR,
        **kwargs: Any,
    ) -> KubernetesPlatform:
        """Build a platform from the pod's service account, like ``rest.InClusterConfig``.

        Raises
        ------
        ConfigurationError
            If not running inside a cluster.
        """
        host = os.environ.get("KUBERNETES_SERVICE_HOST")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
        token_file = service_account_dir / "token"
        if not host or not token_file.is_file():
            msg = "not running inside a Kubernetes cluster (no service host or token)"
            raise ConfigurationError(msg)

        ca_file = service_account_dir / "ca.crt"
        if namespace is None:
            ns_file = service_account_dir / "namespace"
            namespace = ns_file.read_text().strip() if ns_file.is_file() else "default"

        return cls(
            api_url=f"https://{host}:{port}",
            namespace=namespace,
            token=token_file.read_text().strip(),
            verify=str(ca_file) if ca_file.is_file() else True,
            **kwargs,
        )

    @property
    def label_selector(self) -> str:
        return f"atomix.io/store={self._store_name}"

    def pod_for(self, replica: str) -> str:
        return pod_for_replica(
            replica, pod_prefix=self._store_name, replica_offset=self._replica_offset
        )

    async def leadership(self) -> list[PartitionStatus]:
        try:
            items = await self._list_raft_groups()
        except httpx.HTTPError as exc:
            msg = f"failed to list RaftGroups: {exc}"
            raise LeaderQueryError(msg) from exc

        records: list[PartitionStatus] = []
        for item in items:
            name = _mapping(_mapping(item).get("metadata")).get("name")
            if not isinstance(name, str):
                logger.warning("LEADER_ERROR: skipping RaftGroup without a name: %r", item)
                continue
            partition = group_partition(name, index_base=self._group_index_base)
            if partition is None:
                logger.warning("LEADER_ERROR: cannot parse partition from group %r", name)
                continue

            status = _mapping(item.get("status"))
            leader = _mapping(status.get("leader"))
            records.append(
                {
                    "partition": partition,
                    "leader": leader.get("name"),
                    "term": status.get("term"),
                    "state": status.get("state"),
                }
            )
        return records

    @retry(max_retries=2, delay=0.2, on=(httpx.TransportError,))
    async def _list_raft_groups(self) -> list[dict[str, Any]]:
        response = await self._client.get(
            RAFT_GROUPS_PATH.format(namespace=self._namespace),
            params={"labelSelector": self.label_selector},
        )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as exc:
            msg = f"failed to list RaftGroups: response is not JSON ({exc})"
            raise LeaderQueryError(msg) from exc
        items = body.get("items", []) if isinstance(body, Mapping) else None
        if not isinstance(items, list):
            msg = f"failed to list RaftGroups: malformed response {body!r}"
            raise LeaderQueryError(msg)
        return items

    async def terminate(self, replica: str) -> None:
        pod = self.pod_for(replica)
        logger.debug("deleting pod %s (replica %s) with zero grace period", pod, replica)
        response = await self._client.delete(
            POD_PATH.format(namespace=self._namespace, pod=pod),
            params={"gracePeriodSeconds": 0},
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> KubernetesPlatform:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _mapping(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}
