"""Deterministic key to partition assignment."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from kvprobe.errors import ConfigurationError


def partition_of(key: str, partition_count: int) -> int:
    """Map *key* to a partition id, consistent across processes.

    The first byte of the SHA-256 digest of the UTF-8 key, modulo the
    partition count.

    Parameters
    ----------
    key : str
        Store key.
    partition_count : int
        Number of partitions in the store.

    Returns
    -------
    int
        Partition id in ``[0, partition_count)``.

    Examples
    --------
    >>> partition_of("connectivity-test", 3) == partition_of("connectivity-test", 3)
    True
    """
    digest = hashlib.sha256(key.encode()).digest()
    return digest[0] % partition_count


@dataclass(frozen=True)
class PartitionMapper:
    """``partition_of`` bound to the partition count of one run.

    Parameters
    ----------
    partition_count : int
        Number of partitions; fixed for the lifetime of the harness.

    Examples
    --------
    >>> mapper = PartitionMapper(3)
    >>> mapper("precision-key-test-000001") in range(3)
    True
    """

    partition_count: int

    def __post_init__(self) -> None:
        if self.partition_count <= 0:
            msg = f"partition_count must be positive, got {self.partition_count}"
            raise ConfigurationError(msg)

    def __call__(self, key: str) -> int:
        return partition_of(key, self.partition_count)

    @property
    def partitions(self) -> range:
        return range(self.partition_count)
