"""Error taxonomy for the failover harness.

Component-local errors (``LeaderQueryError``, ``TransientStoreError``) are
absorbed where they happen and turned into records.  Trial-level errors
(``InjectionError`` subclasses, ``RecoveryTimeoutError``) abort a single trial
and mark it incomplete.  Only ``ConfigurationError`` is fatal to the process.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kvprobe.leader import LeaderInfo
    from kvprobe.verify import ConsistencyVerdict


__all__ = [
    "ConfigurationError",
    "HarnessError",
    "InjectionError",
    "LeaderChangedError",
    "LeaderQueryError",
    "NoLeaderError",
    "RecoveryTimeoutError",
    "TerminationFailedError",
    "TransientStoreError",
    "VerificationMismatchError",
]


class HarnessError(Exception):
    """Base class for every error raised by kvprobe."""


class ConfigurationError(HarnessError):
    """Invalid or unusable configuration detected at startup."""


class TransientStoreError(HarnessError):
    """A store call timed out or failed at the transport level.

    Recorded on the ``OperationRecord`` of the call; never aborts a trial
    by itself.
    """


class LeaderQueryError(HarnessError):
    """The platform's leadership query failed as a whole."""


class InjectionError(HarnessError):
    """Failure injection could not proceed for a trial."""


class NoLeaderError(InjectionError):
    """The captured leader snapshot carries no replica identity.

    Parameters
    ----------
    partition_id : int
        Partition whose snapshot had no leader.
    """

    def __init__(self, partition_id: int) -> None:
        self.partition_id = partition_id
        super().__init__(f"no leader replica recorded for partition {partition_id}")


class TerminationFailedError(InjectionError):
    """The platform rejected or failed the termination request.

    Parameters
    ----------
    replica : str
        Replica identity that was targeted.
    cause : BaseException
        The underlying platform error.
    """

    def __init__(self, replica: str, cause: BaseException) -> None:
        self.replica = replica
        self.cause = cause
        super().__init__(f"failed to terminate replica {replica}: {cause}")


class LeaderChangedError(InjectionError):
    """Leadership moved between capturing a snapshot and acting on it.

    Parameters
    ----------
    expected : LeaderInfo
        The snapshot the caller intended to terminate.
    current : LeaderInfo | None
        What the tracker holds now.
    """

    def __init__(self, expected: LeaderInfo, current: LeaderInfo | None) -> None:
        self.expected = expected
        self.current = current
        now = (
            f"{current.replica or '<none>'} (term {current.term})"
            if current is not None
            else "<unknown>"
        )
        super().__init__(
            f"leader of partition {expected.partition_id} changed from "
            f"{expected.replica} (term {expected.term}) to {now}"
        )


class RecoveryTimeoutError(HarnessError):
    """No stable leader appeared before the recovery deadline.

    Parameters
    ----------
    partition_id : int
        Partition being watched.
    elapsed : float
        Seconds spent waiting.
    """

    def __init__(self, partition_id: int, elapsed: float) -> None:
        self.partition_id = partition_id
        self.elapsed = elapsed
        super().__init__(
            f"timeout waiting for leader on partition {partition_id} "
            f"after {elapsed:.1f}s"
        )


class VerificationMismatchError(HarnessError):
    """Raised on request by ``ConsistencyVerdict.raise_for_failure``.

    Verifiers return verdicts; this exists for callers (scripts, tests) that
    prefer an exception for a failed guarantee.
    """

    def __init__(self, verdict: ConsistencyVerdict) -> None:
        self.verdict = verdict
        super().__init__(f"{verdict.guarantee.value} violated: {verdict.detail}")
