"""Recovery detection after a leader termination.

``RecoveryDetector.wait_for_recovery`` walks an explicit state machine::

    waiting_for_new_term -> waiting_for_stability -> recovered
            ^                        |
            +------------------------+   (leadership churned during settle)

    any state -> timed_out               (overall deadline elapsed)

A single reading of a newer term is not accepted: the candidate must survive a
settle interval unchanged.  Each transition is published to subscribers; the
detection logic itself does not log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from kvprobe.errors import LeaderQueryError, RecoveryTimeoutError

if TYPE_CHECKING:
    from kvprobe.leader import LeaderInfo, LeaderTracker

__all__ = [
    "RecoveryDetector",
    "RecoveryPhase",
    "RecoveryTransition",
    "log_recovery_transition",
]

logger = logging.getLogger("kvprobe.recovery")


class RecoveryPhase(Enum):
    waiting_for_new_term = auto()
    waiting_for_stability = auto()
    recovered = auto()
    timed_out = auto()


@dataclass(frozen=True)
class RecoveryTransition:
    """One state change of a recovery wait.

    Parameters
    ----------
    partition_id : int
        Partition being watched.
    phase : RecoveryPhase
        Phase entered.
    leader : LeaderInfo | None
        Snapshot that caused the transition, if any.
    elapsed : float
        Seconds since the wait started.
    """

    partition_id: int
    phase: RecoveryPhase
    leader: LeaderInfo | None
    elapsed: float


class RecoveryDetector:
    """Polls a ``LeaderTracker`` until a strictly newer, stable leader appears.

    Parameters
    ----------
    tracker : LeaderTracker
        Tracker refreshed on every poll.
    poll_interval : float
        Seconds between polls while waiting for a new term.
    settle_interval : float
        Seconds a candidate leader must stay unchanged.
    timeout : float
        Overall deadline for ``wait_for_recovery``.
    ready_timeout : float
        Deadline for ``wait_for_ready_leader``.
    """

    def __init__(
        self,
        tracker: LeaderTracker,
        *,
        poll_interval: float = 1.0,
        settle_interval: float = 2.0,
        timeout: float = 60.0,
        ready_timeout: float = 45.0,
    ) -> None:
        self._tracker = tracker
        self._poll_interval = poll_interval
        self._settle_interval = settle_interval
        self._timeout = timeout
        self._ready_timeout = ready_timeout
        self._subscribers: list[Callable[[RecoveryTransition], None]] = []

    def subscribe(self, callback: Callable[[RecoveryTransition], None]) -> None:
        self._subscribers.append(callback)

    def _publish(
        self,
        partition_id: int,
        phase: RecoveryPhase,
        leader: LeaderInfo | None,
        started: float,
    ) -> None:
        transition = RecoveryTransition(
            partition_id=partition_id,
            phase=phase,
            leader=leader,
            elapsed=time.monotonic() - started,
        )
        for callback in self._subscribers:
            callback(transition)

    async def _poll(self, partition_id: int) -> LeaderInfo | None:
        try:
            await self._tracker.refresh()
        except LeaderQueryError as exc:
            logger.debug("poll for partition %d failed: %s", partition_id, exc)
            return None
        return self._tracker.current_leader(partition_id)

    async def wait_for_recovery(self, partition_id: int, original_term: int) -> LeaderInfo:
        """Wait for a Ready leader with ``term > original_term`` that stays stable.

        Returns
        -------
        LeaderInfo
            The re-confirmed snapshot; its term is strictly greater than
            *original_term*.

        Raises
        ------
        RecoveryTimeoutError
            If no stable leader appears within the overall deadline.
        """
        started = time.monotonic()
        self._publish(partition_id, RecoveryPhase.waiting_for_new_term, None, started)
        try:
            async with asyncio.timeout(self._timeout):
                while True:
                    candidate = await self._poll(partition_id)
                    if (
                        candidate is not None
                        and candidate.is_ready
                        and candidate.term > original_term
                    ):
                        self._publish(
                            partition_id,
                            RecoveryPhase.waiting_for_stability,
                            candidate,
                            started,
                        )
                        await asyncio.sleep(self._settle_interval)
                        confirmed = await self._poll(partition_id)
                        if (
                            confirmed is not None
                            and confirmed.is_ready
                            and confirmed.same_leadership(candidate)
                        ):
                            self._publish(
                                partition_id, RecoveryPhase.recovered, confirmed, started
                            )
                            return confirmed
                        self._publish(
                            partition_id,
                            RecoveryPhase.waiting_for_new_term,
                            confirmed,
                            started,
                        )
                    await asyncio.sleep(self._poll_interval)
        except TimeoutError:
            elapsed = time.monotonic() - started
            self._publish(partition_id, RecoveryPhase.timed_out, None, started)
            raise RecoveryTimeoutError(partition_id, elapsed) from None

    async def wait_for_ready_leader(self, partition_id: int) -> LeaderInfo:
        """Refresh and return a Ready leader for *partition_id*, polling until one exists.

        The tracker is always refreshed first, so a stale cached snapshot is
        never handed to the injector.

        Raises
        ------
        RecoveryTimeoutError
            If no Ready leader appears within ``ready_timeout``.
        """
        started = time.monotonic()
        try:
            async with asyncio.timeout(self._ready_timeout):
                while True:
                    leader = await self._poll(partition_id)
                    if leader is not None and leader.is_ready:
                        return leader
                    await asyncio.sleep(self._poll_interval)
        except TimeoutError:
            raise RecoveryTimeoutError(
                partition_id, time.monotonic() - started
            ) from None


def log_recovery_transition(transition: RecoveryTransition) -> None:
    """Subscriber that logs recovery transitions with the harness event names."""
    leader = transition.leader
    match transition.phase:
        case RecoveryPhase.waiting_for_new_term if leader is None:
            logger.info(
                "LEADER_ELECTION_WAIT: Waiting for new leader on partition %d",
                transition.partition_id,
            )
        case RecoveryPhase.waiting_for_new_term:
            logger.info(
                "LEADER_INSTABILITY: Partition %d leadership changed during "
                "stabilization check, continuing to wait",
                transition.partition_id,
            )
        case RecoveryPhase.waiting_for_stability if leader is not None:
            logger.info(
                "NEW_LEADER_ELECTED: Partition %d, %s, Term %d "
                "(waiting for system stabilization...)",
                transition.partition_id,
                leader.replica,
                leader.term,
            )
        case RecoveryPhase.recovered if leader is not None:
            logger.info(
                "LEADER_READY: Partition %d leader %s is stable and ready (%.2fs)",
                transition.partition_id,
                leader.replica,
                transition.elapsed,
            )
        case RecoveryPhase.timed_out:
            logger.warning(
                "LEADER_ELECTION_TIMEOUT: Partition %d after %.1fs",
                transition.partition_id,
                transition.elapsed,
            )
        case _:
            pass
