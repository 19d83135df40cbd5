"""Failure injection: forceful termination of a captured leader."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kvprobe.errors import LeaderChangedError, NoLeaderError, TerminationFailedError

if TYPE_CHECKING:
    from kvprobe.leader import LeaderInfo, LeaderTracker
    from kvprobe.platform import ClusterPlatform

logger = logging.getLogger("kvprobe.injector")


class FailureInjector:
    """Terminates the replica recorded in a ``LeaderInfo`` snapshot.

    Termination always targets the *captured* snapshot, never whoever leads
    at the moment of the call.  ``confirm_current`` lets the caller check the
    snapshot against the tracker right before pulling the trigger.

    Parameters
    ----------
    platform : ClusterPlatform
        Platform providing the terminate primitive.
    tracker : LeaderTracker
        Tracker consulted by ``confirm_current``.
    """

    def __init__(self, platform: ClusterPlatform, tracker: LeaderTracker) -> None:
        self._platform = platform
        self._tracker = tracker
        self._terminations = 0

    @property
    def terminations(self) -> int:
        return self._terminations

    def confirm_current(self, leader: LeaderInfo) -> None:
        """Check that *leader* still matches the tracker's cached snapshot.

        Raises
        ------
        LeaderChangedError
            If the tracker now reports a different replica or term.
        """
        current = self._tracker.current_leader(leader.partition_id)
        if current is None or not current.same_leadership(leader):
            raise LeaderChangedError(leader, current)

    async def terminate_leader(self, leader: LeaderInfo) -> None:
        """Forcefully terminate the process hosting *leader*'s replica.

        Raises
        ------
        NoLeaderError
            If the snapshot carries no replica identity.
        TerminationFailedError
            If the platform call fails; wraps the platform error.
        """
        if not leader.has_replica:
            raise NoLeaderError(leader.partition_id)

        logger.info(
            "FORCED_TERMINATION: Terminating leader %s for partition %d (term %d)",
            leader.replica,
            leader.partition_id,
            leader.term,
        )
        try:
            await self._platform.terminate(leader.replica)
        except Exception as exc:
            raise TerminationFailedError(leader.replica, exc) from exc

        self._terminations += 1
        logger.info("TERMINATION_SUCCESS: %s terminated", leader.replica)
