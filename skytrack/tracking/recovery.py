"""
Startup recovery of the tracking slot.

A restart loses the in-memory polling loop but not the is_tracking flag
in the database. Recovery runs once at process start and reconciles the
two:

- no flagged journey: nothing to do
- one flagged journey: resume polling, unless the feed says it has
  already landed, in which case it is recorded as completed
- several flagged journeys (should never happen): keep the one with the
  most recent recorded position, clear the flag on the rest
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List

from skytrack.exceptions import SkyTrackError, FeedUnavailable
from skytrack.tracking.coordinator import TrackingCoordinator
from skytrack.tracking.status import FlightStatus, standardize_status

logger = logging.getLogger(__name__)


class RecoveryAction(str, Enum):
    NONE = 'none'
    RESUMED = 'resumed'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class RecoveryResult:
    action: RecoveryAction
    fa_flight_id: Optional[str] = None
    released: List[str] = field(default_factory=list)


class RecoveryManager:
    """Restores tracking after a restart."""

    def __init__(self, coordinator: TrackingCoordinator):
        self.coordinator = coordinator
        self.store = coordinator.store
        self.client = coordinator.client

    def recover(self) -> RecoveryResult:
        logger.info('Checking for flights that were being tracked before restart...')
        tracked = self.store.list_tracking()

        if not tracked:
            logger.info('No flights were being tracked before restart')
            return RecoveryResult(RecoveryAction.NONE)

        released = []
        if len(tracked) > 1:
            logger.warning(f'Found {len(tracked)} flights marked as tracking, keeping the most recent')
            chosen = max(tracked, key=lambda j: j.last_track_epoch)
            released = sorted(j.fa_flight_id for j in tracked if j.fa_flight_id != chosen.fa_flight_id)
            self.store.release_others(chosen.fa_flight_id)
            logger.warning(f'Cleared tracking flag on {", ".join(released)}')
        else:
            chosen = tracked[0]

        fa_flight_id = chosen.fa_flight_id
        logger.info(f'Flight {fa_flight_id} was being tracked with {len(chosen.track)} stored positions')

        try:
            position = self.client.get_flight_position(fa_flight_id)
            info = self.client.get_flight_info(fa_flight_id)
        except FeedUnavailable as e:
            # Flag stays set; the next restart or a manual start retries
            logger.error(f'Could not reach feed to restore {fa_flight_id}: {e}')
            return RecoveryResult(RecoveryAction.FAILED, fa_flight_id, released)

        feed_status = standardize_status(info.status) if info else FlightStatus.UNKNOWN.value
        if position.actual_on or feed_status == FlightStatus.COMPLETED.value:
            logger.info(f'Flight {fa_flight_id} completed while offline, not resuming')
            self.coordinator.record_completion(fa_flight_id, info, position)
            return RecoveryResult(RecoveryAction.COMPLETED, fa_flight_id, released)

        try:
            self.coordinator.resume(fa_flight_id, info, position)
        except SkyTrackError as e:
            logger.error(f'Failed to restore tracking for {fa_flight_id}: {e}')
            return RecoveryResult(RecoveryAction.FAILED, fa_flight_id, released)

        logger.info(f'Flight tracking restored for {fa_flight_id}')
        return RecoveryResult(RecoveryAction.RESUMED, fa_flight_id, released)
