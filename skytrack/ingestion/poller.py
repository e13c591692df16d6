"""
Polling loop - drives position updates for the one tracked journey.

Each tick:
1. Verify: the journey still holds the tracking flag in the database
2. Fetch: ask AeroAPI for the last known position
3. Transition: first liftoff timestamp moves the journey to 'active'
4. Append: store the position unless its timestamp is already recorded
5. Broadcast: push the new position to subscribers
6. Detect landing: end the loop cleanly once the aircraft is down

The loop runs in a background daemon thread. Cancellation is
cooperative: cancel() sets an event that the loop checks between ticks,
and a tick never starts work for a journey whose flag was cleared.
An in-flight AeroAPI call is never interrupted; its result is dropped
if the loop was cancelled or the flag cleared while it was running, and
the store writes themselves only apply to a journey still flagged.

Landing predicate, in order of precedence:
1. AeroAPI reports an actual_on (runway arrival) timestamp
2. Liftoff has been observed and the last sample is at or below the
   ground altitude with zero ground speed
The free-text status is not consulted.
"""

import logging
import threading
import time
from enum import Enum
from typing import Optional, Callable

from skytrack.config import config
from skytrack.exceptions import FeedUnavailable, PersistenceFailure, DuplicateSample, NotTracking
from skytrack.ingestion.aeroapi_client import AeroApiClient, FlightPosition
from skytrack.models import Journey
from skytrack.store import JourneyStore
from skytrack.tracking import metrics
from skytrack.tracking.events import EventType
from skytrack.tracking.status import FlightStatus
from skytrack.tracking.subscribers import SubscriberRegistry

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    """Result of one polling tick."""
    POSITION_ADDED = 'position_added'
    DUPLICATE = 'duplicate'
    FEED_ERROR = 'feed_error'
    PERSISTENCE_ERROR = 'persistence_error'
    CANCELLED = 'cancelled'
    # Terminal outcomes end the loop
    NOT_TRACKING = 'not_tracking'
    LANDED = 'landed'
    ERROR_THRESHOLD = 'error_threshold'


TERMINAL_OUTCOMES = frozenset({
    TickOutcome.CANCELLED,
    TickOutcome.NOT_TRACKING,
    TickOutcome.LANDED,
    TickOutcome.ERROR_THRESHOLD,
})


class PollingLoop:
    """
    Periodic poll-merge-broadcast cycle for a single journey.

    The owner (the tracking coordinator) is told when the loop ends on
    its own - landing, error threshold or a cleared flag - through the
    on_finished callback, which receives the journey id and the outcome.
    """

    def __init__(
        self,
        fa_flight_id: str,
        store: JourneyStore,
        client: AeroApiClient,
        registry: SubscriberRegistry,
        on_finished: Optional[Callable[[str, TickOutcome], None]] = None,
        interval: Optional[float] = None,
        max_consecutive_errors: Optional[int] = None,
        ground_altitude: Optional[int] = None,
    ):
        self.fa_flight_id = fa_flight_id
        self.store = store
        self.client = client
        self.registry = registry
        self.on_finished = on_finished
        self.interval = interval or config.tracking.poll_interval
        self.max_consecutive_errors = max_consecutive_errors or config.tracking.max_consecutive_errors
        self.ground_altitude = (
            config.tracking.ground_altitude if ground_altitude is None else ground_altitude
        )

        # State tracking
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.consecutive_errors: int = 0
        self._tick_count: int = 0
        self._error_count: int = 0
        self._positions_added: int = 0
        self._last_tick_time: float = 0

    # -------------------------------------------------------------------------
    # One tick
    # -------------------------------------------------------------------------

    def _record_feed_error(self, reason: str) -> TickOutcome:
        self.consecutive_errors += 1
        self._error_count += 1
        logger.warning(
            f'No position for {self.fa_flight_id} ({reason}), '
            f'{self.consecutive_errors}/{self.max_consecutive_errors} consecutive errors'
        )
        if self.consecutive_errors >= self.max_consecutive_errors:
            logger.error(f'Too many consecutive errors for {self.fa_flight_id}, stopping polling')
            return TickOutcome.ERROR_THRESHOLD
        return TickOutcome.FEED_ERROR

    def _mark_active(self, journey: Journey, actual_off: str) -> Journey:
        """Persist and announce the liftoff transition."""
        previous = journey.standardized_status
        journey = self.store.update_fields(
            self.fa_flight_id,
            require_tracking=True,
            standardized_status=FlightStatus.ACTIVE.value,
            actual_off=actual_off,
            departure_delay=metrics.departure_delay_seconds(actual_off, journey.scheduled_off),
            estimated_arrival=metrics.estimated_arrival(actual_off, journey.filed_ete),
        )
        logger.info(f'Flight {self.fa_flight_id} took off at {actual_off} ({previous} -> active)')

        self.registry.broadcast(EventType.FLIGHT_STATUS_UPDATE, {
            'fa_flight_id': self.fa_flight_id,
            'previous_status': previous,
            'standardized_status': journey.standardized_status,
            'actual_off': journey.actual_off,
            'departure_delay': journey.departure_delay,
            'estimated_arrival': journey.estimated_arrival,
        })
        return journey

    def _record_touchdown(self, journey: Journey, actual_on: Optional[str]) -> None:
        if not actual_on or journey.actual_on == actual_on:
            return
        try:
            self.store.update_fields(
                self.fa_flight_id,
                require_tracking=True,
                actual_on=actual_on,
                arrival_delay=metrics.arrival_delay_seconds(actual_on, journey.scheduled_on),
            )
        except (NotTracking, PersistenceFailure) as e:
            logger.error(f'Could not record touchdown for {self.fa_flight_id}: {e}')

    def has_landed(self, position: FlightPosition, journey: Journey) -> bool:
        if position.actual_on:
            return True

        sample = position.last_position
        if sample is None or not (position.actual_off or journey.actual_off):
            return False
        return (
            sample.altitude is not None
            and sample.altitude <= self.ground_altitude
            and sample.groundspeed == 0
        )

    def tick(self) -> TickOutcome:
        """Run one poll cycle and report what happened."""
        if self._stop_event.is_set():
            return TickOutcome.CANCELLED

        self._tick_count += 1
        self._last_tick_time = time.time()

        try:
            if not self.store.is_tracking(self.fa_flight_id):
                logger.info(f'Flight {self.fa_flight_id} is no longer flagged for tracking, stopping polling')
                return TickOutcome.NOT_TRACKING
        except PersistenceFailure as e:
            logger.error(f'Could not verify tracking state for {self.fa_flight_id}: {e}')
            return TickOutcome.PERSISTENCE_ERROR

        try:
            position = self.client.get_flight_position(self.fa_flight_id)
        except FeedUnavailable as e:
            return self._record_feed_error(str(e))

        if position.is_empty:
            return self._record_feed_error('empty response')

        self.consecutive_errors = 0

        # cancel() waits on this lock, so once it returns no tick writes or broadcasts
        with self._tick_lock:
            if self._stop_event.is_set():
                logger.info(f'Polling for {self.fa_flight_id} cancelled during feed call, discarding position')
                return TickOutcome.CANCELLED
            return self._apply_position(position)

    def _apply_position(self, position: FlightPosition) -> TickOutcome:
        sample = position.last_position

        try:
            journey = self.store.get(self.fa_flight_id)
            if journey is None or not journey.is_tracking:
                logger.info(f'Flight {self.fa_flight_id} stopped during feed call, discarding position')
                return TickOutcome.NOT_TRACKING

            if position.actual_off and journey.standardized_status not in (
                FlightStatus.ACTIVE.value, FlightStatus.COMPLETED.value,
            ):
                journey = self._mark_active(journey, position.actual_off)

            if self.store.has_sample(self.fa_flight_id, sample.timestamp):
                logger.debug(f'Position {sample.timestamp} already recorded for {self.fa_flight_id}, skipping')
                outcome = TickOutcome.DUPLICATE
            else:
                track = [p.to_sample() for p in journey.track] + [sample]
                progress = metrics.progress_percent(track, sample, journey.origin, journey.destination)
                journey = self.store.append_sample(
                    self.fa_flight_id, sample, require_tracking=True, progress_percent=progress
                )
                self._positions_added += 1
                outcome = TickOutcome.POSITION_ADDED

                self.registry.broadcast(EventType.POSITION_UPDATE, {
                    'flight_id': self.fa_flight_id,
                    'position': sample.to_dict(),
                    'progress_percent': journey.progress_percent,
                })
        except DuplicateSample:
            outcome = TickOutcome.DUPLICATE
        except NotTracking:
            logger.info(f'Flight {self.fa_flight_id} stopped before its position was stored')
            return TickOutcome.NOT_TRACKING
        except PersistenceFailure as e:
            logger.error(f'Failed to store position for {self.fa_flight_id}, will retry next tick: {e}')
            return TickOutcome.PERSISTENCE_ERROR

        if self.has_landed(position, journey):
            logger.info(f'Flight {self.fa_flight_id} has landed')
            self._record_touchdown(journey, position.actual_on)
            return TickOutcome.LANDED

        return outcome

    # -------------------------------------------------------------------------
    # Background thread
    # -------------------------------------------------------------------------

    def run(self) -> None:
        """
        Tick every interval until a terminal outcome or cancel().

        This method blocks - use start() for non-blocking.
        """
        logger.info(f'Polling {self.fa_flight_id} every {self.interval}s')
        outcome = None

        while not self._stop_event.wait(self.interval):
            try:
                outcome = self.tick()
            except Exception as e:
                logger.exception(f'Error polling position data for {self.fa_flight_id}: {e}')
                outcome = self._record_feed_error(str(e))

            if outcome in TERMINAL_OUTCOMES:
                break

        logger.info(f'Polling for {self.fa_flight_id} ended ({outcome.value if outcome else "cancelled"})')

        if outcome in TERMINAL_OUTCOMES and not self._stop_event.is_set() and self.on_finished:
            self.on_finished(self.fa_flight_id, outcome)

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning(f'Polling for {self.fa_flight_id} already running')
            return

        self._thread = threading.Thread(
            target=self.run,
            name=f'poll-{self.fa_flight_id}',
            daemon=True,
        )
        self._thread.start()

    def cancel(self) -> None:
        """
        Stop polling.

        Waits for a tick that is storing or broadcasting a position to
        finish; a tick still blocked in the feed call discards its result.
        Safe to call from the polling thread itself (landing and error
        threshold stops run there), in which case it does not wait.
        """
        self._stop_event.set()
        if self._thread is threading.current_thread():
            return

        with self._tick_lock:
            pass
        if self._thread:
            self._thread.join(timeout=5)

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive()) and not self._stop_event.is_set()

    @property
    def stats(self) -> dict:
        return {
            'fa_flight_id': self.fa_flight_id,
            'running': self.is_running,
            'interval': self.interval,
            'tick_count': self._tick_count,
            'error_count': self._error_count,
            'consecutive_errors': self.consecutive_errors,
            'positions_added': self._positions_added,
            'last_tick_time': self._last_tick_time,
        }
