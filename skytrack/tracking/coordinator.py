"""
Tracking coordinator - owner of the single tracking slot.

Only one journey can be tracked at a time. The coordinator enforces
this twice over:
- start/stop are serialized behind a re-entrant lock, so two requests
  cannot interleave their feed calls and writes
- the store claim is a conditional UPDATE that fails if any other
  journey already holds the flag, which also covers a second process
  sharing the database

The coordinator owns the one PollingLoop; arming a new loop always
cancels the previous one.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Callable, List

from skytrack.config import config
from skytrack.exceptions import (
    AlreadyTracking,
    FeedUnavailable,
    NotFound,
    NotTracking,
    PersistenceFailure,
)
from skytrack.ingestion.aeroapi_client import AeroApiClient, FlightInfo, FlightPosition, PositionSample
from skytrack.ingestion.poller import PollingLoop, TickOutcome
from skytrack.models import Journey, PHASE_TIMESTAMP_FIELDS
from skytrack.store import JourneyStore
from skytrack.tracking import metrics
from skytrack.tracking.events import EventType
from skytrack.tracking.status import FlightStatus, standardize_status
from skytrack.tracking.subscribers import SubscriberRegistry

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    """Why tracking ended."""
    MANUAL = 'manual'
    LANDED = 'landed'
    ERROR_THRESHOLD = 'error_threshold'
    SHUTDOWN = 'shutdown'


@dataclass
class StartResult:
    fa_flight_id: str
    already_started: bool = False
    flight: Optional[dict] = None
    historical_positions: int = 0


@dataclass
class StopResult:
    fa_flight_id: str
    reason: StopReason
    flight: Optional[dict] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def flight_info_fields(journey: Journey, info: Optional[FlightInfo], position: Optional[FlightPosition]) -> dict:
    """
    Journey fields refreshed from a feed snapshot.

    Feed values only overwrite stored ones when present, so a partial
    response never erases what is already known.
    """
    fields = {}

    if info is not None:
        for name in PHASE_TIMESTAMP_FIELDS:
            value = getattr(info, name)
            if value:
                fields[name] = value
        if info.status:
            fields['status'] = info.status
        if info.filed_ete is not None:
            fields['filed_ete'] = info.filed_ete
        if info.route_distance is not None and not journey.route_distance:
            fields['route_distance'] = info.route_distance
        fields['cancelled'] = info.cancelled
        fields['diverted'] = info.diverted

    if position is not None:
        if position.actual_off:
            fields['actual_off'] = position.actual_off
        if position.actual_on:
            fields['actual_on'] = position.actual_on
        if position.waypoints:
            fields['waypoints'] = position.waypoints

    def current(name):
        return fields.get(name, getattr(journey, name))

    actual_off = current('actual_off')
    fields['departure_delay'] = metrics.departure_delay_seconds(actual_off, current('scheduled_off'))
    fields['arrival_delay'] = metrics.arrival_delay_seconds(current('actual_on'), current('scheduled_on'))
    fields['estimated_arrival'] = metrics.estimated_arrival(actual_off, current('filed_ete'))
    return fields


class TrackingCoordinator:
    """
    Starts, stops and reports on the single tracked journey.

    Exposes the control surface used by the HTTP layer: start(), stop()
    and current_state().
    """

    def __init__(
        self,
        store: Optional[JourneyStore] = None,
        client: Optional[AeroApiClient] = None,
        registry: Optional[SubscriberRegistry] = None,
        poll_interval: Optional[float] = None,
        max_consecutive_errors: Optional[int] = None,
        history_buffer_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store or JourneyStore()
        self.client = client or AeroApiClient.from_config()
        self.registry = registry or SubscriberRegistry()
        self.poll_interval = poll_interval or config.tracking.poll_interval
        self.max_consecutive_errors = max_consecutive_errors or config.tracking.max_consecutive_errors
        self.history_buffer = timedelta(
            seconds=history_buffer_seconds if history_buffer_seconds is not None
            else config.tracking.history_buffer_seconds
        )
        self._clock = clock

        self._lock = threading.RLock()
        self._active_flight_id: Optional[str] = None
        self._loop: Optional[PollingLoop] = None

        # New subscribers get the coordinator's view of the world
        self.registry.snapshot_provider = self.current_state

    @property
    def active_flight_id(self) -> Optional[str]:
        return self._active_flight_id

    @property
    def polling_loop(self) -> Optional[PollingLoop]:
        return self._loop

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def _check_startable(self, fa_flight_id: str, resume: bool) -> Optional[Journey]:
        """
        Validate a start request.

        Returns None when the journey is already tracked by this
        coordinator (a soft no-op), else the stored journey.
        """
        journey = self.store.get(fa_flight_id)
        if journey is None:
            raise NotFound(fa_flight_id)

        if not resume and self._active_flight_id == fa_flight_id:
            return None

        others = [j.fa_flight_id for j in self.store.list_tracking() if j.fa_flight_id != fa_flight_id]
        if others:
            raise AlreadyTracking(fa_flight_id, others[0])
        if self._active_flight_id and self._active_flight_id != fa_flight_id:
            raise AlreadyTracking(fa_flight_id, self._active_flight_id)

        return journey

    def _needs_history(self, position: FlightPosition) -> bool:
        first_seen = metrics.parse_timestamp(position.first_position_time)
        if first_seen is None:
            return False
        return self._clock() - first_seen > self.history_buffer

    def start(self, fa_flight_id: str) -> StartResult:
        """
        Begin tracking a journey.

        Raises:
            NotFound if the journey is not registered
            AlreadyTracking if another journey holds the slot
            FeedUnavailable if the initial feed fetch fails
            PersistenceFailure if the initial write fails
        """
        with self._lock:
            journey = self._check_startable(fa_flight_id, resume=False)
            if journey is None:
                logger.info(f'Flight {fa_flight_id} is already being tracked')
                return StartResult(fa_flight_id=fa_flight_id, already_started=True)

            info = self.client.get_flight_info(fa_flight_id)
            position = self.client.get_flight_position(fa_flight_id)
            return self._begin_tracking(journey, info, position)

    def resume(self, fa_flight_id: str, info: Optional[FlightInfo], position: FlightPosition) -> StartResult:
        """
        Re-arm tracking for a journey that was tracked before a restart.

        Uses the same path as start() with feed data the caller already has.
        """
        with self._lock:
            journey = self._check_startable(fa_flight_id, resume=True)
            return self._begin_tracking(journey, info, position)

    def _begin_tracking(
        self,
        journey: Journey,
        info: Optional[FlightInfo],
        position: FlightPosition,
    ) -> StartResult:
        fa_flight_id = journey.fa_flight_id

        history: List[PositionSample] = []
        if self._needs_history(position):
            history = self.client.get_flight_track(fa_flight_id).positions
            logger.info(f'Fetched {len(history)} historical positions for {fa_flight_id}')

        if not self.store.claim_tracking(fa_flight_id):
            holders = [j.fa_flight_id for j in self.store.list_tracking() if j.fa_flight_id != fa_flight_id]
            raise AlreadyTracking(fa_flight_id, holders[0] if holders else None)

        try:
            journey = self.store.merge_track(fa_flight_id, history)
            fields = flight_info_fields(journey, info, position)
            status = fields.get('status', journey.status)
            fields['standardized_status'] = standardize_status(status) if status else FlightStatus.UNKNOWN.value

            track = [p.to_sample() for p in journey.track]
            last = position.last_position or (track[-1] if track else None)
            fields['progress_percent'] = metrics.progress_percent(
                track, last, journey.origin, journey.destination
            )
            journey = self.store.update_fields(fa_flight_id, **fields)
        except PersistenceFailure:
            logger.error(f'Could not persist tracking start for {fa_flight_id}, releasing claim')
            try:
                self.store.update_fields(fa_flight_id, is_tracking=False)
            except PersistenceFailure as e:
                logger.error(f'Could not release tracking flag for {fa_flight_id}: {e}')
            raise

        self._arm_loop(fa_flight_id)
        self._active_flight_id = fa_flight_id
        logger.info(f'Tracking started for {fa_flight_id} ({journey.standardized_status})')

        current = position.last_position or (journey.last_position.to_sample() if journey.last_position else None)
        flight = journey.to_dict()
        self.registry.broadcast(EventType.START_FLIGHT, {
            'flight': flight,
            'current_position': current.to_dict() if current else None,
        })

        return StartResult(
            fa_flight_id=fa_flight_id,
            flight=flight,
            historical_positions=len(history),
        )

    def _arm_loop(self, fa_flight_id: str) -> None:
        if self._loop is not None:
            self._loop.cancel()

        self._loop = PollingLoop(
            fa_flight_id,
            store=self.store,
            client=self.client,
            registry=self.registry,
            on_finished=self._on_loop_finished,
            interval=self.poll_interval,
            max_consecutive_errors=self.max_consecutive_errors,
        )
        self._loop.start()

    def _on_loop_finished(self, fa_flight_id: str, outcome: TickOutcome) -> None:
        """Called from the polling thread when the loop ends on its own."""
        if outcome == TickOutcome.NOT_TRACKING:
            with self._lock:
                if self._active_flight_id == fa_flight_id:
                    self._active_flight_id = None
                    self._loop = None
            return

        reason = StopReason.LANDED if outcome == TickOutcome.LANDED else StopReason.ERROR_THRESHOLD
        try:
            self.stop(fa_flight_id, reason)
        except NotTracking:
            logger.info(f'Flight {fa_flight_id} was already stopped')
        except PersistenceFailure as e:
            logger.error(f'Automatic stop of {fa_flight_id} failed: {e}')

    # -------------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------------

    def completion_fields(
        self,
        journey: Journey,
        info: Optional[FlightInfo],
        position: Optional[FlightPosition] = None,
    ) -> dict:
        """Closing state written when tracking ends."""
        fields = flight_info_fields(journey, info, position)
        fields['status'] = fields.get('status') or journey.status or 'Completed'
        fields['standardized_status'] = FlightStatus.COMPLETED.value
        fields['is_tracking'] = False
        track = [p.to_sample() for p in journey.track]
        fields['progress_percent'] = (
            100.0 if fields.get('actual_on') or journey.actual_on else
            metrics.progress_percent(track, track[-1] if track else None, journey.origin, journey.destination)
        )
        return fields

    def stop(self, fa_flight_id: str, reason: StopReason = StopReason.MANUAL) -> StopResult:
        """
        End tracking of the active journey.

        Cancels the loop, makes one best-effort feed fetch for closing
        fields (landing time, delay, cancellation), marks the journey
        completed and broadcasts flight_completed.

        The shutdown reason only cancels the loop: no feed call, no
        writes and no broadcast, so the stored flag survives for
        recovery on the next start.

        A journey still flagged in the database with no loop running (a
        failed recovery) counts as the active one.

        Raises:
            NotTracking if the journey is not the active one
            PersistenceFailure if the closing write fails; tracking is
            re-armed so the journey is not left flagged but unpolled
        """
        reason = StopReason(reason)

        with self._lock:
            if self._active_flight_id is None and self.store.is_tracking(fa_flight_id):
                # Flag left set by a recovery that could not reach the feed
                logger.info(f'Stopping {fa_flight_id}, flagged in the database but not polled')
                self._active_flight_id = fa_flight_id

            if self._active_flight_id != fa_flight_id:
                logger.warning(
                    f'Attempted to stop {fa_flight_id} but current flight is {self._active_flight_id}'
                )
                raise NotTracking(fa_flight_id, self._active_flight_id)

            logger.info(f'Stopping tracking for {fa_flight_id} ({reason.value})')
            if self._loop is not None:
                self._loop.cancel()
                self._loop = None

            if reason == StopReason.SHUTDOWN:
                self._active_flight_id = None
                return StopResult(fa_flight_id=fa_flight_id, reason=reason)

            info = None
            try:
                info = self.client.get_flight_info(fa_flight_id)
            except FeedUnavailable as e:
                logger.warning(f'Final status fetch for {fa_flight_id} failed: {e}')

            try:
                journey = self.store.require(fa_flight_id)
                journey = self.store.update_fields(
                    fa_flight_id, **self.completion_fields(journey, info)
                )
            except PersistenceFailure:
                logger.error(f'Could not persist completion of {fa_flight_id}, resuming polling')
                self._arm_loop(fa_flight_id)
                raise

            self._active_flight_id = None

        flight = journey.to_dict()
        self.registry.broadcast(EventType.FLIGHT_COMPLETED, {
            'fa_flight_id': fa_flight_id,
            'completion_time': metrics.format_timestamp(self._clock()),
            'reason': reason.value,
            'flight': flight,
        })
        logger.info(f'Tracking stopped for {fa_flight_id}')
        return StopResult(fa_flight_id=fa_flight_id, reason=reason, flight=flight)

    def record_completion(
        self,
        fa_flight_id: str,
        info: Optional[FlightInfo],
        position: Optional[FlightPosition],
    ) -> Journey:
        """Persist a journey as completed without ever arming a loop."""
        with self._lock:
            journey = self.store.require(fa_flight_id)
            return self.store.update_fields(
                fa_flight_id, **self.completion_fields(journey, info, position)
            )

    def shutdown(self) -> None:
        """Process exit: cancel polling via the fast stop path and stop the sweeper."""
        with self._lock:
            if self._active_flight_id:
                self.stop(self._active_flight_id, StopReason.SHUTDOWN)
        self.registry.stop_sweeper()

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def current_state(self) -> dict:
        """
        Everything a new subscriber needs to render the current picture.

        Aggregates are simple counters over completed journeys.
        """
        journeys = self.store.list_all()
        completed = [j for j in journeys if j.standardized_status == FlightStatus.COMPLETED.value]
        active = next((j for j in journeys if j.is_tracking), None)

        last_position = active.last_position if active else None
        last_completed = completed[-1] if completed else None
        destination = (last_completed.destination or {}) if last_completed else {}

        countries = set()
        for journey in completed:
            for airport in (journey.origin, journey.destination):
                if airport and airport.get('country_code'):
                    countries.add(airport['country_code'])

        return {
            'client_count': self.registry.count,
            'active_flight': active.to_dict() if active else None,
            'current_location': {
                'country': destination.get('country_code'),
                'latitude': destination.get('latitude'),
                'longitude': destination.get('longitude'),
                'heading': 0,
                'timestamp': last_completed.actual_on,
            } if last_completed else None,
            'current_position': {
                'latitude': last_position.latitude,
                'longitude': last_position.longitude,
                'heading': last_position.heading,
                'timestamp': last_position.timestamp,
            } if last_position else None,
            'completed_flights': [j.to_dict(include_track=False) for j in completed],
            'stats': {
                'total_miles': sum(j.route_distance or 0 for j in completed),
                'total_countries': sorted(countries),
                'total_flights': len(completed),
                'last_updated': metrics.format_timestamp(self._clock()),
            },
        }

    @property
    def stats(self) -> dict:
        return {
            'active_flight_id': self._active_flight_id,
            'polling': self._loop.stats if self._loop else {'running': False},
            'subscribers': self.registry.stats,
        }
