"""Exception hierarchy for tracking operations."""

from typing import Optional


class SkyTrackError(Exception):
    """Base exception for all SkyTrack errors."""


class NotFound(SkyTrackError):
    """The requested journey does not exist."""

    def __init__(self, fa_flight_id: str):
        self.fa_flight_id = fa_flight_id
        super().__init__(f'Flight {fa_flight_id} not found')


class AlreadyTracking(SkyTrackError):
    """Another journey already holds the tracking slot."""

    def __init__(self, fa_flight_id: str, active_flight_id: Optional[str] = None):
        self.fa_flight_id = fa_flight_id
        self.active_flight_id = active_flight_id
        super().__init__(
            f'Cannot track {fa_flight_id}: flight {active_flight_id or "?"} is already being tracked'
        )


class NotTracking(SkyTrackError):
    """Stop was requested for a journey that is not the active one."""

    def __init__(self, fa_flight_id: str, active_flight_id: Optional[str] = None):
        self.fa_flight_id = fa_flight_id
        self.active_flight_id = active_flight_id
        super().__init__(f'Flight {fa_flight_id} is not currently being tracked')


class FeedUnavailable(SkyTrackError):
    """
    The flight data provider could not be reached or returned an error.

    Transient: the polling loop retries until its consecutive-error
    threshold is reached.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: str = '',
    ):
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class PersistenceFailure(SkyTrackError):
    """A database read or write failed."""


class DuplicateSample(SkyTrackError):
    """A position with the same timestamp is already stored for this journey."""

    def __init__(self, fa_flight_id: str, timestamp: str):
        self.fa_flight_id = fa_flight_id
        self.timestamp = timestamp
        super().__init__(f'Position {timestamp} already recorded for {fa_flight_id}')
