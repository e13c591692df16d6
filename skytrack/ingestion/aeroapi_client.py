"""
FlightAware AeroAPI client.

Handles communication with the AeroAPI v4 REST API:
- API key authentication via the x-apikey header
- Flight info, last position, and historical track lookups
- Airport lookups used when registering a journey
- Flight number and schedule searches
- Error translation into FeedUnavailable

AeroAPI endpoints used:
    GET /flights/{fa_flight_id}            - detailed flight record(s)
    GET /flights/{fa_flight_id}/position   - last known position
    GET /flights/{fa_flight_id}/track      - every recorded position
    GET /airports/{code}                   - airport reference data
    GET /flights/{ident}                   - flights matching an ident (search)
    GET /schedules/{start}/{end}           - scheduled flights in a date window

Absence of data is represented as None / empty fields on the returned
records, never as an exception. Only transport and server failures raise.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Any, Dict

import requests

from skytrack.config import config
from skytrack.exceptions import FeedUnavailable

logger = logging.getLogger(__name__)


@dataclass
class PositionSample:
    """
    One observed aircraft position.

    Mirrors the AeroAPI track object. Altitude is in hundreds of feet,
    groundspeed in knots, heading in degrees. The timestamp is the
    ISO-8601 string reported by the feed and identifies the sample
    within a journey's track.
    """
    timestamp: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[int] = None
    groundspeed: Optional[int] = None
    heading: Optional[int] = None
    altitude_change: Optional[str] = None
    update_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['PositionSample']:
        """
        Parse a track object into a PositionSample.

        Returns None if the object is missing or has no timestamp.
        """
        if not data or not data.get('timestamp'):
            return None

        return cls(
            timestamp=data['timestamp'],
            latitude=data.get('latitude'),
            longitude=data.get('longitude'),
            altitude=data.get('altitude'),
            groundspeed=data.get('groundspeed'),
            heading=data.get('heading'),
            altitude_change=data.get('altitude_change'),
            update_type=data.get('update_type'),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def has_position(self) -> bool:
        """Check if this sample has usable coordinates."""
        return self.latitude is not None and self.longitude is not None


@dataclass
class FlightInfo:
    """
    Detailed flight record from /flights/{id}.

    Only the fields the tracker persists are kept. Airport descriptors
    are left as the raw dicts AeroAPI returns (code, name, city, timezone).
    """
    fa_flight_id: str
    ident: Optional[str] = None
    operator: Optional[str] = None
    flight_number: Optional[str] = None
    registration: Optional[str] = None
    aircraft_type: Optional[str] = None
    origin: Optional[Dict[str, Any]] = None
    destination: Optional[Dict[str, Any]] = None

    status: Optional[str] = None
    cancelled: bool = False
    diverted: bool = False

    scheduled_out: Optional[str] = None
    estimated_out: Optional[str] = None
    actual_out: Optional[str] = None
    scheduled_off: Optional[str] = None
    estimated_off: Optional[str] = None
    actual_off: Optional[str] = None
    scheduled_on: Optional[str] = None
    estimated_on: Optional[str] = None
    actual_on: Optional[str] = None
    scheduled_in: Optional[str] = None
    estimated_in: Optional[str] = None
    actual_in: Optional[str] = None

    departure_delay: Optional[int] = None
    arrival_delay: Optional[int] = None
    filed_ete: Optional[int] = None
    route_distance: Optional[int] = None
    progress_percent: Optional[int] = None

    @classmethod
    def from_response(cls, data: Optional[Dict[str, Any]]) -> Optional['FlightInfo']:
        """
        Parse the first flight of a /flights/{id} response.

        Returns None if the response contains no flights.
        """
        flights = (data or {}).get('flights') or []
        if not flights or not flights[0].get('fa_flight_id'):
            return None

        flight = flights[0]
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in flight.items() if k in known}
        values['cancelled'] = bool(flight.get('cancelled'))
        values['diverted'] = bool(flight.get('diverted'))
        return cls(**values)


@dataclass
class FlightPosition:
    """Response of /flights/{id}/position."""
    fa_flight_id: str
    last_position: Optional[PositionSample] = None
    first_position_time: Optional[str] = None
    actual_off: Optional[str] = None
    actual_on: Optional[str] = None
    waypoints: List[Any] = field(default_factory=list)

    @classmethod
    def from_response(cls, fa_flight_id: str, data: Optional[Dict[str, Any]]) -> 'FlightPosition':
        data = data or {}
        return cls(
            fa_flight_id=data.get('fa_flight_id') or fa_flight_id,
            last_position=PositionSample.from_dict(data.get('last_position')),
            first_position_time=data.get('first_position_time'),
            actual_off=data.get('actual_off'),
            actual_on=data.get('actual_on'),
            waypoints=data.get('waypoints') or [],
        )

    @property
    def is_empty(self) -> bool:
        return self.last_position is None


@dataclass
class FlightTrack:
    """Response of /flights/{id}/track."""
    positions: List[PositionSample] = field(default_factory=list)
    actual_distance: Optional[int] = None

    @classmethod
    def from_response(cls, data: Optional[Dict[str, Any]]) -> 'FlightTrack':
        data = data or {}
        positions = []
        for raw in data.get('positions') or []:
            sample = PositionSample.from_dict(raw)
            if sample and sample.has_position():
                positions.append(sample)
        return cls(positions=positions, actual_distance=data.get('actual_distance'))


class AeroApiClient:
    """
    Client for the FlightAware AeroAPI.

    Handles:
    - GET requests with API key authentication
    - 404 responses mapped to "no data"
    - Network errors and non-2xx responses mapped to FeedUnavailable
    """

    def __init__(
        self,
        api_key: str = '',
        base_url: str = 'https://aeroapi.flightaware.com/aeroapi',
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers['x-apikey'] = api_key
        else:
            logger.warning('AeroAPI client running without an API key - requests will be rejected')

        self.request_count: int = 0

    @classmethod
    def from_config(cls) -> 'AeroApiClient':
        """Create client from application configuration."""
        return cls(
            api_key=config.aeroapi.api_key,
            base_url=config.aeroapi.base_url,
            timeout=config.aeroapi.timeout_seconds,
        )

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Issue a GET request and decode the JSON body.

        Returns None on 404.

        Raises:
            FeedUnavailable on network errors, other HTTP errors,
            or an undecodable body
        """
        url = f'{self.base_url}{path}'
        logger.debug(f'AeroAPI GET {url}')

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            self.request_count += 1

            if response.status_code == 404:
                logger.info(f'AeroAPI has no data for {path}')
                return None

            response.raise_for_status()
            return response.json()

        except requests.exceptions.Timeout:
            logger.error(f'AeroAPI timeout on {path}')
            raise FeedUnavailable('AeroAPI request timed out', endpoint=path)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 429:
                logger.warning('AeroAPI rate limit exceeded')
            else:
                logger.error(f'AeroAPI error {status} on {path}')
            raise FeedUnavailable(f'AeroAPI returned {status}', status_code=status, endpoint=path)
        except requests.exceptions.RequestException as e:
            logger.error(f'AeroAPI request failed: {e}')
            raise FeedUnavailable(str(e), endpoint=path)
        except ValueError as e:
            logger.error(f'AeroAPI returned invalid JSON for {path}: {e}')
            raise FeedUnavailable('AeroAPI returned invalid JSON', endpoint=path)

    def get_flight_info(self, fa_flight_id: str) -> Optional[FlightInfo]:
        """Fetch the detailed flight record, or None if AeroAPI has none."""
        return FlightInfo.from_response(self._get(f'/flights/{fa_flight_id}'))

    def get_flight_position(self, fa_flight_id: str) -> FlightPosition:
        """
        Fetch the last known position.

        The returned record also carries the first-position time and,
        once the aircraft is down, the arrival timestamp.
        """
        data = self._get(f'/flights/{fa_flight_id}/position')
        position = FlightPosition.from_response(fa_flight_id, data)
        if position.last_position:
            logger.debug(f'Position for {fa_flight_id} at {position.last_position.timestamp}')
        return position

    def get_flight_track(self, fa_flight_id: str) -> FlightTrack:
        """Fetch every position recorded for the flight so far."""
        track = FlightTrack.from_response(self._get(f'/flights/{fa_flight_id}/track'))
        logger.info(f'Received {len(track.positions)} track positions for {fa_flight_id}')
        return track

    def get_airport_info(self, code: str) -> Optional[Dict[str, Any]]:
        """Fetch airport reference data (coordinates, country, timezone)."""
        return self._get(f'/airports/{code}')

    def search_flights(
        self,
        ident: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Search flights by flight number / ident.

        Args:
            ident: Flight ident such as BAW117
            start: Optional ISO date bounding the search window
            end: Optional ISO date bounding the search window

        Returns:
            Raw AeroAPI flight objects (empty if none match)
        """
        params = {k: v for k, v in (('start', start), ('end', end)) if v}
        data = self._get(f'/flights/{ident}', params=params or None)
        flights = (data or {}).get('flights') or []
        logger.info(f'Flight search for {ident} returned {len(flights)} flights')
        return flights

    def get_schedules(
        self,
        start: str,
        end: str,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        airline: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch scheduled flights between two dates, optionally filtered by route and airline."""
        params = {
            k: v for k, v in (('origin', origin), ('destination', destination), ('airline', airline)) if v
        }
        data = self._get(f'/schedules/{start}/{end}', params=params or None)
        scheduled = (data or {}).get('scheduled') or []
        logger.info(f'Schedule search {start} to {end} returned {len(scheduled)} flights')
        return scheduled
