import json
from typing import Dict, List, Optional

import pytest

from skytrack.exceptions import FeedUnavailable
from skytrack.ingestion.aeroapi_client import FlightInfo, FlightPosition, FlightTrack, PositionSample
from skytrack.models import Journey, TrackPosition, build_engine, build_session_factory, init_db
from skytrack.store import JourneyStore
from skytrack.tracking.coordinator import TrackingCoordinator
from skytrack.tracking.subscribers import SubscriberRegistry


LHR = {'code': 'EGLL', 'name': 'London Heathrow', 'city': 'London', 'country_code': 'GB',
       'latitude': 51.47, 'longitude': -0.4543, 'timezone': 'Europe/London'}
JFK = {'code': 'KJFK', 'name': 'John F Kennedy Intl', 'city': 'New York', 'country_code': 'US',
       'latitude': 40.6398, 'longitude': -73.7789, 'timezone': 'America/New_York'}


def sample(timestamp: str, lat: float = 51.0, lon: float = -10.0, altitude: int = 350,
           groundspeed: int = 480, heading: int = 270) -> PositionSample:
    return PositionSample(
        timestamp=timestamp,
        latitude=lat,
        longitude=lon,
        altitude=altitude,
        groundspeed=groundspeed,
        heading=heading,
        altitude_change='-',
        update_type='A',
    )


def make_journey(fa_flight_id: str, track: Optional[List[PositionSample]] = None, **fields) -> Journey:
    values = {
        'fa_flight_id': fa_flight_id,
        'ident': 'BAW117',
        'operator': 'BAW',
        'flight_number': '117',
        'origin': dict(LHR),
        'destination': dict(JFK),
        'route_distance': 3451,
        'filed_ete': 28800,
        'status': 'Scheduled',
        'standardized_status': 'scheduled',
        'scheduled_off': '2024-01-01T09:45:00Z',
        'scheduled_on': '2024-01-01T17:45:00Z',
    }
    values.update(fields)
    journey = Journey(**values)
    journey.track = [TrackPosition.from_sample(s) for s in (track or [])]
    return journey


def make_info(fa_flight_id: str, **fields) -> FlightInfo:
    values = {
        'fa_flight_id': fa_flight_id,
        'ident': 'BAW117',
        'status': 'En Route / On Time',
        'scheduled_off': '2024-01-01T09:45:00Z',
        'scheduled_on': '2024-01-01T17:45:00Z',
        'filed_ete': 28800,
    }
    values.update(fields)
    return FlightInfo(**values)


def make_position(fa_flight_id: str, last: Optional[PositionSample] = None, **fields) -> FlightPosition:
    return FlightPosition(fa_flight_id=fa_flight_id, last_position=last, **fields)


class FakeFeedClient:
    """Stands in for AeroApiClient. Positions are served from a queue per flight."""

    def __init__(self):
        self.infos: Dict[str, FlightInfo] = {}
        self.positions: Dict[str, List[FlightPosition]] = {}
        self.tracks: Dict[str, List[PositionSample]] = {}
        self.airports: Dict[str, dict] = {}
        self.searches: Dict[str, List[dict]] = {}
        self.schedules: List[dict] = []
        self.fail_positions = False
        self.fail_info = False
        self.request_count = 0
        self.calls: List[str] = []

    def queue_position(self, position: FlightPosition) -> None:
        self.positions.setdefault(position.fa_flight_id, []).append(position)

    def get_flight_info(self, fa_flight_id: str) -> Optional[FlightInfo]:
        self.request_count += 1
        self.calls.append(f'info:{fa_flight_id}')
        if self.fail_info:
            raise FeedUnavailable('feed down', status_code=503, endpoint=f'/flights/{fa_flight_id}')
        return self.infos.get(fa_flight_id)

    def get_flight_position(self, fa_flight_id: str) -> FlightPosition:
        self.request_count += 1
        self.calls.append(f'position:{fa_flight_id}')
        if self.fail_positions:
            raise FeedUnavailable('feed down', status_code=503, endpoint=f'/flights/{fa_flight_id}/position')
        queue = self.positions.get(fa_flight_id) or []
        if len(queue) > 1:
            return queue.pop(0)
        if queue:
            return queue[0]
        return FlightPosition(fa_flight_id=fa_flight_id)

    def get_flight_track(self, fa_flight_id: str) -> FlightTrack:
        self.request_count += 1
        self.calls.append(f'track:{fa_flight_id}')
        return FlightTrack(positions=list(self.tracks.get(fa_flight_id, [])))

    def get_airport_info(self, code: str) -> Optional[dict]:
        self.request_count += 1
        return self.airports.get(code)

    def search_flights(self, ident: str, start: Optional[str] = None, end: Optional[str] = None) -> List[dict]:
        self.calls.append(f'search:{ident}:{start}:{end}')
        return list(self.searches.get(ident, []))

    def get_schedules(self, start: str, end: str, origin: Optional[str] = None,
                      destination: Optional[str] = None, airline: Optional[str] = None) -> List[dict]:
        self.calls.append(f'schedules:{start}:{end}:{origin}:{destination}:{airline}')
        return list(self.schedules)


class FakeTransport:
    """Minimal WebSocket stand-in with the simple_websocket surface we use."""

    def __init__(self, fail_sends: bool = False):
        self.connected = True
        self.fail_sends = fail_sends
        self.sent: List[str] = []
        self.closed = False

    def send(self, message: str) -> None:
        if self.fail_sends:
            raise ConnectionError('socket gone')
        self.sent.append(message)

    def close(self) -> None:
        self.closed = True
        self.connected = False

    def events(self) -> List[dict]:
        return [json.loads(m) for m in self.sent]

    def event_names(self) -> List[str]:
        return [e['event'] for e in self.events()]


class ManualTimer:
    """Timer that only fires when the test says so."""

    def __init__(self, interval: float, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function()


class TimerBox:
    def __init__(self):
        self.timers: List[ManualTimer] = []

    def __call__(self, interval, function) -> ManualTimer:
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    def with_interval(self, interval: float) -> List[ManualTimer]:
        return [t for t in self.timers if t.interval == interval]


SETUP_TIMEOUT = 5.0
STABILIZATION_DELAY = 1.0


def connect(registry: SubscriberRegistry, timers: TimerBox, transport: Optional[FakeTransport] = None):
    """Open a connection and let it stabilize."""
    transport = transport or FakeTransport()
    connection = registry.on_open(transport)
    timers.with_interval(STABILIZATION_DELAY)[-1].fire()
    return connection, transport


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f'sqlite:///{tmp_path / "skytrack.db"}')
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return JourneyStore(session_factory)


@pytest.fixture
def feed():
    return FakeFeedClient()


@pytest.fixture
def timers():
    return TimerBox()


@pytest.fixture
def registry(timers):
    return SubscriberRegistry(
        setup_timeout=SETUP_TIMEOUT,
        stabilization_delay=STABILIZATION_DELAY,
        sweep_interval=30,
        timer_factory=timers,
    )


@pytest.fixture
def coordinator(store, feed, registry):
    coordinator = TrackingCoordinator(
        store=store,
        client=feed,
        registry=registry,
        poll_interval=3600,
        max_consecutive_errors=5,
        history_buffer_seconds=300,
    )
    yield coordinator
    if coordinator.polling_loop is not None:
        coordinator.polling_loop.cancel()
