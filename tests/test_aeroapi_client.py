import pytest
import requests

from skytrack.exceptions import FeedUnavailable
from skytrack.ingestion.aeroapi_client import AeroApiClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f'{self.status_code} error', response=self)

    def json(self):
        if self._invalid_json:
            raise ValueError('not json')
        return self._payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.headers = {}
        self.response = response
        self.exc = exc
        self.urls = []
        self.params = []

    def get(self, url, params=None, timeout=None):
        self.urls.append(url)
        self.params.append(params)
        if self.exc:
            raise self.exc
        return self.response


def _client(session):
    return AeroApiClient(api_key='secret', base_url='https://aero.example.com/aeroapi/', session=session)


def test_api_key_header_and_url():
    session = FakeSession(FakeResponse(payload={'flights': []}))
    client = _client(session)

    assert client.get_flight_info('X-1') is None
    assert session.headers['x-apikey'] == 'secret'
    assert session.urls == ['https://aero.example.com/aeroapi/flights/X-1']
    assert client.request_count == 1


def test_flight_info_parses_first_flight():
    payload = {'flights': [{
        'fa_flight_id': 'X-1', 'ident': 'BAW117', 'status': 'En Route / On Time',
        'actual_off': '2024-01-01T10:00:00Z', 'cancelled': None, 'unused_field': 'ignored',
        'origin': {'code': 'EGLL'}, 'filed_ete': 28800,
    }]}
    info = _client(FakeSession(FakeResponse(payload=payload))).get_flight_info('X-1')

    assert info.ident == 'BAW117'
    assert info.actual_off == '2024-01-01T10:00:00Z'
    assert info.cancelled is False
    assert info.origin == {'code': 'EGLL'}


def test_position_parses_last_position():
    payload = {
        'fa_flight_id': 'X-1',
        'first_position_time': '2024-01-01T09:50:00Z',
        'actual_off': '2024-01-01T10:00:00Z',
        'last_position': {'timestamp': '2024-01-01T10:30:00Z', 'latitude': 52.0, 'longitude': -20.0,
                          'altitude': 350, 'groundspeed': 480, 'heading': 270},
    }
    position = _client(FakeSession(FakeResponse(payload=payload))).get_flight_position('X-1')

    assert not position.is_empty
    assert position.last_position.altitude == 350
    assert position.first_position_time == '2024-01-01T09:50:00Z'


def test_404_means_no_data():
    client = _client(FakeSession(FakeResponse(status_code=404)))

    assert client.get_flight_position('X-1').is_empty
    assert client.get_flight_track('X-1').positions == []
    assert client.get_airport_info('ZZZZ') is None


def test_track_drops_positions_without_coordinates():
    payload = {'positions': [
        {'timestamp': '2024-01-01T10:00:00Z', 'latitude': 51.0, 'longitude': -1.0},
        {'timestamp': '2024-01-01T10:05:00Z'},
        {'latitude': 51.0, 'longitude': -1.0},
    ]}
    track = _client(FakeSession(FakeResponse(payload=payload))).get_flight_track('X-1')

    assert [p.timestamp for p in track.positions] == ['2024-01-01T10:00:00Z']


@pytest.mark.parametrize('session', [
    FakeSession(FakeResponse(status_code=500)),
    FakeSession(FakeResponse(status_code=429)),
    FakeSession(FakeResponse(payload=None, invalid_json=True)),
    FakeSession(exc=requests.exceptions.Timeout('slow')),
    FakeSession(exc=requests.exceptions.ConnectionError('refused')),
])
def test_failures_raise_feed_unavailable(session):
    with pytest.raises(FeedUnavailable):
        _client(session).get_flight_position('X-1')


def test_http_error_keeps_status_code():
    with pytest.raises(FeedUnavailable) as excinfo:
        _client(FakeSession(FakeResponse(status_code=503))).get_flight_info('X-1')

    assert excinfo.value.status_code == 503
    assert excinfo.value.endpoint == '/flights/X-1'


def test_search_flights_passes_date_window():
    payload = {'flights': [{'fa_flight_id': 'BAW117-1', 'ident': 'BAW117'}]}
    session = FakeSession(FakeResponse(payload=payload))

    flights = _client(session).search_flights('BAW117', start='2024-01-01', end='2024-01-02')

    assert [f['fa_flight_id'] for f in flights] == ['BAW117-1']
    assert session.urls == ['https://aero.example.com/aeroapi/flights/BAW117']
    assert session.params == [{'start': '2024-01-01', 'end': '2024-01-02'}]


def test_search_flights_without_match_is_empty():
    session = FakeSession(FakeResponse(status_code=404))

    assert _client(session).search_flights('NOPE1') == []
    assert session.params == [None]


def test_schedules_filters_only_given_fields():
    payload = {'scheduled': [{'ident': 'BAW117'}, {'ident': 'BAW115'}]}
    session = FakeSession(FakeResponse(payload=payload))

    scheduled = _client(session).get_schedules('2024-01-01', '2024-01-02', origin='EGLL', airline='BAW')

    assert len(scheduled) == 2
    assert session.urls == ['https://aero.example.com/aeroapi/schedules/2024-01-01/2024-01-02']
    assert session.params == [{'origin': 'EGLL', 'airline': 'BAW'}]
