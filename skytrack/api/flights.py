"""
Saved flight API endpoints.

Provides endpoints for:
- GET    /api/flights      - List all saved flights
- GET    /api/flights/<id> - Get one saved flight with its track
- POST   /api/flights/save - Register a flight from AeroAPI data
- DELETE /api/flights      - Delete a saved flight (not while tracked)
- POST   /api/flights/search - Search AeroAPI by flight number or schedule window
- POST   /api/flights/update_waypoints - Refresh stored waypoints from the feed
"""

import logging
from typing import Optional, List

from flask import Blueprint, jsonify, request, current_app

from skytrack.ingestion.aeroapi_client import FlightInfo, PositionSample
from skytrack.exceptions import NotFound
from skytrack.models import Journey, TrackPosition, PHASE_TIMESTAMP_FIELDS
from skytrack.tracking import metrics
from skytrack.tracking.merger import merge_track
from skytrack.tracking.status import standardize_status

logger = logging.getLogger(__name__)

flights_bp = Blueprint('flights', __name__, url_prefix='/api/flights')


def _store():
    return current_app.config['TRACKING_COORDINATOR'].store


def _client():
    return current_app.config['TRACKING_COORDINATOR'].client


def airport_descriptor(code: str, airport: Optional[dict], fallback: Optional[dict] = None) -> dict:
    """
    Reduce an AeroAPI airport record to the location fields we keep.

    Falls back to the airport stub embedded in the flight record when the
    airport lookup returned nothing.
    """
    airport = airport or {}
    fallback = fallback or {}
    return {
        'code': airport.get('airport_code') or fallback.get('code') or code,
        'code_iata': airport.get('code_iata') or fallback.get('code_iata'),
        'code_icao': airport.get('code_icao') or fallback.get('code_icao'),
        'name': airport.get('name') or fallback.get('name'),
        'city': airport.get('city') or fallback.get('city'),
        'country_code': airport.get('country_code'),
        'latitude': airport.get('latitude'),
        'longitude': airport.get('longitude'),
        'timezone': airport.get('timezone') or fallback.get('timezone'),
    }


def build_journey(
    info: FlightInfo,
    origin: dict,
    destination: dict,
    positions: List[PositionSample],
) -> Journey:
    """Create an unsaved Journey from feed data."""
    journey = Journey(
        fa_flight_id=info.fa_flight_id,
        ident=info.ident,
        operator=info.operator,
        flight_number=info.flight_number,
        registration=info.registration,
        aircraft_type=info.aircraft_type,
        origin=origin,
        destination=destination,
        route_distance=info.route_distance,
        filed_ete=info.filed_ete,
        status=info.status,
        standardized_status=standardize_status(info.status),
        cancelled=info.cancelled,
        diverted=info.diverted,
        is_tracking=False,
        departure_delay=metrics.departure_delay_seconds(info.actual_off, info.scheduled_off),
        arrival_delay=metrics.arrival_delay_seconds(info.actual_on, info.scheduled_on),
        estimated_arrival=metrics.estimated_arrival(info.actual_off, info.filed_ete),
    )
    for name in PHASE_TIMESTAMP_FIELDS:
        setattr(journey, name, getattr(info, name))

    ordered = merge_track([], positions)
    journey.track = [TrackPosition.from_sample(p) for p in ordered]
    last = ordered[-1] if ordered else None
    journey.progress_percent = metrics.progress_percent(ordered, last, origin, destination)
    return journey


@flights_bp.route('', methods=['GET'])
def list_flights():
    """List every saved flight (without tracks)."""
    journeys = _store().list_all()
    return jsonify({
        'flights': [j.to_dict(include_track=False) for j in journeys],
        'count': len(journeys),
    })


@flights_bp.route('/<fa_flight_id>', methods=['GET'])
def get_flight(fa_flight_id: str):
    """Get a saved flight including its full track."""
    return jsonify(_store().require(fa_flight_id).to_dict())


@flights_bp.route('/save', methods=['POST'])
def save_flight():
    """
    Register a flight for later tracking.

    Body: {"fa_flight_id": str, "origin": str, "destination": str}
    (origin and destination are airport codes)
    """
    data = request.get_json(silent=True) or {}
    fa_flight_id = data.get('fa_flight_id')
    origin_code = data.get('origin')
    destination_code = data.get('destination')

    if not fa_flight_id or not origin_code or not destination_code:
        return jsonify({'error': 'fa_flight_id, origin and destination required'}), 400

    store = _store()
    if store.get(fa_flight_id) is not None:
        return jsonify({'error': 'Flight already saved'}), 409

    client = _client()
    info = client.get_flight_info(fa_flight_id)
    if info is None:
        raise NotFound(fa_flight_id)

    origin = airport_descriptor(origin_code, client.get_airport_info(origin_code), info.origin)
    destination = airport_descriptor(destination_code, client.get_airport_info(destination_code), info.destination)
    positions = client.get_flight_track(fa_flight_id).positions

    journey = store.insert(build_journey(info, origin, destination, positions))
    logger.info(f'Saved flight {fa_flight_id} with {len(journey.track)} positions')

    return jsonify({
        'message': 'Flight metadata generated and saved',
        'flight': journey.to_dict(include_track=False),
    }), 201


@flights_bp.route('', methods=['DELETE'])
def delete_flight():
    """
    Delete a saved flight.

    Body: {"id": str}
    The flight being tracked cannot be deleted.
    """
    data = request.get_json(silent=True) or {}
    fa_flight_id = data.get('id')
    if not fa_flight_id:
        return jsonify({'error': 'Missing flight ID'}), 400

    store = _store()
    journey = store.require(fa_flight_id)
    if journey.is_tracking:
        return jsonify({'error': 'Cannot delete a flight that is being tracked'}), 409

    if not store.delete(fa_flight_id):
        return jsonify({'error': 'Cannot delete a flight that is being tracked'}), 409

    return jsonify({'message': 'Flight deleted'})


@flights_bp.route('/search', methods=['POST'])
def search_flights():
    """
    Search AeroAPI for flights to save.

    Body: {"flightNumber": str, "startDate": str, "endDate": str,
           "origin": str, "destination": str, "airline": str}

    With a flight number the dates are optional. Without one the
    schedules endpoint is used and both dates are required.
    """
    data = request.get_json(silent=True) or {}
    flight_number = data.get('flightNumber')
    start_date = data.get('startDate')
    end_date = data.get('endDate')

    client = _client()
    if flight_number:
        return jsonify({'flights': client.search_flights(flight_number, start=start_date, end=end_date)})

    if not start_date or not end_date:
        return jsonify({'error': 'startDate and endDate are required for schedule searches'}), 400

    scheduled = client.get_schedules(
        start_date,
        end_date,
        origin=data.get('origin'),
        destination=data.get('destination'),
        airline=data.get('airline'),
    )
    return jsonify({'flights': scheduled})


@flights_bp.route('/update_waypoints', methods=['POST'])
def update_waypoints():
    """
    Replace a saved flight's waypoints with the ones the feed reports.

    Body: {"fa_flight_id": str}
    Stored waypoints are left alone when the feed has none.
    """
    data = request.get_json(silent=True) or {}
    fa_flight_id = data.get('fa_flight_id')
    if not fa_flight_id:
        return jsonify({'error': 'Missing flight ID'}), 400

    store = _store()
    store.require(fa_flight_id)

    waypoints = _client().get_flight_position(fa_flight_id).waypoints
    if not waypoints:
        return jsonify({'message': 'No waypoints available for this flight'})

    store.update_fields(fa_flight_id, waypoints=waypoints)
    logger.info(f'Stored {len(waypoints)} waypoints for {fa_flight_id}')

    return jsonify({
        'status': 'success',
        'message': 'Waypoints updated successfully',
        'waypoints_count': len(waypoints),
    })
