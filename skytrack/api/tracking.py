"""
Tracking control API endpoints.

Provides endpoints for:
- POST /api/tracking/start - Start tracking a saved flight
- POST /api/tracking/stop  - Stop tracking the active flight
- GET  /api/tracking/state - Current snapshot (same as initial_state)
- GET  /api/tracking/status - Polling and subscriber statistics
- WS   /ws                  - Live subscriber stream

Tracking errors (unknown flight, slot already taken, feed down) are
raised by the coordinator and mapped to HTTP responses by the error
handlers registered in app.py.
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request, current_app
from flask_sock import Sock
from simple_websocket import ConnectionClosed

logger = logging.getLogger(__name__)

tracking_bp = Blueprint('tracking', __name__, url_prefix='/api/tracking')

sock = Sock()


def _coordinator():
    return current_app.config['TRACKING_COORDINATOR']


def _flight_id_from_body():
    data = request.get_json(silent=True) or {}
    return data.get('fa_flight_id')


@tracking_bp.route('/start', methods=['POST'])
def start_tracking():
    """
    Start tracking a flight.

    Body: {"fa_flight_id": str}
    """
    fa_flight_id = _flight_id_from_body()
    if not fa_flight_id:
        return jsonify({'error': 'Missing flight ID'}), 400

    result = _coordinator().start(fa_flight_id)

    if result.already_started:
        return jsonify({'message': 'Flight is already being tracked'})

    return jsonify({
        'message': 'Tracking started successfully',
        'fa_flight_id': result.fa_flight_id,
        'historical_positions': result.historical_positions,
    })


@tracking_bp.route('/stop', methods=['POST'])
def stop_tracking():
    """
    Stop tracking the active flight.

    Body: {"fa_flight_id": str}
    """
    fa_flight_id = _flight_id_from_body()
    if not fa_flight_id:
        return jsonify({'error': 'Missing flight ID'}), 400

    result = _coordinator().stop(fa_flight_id)

    return jsonify({
        'message': 'Tracking stopped successfully',
        'fa_flight_id': result.fa_flight_id,
        'standardized_status': result.flight['standardized_status'] if result.flight else None,
    })


@tracking_bp.route('/state', methods=['GET'])
def tracking_state():
    """Get the same snapshot a new subscriber receives."""
    return jsonify(_coordinator().current_state())


@tracking_bp.route('/status', methods=['GET'])
def tracking_status():
    """Get polling loop and subscriber statistics."""
    coordinator = _coordinator()
    return jsonify({
        **coordinator.stats,
        'feed_requests': getattr(coordinator.client, 'request_count', None),
        'timestamp': datetime.now(timezone.utc).isoformat(),
    })


@sock.route('/ws')
def subscriber_socket(ws):
    """
    Live update stream.

    The connection is registered as pending; the registry sends the
    initial_state snapshot once it has stabilized. Incoming messages are
    only logged.
    """
    registry = current_app.config['SUBSCRIBER_REGISTRY']
    connection = registry.on_open(ws)

    try:
        while True:
            message = ws.receive()
            if message is not None:
                logger.debug(f'Received message from subscriber {connection.id}: {message}')
    except ConnectionClosed:
        pass
    finally:
        registry.on_close(connection)
