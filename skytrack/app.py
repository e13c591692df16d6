"""
SkyTrack Flask Application.

Main entry point for the web application. Initializes:
- Database schema
- Subscriber registry and tracking coordinator
- Recovery of a journey tracked before restart
- API routes and the subscriber WebSocket

Usage:
    python -m skytrack.app

Or with gunicorn:
    gunicorn 'skytrack.app:create_app()'
"""

import atexit
import logging
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS

from skytrack.config import config
from skytrack.exceptions import (
    AlreadyTracking,
    FeedUnavailable,
    NotFound,
    NotTracking,
    PersistenceFailure,
    SkyTrackError,
)
from skytrack.models import init_db
from skytrack.api import flights_bp, tracking_bp, sock
from skytrack.tracking.coordinator import TrackingCoordinator
from skytrack.tracking.recovery import RecoveryManager
from skytrack.tracking.subscribers import SubscriberRegistry

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


def create_app(coordinator: Optional[TrackingCoordinator] = None, start_tracking: bool = True) -> Flask:
    """
    Application factory for Flask.

    Args:
        coordinator: Pre-built coordinator (tests inject one wired to a
                     temporary database and a fake feed client).
        start_tracking: Whether to run startup recovery and the subscriber
                        sweeper. Set to False for testing.

    Returns:
        Configured Flask application instance.
    """
    app = Flask(__name__)

    # Configuration
    app.config['SECRET_KEY'] = config.secret_key

    # Enable CORS for API endpoints
    CORS(app, resources={r'/api/*': {'origins': '*'}})

    if coordinator is None:
        logger.info('Initializing database...')
        init_db()
        if not config.aeroapi.is_configured:
            logger.warning('AERO_API_KEY is not set, feed requests will be rejected')
        coordinator = TrackingCoordinator(registry=SubscriberRegistry())

    app.config['TRACKING_COORDINATOR'] = coordinator
    app.config['SUBSCRIBER_REGISTRY'] = coordinator.registry

    # Register API blueprints
    app.register_blueprint(flights_bp)
    app.register_blueprint(tracking_bp)
    sock.init_app(app)

    @app.route('/api/health')
    def health():
        """Simple health check endpoint."""
        return {'status': 'ok'}

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.errorhandler(NotFound)
    def flight_not_found(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(AlreadyTracking)
    def already_tracking(e):
        return jsonify({'error': str(e), 'active_flight_id': e.active_flight_id}), 409

    @app.errorhandler(NotTracking)
    def not_tracking(e):
        return jsonify({'error': str(e), 'active_flight_id': e.active_flight_id}), 409

    @app.errorhandler(FeedUnavailable)
    def feed_unavailable(e):
        logger.error(f'Feed error on {e.endpoint}: {e}')
        return jsonify({'error': 'Flight data provider unavailable', 'details': str(e)}), 502

    @app.errorhandler(PersistenceFailure)
    def persistence_failure(e):
        logger.error(f'Database error: {e}')
        return jsonify({'error': 'Database error'}), 500

    @app.errorhandler(404)
    def not_found(e):
        return {'error': 'Not found'}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f'Server error: {e}')
        return {'error': 'Internal server error'}, 500

    if start_tracking:
        coordinator.registry.start_sweeper()

        try:
            result = RecoveryManager(coordinator).recover()
            logger.info(f'Startup recovery: {result.action.value}')
        except SkyTrackError as e:
            logger.error(f'Startup recovery failed: {e}')

        atexit.register(coordinator.shutdown)

    return app


def run_development_server():
    """Run the development server."""
    app = create_app()

    logger.info(f'Starting SkyTrack on http://localhost:{config.port}')

    app.run(
        host='0.0.0.0',
        port=config.port,
        debug=config.debug,
        use_reloader=False,  # Reloader would start a second polling loop
    )


if __name__ == '__main__':
    run_development_server()
