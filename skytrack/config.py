"""
Configuration management for SkyTrack.

Loads settings from environment variables with sensible defaults.
All configuration is centralized here to avoid magic numbers scattered
throughout the tracking code.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class AeroApiConfig:
    """FlightAware AeroAPI configuration."""
    api_key: str = os.getenv('AERO_API_KEY', '')
    base_url: str = os.getenv('AERO_API_BASE', 'https://aeroapi.flightaware.com/aeroapi')
    timeout_seconds: float = float(os.getenv('AERO_API_TIMEOUT_SECONDS', '30'))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""
    url: str = os.getenv('DATABASE_URL', 'sqlite:///skytrack.db')

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')


@dataclass(frozen=True)
class TrackingConfig:
    """Polling loop settings."""
    # AeroAPI bills per request, once a minute is plenty for a cruising aircraft
    poll_interval: int = int(os.getenv('POLL_INTERVAL_SECONDS', '60'))
    max_consecutive_errors: int = int(os.getenv('MAX_CONSECUTIVE_ERRORS', '5'))

    # Skip the historical track fetch for journeys that only just began
    history_buffer_seconds: int = 300

    # Altitude (hundreds of feet) at or below which a stopped aircraft is on the ground
    ground_altitude: int = 0


@dataclass(frozen=True)
class SubscriberConfig:
    """WebSocket subscriber lifecycle settings."""
    setup_timeout_seconds: float = 5.0
    stabilization_delay_seconds: float = 1.0
    sweep_interval_seconds: float = 30.0


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""
    aeroapi: AeroApiConfig
    database: DatabaseConfig
    tracking: TrackingConfig
    subscribers: SubscriberConfig

    # Flask settings
    secret_key: str
    debug: bool
    log_level: str
    port: int


def load_config() -> AppConfig:
    """Load and validate all configuration."""
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    return AppConfig(
        aeroapi=AeroApiConfig(),
        database=DatabaseConfig(),
        tracking=TrackingConfig(),
        subscribers=SubscriberConfig(),
        secret_key=os.getenv('SECRET_KEY', 'dev-key-change-in-prod'),
        debug=debug,
        log_level=os.getenv('LOG_LEVEL', 'DEBUG' if debug else 'INFO').upper(),
        port=int(os.getenv('PORT', '3001')),
    )


# Singleton instance
config = load_config()
