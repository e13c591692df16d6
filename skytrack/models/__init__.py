"""
Database models for SkyTrack.

Two tables:
1. journeys         - registered flights and the single tracking flag
2. track_positions  - append-only observed positions per journey
"""

from skytrack.models.base import Base, engine, SessionLocal, init_db, build_engine, build_session_factory
from skytrack.models.track_position import TrackPosition
from skytrack.models.journey import Journey, PHASE_TIMESTAMP_FIELDS

__all__ = [
    'Base',
    'engine',
    'SessionLocal',
    'init_db',
    'build_engine',
    'build_session_factory',
    'TrackPosition',
    'Journey',
    'PHASE_TIMESTAMP_FIELDS',
]
