"""
API module for SkyTrack.

Provides REST endpoints for:
- Saved flights (list, save, delete)
- Tracking control (start, stop, state)
- Live subscriber WebSocket
"""

from skytrack.api.flights import flights_bp
from skytrack.api.tracking import tracking_bp, sock

__all__ = ['flights_bp', 'tracking_bp', 'sock']
