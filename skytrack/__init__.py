"""
SkyTrack - live tracking for a personal flight log.

Saves flights from FlightAware AeroAPI, tracks one of them at a time by
polling its position, and streams updates to WebSocket subscribers.
"""

__version__ = '1.0.0'
