"""
Tracking core for SkyTrack.

Pure building blocks are re-exported here; the stateful pieces
(coordinator, recovery, subscriber registry) are imported from their
modules directly, since they depend on the models package which in
turn depends on these helpers.
"""

from skytrack.tracking.merger import merge_track
from skytrack.tracking.status import FlightStatus, standardize_status
from skytrack.tracking.events import EventType, encode_event

__all__ = [
    'merge_track',
    'FlightStatus',
    'standardize_status',
    'EventType',
    'encode_event',
]
