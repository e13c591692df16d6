"""WebSocket event names and the JSON envelope they travel in."""

import json
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Events pushed to subscribers."""
    INITIAL_STATE = 'initial_state'
    CLIENT_ADDED = 'client_added'
    CLIENT_REMOVED = 'client_removed'
    START_FLIGHT = 'start_flight'
    POSITION_UPDATE = 'position_update'
    FLIGHT_STATUS_UPDATE = 'flight_status_update'
    FLIGHT_COMPLETED = 'flight_completed'


def encode_event(event: EventType, data: Any) -> str:
    """Serialize an event as {"event": <name>, "data": <payload>}."""
    return json.dumps({'event': EventType(event).value, 'data': data}, default=str)
