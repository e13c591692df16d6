"""
Flight status standardization.

AeroAPI reports free-text statuses such as "En Route / On Time",
"Landed / Taxiing" or "Scheduled / Delayed". Only the phrase before the
separator describes the phase of flight; it is mapped onto the five
canonical states the tracker works with.
"""

from enum import Enum
from typing import Any


class FlightStatus(str, Enum):
    """Canonical journey status."""
    SCHEDULED = 'scheduled'
    TAXIING = 'taxiing'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    UNKNOWN = 'unknown'


STATUS_SEPARATOR = '/'

STATUS_PHRASES = {
    'landed': FlightStatus.COMPLETED,
    'arrived': FlightStatus.COMPLETED,
    'arrival': FlightStatus.COMPLETED,
    'completed': FlightStatus.COMPLETED,
    'en route': FlightStatus.ACTIVE,
    'enroute': FlightStatus.ACTIVE,
    'departed': FlightStatus.ACTIVE,
    'in-air': FlightStatus.ACTIVE,
    'in air': FlightStatus.ACTIVE,
    'airborne': FlightStatus.ACTIVE,
    'active': FlightStatus.ACTIVE,
    'taxi': FlightStatus.TAXIING,
    'taxiing': FlightStatus.TAXIING,
    'scheduled': FlightStatus.SCHEDULED,
    'not departed': FlightStatus.SCHEDULED,
    'filed': FlightStatus.SCHEDULED,
    'delayed': FlightStatus.SCHEDULED,
}


def standardize_status(raw: Any) -> str:
    """
    Map a raw feed status to a canonical status value.

    Never raises: None, non-strings and unrecognised phrases all map
    to 'unknown'.
    """
    if not isinstance(raw, str):
        return FlightStatus.UNKNOWN.value

    prefix = raw.split(STATUS_SEPARATOR, 1)[0].strip().lower()
    return STATUS_PHRASES.get(prefix, FlightStatus.UNKNOWN).value
