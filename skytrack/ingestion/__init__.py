"""
Data ingestion module for SkyTrack.

Handles polling AeroAPI for the tracked journey's position and feeding
new samples into the database and out to subscribers. The polling loop
lives in skytrack.ingestion.poller; it is not re-exported here because
it depends on the models package, which itself imports PositionSample.
"""

from skytrack.ingestion.aeroapi_client import (
    AeroApiClient,
    FlightInfo,
    FlightPosition,
    FlightTrack,
    PositionSample,
)

__all__ = ['AeroApiClient', 'FlightInfo', 'FlightPosition', 'FlightTrack', 'PositionSample']
