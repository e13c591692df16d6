"""
Journey model - one registered flight and its tracking state.

Design notes:
- One row per AeroAPI fa_flight_id
- At most one row has is_tracking=True; the tracking coordinator
  enforces this with a conditional update, not a database constraint
- Phase timestamps are kept as the ISO-8601 strings AeroAPI returns
- Derived metrics (progress, delays, ETA) are recomputed by the tracker
"""

from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import String, Float, Integer, DateTime, Boolean, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from skytrack.models.base import Base
from skytrack.models.track_position import TrackPosition
from skytrack.tracking.status import FlightStatus


PHASE_TIMESTAMP_FIELDS = (
    'scheduled_out', 'estimated_out', 'actual_out',
    'scheduled_off', 'estimated_off', 'actual_off',
    'scheduled_on', 'estimated_on', 'actual_on',
    'scheduled_in', 'estimated_in', 'actual_in',
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Journey(Base):
    """
    A flight registered for tracking.

    Origin and destination are JSON airport descriptors:
    code, name, city, country_code, latitude, longitude, timezone.
    """

    __tablename__ = 'journeys'

    fa_flight_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment='FlightAware flight identifier'
    )

    # Identification
    ident: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, index=True)
    operator: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    flight_number: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    registration: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    aircraft_type: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    # Route
    origin: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    destination: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    route_distance: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment='Planned route distance in statute miles'
    )
    filed_ete: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment='Filed en-route time in seconds'
    )
    waypoints: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Phase boundaries: gate out, runway off, runway on, gate in
    scheduled_out: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    estimated_out: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    actual_out: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    scheduled_off: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    estimated_off: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    actual_off: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    scheduled_on: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    estimated_on: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    actual_on: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    scheduled_in: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    estimated_in: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    actual_in: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    # Status
    status: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment='Free-text status from the feed'
    )
    standardized_status: Mapped[str] = mapped_column(
        String(16),
        default=FlightStatus.UNKNOWN.value,
        comment='scheduled/taxiing/active/completed/unknown'
    )
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    diverted: Mapped[bool] = mapped_column(Boolean, default=False)

    is_tracking: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment='Currently being polled; true for at most one row'
    )

    # Derived metrics
    progress_percent: Mapped[float] = mapped_column(Float, default=0.0)
    departure_delay: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment='Takeoff delay in seconds'
    )
    arrival_delay: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment='Touchdown delay in seconds'
    )
    estimated_arrival: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    # Record timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    track: Mapped[List[TrackPosition]] = relationship(
        TrackPosition,
        back_populates='journey',
        order_by=[TrackPosition.epoch, TrackPosition.id],
        cascade='all, delete-orphan',
        lazy='selectin',
    )

    __table_args__ = (
        Index('ix_journeys_is_tracking', 'is_tracking'),
        Index('ix_journeys_status', 'standardized_status'),
    )

    def __repr__(self) -> str:
        return f'<Journey {self.fa_flight_id} {self.ident or "?"} {self.standardized_status}>'

    @property
    def last_position(self) -> Optional[TrackPosition]:
        return self.track[-1] if self.track else None

    @property
    def last_track_epoch(self) -> int:
        """Epoch of the newest recorded position, 0 for an empty track."""
        return self.track[-1].epoch if self.track else 0

    def to_dict(self, include_track: bool = True) -> dict:
        """Convert to JSON-serializable dict for API responses and broadcasts."""
        data = {
            'fa_flight_id': self.fa_flight_id,
            'ident': self.ident,
            'operator': self.operator,
            'flight_number': self.flight_number,
            'registration': self.registration,
            'aircraft_type': self.aircraft_type,
            'origin': self.origin,
            'destination': self.destination,
            'route_distance': self.route_distance,
            'filed_ete': self.filed_ete,
            'waypoints': self.waypoints or [],
            'status': self.status,
            'standardized_status': self.standardized_status,
            'cancelled': bool(self.cancelled),
            'diverted': bool(self.diverted),
            'is_tracking': bool(self.is_tracking),
            'progress_percent': self.progress_percent or 0.0,
            'departure_delay': self.departure_delay or 0,
            'arrival_delay': self.arrival_delay or 0,
            'estimated_arrival': self.estimated_arrival,
        }
        for name in PHASE_TIMESTAMP_FIELDS:
            data[name] = getattr(self, name)
        if include_track:
            data['track'] = [p.to_sample().to_dict() for p in self.track]
        return data
