"""
TrackPosition model - the recorded track of a journey.

Every position observed while a journey is tracked is stored here.
Rows are append-only; the only rewrite is the merge of a historical
track fetched when tracking starts or resumes.

Schema optimized for:
- Duplicate rejection by (journey, feed timestamp)
- Chronological reads of one journey's track
"""

from typing import Optional

from sqlalchemy import String, Float, Integer, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from skytrack.models.base import Base
from skytrack.ingestion.aeroapi_client import PositionSample
from skytrack.tracking.metrics import timestamp_epoch


class TrackPosition(Base):
    """
    One observed position of a journey.

    The feed timestamp string identifies the sample within its journey;
    the integer epoch column exists for ordering, since string order and
    time order only agree when every timestamp uses the same format.
    """

    __tablename__ = 'track_positions'

    # Surrogate primary key
    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    fa_flight_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey('journeys.fa_flight_id', ondelete='CASCADE'),
        nullable=False,
        comment='Owning journey'
    )

    timestamp: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment='ISO-8601 timestamp as reported by the feed'
    )

    epoch: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment='Unix timestamp of the observation'
    )

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    altitude: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment='Altitude in hundreds of feet'
    )

    groundspeed: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment='Ground speed in knots'
    )

    heading: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment='Heading in degrees (0-360)'
    )

    altitude_change: Mapped[Optional[str]] = mapped_column(
        String(1),
        nullable=True,
        comment='C=climbing, D=descending, -=level'
    )

    update_type: Mapped[Optional[str]] = mapped_column(
        String(1),
        nullable=True,
        comment='P=projected, O=oceanic, Z=radar, A=ADS-B, M=MLAT, D=datalink, X=surface, S=space'
    )

    journey = relationship('Journey', back_populates='track')

    __table_args__ = (
        UniqueConstraint('fa_flight_id', 'timestamp', name='uq_track_positions_flight_timestamp'),
        Index('ix_track_positions_flight_epoch', 'fa_flight_id', 'epoch'),
    )

    def __repr__(self) -> str:
        return f'<TrackPosition {self.fa_flight_id} @ {self.timestamp}>'

    @classmethod
    def from_sample(cls, sample: PositionSample) -> 'TrackPosition':
        return cls(
            timestamp=sample.timestamp,
            epoch=timestamp_epoch(sample.timestamp),
            latitude=sample.latitude,
            longitude=sample.longitude,
            altitude=sample.altitude,
            groundspeed=sample.groundspeed,
            heading=sample.heading,
            altitude_change=sample.altitude_change,
            update_type=sample.update_type,
        )

    def to_sample(self) -> PositionSample:
        return PositionSample(
            timestamp=self.timestamp,
            latitude=self.latitude,
            longitude=self.longitude,
            altitude=self.altitude,
            groundspeed=self.groundspeed,
            heading=self.heading,
            altitude_change=self.altitude_change,
            update_type=self.update_type,
        )
