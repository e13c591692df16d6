"""
Journey persistence.

Thin repository over the SQLAlchemy models. Every method opens its own
short-lived session so the polling thread, the sweeper and request
threads never share one. SQLAlchemy errors surface as PersistenceFailure.

Returned Journey objects are detached from their session but fully
loaded (the track relationship is eager), so they can be serialized
from any thread.
"""

import logging
from contextlib import contextmanager
from typing import Optional, List, Iterable, Generator

from sqlalchemy import select, update, exists
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker, aliased

from skytrack.exceptions import PersistenceFailure, DuplicateSample, NotFound, NotTracking
from skytrack.ingestion.aeroapi_client import PositionSample
from skytrack.models import Journey, TrackPosition, SessionLocal
from skytrack.tracking.merger import merge_track

logger = logging.getLogger(__name__)


class JourneyStore:
    """Repository for journeys and their tracks."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        """
        Session scope with commit/rollback.

        Translates database errors into PersistenceFailure; domain
        exceptions raised inside the block pass through unchanged.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f'Database error: {e}')
            raise PersistenceFailure(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, fa_flight_id: str) -> Optional[Journey]:
        with self._session() as session:
            return session.get(Journey, fa_flight_id)

    def require(self, fa_flight_id: str) -> Journey:
        journey = self.get(fa_flight_id)
        if journey is None:
            raise NotFound(fa_flight_id)
        return journey

    def list_all(self) -> List[Journey]:
        """Every journey, oldest registration first."""
        with self._session() as session:
            return list(session.scalars(
                select(Journey).order_by(Journey.created_at, Journey.fa_flight_id)
            ))

    def list_tracking(self) -> List[Journey]:
        with self._session() as session:
            return list(session.scalars(
                select(Journey).where(Journey.is_tracking.is_(True))
            ))

    def is_tracking(self, fa_flight_id: str) -> bool:
        with self._session() as session:
            flag = session.scalar(
                select(Journey.is_tracking).where(Journey.fa_flight_id == fa_flight_id)
            )
            return bool(flag)

    def has_sample(self, fa_flight_id: str, timestamp: str) -> bool:
        with self._session() as session:
            return session.scalar(
                select(exists().where(
                    TrackPosition.fa_flight_id == fa_flight_id,
                    TrackPosition.timestamp == timestamp,
                ))
            )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, journey: Journey) -> Journey:
        with self._session() as session:
            session.add(journey)
        return self.require(journey.fa_flight_id)

    def delete(self, fa_flight_id: str) -> bool:
        """
        Delete a journey that is not being tracked.

        Returns False if no such untracked journey exists.
        """
        with self._session() as session:
            journey = session.scalar(
                select(Journey).where(
                    Journey.fa_flight_id == fa_flight_id,
                    Journey.is_tracking.is_(False),
                )
            )
            if journey is None:
                return False
            session.delete(journey)
        return True

    def _load_for_write(self, session: Session, fa_flight_id: str, require_tracking: bool) -> Journey:
        journey = session.get(Journey, fa_flight_id)
        if journey is None:
            raise NotFound(fa_flight_id)
        if require_tracking and not journey.is_tracking:
            raise NotTracking(fa_flight_id)
        return journey

    def update_fields(self, fa_flight_id: str, require_tracking: bool = False, **fields) -> Journey:
        """
        Set attributes on a journey and return the refreshed record.

        With require_tracking the write only applies while the journey is
        flagged; otherwise NotTracking is raised and nothing changes.
        """
        with self._session() as session:
            journey = self._load_for_write(session, fa_flight_id, require_tracking)
            for name, value in fields.items():
                setattr(journey, name, value)
        return self.require(fa_flight_id)

    def claim_tracking(self, fa_flight_id: str) -> bool:
        """
        Set is_tracking on a journey only if no other journey has it set.

        A single conditional UPDATE, so two claims can never both succeed.
        Returns True when the flag is now held by this journey.
        """
        other = aliased(Journey)
        stmt = (
            update(Journey)
            .where(Journey.fa_flight_id == fa_flight_id)
            .where(~exists().where(
                other.is_tracking.is_(True),
                other.fa_flight_id != fa_flight_id,
            ))
            .values(is_tracking=True)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(stmt)
            claimed = result.rowcount == 1

        if not claimed:
            logger.warning(f'Tracking claim for {fa_flight_id} rejected')
        return claimed

    def release_others(self, keep_flight_id: str) -> int:
        """Clear is_tracking on every journey except one; returns rows changed."""
        stmt = (
            update(Journey)
            .where(Journey.is_tracking.is_(True))
            .where(Journey.fa_flight_id != keep_flight_id)
            .values(is_tracking=False)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            return session.execute(stmt).rowcount

    def append_sample(
        self,
        fa_flight_id: str,
        sample: PositionSample,
        require_tracking: bool = False,
        **fields,
    ) -> Journey:
        """
        Append one position to a journey's track.

        Extra keyword fields are written to the journey in the same
        transaction (e.g. the recomputed progress).

        Raises:
            DuplicateSample if the timestamp is already recorded
            NotTracking if require_tracking is set and the flag is clear
        """
        try:
            with self._session() as session:
                journey = self._load_for_write(session, fa_flight_id, require_tracking)

                position = TrackPosition.from_sample(sample)
                position.fa_flight_id = fa_flight_id
                session.add(position)
                for name, value in fields.items():
                    setattr(journey, name, value)
                session.flush()
        except PersistenceFailure as e:
            if isinstance(e.__cause__, IntegrityError):
                raise DuplicateSample(fa_flight_id, sample.timestamp) from e
            raise

        return self.require(fa_flight_id)

    def merge_track(self, fa_flight_id: str, incoming: Iterable[PositionSample]) -> Journey:
        """
        Merge fetched positions into the stored track.

        Stored samples always win; only positions with unseen timestamps
        are inserted.
        """
        with self._session() as session:
            journey = session.get(Journey, fa_flight_id)
            if journey is None:
                raise NotFound(fa_flight_id)

            existing = [p.to_sample() for p in journey.track]
            merged = merge_track(existing, incoming)
            known = {s.timestamp for s in existing}
            added = [s for s in merged if s.timestamp not in known]

            for sample in added:
                position = TrackPosition.from_sample(sample)
                position.fa_flight_id = fa_flight_id
                session.add(position)

        logger.info(
            f'Merged track for {fa_flight_id}: {len(existing)} stored + '
            f'{len(added)} new = {len(merged)} positions'
        )
        return self.require(fa_flight_id)

