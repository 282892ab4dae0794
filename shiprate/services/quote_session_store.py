"""
Quote Session Store.

Sessions are written once by the quote engine and afterwards only touched
through conditional UPDATEs: selection and the booking claim are keyed on
(id, not expired, not booked, no other option selected) and booking on
(id, version, not booked), so two near-simultaneous callers can never both
win.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from shiprate.config import settings
from shiprate.core.exceptions import (
    InvalidOption, NotFoundError, PersistenceConflict, SessionExpired
)
from shiprate.db_types import utcnow
from shiprate.models.quote_session import QuoteSession
from shiprate.schemas.quote import QuoteOption, QuoteRequest

logger = logging.getLogger(__name__)


class QuoteSessionStore:
    """Persistence for quote sessions with single-selection semantics."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def create(
        self,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID],
        request: QuoteRequest,
        options: List[QuoteOption],
        recommended_option_id: Optional[str],
        provider_timeouts: Dict[str, bool],
        provider_errors: Dict[str, str],
        confidence: str,
        selection_mode: str,
        selected_option_id: Optional[str] = None,
    ) -> QuoteSession:
        now = self.clock()
        session = QuoteSession(
            owner_id=owner_id,
            seller_id=seller_id,
            request_snapshot=request.model_dump(mode="json"),
            options=[o.model_dump(mode="json") for o in options],
            recommended_option_id=recommended_option_id,
            provider_timeouts=provider_timeouts,
            provider_errors=provider_errors,
            confidence=confidence,
            selection_mode=selection_mode,
            selected_option_id=selected_option_id,
            selected_at=now if selected_option_id else None,
            expires_at=now + timedelta(minutes=settings.QUOTE_SESSION_TTL_MINUTES),
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.db.add(session)
        await self.db.flush()
        logger.info(
            f"Quote session {session.id} created with {len(options)} options "
            f"(confidence={confidence})"
        )
        return session

    async def get(self, owner_id: uuid.UUID, session_id: uuid.UUID, refresh: bool = False) -> QuoteSession:
        stmt = select(QuoteSession).where(
            QuoteSession.id == session_id,
            QuoteSession.owner_id == owner_id,
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundError(f"Quote session {session_id} not found")
        return session

    def _check_selectable(self, session: QuoteSession, option_id: str, now: datetime) -> bool:
        """
        Validate a selection against the current row.

        Returns:
            True when the option is already selected (idempotent repeat)
        """
        if session.is_expired(now):
            raise SessionExpired(
                f"Quote session {session.id} expired at {session.expires_at.isoformat()}",
                details={"session_id": str(session.id)},
            )
        if session.find_option(option_id) is None:
            raise InvalidOption(
                f"Option {option_id} is not part of quote session {session.id}",
                details={"session_id": str(session.id), "option_id": option_id},
            )
        if session.selected_option_id == option_id:
            return True
        if session.selected_option_id is not None:
            raise InvalidOption(
                f"Quote session {session.id} already has option "
                f"{session.selected_option_id} selected",
                details={
                    "session_id": str(session.id),
                    "selected_option_id": session.selected_option_id,
                },
            )
        if session.booked_shipment_id is not None:
            raise InvalidOption(f"Quote session {session.id} is already booked")
        return False

    async def _take(self, session: QuoteSession, option_id: str, now: datetime) -> bool:
        """Conditional UPDATE: live, unbooked, and free or already on ``option_id``."""
        result = await self.db.execute(
            update(QuoteSession)
            .where(
                QuoteSession.id == session.id,
                QuoteSession.owner_id == session.owner_id,
                QuoteSession.expires_at > now,
                QuoteSession.booked_shipment_id.is_(None),
                or_(
                    QuoteSession.selected_option_id.is_(None),
                    QuoteSession.selected_option_id == option_id,
                ),
            )
            .values(
                selected_option_id=option_id,
                selected_at=session.selected_at or now,
                version=QuoteSession.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def select_option(
        self,
        owner_id: uuid.UUID,
        session_id: uuid.UUID,
        option_id: str,
    ) -> QuoteSession:
        """Mark exactly one option as selected."""
        now = self.clock()
        session = await self.get(owner_id, session_id)
        if self._check_selectable(session, option_id, now):
            return session

        claimed = await self._take(session, option_id, now)

        session = await self.get(owner_id, session_id, refresh=True)
        if not claimed:
            # Lost the race: report whatever the winner left behind
            if not self._check_selectable(session, option_id, now):
                raise PersistenceConflict(f"Quote session {session_id} changed during selection")
            return session

        logger.info(f"Option {option_id} selected on quote session {session_id}")
        return session

    async def claim_for_booking(
        self,
        session: QuoteSession,
        option_id: str,
    ) -> QuoteSession:
        """
        Take the session for a booking of ``option_id`` before any carrier is called.

        Unlike ``select_option`` this always goes through the conditional
        UPDATE, so a booking that landed since ``session`` was read is seen.

        Raises:
            SessionExpired: the session expired
            InvalidOption: another option is selected or the session is booked
            PersistenceConflict: the row changed and the cause is not visible
        """
        now = self.clock()
        claimed = await self._take(session, option_id, now)
        session = await self.get(session.owner_id, session.id, refresh=True)
        if claimed:
            return session

        if session.booked_shipment_id is not None:
            raise InvalidOption(
                f"Quote session {session.id} is already booked",
                details={
                    "session_id": str(session.id),
                    "booked_shipment_id": str(session.booked_shipment_id),
                },
            )
        self._check_selectable(session, option_id, now)
        raise PersistenceConflict(f"Quote session {session.id} changed during booking")

    async def mark_booked(
        self,
        session: QuoteSession,
        option_id: str,
        shipment_id: uuid.UUID,
    ) -> QuoteSession:
        """Lock the booked option onto the session, retrying on version conflicts."""
        for attempt in range(settings.PERSISTENCE_MAX_RETRIES):
            now = self.clock()
            result = await self.db.execute(
                update(QuoteSession)
                .where(
                    QuoteSession.id == session.id,
                    QuoteSession.version == session.version,
                    QuoteSession.booked_shipment_id.is_(None),
                )
                .values(
                    selected_option_id=option_id,
                    selected_at=session.selected_at or now,
                    booked_shipment_id=shipment_id,
                    version=QuoteSession.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session = await self.get(session.owner_id, session.id, refresh=True)
            if result.rowcount:
                return session
            if session.booked_shipment_id == shipment_id:
                return session
            if session.booked_shipment_id is not None:
                raise InvalidOption(
                    f"Quote session {session.id} is already booked by shipment "
                    f"{session.booked_shipment_id}",
                    details={
                        "session_id": str(session.id),
                        "booked_shipment_id": str(session.booked_shipment_id),
                    },
                )
            logger.info(f"Version conflict booking session {session.id}, attempt {attempt + 1}")

        raise PersistenceConflict(
            f"Could not lock quote session {session.id} after "
            f"{settings.PERSISTENCE_MAX_RETRIES} attempts"
        )

    async def purge_expired(self, before: datetime) -> int:
        """Delete unbooked sessions that expired before ``before``."""
        result = await self.db.execute(
            delete(QuoteSession)
            .where(
                QuoteSession.expires_at < before,
                QuoteSession.booked_shipment_id.is_(None),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
