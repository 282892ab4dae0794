"""Quote session model."""
import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import String, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column

from shiprate.database import Base
from shiprate.db_types import JSONType, UUIDType, UTCDateTime, utcnow


class QuoteSession(Base):
    """
    Short-lived set of priced options for one quote request.

    Options are stored as the JSON dump of ``QuoteOption`` schemas. At most
    one option can be selected; selection is written with a conditional
    UPDATE and ``version`` guards every other write.
    """
    __tablename__ = "quote_sessions"
    __table_args__ = (
        Index("idx_quote_session_owner_expiry", "owner_id", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    seller_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    request_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    options: Mapped[List[dict]] = mapped_column(JSONType, default=list)
    recommended_option_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    provider_timeouts: Mapped[dict] = mapped_column(
        JSONType,
        default=dict,
        comment="provider -> true when it timed out or failed"
    )
    provider_errors: Mapped[dict] = mapped_column(JSONType, default=dict)
    confidence: Mapped[str] = mapped_column(String(10), nullable=False, comment="high, medium, low")
    selection_mode: Mapped[str] = mapped_column(String(40), nullable=False)

    selected_option_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    selected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    booked_shipment_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    def find_option(self, option_id: str) -> Optional[dict]:
        for option in self.options or []:
            if option.get("option_id") == option_id:
                return option
        return None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def __repr__(self) -> str:
        return f"<QuoteSession(id='{self.id}', options={len(self.options or [])})>"
