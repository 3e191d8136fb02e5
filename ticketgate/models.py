from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Float, Index, Integer, String, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, foreign

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationRecord(Base):
    __tablename__ = "validation_records"
    # seq orders the history; id is the public attempt identifier
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, unique=True)
    # No foreign key: attempts against unknown tickets are audited as well.
    ticket_id: Mapped[str] = mapped_column(String, index=True)
    validated_by: Mapped[str] = mapped_column(String)
    validated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    validation_type: Mapped[str] = mapped_column(String)
    is_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    location: Mapped[str] = mapped_column(String, default="Event Entrance")
    reason_code: Mapped[str] = mapped_column(String)
    similarity: Mapped[float | None] = mapped_column(Float, nullable=True)

    # At most one accepted attempt per ticket.
    __table_args__ = (
        Index(
            "uniq_valid_record_per_ticket",
            "ticket_id",
            unique=True,
            sqlite_where=text("is_valid = 1"),
            postgresql_where=text("is_valid"),
        ),
    )


class Ticket(Base):
    __tablename__ = "tickets"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    event_id: Mapped[str] = mapped_column(String, index=True)
    buyer_id: Mapped[str] = mapped_column(String, index=True)
    ticket_type: Mapped[str] = mapped_column(String, default="regular")
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    buyer_image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    version: Mapped[int] = mapped_column(Integer, default=1)

    validation_history: Mapped[list[ValidationRecord]] = relationship(
        ValidationRecord,
        primaryjoin=lambda: Ticket.id == foreign(ValidationRecord.ticket_id),
        order_by=ValidationRecord.seq,
        lazy="selectin",
        viewonly=True,
    )

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_ticket_quantity_positive"),)
