import logging
import uuid
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import StoreUnavailable
from .models import Ticket, ValidationRecord
from .schemas import SECURE_TICKET_TYPE, TicketStatus, TicketView, ValidationRecordView

logger = logging.getLogger(__name__)

# Fields an administrator may change after purchase.
MUTABLE_FIELDS = {"status", "ticket_type", "quantity", "buyer_image_url"}


class TicketStore:
    """SQLAlchemy-backed ticket persistence. Tickets are never deleted."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("store_unavailable error=%s", e.__class__.__name__)
            raise StoreUnavailable(str(e)) from e
        finally:
            db.close()

    def create_ticket(
        self,
        event_id: str,
        buyer_id: str,
        ticket_type: str = "regular",
        quantity: int = 1,
        buyer_image_url: str | None = None,
        ticket_id: str | None = None,
    ) -> TicketView:
        if quantity < 1:
            raise ValueError("quantity must be a positive integer")
        if ticket_type == SECURE_TICKET_TYPE and not buyer_image_url:
            raise ValueError("secure tickets require a buyer image")

        with self._session() as db:
            t = Ticket(
                id=ticket_id or uuid.uuid4().hex,
                event_id=event_id,
                buyer_id=buyer_id,
                ticket_type=ticket_type,
                quantity=quantity,
                status=TicketStatus.ACTIVE.value,
                buyer_image_url=buyer_image_url,
                version=1,
            )
            db.add(t)
            db.commit()
            db.refresh(t)
            logger.info("ticket_created ticket_id=%s event_id=%s type=%s", t.id, event_id, ticket_type)
            return TicketView.model_validate(t)

    def get_ticket_by_id(self, ticket_id: str) -> TicketView | None:
        with self._session() as db:
            t = db.get(Ticket, ticket_id)
            return TicketView.model_validate(t) if t else None

    def update_ticket(self, ticket_id: str, expected_version: int | None = None, **fields) -> TicketView | None:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update immutable fields: {', '.join(sorted(unknown))}")
        if "status" in fields:
            fields["status"] = TicketStatus(fields["status"]).value

        with self._session() as db:
            t = db.get(Ticket, ticket_id, with_for_update=True)
            if not t:
                return None
            if expected_version is not None and t.version != expected_version:
                raise ValueError("ticket changed concurrently, reload and retry")
            for key, value in fields.items():
                setattr(t, key, value)
            t.version += 1
            db.commit()
            db.refresh(t)
            return TicketView.model_validate(t)

    def append_record(self, record: ValidationRecordView) -> None:
        """Audit a failed attempt; ticket status is left untouched."""
        if record.is_valid:
            raise ValueError("accepted attempts are written through redeem()")
        with self._session() as db:
            db.add(ValidationRecord(**_record_columns(record)))
            db.commit()

    def redeem(self, ticket_id: str, expected_version: int, record: ValidationRecordView) -> TicketView | None:
        """
        Flip an active ticket to used and append its accepting record in one
        transaction. Returns None when the ticket is no longer active at the
        expected version, i.e. another scanner got there first.
        """
        with self._session() as db:
            result = db.execute(
                update(Ticket)
                .where(
                    Ticket.id == ticket_id,
                    Ticket.status == TicketStatus.ACTIVE.value,
                    Ticket.version == expected_version,
                )
                .values(status=TicketStatus.USED.value, version=Ticket.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return None

            db.add(ValidationRecord(**_record_columns(record)))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("redeem_conflict ticket_id=%s", ticket_id)
                return None

            t = db.get(Ticket, ticket_id, populate_existing=True)
            return TicketView.model_validate(t)

    def list_event_tickets(self, event_id: str, limit: int = 500) -> list[TicketView]:
        with self._session() as db:
            rows = db.execute(
                select(Ticket).where(Ticket.event_id == event_id).order_by(Ticket.purchase_date).limit(limit)
            ).scalars().all()
            return [TicketView.model_validate(t) for t in rows]

    def list_records(self, ticket_id: str | None = None, limit: int = 80) -> list[ValidationRecordView]:
        with self._session() as db:
            q = select(ValidationRecord).order_by(ValidationRecord.seq.desc()).limit(limit)
            if ticket_id:
                q = q.where(ValidationRecord.ticket_id == ticket_id)
            return [ValidationRecordView.model_validate(r) for r in db.execute(q).scalars().all()]


def _record_columns(record: ValidationRecordView) -> dict:
    cols = record.model_dump()
    cols["validation_type"] = record.validation_type.value
    return cols
