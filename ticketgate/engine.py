import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np

from .biometric import BiometricMatcher
from .errors import (
    BiometricCaptureError, InputError, InvalidSignature, ReferenceImageUnavailable, TokenExpired,
)
from .qr import QRCodec
from .schemas import (
    Decision, Fingerprint, QRPayload, ReasonCode, TicketStatus, TicketView,
    ValidationOutcome, ValidationRecordView, ValidationType,
)
from .store import TicketStore

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "Event Entrance"

MESSAGES = {
    ReasonCode.OK: "entry granted",
    ReasonCode.INVALID_TICKET_DATA: "invalid ticket data",
    ReasonCode.INVALID_SIGNATURE: "invalid ticket signature",
    ReasonCode.TOKEN_EXPIRED: "ticket code has expired",
    ReasonCode.TICKET_NOT_FOUND: "ticket not found in database",
    ReasonCode.DATA_MISMATCH: "ticket data mismatch",
    ReasonCode.TICKET_NOT_ACTIVE: "ticket is not active",
    ReasonCode.ALREADY_USED: "ticket has already been used",
    ReasonCode.IDENTITY_MISMATCH: "identity mismatch",
    ReasonCode.NO_FACE_DETECTED: "no face detected, retake the photo",
    ReasonCode.LOW_CONFIDENCE: "face not clear enough, retake the photo",
    ReasonCode.POOR_FRAMING: "face not framed, retake the photo",
    ReasonCode.TRY_AGAIN: "system unavailable, try again",
}


class ValidationEngine:
    """
    Decides whether a scanned credential grants entry. It is the only writer
    of ticket status and validation history.
    """

    def __init__(
        self,
        store: TicketStore,
        matcher: Optional[BiometricMatcher] = None,
        codec: Optional[QRCodec] = None,
    ):
        self.store = store
        self.matcher = matcher
        self.codec = codec or QRCodec()

    def issue(self, ticket: TicketView) -> bytes:
        return self.codec.encode(ticket.id, ticket.event_id, ticket.buyer_id)

    def enroll_biometric(self, image: np.ndarray) -> Fingerprint:
        if self.matcher is None:
            raise ReferenceImageUnavailable("no biometric matcher configured")
        return self.matcher.enroll(image)

    def validate(
        self,
        payload: bytes | str,
        comparison_image: Optional[np.ndarray] = None,
        *,
        validated_by: str,
        location: str = DEFAULT_LOCATION,
        capture_face: Optional[Callable[[], np.ndarray]] = None,
    ) -> ValidationOutcome:
        decision_id = str(uuid.uuid4())

        # 1. parse (signature and expiry included); nothing is audited yet
        try:
            qr = self.codec.read(payload)
        except InputError as e:
            reason = _parse_reason(e)
            logger.info("validation decision_id=%s status=REJECTED reason=%s detail=%s",
                        decision_id, reason.value, e.detail)
            return _outcome(decision_id, Decision.REJECTED, reason)

        attempt = _Attempt(decision_id, qr, validated_by, location)

        # 2. lookup
        ticket = self.store.get_ticket_by_id(qr.ticket_id)
        if ticket is None:
            return self._reject(attempt, None, ReasonCode.TICKET_NOT_FOUND)

        # 3. identity triple must match what was issued
        if ticket.event_id != qr.event_id or ticket.buyer_id != qr.buyer_id:
            return self._reject(attempt, ticket, ReasonCode.DATA_MISMATCH)

        # 4. status
        if ticket.status == TicketStatus.USED:
            return self._reject(attempt, ticket, ReasonCode.ALREADY_USED)
        if ticket.status != TicketStatus.ACTIVE:
            return self._reject(attempt, ticket, ReasonCode.TICKET_NOT_ACTIVE,
                                message=f"ticket is {ticket.status.value}")

        # 5. replay: history is authoritative even if status says active
        if ticket.has_been_redeemed:
            return self._reject(attempt, ticket, ReasonCode.ALREADY_USED)

        # 6. biometric, secure tickets only
        similarity = None
        if ticket.is_secure:
            image = comparison_image
            if image is None and capture_face is not None:
                image = capture_face()
            if image is not None:
                if self.matcher is None:
                    raise ReferenceImageUnavailable("no biometric matcher configured")
                try:
                    similarity = self.matcher.verify(ticket, image)
                except BiometricCaptureError as e:
                    return self._reject(attempt, ticket, ReasonCode(e.reason_code))
                if not self.matcher.is_match(similarity):
                    return self._reject(attempt, ticket, ReasonCode.IDENTITY_MISMATCH, similarity=similarity)

        # 7. accept: status flip and record land together or not at all
        record = attempt.record(ticket, True, ReasonCode.OK, similarity)
        updated = self.store.redeem(ticket.id, ticket.version, record)
        if updated is None:
            logger.info("validation_race decision_id=%s ticket_id=%s", decision_id, ticket.id)
            return self._reject(attempt, ticket, ReasonCode.ALREADY_USED, similarity=similarity)

        logger.info("validation decision_id=%s ticket_id=%s status=ACCEPTED reason=OK", decision_id, ticket.id)
        return _outcome(decision_id, Decision.ACCEPTED, ReasonCode.OK, ticket_id=ticket.id, ticket=updated,
                        record=record, similarity=similarity)

    def _reject(
        self,
        attempt: "_Attempt",
        ticket: Optional[TicketView],
        reason: ReasonCode,
        *,
        message: Optional[str] = None,
        similarity: Optional[float] = None,
    ) -> ValidationOutcome:
        record = attempt.record(ticket, False, reason, similarity)
        self.store.append_record(record)
        logger.info("validation decision_id=%s ticket_id=%s status=REJECTED reason=%s",
                    attempt.decision_id, attempt.qr.ticket_id, reason.value)
        return _outcome(attempt.decision_id, Decision.REJECTED, reason, message=message,
                        ticket_id=attempt.qr.ticket_id, record=record, similarity=similarity)


class _Attempt:
    def __init__(self, decision_id: str, qr: QRPayload, validated_by: str, location: str):
        self.decision_id = decision_id
        self.qr = qr
        self.validated_by = validated_by
        self.location = location

    def record(self, ticket: Optional[TicketView], is_valid: bool, reason: ReasonCode,
               similarity: Optional[float]) -> ValidationRecordView:
        secure = ticket is not None and ticket.is_secure
        return ValidationRecordView(
            id=str(uuid.uuid4()),
            ticket_id=self.qr.ticket_id,
            validated_by=self.validated_by,
            validated_at=datetime.now(timezone.utc),
            validation_type=ValidationType.IMAGE_VERIFICATION if secure else ValidationType.QR_ONLY,
            is_valid=is_valid,
            location=self.location,
            reason_code=reason.value,
            similarity=similarity,
        )


def _parse_reason(e: InputError) -> ReasonCode:
    if isinstance(e, TokenExpired):
        return ReasonCode.TOKEN_EXPIRED
    if isinstance(e, InvalidSignature):
        return ReasonCode.INVALID_SIGNATURE
    return ReasonCode.INVALID_TICKET_DATA


def _outcome(decision_id: str, status: Decision, reason: ReasonCode, *, message: Optional[str] = None,
             **kwargs) -> ValidationOutcome:
    return ValidationOutcome(
        decision_id=decision_id,
        status=status,
        reason_code=reason,
        message=message or MESSAGES[reason],
        **kwargs,
    )


def error_outcome(detail: str = "") -> ValidationOutcome:
    """Infrastructure fault surfaced to a scanner as a retry prompt, never a rejection."""
    return ValidationOutcome(
        decision_id=str(uuid.uuid4()),
        status=Decision.ERROR,
        reason_code=ReasonCode.TRY_AGAIN,
        message=MESSAGES[ReasonCode.TRY_AGAIN] if not detail else f"{MESSAGES[ReasonCode.TRY_AGAIN]} ({detail})",
    )
