from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TicketStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    REVOKED = "revoked"
    EXPIRED = "expired"


class ValidationType(str, Enum):
    QR_ONLY = "qr_only"
    IMAGE_VERIFICATION = "image_verification"


class Decision(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


class ReasonCode(str, Enum):
    OK = "OK"
    INVALID_TICKET_DATA = "INVALID_TICKET_DATA"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    DATA_MISMATCH = "DATA_MISMATCH"
    TICKET_NOT_ACTIVE = "TICKET_NOT_ACTIVE"
    ALREADY_USED = "ALREADY_USED"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    POOR_FRAMING = "POOR_FRAMING"
    RATE_LIMITED = "RATE_LIMITED"
    TRY_AGAIN = "TRY_AGAIN"


SECURE_TICKET_TYPE = "secure"


class QRPayload(BaseModel):
    """Identity triple carried by a scanned code."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ticket_id: str = Field(alias="ticketId")
    event_id: str = Field(alias="eventId")
    buyer_id: str = Field(alias="buyerId")
    nonce: Optional[str] = None
    signed: bool = False


class ValidationRecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    ticket_id: str
    validated_by: str
    validated_at: datetime
    validation_type: ValidationType
    is_valid: bool
    location: str = "Event Entrance"
    reason_code: str = ReasonCode.OK.value
    similarity: Optional[float] = None


class TicketView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    buyer_id: str
    ticket_type: str
    quantity: int
    status: TicketStatus
    buyer_image_url: Optional[str] = None
    purchase_date: datetime
    version: int
    validation_history: list[ValidationRecordView] = []

    @property
    def is_secure(self) -> bool:
        return self.ticket_type == SECURE_TICKET_TYPE

    @property
    def has_been_redeemed(self) -> bool:
        return any(r.is_valid for r in self.validation_history)


class ValidationOutcome(BaseModel):
    decision_id: str
    status: Decision
    reason_code: ReasonCode
    message: str
    ticket_id: Optional[str] = None
    similarity: Optional[float] = None
    ticket: Optional[TicketView] = None
    record: Optional[ValidationRecordView] = None

    @property
    def is_valid(self) -> bool:
        return self.status == Decision.ACCEPTED


class Fingerprint(BaseModel):
    """Comparable face descriptor derived from one captured image."""

    model_config = ConfigDict(frozen=True)

    values: tuple[float, ...]
    confidence: float
    digest: str
