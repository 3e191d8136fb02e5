"""
QR credential codec.

Plain payloads are flat JSON objects carrying ``ticketId``, ``eventId`` and
``buyerId``. Signed payloads are HS256 JWTs with the same claims plus a nonce
and an expiry, so a copied code can't be altered or kept forever.
"""
import json
import uuid
from datetime import datetime, timedelta, timezone

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from .errors import IncompletePayload, InvalidSignature, MalformedPayload, TokenExpired
from .schemas import QRPayload

REQUIRED_FIELDS = ("ticketId", "eventId", "buyerId")
ALGORITHM = "HS256"
# Largest binary payload a version 40 QR symbol can carry.
MAX_PAYLOAD_BYTES = 2953


def encode(ticket_id: str, event_id: str, buyer_id: str) -> bytes:
    data = {"ticketId": ticket_id, "eventId": event_id, "buyerId": buyer_id}
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def _text(payload: bytes | str) -> str:
    if len(payload) > MAX_PAYLOAD_BYTES:
        raise MalformedPayload("payload is larger than a QR code can hold")
    if isinstance(payload, bytes):
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPayload("payload is not UTF-8 text")
    return payload


def _require_fields(data: dict) -> dict:
    out = {}
    for k in REQUIRED_FIELDS:
        v = data.get(k)
        if v is None or (isinstance(v, str) and not v.strip()):
            raise IncompletePayload(f"missing {k}")
        if not isinstance(v, str):
            raise MalformedPayload(f"{k} must be a string")
        out[k] = v
    return out


def decode(payload: bytes | str) -> QRPayload:
    try:
        data = json.loads(_text(payload))
    except json.JSONDecodeError:
        raise MalformedPayload("payload is not JSON")
    except RecursionError:
        raise MalformedPayload("payload nests too deeply")
    if not isinstance(data, dict):
        raise MalformedPayload("payload is not a JSON object")
    return QRPayload(**_require_fields(data))


def sign(
    ticket_id: str,
    event_id: str,
    buyer_id: str,
    secret: str,
    ttl_minutes: int = 60 * 24,
    nonce: str | None = None,
) -> bytes:
    now = datetime.now(timezone.utc)
    claims = {
        "ticketId": ticket_id,
        "eventId": event_id,
        "buyerId": buyer_id,
        "nonce": nonce or str(uuid.uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM).encode("ascii")


def verify(token: bytes | str, secret: str) -> QRPayload:
    try:
        claims = jwt.decode(_text(token).strip(), secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise TokenExpired()
    except JWTError:
        raise InvalidSignature()

    if claims.get("exp") is None or "nonce" not in claims:
        raise InvalidSignature("token lacks expiry or nonce")
    return QRPayload(**_require_fields(claims), nonce=claims["nonce"], signed=True)


def looks_signed(payload: bytes | str) -> bool:
    text = _text(payload).strip()
    return not text.startswith("{") and text.count(".") == 2


class QRCodec:
    """Issues and reads QR payloads according to the gate's signing policy."""

    def __init__(self, secret: str | None = None, ttl_minutes: int = 60 * 24, require_signed: bool = False):
        if require_signed and not secret:
            raise ValueError("require_signed needs a signing secret")
        self.secret = secret
        self.ttl_minutes = ttl_minutes
        self.require_signed = require_signed

    def encode(self, ticket_id: str, event_id: str, buyer_id: str) -> bytes:
        if self.secret:
            return sign(ticket_id, event_id, buyer_id, self.secret, self.ttl_minutes)
        return encode(ticket_id, event_id, buyer_id)

    def read(self, payload: bytes | str) -> QRPayload:
        if looks_signed(payload):
            if not self.secret:
                raise MalformedPayload("signed payloads are not accepted by this gate")
            return verify(payload, self.secret)
        if self.require_signed:
            raise InvalidSignature("unsigned payload")
        return decode(payload)
