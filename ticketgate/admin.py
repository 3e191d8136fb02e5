import base64
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from .imaging import render_qr_png
from .schemas import TicketStatus

router = APIRouter(prefix="/admin", tags=["admin"])


# -------------------------
# Issuance
# -------------------------
class CreateTicketReq(BaseModel):
    event_id: str
    buyer_id: str
    ticket_type: str = "regular"
    quantity: int = 1
    buyer_image_url: Optional[str] = None
    include_png: bool = False

@router.post("/tickets")
def create_ticket(req: CreateTicketReq, request: Request):
    engine = request.app.state.engine
    try:
        ticket = engine.store.create_ticket(
            event_id=req.event_id,
            buyer_id=req.buyer_id,
            ticket_type=req.ticket_type,
            quantity=req.quantity,
            buyer_image_url=req.buyer_image_url,
        )
    except ValueError as e:
        return {"ok": False, "error": str(e)}

    payload = engine.issue(ticket)
    out = {"ok": True, "ticket": ticket.model_dump(mode="json"), "qr_payload": payload.decode("utf-8")}
    if req.include_png:
        out["qr_png_b64"] = base64.b64encode(render_qr_png(payload)).decode("ascii")
    return out


# -------------------------
# Inspection
# -------------------------
@router.get("/tickets/{ticket_id}")
def get_ticket(ticket_id: str, request: Request):
    ticket = request.app.state.engine.store.get_ticket_by_id(ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="ticket not found")
    return ticket.model_dump(mode="json")

@router.get("/events/{event_id}/tickets")
def list_tickets(event_id: str, request: Request, limit: int = 500):
    tickets = request.app.state.engine.store.list_event_tickets(event_id, limit=limit)
    return [
        {
            "ticket_id": t.id,
            "buyer_id": t.buyer_id,
            "ticket_type": t.ticket_type,
            "status": t.status.value,
            "attempts": len(t.validation_history),
        }
        for t in tickets
    ]


# -------------------------
# Revocation
# -------------------------
@router.post("/tickets/{ticket_id}/revoke")
def revoke_ticket(ticket_id: str, request: Request):
    store = request.app.state.engine.store
    ticket = store.get_ticket_by_id(ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="ticket not found")
    if ticket.status != TicketStatus.ACTIVE:
        return {"ok": False, "error": f"ticket is {ticket.status.value}"}

    try:
        updated = store.update_ticket(ticket_id, expected_version=ticket.version, status=TicketStatus.REVOKED)
    except ValueError as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True, "ticket_id": ticket_id, "status": updated.status.value}


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(request: Request, limit: int = 80, ticket_id: Optional[str] = None):
    records = request.app.state.engine.store.list_records(ticket_id=ticket_id, limit=limit)
    return [
        {
            "validated_at": str(r.validated_at),
            "ticket_id": r.ticket_id,
            "validated_by": r.validated_by,
            "validation_type": r.validation_type.value,
            "is_valid": r.is_valid,
            "reason_code": r.reason_code,
            "record_id": r.id,
        }
        for r in records
    ]
