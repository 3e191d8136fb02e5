import base64
import io

import numpy as np
import pytest
from PIL import Image

from tests.helpers import face_image, issue_ticket, scan

pytestmark = pytest.mark.asyncio


def png_b64(array):
    buf = io.BytesIO()
    Image.fromarray(array).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


async def test_issue_ticket_with_png(client):
    data = await issue_ticket(client, event_id="evt_png", include_png=True)
    assert data["ticket"]["status"] == "active"
    assert data["ticket"]["validation_history"] == []
    assert base64.b64decode(data["qr_png_b64"]).startswith(b"\x89PNG")

async def test_secure_ticket_requires_photo(client):
    r = await client.post("/admin/tickets", json={"event_id": "evt_1", "buyer_id": "b", "ticket_type": "secure"})
    assert r.json() == {"ok": False, "error": "secure tickets require a buyer image"}

async def test_quantity_must_be_positive(client):
    r = await client.post("/admin/tickets", json={"event_id": "evt_1", "buyer_id": "b", "quantity": 0})
    assert r.json()["ok"] is False

async def test_get_and_list_tickets(client):
    first = await issue_ticket(client, event_id="evt_list", buyer_id="b1")
    await issue_ticket(client, event_id="evt_list", buyer_id="b2")
    await issue_ticket(client, event_id="evt_other", buyer_id="b3")
    await scan(client, first["qr_payload"])

    listed = (await client.get("/admin/events/evt_list/tickets")).json()
    assert sorted(t["buyer_id"] for t in listed) == ["b1", "b2"]
    assert {t["buyer_id"]: t["status"] for t in listed} == {"b1": "used", "b2": "active"}

    one = (await client.get(f"/admin/tickets/{first['ticket']['id']}")).json()
    assert one["status"] == "used"
    assert one["validation_history"][0]["is_valid"] is True

    missing = await client.get("/admin/tickets/does-not-exist")
    assert missing.status_code == 404

async def test_cannot_revoke_used_ticket(client):
    ticket = await issue_ticket(client)
    await scan(client, ticket["qr_payload"])
    r = (await client.post(f"/admin/tickets/{ticket['ticket']['id']}/revoke")).json()
    assert r == {"ok": False, "error": "ticket is used"}

async def test_secure_ticket_scan_with_photo(client):
    ticket = await issue_ticket(client, ticket_type="secure", buyer_image_url="photo://buyer-1")

    wrong = await scan(client, ticket["qr_payload"], comparison_image_b64=png_b64(face_image(42)))
    assert wrong["reason_code"] == "IDENTITY_MISMATCH"

    right = await scan(client, ticket["qr_payload"], comparison_image_b64=png_b64(face_image(1, noise=6)))
    assert right["status"] == "ACCEPTED"
    assert right["record"]["validation_type"] == "image_verification"

async def test_enroll_biometric(client):
    r = await client.post("/biometric/enroll", json={"image_b64": png_b64(face_image(7))})
    assert r.status_code == 200
    body = r.json()
    assert len(body["fingerprint"]) == 256
    assert len(body["digest"]) == 64

async def test_enroll_rejects_featureless_image(client):
    blank = np.full((96, 96, 3), 30, dtype=np.uint8)
    r = await client.post("/biometric/enroll", json={"image_b64": png_b64(blank)})
    assert r.status_code == 422
    assert r.json()["detail"]["reason_code"] == "POOR_FRAMING"

async def test_enroll_rejects_non_image(client):
    r = await client.post("/biometric/enroll", json={"image_b64": "bm90IGFuIGltYWdl"})
    assert r.status_code == 422
    assert r.json()["detail"]["reason_code"] == "MALFORMED_PAYLOAD"
