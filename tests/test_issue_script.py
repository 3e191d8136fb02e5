import pytest

from scripts.issue_ticket import main
from ticketgate import qr
from ticketgate.db import make_engine, make_session_factory
from ticketgate.store import TicketStore


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'gate.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.delenv("TICKET_SIGNING_SECRET", raising=False)
    return url


def test_issued_ticket_is_stored_and_scannable(db_url, tmp_path, capsys):
    png = tmp_path / "ticket.png"
    main(["--event-id", "evt_cli", "--buyer-id", "buyer_9", "--png", str(png)])

    id_line, payload = capsys.readouterr().out.strip().splitlines()
    ticket_id = id_line.removeprefix("ticket_id=")
    decoded = qr.decode(payload)
    assert (decoded.ticket_id, decoded.event_id, decoded.buyer_id) == (ticket_id, "evt_cli", "buyer_9")
    assert png.read_bytes().startswith(b"\x89PNG")

    engine = make_engine(db_url)
    stored = TicketStore(make_session_factory(engine)).get_ticket_by_id(ticket_id)
    engine.dispose()
    assert stored.status.value == "active"


def test_secure_ticket_without_photo_is_refused(db_url):
    with pytest.raises(SystemExit) as exc:
        main(["--event-id", "evt_cli", "--buyer-id", "buyer_9", "--ticket-type", "secure"])
    assert "buyer image" in str(exc.value)
