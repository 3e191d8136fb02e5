# scripts/issue_ticket.py
import argparse  # parse CLI args
from pathlib import Path  # write the optional PNG

from ticketgate.config import Settings  # DATABASE_URL, TICKET_SIGNING_SECRET, ...
from ticketgate.db import init_db, make_engine, make_session_factory  # database wiring
from ticketgate.engine import ValidationEngine  # issues payloads through the gate's codec
from ticketgate.imaging import render_qr_png  # draw the scannable code
from ticketgate.qr import QRCodec  # plain or signed payloads
from ticketgate.store import TicketStore  # persists the ticket

def build_parser() -> argparse.ArgumentParser:  # CLI definition
    parser = argparse.ArgumentParser(description="Create a ticket and print its QR payload")  # CLI parser
    parser.add_argument("--event-id", required=True)  # event the ticket admits to
    parser.add_argument("--buyer-id", required=True)  # purchasing user
    parser.add_argument("--ticket-type", default="regular")  # regular, secure or a custom tier
    parser.add_argument("--quantity", type=int, default=1)  # admissions granted
    parser.add_argument("--buyer-image-url", default=None)  # photo reference, required for secure tickets
    parser.add_argument("--png", type=Path, default=None)  # where to save the QR image
    return parser

def main(argv=None) -> None:  # main entrypoint
    args = build_parser().parse_args(argv)  # parse args
    settings = Settings()  # same env vars the gate reads

    db_engine = make_engine(settings.database_url)  # connect
    init_db(db_engine)  # create tables on first use
    store = TicketStore(make_session_factory(db_engine))  # ticket persistence
    codec = QRCodec(secret=settings.ticket_signing_secret, ttl_minutes=settings.ticket_token_ttl_minutes)  # unsigned JSON when no secret
    engine = ValidationEngine(store, codec=codec)  # no matcher needed to issue

    try:
        ticket = store.create_ticket(  # insert the ticket row
            event_id=args.event_id,
            buyer_id=args.buyer_id,
            ticket_type=args.ticket_type,
            quantity=args.quantity,
            buyer_image_url=args.buyer_image_url,
        )
    except ValueError as e:  # bad quantity or secure ticket without photo
        raise SystemExit(f"error: {e}")
    payload = engine.issue(ticket)  # payload bytes

    if args.png:  # optional image output
        args.png.write_bytes(render_qr_png(payload))  # PNG for printing or wallets
    print(f"ticket_id={ticket.id}")  # id for the admin API
    print(payload.decode("utf-8"))  # output payload to stdout

if __name__ == "__main__":  # run as script
    main()  # call main
