import asyncio

import pytest

from ticketgate import qr
from ticketgate.config import Settings
from ticketgate.engine import ValidationEngine
from ticketgate.errors import ScannerStateError
from ticketgate.scanner import ScannerSession, ScanState
from ticketgate.schemas import Decision, ReasonCode, TicketStatus
from tests.helpers import FakeCamera, PassThroughDecoder, face_image

pytestmark = pytest.mark.asyncio


class CountingEngine(ValidationEngine):
    calls = 0

    def validate(self, *args, **kwargs):
        self.calls += 1
        return super().validate(*args, **kwargs)


def session_for(engine, camera, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("timeout", 1.0)
    return ScannerSession(engine, camera, PassThroughDecoder(), operator_id="door_1", **kwargs)


def payload(ticket):
    return qr.encode(ticket.id, ticket.event_id, ticket.buyer_id)


async def test_scan_accepts_after_empty_frames(store, engine):
    t = store.create_ticket(event_id="E1", buyer_id="B1")
    camera = FakeCamera([None, None, payload(t)])
    session = session_for(engine, camera)

    outcome = await session.scan()

    assert outcome.status == Decision.ACCEPTED
    assert session.state == ScanState.RESULT_SHOWN
    assert session.last_result is outcome
    assert camera.is_open

    await session.stop()
    assert session.state == ScanState.STOPPED
    assert camera.acquired == camera.released == 1


async def test_repeated_frames_submit_once(store, matcher):
    t = store.create_ticket(event_id="E1", buyer_id="B1")
    engine = CountingEngine(store, matcher=matcher)
    camera = FakeCamera([payload(t)])  # the same code stays in view
    session = session_for(engine, camera)

    await session.scan()
    assert session.submit(payload(t)) is None
    assert session.submit(payload(t)) is None

    assert engine.calls == 1
    assert len(store.get_ticket_by_id(t.id).validation_history) == 1
    await session.stop()


async def test_reset_then_rescan_reports_already_used(store, engine):
    t = store.create_ticket(event_id="E1", buyer_id="B1")
    async with session_for(engine, FakeCamera([payload(t)])) as session:
        assert (await session.scan()).is_valid
        session.reset()
        assert session.state == ScanState.IDLE
        again = await session.scan()
        assert again.reason_code == ReasonCode.ALREADY_USED
    assert session.state == ScanState.STOPPED


async def test_timeout_abandons_scan(engine):
    camera = FakeCamera([None])
    session = session_for(engine, camera, timeout=0.05)

    assert await session.scan() is None
    assert session.state == ScanState.IDLE
    assert camera.reads >= 2
    assert not camera.is_open

    # the next scan opens the camera again
    assert await session.scan() is None
    assert camera.acquired == camera.released == 2
    await session.stop()
    assert camera.released == 2


async def test_stop_while_capturing_releases_camera(engine):
    camera = FakeCamera([None])
    session = session_for(engine, camera, timeout=30.0)
    task = asyncio.create_task(session.scan())
    await asyncio.sleep(0.05)
    assert session.state == ScanState.CAPTURING

    await session.stop()

    assert task.cancelled()
    assert session.state == ScanState.STOPPED
    assert not camera.is_open
    with pytest.raises(ScannerStateError):
        await session.scan()


async def test_manual_entry_wakes_the_loop(store, engine):
    t = store.create_ticket(event_id="E1", buyer_id="B1")
    session = session_for(engine, FakeCamera([None]), poll_interval=5.0, timeout=30.0)
    task = asyncio.create_task(session.scan())
    await asyncio.sleep(0.01)

    submitted = session.submit(payload(t))
    result = await asyncio.wait_for(task, timeout=1.0)

    assert submitted is result
    assert result.is_valid
    await session.stop()


async def test_store_outage_asks_to_try_again(broken_store, matcher):
    engine = ValidationEngine(broken_store, matcher=matcher)
    session = session_for(engine, FakeCamera([qr.encode("T1", "E1", "B1")]))

    outcome = await session.scan()

    assert outcome.status == Decision.ERROR
    assert outcome.reason_code == ReasonCode.TRY_AGAIN
    assert session.state == ScanState.RESULT_SHOWN
    await session.stop()


async def test_camera_unavailable_asks_to_try_again(engine):
    session = session_for(engine, FakeCamera(fail_acquire=True))
    outcome = await session.scan()
    assert outcome.reason_code == ReasonCode.TRY_AGAIN
    session.reset()
    assert session.state == ScanState.IDLE


async def test_face_camera_used_only_while_processing_secure_ticket(store, engine):
    secure = store.create_ticket(event_id="E1", buyer_id="B1", ticket_type="secure",
                                 buyer_image_url="photo://buyer-1")
    regular = store.create_ticket(event_id="E1", buyer_id="B2")
    face_camera = FakeCamera([face_image(1, noise=5)])

    async with session_for(engine, FakeCamera([payload(regular)]), face_source=face_camera) as session:
        assert (await session.scan()).is_valid
        assert face_camera.acquired == 0

    async with session_for(engine, FakeCamera([payload(secure)]), face_source=face_camera) as session:
        outcome = await session.scan()
        assert outcome.is_valid
        assert outcome.similarity >= 0.6
        assert face_camera.acquired == face_camera.released == 1
    assert store.get_ticket_by_id(secure.id).status == TicketStatus.USED


async def test_reset_requires_a_shown_result(engine):
    session = session_for(engine, FakeCamera())
    with pytest.raises(ScannerStateError):
        session.reset()


class FlakyEngine(ValidationEngine):
    """Blows up on the first validation, then behaves."""

    failed = False

    def validate(self, *args, **kwargs):
        if not self.failed:
            self.failed = True
            raise RuntimeError("boom")
        return super().validate(*args, **kwargs)


async def test_unexpected_engine_error_leaves_session_usable(store, matcher):
    t = store.create_ticket(event_id="E1", buyer_id="B1")
    camera = FakeCamera([payload(t)])
    session = session_for(FlakyEngine(store, matcher=matcher), camera)

    with pytest.raises(RuntimeError):
        await session.scan()
    assert session.state == ScanState.IDLE
    assert not camera.is_open

    outcome = await session.scan()
    assert outcome.is_valid
    await session.stop()


async def test_unexpected_error_on_manual_entry_keeps_capturing(store, matcher):
    t = store.create_ticket(event_id="E1", buyer_id="B1")
    session = session_for(FlakyEngine(store, matcher=matcher), FakeCamera([None]),
                          poll_interval=5.0, timeout=30.0)
    task = asyncio.create_task(session.scan())
    await asyncio.sleep(0.01)

    with pytest.raises(RuntimeError):
        session.submit(payload(t))
    assert session.state == ScanState.CAPTURING

    assert session.submit(payload(t)).is_valid
    assert (await asyncio.wait_for(task, timeout=1.0)).is_valid
    await session.stop()


async def test_session_timings_come_from_settings(engine):
    settings = Settings(database_url="sqlite://", scan_poll_interval=0.01, scan_timeout=0.05)
    camera = FakeCamera([None])
    session = ScannerSession.from_settings(settings, engine, camera, PassThroughDecoder(),
                                           operator_id="door_1", location="Side Door")

    assert (session.poll_interval, session.timeout) == (0.01, 0.05)
    assert session.location == "Side Door"
    assert await session.scan() is None
    await session.stop()
