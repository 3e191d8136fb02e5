import pytest
import pytest_asyncio

from ticketgate.biometric import BiometricMatcher
from ticketgate.db import init_db, make_engine, make_session_factory
from ticketgate.engine import ValidationEngine
from ticketgate.store import TicketStore
from tests.helpers import FixedFaceDetector, ReferencePhotos, face_image, make_client


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return TicketStore(session_factory)


@pytest.fixture
def broken_store():
    # Tables were never created, so every query fails like an unreachable database.
    engine = make_engine("sqlite://")
    yield TicketStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def photos():
    return ReferencePhotos({"photo://buyer-1": face_image(1)})


@pytest.fixture
def matcher(photos):
    return BiometricMatcher(FixedFaceDetector(), reference_loader=photos, threshold=0.6)


@pytest.fixture
def engine(store, matcher):
    return ValidationEngine(store, matcher=matcher)


@pytest_asyncio.fixture(scope="function")
async def client(engine):
    async with make_client(engine) as c:
        yield c
