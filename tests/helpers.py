import httpx
import numpy as np
from fakeredis import FakeAsyncRedis

from ticketgate.capture import FaceRegion
from ticketgate.config import Settings
from ticketgate.errors import ReferenceImageUnavailable
from ticketgate.main import create_app


class FixedFaceDetector:
    """Reports one centred face covering the middle half of every frame."""

    def __init__(self, confidence=0.95, faces=None):
        self.confidence = confidence
        self.faces = faces

    def detect(self, image):
        if self.faces is not None:
            return list(self.faces)
        h, w = image.shape[:2]
        return [FaceRegion(w // 4, h // 4, w // 2, h // 2, self.confidence)]


class ReferencePhotos(dict):
    """url -> image lookup standing in for the photo bucket."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    def __call__(self, url):
        self.calls += 1
        if url not in self:
            raise ReferenceImageUnavailable(f"no photo at {url}")
        return self[url]


class FakeCamera:
    """Plays back a fixed list of frames, then keeps returning the last one."""

    def __init__(self, frames=(), fail_acquire=False):
        self.frames = list(frames)
        self.fail_acquire = fail_acquire
        self.acquired = 0
        self.released = 0
        self.reads = 0

    @property
    def is_open(self):
        return self.acquired > self.released

    def acquire(self):
        if self.fail_acquire:
            from ticketgate.errors import CameraUnavailable
            raise CameraUnavailable("camera busy")
        self.acquired += 1

    def read(self):
        assert self.is_open, "read outside acquire/release"
        self.reads += 1
        if not self.frames:
            return None
        return self.frames.pop(0) if len(self.frames) > 1 else self.frames[0]

    def release(self):
        self.released += 1


class PassThroughDecoder:
    """Frames in the scanner tests are already payload bytes."""

    def decode(self, frame):
        return frame if isinstance(frame, bytes) else None


def face_image(seed, noise=0.0, size=128):
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, (size, size, 3)).astype(float)
    if noise:
        img = img + np.random.default_rng(seed + 1000).normal(0, noise, img.shape)
    return np.clip(img, 0, 255).astype(np.uint8)


def make_client(engine, **settings) -> httpx.AsyncClient:
    settings.setdefault("rate_limit_capacity", 100)
    app = create_app(Settings(database_url="sqlite://", **settings), engine=engine, redis=FakeAsyncRedis())
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gate.test", timeout=10.0)


async def issue_ticket(client: httpx.AsyncClient, event_id="evt_1", buyer_id="buyer_1", **extra) -> dict:
    r = await client.post("/admin/tickets", json={"event_id": event_id, "buyer_id": buyer_id, **extra})
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data

async def scan(client: httpx.AsyncClient, qr_payload: str, validated_by="door_1", headers=None, **extra) -> dict:
    r = await client.post(
        "/validate",
        json={"qr_payload": qr_payload, "validated_by": validated_by, **extra},
        headers=headers or {},
    )
    r.raise_for_status()
    return r.json()
