from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Protocol

import numpy as np

from .errors import CameraUnavailable


class CaptureSource(Protocol):
    """A camera or an uploaded image that yields frames while acquired."""

    def acquire(self) -> None: ...

    def read(self) -> Optional[np.ndarray]: ...

    def release(self) -> None: ...


class FrameDecoder(Protocol):
    def decode(self, frame: np.ndarray) -> Optional[bytes]: ...


@dataclass(frozen=True)
class FaceRegion:
    x: int
    y: int
    width: int
    height: int
    confidence: float

    @property
    def area(self) -> int:
        return self.width * self.height


class FaceDetector(Protocol):
    def detect(self, image: np.ndarray) -> list[FaceRegion]: ...


@contextmanager
def acquired(source: CaptureSource) -> Iterator[CaptureSource]:
    source.acquire()
    try:
        yield source
    finally:
        source.release()


def grab_frame(source: CaptureSource) -> np.ndarray:
    """Acquire, read one frame and release, whatever happens."""
    with acquired(source) as s:
        frame = s.read()
    if frame is None:
        raise CameraUnavailable("camera returned no frame")
    return frame
