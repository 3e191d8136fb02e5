"""OpenCV-backed camera, face detector and QR frame decoder."""
import logging
from typing import Optional

import cv2
import numpy as np

from .capture import FaceRegion
from .errors import CameraUnavailable
from .imaging import decode_image

logger = logging.getLogger(__name__)


class OpenCVCamera:
    def __init__(self, index: int = 0, width: int = 640, height: int = 480):
        self.index = index
        self.width = width
        self.height = height
        self._cap: Optional[cv2.VideoCapture] = None

    def acquire(self) -> None:
        if self._cap is not None:
            return
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailable(f"could not open camera {self.index}")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._cap = cap

    def read(self) -> Optional[np.ndarray]:
        if self._cap is None:
            raise CameraUnavailable("camera not acquired")
        ok, frame = self._cap.read()
        if not ok:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


class UploadedImageSource:
    """File-based capture: every read returns the uploaded picture."""

    def __init__(self, raw: bytes):
        self._raw = raw
        self._frame: Optional[np.ndarray] = None

    def acquire(self) -> None:
        self._frame = decode_image(self._raw)

    def read(self) -> Optional[np.ndarray]:
        return self._frame

    def release(self) -> None:
        self._frame = None


class QRFrameDecoder:
    def __init__(self):
        self._detector = cv2.QRCodeDetector()

    def decode(self, frame: np.ndarray) -> Optional[bytes]:
        try:
            gray = cv2.cvtColor(frame, cv2.COLOR_RGB2GRAY) if frame.ndim == 3 else frame
            data, points, _ = self._detector.detectAndDecode(gray)
        except cv2.error as e:
            logger.warning("qr_decode_error error=%s", e)
            return None
        if points is None or not data:
            return None
        return data.encode("utf-8")


class HaarFaceDetector:
    """
    Frontal-face cascade shipped with OpenCV. Level weights from the cascade
    are squashed into a [0, 1] confidence.
    """

    def __init__(self, cascade_path: Optional[str] = None, min_size: int = 48):
        path = cascade_path or cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        self._cascade = cv2.CascadeClassifier(path)
        if self._cascade.empty():
            raise CameraUnavailable(f"cannot load face cascade {path}")
        self.min_size = min_size

    def detect(self, image: np.ndarray) -> list[FaceRegion]:
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY) if image.ndim == 3 else image
        boxes, _, weights = self._cascade.detectMultiScale3(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=(self.min_size, self.min_size),
            outputRejectLevels=True,
        )
        faces = []
        for (x, y, w, h), weight in zip(boxes, np.ravel(weights)):
            confidence = float(1.0 / (1.0 + np.exp(-float(weight))))
            faces.append(FaceRegion(int(x), int(y), int(w), int(h), confidence))
        return faces
