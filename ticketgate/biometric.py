"""
Face binding for secure tickets.

A fingerprint is a small grid of mean intensities taken over the detected face
region, centred and normalised, so two captures are compared with a cosine
score. It is deterministic: the same pair of images always scores the same.
"""
import hashlib
import logging
from collections import OrderedDict
from typing import Callable, Optional

import numpy as np

from .capture import CaptureSource, FaceDetector, FaceRegion, grab_frame
from .errors import (
    BiometricCaptureError, LowConfidence, NoFaceDetected, PoorFraming, ReferenceImageUnavailable,
)
from .schemas import Fingerprint, TicketView

logger = logging.getLogger(__name__)

DESCRIPTOR_SIZE = 16
_LUMA = np.array([0.299, 0.587, 0.114])


def _grayscale(image: np.ndarray) -> np.ndarray:
    img = np.asarray(image, dtype=np.float64)
    if img.ndim == 3:
        if img.shape[2] == 1:
            return img[..., 0]
        return img[..., :3] @ _LUMA
    return img


def _describe(crop: np.ndarray, size: int) -> np.ndarray:
    gray = _grayscale(crop)
    h, w = gray.shape
    if h < size or w < size:
        raise PoorFraming("face region too small")

    cells = [
        [block.mean() for block in np.array_split(band, size, axis=1)]
        for band in np.array_split(gray, size, axis=0)
    ]
    vec = np.asarray(cells).ravel()
    vec = vec - vec.mean()
    norm = np.linalg.norm(vec)
    if norm < 1e-6:
        raise PoorFraming("featureless face region")
    return vec / norm


class BiometricMatcher:
    def __init__(
        self,
        detector: FaceDetector,
        reference_loader: Optional[Callable[[str], np.ndarray]] = None,
        threshold: float = 0.6,
        min_confidence: float = 0.7,
        min_face_fraction: float = 0.2,
        max_center_offset: float = 0.25,
        descriptor_size: int = DESCRIPTOR_SIZE,
        reference_cache_size: int = 256,
    ):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")
        self.detector = detector
        self.reference_loader = reference_loader
        self.threshold = threshold
        self.min_confidence = min_confidence
        self.min_face_fraction = min_face_fraction
        self.max_center_offset = max_center_offset
        self.descriptor_size = descriptor_size
        self.reference_cache_size = reference_cache_size
        # url -> fingerprint, least recently used first
        self._references: OrderedDict[str, Fingerprint] = OrderedDict()

    def enroll(self, image: np.ndarray) -> Fingerprint:
        faces = self.detector.detect(image)
        if not faces:
            raise NoFaceDetected()
        if len(faces) > 1:
            logger.info("multiple_faces count=%d using_largest", len(faces))
        face = max(faces, key=lambda f: f.area)

        if face.confidence < self.min_confidence:
            raise LowConfidence(f"confidence {face.confidence:.2f} below {self.min_confidence:.2f}")
        self._check_framing(face, image.shape[0], image.shape[1])

        crop = image[face.y:face.y + face.height, face.x:face.x + face.width]
        vec = _describe(crop, self.descriptor_size)
        digest = hashlib.sha256(np.round(vec, 4).tobytes()).hexdigest()
        return Fingerprint(values=tuple(float(v) for v in vec), confidence=face.confidence, digest=digest)

    def enroll_from_camera(self, source: CaptureSource) -> Fingerprint:
        # The camera is held only for the single frame.
        return self.enroll(grab_frame(source))

    def _check_framing(self, face: FaceRegion, height: int, width: int) -> None:
        if face.width / width < self.min_face_fraction or face.height / height < self.min_face_fraction:
            raise PoorFraming("face too small in frame")
        cx = (face.x + face.width / 2) / width
        cy = (face.y + face.height / 2) / height
        if abs(cx - 0.5) > self.max_center_offset or abs(cy - 0.5) > self.max_center_offset:
            raise PoorFraming("face is off-center")

    def compare(self, a: Fingerprint, b: Fingerprint) -> float:
        if len(a.values) != len(b.values):
            raise ValueError("fingerprints have different descriptor sizes")
        score = float(np.dot(np.asarray(a.values), np.asarray(b.values)))
        return min(1.0, max(0.0, score))

    def is_match(self, score: float) -> bool:
        return score >= self.threshold

    def reference_for(self, ticket: TicketView) -> Fingerprint:
        url = ticket.buyer_image_url
        if not url:
            raise ReferenceImageUnavailable(f"ticket {ticket.id} has no buyer image")
        cached = self._references.get(url)
        if cached is not None:
            self._references.move_to_end(url)
            return cached
        if self.reference_loader is None:
            raise ReferenceImageUnavailable("no reference image loader configured")

        image = self.reference_loader(url)
        try:
            fp = self.enroll(image)
        except BiometricCaptureError as e:
            raise ReferenceImageUnavailable(f"reference photo unusable: {e.reason_code}") from e
        self._references[url] = fp
        while len(self._references) > self.reference_cache_size:
            evicted, _ = self._references.popitem(last=False)
            logger.debug("reference_evicted url=%s", evicted)
        return fp

    def verify(self, ticket: TicketView, image: np.ndarray) -> float:
        live = self.enroll(image)
        reference = self.reference_for(ticket)
        score = self.compare(reference, live)
        logger.info(
            "biometric_compare ticket_id=%s similarity=%.3f match=%s",
            ticket.id, score, self.is_match(score),
        )
        return score
