import asyncio
import logging
from enum import Enum
from typing import Optional

import numpy as np

from .capture import CaptureSource, FrameDecoder, grab_frame
from .config import Settings
from .engine import DEFAULT_LOCATION, ValidationEngine, error_outcome
from .errors import InfrastructureError, ScannerStateError
from .schemas import ValidationOutcome

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "IDLE"
    CAPTURING = "CAPTURING"
    PROCESSING = "PROCESSING"
    RESULT_SHOWN = "RESULT_SHOWN"
    STOPPED = "STOPPED"


class ScannerSession:
    """
    Entrance scanner loop.

    IDLE -> CAPTURING -> PROCESSING -> RESULT_SHOWN -> (reset) IDLE, and any
    state -> STOPPED. The capture source is acquired on the first scan and held
    until stop(). Everything runs on the caller's event loop; at most one
    validation is in flight per session.
    """

    def __init__(
        self,
        engine: ValidationEngine,
        source: CaptureSource,
        decoder: FrameDecoder,
        *,
        operator_id: str,
        location: str = DEFAULT_LOCATION,
        face_source: Optional[CaptureSource] = None,
        poll_interval: float = 1.0,
        timeout: float = 30.0,
    ):
        self.engine = engine
        self.source = source
        self.decoder = decoder
        self.operator_id = operator_id
        self.location = location
        self.face_source = face_source
        self.poll_interval = poll_interval
        self.timeout = timeout

        self._state = ScanState.IDLE
        self._acquired = False
        self._scanned = False
        self._result: Optional[ValidationOutcome] = None
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        engine: ValidationEngine,
        source: CaptureSource,
        decoder: FrameDecoder,
        *,
        operator_id: str,
        location: str = DEFAULT_LOCATION,
        face_source: Optional[CaptureSource] = None,
    ) -> "ScannerSession":
        return cls(
            engine, source, decoder,
            operator_id=operator_id,
            location=location,
            face_source=face_source,
            poll_interval=settings.scan_poll_interval,
            timeout=settings.scan_timeout,
        )

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def last_result(self) -> Optional[ValidationOutcome]:
        return self._result

    async def __aenter__(self) -> "ScannerSession":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def scan(self) -> Optional[ValidationOutcome]:
        """
        Poll the capture source until a code decodes or the timeout passes.
        Returns the outcome shown to the operator, or None when the scan was
        abandoned without a readable code.
        """
        self._require(ScanState.IDLE)
        self._scanned = False
        self._result = None
        self._wake.clear()

        try:
            self._acquire()
        except InfrastructureError as e:
            logger.warning("scanner_capture_unavailable operator=%s error=%s", self.operator_id, e.detail)
            self._state = ScanState.PROCESSING
            return self._show(error_outcome(e.detail))

        self._state = ScanState.CAPTURING
        self._task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        try:
            while self._result is None:
                raw = self._poll_frame()
                if raw is not None:
                    self.submit(raw)
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info("scan_timeout operator=%s after=%.1fs", self.operator_id, self.timeout)
                    self._release()
                    self._state = ScanState.IDLE
                    return None
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=min(self.poll_interval, remaining))
                except asyncio.TimeoutError:
                    pass
            return self._result
        except asyncio.CancelledError:
            self._shutdown()
            raise
        except Exception:
            self._release()
            self._state = ScanState.IDLE
            raise
        finally:
            self._task = None

    def submit(self, raw: bytes) -> Optional[ValidationOutcome]:
        """
        Hand a decoded payload to the engine. Only the first payload of a
        capture cycle is processed; repeats from later frames are dropped.
        """
        if self._state != ScanState.CAPTURING or self._scanned:
            logger.debug("scan_ignored operator=%s state=%s", self.operator_id, self._state.value)
            return None
        self._scanned = True
        self._state = ScanState.PROCESSING

        try:
            outcome = self.engine.validate(
                raw,
                validated_by=self.operator_id,
                location=self.location,
                capture_face=self._capture_face if self.face_source is not None else None,
            )
        except InfrastructureError as e:
            logger.warning("scanner_try_again operator=%s error=%s", self.operator_id, e.__class__.__name__)
            outcome = error_outcome(e.detail)
        except Exception:
            logger.exception("scanner_validate_failed operator=%s", self.operator_id)
            # The code can be scanned again; the caller still sees the error.
            self._scanned = False
            self._state = ScanState.CAPTURING if self._task is not None else ScanState.IDLE
            raise
        return self._show(outcome)

    def reset(self) -> None:
        self._require(ScanState.RESULT_SHOWN)
        self._result = None
        self._scanned = False
        self._state = ScanState.IDLE

    async def stop(self) -> None:
        if self._state == ScanState.STOPPED:
            return
        self._state = ScanState.STOPPED
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._release()
        self._wake.set()

    # --- internals ---

    def _poll_frame(self) -> Optional[bytes]:
        try:
            frame = self.source.read()
        except InfrastructureError as e:
            logger.warning("scanner_read_failed operator=%s error=%s", self.operator_id, e.detail)
            return None
        if frame is None:
            return None
        return self.decoder.decode(frame)

    def _capture_face(self) -> np.ndarray:
        return grab_frame(self.face_source)

    def _show(self, outcome: ValidationOutcome) -> ValidationOutcome:
        self._result = outcome
        self._state = ScanState.RESULT_SHOWN
        self._wake.set()
        return outcome

    def _acquire(self) -> None:
        if not self._acquired:
            self.source.acquire()
            self._acquired = True

    def _release(self) -> None:
        if self._acquired:
            self._acquired = False
            self.source.release()

    def _shutdown(self) -> None:
        self._state = ScanState.STOPPED
        self._release()

    def _require(self, state: ScanState) -> None:
        if self._state != state:
            raise ScannerStateError(f"expected {state.value}, session is {self._state.value}")
