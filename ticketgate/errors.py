class TicketGateError(Exception):
    reason_code = "ERROR"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.reason_code)
        self.detail = detail or self.reason_code


# --- Input errors: the caller can correct these, never retried ---

class InputError(TicketGateError):
    pass

class MalformedPayload(InputError):
    reason_code = "MALFORMED_PAYLOAD"

class IncompletePayload(InputError):
    reason_code = "INCOMPLETE_PAYLOAD"

class InvalidSignature(InputError):
    reason_code = "INVALID_SIGNATURE"

class TokenExpired(InputError):
    reason_code = "TOKEN_EXPIRED"

class BiometricCaptureError(InputError):
    pass

class NoFaceDetected(BiometricCaptureError):
    reason_code = "NO_FACE_DETECTED"

class LowConfidence(BiometricCaptureError):
    reason_code = "LOW_CONFIDENCE"

class PoorFraming(BiometricCaptureError):
    reason_code = "POOR_FRAMING"


# --- Infrastructure errors: safe to retry, never a rejection ---

class InfrastructureError(TicketGateError):
    reason_code = "TRY_AGAIN"

class StoreUnavailable(InfrastructureError):
    pass

class CameraUnavailable(InfrastructureError):
    pass

class ReferenceImageUnavailable(InfrastructureError):
    pass


class ScannerStateError(TicketGateError):
    reason_code = "INVALID_STATE"
