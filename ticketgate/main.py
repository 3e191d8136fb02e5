import logging
import uuid

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.asyncio import Redis

from .admin import router as admin_router
from .biometric import BiometricMatcher
from .config import Settings, configure_logging
from .db import init_db, make_engine, make_session_factory
from .engine import DEFAULT_LOCATION, ValidationEngine, error_outcome
from .errors import BiometricCaptureError, InfrastructureError, MalformedPayload
from .idempotency import cache_outcome, get_cached_outcome
from .imaging import ReferenceImageLoader, decode_image_b64
from .qr import QRCodec
from .rate_limit import allow_request
from .schemas import Decision, ReasonCode, ValidationOutcome
from .store import TicketStore

logger = logging.getLogger(__name__)

router = APIRouter()


def build_engine(settings: Settings, matcher: BiometricMatcher | None = None) -> ValidationEngine:
    db_engine = make_engine(settings.database_url)
    init_db(db_engine)
    store = TicketStore(make_session_factory(db_engine))

    if matcher is None:
        # OpenCV is only needed when the gate does its own face detection.
        from .vision import HaarFaceDetector

        matcher = BiometricMatcher(
            HaarFaceDetector(),
            reference_loader=ReferenceImageLoader(
                base_dir=settings.reference_image_dir,
                allowed_hosts=settings.allowed_reference_hosts,
            ),
            threshold=settings.biometric_similarity_threshold,
            min_confidence=settings.biometric_min_confidence,
            min_face_fraction=settings.biometric_min_face_fraction,
            max_center_offset=settings.biometric_max_center_offset,
            reference_cache_size=settings.biometric_reference_cache_size,
        )

    codec = QRCodec(
        secret=settings.ticket_signing_secret,
        ttl_minutes=settings.ticket_token_ttl_minutes,
        require_signed=settings.require_signed_qr,
    )
    return ValidationEngine(store, matcher=matcher, codec=codec)


def create_app(
    settings: Settings | None = None,
    *,
    engine: ValidationEngine | None = None,
    redis: Redis | None = None,
) -> FastAPI:
    """Run with ``uvicorn ticketgate.main:create_app --factory``."""
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Ticket Gate", version="1.0.0")
    app.state.settings = settings
    app.state.engine = engine or build_engine(settings)
    app.state.redis = redis or Redis.from_url(settings.redis_url, decode_responses=False)

    app.include_router(router)
    app.include_router(admin_router)

    @app.exception_handler(InfrastructureError)
    async def _infrastructure_error(request: Request, exc: InfrastructureError):
        # An outage is a retry prompt for the operator, never a rejection.
        logger.warning("infrastructure_error path=%s error=%s", request.url.path, exc.__class__.__name__)
        return JSONResponse(status_code=503, content=error_outcome().model_dump(mode="json"))

    return app


class ValidateReq(BaseModel):
    qr_payload: str
    validated_by: str
    location: str = DEFAULT_LOCATION
    comparison_image_b64: str | None = None


@router.post("/validate")
async def validate_ticket(
    req: ValidateReq,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    state = request.app.state
    settings: Settings = state.settings
    ip = request.client.host if request.client else "unknown"

    if idempotency_key:
        cached = await get_cached_outcome(state.redis, req.validated_by, idempotency_key)
        if cached:
            return cached

    allowed = await allow_request(
        state.redis,
        key=ip,
        capacity=settings.rate_limit_capacity,
        refill_per_sec=settings.rate_limit_refill_per_minute / 60,
    )
    if not allowed:
        # Not cached: the same scan must go through once the bucket refills.
        logger.info("rate_limited client=%s operator=%s", ip, req.validated_by)
        outcome = ValidationOutcome(
            decision_id=str(uuid.uuid4()),
            status=Decision.ERROR,
            reason_code=ReasonCode.RATE_LIMITED,
            message="too many scans, wait a moment and scan again",
        )
        retry_after = max(1, round(60 / settings.rate_limit_refill_per_minute))
        return JSONResponse(
            status_code=429,
            content=outcome.model_dump(mode="json"),
            headers={"Retry-After": str(retry_after)},
        )

    image = None
    if req.comparison_image_b64:
        try:
            image = decode_image_b64(req.comparison_image_b64)
        except MalformedPayload as e:
            raise HTTPException(status_code=422, detail={"reason_code": e.reason_code, "detail": e.detail})

    outcome = state.engine.validate(
        req.qr_payload.encode("utf-8"),
        image,
        validated_by=req.validated_by,
        location=req.location,
    )
    if idempotency_key:
        await cache_outcome(state.redis, req.validated_by, idempotency_key, outcome,
                            ttl_seconds=settings.idempotency_ttl_seconds)
    return outcome.model_dump(mode="json")


class EnrollReq(BaseModel):
    image_b64: str


@router.post("/biometric/enroll")
def enroll_biometric(req: EnrollReq, request: Request):
    try:
        image = decode_image_b64(req.image_b64)
        fp = request.app.state.engine.enroll_biometric(image)
    except (MalformedPayload, BiometricCaptureError) as e:
        raise HTTPException(status_code=422, detail={"reason_code": e.reason_code, "detail": e.detail})

    return {
        "digest": fp.digest,
        "confidence": fp.confidence,
        "fingerprint": list(fp.values),
    }
