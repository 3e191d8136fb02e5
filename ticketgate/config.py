import logging
import sys
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gate settings. Each field is read from the upper-cased env var of the same name."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./ticketgate.db"
    redis_url: str = "redis://localhost:6379/0"

    # QR signing. Without a secret the gate reads plain JSON payloads.
    ticket_signing_secret: str | None = None
    require_signed_qr: bool = False
    ticket_token_ttl_minutes: int = Field(60 * 24, gt=0)

    biometric_similarity_threshold: float = Field(0.6, ge=0.0, le=1.0)
    biometric_min_confidence: float = Field(0.7, ge=0.0, le=1.0)
    biometric_min_face_fraction: float = Field(0.2, gt=0.0, le=1.0)
    biometric_max_center_offset: float = Field(0.25, ge=0.0, le=0.5)
    biometric_reference_cache_size: int = Field(256, gt=0)

    # Buyer photos: local paths must live under this directory, remote ones on these hosts.
    reference_image_dir: Path | None = None
    reference_image_hosts: str = ""

    scan_poll_interval: float = Field(1.0, gt=0)
    scan_timeout: float = Field(30.0, gt=0)

    rate_limit_capacity: int = Field(10, gt=0)
    rate_limit_refill_per_minute: float = Field(10, gt=0)
    idempotency_ttl_seconds: int = Field(300, gt=0)

    log_level: str = "INFO"

    @property
    def allowed_reference_hosts(self) -> set[str]:
        return {h.strip().lower() for h in self.reference_image_hosts.split(",") if h.strip()}


def configure_logging(level: str = "INFO") -> None:
    """Send ticketgate logs to stdout, installing the handler only once."""
    root = logging.getLogger("ticketgate")
    if not any(getattr(h, "_ticketgate", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._ticketgate = True
        root.addHandler(handler)
    root.setLevel(level.upper())
