import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Iterable
from urllib.parse import urlsplit

import httpx
import numpy as np
import qrcode
from PIL import Image, UnidentifiedImageError

from .errors import MalformedPayload, ReferenceImageUnavailable

logger = logging.getLogger(__name__)


def decode_image(raw: bytes) -> np.ndarray:
    """Decode PNG/JPEG bytes into an RGB array."""
    try:
        with Image.open(io.BytesIO(raw)) as img:
            return np.asarray(img.convert("RGB"))
    except (UnidentifiedImageError, OSError):
        raise MalformedPayload("image bytes are not a readable raster image")


def decode_image_b64(data: str) -> np.ndarray:
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedPayload("image is not valid base64")
    return decode_image(raw)


def render_qr_png(payload: bytes) -> bytes:
    img = qrcode.make(payload.decode("utf-8"))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class ReferenceImageLoader:
    """
    Resolves a buyer photo reference to pixels. Local paths are read only from
    inside ``base_dir`` and remote photos only over http(s) from ``allowed_hosts``;
    with neither configured every reference is refused.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = 5.0,
        base_dir: Path | str | None = None,
        allowed_hosts: Iterable[str] = (),
    ):
        self._client = client
        self._timeout = timeout
        self.base_dir = Path(base_dir).resolve() if base_dir is not None else None
        self.allowed_hosts = {h.lower() for h in allowed_hosts}

    def __call__(self, url: str) -> np.ndarray:
        scheme = urlsplit(url).scheme.lower()
        if scheme in ("http", "https"):
            raw = self._fetch(url)
        elif scheme in ("", "file"):
            raw = self._read_local(url.removeprefix("file://"))
        else:
            raise ReferenceImageUnavailable(f"unsupported reference scheme {scheme}")

        try:
            return decode_image(raw)
        except MalformedPayload as e:
            raise ReferenceImageUnavailable(f"reference at {url} is not an image") from e

    def _read_local(self, name: str) -> bytes:
        if self.base_dir is None:
            raise ReferenceImageUnavailable("local reference photos are not enabled")
        path = (self.base_dir / name).resolve()
        if not path.is_relative_to(self.base_dir):
            logger.warning("reference_path_rejected path=%s", name)
            raise ReferenceImageUnavailable(f"{name} is outside the photo directory")
        try:
            return path.read_bytes()
        except OSError as e:
            raise ReferenceImageUnavailable(f"cannot read {name}") from e

    def _fetch(self, url: str) -> bytes:
        host = (urlsplit(url).hostname or "").lower()
        if host not in self.allowed_hosts:
            logger.warning("reference_host_rejected host=%s", host)
            raise ReferenceImageUnavailable(f"host {host or '?'} is not an allowed photo source")
        try:
            if self._client is not None:
                r = self._client.get(url, timeout=self._timeout)
            else:
                with httpx.Client() as client:
                    r = client.get(url, timeout=self._timeout)
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("reference_fetch_failed url=%s error=%s", url, e.__class__.__name__)
            raise ReferenceImageUnavailable(f"cannot fetch {url}") from e
        return r.content
