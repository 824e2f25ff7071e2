"""Shared FastAPI dependencies: admin auth and publisher lookup."""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request, status

from ..config import settings
from ..publishers import Publisher, get_publisher

logger = logging.getLogger(__name__)


def require_admin(request: Request) -> None:
    """Reject the call unless it carries ``Authorization: Bearer <REGEN_TOKEN>``."""
    header = request.headers.get("Authorization") or ""
    token = header[7:].strip() if header[:7].lower() == "bearer " else ""
    expected = settings.REGEN_TOKEN
    if not token or not expected or not hmac.compare_digest(token, expected):
        logger.warning("Rejected admin call to %s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def publisher_or_404(slug: str) -> Publisher:
    publisher = get_publisher(slug)
    if publisher is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown publisher '{slug}'")
    return publisher


def public_origin(request: Request) -> str:
    """Origin used for image-proxy URLs inside published features."""
    return settings.PUBLIC_BASE_URL or str(request.base_url).rstrip("/")
