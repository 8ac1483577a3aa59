"""Shared FastAPI dependencies."""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, HTTPException, Request

from shipsync.services import Services

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    return request.app.state.services


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_admin(request: Request, services: Services = Depends(get_services)) -> None:
    """Constant-time bearer check against ADMIN_API_TOKEN.

    With no token configured the admin surface is closed entirely.
    """
    expected = services.settings.admin_api_token
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    token = extract_bearer_token(request.headers.get("authorization"))
    if token is None or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("Rejected admin request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
