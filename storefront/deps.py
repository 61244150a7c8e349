"""
FastAPI dependency utilities: caller identity, admin token, payment callback
signature verification, side-effect dispatcher.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from storefront.config import get_settings
from storefront.services.effects import SideEffects

logger = logging.getLogger(__name__)


async def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity as forwarded by the auth service in front of us."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()


async def require_admin(
    authorization: str | None = Header(default=None),
    x_admin_user: str | None = Header(default=None),
) -> str:
    """
    Bearer-token guard for /admin.  Returns the acting admin's name for audit
    fields (X-Admin-User, default "admin").
    """
    expected = get_settings().admin_bearer_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin API disabled: ADMIN_BEARER_TOKEN not configured",
        )
    if authorization and authorization.startswith("Bearer "):
        token = authorization.removeprefix("Bearer ").strip()
        if hmac.compare_digest(token, expected):
            return (x_admin_user or "admin").strip() or "admin"
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing Bearer token",
    )


async def verify_payment_callback(
    request: Request,
    x_signature: str | None = Header(default=None),
) -> bytes:
    """
    Verify a gateway callback via HMAC-SHA256 (base64) over the raw body.
    Returns the raw request body so routers don't need to re-read it.
    """
    body = await request.body()
    secret = get_settings().payment_callback_secret

    if not secret:
        logger.warning("No PAYMENT_CALLBACK_SECRET configured – accepting unsigned callbacks!")
        return body

    if not x_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Signature header",
        )

    expected = hmac.new(key=secret.encode(), msg=body, digestmod=hashlib.sha256).digest()
    try:
        provided = base64.b64decode(x_signature, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed signature header",
        )

    if not hmac.compare_digest(expected, provided):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Callback signature mismatch",
        )
    return body


def get_effects(request: Request) -> SideEffects:
    return request.app.state.effects
