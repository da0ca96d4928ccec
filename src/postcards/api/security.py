"""Admin key check for the dashboard endpoints."""

from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, Request

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = "X-Admin-Key"


def _timing_safe_equal(left: str, right: str) -> bool:
    return hmac.compare_digest(
        (left or "").strip().encode("utf-8"), (right or "").strip().encode("utf-8")
    )


def require_admin(
    request: Request,
    x_admin_key: str | None = Header(default=None, alias=ADMIN_KEY_HEADER),
) -> None:
    """FastAPI dependency guarding dashboard routes.

    When ``admin_api_key`` is configured the ``X-Admin-Key`` header must
    match it.  With no key configured the dashboard is open, which is only
    appropriate for local development.

    Raises:
        HTTPException: 401 if the header is missing or does not match
    """
    expected = request.app.state.config.admin_api_key
    if not expected:
        return

    if not x_admin_key or not _timing_safe_equal(x_admin_key, expected):
        logger.warning(f"Rejected dashboard request to {request.url.path}")
        raise HTTPException(status_code=401, detail="Invalid or missing admin key")
