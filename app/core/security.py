from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException
from pydantic import BaseModel

from app.core.config import get_settings

logger = logging.getLogger(__name__)


class Operator(BaseModel):
    id: str
    authenticated: bool


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _presented_key(authorization: str | None, x_api_key: str | None) -> str | None:
    """Bearer token wins over X-API-Key; a malformed Authorization header is refused outright."""
    if authorization:
        scheme, _, token = authorization.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise _unauthorized("invalid authorization header")
        return token
    return (x_api_key or "").strip() or None


def require_operator(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Operator:
    """Gate for the pipeline/operator surface: one shared operator key."""
    settings = get_settings()
    if not settings.auth_enabled:
        return Operator(id="anonymous", authenticated=False)

    presented = _presented_key(authorization, x_api_key)
    if presented is None:
        raise _unauthorized("missing api key")
    if not hmac.compare_digest(presented.encode("utf-8"), settings.operator_api_key.encode("utf-8")):
        logger.warning("rejected operator request with unknown api key")
        raise _unauthorized("invalid api key")
    return Operator(id="operator", authenticated=True)
