"""Bearer-token guard shared by the operator endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict

import jwt
from fastapi import Header, HTTPException, status

from .secrets import get_secret

_LOG = logging.getLogger(__name__)


def _forbidden(reason: str) -> HTTPException:
    _LOG.warning("rejected operator request: %s", reason)
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def require_token(authorization: str | None = Header(None)) -> Dict[str, Any]:
    """Validate Bearer token via per-operator static tokens or an HS256 JWT.

    Returns the resolved principal (``{"sub": <operator>}`` for static tokens,
    the decoded claims for JWTs) so handlers can record who acted.
    """

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _forbidden("unsupported auth scheme")

    # JWTs have three dot-separated segments
    if token.count(".") == 2:
        secret = get_secret("JWT_SECRET")
        if not secret:
            raise _forbidden("jwt presented but JWT_SECRET unset")
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.PyJWTError as exc:
            raise _forbidden(f"invalid jwt: {exc}") from exc

    tokens: Dict[str, str] = get_secret("API_TOKENS", {}) or {}
    for operator, expected in tokens.items():
        if token == expected:
            return {"sub": operator}
    raise _forbidden("unknown static token")
