"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Authenticated routes compose an explicit pipeline of dependencies instead of
an implicit middleware chain:

    extract_token  -> str | None       (parse the transport headers)
    require_session -> AuthSession     (look the token up; 401 otherwise)
    route handler                      (runs only with a live session)

Each stage either hands its result to the next or terminates the request by
raising Unauthorized, which the app renders as a 401 JSON body.

Token transport, checked in order:
  1. X-Auth-Token: <token>
  2. Authorization: Bearer <token>

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/ or cdc/.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.exceptions import Unauthorized
from auth.models import AuthSession
from auth.tokens import TokenService


def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens


def extract_token(request: Request) -> str | None:
    """Return the raw token from the request headers, or None if absent."""
    token = request.headers.get("X-Auth-Token", "").strip()
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def require_session(
    token: str | None = Depends(extract_token),
    tokens: TokenService = Depends(get_token_service),
) -> AuthSession:
    """Require a valid, unexpired token. Raises Unauthorized (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: AuthSession = Depends(require_session)): ...
    """
    if token is None:
        raise Unauthorized("No token provided")
    return tokens.authenticate(token)


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer, else "unknown"."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
