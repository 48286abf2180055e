"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/auth/login     -- email-or-username + password; returns a token
  POST /api/auth/register  -- create account; returns a token (201)
  POST /api/auth/logout    -- revoke the presented token (requires auth)
  GET  /api/auth/me        -- current user (requires auth)
  GET  /api/auth/verify    -- same payload as /me; used by the frontend to
                              check a stored token is still live

Security:
  Login: one message ("Invalid credentials") for unknown user and wrong
      password. verify_credentials() equalizes timing -- use it, never inline
      find_user_by_identifier() + verify_password().
  Register: a taken email or username is reported as 409. That reveals that
      an account exists, which login deliberately does not; the asymmetry is
      accepted for a usable sign-up form.
  Cache-Control: no-store on every response that carries a token.

login and register are plain `def` handlers: bcrypt is CPU-bound, and
FastAPI runs sync handlers in its threadpool instead of on the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import LoginRequest, PublicUser, RegisterRequest, SuccessResponse, TokenResponse, UserEnvelope
from auth.activity import Action, ActivityLog
from auth.dependencies import client_ip, get_token_service, require_session
from auth.exceptions import Conflict, InvalidInput
from auth.models import AuthSession
from auth.tokens import MAX_PASSWORD_BYTES, TokenService

# Auth policy:
# - POST /api/auth/login:     public
# - POST /api/auth/register:  public
# - POST /api/auth/logout:    requires auth (require_session)
# - GET  /api/auth/me:        requires auth (require_session)
# - GET  /api/auth/verify:    requires auth (require_session)
router = APIRouter()


def _activity(request: Request) -> ActivityLog:
    return request.app.state.activity


def _token_response(status_code: int, token: str, user) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=TokenResponse(token=token, user=PublicUser.from_user(user)).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
def login(
    request: Request,
    body: LoginRequest,
    tokens: TokenService = Depends(get_token_service),
) -> JSONResponse:
    """Verify credentials and issue a fresh session token."""
    identifier = body.identifier
    if not identifier or not body.password:
        raise InvalidInput("Email and password required")

    user = tokens.verify_credentials(identifier, body.password)
    session_token = tokens.issue_token(user.id)

    _activity(request).record(user.id, Action.LOGIN, client_ip(request), username=user.username, email=user.email)
    return _token_response(200, session_token.token, user)


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    tokens: TokenService = Depends(get_token_service),
) -> JSONResponse:
    """Create an account and log it straight in.

    Every input check runs before the store is touched. The existence check
    gives the common case a clean 409; the UNIQUE constraints behind
    create_user() still decide concurrent races, so that path is 409 too.
    """
    if not body.email or not body.username or not body.password:
        raise InvalidInput("All fields required")

    min_length = request.app.state.settings.min_password_length
    if len(body.password) < min_length:
        raise InvalidInput(f"Password must be at least {min_length} characters")
    if len(body.password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise InvalidInput(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    store = tokens.store
    if store.user_exists(body.email, body.username):
        raise Conflict("User already exists")

    user_id = store.create_user(body.email, body.username, tokens.hash_password(body.password))
    user = store.get_user(user_id)
    session_token = tokens.issue_token(user_id)

    _activity(request).record(user_id, Action.REGISTER, client_ip(request), username=user.username, email=user.email)
    return _token_response(201, session_token.token, user)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=SuccessResponse)
def logout(
    request: Request,
    session: AuthSession = Depends(require_session),
    tokens: TokenService = Depends(get_token_service),
) -> SuccessResponse:
    """Revoke the presented token. Other tokens of the same user stay valid."""
    tokens.revoke(session.token.token)
    _activity(request).record(session.user.id, Action.LOGOUT, client_ip(request), username=session.user.username)
    return SuccessResponse()


@router.get("/auth/me", response_model=UserEnvelope)
def me(session: AuthSession = Depends(require_session)) -> UserEnvelope:
    return UserEnvelope(user=PublicUser.from_user(session.user))


@router.get("/auth/verify", response_model=UserEnvelope)
def verify(session: AuthSession = Depends(require_session)) -> UserEnvelope:
    return UserEnvelope(user=PublicUser.from_user(session.user))
