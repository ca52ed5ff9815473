"""
api/routes/v1/auth.py -- Session and credential-recovery REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets JWT cookie, returns bearer
  POST /api/v1/auth/logout             -- clears cookie; 200
  GET  /api/v1/auth/me                 -- current session identity (requires auth)
  POST /api/v1/auth/recovery           -- request a recovery link (public)
  GET  /api/v1/auth/recovery/{token}   -- check a recovery link before showing the form (public)
  POST /api/v1/auth/recovery/reset     -- set a new password with a recovery token (public)

Security:
  [H2] login and all recovery routes are rate-limited per IP.
  [C1] AccessService.authenticate() equalizes timing -- never inline the lookup.
  [M5] Cache-Control: no-store on login responses.
  POST /recovery answers identically for registered and unknown addresses.
  Notifier failures surface as notification_failed (503), distinct from
  token errors.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RecoveryRequest,
    RecoveryResetRequest,
    SessionUser,
    TokenCheckResponse,
)
from auth.dependencies import get_session
from auth.errors import InvalidOrExpiredToken
from auth.models import SessionAssertion
from auth.recovery import RecoveryFlow
from auth.service import AccessService
from auth.tokens import encode_session, set_auth_cookie
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:                public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:               public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:                   requires auth (get_session)
# - POST /api/v1/auth/recovery:             public -- the user has no working credential
# - GET  /api/v1/auth/recovery/{token}:     public -- the token is the credential
# - POST /api/v1/auth/recovery/reset:       public -- the token is the credential
router = APIRouter()

_RECOVERY_MESSAGE = "If the email is registered, you will receive instructions to reset your password."
_RECOVERY_DETAIL = "The link is valid for 1 hour and can be used once."


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie and return the bearer token.

    Unknown email and wrong password produce the same bad_credentials error.
    A disabled account is reported as account_inactive, but only to callers
    who supplied the correct password.
    """
    service: AccessService = request.app.state.access_service
    session = service.login(body.email, body.password)
    token = encode_session(session)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            user=SessionUser.from_session(session),
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=SessionUser)
async def me(session: SessionAssertion = Depends(get_session)) -> SessionUser:
    """Return the identity and permission snapshot carried by the session."""
    return SessionUser.from_session(session)


# ---------------------------------------------------------------------------
# Credential recovery
# ---------------------------------------------------------------------------


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/auth/recovery", response_model=MessageResponse)
async def request_recovery(request: Request, body: RecoveryRequest) -> MessageResponse:
    """Issue a recovery token and mail the link.

    The response is the same whether or not the address is registered.
    Delivery is skipped for unknown addresses.
    """
    flow: RecoveryFlow = request.app.state.recovery_flow
    ticket = flow.request_recovery(body.email)
    if ticket.registered:
        await request.app.state.notifier.send(ticket.email, ticket.token, ticket.name)
    return MessageResponse(message=_RECOVERY_MESSAGE, detail=_RECOVERY_DETAIL)


@limiter.limit(_settings.recovery_rate_limit)
@router.get("/auth/recovery/{token}", response_model=TokenCheckResponse)
def check_recovery_token(request: Request, token: str) -> TokenCheckResponse:
    """Confirm a recovery link is live. Each check counts as one attempt."""
    flow: RecoveryFlow = request.app.state.recovery_flow
    user = flow.inspect_token(token)
    if user is None:
        raise InvalidOrExpiredToken()
    return TokenCheckResponse(email=user.email)


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/auth/recovery/reset", response_model=MessageResponse)
def reset_password(request: Request, body: RecoveryResetRequest) -> MessageResponse:
    """Set a new password with a recovery token.

    A weak password is rejected before the token is looked at, so the same
    link can be retried with a stronger password.
    """
    flow: RecoveryFlow = request.app.state.recovery_flow
    flow.consume_and_set_password(body.token, body.password)
    return MessageResponse(message="Password updated. You can now log in.")
