"""
api/routes/v1/auth.py -- Session and password REST endpoints.

Routes:
  GET  /api/v1/auth/setup-needed          -- true while no account exists (public)
  POST /api/v1/auth/setup                 -- create first admin, log in (public, once)
  POST /api/v1/auth/login                 -- password login (public, rate limited)
  POST /api/v1/auth/refresh               -- rotate refresh token (cookie or body)
  POST /api/v1/auth/logout                -- end ALL sessions of the user (access token)
  POST /api/v1/auth/change-password       -- (access token)
  GET  /api/v1/auth/me                    -- current principal (access or API token)
  POST /api/v1/auth/forgot-password       -- always the same answer (rate limited)
  POST /api/v1/auth/reset-password        -- consume reset token (rate limited)
  GET  /api/v1/auth/validate-reset-token  -- {"valid": bool}

Handlers only translate HTTP <-> service calls. Failures are AuthError
subclasses raised by the services; api/main.py renders them.

Security:
  [R1] Refresh token lives in an httpOnly, SameSite=strict cookie scoped to
       /api/v1/auth. Non-browser clients may send it in the JSON body instead.
  [R2] Cache-Control: no-store on every response that carries a credential.
  [R3] forgot-password schedules the reset request as a background task and
       returns one fixed message first, so neither body nor latency depends on
       whether the email is registered. Errors in the task are logged only.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    ResetPasswordRequest,
    SetupNeededResponse,
    SetupRequest,
    ValidateResetTokenResponse,
)
from auth.dependencies import get_current_principal, get_session_principal
from auth.errors import InvalidRefreshToken
from auth.models import AuthResult, Principal
from auth.reset import PasswordResetFlow
from auth.sessions import SessionManager
from core.config import get_settings

logger = logging.getLogger("notez.api.auth")

_settings = get_settings()

REFRESH_COOKIE = "refresh_token"
_COOKIE_PATH = "/api/v1/auth"
_RESET_ACK = "If an account with that email exists, a password reset link has been sent."

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def _resets(request: Request) -> PasswordResetFlow:
    return request.app.state.resets


def _issue(request: Request, response: Response, message: str, result: AuthResult) -> LoginResponse:
    """Attach the refresh cookie [R1] and build the token response [R2]."""
    settings = request.app.state.settings
    response.set_cookie(
        REFRESH_COOKIE,
        value=result.tokens.refresh_token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path=_COOKIE_PATH,
    )
    response.headers["Cache-Control"] = "no-store"
    return LoginResponse.from_result(message, result, expires_in=settings.access_token_expire_seconds)


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> Optional[str]:
    token = request.cookies.get(REFRESH_COOKIE)
    if not token and body is not None:
        token = body.refresh_token
    return token or None


def _request_reset(flow: PasswordResetFlow, email: str) -> None:
    """Background task body for forgot-password [R3]."""
    try:
        flow.request(email)
    except Exception:
        logger.exception("Password reset request failed")


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


@router.get("/auth/setup-needed", response_model=SetupNeededResponse)
def setup_needed(request: Request) -> SetupNeededResponse:
    return SetupNeededResponse(setup_needed=_sessions(request).setup_needed())


@router.post("/auth/setup", response_model=LoginResponse, status_code=201)
def setup(request: Request, response: Response, body: SetupRequest) -> LoginResponse:
    """Create the first admin account. 409 once any account exists."""
    result = _sessions(request).setup_first_user(body.username, body.email, body.password)
    return _issue(request, response, "Setup completed successfully", result)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate with username (exact) or email (case-insensitive) and password."""
    result = _sessions(request).login(body.username_or_email, body.password)
    return _issue(request, response, "Login successful", result)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, response: Response, body: Optional[RefreshRequest] = None) -> LoginResponse:
    """Exchange the refresh token for a new pair. The presented token dies here."""
    token = _presented_refresh_token(request, body)
    if token is None:
        raise InvalidRefreshToken("no refresh token presented")
    result = _sessions(request).refresh(token)
    return _issue(request, response, "Token refreshed successfully", result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    principal: Principal = Depends(get_session_principal),
) -> MessageResponse:
    """Sign the user out of every device and clear the cookie."""
    token = _presented_refresh_token(request, body)
    if token is not None:
        _sessions(request).logout(token)
    response.delete_cookie(REFRESH_COOKIE, path=_COOKIE_PATH)
    return MessageResponse(message="Logout successful")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_session_principal),
) -> MessageResponse:
    """Change the caller's password. Every session, this one included, is revoked."""
    _sessions(request).change_password(principal.user_id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully")


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    return MeResponse(
        user_id=principal.user_id,
        username=principal.username,
        role=principal.role,
        scopes=list(principal.scopes) if principal.scopes is not None else None,
    )


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(_settings.password_reset_rate_limit)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    background_tasks.add_task(_request_reset, _resets(request), body.email)
    return MessageResponse(message=_RESET_ACK)


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(_settings.password_reset_rate_limit)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _resets(request).consume(body.token, body.new_password)
    return MessageResponse(
        message="Password has been reset successfully. You can now log in with your new password."
    )


@router.get("/auth/validate-reset-token", response_model=ValidateResetTokenResponse)
def validate_reset_token(
    request: Request,
    token: str = Query(min_length=1, max_length=255),
) -> ValidateResetTokenResponse:
    """Lets the frontend check a link before showing the new-password form."""
    return ValidateResetTokenResponse(valid=_resets(request).validate(token))
