"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential kinds are accepted:
  1. Authorization: Bearer <JWT access token> -- interactive sessions.
  2. Authorization: Bearer ntez_...  or  X-API-Key: ntez_... -- API tokens.

Both converge on a Principal. Failures raise AuthError subclasses; the
exception handler in api/main.py turns them into responses, so status codes
and messages are decided in one place.

get_session_principal() accepts only JWT access tokens. Token management
routes use it: an API token must not be able to mint or revoke API tokens.

get_current_principal() accepts either kind. require_admin() and
require_scope() build on it.

Layer rule: may import fastapi (this module is part of the DI system) but
nothing from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import BackgroundTasks, Depends, Request

from auth.api_tokens import TOKEN_PREFIX
from auth.errors import AdminRequired, AuthenticationRequired, InvalidOrExpiredToken, MissingScope
from auth.models import Principal

# JWTs issued here are a few hundred bytes. Anything far longer is junk and
# is rejected before signature verification.
_MAX_ACCESS_TOKEN_LENGTH = 1000


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def _principal_from_access_token(request: Request, token: str) -> Principal:
    if len(token) > _MAX_ACCESS_TOKEN_LENGTH:
        raise InvalidOrExpiredToken("access token exceeds length limit", public_message="Invalid or expired access token.")
    claims = request.app.state.sessions.authenticate(token)
    return Principal(user_id=claims.user_id, username=claims.username, role=claims.role)


def get_session_principal(request: Request) -> Principal:
    """Require a JWT access token. API tokens are refused here."""
    token = _bearer_token(request)
    if token is None or token.startswith(TOKEN_PREFIX):
        raise AuthenticationRequired("no bearer access token on session-only route")
    return _principal_from_access_token(request, token)


def get_current_principal(request: Request, background_tasks: BackgroundTasks) -> Principal:
    """Authenticate with an access token or an API token.

    API token last_used_at stamps run as background tasks, after the response.
    """
    token = _bearer_token(request) or request.headers.get("X-API-Key", "").strip() or None
    if token is None:
        raise AuthenticationRequired("no credentials presented")
    if token.startswith(TOKEN_PREFIX):
        identity = request.app.state.api_tokens.validate(token, defer=background_tasks.add_task)
        return Principal(
            user_id=identity.user_id,
            username=identity.username,
            role=identity.role,
            scopes=tuple(identity.scopes),
        )
    return _principal_from_access_token(request, token)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Require the admin role."""
    if principal.role != "admin":
        raise AdminRequired(f"user_id={principal.user_id} is not an admin")
    return principal


def require_scope(scope: str) -> Callable[..., Principal]:
    """Dependency factory: require `scope` on API-token callers.

    Usage:
        @router.post("/notes")
        async def create(principal: Principal = Depends(require_scope("write"))): ...
    """

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_scope(scope):
            raise MissingScope(f"user_id={principal.user_id} token lacks scope {scope!r}")
        return principal

    return dependency
