"""
api/routes/v1/tokens.py -- API token management routes.

Routes:
  POST   /tokens             -- create token; the raw value is in this response only
  GET    /tokens             -- list the caller's tokens (metadata only)
  DELETE /tokens/{token_id}  -- revoke one of the caller's tokens

Every route requires a session access token. An API token cannot be used to
mint or revoke API tokens, so a leaked token cannot entrench itself.

Ownership is enforced in the store query (id AND user_id). A token that
belongs to someone else is reported exactly like one that does not exist.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import ApiTokenCreate, ApiTokenCreatedResponse, ApiTokenResponse, ApiTokenRevokedResponse
from auth.api_tokens import ApiTokenManager
from auth.dependencies import get_session_principal
from auth.models import Principal

router = APIRouter()


def _manager(request: Request) -> ApiTokenManager:
    return request.app.state.api_tokens


# ---------------------------------------------------------------------------
# POST /tokens -- create
# ---------------------------------------------------------------------------


@router.post("/tokens", response_model=ApiTokenCreatedResponse, status_code=201)
@limiter.limit("10/minute")
def create_token(
    request: Request,
    body: ApiTokenCreate,
    principal: Principal = Depends(get_session_principal),
) -> ApiTokenCreatedResponse:
    """Create an API token. 409 cap_reached once the caller holds the maximum."""
    created = _manager(request).create(
        principal.user_id,
        body.name,
        [scope.value for scope in body.scopes],
        expires_in=body.expires_in.to_timedelta() if body.expires_in is not None else None,
    )
    meta = ApiTokenResponse.from_token(created.token)
    return ApiTokenCreatedResponse(**meta.model_dump(), token=created.raw_token)


# ---------------------------------------------------------------------------
# GET /tokens -- list
# ---------------------------------------------------------------------------


@router.get("/tokens", response_model=list[ApiTokenResponse])
def list_tokens(
    request: Request,
    principal: Principal = Depends(get_session_principal),
) -> list[ApiTokenResponse]:
    return [ApiTokenResponse.from_token(t) for t in _manager(request).list(principal.user_id)]


# ---------------------------------------------------------------------------
# DELETE /tokens/{token_id} -- revoke
# ---------------------------------------------------------------------------


@router.delete("/tokens/{token_id}", response_model=ApiTokenRevokedResponse)
def revoke_token(
    request: Request,
    token_id: int,
    principal: Principal = Depends(get_session_principal),
) -> ApiTokenRevokedResponse:
    """Revoke a token. 404 if unknown or not the caller's, 409 already_revoked if revoked."""
    token = _manager(request).revoke(token_id, principal.user_id)
    return ApiTokenRevokedResponse(id=token.id, name=token.name, revoked_at=token.revoked_at)
