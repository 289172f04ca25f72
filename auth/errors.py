"""
auth/errors.py -- Typed outcomes for every credential operation.

Every failure a service can report is a subclass of AuthError. Each class
carries three things:

  code           -- stable machine-readable identifier for API clients
  status_code    -- HTTP status the transport layer should use
  public_message -- the ONLY text a client ever sees

The constructor's `detail` argument is the internal cause. It goes to the
server log and never into a response body. Authentication, refresh, reset
and API-token failures share one public_message per context so
a caller cannot tell which internal check failed.

api/main.py maps AuthError to a response in exactly one exception handler.

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum


class AuthError(Exception):
    """Base class for all typed credential-core failures."""

    code: str = "auth_error"
    status_code: int = 400
    public_message: str = "Request could not be completed."

    def __init__(self, detail: str | None = None, *, public_message: str | None = None) -> None:
        self.detail = detail or self.__class__.__name__
        if public_message is not None:
            self.public_message = public_message
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    """Unknown user, service account, or wrong password. One message for all three."""

    code = "invalid_credentials"
    status_code = 401
    public_message = "Invalid username/email or password."


class AuthenticationRequired(AuthError):
    code = "unauthorized"
    status_code = 401
    public_message = "Authentication required."


class AccountDeactivated(AuthError):
    code = "account_deactivated"
    status_code = 403
    public_message = "Account is deactivated."


class InvalidOrExpiredToken(AuthError):
    """Signature, expiry, or liveness check failed for a presented token."""

    code = "invalid_token"
    status_code = 401
    public_message = "Invalid or expired token."


class InvalidRefreshToken(InvalidOrExpiredToken):
    public_message = "Invalid or expired refresh token."


class RefreshTokenExpired(InvalidOrExpiredToken):
    public_message = "Invalid or expired refresh token."


class InvalidResetToken(InvalidOrExpiredToken):
    """Missing, used, expired, or owner inactive -- all four collapse here."""

    code = "invalid_reset_token"
    status_code = 400
    public_message = "Invalid or expired reset token."


# ---------------------------------------------------------------------------
# API tokens
# ---------------------------------------------------------------------------


class ApiTokenRejected(InvalidOrExpiredToken):
    """Base for API token validation failures. All share one public message."""

    code = "invalid_api_token"
    public_message = "Invalid or expired API token."


class InvalidTokenFormat(ApiTokenRejected):
    pass


class InvalidApiToken(ApiTokenRejected):
    pass


class TokenRevoked(ApiTokenRejected):
    pass


class TokenExpired(ApiTokenRejected):
    pass


class TokenUserInactive(ApiTokenRejected):
    pass


# ---------------------------------------------------------------------------
# Resource errors
# ---------------------------------------------------------------------------


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    public_message = "Resource not found."


class UserNotFound(NotFound):
    public_message = "User not found."


class ApiTokenNotFound(NotFound):
    public_message = "Token not found."


class ConflictReason(str, Enum):
    CAP_REACHED = "cap_reached"
    ALREADY_REVOKED = "already_revoked"
    SETUP_COMPLETED = "setup_completed"


_CONFLICT_MESSAGES = {
    ConflictReason.CAP_REACHED: "Maximum number of active API tokens reached. Revoke an existing token first.",
    ConflictReason.ALREADY_REVOKED: "Token is already revoked.",
    ConflictReason.SETUP_COMPLETED: "Setup has already been completed.",
}


class Conflict(AuthError):
    """409-class failure. `reason` tells callers which conflict occurred."""

    code = "conflict"
    status_code = 409

    def __init__(self, reason: ConflictReason, detail: str | None = None) -> None:
        self.reason = reason
        self.code = reason.value
        super().__init__(detail or reason.value, public_message=_CONFLICT_MESSAGES[reason])


# ---------------------------------------------------------------------------
# Password changes and input validation
# ---------------------------------------------------------------------------


class PermissionDenied(AuthError):
    code = "forbidden"
    status_code = 403
    public_message = "Operation not permitted."


class AdminRequired(PermissionDenied):
    public_message = "Admin access required."


class MissingScope(PermissionDenied):
    public_message = "API token lacks the required scope."


class ServiceAccountsCannotChangePassword(PermissionDenied):
    code = "service_account"
    public_message = "Service accounts cannot change passwords."


class IncorrectPassword(AuthError):
    code = "incorrect_password"
    status_code = 400
    public_message = "Current password is incorrect."


class ValidationError(AuthError):
    """Input rejected by a domain rule (password policy, token name, scopes).

    The detail IS safe to show: it only describes the caller's own input.
    """

    code = "validation_error"
    status_code = 422

    def __init__(self, detail: str) -> None:
        super().__init__(detail, public_message=detail)
