"""
auth/errors.py -- Typed error taxonomy for the identity subsystem.

Every failure the service can report is a subclass of AuthError carrying a
stable `code` and the HTTP `status_code` the API layer should use. The auth
layer never builds HTTP responses itself; api/main.py registers one handler
for AuthError and renders the standard error envelope.

No error is retried automatically. Messages are safe to show to clients and
never contain secrets, codes, or hashes.

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for identity and authorization failures."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Authentication error."

    def __init__(self, message: str | None = None, *, detail: dict | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}


class InvalidRequest(AuthError):
    status_code = 400
    code = "invalid_request"
    default_message = "The request is missing a required field or is malformed."


class InvalidCredential(AuthError):
    status_code = 401
    code = "invalid_credential"
    default_message = "Invalid credentials."


class NotFound(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "User not found."


class Deactivated(AuthError):
    status_code = 403
    code = "deactivated"
    default_message = "This account has been deactivated."


class DuplicateIdentity(AuthError):
    status_code = 409
    code = "duplicate_identity"
    default_message = "An account with this identifier already exists."


class InvalidToken(AuthError):
    """Generic token failure. Deliberately does not say why (expired, forged, wrong type)."""

    status_code = 401
    code = "invalid_token"
    default_message = "Invalid or expired token."


class OtpNotIssued(AuthError):
    status_code = 400
    code = "otp_not_issued"
    default_message = "OTP not generated."


class OtpMismatch(AuthError):
    status_code = 400
    code = "otp_mismatch"
    default_message = "Invalid OTP."


class OtpExpired(AuthError):
    status_code = 400
    code = "otp_expired"
    default_message = "OTP expired."


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests. Try again later."

    def __init__(self, message: str | None = None, *, retry_after: int = 60, detail: dict | None = None) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class InsufficientPermission(AuthError):
    status_code = 403
    code = "insufficient_permission"
    default_message = "You do not have permission to perform this action."


class InvalidRoleHierarchy(AuthError):
    status_code = 403
    code = "invalid_role_hierarchy"
    default_message = "Cannot manage a role at or above your own level."


class DuplicateRole(AuthError):
    status_code = 409
    code = "duplicate_role"
    default_message = "A role with this id or name already exists."


class RoleInUse(AuthError):
    status_code = 409
    code = "role_in_use"
    default_message = "Role is assigned to one or more users."


class ProtectedRole(AuthError):
    status_code = 403
    code = "protected_role"
    default_message = "This system role cannot be deleted."
