"""
auth/models.py -- Domain dataclasses for identity and authorization entities.

Pattern: Data class (pure data containers). Stores and services do the work;
these classes own the domain shape only. The one exception is
ModulePermission.parse(), which owns the "action:resource[:scope]" string form
used for storage.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from auth.social import SocialIdentity, SocialProfile

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AuthProvider(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    USERNAME = "username"
    GOOGLE = "google"
    FACEBOOK = "facebook"
    APPLE = "apple"
    MICROSOFT = "microsoft"

    @property
    def is_social(self) -> bool:
        return self in _SOCIAL_PROVIDERS


_SOCIAL_PROVIDERS = frozenset({AuthProvider.GOOGLE, AuthProvider.FACEBOOK, AuthProvider.APPLE, AuthProvider.MICROSOFT})


class OtpPurpose(str, Enum):
    REGISTER = "register"
    LOGIN = "login"
    VERIFY = "verify"


class Scope(str, Enum):
    """Breadth of a permission. Ordered narrowest to widest."""

    OWN = "own"
    TEAM = "team"
    DEPARTMENT = "department"
    ALL = "all"


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An identity known to ScopeGate.

    At least one of email / phone / username or one social id is set.
    hashed_password is None for phone-only and social-only accounts.
    department_id / team_id are the organisational context consulted by
    department- and team-scoped permissions.

    Users are never deleted here; is_active=False is the only off switch.
    """

    display_name: str
    role_id: str
    id: str | None = None
    email: str | None = None
    phone: str | None = None
    username: str | None = None
    hashed_password: str | None = None
    avatar: str | None = None
    is_active: bool = True
    is_verified: bool = False
    google_id: str | None = None
    facebook_id: str | None = None
    apple_id: str | None = None
    microsoft_id: str | None = None
    department_id: str | None = None
    team_id: str | None = None
    last_seen: str | None = None
    otp_code: str | None = None
    otp_expiry: datetime | None = None
    created_at: str | None = None


@dataclass
class OtpIssuance:
    """One row of the OTP issuance log.

    code is only kept for register-purpose challenges, where no user record
    exists yet to hold it.
    """

    phone: str
    purpose: OtpPurpose
    issued_at: datetime
    expires_at: datetime
    id: int | None = None
    code: str | None = None
    consumed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModulePermission:
    """A grant of `action` on `resource`, limited to `scope`.

    "*" in action or resource matches anything.
    """

    action: str
    resource: str
    scope: Scope = Scope.ALL

    @classmethod
    def parse(cls, value: str) -> "ModulePermission":
        """Parse "action:resource" or "action:resource:scope". Scope defaults to all."""
        parts = value.split(":")
        if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
            raise ValueError(f"Malformed permission string: {value!r}")
        scope = Scope(parts[2]) if len(parts) == 3 else Scope.ALL
        return cls(action=parts[0], resource=parts[1], scope=scope)

    def __str__(self) -> str:
        return f"{self.action}:{self.resource}:{self.scope.value}"


@dataclass(frozen=True)
class Role:
    id: str
    name: str
    level: int
    modules: tuple[str, ...] = ()
    permissions: tuple[ModulePermission, ...] = ()
    description: str = ""
    is_system: bool = False


# ---------------------------------------------------------------------------
# Service inputs and outputs
# ---------------------------------------------------------------------------


@dataclass
class LoginCredentials:
    provider: AuthProvider
    email: str | None = None
    phone: str | None = None
    username: str | None = None
    password: str | None = None
    otp_code: str | None = None
    identity: SocialIdentity | None = None
    profile: SocialProfile | None = None


@dataclass
class RegistrationData:
    provider: AuthProvider
    display_name: str
    terms_accepted: bool = False
    email: str | None = None
    phone: str | None = None
    username: str | None = None
    password: str | None = None
    avatar: str | None = None
    otp_code: str | None = None
    identity: SocialIdentity | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
