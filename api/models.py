"""
API request and response models for ScopeGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Role, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.\-]{3,150}$"
ROLE_ID_PATTERN = r"^[a-z][a-z0-9_]{1,63}$"
OTP_PATTERN = r"^\d{6}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LocalProviderEnum(str, Enum):
    """Credential types accepted by /auth/register and /auth/login.

    Social providers sign in through /auth/social/{provider}/login instead.
    """

    email = "email"
    phone = "phone"
    username = "username"


class OtpPurposeEnum(str, Enum):
    register = "register"
    login = "login"
    verify = "verify"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, dict]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    provider: LocalProviderEnum
    display_name: str = Field(min_length=1, max_length=255)
    terms_accepted: bool = False
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    username: Optional[str] = Field(default=None, pattern=USERNAME_PATTERN)
    # bcrypt only reads the first 72 bytes.
    password: Optional[str] = Field(default=None, min_length=8, max_length=72)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    otp_code: Optional[str] = Field(default=None, pattern=OTP_PATTERN)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    provider: LocalProviderEnum
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    username: Optional[str] = Field(default=None, max_length=150)
    password: Optional[str] = Field(default=None, max_length=72)
    otp_code: Optional[str] = Field(default=None, pattern=OTP_PATTERN)


class OtpRequest(BaseModel):
    """Request body for POST /api/v1/auth/otp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    phone: str = Field(min_length=1, max_length=32)
    purpose: OtpPurposeEnum = OtpPurposeEnum.login


class OtpVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/otp/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    phone: str = Field(min_length=1, max_length=32)
    code: str = Field(pattern=OTP_PATTERN)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash or OTP state."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    username: Optional[str] = None
    avatar: Optional[str] = None
    is_active: bool
    is_verified: bool
    role_id: str
    department_id: Optional[str] = None
    team_id: Optional[str] = None
    linked_providers: list[str] = Field(default_factory=list)
    last_seen: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        linked = [
            name
            for name, subject in (
                ("google", user.google_id),
                ("facebook", user.facebook_id),
                ("apple", user.apple_id),
                ("microsoft", user.microsoft_id),
            )
            if subject
        ]
        return cls(
            id=user.id,
            display_name=user.display_name,
            email=user.email,
            phone=user.phone,
            username=user.username,
            avatar=user.avatar,
            is_active=user.is_active,
            is_verified=user.is_verified,
            role_id=user.role_id,
            department_id=user.department_id,
            team_id=user.team_id,
            linked_providers=linked,
            last_seen=user.last_seen,
            created_at=user.created_at or "",
        )


class TokenResponse(BaseModel):
    """Response for a successful login or social callback."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class AccessTokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class OtpIssuedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    delivered: bool
    expires_in: int


class MeResponse(BaseModel):
    """Identity of the bearer, read from the verified access token."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    username: Optional[str] = None
    role_id: str
    role_name: str = ""
    is_verified: bool = False
    department_id: Optional[str] = None
    team_id: Optional[str] = None
    modules: list[str] = Field(default_factory=list)


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    level: int
    modules: list[str]
    permissions: list[str]
    is_system: bool

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            level=role.level,
            modules=list(role.modules),
            permissions=[str(p) for p in role.permissions],
            is_system=role.is_system,
        )


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles.

    permissions are "action:resource" or "action:resource:scope" strings.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(pattern=ROLE_ID_PATTERN)
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    level: int = Field(ge=1, le=10)
    modules: list[str] = Field(default_factory=list, max_length=20)
    permissions: list[str] = Field(default_factory=list, max_length=500)


class RolePatch(BaseModel):
    """Request body for PATCH /api/v1/roles/{role_id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    level: Optional[int] = Field(default=None, ge=1, le=10)
    modules: Optional[list[str]] = Field(default=None, max_length=20)
    permissions: Optional[list[str]] = Field(default=None, max_length=500)


class RoleAssignment(BaseModel):
    """Request body for PUT /api/v1/users/{user_id}/role."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role_id: str = Field(min_length=1, max_length=64)
    department_id: Optional[str] = Field(default=None, max_length=64)
    team_id: Optional[str] = Field(default=None, max_length=64)


class PermissionCheckRequest(BaseModel):
    """Request body for POST /api/v1/permissions/check. Evaluated for the bearer."""

    model_config = ConfigDict(str_strip_whitespace=True)

    action: str = Field(min_length=1, max_length=50)
    resource: str = Field(min_length=1, max_length=50)
    target_user_id: Optional[str] = None
    target_department: Optional[str] = None
    target_team: Optional[str] = None


class PermissionCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    role_id: str
    catalog_version: int
