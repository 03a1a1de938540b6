"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register                     -- create an account (email / phone / username)
  POST /api/v1/auth/login                        -- password or phone+OTP login; returns token pair
  POST /api/v1/auth/otp                          -- send a one-time code to a phone
  POST /api/v1/auth/otp/verify                   -- consume a code; marks the phone verified
  POST /api/v1/auth/refresh                      -- refresh token -> new access token
  POST /api/v1/auth/logout                       -- stamp last_seen (requires auth)
  GET  /api/v1/auth/me                           -- claims of the bearer (requires auth)
  GET  /api/v1/auth/providers                    -- configured social providers (public)
  GET  /api/v1/auth/social/{provider}/login      -- redirect to the provider
  GET|POST /api/v1/auth/social/{provider}/callback -- code exchange; returns token pair

Every handler is a thin adapter: it maps the request model to a service call
and the domain result to a response model. Service failures are AuthError
subclasses, rendered by the handler in api/main.py.

Security:
  [H2] POST /login and POST /otp are rate-limited per IP (LOGIN_RATE_LIMIT).
       POST /otp is additionally limited per phone by the service.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import (
    AccessTokenResponse,
    LoginRequest,
    MeResponse,
    OAuthProviderInfo,
    OtpIssuedResponse,
    OtpRequest,
    OtpVerifyRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_claims
from auth.models import AuthProvider, AuthResult, LoginCredentials, OtpPurpose, RegistrationData
from auth.oauth import get_enabled_providers, get_social_user_info
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("scopegate.api.auth")

_RATE_LIMIT = get_settings().login_rate_limit

# Auth policy:
# - POST /auth/register, /auth/login, /auth/otp, /auth/otp/verify, /auth/refresh: public
# - GET  /auth/providers, /auth/social/*:                                         public
# - POST /auth/logout, GET /auth/me:                              requires bearer token
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _token_response(result: AuthResult) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_in=result.tokens.expires_in,
            user=UserResponse.from_user(result.user),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _enabled_provider(provider: str) -> None:
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "provider_not_enabled", "message": f"Sign-in with {provider!r} is not enabled."},
        )


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account. Does not log in; call /auth/login afterwards.

    A phone registration may include the otp_code from POST /auth/otp with
    purpose=register, in which case the account is created verified.
    """
    user = _service(request).register(
        RegistrationData(
            provider=AuthProvider(body.provider.value),
            display_name=body.display_name,
            terms_accepted=body.terms_accepted,
            email=body.email,
            phone=body.phone,
            username=body.username,
            password=body.password,
            avatar=body.avatar,
            otp_code=body.otp_code,
        )
    )
    return UserResponse.from_user(user)


@limiter.limit(_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email/username + password or phone + OTP."""
    result = _service(request).login(
        LoginCredentials(
            provider=AuthProvider(body.provider.value),
            email=body.email,
            phone=body.phone,
            username=body.username,
            password=body.password,
            otp_code=body.otp_code,
        )
    )
    return _token_response(result)


# ---------------------------------------------------------------------------
# One-time passwords
# ---------------------------------------------------------------------------


@limiter.limit(_RATE_LIMIT)  # [H2]
@router.post("/auth/otp", response_model=OtpIssuedResponse)
def issue_otp(request: Request, body: OtpRequest) -> OtpIssuedResponse:
    """Send a one-time code. The code is never included in the response."""
    service = _service(request)
    delivered = service.issue_otp(body.phone, OtpPurpose(body.purpose.value))
    return OtpIssuedResponse(delivered=delivered, expires_in=service.settings.otp_ttl_seconds)


@router.post("/auth/otp/verify", response_model=UserResponse)
def verify_otp(request: Request, body: OtpVerifyRequest) -> UserResponse:
    """Consume a code issued to an existing account and mark it verified."""
    user = _service(request).consume_otp(body.phone, body.code)
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Tokens and session
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=AccessTokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a fresh access token built from the current user row."""
    service = _service(request)
    access_token = service.refresh_token(body.refresh_token)
    resp = JSONResponse(
        content=AccessTokenResponse(
            access_token=access_token,
            expires_in=service.codec.access_ttl_seconds,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
def logout(request: Request, claims: dict = Depends(get_current_claims)) -> dict:
    """Record the logout. The access token remains valid until it expires."""
    _service(request).logout(claims["user_id"])
    return {"message": "Logged out."}


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, claims: dict = Depends(get_current_claims)) -> MeResponse:
    """Return identity information for the bearer, plus the modules their role opens."""
    engine = request.app.state.permission_engine
    return MeResponse(
        user_id=claims["user_id"],
        display_name=claims.get("display_name"),
        email=claims.get("email"),
        phone=claims.get("phone"),
        username=claims.get("username"),
        role_id=claims["role_id"],
        role_name=claims.get("role_name") or "",
        is_verified=bool(claims.get("is_verified")),
        department_id=claims.get("department_id"),
        team_id=claims.get("team_id"),
        modules=engine.accessible_modules(claims["role_id"]),
    )


# ---------------------------------------------------------------------------
# Social sign-in
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured social providers. Empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/social/{provider}/login")
async def social_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a spoofed
    name cannot reach the registry.
    """
    _enabled_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("social_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.api_route(
    "/auth/social/{provider}/callback",
    methods=["GET", "POST"],
    response_model=TokenResponse,
    name="social_callback",
)
async def social_callback(request: Request, provider: str) -> JSONResponse:
    """Exchange the authorization code, resolve the user, and return a token pair.

    Apple delivers the callback as a form POST; the others use GET.
    """
    _enabled_provider(provider)
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc)
        raise HTTPException(
            status_code=401,
            detail={"code": "oauth_failed", "message": "Social sign-in failed. Please try again."},
        ) from exc

    try:
        identity, profile = await get_social_user_info(client, provider, token)
    except ValueError as exc:
        logger.warning("OAuth login rejected for %r: %s", provider, exc)
        raise HTTPException(
            status_code=401,
            detail={"code": "oauth_failed", "message": "The provider did not return a usable identity."},
        ) from exc

    result = await run_in_threadpool(_service(request).social_login, identity, profile)
    return _token_response(result)
