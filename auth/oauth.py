"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration and normalization.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured are registered.

Supported providers:
  google    -- OIDC discovery; identity from the id_token userinfo.
  microsoft -- OIDC discovery (tenant from MICROSOFT_TENANT).
  apple     -- OIDC discovery; Apple posts the callback (form_post).
  facebook  -- OAuth 2.0 with the Graph API; identity from GET /me.

The normalizers turn provider payloads into (SocialIdentity, SocialProfile).
They are plain functions over dicts so they can be tested without a network.

Security notes:
  [H1] An email only reaches the profile when the provider confirmed it
       (email_verified). An unverified email is DROPPED rather than rejected:
       the stable subject id still authenticates the user, but the email can
       never be used to link into an existing account.
       Facebook only returns confirmed emails from /me, so its email is kept.

  OAuth state (CSRF protection) is handled by authlib via the Starlette
  SessionMiddleware installed in api/main.py.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.social import (
    AppleIdentity,
    FacebookIdentity,
    GoogleIdentity,
    MicrosoftIdentity,
    SocialIdentity,
    SocialProfile,
)
from core.config import get_settings

logger = logging.getLogger("scopegate.auth.oauth")

_FACEBOOK_GRAPH = "https://graph.facebook.com/v19.0/"

_LABELS = {
    "google": "Google",
    "facebook": "Facebook",
    "apple": "Apple",
    "microsoft": "Microsoft",
}

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

if _cfg.microsoft_client_id and _cfg.microsoft_client_secret:
    oauth.register(
        name="microsoft",
        client_id=_cfg.microsoft_client_id,
        client_secret=_cfg.microsoft_client_secret,
        server_metadata_url=(
            f"https://login.microsoftonline.com/{_cfg.microsoft_tenant}/v2.0/.well-known/openid-configuration"
        ),
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Microsoft OAuth provider registered (tenant: %s)", _cfg.microsoft_tenant)

if _cfg.apple_client_id and _cfg.apple_client_secret:
    oauth.register(
        name="apple",
        client_id=_cfg.apple_client_id,
        client_secret=_cfg.apple_client_secret,
        server_metadata_url="https://appleid.apple.com/.well-known/openid-configuration",
        authorize_params={"response_mode": "form_post"},
        client_kwargs={"scope": "openid email name", "token_endpoint_auth_method": "client_secret_post"},
    )
    logger.info("Apple OAuth provider registered")

if _cfg.facebook_client_id and _cfg.facebook_client_secret:
    oauth.register(
        name="facebook",
        client_id=_cfg.facebook_client_id,
        client_secret=_cfg.facebook_client_secret,
        access_token_url=_FACEBOOK_GRAPH + "oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://www.facebook.com/v19.0/dialog/oauth",
        api_base_url=_FACEBOOK_GRAPH,
        client_kwargs={"scope": "email public_profile"},
    )
    logger.info("Facebook OAuth provider registered")


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    cfg = get_settings()
    configured = {
        "google": cfg.google_client_id and cfg.google_client_secret,
        "facebook": cfg.facebook_client_id and cfg.facebook_client_secret,
        "apple": cfg.apple_client_id and cfg.apple_client_secret,
        "microsoft": cfg.microsoft_client_id and cfg.microsoft_client_secret,
    }
    return [{"name": name, "label": _LABELS[name]} for name, ok in configured.items() if ok]


# ---------------------------------------------------------------------------
# Payload normalization [H1]
# ---------------------------------------------------------------------------


def _is_verified(value) -> bool:
    # Apple sends the flag as the string "true".
    return value is True or value == "true"


def normalize_oidc(provider: str, userinfo: dict | None) -> tuple[SocialIdentity, SocialProfile]:
    """Map id_token claims from Google, Microsoft or Apple to (identity, profile).

    Raises ValueError when the claims carry no subject.
    """
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")
    subject = userinfo.get("sub")
    if not subject:
        raise ValueError(f"{provider} OAuth: missing sub claim")

    if provider == "google":
        identity: SocialIdentity = GoogleIdentity(subject)
    elif provider == "microsoft":
        # `oid` is stable across applications in a tenant; `sub` is per-app.
        identity = MicrosoftIdentity(userinfo.get("oid") or subject)
    elif provider == "apple":
        identity = AppleIdentity(subject)
    else:
        raise ValueError(f"Not an OIDC provider: {provider!r}")

    email = userinfo.get("email") if _is_verified(userinfo.get("email_verified")) else None
    if userinfo.get("email") and email is None:
        logger.info("%s returned an unverified email; ignoring it", provider)
    name = userinfo.get("name") or " ".join(
        part for part in (userinfo.get("given_name"), userinfo.get("family_name")) if part
    )
    return identity, SocialProfile(email=email, display_name=name or None, avatar=userinfo.get("picture"))


def normalize_facebook(payload: dict) -> tuple[SocialIdentity, SocialProfile]:
    """Map a Graph API /me response to (identity, profile)."""
    subject = payload.get("id")
    if not subject:
        raise ValueError("facebook OAuth: missing id in /me response")
    picture = ((payload.get("picture") or {}).get("data") or {}).get("url")
    return FacebookIdentity(str(subject)), SocialProfile(
        email=payload.get("email"),
        display_name=payload.get("name"),
        avatar=picture,
    )


async def get_social_user_info(client, provider: str, token: dict) -> tuple[SocialIdentity, SocialProfile]:
    """Extract (identity, profile) from a provider token response.

    Args:
        client:   The authlib OAuth client for this provider.
        provider: "google", "microsoft", "apple" or "facebook".
        token:    The token dict returned by authlib after code exchange.

    Raises:
        ValueError: If the provider response lacks a subject id.
    """
    if provider == "facebook":
        resp = await client.get("me", params={"fields": "id,name,email,picture"}, token=token)
        resp.raise_for_status()
        return normalize_facebook(resp.json())
    elif provider in ("google", "microsoft", "apple"):
        return normalize_oidc(provider, token.get("userinfo"))
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")
