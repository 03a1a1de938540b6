"""
auth/social.py -- Social identity union and profile hints.

A SocialIdentity is exactly one of GoogleIdentity, FacebookIdentity,
AppleIdentity, MicrosoftIdentity. Each variant carries the provider's stable
subject id. Code that needs the matching user column dispatches on the
variant type (see auth/store.py); provider names are never used to build
field names.

SocialProfile carries the optional hints a provider returns alongside the
subject id. email is only present when the provider confirmed it [H1].

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class GoogleIdentity:
    google_id: str

    @property
    def provider(self) -> str:
        return "google"

    @property
    def subject(self) -> str:
        return self.google_id


@dataclass(frozen=True)
class FacebookIdentity:
    facebook_id: str

    @property
    def provider(self) -> str:
        return "facebook"

    @property
    def subject(self) -> str:
        return self.facebook_id


@dataclass(frozen=True)
class AppleIdentity:
    apple_id: str

    @property
    def provider(self) -> str:
        return "apple"

    @property
    def subject(self) -> str:
        return self.apple_id


@dataclass(frozen=True)
class MicrosoftIdentity:
    microsoft_id: str

    @property
    def provider(self) -> str:
        return "microsoft"

    @property
    def subject(self) -> str:
        return self.microsoft_id


SocialIdentity = Union[GoogleIdentity, FacebookIdentity, AppleIdentity, MicrosoftIdentity]

SOCIAL_IDENTITY_TYPES = (GoogleIdentity, FacebookIdentity, AppleIdentity, MicrosoftIdentity)


@dataclass(frozen=True)
class SocialProfile:
    email: str | None = None
    display_name: str | None = None
    avatar: str | None = None


def identity_for(provider: str, subject: str) -> SocialIdentity:
    """Build the identity variant for a provider name coming from a URL or request body.

    Raises ValueError for an unknown provider or an empty subject.
    """
    if not subject:
        raise ValueError("Social subject id must not be empty")
    if provider == "google":
        return GoogleIdentity(subject)
    elif provider == "facebook":
        return FacebookIdentity(subject)
    elif provider == "apple":
        return AppleIdentity(subject)
    elif provider == "microsoft":
        return MicrosoftIdentity(subject)
    raise ValueError(f"Unknown social provider: {provider!r}")
