"""
tests/test_social_login.py -- Unit tests for AuthService.social_login().

Resolution order under test:
  1. an existing link to the same external id wins,
  2. otherwise (when SOCIAL_LINK_BY_EMAIL is on) a user with the profile's
     email is linked in place,
  3. otherwise a new verified user is created.
"""

from __future__ import annotations

import pytest

from auth.errors import Deactivated, DuplicateIdentity, InvalidRequest
from auth.models import AuthProvider, LoginCredentials, RegistrationData
from auth.service import AuthService
from auth.social import AppleIdentity, FacebookIdentity, GoogleIdentity, MicrosoftIdentity, SocialProfile


class TestSocialLogin:
    def test_email_match_links_instead_of_duplicating(self, service: AuthService, store) -> None:
        """A google id matching nobody, with the email of an existing user, links to that user."""
        existing = service.register(
            RegistrationData(
                provider=AuthProvider.EMAIL,
                display_name="Alice",
                terms_accepted=True,
                email="alice@x.com",
                password="Abc12345!",
            )
        )
        result = service.social_login(GoogleIdentity("g-123"), SocialProfile(email="alice@x.com", display_name="A. G."))

        assert result.user.id == existing.id
        assert result.user.google_id == "g-123"
        assert result.user.display_name == "Alice", "Linking must not alter other fields"
        assert len(store.list_users()) == 1
        assert result.tokens.access_token

    def test_external_id_match_wins_over_email(self, service: AuthService, make_user, store) -> None:
        linked = make_user(email="one@x.com")
        store.link_social(linked.id, GoogleIdentity("g-1"))
        make_user(email="two@x.com")

        result = service.social_login(GoogleIdentity("g-1"), SocialProfile(email="two@x.com"))
        assert result.user.id == linked.id

    def test_new_user_is_verified(self, service: AuthService) -> None:
        result = service.social_login(
            FacebookIdentity("fb-9"),
            SocialProfile(email="new@x.com", display_name="New Person", avatar="https://img/1.png"),
        )
        user = result.user
        assert user.facebook_id == "fb-9"
        assert user.is_verified is True
        assert user.role_id == "user"
        assert user.display_name == "New Person"
        assert user.avatar == "https://img/1.png"
        assert user.hashed_password is None

    def test_display_name_fallbacks(self, service: AuthService) -> None:
        by_email = service.social_login(AppleIdentity("a-1"), SocialProfile(email="zed@x.com"))
        assert by_email.user.display_name == "zed"
        bare = service.social_login(MicrosoftIdentity("m-1"), SocialProfile())
        assert bare.user.display_name == "microsoft"

    def test_second_login_reuses_user(self, service: AuthService, store) -> None:
        first = service.social_login(GoogleIdentity("g-7"), SocialProfile(email="r@x.com"))
        second = service.social_login(GoogleIdentity("g-7"), SocialProfile(email="r@x.com"))
        assert first.user.id == second.user.id
        assert len(store.list_users()) == 1

    def test_email_linked_to_other_subject(self, service: AuthService, make_user, store) -> None:
        user = make_user(email="taken@x.com")
        store.link_social(user.id, GoogleIdentity("g-original"))
        with pytest.raises(DuplicateIdentity):
            service.social_login(GoogleIdentity("g-other"), SocialProfile(email="taken@x.com"))

    def test_different_provider_links_alongside(self, service: AuthService, make_user, store) -> None:
        user = make_user(email="multi@x.com")
        store.link_social(user.id, GoogleIdentity("g-m"))
        result = service.social_login(MicrosoftIdentity("ms-m"), SocialProfile(email="multi@x.com"))
        assert result.user.id == user.id
        assert result.user.google_id == "g-m"
        assert result.user.microsoft_id == "ms-m"

    def test_linking_disabled_email_collision(self, service: AuthService, make_user, store) -> None:
        service.settings = service.settings.model_copy(update={"social_link_by_email": False})
        make_user(email="solo@x.com")
        with pytest.raises(DuplicateIdentity):
            # The new account would reuse the email, which is unique.
            service.social_login(GoogleIdentity("g-solo"), SocialProfile(email="solo@x.com"))

    def test_linking_disabled_without_email(self, service: AuthService, make_user, store) -> None:
        service.settings = service.settings.model_copy(update={"social_link_by_email": False})
        make_user(email="solo@x.com")
        result = service.social_login(GoogleIdentity("g-solo"), SocialProfile())
        assert result.user.email is None
        assert len(store.list_users()) == 2

    def test_deactivated_linked_user(self, service: AuthService, make_user, store) -> None:
        user = make_user(email="off@x.com", is_active=False)
        store.link_social(user.id, AppleIdentity("ap-off"))
        with pytest.raises(Deactivated):
            service.social_login(AppleIdentity("ap-off"), SocialProfile())

    def test_deactivated_email_match_not_linked(self, service: AuthService, make_user, store) -> None:
        user = make_user(email="off2@x.com", is_active=False)
        with pytest.raises(Deactivated):
            service.social_login(GoogleIdentity("g-off2"), SocialProfile(email="off2@x.com"))
        assert store.get_by_id(user.id).google_id is None

    def test_login_dispatches_social_provider(self, service: AuthService) -> None:
        result = service.login(
            LoginCredentials(
                provider=AuthProvider.GOOGLE,
                identity=GoogleIdentity("g-via-login"),
                profile=SocialProfile(display_name="Via Login"),
            )
        )
        assert result.user.google_id == "g-via-login"

    def test_login_social_without_identity(self, service: AuthService) -> None:
        with pytest.raises(InvalidRequest):
            service.login(LoginCredentials(provider=AuthProvider.APPLE))

    def test_login_social_identity_provider_mismatch(self, service: AuthService, store) -> None:
        """A facebook identity presented under the google provider is refused, not resolved."""
        with pytest.raises(InvalidRequest):
            service.login(LoginCredentials(provider=AuthProvider.GOOGLE, identity=FacebookIdentity("fb-1")))
        assert store.get_by_social(FacebookIdentity("fb-1")) is None

    def test_register_social_identity(self, service: AuthService) -> None:
        user = service.register(
            RegistrationData(
                provider=AuthProvider.FACEBOOK,
                display_name="Fiona",
                terms_accepted=True,
                identity=FacebookIdentity("fb-reg"),
            )
        )
        assert user.facebook_id == "fb-reg"
        assert user.is_verified is True
        with pytest.raises(DuplicateIdentity):
            service.register(
                RegistrationData(
                    provider=AuthProvider.FACEBOOK,
                    display_name="Fiona Again",
                    terms_accepted=True,
                    identity=FacebookIdentity("fb-reg"),
                )
            )

    def test_register_social_identity_provider_mismatch(self, service: AuthService) -> None:
        with pytest.raises(InvalidRequest):
            service.register(
                RegistrationData(
                    provider=AuthProvider.GOOGLE,
                    display_name="Mismatch",
                    terms_accepted=True,
                    identity=AppleIdentity("ap-x"),
                )
            )
