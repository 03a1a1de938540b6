"""
auth/service.py -- Authentication service: registration, login, OTP, tokens.

AuthService orchestrates the store, the token codec, the OTP helpers and the
SMS channel. It is synchronous: bcrypt and HMAC signing are CPU-bound, and
the API layer calls these methods from sync route functions, which FastAPI
runs in its worker thread pool.

Every failure is a typed AuthError (see auth/errors.py). The service never
returns None to signal failure.

Login check order (per provider):
  email / username  lookup -> NotFound, inactive -> Deactivated,
                    password mismatch -> InvalidCredential
  phone             lookup -> NotFound, inactive -> Deactivated,
                    then the OTP challenge (NotIssued / Mismatch / Expired)
  social            see social_login()

Security notes:
  [C1] An unknown email/username still runs one bcrypt comparison against a
       dummy hash so the miss costs the same as a wrong password.
  [H1] Only provider-verified emails reach social_login() (auth/oauth.py drops
       unverified ones), so email linking cannot be hijacked through an
       unverified address.
  [M9] OTP consumption is a guarded UPDATE; a code can be spent exactly once.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.catalog import DEFAULT_ROLE_ID
from auth.errors import (
    Deactivated,
    DuplicateIdentity,
    InvalidCredential,
    InvalidRequest,
    NotFound,
    OtpNotIssued,
    RateLimited,
)
from auth.models import (
    AuthProvider,
    AuthResult,
    LoginCredentials,
    OtpIssuance,
    OtpPurpose,
    RegistrationData,
    TokenPair,
    User,
)
from auth.otp import check_challenge, format_message, generate_code, is_valid_phone, normalize_phone
from auth.permissions import PermissionEngine
from auth.sms import SmsChannel
from auth.social import SOCIAL_IDENTITY_TYPES, SocialIdentity, SocialProfile
from auth.store import UserStore, assign_subject, linked_subject
from auth.tokens import (
    MAX_PASSWORD_BYTES,
    TokenCodec,
    burn_password_check,
    hash_password,
    password_too_long,
    verify_password,
)
from core.config import Settings

logger = logging.getLogger("scopegate.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class AuthService:
    """Unified login / registration / token lifecycle across all credential types.

    Args:
        store:    persistence for users and OTP issuances.
        codec:    access/refresh token encoder.
        engine:   permission engine; only its live role catalog is read here
                  (for role names in tokens).
        settings: OTP TTL, rate limit and social-linking policy.
        sms:      OTP delivery channel.
        clock:    returns the current UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        engine: PermissionEngine,
        settings: Settings,
        sms: SmsChannel,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.engine = engine
        self.settings = settings
        self.sms = sms
        self.clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, data: RegistrationData) -> User:
        """Create a new account. Returns the stored user; does not log in."""
        display_name = _clean(data.display_name)
        if not display_name:
            raise InvalidRequest("Display name is required.")
        if not data.terms_accepted:
            raise InvalidRequest("You must accept the terms and conditions.")

        provider = data.provider
        email = _normalize_email(data.email)
        phone = normalize_phone(data.phone) if data.phone else None
        username = _clean(data.username)
        identity = data.identity

        if provider is AuthProvider.EMAIL:
            if not email or not data.password:
                raise InvalidRequest("Email and password are required.")
        elif provider is AuthProvider.PHONE:
            if not phone:
                raise InvalidRequest("Phone number is required.")
        elif provider is AuthProvider.USERNAME:
            if not username or not data.password:
                raise InvalidRequest("Username and password are required.")
        else:
            if not isinstance(identity, SOCIAL_IDENTITY_TYPES) or identity.provider != provider.value:
                raise InvalidRequest(f"A {provider.value} identity is required.")
        if email and "@" not in email:
            raise InvalidRequest("Invalid email address.")
        if phone and not is_valid_phone(phone):
            raise InvalidRequest("Invalid phone number format.")
        if data.password and password_too_long(data.password):
            raise InvalidRequest(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")

        if self.store.find_existing(email=email, phone=phone, username=username, identity=identity) is not None:
            raise DuplicateIdentity()

        verified = provider.is_social
        if provider is AuthProvider.PHONE and data.otp_code:
            self._consume_register_challenge(phone, data.otp_code)
            verified = True

        user = User(
            display_name=display_name,
            role_id=DEFAULT_ROLE_ID,
            email=email,
            phone=phone,
            username=username,
            hashed_password=hash_password(data.password, self.settings.bcrypt_rounds) if data.password else None,
            avatar=_clean(data.avatar),
            is_verified=verified,
        )
        if identity is not None:
            assign_subject(user, identity)
        try:
            self.store.create_user(user)
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc
        logger.info("Registered user %s via %s (verified=%s)", user.id, provider.value, verified)
        return user

    def _consume_register_challenge(self, phone: str, code: str) -> None:
        issuance = self.store.get_pending_challenge(phone, OtpPurpose.REGISTER)
        now = self.clock()
        check_challenge(
            issuance.code if issuance else None,
            issuance.expires_at if issuance else None,
            code,
            now,
        )
        if not self.store.consume_challenge(issuance.id, code, now):
            raise OtpNotIssued()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, credentials: LoginCredentials) -> AuthResult:
        provider = credentials.provider
        if provider is AuthProvider.EMAIL:
            email = _normalize_email(credentials.email)
            if not email:
                raise InvalidRequest("Email is required.")
            user = self._password_login(self.store.get_by_email(email), credentials.password)
        elif provider is AuthProvider.USERNAME:
            username = _clean(credentials.username)
            if not username:
                raise InvalidRequest("Username is required.")
            user = self._password_login(self.store.get_by_username(username), credentials.password)
        elif provider is AuthProvider.PHONE:
            user = self._otp_login(credentials.phone, credentials.otp_code)
            return AuthResult(user=user, tokens=self.issue_tokens(user))
        else:
            identity = credentials.identity
            if not isinstance(identity, SOCIAL_IDENTITY_TYPES) or identity.provider != provider.value:
                raise InvalidRequest(f"A {provider.value} identity is required.")
            return self.social_login(identity, credentials.profile or SocialProfile())
        return self._complete_login(user)

    def _password_login(self, user: User | None, password: str | None) -> User:
        if not password:
            raise InvalidCredential("Password is required.")
        if user is None:
            burn_password_check(password)  # [C1]
            raise NotFound()
        if not user.is_active:
            raise Deactivated()
        if not user.hashed_password or not verify_password(password, user.hashed_password):
            logger.info("Password login failed for user %s", user.id)
            raise InvalidCredential()
        return user

    def _otp_login(self, phone: str | None, code: str | None) -> User:
        if not phone or not code:
            raise InvalidRequest("Phone number and OTP are required.")
        user = self.store.get_by_phone(normalize_phone(phone))
        if user is None:
            raise NotFound()
        if not user.is_active:
            raise Deactivated()
        return self._consume_user_otp(user, code)

    def _complete_login(self, user: User) -> AuthResult:
        now = self.clock()
        self.store.touch_last_seen(user.id, now)
        refreshed = self.store.get_by_id(user.id) or user
        logger.info("User %s logged in", user.id)
        return AuthResult(user=refreshed, tokens=self.issue_tokens(refreshed))

    # ------------------------------------------------------------------
    # Social identity
    # ------------------------------------------------------------------

    def social_login(self, identity: SocialIdentity, profile: SocialProfile) -> AuthResult:
        """Resolve or create the user for a verified social identity.

        Resolution order:
          1. user already linked to this exact external id;
          2. if SOCIAL_LINK_BY_EMAIL is on and the profile has an email, the
             user with that email -- linked in place, nothing else changes;
          3. otherwise a new verified user.
        An email match already linked to a DIFFERENT id of the same provider
        raises DuplicateIdentity.
        """
        user = self.store.get_by_social(identity)
        email = _normalize_email(profile.email)

        if user is None and email and self.settings.social_link_by_email:
            candidate = self.store.get_by_email(email)
            if candidate is not None:
                linked = linked_subject(candidate, identity)
                if linked and linked != identity.subject:
                    raise DuplicateIdentity(f"This email is linked to a different {identity.provider} account.")
                if not candidate.is_active:
                    raise Deactivated()
                try:
                    self.store.link_social(candidate.id, identity)
                except IntegrityError as exc:
                    raise DuplicateIdentity() from exc
                logger.info("Linked %s identity to user %s by email", identity.provider, candidate.id)
                user = self.store.get_by_id(candidate.id)

        if user is None:
            user = User(
                display_name=_clean(profile.display_name) or (email.split("@")[0] if email else identity.provider),
                role_id=DEFAULT_ROLE_ID,
                email=email,
                avatar=_clean(profile.avatar),
                is_verified=True,
            )
            assign_subject(user, identity)
            try:
                self.store.create_user(user)
            except IntegrityError as exc:
                raise DuplicateIdentity() from exc
            logger.info("Created user %s from %s sign-in", user.id, identity.provider)

        if not user.is_active:
            raise Deactivated()
        return self._complete_login(user)

    # ------------------------------------------------------------------
    # One-time passwords
    # ------------------------------------------------------------------

    def issue_otp(self, phone: str, purpose: OtpPurpose) -> bool:
        """Generate, store and send a code. Returns the channel's delivery flag.

        The code itself is never returned.
        """
        phone = normalize_phone(phone)
        if not is_valid_phone(phone):
            raise InvalidRequest("Invalid phone number format.")

        now = self.clock()
        window = self.settings.otp_rate_limit_window_seconds
        recent = self.store.count_recent_issuances(phone, now - timedelta(seconds=window))
        if recent >= self.settings.otp_rate_limit_max:
            logger.warning("OTP rate limit hit for %s (%d in %ds)", phone, recent, window)
            raise RateLimited("Too many OTP requests. Please wait before trying again.", retry_after=window)

        code = generate_code()
        expiry = now + timedelta(seconds=self.settings.otp_ttl_seconds)
        user = self.store.get_by_phone(phone)
        if purpose is OtpPurpose.REGISTER:
            if user is not None:
                raise DuplicateIdentity("This phone number is already registered.")
            self.store.record_otp_issuance(
                OtpIssuance(phone=phone, purpose=purpose, issued_at=now, expires_at=expiry, code=code)
            )
        else:
            if user is None:
                raise NotFound()
            if not user.is_active:
                raise Deactivated()
            self.store.issue_user_otp(
                user.id, code, OtpIssuance(phone=phone, purpose=purpose, issued_at=now, expires_at=expiry)
            )

        message = format_message(code, purpose, self.settings.sms_app_name, self.settings.otp_ttl_seconds // 60)
        delivered = self.sms.send(phone, message)
        logger.info("OTP issued to %s (purpose=%s, delivered=%s)", phone, purpose.value, delivered)
        return delivered

    def consume_otp(self, phone: str, code: str) -> User:
        """Verify a code issued to an existing user. Marks the user verified."""
        user = self.store.get_by_phone(normalize_phone(phone))
        if user is None:
            raise NotFound()
        return self._consume_user_otp(user, code)

    def _consume_user_otp(self, user: User, code: str) -> User:
        now = self.clock()
        check_challenge(user.otp_code, user.otp_expiry, code, now)
        if not self.store.consume_otp(user.id, code, now):  # [M9]
            raise OtpNotIssued()
        logger.info("OTP consumed for user %s", user.id)
        return self.store.get_by_id(user.id)

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    def issue_tokens(self, user: User) -> TokenPair:
        role = self.engine.catalog.get(user.role_id)
        return self.codec.issue(user, role.name if role is not None else "")

    def verify_token(self, token: str) -> dict:
        """Verify an access token and return its claims. Raises InvalidToken."""
        return self.codec.decode_access(token)

    def refresh_token(self, refresh_token: str) -> str:
        """Exchange a refresh token for a new access token built from the current user row."""
        claims = self.codec.decode_refresh(refresh_token)
        user = self.store.get_by_id(claims["user_id"])
        if user is None:
            raise NotFound()
        if not user.is_active:
            raise Deactivated()
        role = self.engine.catalog.get(user.role_id)
        return self.codec.encode_access(user, role.name if role is not None else "")

    def logout(self, user_id: str) -> None:
        """Record activity. Tokens stay valid until they expire."""
        if not self.store.touch_last_seen(user_id, self.clock()):
            raise NotFound()
        logger.info("User %s logged out", user_id)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound()
        return user
