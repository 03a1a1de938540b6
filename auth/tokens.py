"""
auth/tokens.py -- Password hashing and the access/refresh token codec.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The work factor comes
       from Settings.bcrypt_rounds (default 12). _DUMMY_HASH enables timing
       equalization so response time does not reveal whether an account
       exists [C1].

  Tokens: python-jose with HS256. Access and refresh tokens are signed with
       DIFFERENT secrets [M8], so a refresh token can never pass verification
       on the access path even before the `typ` claim is checked.
       Access tokens carry identity and role claims but no permission list;
       permissions are always resolved from the live role catalog.
       Refresh tokens carry only the user id.
       Every token has a random `jti` so an external denylist can be added
       later without changing the token format. No server-side state here.

  Failures: every decode failure (bad signature, wrong type, expired, missing
       claims) raises the same InvalidToken. The reason is logged at DEBUG and
       never returned to the caller.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidToken
from auth.models import TokenPair, User
from core.config import get_settings

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("scopegate.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


# bcrypt only reads the first 72 bytes; recent releases refuse longer input.
MAX_PASSWORD_BYTES = 72


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers reject passwords longer than MAX_PASSWORD_BYTES first; bcrypt
    raises ValueError for them. `rounds` falls back to Settings.bcrypt_rounds.
    """
    salt = bcrypt.gensalt(rounds=rounds or get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A password longer than MAX_PASSWORD_BYTES, or a malformed stored hash,
    counts as a mismatch.
    """
    if password_too_long(plain):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


# Timing equalization dummy hash [C1]. Computed once at module load with the
# configured work factor so a miss costs the same as a real check.
_DUMMY_HASH: str = hash_password("scopegate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Encodes and verifies access and refresh tokens.

    `clock` is injectable so expiry can be tested without sleeping. Expiry is
    checked against the same clock that stamped iat/exp.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> "TokenCodec":
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def issue(self, user: User, role_name: str = "") -> TokenPair:
        return TokenPair(
            access_token=self.encode_access(user, role_name),
            refresh_token=self.encode_refresh(user),
            expires_in=self.access_ttl_seconds,
        )

    def encode_access(self, user: User, role_name: str = "") -> str:
        claims = {
            "sub": user.id,
            "user_id": user.id,
            "email": user.email,
            "phone": user.phone,
            "username": user.username,
            "display_name": user.display_name,
            "role_id": user.role_id,
            "role_name": role_name,
            "is_active": user.is_active,
            "is_verified": user.is_verified,
            "department_id": user.department_id,
            "team_id": user.team_id,
        }
        return self._encode(claims, ACCESS, self._access_secret, self.access_ttl_seconds)

    def encode_refresh(self, user: User) -> str:
        claims = {"sub": user.id, "user_id": user.id}
        return self._encode(claims, REFRESH, self._refresh_secret, self.refresh_ttl_seconds)

    def _encode(self, claims: dict, typ: str, secret: str, ttl_seconds: int) -> str:
        now = self._clock()
        payload = dict(claims)
        payload.update(
            {
                "typ": typ,
                "jti": uuid.uuid4().hex,
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
            }
        )
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode_access(self, token: str) -> dict:
        """Verify an access token and return its claims. Raises InvalidToken."""
        return self._decode(token, ACCESS, self._access_secret)

    def decode_refresh(self, token: str) -> dict:
        """Verify a refresh token and return its claims. Raises InvalidToken."""
        return self._decode(token, REFRESH, self._refresh_secret)

    def _decode(self, token: str, typ: str, secret: str) -> dict:
        if not token:
            raise InvalidToken()
        try:
            # exp is checked below against the injectable clock.
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise InvalidToken() from exc
        if payload.get("typ") != typ or not payload.get("user_id"):
            logger.debug("Token rejected: wrong type or missing subject")
            raise InvalidToken()
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or self._clock().timestamp() >= exp:
            logger.debug("Token rejected: expired")
            raise InvalidToken()
        return payload
