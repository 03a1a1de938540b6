"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_role / _row_to_issuance
are the mappers. Service and route code never touches SQL directly.

Tables:
  users          -- one row per identity. email, phone, username and each
                    social id are UNIQUE. SQLite treats NULLs as distinct, so
                    accounts that lack an identifier do not collide.
  roles          -- role catalog rows. permissions is a JSON list of
                    "action:resource:scope" strings.
  otp_issuances  -- append-only log of OTP issuances. Backs the per-phone rate
                    limit and holds register challenges for phones that do not
                    have a user record yet.

Concurrency:
  Each write method commits once. OTP consumption is a guarded UPDATE
  (WHERE otp_code = :code / WHERE consumed_at IS NULL) so two concurrent
  consumers of the same code cannot both succeed; the loser sees rowcount 0.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps: ISO 8601 UTC strings for audit columns, epoch seconds (REAL)
for OTP expiry and issuance times so window comparisons are numeric.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import ModulePermission, OtpIssuance, OtpPurpose, Role, User
from auth.social import AppleIdentity, FacebookIdentity, GoogleIdentity, MicrosoftIdentity, SocialIdentity

logger = logging.getLogger("scopegate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), unique=True),
    Column("phone", String(32), unique=True),
    Column("username", String(150), unique=True),
    Column("hashed_password", Text),  # NULL for phone-only and social-only users
    Column("display_name", String(255), nullable=False),
    Column("avatar", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("role_id", String(64), nullable=False),
    Column("google_id", String(255), unique=True),
    Column("facebook_id", String(255), unique=True),
    Column("apple_id", String(255), unique=True),
    Column("microsoft_id", String(255), unique=True),
    Column("department_id", String(64)),
    Column("team_id", String(64)),
    Column("last_seen", String(40)),
    Column("otp_code", String(12)),
    Column("otp_expiry", Float),  # epoch seconds
    Column("created_at", String(40), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("level", Integer, nullable=False),
    Column("modules", Text, nullable=False),  # JSON list
    Column("permissions", Text, nullable=False),  # JSON list of "action:resource:scope"
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)

_otp_issuances = Table(
    "otp_issuances",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("phone", String(32), nullable=False, index=True),
    Column("purpose", String(20), nullable=False),
    Column("code", String(12)),  # register purpose only
    Column("issued_at", Float, nullable=False, index=True),
    Column("expires_at", Float, nullable=False),
    Column("consumed_at", Float),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(at: datetime) -> str:
    return at.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _epoch(at: datetime) -> float:
    return at.timestamp()


def _from_epoch(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


def _social_column(identity: SocialIdentity):
    """Return the users column that stores this identity's subject id."""
    if isinstance(identity, GoogleIdentity):
        return _users.c.google_id
    elif isinstance(identity, FacebookIdentity):
        return _users.c.facebook_id
    elif isinstance(identity, AppleIdentity):
        return _users.c.apple_id
    elif isinstance(identity, MicrosoftIdentity):
        return _users.c.microsoft_id
    raise TypeError(f"Not a social identity: {identity!r}")


def linked_subject(user: User, identity: SocialIdentity) -> str | None:
    """Return the subject id `user` already has for identity's provider, if any."""
    if isinstance(identity, GoogleIdentity):
        return user.google_id
    elif isinstance(identity, FacebookIdentity):
        return user.facebook_id
    elif isinstance(identity, AppleIdentity):
        return user.apple_id
    elif isinstance(identity, MicrosoftIdentity):
        return user.microsoft_id
    raise TypeError(f"Not a social identity: {identity!r}")


def assign_subject(user: User, identity: SocialIdentity) -> None:
    """Set the provider-specific id field on an unsaved User."""
    if isinstance(identity, GoogleIdentity):
        user.google_id = identity.google_id
    elif isinstance(identity, FacebookIdentity):
        user.facebook_id = identity.facebook_id
    elif isinstance(identity, AppleIdentity):
        user.apple_id = identity.apple_id
    elif isinstance(identity, MicrosoftIdentity):
        user.microsoft_id = identity.microsoft_id
    else:
        raise TypeError(f"Not a social identity: {identity!r}")


def _append_issuance(conn, issuance: OtpIssuance) -> int:
    """Supersede live challenges for the same phone/purpose, then insert. Caller commits."""
    conn.execute(
        _otp_issuances.update()
        .where(
            (_otp_issuances.c.phone == issuance.phone)
            & (_otp_issuances.c.purpose == issuance.purpose.value)
            & _otp_issuances.c.consumed_at.is_(None)
        )
        .values(consumed_at=_epoch(issuance.issued_at))
    )
    result = conn.execute(
        _otp_issuances.insert().values(
            phone=issuance.phone,
            purpose=issuance.purpose.value,
            code=issuance.code,
            issued_at=_epoch(issuance.issued_at),
            expires_at=_epoch(issuance.expires_at),
        )
    )
    return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Role and OTP issuance records.

    Usage:
        store = UserStore("sqlite:///scopegate_auth.db")
        user = store.create_user(User(display_name="Ada", role_id="user", email="ada@example.com"))
        store.get_by_email("ada@example.com")
        store.close()
    """

    # Columns update_user() may touch. Validated before any SQL is built.
    _UPDATABLE_FIELDS: frozenset = frozenset(
        {
            "display_name",
            "avatar",
            "is_active",
            "is_verified",
            "role_id",
            "department_id",
            "team_id",
            "hashed_password",
        }
    )

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(1)).scalar() == 1
        except SQLAlchemyError as exc:
            logger.warning("Database ping failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and created_at filled in.

        Raises sqlalchemy.exc.IntegrityError if any unique identifier is
        already taken. The service layer maps that to DuplicateIdentity; it
        is the backstop for two registrations racing past find_existing().
        """
        user_id = user.id or uuid.uuid4().hex
        created_at = _iso(_now())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    phone=user.phone,
                    username=user.username,
                    hashed_password=user.hashed_password,
                    display_name=user.display_name,
                    avatar=user.avatar,
                    is_active=1 if user.is_active else 0,
                    is_verified=1 if user.is_verified else 0,
                    role_id=user.role_id,
                    google_id=user.google_id,
                    facebook_id=user.facebook_id,
                    apple_id=user.apple_id,
                    microsoft_id=user.microsoft_id,
                    department_id=user.department_id,
                    team_id=user.team_id,
                    last_seen=user.last_seen,
                    created_at=created_at,
                )
            )
            conn.commit()
        user.id = user_id
        user.created_at = created_at
        return user

    def find_existing(
        self,
        *,
        email: str | None = None,
        phone: str | None = None,
        username: str | None = None,
        identity: SocialIdentity | None = None,
    ) -> User | None:
        """Return any user matching ANY of the supplied identifiers, or None.

        One OR query over every supplied identifier, so a registration sees a
        collision on email, phone, username or social id in a single round trip.
        """
        conditions = []
        if email:
            conditions.append(_users.c.email == email)
        if phone:
            conditions.append(_users.c.phone == phone)
        if username:
            conditions.append(_users.c.username == username)
        if identity is not None:
            conditions.append(_social_column(identity) == identity.subject)
        if not conditions:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(or_(*conditions)).limit(1)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_phone(self, phone: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.phone == phone)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_social(self, identity: SocialIdentity) -> User | None:
        """Look up the user linked to a social identity. Returns None if not linked."""
        column = _social_column(identity)
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(column == identity.subject)).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_social(self, user_id: str, identity: SocialIdentity) -> bool:
        """Store identity's subject id on an existing user. No other field changes.

        Raises IntegrityError if the subject id is already linked to another user.
        """
        column = _social_column(identity)
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values({column: identity.subject}))
            conn.commit()
        return result.rowcount > 0

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Only names in _UPDATABLE_FIELDS are accepted; anything else raises
        ValueError. Booleans are converted to 0/1 for SQLite.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return False
        for flag in ("is_active", "is_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def touch_last_seen(self, user_id: str, at: datetime | None = None) -> bool:
        """Stamp last_seen. Called on every successful login and on logout."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(last_seen=_iso(at or _now()))
            )
            conn.commit()
        return result.rowcount > 0

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users_with_role(self, role_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users).where(_users.c.role_id == role_id)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # OTP on the user record
    # ------------------------------------------------------------------

    def consume_otp(self, user_id: str, code: str, at: datetime | None = None) -> bool:
        """Atomically clear a matching challenge and mark the user verified.

        The WHERE clause re-checks the code, so only one of several concurrent
        consumers can win. Returns False if the challenge was already gone.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.otp_code == code))
                .values(otp_code=None, otp_expiry=None, is_verified=1, last_seen=_iso(at or _now()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OTP issuance log
    # ------------------------------------------------------------------

    def record_otp_issuance(self, issuance: OtpIssuance) -> int:
        """Append an issuance and supersede older live challenges for the same phone/purpose."""
        with self.engine.connect() as conn:
            issuance.id = _append_issuance(conn, issuance)
            conn.commit()
        return issuance.id

    def issue_user_otp(self, user_id: str, code: str, issuance: OtpIssuance) -> int:
        """Store a challenge on the user and log its issuance in one transaction."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(otp_code=code, otp_expiry=_epoch(issuance.expires_at))
            )
            issuance.id = _append_issuance(conn, issuance)
            conn.commit()
        return issuance.id

    def count_recent_issuances(self, phone: str, since: datetime) -> int:
        """Count issuances to `phone` at or after `since`, across all purposes."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_otp_issuances)
                .where((_otp_issuances.c.phone == phone) & (_otp_issuances.c.issued_at >= _epoch(since)))
            ).scalar()
        return result or 0

    def get_pending_challenge(self, phone: str, purpose: OtpPurpose) -> OtpIssuance | None:
        """Return the live (unconsumed) issuance for phone/purpose, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _otp_issuances.select()
                .where(
                    (_otp_issuances.c.phone == phone)
                    & (_otp_issuances.c.purpose == purpose.value)
                    & _otp_issuances.c.consumed_at.is_(None)
                )
                .order_by(_otp_issuances.c.issued_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_issuance(row) if row is not None else None

    def consume_challenge(self, issuance_id: int, code: str, at: datetime | None = None) -> bool:
        """Atomically mark a logged challenge consumed. False if already consumed or code differs."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_issuances.update()
                .where(
                    (_otp_issuances.c.id == issuance_id)
                    & (_otp_issuances.c.code == code)
                    & _otp_issuances.c.consumed_at.is_(None)
                )
                .values(consumed_at=_epoch(at or _now()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.level.desc(), _roles.c.id)).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_role(self, role_id: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        """Case-insensitive lookup by display name."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(func.lower(_roles.c.name) == name.lower())).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_role(self, role: Role) -> None:
        """Insert a role. Raises IntegrityError if the id is taken."""
        with self.engine.connect() as conn:
            conn.execute(_roles.insert().values(**_role_values(role), created_at=_iso(_now())))
            conn.commit()

    def update_role(self, role: Role) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update().where(_roles.c.id == role.id).values(**_role_values(role), updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    def seed_roles(self, roles) -> int:
        """Insert any of `roles` whose id is not stored yet. Returns the number inserted.

        Existing rows are left alone so edits made through the role API survive
        restarts. Idempotent; safe on every startup.
        """
        inserted = 0
        with self.engine.connect() as conn:
            existing = {r[0] for r in conn.execute(select(_roles.c.id)).fetchall()}
            for role in roles:
                if role.id in existing:
                    continue
                conn.execute(_roles.insert().values(**_role_values(role), created_at=_iso(_now())))
                inserted += 1
            conn.commit()
        return inserted

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        phone=row.phone,
        username=row.username,
        hashed_password=row.hashed_password,
        display_name=row.display_name,
        avatar=row.avatar,
        is_active=bool(row.is_active),
        is_verified=bool(row.is_verified),
        role_id=row.role_id,
        google_id=row.google_id,
        facebook_id=row.facebook_id,
        apple_id=row.apple_id,
        microsoft_id=row.microsoft_id,
        department_id=row.department_id,
        team_id=row.team_id,
        last_seen=row.last_seen,
        otp_code=row.otp_code,
        otp_expiry=_from_epoch(row.otp_expiry),
        created_at=row.created_at,
    )


def _row_to_issuance(row) -> OtpIssuance:
    return OtpIssuance(
        id=row.id,
        phone=row.phone,
        purpose=OtpPurpose(row.purpose),
        code=row.code,
        issued_at=_from_epoch(row.issued_at),
        expires_at=_from_epoch(row.expires_at),
        consumed_at=_from_epoch(row.consumed_at),
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description or "",
        level=row.level,
        modules=tuple(json.loads(row.modules)),
        permissions=tuple(ModulePermission.parse(p) for p in json.loads(row.permissions)),
        is_system=bool(row.is_system),
    )


def _role_values(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "level": role.level,
        "modules": json.dumps(list(role.modules)),
        "permissions": json.dumps([str(p) for p in role.permissions]),
        "is_system": 1 if role.is_system else 0,
    }
