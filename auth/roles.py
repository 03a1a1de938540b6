"""
auth/roles.py -- Role management with hierarchy guards.

RoleManager is the only writer of roles and role assignments. Every write:
  1. checks the actor holds the needed permission (manage:role / manage:user),
  2. enforces the level hierarchy: an actor may only create, edit, delete or
     assign roles strictly below their own level. Level 10 (super admin) is
     exempt,
  3. persists through the store,
  4. publishes a new RoleCatalog to the permission engine (copy-on-write).

Steps 3-4 run under a lock so two concurrent edits cannot publish catalogs
that each miss the other's change.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import dataclasses
import logging
import threading

from sqlalchemy.exc import IntegrityError

from auth.catalog import CRITICAL_ROLES, SUPER_LEVEL, SYSTEM_ROLES, RoleCatalog, validate_role
from auth.errors import DuplicateRole, InvalidRequest, InvalidRoleHierarchy, NotFound, ProtectedRole, RoleInUse
from auth.models import ModulePermission, Role, User
from auth.permissions import Actor, PermissionEngine
from auth.store import UserStore

logger = logging.getLogger("scopegate.auth.roles")


def load_catalog(store: UserStore) -> RoleCatalog:
    """Seed missing system roles, then build a catalog from every stored role."""
    inserted = store.seed_roles(SYSTEM_ROLES)
    if inserted:
        logger.info("Seeded %d system roles", inserted)
    return RoleCatalog(store.list_roles())


class RoleManager:
    def __init__(self, store: UserStore, engine: PermissionEngine) -> None:
        self._store = store
        self._engine = engine
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _actor_level(self, actor: Actor) -> int:
        return self._engine.role_level(actor.role_id)

    def _guard_level(self, actor: Actor, level: int) -> None:
        """Reject touching a role at or above the actor's level (super admin exempt)."""
        actor_level = self._actor_level(actor)
        if actor_level >= SUPER_LEVEL:
            return
        if level >= actor_level:
            raise InvalidRoleHierarchy(
                f"Cannot manage a level {level} role with a level {actor_level} role.",
                detail={"actor_level": actor_level, "role_level": level},
            )

    def _existing(self, role_id: str) -> Role:
        role = self._engine.catalog.get(role_id)
        if role is None:
            raise NotFound("Role not found.")
        return role

    def _check_name_free(self, name: str, role_id: str) -> None:
        other = self._store.get_role_by_name(name)
        if other is not None and other.id != role_id:
            raise DuplicateRole(f"A role named {name!r} already exists.")

    @staticmethod
    def _validated(role: Role) -> Role:
        try:
            validate_role(role)
        except ValueError as exc:
            raise InvalidRequest(str(exc)) from exc
        return role

    # ------------------------------------------------------------------
    # Role CRUD
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        return sorted(self._engine.catalog.values(), key=lambda r: (-r.level, r.id))

    def create_role(self, actor: Actor, role: Role) -> Role:
        self._engine.require_permission(actor, "manage", "role")
        role = self._validated(dataclasses.replace(role, is_system=False))
        self._guard_level(actor, role.level)
        with self._lock:
            if role.id in self._engine.catalog:
                raise DuplicateRole(f"Role {role.id!r} already exists.")
            self._check_name_free(role.name, role.id)
            try:
                self._store.create_role(role)
            except IntegrityError as exc:
                raise DuplicateRole(f"Role {role.id!r} already exists.") from exc
            self._engine.catalog = self._engine.catalog.with_role(role)
        logger.info("Role %s (level %d) created by %s", role.id, role.level, actor.user_id)
        return role

    def update_role(
        self,
        actor: Actor,
        role_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        level: int | None = None,
        modules: tuple[str, ...] | None = None,
        permissions: tuple[ModulePermission, ...] | None = None,
    ) -> Role:
        self._engine.require_permission(actor, "manage", "role")
        with self._lock:
            existing = self._existing(role_id)
            self._guard_level(actor, existing.level)
            changes: dict = {}
            if name is not None:
                self._check_name_free(name, role_id)
                changes["name"] = name
            if description is not None:
                changes["description"] = description
            if level is not None:
                self._guard_level(actor, level)
                changes["level"] = level
            if modules is not None:
                changes["modules"] = tuple(modules)
            if permissions is not None:
                changes["permissions"] = tuple(permissions)
            if not changes:
                raise InvalidRequest("No fields to update.")
            updated = self._validated(dataclasses.replace(existing, **changes))
            self._store.update_role(updated)
            self._engine.catalog = self._engine.catalog.with_role(updated)
        logger.info("Role %s updated by %s (%s)", role_id, actor.user_id, ", ".join(sorted(changes)))
        return updated

    def delete_role(self, actor: Actor, role_id: str) -> None:
        self._engine.require_permission(actor, "manage", "role")
        with self._lock:
            existing = self._existing(role_id)
            if existing.id in CRITICAL_ROLES:
                raise ProtectedRole(f"Role {role_id!r} is a critical system role and cannot be deleted.")
            self._guard_level(actor, existing.level)
            assigned = self._store.count_users_with_role(role_id)
            if assigned:
                raise RoleInUse(
                    f"Role {role_id!r} is assigned to {assigned} user(s).",
                    detail={"assigned_users": assigned},
                )
            self._store.delete_role(role_id)
            self._engine.catalog = self._engine.catalog.without_role(role_id)
        logger.info("Role %s deleted by %s", role_id, actor.user_id)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_role(
        self,
        actor: Actor,
        user_id: str,
        role_id: str,
        *,
        department_id: str | None = None,
        team_id: str | None = None,
    ) -> User:
        """Give `user_id` the role `role_id`, optionally moving them to a department/team.

        The actor must outrank both the role being granted and the user's
        current role, so a manager cannot promote anyone to their own level
        or demote a peer.
        """
        self._engine.require_permission(actor, "manage", "user")
        target_role = self._existing(role_id)
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFound()
        self._guard_level(actor, target_role.level)
        current = self._engine.catalog.get(user.role_id)
        if current is not None:
            self._guard_level(actor, current.level)
        fields: dict = {"role_id": role_id}
        if department_id is not None:
            fields["department_id"] = department_id
        if team_id is not None:
            fields["team_id"] = team_id
        self._store.update_user(user_id, **fields)
        logger.info("User %s assigned role %s by %s", user_id, role_id, actor.user_id)
        return self._store.get_by_id(user_id)
