"""
auth/permissions.py -- Scope-aware permission evaluation.

PermissionEngine answers "may this actor perform `action` on `resource` for
this target?" against a RoleCatalog snapshot. It is pure: no I/O, no clock,
no mutation, so it is safe to call from any thread and trivially testable.

Matching rules:
  - A grant matches when its action equals the requested action (or is "*")
    and its resource equals the requested resource (or is "*").
  - "manage" on "*" is the universal grant and matches any action.
  - The request is allowed if ANY matching grant passes its scope check.
  - An actor whose role id is not in the catalog is denied everything.

Scope checks (strict -- both sides must be present):
  own         context.target_user_id == actor.user_id
  team        context.target_team == actor.team_id
  department  context.target_department == actor.department_id
  all         always passes

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from auth.catalog import MODULES, WILDCARD, RoleCatalog
from auth.errors import InsufficientPermission
from auth.models import ModulePermission, Role, Scope


@dataclass(frozen=True)
class Actor:
    """The authenticated principal a permission check is evaluated for."""

    user_id: str
    role_id: str
    department_id: str | None = None
    team_id: str | None = None

    @classmethod
    def from_claims(cls, claims: Mapping) -> "Actor":
        """Build an Actor from verified access-token claims."""
        return cls(
            user_id=claims["user_id"],
            role_id=claims["role_id"],
            department_id=claims.get("department_id"),
            team_id=claims.get("team_id"),
        )


@dataclass(frozen=True)
class AccessContext:
    """Attributes of the object being acted on. Any field may be unknown."""

    target_user_id: str | None = None
    target_department: str | None = None
    target_team: str | None = None


_EMPTY_CONTEXT = AccessContext()


def _grant_matches(grant: ModulePermission, action: str, resource: str) -> bool:
    if grant.action == "manage" and grant.resource == WILDCARD:
        return True
    action_ok = grant.action == WILDCARD or grant.action == action
    resource_ok = grant.resource == WILDCARD or grant.resource == resource
    return action_ok and resource_ok


def _same(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a == b


def scope_allows(scope: Scope, actor: Actor, context: AccessContext) -> bool:
    if scope is Scope.ALL:
        return True
    if scope is Scope.OWN:
        return _same(context.target_user_id, actor.user_id)
    if scope is Scope.TEAM:
        return _same(context.target_team, actor.team_id)
    if scope is Scope.DEPARTMENT:
        return _same(context.target_department, actor.department_id)
    return False


class PermissionEngine:
    """Evaluates permissions against one catalog snapshot.

    Swap the catalog (engine.catalog = new_catalog) after a role edit; each
    call reads the attribute once so a check never sees a half-updated table.
    """

    def __init__(self, catalog: RoleCatalog) -> None:
        self.catalog = catalog

    def _role(self, role_id: str) -> Role | None:
        return self.catalog.get(role_id)

    def has_permission(
        self,
        actor: Actor,
        action: str,
        resource: str,
        context: AccessContext | None = None,
    ) -> bool:
        role = self._role(actor.role_id)
        if role is None:
            return False
        ctx = context or _EMPTY_CONTEXT
        return any(
            scope_allows(grant.scope, actor, ctx)
            for grant in role.permissions
            if _grant_matches(grant, action, resource)
        )

    def require_permission(
        self,
        actor: Actor,
        action: str,
        resource: str,
        context: AccessContext | None = None,
    ) -> None:
        """Raise InsufficientPermission unless has_permission() allows the request."""
        if not self.has_permission(actor, action, resource, context):
            raise InsufficientPermission(f"Missing permission {action}:{resource}.")

    def has_module_access(self, role_id: str, module: str) -> bool:
        role = self._role(role_id)
        if role is None:
            return False
        return WILDCARD in role.modules or module in role.modules

    def accessible_modules(self, role_id: str) -> list[str]:
        role = self._role(role_id)
        if role is None:
            return []
        if WILDCARD in role.modules:
            return list(MODULES)
        return [m for m in MODULES if m in role.modules]

    def permissions_for(self, role_id: str) -> tuple[ModulePermission, ...]:
        role = self._role(role_id)
        return role.permissions if role is not None else ()

    def role_level(self, role_id: str) -> int:
        """Level of `role_id`, or 0 for an unknown role."""
        role = self._role(role_id)
        return role.level if role is not None else 0
