"""
tests/test_permissions.py -- Unit tests for PermissionEngine and the role catalog.

The engine is pure, so most tests build a small RoleCatalog by hand instead
of touching the store. The system roles are checked once for consistency.
"""

from __future__ import annotations

import pytest

from auth.catalog import MODULES, SYSTEM_ROLES, RoleCatalog, module_for_resource, validate_role
from auth.errors import InsufficientPermission
from auth.models import ModulePermission, Role, Scope
from auth.permissions import AccessContext, Actor, PermissionEngine

DEPARTMENTS = ("eng", "ops", "sales", "hr")
TEAMS = ("alpha", "beta")


def _engine(*roles: Role) -> PermissionEngine:
    return PermissionEngine(RoleCatalog(roles))


READER = Role(
    id="dept_reader",
    name="Department Reader",
    level=5,
    modules=("hrm",),
    permissions=(ModulePermission("read", "employee", Scope.DEPARTMENT),),
)


class TestScopes:
    @pytest.mark.parametrize("actor_dept", DEPARTMENTS)
    @pytest.mark.parametrize("target_dept", DEPARTMENTS)
    def test_department_scope(self, actor_dept: str, target_dept: str) -> None:
        """read:employee:department passes only when the departments are equal."""
        engine = _engine(READER)
        actor = Actor(user_id="u1", role_id="dept_reader", department_id=actor_dept)
        allowed = engine.has_permission(actor, "read", "employee", AccessContext(target_department=target_dept))
        assert allowed is (actor_dept == target_dept)

    def test_department_scope_unknown_department(self) -> None:
        """Two unknown departments never count as equal."""
        engine = _engine(READER)
        actor = Actor(user_id="u1", role_id="dept_reader")
        assert not engine.has_permission(actor, "read", "employee", AccessContext())

    def test_own_scope(self) -> None:
        role = Role("self", "Self", 2, ("hrm",), (ModulePermission("update", "employee", Scope.OWN),))
        engine = _engine(role)
        actor = Actor(user_id="u1", role_id="self")
        assert engine.has_permission(actor, "update", "employee", AccessContext(target_user_id="u1"))
        assert not engine.has_permission(actor, "update", "employee", AccessContext(target_user_id="u2"))
        assert not engine.has_permission(actor, "update", "employee")

    @pytest.mark.parametrize("actor_team", TEAMS)
    @pytest.mark.parametrize("target_team", TEAMS)
    def test_team_scope(self, actor_team: str, target_team: str) -> None:
        role = Role("lead", "Lead", 4, ("projects",), (ModulePermission("update", "task", Scope.TEAM),))
        engine = _engine(role)
        actor = Actor(user_id="u1", role_id="lead", team_id=actor_team)
        allowed = engine.has_permission(actor, "update", "task", AccessContext(target_team=target_team))
        assert allowed is (actor_team == target_team)

    def test_all_scope_ignores_context(self) -> None:
        role = Role("fin", "Fin", 6, ("finance",), (ModulePermission("read", "invoice"),))
        engine = _engine(role)
        actor = Actor(user_id="u1", role_id="fin", department_id="finance")
        assert engine.has_permission(actor, "read", "invoice")
        assert engine.has_permission(actor, "read", "invoice", AccessContext(target_department="elsewhere"))

    def test_any_matching_grant_suffices(self) -> None:
        """A narrow grant and a wide grant for the same pair: the wide one wins."""
        role = Role(
            "mixed",
            "Mixed",
            5,
            ("hrm",),
            (
                ModulePermission("read", "employee", Scope.OWN),
                ModulePermission("read", "employee", Scope.DEPARTMENT),
            ),
        )
        engine = _engine(role)
        actor = Actor(user_id="u1", role_id="mixed", department_id="eng")
        ctx = AccessContext(target_user_id="u2", target_department="eng")
        assert engine.has_permission(actor, "read", "employee", ctx)


class TestMatching:
    def test_no_matching_grant(self) -> None:
        engine = _engine(READER)
        actor = Actor(user_id="u1", role_id="dept_reader", department_id="eng")
        ctx = AccessContext(target_department="eng")
        assert not engine.has_permission(actor, "delete", "employee", ctx)
        assert not engine.has_permission(actor, "read", "payroll", ctx)

    def test_unknown_role_denied(self) -> None:
        engine = _engine(READER)
        actor = Actor(user_id="u1", role_id="ghost")
        assert not engine.has_permission(actor, "read", "employee")
        assert engine.role_level("ghost") == 0
        assert engine.accessible_modules("ghost") == []
        assert engine.permissions_for("ghost") == ()

    def test_manage_wildcard_is_universal(self) -> None:
        root = Role("root", "Root", 10, ("*",), (ModulePermission("manage", "*"),))
        engine = _engine(root)
        actor = Actor(user_id="u1", role_id="root")
        assert engine.has_permission(actor, "approve", "payroll")
        assert engine.has_permission(actor, "delete", "role")

    def test_action_wildcard(self) -> None:
        role = Role("inv", "Inv", 5, ("inventory",), (ModulePermission("*", "stock"),))
        engine = _engine(role)
        actor = Actor(user_id="u1", role_id="inv")
        assert engine.has_permission(actor, "transfer", "stock")
        assert not engine.has_permission(actor, "transfer", "product")

    def test_manage_does_not_imply_other_actions_on_one_resource(self) -> None:
        role = Role("adm", "Adm", 9, ("admin",), (ModulePermission("manage", "user"),))
        engine = _engine(role)
        actor = Actor(user_id="u1", role_id="adm")
        assert engine.has_permission(actor, "manage", "user")
        assert not engine.has_permission(actor, "delete", "user")

    def test_require_permission_raises(self) -> None:
        engine = _engine(READER)
        actor = Actor(user_id="u1", role_id="dept_reader", department_id="eng")
        engine.require_permission(actor, "read", "employee", AccessContext(target_department="eng"))
        with pytest.raises(InsufficientPermission):
            engine.require_permission(actor, "read", "employee", AccessContext(target_department="ops"))


class TestModuleAccess:
    def test_module_list(self) -> None:
        engine = _engine(READER)
        assert engine.has_module_access("dept_reader", "hrm")
        assert not engine.has_module_access("dept_reader", "finance")
        assert engine.accessible_modules("dept_reader") == ["hrm"]

    def test_wildcard_module(self) -> None:
        root = Role("root", "Root", 10, ("*",), (ModulePermission("manage", "*"),))
        engine = _engine(root)
        assert engine.has_module_access("root", "manufacturing")
        assert engine.accessible_modules("root") == list(MODULES)

    def test_module_access_independent_of_permissions(self) -> None:
        empty = Role("viewer", "Viewer", 2, ("analytics",))
        engine = _engine(empty)
        assert engine.has_module_access("viewer", "analytics")
        assert not engine.has_permission(Actor(user_id="u", role_id="viewer"), "read", "dashboard")


class TestCatalog:
    def test_system_roles_are_consistent(self) -> None:
        for role in SYSTEM_ROLES:
            validate_role(role)
        catalog = RoleCatalog(SYSTEM_ROLES)
        assert len(catalog) == len(SYSTEM_ROLES)
        assert catalog["super_admin"].level == 10
        assert catalog["user"].permissions == ()

    def test_permission_outside_claimed_modules_rejected(self) -> None:
        bad = Role("bad", "Bad", 3, ("hrm",), (ModulePermission("read", "invoice"),))
        with pytest.raises(ValueError, match="finance"):
            RoleCatalog([bad])

    def test_unknown_resource_rejected(self) -> None:
        bad = Role("bad", "Bad", 3, ("hrm",), (ModulePermission("read", "spaceship"),))
        with pytest.raises(ValueError):
            validate_role(bad)

    def test_wildcard_resource_requires_wildcard_module(self) -> None:
        bad = Role("bad", "Bad", 9, ("admin",), (ModulePermission("manage", "*"),))
        with pytest.raises(ValueError):
            validate_role(bad)

    @pytest.mark.parametrize("level", [0, 11])
    def test_level_out_of_range(self, level: int) -> None:
        with pytest.raises(ValueError):
            validate_role(Role("r", "R", level))

    def test_copy_on_write(self) -> None:
        catalog = RoleCatalog([READER])
        extra = Role("extra", "Extra", 2)
        grown = catalog.with_role(extra)
        assert "extra" in grown and "extra" not in catalog
        assert grown.version == catalog.version + 1
        shrunk = grown.without_role("extra")
        assert "extra" not in shrunk
        assert shrunk.version == grown.version + 1

    def test_catalog_is_read_only(self) -> None:
        catalog = RoleCatalog([READER])
        with pytest.raises(TypeError):
            catalog["x"] = READER  # type: ignore[index]

    def test_module_for_resource(self) -> None:
        assert module_for_resource("leave_request") == "hrm"
        assert module_for_resource("*") == "*"
        assert module_for_resource("nope") is None

    def test_engine_sees_swapped_catalog(self) -> None:
        engine = _engine(READER)
        actor = Actor(user_id="u1", role_id="fin")
        assert not engine.has_permission(actor, "read", "invoice")
        engine.catalog = engine.catalog.with_role(
            Role("fin", "Fin", 6, ("finance",), (ModulePermission("read", "invoice"),))
        )
        assert engine.has_permission(actor, "read", "invoice")


class TestModulePermissionParse:
    def test_two_part_defaults_to_all(self) -> None:
        assert ModulePermission.parse("read:invoice") == ModulePermission("read", "invoice", Scope.ALL)

    def test_three_part(self) -> None:
        perm = ModulePermission.parse("approve:leave:department")
        assert perm.scope is Scope.DEPARTMENT
        assert str(perm) == "approve:leave:department"

    @pytest.mark.parametrize("raw", ["read", "read:", ":invoice", "a:b:c:d", "read:invoice:galaxy"])
    def test_malformed(self, raw: str) -> None:
        with pytest.raises(ValueError):
            ModulePermission.parse(raw)
