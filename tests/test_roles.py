"""
tests/test_roles.py -- Unit tests for RoleManager: hierarchy guards, CRUD, assignment.

Actors are real users stored with a system role; their level comes from the
seeded catalog (system_admin 9, hr_manager 8, department_manager 6, ...).
"""

from __future__ import annotations

import pytest

from auth.errors import (
    DuplicateRole,
    InsufficientPermission,
    InvalidRequest,
    InvalidRoleHierarchy,
    NotFound,
    ProtectedRole,
    RoleInUse,
)
from auth.models import ModulePermission, Role, Scope
from auth.roles import RoleManager, load_catalog


def _custom(role_id: str = "auditor", level: int = 5, name: str | None = None) -> Role:
    return Role(
        id=role_id,
        name=name or role_id.title(),
        level=level,
        modules=("finance",),
        permissions=(ModulePermission("read", "invoice"), ModulePermission("read", "expense", Scope.DEPARTMENT)),
        description="Reads finance records",
    )


@pytest.fixture
def sysadmin(make_user, actor_of):
    return actor_of(make_user(role_id="system_admin", email="sys@x.com"))


@pytest.fixture
def superadmin(make_user, actor_of):
    return actor_of(make_user(role_id="super_admin", email="root@x.com"))


class TestCreateRole:
    def test_create_below_own_level(self, role_manager: RoleManager, sysadmin, engine, store) -> None:
        version = engine.catalog.version
        role = role_manager.create_role(sysadmin, _custom())
        assert role.is_system is False
        assert engine.catalog["auditor"] == role
        assert engine.catalog.version == version + 1
        assert store.get_role("auditor") == role

    @pytest.mark.parametrize("level", [9, 10])
    def test_create_at_or_above_own_level(self, role_manager: RoleManager, sysadmin, level: int) -> None:
        with pytest.raises(InvalidRoleHierarchy):
            role_manager.create_role(sysadmin, _custom(level=level))

    def test_super_admin_may_create_top_level(self, role_manager: RoleManager, superadmin) -> None:
        role = role_manager.create_role(superadmin, _custom(level=10))
        assert role.level == 10

    def test_is_system_cannot_be_claimed(self, role_manager: RoleManager, sysadmin) -> None:
        role = Role(id="sneaky", name="Sneaky", level=2, is_system=True)
        assert role_manager.create_role(sysadmin, role).is_system is False

    def test_duplicate_id(self, role_manager: RoleManager, sysadmin) -> None:
        with pytest.raises(DuplicateRole):
            role_manager.create_role(sysadmin, Role(id="employee", name="Another Employee", level=2))

    def test_duplicate_name_case_insensitive(self, role_manager: RoleManager, sysadmin) -> None:
        with pytest.raises(DuplicateRole):
            role_manager.create_role(sysadmin, Role(id="emp2", name="EMPLOYEE", level=2))

    def test_inconsistent_role(self, role_manager: RoleManager, sysadmin) -> None:
        bad = Role(id="bad", name="Bad", level=2, modules=("hrm",), permissions=(ModulePermission("read", "invoice"),))
        with pytest.raises(InvalidRequest):
            role_manager.create_role(sysadmin, bad)

    def test_requires_manage_role(self, role_manager: RoleManager, make_user, actor_of) -> None:
        hr = actor_of(make_user(role_id="hr_manager", email="hr@x.com"))
        with pytest.raises(InsufficientPermission):
            role_manager.create_role(hr, _custom(level=2))


class TestUpdateRole:
    def test_update_fields(self, role_manager: RoleManager, sysadmin, engine) -> None:
        role_manager.create_role(sysadmin, _custom())
        updated = role_manager.update_role(sysadmin, "auditor", description="Audits", level=4)
        assert updated.description == "Audits"
        assert updated.level == 4
        assert engine.catalog["auditor"].level == 4

    def test_edit_role_at_own_level(self, role_manager: RoleManager, sysadmin) -> None:
        with pytest.raises(InvalidRoleHierarchy):
            role_manager.update_role(sysadmin, "system_admin", description="mine now")

    def test_raise_level_to_own(self, role_manager: RoleManager, sysadmin) -> None:
        role_manager.create_role(sysadmin, _custom())
        with pytest.raises(InvalidRoleHierarchy):
            role_manager.update_role(sysadmin, "auditor", level=9)

    def test_unknown_role(self, role_manager: RoleManager, sysadmin) -> None:
        with pytest.raises(NotFound):
            role_manager.update_role(sysadmin, "ghost", description="x")

    def test_no_fields(self, role_manager: RoleManager, sysadmin) -> None:
        with pytest.raises(InvalidRequest):
            role_manager.update_role(sysadmin, "employee")

    def test_rename_to_taken_name(self, role_manager: RoleManager, sysadmin) -> None:
        role_manager.create_role(sysadmin, _custom())
        with pytest.raises(DuplicateRole):
            role_manager.update_role(sysadmin, "auditor", name="Accountant")

    def test_edit_persists_across_reload(self, role_manager: RoleManager, sysadmin, store) -> None:
        role_manager.update_role(sysadmin, "employee", description="Edited")
        assert load_catalog(store)["employee"].description == "Edited"


class TestDeleteRole:
    def test_delete_unused_custom_role(self, role_manager: RoleManager, sysadmin, engine, store) -> None:
        role_manager.create_role(sysadmin, _custom())
        role_manager.delete_role(sysadmin, "auditor")
        assert "auditor" not in engine.catalog
        assert store.get_role("auditor") is None

    @pytest.mark.parametrize("role_id", ["super_admin", "system_admin", "hr_manager", "employee", "user"])
    def test_critical_roles_protected(self, role_manager: RoleManager, superadmin, role_id: str) -> None:
        with pytest.raises(ProtectedRole):
            role_manager.delete_role(superadmin, role_id)

    def test_role_in_use(self, role_manager: RoleManager, sysadmin, make_user) -> None:
        role_manager.create_role(sysadmin, _custom())
        make_user(role_id="auditor", email="aud@x.com")
        with pytest.raises(RoleInUse) as excinfo:
            role_manager.delete_role(sysadmin, "auditor")
        assert excinfo.value.detail == {"assigned_users": 1}

    def test_delete_at_or_above_own_level(self, role_manager: RoleManager, make_user, actor_of, superadmin) -> None:
        role_manager.create_role(superadmin, Role(id="peer", name="Peer", level=9))
        sysadmin = actor_of(make_user(role_id="system_admin", email="sys2@x.com"))
        with pytest.raises(InvalidRoleHierarchy):
            role_manager.delete_role(sysadmin, "peer")

    def test_delete_unknown(self, role_manager: RoleManager, sysadmin) -> None:
        with pytest.raises(NotFound):
            role_manager.delete_role(sysadmin, "ghost")


class TestHierarchyGrid:
    @pytest.mark.parametrize("actor_level", range(2, 10))
    @pytest.mark.parametrize("role_level", range(1, 11))
    def test_edit_guard(self, store, engine, actor_level: int, role_level: int, make_user, actor_of) -> None:
        """Editing is allowed exactly when the role is strictly below the actor (below level 10)."""
        manager = RoleManager(store, engine)
        admin_role = Role(
            id="grid_admin",
            name="Grid Admin",
            level=actor_level,
            modules=("admin",),
            permissions=(ModulePermission("manage", "role"),),
        )
        engine.catalog = engine.catalog.with_role(admin_role).with_role(Role("target", "Target", role_level))
        actor = actor_of(make_user(role_id="grid_admin", email="grid@x.com"))
        if role_level < actor_level:
            manager.update_role(actor, "target", description="ok")
        else:
            with pytest.raises(InvalidRoleHierarchy):
                manager.update_role(actor, "target", description="nope")


class TestAssignRole:
    def test_assign_with_department(self, role_manager: RoleManager, sysadmin, make_user) -> None:
        user = make_user(email="new@x.com")
        updated = role_manager.assign_role(sysadmin, user.id, "department_manager", department_id="eng")
        assert updated.role_id == "department_manager"
        assert updated.department_id == "eng"

    def test_cannot_promote_to_own_level(self, role_manager: RoleManager, sysadmin, make_user) -> None:
        user = make_user(email="climber@x.com")
        with pytest.raises(InvalidRoleHierarchy):
            role_manager.assign_role(sysadmin, user.id, "system_admin")

    def test_cannot_demote_peer(self, role_manager: RoleManager, sysadmin, make_user) -> None:
        peer = make_user(role_id="system_admin", email="peer@x.com")
        with pytest.raises(InvalidRoleHierarchy):
            role_manager.assign_role(sysadmin, peer.id, "user")

    def test_unknown_user(self, role_manager: RoleManager, sysadmin) -> None:
        with pytest.raises(NotFound):
            role_manager.assign_role(sysadmin, "0" * 32, "employee")

    def test_unknown_role(self, role_manager: RoleManager, sysadmin, make_user) -> None:
        user = make_user(email="x@x.com")
        with pytest.raises(NotFound):
            role_manager.assign_role(sysadmin, user.id, "ghost")

    def test_requires_manage_user(self, role_manager: RoleManager, make_user, actor_of) -> None:
        employee = actor_of(make_user(role_id="employee", email="e@x.com"))
        target = make_user(email="t@x.com")
        with pytest.raises(InsufficientPermission):
            role_manager.assign_role(employee, target.id, "employee")

    def test_list_roles_highest_first(self, role_manager: RoleManager) -> None:
        levels = [r.level for r in role_manager.list_roles()]
        assert levels == sorted(levels, reverse=True)
        assert role_manager.list_roles()[0].id == "super_admin"
