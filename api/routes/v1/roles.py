"""
api/routes/v1/roles.py -- Role catalog, role assignment, and permission checks.

Routes:
  GET    /api/v1/roles                 -- list roles, highest level first (manage:role)
  POST   /api/v1/roles                 -- create a custom role (manage:role)
  PATCH  /api/v1/roles/{role_id}       -- edit a role (manage:role)
  DELETE /api/v1/roles/{role_id}       -- delete an unused, non-critical role (manage:role)
  PUT    /api/v1/users/{user_id}/role  -- assign a role (manage:user)
  POST   /api/v1/permissions/check     -- evaluate one permission for the bearer

Permission and hierarchy checks live in auth.roles.RoleManager, not here, so
the same rules hold for any caller. Failures surface as AuthError subclasses.

Layer rule: handlers talk to app.state.role_manager and
app.state.permission_engine only; no direct store access.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    PermissionCheckRequest,
    PermissionCheckResponse,
    RoleAssignment,
    RoleCreate,
    RolePatch,
    RoleResponse,
    UserResponse,
)
from auth.dependencies import get_current_actor, require_permission
from auth.errors import InvalidRequest
from auth.models import ModulePermission, Role
from auth.permissions import AccessContext, Actor
from auth.roles import RoleManager

router = APIRouter()


def _manager(request: Request) -> RoleManager:
    return request.app.state.role_manager


def _parse_permissions(raw: list[str]) -> tuple[ModulePermission, ...]:
    try:
        return tuple(ModulePermission.parse(item) for item in raw)
    except ValueError as exc:
        raise InvalidRequest(str(exc)) from exc


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, actor: Actor = Depends(require_permission("manage", "role"))) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in _manager(request).list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    actor: Actor = Depends(get_current_actor),
) -> RoleResponse:
    """Create a custom role. The new role's level must be below the caller's."""
    role = Role(
        id=body.id,
        name=body.name,
        level=body.level,
        modules=tuple(body.modules),
        permissions=_parse_permissions(body.permissions),
        description=body.description,
    )
    return RoleResponse.from_role(_manager(request).create_role(actor, role))


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: str,
    body: RolePatch,
    actor: Actor = Depends(get_current_actor),
) -> RoleResponse:
    updated = _manager(request).update_role(
        actor,
        role_id,
        name=body.name,
        description=body.description,
        level=body.level,
        modules=tuple(body.modules) if body.modules is not None else None,
        permissions=_parse_permissions(body.permissions) if body.permissions is not None else None,
    )
    return RoleResponse.from_role(updated)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: str, actor: Actor = Depends(get_current_actor)) -> Response:
    _manager(request).delete_role(actor, role_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


@router.put("/users/{user_id}/role", response_model=UserResponse)
def assign_role(
    request: Request,
    user_id: str,
    body: RoleAssignment,
    actor: Actor = Depends(get_current_actor),
) -> UserResponse:
    """Assign a role. Existing tokens keep the old role until they are refreshed."""
    user = _manager(request).assign_role(
        actor,
        user_id,
        body.role_id,
        department_id=body.department_id,
        team_id=body.team_id,
    )
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Permission check
# ---------------------------------------------------------------------------


@router.post("/permissions/check", response_model=PermissionCheckResponse)
def check_permission(
    request: Request,
    body: PermissionCheckRequest,
    actor: Actor = Depends(get_current_actor),
) -> PermissionCheckResponse:
    engine = request.app.state.permission_engine
    catalog = engine.catalog
    context = AccessContext(
        target_user_id=body.target_user_id,
        target_department=body.target_department,
        target_team=body.target_team,
    )
    return PermissionCheckResponse(
        allowed=engine.has_permission(actor, body.action, body.resource, context),
        role_id=actor.role_id,
        catalog_version=catalog.version,
    )
