"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and permissions.

Tokens are read from the Authorization: Bearer header only. There is no
cookie session: access tokens are short-lived and clients refresh them with
POST /auth/refresh.

get_current_claims() verifies the bearer token and returns its claims.
get_current_actor() wraps it and builds the Actor used by permission checks.
require_permission(action, resource) is a dependency factory that also asks
the permission engine and raises 403 when the actor lacks the grant.

Layer rule: no imports from api/. This module may import from fastapi because
it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import InvalidToken
from auth.permissions import AccessContext, Actor, PermissionEngine


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_claims(request: Request) -> dict:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: dict = Depends(get_current_claims)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return request.app.state.auth_service.verify_token(token)
    except InvalidToken as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": exc.message},
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def get_current_actor(request: Request) -> Actor:
    """Require authentication and return the Actor for permission checks."""
    return Actor.from_claims(get_current_claims(request))


def require_permission(action: str, resource: str):
    """Return a dependency that requires `action` on `resource` at any scope.

    Only unscoped (route-level) checks fit here. Object-level checks need the
    target's owner/department/team and belong in the handler, via
    PermissionEngine.has_permission() with an AccessContext.
    """

    def dependency(request: Request) -> Actor:
        actor = get_current_actor(request)
        engine: PermissionEngine = request.app.state.permission_engine
        # Checked against the actor's own attributes, so a grant at any scope
        # admits the request to the handler.
        own = AccessContext(
            target_user_id=actor.user_id,
            target_department=actor.department_id,
            target_team=actor.team_id,
        )
        if not engine.has_permission(actor, action, resource, own):
            raise HTTPException(
                status_code=403,
                detail={"code": "insufficient_permission", "message": f"Missing permission {action}:{resource}."},
            )
        return actor

    return dependency

