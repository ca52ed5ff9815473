"""
api/routes/v1/users.py -- User provisioning and maintenance REST endpoints.

Routes:
  POST  /api/v1/users               -- register a user (bootstrap or creation gate)
  GET   /api/v1/users               -- list active users (ver_usuarios)
  GET   /api/v1/users/{id}          -- user detail (self or ver_usuarios)
  PATCH /api/v1/users/{id}          -- partial update (self or editar_usuarios, then modification gate)
  PATCH /api/v1/users/{id}/status   -- activate / deactivate (desactivar_usuarios, then modification gate)
  GET   /api/v1/roles               -- role registry (ver_usuarios)

Two layers of checks on writes: the route-level permission string says the
caller may use the endpoint at all; the Authorization Engine (inside the
service and store) decides about this particular target. Both raise
PermissionDenied, rendered as 403 with no reason attached.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    RegisterRequest,
    RoleResponse,
    StatusPatch,
    UserPatch,
    UserResponse,
    UserSummaryResponse,
)
from auth import policy
from auth.dependencies import get_session, require_permission, try_get_session
from auth.errors import NotFound
from auth.models import SessionAssertion
from auth.service import AccessService
from auth.store import IdentityStore

# Auth policy:
# - POST  /api/v1/users:              optional auth -- anonymous only while the system is empty
# - GET   /api/v1/users:              ver_usuarios
# - GET   /api/v1/users/{id}:         self, or ver_usuarios
# - PATCH /api/v1/users/{id}:         self, or editar_usuarios; then modification gate
# - PATCH /api/v1/users/{id}/status:  desactivar_usuarios; then modification gate
# - GET   /api/v1/roles:              ver_usuarios
router = APIRouter()


@router.post("/users", response_model=UserResponse, status_code=201)
def register_user(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a user.

    With an empty store anyone may create the first super_admin. After that
    the caller must be authenticated and pass the creation gate.
    """
    service: AccessService = request.app.state.access_service
    actor = try_get_session(request)
    user = service.register(
        actor,
        body.role.value,
        email=body.email,
        password=body.password,
        name=body.name,
        document=body.document,
        phone=body.phone,
        address=body.address,
        details=body.details,
    )
    return UserResponse.from_user(user)


@router.get("/users", response_model=list[UserSummaryResponse])
def list_users(
    request: Request,
    session: SessionAssertion = Depends(require_permission("ver_usuarios")),
) -> list[UserSummaryResponse]:
    """List active users without credentials or detail payloads."""
    store: IdentityStore = request.app.state.identity_store
    return [UserSummaryResponse.from_summary(s) for s in store.list_active()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    session: SessionAssertion = Depends(get_session),
) -> UserResponse:
    """Return one user. Anyone may read their own record."""
    if session.id != user_id:
        policy.require_any_permission(session, "ver_usuarios")
    store: IdentityStore = request.app.state.identity_store
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    session: SessionAssertion = Depends(get_session),
) -> UserResponse:
    """Apply a partial update. Self-service is always allowed past the permission check."""
    if session.id != user_id:
        policy.require_any_permission(session, "editar_usuarios")
    service: AccessService = request.app.state.access_service
    user = service.update_user(user_id, body.to_patch(), session)
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}/status", response_model=UserResponse)
def set_user_status(
    request: Request,
    user_id: int,
    body: StatusPatch,
    session: SessionAssertion = Depends(require_permission("desactivar_usuarios")),
) -> UserResponse:
    """Activate or deactivate a user. Users are never physically deleted."""
    service: AccessService = request.app.state.access_service
    user = service.set_user_active(user_id, body.active, session)
    return UserResponse.from_user(user)


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    session: SessionAssertion = Depends(require_permission("ver_usuarios")),
) -> list[RoleResponse]:
    """Return every registered role with its permission set."""
    store: IdentityStore = request.app.state.identity_store
    return [RoleResponse.from_role(r) for r in store.registry.list_roles()]
