"""Admin endpoints for the role/action registry, identity records and audit trail."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from dietician_core.core.encryption import FieldCipher, get_field_cipher
from dietician_core.core.logging import get_logger
from dietician_core.core.security.display import display_identifier
from dietician_core.core.security.permissions import (
    ActionCode,
    PermissionEngine,
    require_permission,
)
from dietician_core.core.security.tokens import TokenPayload
from dietician_core.db.models import User
from dietician_core.db.session import AuditDbSession, DbSession
from dietician_core.modules.admin.schemas import (
    ActionResponse,
    AuditRecordListResponse,
    AuditRecordResponse,
    RoleActionAssignment,
    RoleActionsUpdate,
    RoleResponse,
    UserActiveUpdate,
    UserCreate,
    UserListResponse,
    UserResponse,
    UserUpdate,
)
from dietician_core.modules.admin.service import (
    ActionNotFound,
    AdminService,
    list_audit_records,
    normalize_role_code,
)
from dietician_core.modules.identities.service import (
    IdentityAlreadyExists,
    IdentityNotFound,
    IdentityService,
    RoleNotFound,
)

logger = get_logger(__name__)
router = APIRouter()

Cipher = Annotated[FieldCipher, Depends(get_field_cipher)]

ManageRoles = Annotated[TokenPayload, Depends(require_permission(ActionCode.MANAGE_ROLES))]
ViewUsers = Annotated[
    TokenPayload,
    Depends(require_permission(ActionCode.VIEW_PATIENT, ActionCode.VIEW_DIETICIAN)),
]
ToggleUsers = Annotated[
    TokenPayload,
    Depends(
        require_permission(
            ActionCode.ACTIVATE_PATIENT,
            ActionCode.DEACTIVATE_PATIENT,
            ActionCode.ACTIVATE_DIETICIAN,
            ActionCode.DEACTIVATE_DIETICIAN,
        )
    ),
]
CreateUsers = Annotated[
    TokenPayload,
    Depends(require_permission(ActionCode.CREATE_PATIENT, ActionCode.CREATE_DIETICIAN)),
]
EditUsers = Annotated[
    TokenPayload,
    Depends(require_permission(ActionCode.EDIT_PATIENT, ActionCode.EDIT_DIETICIAN)),
]
ViewAuditLog = Annotated[TokenPayload, Depends(require_permission(ActionCode.VIEW_AUDIT_LOG))]

# Roles without a dedicated action, ADMIN included, need MANAGE_ROLES.
_CREATE_ACTIONS = {
    "PATIENT": ActionCode.CREATE_PATIENT,
    "DIETICIAN": ActionCode.CREATE_DIETICIAN,
}
_EDIT_ACTIONS = {
    "PATIENT": ActionCode.EDIT_PATIENT,
    "DIETICIAN": ActionCode.EDIT_DIETICIAN,
}


async def _ensure_action(db: AsyncSession, principal: TokenPayload, action: ActionCode) -> None:
    if not await PermissionEngine(db).has_permission(principal, action):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


def _user_response(user: User, cipher: FieldCipher) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=display_identifier(user, cipher),
        full_name=user.full_name,
        role_code=user.role.role_code if user.role else None,
        email_verified=user.email_verified,
        is_active=user.is_active,
        created_at=user.created_at,
    )


@router.get("/roles", response_model=list[RoleResponse])
async def list_roles(db: DbSession, _user: ManageRoles) -> list[RoleResponse]:
    roles = await AdminService(db).list_roles()
    return [RoleResponse.model_validate(role) for role in roles]


@router.get("/actions", response_model=list[ActionResponse])
async def list_actions(db: DbSession, _user: ManageRoles) -> list[ActionResponse]:
    """Active actions grouped by module."""
    actions = await AdminService(db).list_actions()
    return [ActionResponse.model_validate(action) for action in actions]


@router.get("/roles/{role_id}/actions", response_model=list[RoleActionAssignment])
async def get_role_actions(
    role_id: int,
    db: DbSession,
    _user: ManageRoles,
) -> list[RoleActionAssignment]:
    """Every active action with an ``assigned`` flag for the role."""
    try:
        matrix = await AdminService(db).role_action_matrix(role_id)
    except RoleNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return [
        RoleActionAssignment(
            id=action.id,
            action_code=action.action_code,
            action_name=action.action_name,
            description=action.description,
            module=action.module,
            assigned=assigned,
        )
        for action, assigned in matrix
    ]


@router.put("/roles/{role_id}/actions", response_model=list[ActionResponse])
async def update_role_actions(
    role_id: int,
    body: RoleActionsUpdate,
    db: DbSession,
    user: ManageRoles,
) -> list[ActionResponse]:
    """Replace the role's granted actions."""
    try:
        actions = await AdminService(db).update_role_actions(role_id, body.action_ids)
    except RoleNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ActionNotFound as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.info("role_actions_replaced", role_id=role_id, sub=user.sub)
    return [ActionResponse.model_validate(action) for action in actions]


@router.get("/users", response_model=UserListResponse)
async def list_users(
    db: DbSession,
    cipher: Cipher,
    _user: ViewUsers,
    role_code: str | None = Query(None, description="Filter by role code"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
) -> UserListResponse:
    users, total = await AdminService(db).list_users(role_code, page=page, page_size=page_size)
    return UserListResponse(
        items=[_user_response(user, cipher) for user in users],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    db: DbSession,
    cipher: Cipher,
    _user: ViewUsers,
) -> UserResponse:
    try:
        user = await AdminService(db).get_user(user_id)
    except IdentityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _user_response(user, cipher)


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    body: UserCreate,
    db: DbSession,
    cipher: Cipher,
    user: CreateUsers,
) -> UserResponse:
    """Create an identity record in a role the caller may create."""
    role_code = normalize_role_code(body.role_code)
    await _ensure_action(db, user, _CREATE_ACTIONS.get(role_code, ActionCode.MANAGE_ROLES))
    try:
        created = await AdminService(db, cipher).create_user(
            body.email,
            role_code,
            full_name=body.full_name,
        )
    except IdentityAlreadyExists as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except RoleNotFound as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.info("user_created_by_admin", user_id=created.id, sub=user.sub)
    return _user_response(created, cipher)


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    body: UserUpdate,
    db: DbSession,
    cipher: Cipher,
    user: EditUsers,
) -> UserResponse:
    """
    Update name, role or e-mail. Editing needs the edit action for the
    record's current role; moving it to another role needs MANAGE_ROLES.
    """
    service = AdminService(db, cipher)
    try:
        target = await service.get_user(user_id)
    except IdentityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    current_role = target.role.role_code
    await _ensure_action(db, user, _EDIT_ACTIONS.get(current_role, ActionCode.MANAGE_ROLES))
    if body.role_code is not None and normalize_role_code(body.role_code) != current_role:
        await _ensure_action(db, user, ActionCode.MANAGE_ROLES)

    try:
        updated = await service.update_user(
            user_id,
            full_name=body.full_name,
            role_code=body.role_code,
            email=body.email,
        )
    except IdentityAlreadyExists as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except RoleNotFound as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.info("user_updated_by_admin", user_id=updated.id, sub=user.sub)
    return _user_response(updated, cipher)


@router.get("/users/{user_id}/actions", response_model=list[str])
async def get_user_actions(user_id: int, db: DbSession, _user: ManageRoles) -> list[str]:
    try:
        return await AdminService(db).user_actions(user_id)
    except IdentityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.patch("/users/{user_id}/active", response_model=UserResponse)
async def set_user_active(
    user_id: int,
    body: UserActiveUpdate,
    db: DbSession,
    cipher: Cipher,
    _user: ToggleUsers,
) -> UserResponse:
    """Activate or deactivate an identity; effective on its next request."""
    try:
        user = await IdentityService(db, cipher).set_active(user_id, body.is_active)
    except IdentityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return _user_response(user, cipher)


@router.get("/audit/records", response_model=AuditRecordListResponse)
async def list_audit(
    audit_db: AuditDbSession,
    _user: ViewAuditLog,
    table_name: str | None = Query(None, description="Filter by table"),
    record_id: str | None = Query(None, description="Filter by record id"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
) -> AuditRecordListResponse:
    """List audit records, newest first."""
    records, total = await list_audit_records(
        audit_db,
        table_name=table_name,
        record_id=record_id,
        page=page,
        page_size=page_size,
    )
    return AuditRecordListResponse(
        items=[AuditRecordResponse.model_validate(record) for record in records],
        total=total,
        page=page,
        page_size=page_size,
    )
