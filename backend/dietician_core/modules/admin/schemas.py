"""Pydantic schemas for the admin module."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    role_code: str
    role_name: str
    description: str | None = None
    is_active: bool


class ActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action_code: str
    action_name: str
    description: str | None = None
    module: str


class RoleActionAssignment(ActionResponse):
    """An action with whether the role currently holds it."""

    assigned: bool


class RoleActionsUpdate(BaseModel):
    """Request body replacing the actions granted to a role."""

    action_ids: list[int] = Field(default_factory=list)


class UserResponse(BaseModel):
    """Identity record as shown to administrators; the e-mail is masked."""

    id: int
    email: str
    full_name: str | None = None
    role_code: str | None = None
    email_verified: bool
    is_active: bool
    created_at: datetime


class UserListResponse(BaseModel):
    items: list[UserResponse]
    total: int
    page: int
    page_size: int


class UserActiveUpdate(BaseModel):
    is_active: bool


class UserCreate(BaseModel):
    """Request body for an administrator-created identity record."""

    email: str = Field(min_length=3, max_length=255)
    role_code: str = Field(min_length=1, max_length=20)
    full_name: str | None = Field(default=None, max_length=100)


class UserUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""

    email: str | None = Field(default=None, min_length=3, max_length=255)
    role_code: str | None = Field(default=None, min_length=1, max_length=20)
    full_name: str | None = Field(default=None, max_length=100)


class AuditRecordDetailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field_name: str
    old_value: str | None = None
    new_value: str | None = None


class AuditRecordResponse(BaseModel):
    """Single audit record in API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    table_name: str
    record_id: str | None = None
    action: str
    changed_by: str
    changed_date: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    details: list[AuditRecordDetailResponse] = Field(default_factory=list)


class AuditRecordListResponse(BaseModel):
    """Paginated list of audit records."""

    items: list[AuditRecordResponse]
    total: int
    page: int
    page_size: int
