from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

SYSTEM_OWNER_KEY = "system"


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class PrincipalStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"


class ScopeTag(StrEnum):
    GLOBAL = "GLOBAL"
    AGENCY = "AGENCY"
    BRANCH = "BRANCH"
    ASSIGNED = "ASSIGNED"
    OWN = "OWN"


class AccessLevel(StrEnum):
    FULL = "FULL"
    READ_ONLY = "READ_ONLY"
    LIMITED = "LIMITED"


class RestrictionType(StrEnum):
    IP_BASED = "IP_BASED"
    TIME_BASED = "TIME_BASED"
    CONDITIONAL = "CONDITIONAL"


class RestrictionScope(StrEnum):
    GLOBAL = "GLOBAL"
    AGENCY = "AGENCY"
    BRANCH = "BRANCH"


class PolicyTargetType(StrEnum):
    USER = "USER"
    ROLE = "ROLE"
    BRANCH = "BRANCH"


class PolicyEffect(StrEnum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class AccessResult(StrEnum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    RESTRICTED = "RESTRICTED"
    EXPIRED = "EXPIRED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AccessAuditLog(SQLModel, table=True):
    __tablename__ = "access_audit_logs"
    __table_args__ = (
        Index("ix_access_audit_logs_tenant_ts", "tenant_id", "ts"),
        Index("ix_access_audit_logs_user_ts", "user_id", "ts"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, index=True)
    user_id: str = Field(index=True)
    resource: str = Field(index=True)
    action: str
    resource_id: str | None = None
    result: AccessResult = Field(index=True)
    reason: str
    ip_address: str | None = None
    user_agent: str | None = None
    duration_ms: float | None = None
    context: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    ts: datetime = Field(default_factory=now_utc, index=True)


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Branch(SQLModel, table=True):
    __tablename__ = "branches"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_branches_tenant_code"),
        Index("ix_branches_tenant_parent", "tenant_id", "parent_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str
    code: str = Field(index=True)
    parent_id: str | None = Field(default=None, foreign_key="branches.id", index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    branch_id: str | None = Field(default=None, foreign_key="branches.id", index=True)
    username: str = Field(index=True)
    status: PrincipalStatus = Field(default=PrincipalStatus.ACTIVE, index=True)
    role: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class BranchManager(SQLModel, table=True):
    __tablename__ = "branch_managers"

    tenant_id: str = Field(foreign_key="tenants.id", primary_key=True)
    branch_id: str = Field(foreign_key="branches.id", primary_key=True)
    user_id: str = Field(foreign_key="users.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    slug: str = Field(index=True, unique=True)
    name: str
    resource: str = Field(index=True)
    action: str = Field(index=True)
    category: str = Field(index=True)
    is_system: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("owner_key", "slug", name="uq_roles_owner_slug"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, foreign_key="tenants.id", index=True)
    owner_key: str = Field(index=True)
    slug: str = Field(index=True)
    name: str
    description: str | None = None
    level: int = Field(default=0)
    scope: ScopeTag = Field(default=ScopeTag.OWN)
    branch_id: str | None = Field(default=None, foreign_key="branches.id", index=True)
    parent_id: str | None = Field(default=None, foreign_key="roles.id", index=True)
    is_active: bool = Field(default=True)
    is_system: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="uq_role_permissions_role_permission"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    role_id: str = Field(foreign_key="roles.id", index=True)
    permission_id: str = Field(foreign_key="permissions.id", index=True)
    access_level: AccessLevel = Field(default=AccessLevel.FULL)
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserRoleAssignment(SQLModel, table=True):
    __tablename__ = "user_role_assignments"
    __table_args__ = (Index("ix_user_role_assignments_tenant_user", "tenant_id", "user_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    role_id: str = Field(foreign_key="roles.id", index=True)
    branch_id: str | None = Field(default=None, foreign_key="branches.id")
    assigned_by: str | None = None
    expires_at: datetime | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserPermission(SQLModel, table=True):
    __tablename__ = "user_permissions"
    __table_args__ = (Index("ix_user_permissions_tenant_user", "tenant_id", "user_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    permission_id: str = Field(foreign_key="permissions.id", index=True)
    access_level: AccessLevel = Field(default=AccessLevel.FULL)
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    expires_at: datetime | None = None
    granted_by: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class ResourceRestriction(SQLModel, table=True):
    __tablename__ = "resource_restrictions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, foreign_key="tenants.id", index=True)
    name: str
    restriction_type: RestrictionType
    scope: RestrictionScope = Field(default=RestrictionScope.AGENCY)
    branch_id: str | None = Field(default=None, foreign_key="branches.id")
    resource: str | None = Field(default=None, index=True)
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class AccessPolicy(SQLModel, table=True):
    __tablename__ = "access_policies"
    __table_args__ = (Index("ix_access_policies_tenant_resource", "tenant_id", "resource", "action"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str
    resource: str
    action: str
    target_type: PolicyTargetType
    target_id: str
    effect: PolicyEffect
    priority: int = Field(default=0, index=True)
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class BranchAccessRule(SQLModel, table=True):
    __tablename__ = "branch_access_rules"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str
    resource: str = Field(index=True)
    action: str = Field(default="*")
    role_id: str | None = Field(default=None, foreign_key="roles.id")
    branch_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Student(SQLModel, table=True):
    __tablename__ = "students"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    branch_id: str | None = Field(default=None, foreign_key="branches.id", index=True)
    full_name: str
    assigned_to: str | None = Field(default=None, index=True)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Application(SQLModel, table=True):
    __tablename__ = "applications"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    branch_id: str | None = Field(default=None, foreign_key="branches.id", index=True)
    student_id: str | None = Field(default=None, foreign_key="students.id", index=True)
    program: str
    assigned_to: str | None = Field(default=None, index=True)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    branch_id: str | None = Field(default=None, foreign_key="branches.id", index=True)
    title: str
    assigned_to: str | None = Field(default=None, index=True)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Document(SQLModel, table=True):
    __tablename__ = "documents"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    branch_id: str | None = Field(default=None, foreign_key="branches.id", index=True)
    title: str
    assigned_to: str | None = Field(default=None, index=True)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantCreate(BaseModel):
    name: str


class TenantRead(ORMReadModel):
    id: str
    name: str
    created_at: datetime


class BranchCreate(BaseModel):
    name: str
    code: str
    parent_id: str | None = None
    is_active: bool = True


class BranchParentUpdate(BaseModel):
    parent_id: str | None = None


class BranchRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    code: str
    parent_id: str | None
    is_active: bool
    created_at: datetime


class BranchManagerCreate(BaseModel):
    user_id: str


class UserCreate(BaseModel):
    username: str
    branch_id: str | None = None
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    role: str | None = None


class UserStatusUpdate(BaseModel):
    status: PrincipalStatus


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    branch_id: str | None
    username: str
    status: PrincipalStatus
    role: str | None
    created_at: datetime


class PermissionRead(ORMReadModel):
    id: str
    slug: str
    name: str
    resource: str
    action: str
    category: str
    is_system: bool


class RoleCreate(BaseModel):
    slug: str = PydanticField(min_length=1, max_length=64)
    name: str
    description: str | None = None
    level: int = PydanticField(default=0, ge=0, le=1000)
    scope: ScopeTag = ScopeTag.OWN
    branch_id: str | None = None
    parent_id: str | None = None


class RoleParentUpdate(BaseModel):
    parent_id: str | None = None


class RoleRead(ORMReadModel):
    id: str
    tenant_id: str | None
    slug: str
    name: str
    description: str | None
    level: int
    scope: ScopeTag
    branch_id: str | None
    parent_id: str | None
    is_active: bool
    is_system: bool
    created_at: datetime


class RoleTemplateRead(BaseModel):
    slug: str
    name: str
    description: str
    level: int
    scope: ScopeTag
    is_system: bool
    permissions: list[str] = PydanticField(default_factory=list)


class RolePermissionGrantCreate(BaseModel):
    permission_slug: str
    access_level: AccessLevel = AccessLevel.FULL
    conditions: dict[str, Any] = PydanticField(default_factory=dict)


class RolePermissionRead(ORMReadModel):
    id: str
    role_id: str
    permission_id: str
    access_level: AccessLevel
    conditions: dict[str, Any]
    is_active: bool


class RoleAssignmentCreate(BaseModel):
    role_id: str
    branch_id: str | None = None
    expires_at: datetime | None = None


class RoleAssignmentRead(ORMReadModel):
    id: str
    tenant_id: str
    user_id: str
    role_id: str
    branch_id: str | None
    assigned_by: str | None
    expires_at: datetime | None
    is_active: bool
    created_at: datetime


class UserPermissionGrantCreate(BaseModel):
    permission_slug: str
    access_level: AccessLevel = AccessLevel.FULL
    conditions: dict[str, Any] = PydanticField(default_factory=dict)
    expires_at: datetime | None = None


class UserPermissionRead(ORMReadModel):
    id: str
    tenant_id: str
    user_id: str
    permission_id: str
    access_level: AccessLevel
    conditions: dict[str, Any]
    expires_at: datetime | None
    granted_by: str | None
    is_active: bool


class ResourceRestrictionCreate(BaseModel):
    name: str
    restriction_type: RestrictionType
    scope: RestrictionScope = RestrictionScope.AGENCY
    branch_id: str | None = None
    resource: str | None = None
    conditions: dict[str, Any] = PydanticField(default_factory=dict)


class ResourceRestrictionRead(ORMReadModel):
    id: str
    tenant_id: str | None
    name: str
    restriction_type: RestrictionType
    scope: RestrictionScope
    branch_id: str | None
    resource: str | None
    conditions: dict[str, Any]
    is_active: bool


class ActiveFlagUpdate(BaseModel):
    is_active: bool


class AccessPolicyCreate(BaseModel):
    name: str
    resource: str
    action: str
    target_type: PolicyTargetType
    target_id: str
    effect: PolicyEffect
    priority: int = 0
    conditions: dict[str, Any] = PydanticField(default_factory=dict)


class AccessPolicyRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    resource: str
    action: str
    target_type: PolicyTargetType
    target_id: str
    effect: PolicyEffect
    priority: int
    conditions: dict[str, Any]
    is_active: bool


class BranchAccessRuleCreate(BaseModel):
    name: str
    resource: str
    action: str = "*"
    role_id: str | None = None
    branch_ids: list[str] = PydanticField(default_factory=list)


class BranchAccessRuleRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    resource: str
    action: str
    role_id: str | None
    branch_ids: list[str]
    is_active: bool


class PermissionCheck(BaseModel):
    resource: str
    action: str
    resource_id: str | None = None


class RequestContext(BaseModel):
    agency_id: str | None = None
    branch_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class PermissionCheckRequest(PermissionCheck):
    branch_id: str | None = None


class AccessDecision(BaseModel):
    allowed: bool
    result: AccessResult
    reason: str
    principal_id: str
    resource: str
    action: str
    resource_id: str | None = None
    branch_scope: ScopeTag | None = None
    accessible_branches: list[str] = PydanticField(default_factory=list)
    applied_rules: list[str] = PydanticField(default_factory=list)
    field_permissions: dict[str, list[str]] = PydanticField(default_factory=dict)
    data_filters: dict[str, Any] = PydanticField(default_factory=dict)


class AccessibleBranchesRead(BaseModel):
    resource: str
    scope: ScopeTag | None
    branch_ids: list[str] = PydanticField(default_factory=list)
    applied_rules: list[str] = PydanticField(default_factory=list)


class UserAccessInfoRead(BaseModel):
    user_id: str
    tenant_id: str
    branch_id: str | None
    status: PrincipalStatus
    roles: list[str] = PydanticField(default_factory=list)
    permissions: list[str] = PydanticField(default_factory=list)
    scopes: dict[str, ScopeTag | None] = PydanticField(default_factory=dict)
    field_permissions: dict[str, list[str]] = PydanticField(default_factory=dict)


class BootstrapRequest(BaseModel):
    tenant_id: str | None = None


class BootstrapRead(BaseModel):
    permissions_created: int
    roles_created: int
    grants_created: int


class CatalogStatusRead(BaseModel):
    permission_count: int
    system_role_count: int
    tenant_role_count: int
    initialized: bool


class DevTokenRequest(BaseModel):
    tenant_id: str
    username: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
