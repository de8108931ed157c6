from __future__ import annotations

from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.conditions import ConditionError, validate_conditions
from app.domain.models import (
    AccessPolicy,
    AccessPolicyCreate,
    Branch,
    BranchAccessRule,
    BranchAccessRuleCreate,
    BranchCreate,
    BranchManager,
    Permission,
    PolicyTargetType,
    PrincipalStatus,
    ResourceRestriction,
    ResourceRestrictionCreate,
    RestrictionScope,
    Role,
    RoleAssignmentCreate,
    RoleCreate,
    RolePermission,
    RolePermissionGrantCreate,
    ScopeTag,
    Tenant,
    TenantCreate,
    User,
    UserCreate,
    UserPermission,
    UserPermissionGrantCreate,
    UserRoleAssignment,
    ensure_utc,
    now_utc,
)
from app.infra.db import get_engine
from app.services.role_graph_service import RoleGraphService


class RbacAdminError(Exception):
    pass


class NotFoundError(RbacAdminError):
    pass


class ConflictError(RbacAdminError):
    pass


class InvalidRuleError(RbacAdminError):
    pass


class ForbiddenError(RbacAdminError):
    pass


class RbacAdminService:
    def __init__(self, role_graph: RoleGraphService | None = None) -> None:
        self.role_graph = role_graph or RoleGraphService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _commit(self, session: Session, row: Any, conflict_message: str) -> None:
        session.add(row)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(conflict_message) from exc
        session.refresh(row)

    def _validate_conditions(self, conditions: dict[str, Any]) -> None:
        try:
            validate_conditions(conditions)
        except ConditionError as exc:
            raise InvalidRuleError(f"invalid conditions: {exc}") from exc

    def _require_tenant(self, session: Session, tenant_id: str) -> Tenant:
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    def _get_scoped_branch(self, session: Session, tenant_id: str, branch_id: str) -> Branch:
        branch = session.get(Branch, branch_id)
        if branch is None or branch.tenant_id != tenant_id:
            raise NotFoundError("branch not found")
        return branch

    def _get_scoped_user(self, session: Session, tenant_id: str, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None or user.tenant_id != tenant_id:
            raise NotFoundError("user not found")
        return user

    def _get_visible_role(self, session: Session, tenant_id: str, role_id: str) -> Role:
        role = session.get(Role, role_id)
        if role is None or (role.tenant_id is not None and role.tenant_id != tenant_id):
            raise NotFoundError("role not found")
        return role

    def _get_scoped_role(self, session: Session, tenant_id: str, role_id: str) -> Role:
        role = self._get_visible_role(session, tenant_id, role_id)
        if role.tenant_id is None:
            raise ConflictError("system roles cannot be modified by a tenant")
        return role

    def _get_permission(self, session: Session, slug: str) -> Permission:
        permission = session.exec(select(Permission).where(Permission.slug == slug)).first()
        if permission is None:
            raise NotFoundError(f"permission not found: {slug}")
        return permission

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        with self._session() as session:
            tenant = Tenant(name=payload.name)
            self._commit(session, tenant, "tenant name already exists")
            return tenant

    def create_branch(self, tenant_id: str, payload: BranchCreate) -> Branch:
        with self._session() as session:
            self._require_tenant(session, tenant_id)
            if payload.parent_id is not None:
                self._get_scoped_branch(session, tenant_id, payload.parent_id)
            branch = Branch(
                tenant_id=tenant_id,
                name=payload.name,
                code=payload.code,
                parent_id=payload.parent_id,
                is_active=payload.is_active,
            )
            self._commit(session, branch, "branch code already exists in tenant")
            return branch

    def list_branches(self, tenant_id: str) -> list[Branch]:
        with self._session() as session:
            rows = session.exec(select(Branch).where(Branch.tenant_id == tenant_id)).all()
            return sorted(rows, key=lambda item: item.code)

    def update_branch_parent(self, tenant_id: str, branch_id: str, parent_id: str | None) -> Branch:
        with self._session() as session:
            branch = self._get_scoped_branch(session, tenant_id, branch_id)
            current = parent_id
            visited: set[str] = set()
            while current is not None:
                if current == branch_id or current in visited:
                    raise ConflictError("branch cannot move under its descendant")
                visited.add(current)
                current = self._get_scoped_branch(session, tenant_id, current).parent_id
            branch.parent_id = parent_id
            branch.updated_at = now_utc()
            self._commit(session, branch, "branch update conflicts with existing data")
            return branch

    def add_branch_manager(self, tenant_id: str, branch_id: str, user_id: str) -> BranchManager:
        with self._session() as session:
            self._get_scoped_branch(session, tenant_id, branch_id)
            self._get_scoped_user(session, tenant_id, user_id)
            link = BranchManager(tenant_id=tenant_id, branch_id=branch_id, user_id=user_id)
            self._commit(session, link, "user already manages branch")
            return link

    def create_user(self, tenant_id: str, payload: UserCreate) -> User:
        with self._session() as session:
            self._require_tenant(session, tenant_id)
            if payload.branch_id is not None:
                self._get_scoped_branch(session, tenant_id, payload.branch_id)
            user = User(
                tenant_id=tenant_id,
                branch_id=payload.branch_id,
                username=payload.username,
                status=payload.status,
                role=payload.role,
            )
            self._commit(session, user, "username already exists in tenant")
            return user

    def set_user_status(self, tenant_id: str, user_id: str, status: PrincipalStatus) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            user.status = status
            user.updated_at = now_utc()
            self._commit(session, user, "user update conflicts with existing data")
            return user

    def list_roles(self, tenant_id: str) -> list[Role]:
        with self._session() as session:
            statement = select(Role).where(
                (col(Role.tenant_id).is_(None)) | (Role.tenant_id == tenant_id)
            )
            rows = session.exec(statement).all()
            return sorted(rows, key=lambda item: (-item.level, item.slug))

    def list_permissions(self) -> list[Permission]:
        with self._session() as session:
            rows = session.exec(select(Permission)).all()
            return sorted(rows, key=lambda item: item.slug)

    def create_role(self, tenant_id: str, payload: RoleCreate) -> Role:
        if payload.scope == ScopeTag.GLOBAL:
            raise InvalidRuleError("GLOBAL scope is reserved for system roles")
        with self._session() as session:
            self._require_tenant(session, tenant_id)
            if payload.branch_id is not None:
                self._get_scoped_branch(session, tenant_id, payload.branch_id)
            if payload.parent_id is not None:
                self._get_visible_role(session, tenant_id, payload.parent_id)
            role = Role(
                tenant_id=tenant_id,
                owner_key=tenant_id,
                slug=payload.slug,
                name=payload.name,
                description=payload.description,
                level=payload.level,
                scope=payload.scope,
                branch_id=payload.branch_id,
                parent_id=payload.parent_id,
            )
            if self.role_graph.creates_cycle(session, role.id, payload.parent_id):
                raise ConflictError("role parent chain would contain a cycle")
            self._commit(session, role, "role slug already exists in tenant")
            return role

    def update_role_parent(self, tenant_id: str, role_id: str, parent_id: str | None) -> Role:
        with self._session() as session:
            role = self._get_scoped_role(session, tenant_id, role_id)
            if parent_id is not None:
                self._get_visible_role(session, tenant_id, parent_id)
            if self.role_graph.creates_cycle(session, role.id, parent_id):
                raise ConflictError("role parent chain would contain a cycle")
            role.parent_id = parent_id
            role.updated_at = now_utc()
            self._commit(session, role, "role update conflicts with existing data")
            return role

    def set_role_active(self, tenant_id: str, role_id: str, is_active: bool) -> Role:
        with self._session() as session:
            role = self._get_scoped_role(session, tenant_id, role_id)
            role.is_active = is_active
            role.updated_at = now_utc()
            self._commit(session, role, "role update conflicts with existing data")
            return role

    def grant_role_permission(
        self,
        tenant_id: str,
        role_id: str,
        payload: RolePermissionGrantCreate,
    ) -> RolePermission:
        self._validate_conditions(payload.conditions)
        with self._session() as session:
            role = self._get_scoped_role(session, tenant_id, role_id)
            permission = self._get_permission(session, payload.permission_slug)
            existing = session.exec(
                select(RolePermission)
                .where(RolePermission.role_id == role.id)
                .where(RolePermission.permission_id == permission.id)
            ).first()
            grant = existing or RolePermission(role_id=role.id, permission_id=permission.id)
            grant.access_level = payload.access_level
            grant.conditions = payload.conditions
            grant.is_active = True
            self._commit(session, grant, "role permission already granted")
            return grant

    def revoke_role_permission(self, tenant_id: str, role_id: str, permission_slug: str) -> RolePermission:
        with self._session() as session:
            role = self._get_scoped_role(session, tenant_id, role_id)
            permission = self._get_permission(session, permission_slug)
            grant = session.exec(
                select(RolePermission)
                .where(RolePermission.role_id == role.id)
                .where(RolePermission.permission_id == permission.id)
            ).first()
            if grant is None:
                raise NotFoundError("role permission not found")
            grant.is_active = False
            self._commit(session, grant, "role permission update conflicts with existing data")
            return grant

    def assign_role(
        self,
        tenant_id: str,
        user_id: str,
        payload: RoleAssignmentCreate,
        *,
        assigned_by: str | None = None,
        allow_system_role: bool = False,
    ) -> UserRoleAssignment:
        with self._session() as session:
            self._get_scoped_user(session, tenant_id, user_id)
            role = self._get_visible_role(session, tenant_id, payload.role_id)
            if role.tenant_id is None and not allow_system_role:
                raise ConflictError("system roles cannot be assigned by a tenant")
            if not role.is_active:
                raise ConflictError("role is inactive")
            if assigned_by is not None:
                assigner = session.get(User, assigned_by)
                if assigner is None or not self.role_graph.can_manage_role(session, assigner, role):
                    raise ForbiddenError("role outranks assigning principal")
            if payload.branch_id is not None:
                self._get_scoped_branch(session, tenant_id, payload.branch_id)
            if payload.expires_at is not None and ensure_utc(payload.expires_at) <= now_utc():
                raise InvalidRuleError("expires_at must be in the future")
            assignment = UserRoleAssignment(
                tenant_id=tenant_id,
                user_id=user_id,
                role_id=role.id,
                branch_id=payload.branch_id,
                assigned_by=assigned_by,
                expires_at=payload.expires_at,
            )
            self._commit(session, assignment, "role assignment conflicts with existing data")
            return assignment

    def list_assignments(self, tenant_id: str, user_id: str) -> list[UserRoleAssignment]:
        with self._session() as session:
            self._get_scoped_user(session, tenant_id, user_id)
            rows = session.exec(
                select(UserRoleAssignment)
                .where(UserRoleAssignment.tenant_id == tenant_id)
                .where(UserRoleAssignment.user_id == user_id)
            ).all()
            return sorted(rows, key=lambda item: item.created_at)

    def deactivate_assignment(self, tenant_id: str, assignment_id: str) -> UserRoleAssignment:
        with self._session() as session:
            assignment = session.get(UserRoleAssignment, assignment_id)
            if assignment is None or assignment.tenant_id != tenant_id:
                raise NotFoundError("role assignment not found")
            assignment.is_active = False
            self._commit(session, assignment, "role assignment update conflicts with existing data")
            return assignment

    def grant_user_permission(
        self,
        tenant_id: str,
        user_id: str,
        payload: UserPermissionGrantCreate,
        *,
        granted_by: str | None = None,
    ) -> UserPermission:
        self._validate_conditions(payload.conditions)
        with self._session() as session:
            self._get_scoped_user(session, tenant_id, user_id)
            permission = self._get_permission(session, payload.permission_slug)
            grant = UserPermission(
                tenant_id=tenant_id,
                user_id=user_id,
                permission_id=permission.id,
                access_level=payload.access_level,
                conditions=payload.conditions,
                expires_at=payload.expires_at,
                granted_by=granted_by,
            )
            self._commit(session, grant, "user permission conflicts with existing data")
            return grant

    def revoke_user_permission(self, tenant_id: str, grant_id: str) -> UserPermission:
        with self._session() as session:
            grant = session.get(UserPermission, grant_id)
            if grant is None or grant.tenant_id != tenant_id:
                raise NotFoundError("user permission not found")
            grant.is_active = False
            self._commit(session, grant, "user permission update conflicts with existing data")
            return grant

    def create_resource_restriction(
        self,
        tenant_id: str,
        payload: ResourceRestrictionCreate,
    ) -> ResourceRestriction:
        self._validate_conditions(payload.conditions)
        if payload.scope == RestrictionScope.BRANCH and payload.branch_id is None:
            raise InvalidRuleError("branch restrictions require branch_id")
        with self._session() as session:
            self._require_tenant(session, tenant_id)
            if payload.branch_id is not None:
                self._get_scoped_branch(session, tenant_id, payload.branch_id)
            restriction = ResourceRestriction(
                tenant_id=tenant_id,
                name=payload.name,
                restriction_type=payload.restriction_type,
                scope=payload.scope,
                branch_id=payload.branch_id,
                resource=payload.resource,
                conditions=payload.conditions,
            )
            self._commit(session, restriction, "restriction conflicts with existing data")
            return restriction

    def set_restriction_active(self, tenant_id: str, restriction_id: str, is_active: bool) -> ResourceRestriction:
        with self._session() as session:
            restriction = session.get(ResourceRestriction, restriction_id)
            if restriction is None or restriction.tenant_id != tenant_id:
                raise NotFoundError("restriction not found")
            restriction.is_active = is_active
            self._commit(session, restriction, "restriction update conflicts with existing data")
            return restriction

    def create_access_policy(self, tenant_id: str, payload: AccessPolicyCreate) -> AccessPolicy:
        self._validate_conditions(payload.conditions)
        with self._session() as session:
            self._require_tenant(session, tenant_id)
            if payload.target_type == PolicyTargetType.USER:
                self._get_scoped_user(session, tenant_id, payload.target_id)
            elif payload.target_type == PolicyTargetType.ROLE:
                self._get_visible_role(session, tenant_id, payload.target_id)
            else:
                self._get_scoped_branch(session, tenant_id, payload.target_id)
            policy = AccessPolicy(
                tenant_id=tenant_id,
                name=payload.name,
                resource=payload.resource,
                action=payload.action,
                target_type=payload.target_type,
                target_id=payload.target_id,
                effect=payload.effect,
                priority=payload.priority,
                conditions=payload.conditions,
            )
            self._commit(session, policy, "access policy conflicts with existing data")
            return policy

    def create_branch_access_rule(self, tenant_id: str, payload: BranchAccessRuleCreate) -> BranchAccessRule:
        with self._session() as session:
            self._require_tenant(session, tenant_id)
            if payload.role_id is not None:
                self._get_visible_role(session, tenant_id, payload.role_id)
            for branch_id in payload.branch_ids:
                self._get_scoped_branch(session, tenant_id, branch_id)
            rule = BranchAccessRule(
                tenant_id=tenant_id,
                name=payload.name,
                resource=payload.resource,
                action=payload.action,
                role_id=payload.role_id,
                branch_ids=sorted(set(payload.branch_ids)),
            )
            self._commit(session, rule, "branch access rule conflicts with existing data")
            return rule

    def find_active_user(self, tenant_id: str, username: str) -> User:
        with self._session() as session:
            user = session.exec(
                select(User).where(User.tenant_id == tenant_id).where(User.username == username)
            ).first()
            if user is None or user.status != PrincipalStatus.ACTIVE:
                raise NotFoundError("user not found")
            return user
