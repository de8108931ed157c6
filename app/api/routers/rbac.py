from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.deps import (
    get_access_evaluator,
    get_current_claims,
    raise_for_decision,
    raise_store_unavailable,
    request_context,
    require_access,
)
from app.domain.models import (
    AccessDecision,
    AccessibleBranchesRead,
    AccessPolicyCreate,
    AccessPolicyRead,
    ActiveFlagUpdate,
    BootstrapRead,
    BootstrapRequest,
    BranchAccessRuleCreate,
    BranchAccessRuleRead,
    BranchCreate,
    BranchManagerCreate,
    BranchParentUpdate,
    BranchRead,
    CatalogStatusRead,
    DevTokenRequest,
    PermissionCheck,
    PermissionCheckRequest,
    PermissionRead,
    ResourceRestrictionCreate,
    ResourceRestrictionRead,
    RoleAssignmentCreate,
    RoleAssignmentRead,
    RoleCreate,
    RoleParentUpdate,
    RolePermissionGrantCreate,
    RolePermissionRead,
    RoleRead,
    RoleTemplateRead,
    ScopeTag,
    TenantCreate,
    TenantRead,
    TokenResponse,
    UserAccessInfoRead,
    UserCreate,
    UserPermissionGrantCreate,
    UserPermissionRead,
    UserRead,
    UserStatusUpdate,
)
from app.domain.permissions import (
    PERM_BRANCHES_CREATE,
    PERM_BRANCHES_MANAGE,
    PERM_BRANCHES_READ,
    PERM_ROLES_CREATE,
    PERM_ROLES_READ,
    PERM_SECURITY_MANAGE,
    PERM_SYSTEM_ADMIN,
    PERM_SYSTEM_MONITOR,
    PERM_USERS_CREATE,
    PERM_USERS_MANAGE,
    PERM_USERS_READ,
    PERM_USERS_UPDATE,
)
from app.infra import auth
from app.infra.audit import set_audit_context
from app.services.access_service import AccessEvaluator, AccessStoreError
from app.services.catalog_service import CatalogService, TenantNotFoundError
from app.services.rbac_admin_service import (
    ConflictError,
    ForbiddenError,
    InvalidRuleError,
    NotFoundError,
    RbacAdminError,
    RbacAdminService,
)
from app.services.resource_access_service import ResourceAccessService
from app.services.role_graph_service import RoleHierarchyError

router = APIRouter()


def get_admin_service() -> RbacAdminService:
    return RbacAdminService()


def get_catalog_service() -> CatalogService:
    return CatalogService()


def get_resource_access_service(
    evaluator: Annotated[AccessEvaluator, Depends(get_access_evaluator)],
) -> ResourceAccessService:
    return ResourceAccessService(evaluator)


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Admin = Annotated[RbacAdminService, Depends(get_admin_service)]
Catalog = Annotated[CatalogService, Depends(get_catalog_service)]
Evaluator = Annotated[AccessEvaluator, Depends(get_access_evaluator)]
ResourceAccess = Annotated[ResourceAccessService, Depends(get_resource_access_service)]


def _handle_rbac_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError | TenantNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, InvalidRuleError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, RoleHierarchyError):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="role hierarchy integrity error",
        ) from exc
    raise exc


def _require_role_access(
    request: Request,
    claims: dict[str, Any],
    resource_access: ResourceAccessService,
    role_id: str,
    action: str,
) -> None:
    try:
        decision = resource_access.can_access_resource(
            claims["sub"],
            "role",
            role_id,
            action,
            request_context(request, claims),
        )
    except AccessStoreError as exc:
        raise_store_unavailable(exc)
        raise
    raise_for_decision(decision)


@router.post("/dev-token", response_model=TokenResponse)
def issue_dev_token(payload: DevTokenRequest, service: Admin) -> TokenResponse:
    if not auth.DEV_TOKENS_ENABLED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    try:
        user = service.find_active_user(payload.tenant_id, payload.username)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown principal") from exc
    token = auth.create_access_token(user_id=user.id, tenant_id=user.tenant_id)
    return TokenResponse(access_token=token)


@router.post("/check", response_model=AccessDecision)
def check_permission(
    payload: PermissionCheckRequest,
    request: Request,
    claims: Claims,
    evaluator: Evaluator,
) -> AccessDecision:
    check = PermissionCheck(resource=payload.resource, action=payload.action, resource_id=payload.resource_id)
    try:
        return evaluator.check_permission(claims["sub"], check, request_context(request, claims, payload.branch_id))
    except AccessStoreError as exc:
        raise_store_unavailable(exc)
        raise


@router.get("/resources/{resource_type}/{resource_id}/access", response_model=AccessDecision)
def check_resource_access(
    resource_type: str,
    resource_id: str,
    request: Request,
    claims: Claims,
    resource_access: ResourceAccess,
    action: str = Query(default="read"),
) -> AccessDecision:
    try:
        return resource_access.can_access_resource(
            claims["sub"],
            resource_type,
            resource_id,
            action,
            request_context(request, claims),
        )
    except AccessStoreError as exc:
        raise_store_unavailable(exc)
        raise


@router.get("/branches/accessible", response_model=AccessibleBranchesRead)
def accessible_branches(
    claims: Claims,
    evaluator: Evaluator,
    resource: str = Query(min_length=1),
    scope: ScopeTag | None = Query(default=None),
) -> AccessibleBranchesRead:
    try:
        resolution = evaluator.accessible_branches(claims["sub"], resource, requested_scope=scope)
    except RoleHierarchyError as exc:
        _handle_rbac_error(exc)
        raise
    except AccessStoreError as exc:
        raise_store_unavailable(exc)
        raise
    if resolution is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="principal not active")
    return AccessibleBranchesRead(
        resource=resource,
        scope=resolution.scope,
        branch_ids=sorted(resolution.branch_ids),
        applied_rules=list(resolution.applied_rules),
    )


@router.get("/me/access", response_model=UserAccessInfoRead)
def my_access(claims: Claims, evaluator: Evaluator) -> UserAccessInfoRead:
    try:
        info = evaluator.get_user_access_info(claims["sub"])
    except RoleHierarchyError as exc:
        _handle_rbac_error(exc)
        raise
    except AccessStoreError as exc:
        raise_store_unavailable(exc)
        raise
    if info is None or info.tenant_id != claims["tenant_id"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="principal not found")
    return info


@router.get(
    "/permissions",
    response_model=list[PermissionRead],
    dependencies=[Depends(require_access(PERM_ROLES_READ))],
)
def list_permissions(service: Admin) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in service.list_permissions()]


@router.get(
    "/roles/templates",
    response_model=list[RoleTemplateRead],
    dependencies=[Depends(require_access(PERM_ROLES_READ))],
)
def list_role_templates(catalog: Catalog) -> list[RoleTemplateRead]:
    return [
        RoleTemplateRead(
            slug=item.slug,
            name=item.name,
            description=item.description,
            level=item.level,
            scope=item.scope,
            is_system=item.is_system,
            permissions=list(item.permissions),
        )
        for item in catalog.list_default_role_templates()
    ]


@router.post(
    "/bootstrap",
    response_model=BootstrapRead,
    dependencies=[Depends(require_access(PERM_SYSTEM_ADMIN))],
)
def bootstrap(payload: BootstrapRequest, request: Request, catalog: Catalog) -> BootstrapRead:
    try:
        if payload.tenant_id is None:
            summary = catalog.initialize_rbac()
        else:
            summary = catalog.bootstrap_tenant(payload.tenant_id)
    except TenantNotFoundError as exc:
        _handle_rbac_error(exc)
        raise
    set_audit_context(
        request,
        action="rbac.bootstrap",
        resource="rbac_catalog",
        detail={"what": {"tenant_id": payload.tenant_id}},
    )
    return BootstrapRead(
        permissions_created=summary.permissions_created,
        roles_created=summary.roles_created,
        grants_created=summary.grants_created,
    )


@router.get(
    "/catalog/status",
    response_model=CatalogStatusRead,
    dependencies=[Depends(require_access(PERM_SYSTEM_MONITOR))],
)
def catalog_status(catalog: Catalog) -> CatalogStatusRead:
    return catalog.catalog_status()


@router.post(
    "/tenants",
    response_model=TenantRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_SYSTEM_ADMIN))],
)
def create_tenant(payload: TenantCreate, service: Admin) -> TenantRead:
    try:
        return TenantRead.model_validate(service.create_tenant(payload))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/branches",
    response_model=BranchRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_BRANCHES_CREATE))],
)
def create_branch(payload: BranchCreate, claims: Claims, service: Admin) -> BranchRead:
    try:
        return BranchRead.model_validate(service.create_branch(claims["tenant_id"], payload))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.get(
    "/branches",
    response_model=list[BranchRead],
    dependencies=[Depends(require_access(PERM_BRANCHES_READ))],
)
def list_branches(claims: Claims, service: Admin) -> list[BranchRead]:
    return [BranchRead.model_validate(item) for item in service.list_branches(claims["tenant_id"])]


@router.patch(
    "/branches/{branch_id}/parent",
    response_model=BranchRead,
    dependencies=[Depends(require_access(PERM_BRANCHES_MANAGE))],
)
def update_branch_parent(
    branch_id: str,
    payload: BranchParentUpdate,
    claims: Claims,
    service: Admin,
) -> BranchRead:
    try:
        branch = service.update_branch_parent(claims["tenant_id"], branch_id, payload.parent_id)
        return BranchRead.model_validate(branch)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/branches/{branch_id}/managers",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_access(PERM_BRANCHES_MANAGE))],
)
def add_branch_manager(
    branch_id: str,
    payload: BranchManagerCreate,
    claims: Claims,
    service: Admin,
) -> None:
    try:
        service.add_branch_manager(claims["tenant_id"], branch_id, payload.user_id)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/branch-rules",
    response_model=BranchAccessRuleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_BRANCHES_MANAGE))],
)
def create_branch_rule(payload: BranchAccessRuleCreate, claims: Claims, service: Admin) -> BranchAccessRuleRead:
    try:
        return BranchAccessRuleRead.model_validate(service.create_branch_access_rule(claims["tenant_id"], payload))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_USERS_CREATE))],
)
def create_user(payload: UserCreate, claims: Claims, service: Admin) -> UserRead:
    try:
        return UserRead.model_validate(service.create_user(claims["tenant_id"], payload))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.patch(
    "/users/{user_id}/status",
    response_model=UserRead,
    dependencies=[Depends(require_access(PERM_USERS_UPDATE))],
)
def update_user_status(user_id: str, payload: UserStatusUpdate, claims: Claims, service: Admin) -> UserRead:
    try:
        return UserRead.model_validate(service.set_user_status(claims["tenant_id"], user_id, payload.status))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.get(
    "/users/{user_id}/roles",
    response_model=list[RoleAssignmentRead],
    dependencies=[Depends(require_access(PERM_USERS_READ))],
)
def list_user_roles(user_id: str, claims: Claims, service: Admin) -> list[RoleAssignmentRead]:
    try:
        rows = service.list_assignments(claims["tenant_id"], user_id)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise
    return [RoleAssignmentRead.model_validate(item) for item in rows]


@router.post(
    "/users/{user_id}/roles",
    response_model=RoleAssignmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_USERS_MANAGE))],
)
def assign_role(
    user_id: str,
    payload: RoleAssignmentCreate,
    request: Request,
    claims: Claims,
    service: Admin,
) -> RoleAssignmentRead:
    try:
        assignment = service.assign_role(claims["tenant_id"], user_id, payload, assigned_by=claims["sub"])
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise
    set_audit_context(
        request,
        action="rbac.role.assign",
        resource="user_role_assignment",
        detail={"what": {"user_id": user_id, "role_id": payload.role_id}},
    )
    return RoleAssignmentRead.model_validate(assignment)


@router.delete(
    "/role-assignments/{assignment_id}",
    response_model=RoleAssignmentRead,
    dependencies=[Depends(require_access(PERM_USERS_MANAGE))],
)
def deactivate_assignment(assignment_id: str, claims: Claims, service: Admin) -> RoleAssignmentRead:
    try:
        return RoleAssignmentRead.model_validate(service.deactivate_assignment(claims["tenant_id"], assignment_id))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/users/{user_id}/permissions",
    response_model=UserPermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_USERS_MANAGE))],
)
def grant_user_permission(
    user_id: str,
    payload: UserPermissionGrantCreate,
    claims: Claims,
    service: Admin,
) -> UserPermissionRead:
    try:
        grant = service.grant_user_permission(claims["tenant_id"], user_id, payload, granted_by=claims["sub"])
        return UserPermissionRead.model_validate(grant)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.delete(
    "/user-permissions/{grant_id}",
    response_model=UserPermissionRead,
    dependencies=[Depends(require_access(PERM_USERS_MANAGE))],
)
def revoke_user_permission(grant_id: str, claims: Claims, service: Admin) -> UserPermissionRead:
    try:
        return UserPermissionRead.model_validate(service.revoke_user_permission(claims["tenant_id"], grant_id))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_access(PERM_ROLES_READ))],
)
def list_roles(claims: Claims, service: Admin) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in service.list_roles(claims["tenant_id"])]


@router.post(
    "/roles",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_ROLES_CREATE))],
)
def create_role(payload: RoleCreate, claims: Claims, service: Admin) -> RoleRead:
    try:
        return RoleRead.model_validate(service.create_role(claims["tenant_id"], payload))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.patch("/roles/{role_id}/parent", response_model=RoleRead)
def update_role_parent(
    role_id: str,
    payload: RoleParentUpdate,
    request: Request,
    claims: Claims,
    service: Admin,
    resource_access: ResourceAccess,
) -> RoleRead:
    _require_role_access(request, claims, resource_access, role_id, "update")
    try:
        return RoleRead.model_validate(service.update_role_parent(claims["tenant_id"], role_id, payload.parent_id))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.patch("/roles/{role_id}/active", response_model=RoleRead)
def update_role_active(
    role_id: str,
    payload: ActiveFlagUpdate,
    request: Request,
    claims: Claims,
    service: Admin,
    resource_access: ResourceAccess,
) -> RoleRead:
    _require_role_access(request, claims, resource_access, role_id, "update")
    try:
        return RoleRead.model_validate(service.set_role_active(claims["tenant_id"], role_id, payload.is_active))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/roles/{role_id}/permissions",
    response_model=RolePermissionRead,
    status_code=status.HTTP_201_CREATED,
)
def grant_role_permission(
    role_id: str,
    payload: RolePermissionGrantCreate,
    request: Request,
    claims: Claims,
    service: Admin,
    resource_access: ResourceAccess,
) -> RolePermissionRead:
    _require_role_access(request, claims, resource_access, role_id, "manage")
    try:
        grant = service.grant_role_permission(claims["tenant_id"], role_id, payload)
        return RolePermissionRead.model_validate(grant)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.delete("/roles/{role_id}/permissions/{permission_slug}", response_model=RolePermissionRead)
def revoke_role_permission(
    role_id: str,
    permission_slug: str,
    request: Request,
    claims: Claims,
    service: Admin,
    resource_access: ResourceAccess,
) -> RolePermissionRead:
    _require_role_access(request, claims, resource_access, role_id, "manage")
    try:
        grant = service.revoke_role_permission(claims["tenant_id"], role_id, permission_slug)
        return RolePermissionRead.model_validate(grant)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/restrictions",
    response_model=ResourceRestrictionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_SECURITY_MANAGE))],
)
def create_restriction(
    payload: ResourceRestrictionCreate,
    claims: Claims,
    service: Admin,
) -> ResourceRestrictionRead:
    try:
        restriction = service.create_resource_restriction(claims["tenant_id"], payload)
        return ResourceRestrictionRead.model_validate(restriction)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.patch(
    "/restrictions/{restriction_id}/active",
    response_model=ResourceRestrictionRead,
    dependencies=[Depends(require_access(PERM_SECURITY_MANAGE))],
)
def update_restriction_active(
    restriction_id: str,
    payload: ActiveFlagUpdate,
    claims: Claims,
    service: Admin,
) -> ResourceRestrictionRead:
    try:
        restriction = service.set_restriction_active(claims["tenant_id"], restriction_id, payload.is_active)
        return ResourceRestrictionRead.model_validate(restriction)
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise


@router.post(
    "/policies",
    response_model=AccessPolicyRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_access(PERM_SECURITY_MANAGE))],
)
def create_policy(payload: AccessPolicyCreate, claims: Claims, service: Admin) -> AccessPolicyRead:
    try:
        return AccessPolicyRead.model_validate(service.create_access_policy(claims["tenant_id"], payload))
    except RbacAdminError as exc:
        _handle_rbac_error(exc)
        raise
