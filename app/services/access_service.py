from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.conditions import ConditionContext, ConditionError, evaluate_conditions
from app.domain.models import (
    AccessDecision,
    AccessPolicy,
    AccessResult,
    Permission,
    PermissionCheck,
    PolicyEffect,
    PolicyTargetType,
    PrincipalStatus,
    RequestContext,
    ResourceRestriction,
    RestrictionScope,
    ScopeTag,
    User,
    UserAccessInfoRead,
    UserPermission,
    ensure_utc,
    now_utc,
)
from app.domain.permissions import PermissionCatalog, build_default_catalog, permission_slug
from app.infra.audit import AccessAuditEntry, AccessAuditLogger
from app.infra.db import get_engine
from app.services.query_scope import build_data_filters
from app.services.role_graph_service import EffectiveRoles, RoleGraphService, RoleHierarchyError
from app.services.scope_service import ScopeResolution, ScopeResolverService

logger = logging.getLogger(__name__)

REASON_ALLOWED = "access granted"
REASON_NOT_FOUND = "principal not found"
REASON_INACTIVE = "principal inactive"
REASON_PENDING = "principal pending activation"
REASON_TENANT_MISMATCH = "tenant mismatch"
REASON_HIERARCHY = "role hierarchy integrity error"
REASON_GRANT_EXPIRED = "permission grant expired"
REASON_ASSIGNMENT_EXPIRED = "role assignment expired"
REASON_INSUFFICIENT = "insufficient permissions"
WILDCARD = "*"


class AccessStoreError(Exception):
    pass


@dataclass(frozen=True)
class Evaluation:
    decision: AccessDecision
    principal: User | None = None
    effective: EffectiveRoles = field(default_factory=EffectiveRoles)


class AccessEvaluator:
    def __init__(
        self,
        catalog: PermissionCatalog | None = None,
        audit_logger: AccessAuditLogger | None = None,
        clock: Callable[[], datetime] = now_utc,
        role_graph: RoleGraphService | None = None,
        scope_resolver: ScopeResolverService | None = None,
    ) -> None:
        self.catalog = catalog or build_default_catalog()
        self.audit_logger = audit_logger or AccessAuditLogger()
        self.clock = clock
        self.role_graph = role_graph or RoleGraphService()
        self.scope_resolver = scope_resolver or ScopeResolverService(self.catalog, self.role_graph)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def check_permission(
        self,
        principal_id: str,
        check: PermissionCheck,
        context: RequestContext | None = None,
    ) -> AccessDecision:
        started = time.perf_counter()
        request = context or RequestContext()
        try:
            with self._session() as session:
                evaluation = self.evaluate(session, principal_id, check, request)
        except SQLAlchemyError as exc:
            logger.exception("access store failure while checking %s for %s", check, principal_id)
            raise AccessStoreError("access store unavailable") from exc
        tenant_id = evaluation.principal.tenant_id if evaluation.principal is not None else request.agency_id
        self.audit(evaluation.decision, tenant_id, request, started)
        return evaluation.decision

    def audit(
        self,
        decision: AccessDecision,
        tenant_id: str | None,
        context: RequestContext,
        started: float,
    ) -> None:
        entry = AccessAuditEntry(
            user_id=decision.principal_id,
            tenant_id=tenant_id,
            resource=decision.resource,
            action=decision.action,
            resource_id=decision.resource_id,
            result=decision.result,
            reason=decision.reason,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            context={
                "request_branch_id": context.branch_id,
                "branch_scope": decision.branch_scope,
                "accessible_branches": decision.accessible_branches,
                "applied_rules": decision.applied_rules,
                "field_permissions": decision.field_permissions,
                "data_filters": decision.data_filters,
            },
        )
        self.audit_logger.log_access(entry)

    def evaluate(
        self,
        session: Session,
        principal_id: str,
        check: PermissionCheck,
        context: RequestContext,
    ) -> Evaluation:
        now = self.clock()
        principal = session.get(User, principal_id)
        if principal is None:
            return Evaluation(self.deny(principal_id, check, REASON_NOT_FOUND))
        if principal.status == PrincipalStatus.PENDING:
            decision = self.deny(principal_id, check, REASON_PENDING, AccessResult.PENDING_APPROVAL)
            return Evaluation(decision, principal)
        if principal.status != PrincipalStatus.ACTIVE:
            return Evaluation(self.deny(principal_id, check, REASON_INACTIVE), principal)
        if context.agency_id is not None and context.agency_id != principal.tenant_id:
            return Evaluation(self.deny(principal_id, check, REASON_TENANT_MISMATCH), principal)

        branch_id = context.branch_id or principal.branch_id
        ctx = ConditionContext(
            user_id=principal.id,
            tenant_id=principal.tenant_id,
            branch_id=branch_id,
            resource_id=check.resource_id,
            ip_address=context.ip_address,
            now=now,
        )

        restrictions = self._restrictions(session, principal, branch_id)
        system_hit = self._first_matching_restriction(
            [item for item in restrictions if item.resource is None],
            ctx,
        )
        if system_hit is not None:
            return Evaluation(self._restricted(principal_id, check, system_hit), principal)

        try:
            effective = self.role_graph.resolve(session, principal, now)
        except RoleHierarchyError:
            return Evaluation(self.deny(principal_id, check, REASON_HIERARCHY), principal)
        ctx = replace(ctx, roles=frozenset(role.slug for role in effective.roles))

        applied: list[str] = []
        granted = False
        policy = self._first_matching_policy(session, principal, check, ctx, effective)
        if policy is not None:
            applied.append(f"policy:{policy.name}")
            if policy.effect == PolicyEffect.DENY:
                decision = self.deny(principal_id, check, f"policy {policy.name} denied access")
                decision.applied_rules = applied
                return Evaluation(decision, principal, effective)
            granted = True

        slug = permission_slug(check.resource, check.action)
        grant_expired = False
        if not granted:
            rule, grant_expired = self._user_grant_rule(session, principal, slug, ctx, now)
            if rule is not None:
                applied.append(rule)
                granted = True
        if not granted:
            rule = self._role_grant_rule(session, effective, slug, ctx)
            if rule is not None:
                applied.append(rule)
                granted = True

        if not granted:
            if grant_expired:
                decision = self.deny(principal_id, check, REASON_GRANT_EXPIRED, AccessResult.EXPIRED)
            elif self._granted_by_expired_assignment(session, principal, slug, ctx, now):
                decision = self.deny(principal_id, check, REASON_ASSIGNMENT_EXPIRED, AccessResult.EXPIRED)
            else:
                decision = self.deny(principal_id, check, REASON_INSUFFICIENT)
            return Evaluation(decision, principal, effective)

        resource_hit = self._first_matching_restriction(
            [item for item in restrictions if item.resource == check.resource],
            ctx,
        )
        if resource_hit is not None:
            decision = self._restricted(principal_id, check, resource_hit)
            decision.applied_rules = [*applied, f"restriction:{resource_hit.name}"]
            return Evaluation(decision, principal, effective)

        resolution = self.scope_resolver.resolve(
            session,
            principal,
            check.resource,
            action=check.action,
            effective=effective,
        )
        decision = self._allow(principal, check, resolution, effective, applied)
        return Evaluation(decision, principal, effective)

    def deny(
        self,
        principal_id: str,
        check: PermissionCheck,
        reason: str,
        result: AccessResult = AccessResult.DENIED,
    ) -> AccessDecision:
        return AccessDecision(
            allowed=False,
            result=result,
            reason=reason,
            principal_id=principal_id,
            resource=check.resource,
            action=check.action,
            resource_id=check.resource_id,
        )

    def _restricted(
        self,
        principal_id: str,
        check: PermissionCheck,
        restriction: ResourceRestriction,
    ) -> AccessDecision:
        decision = self.deny(
            principal_id,
            check,
            f"restricted: {restriction.name}",
            AccessResult.RESTRICTED,
        )
        decision.applied_rules = [f"restriction:{restriction.name}"]
        return decision

    def _allow(
        self,
        principal: User,
        check: PermissionCheck,
        resolution: ScopeResolution,
        effective: EffectiveRoles,
        applied: list[str],
    ) -> AccessDecision:
        role_slugs = [role.slug for role in effective.roles]
        return AccessDecision(
            allowed=True,
            result=AccessResult.ALLOWED,
            reason=REASON_ALLOWED,
            principal_id=principal.id,
            resource=check.resource,
            action=check.action,
            resource_id=check.resource_id,
            branch_scope=resolution.scope,
            accessible_branches=sorted(resolution.branch_ids),
            applied_rules=[*applied, *resolution.applied_rules],
            field_permissions={
                check.resource: self.catalog.field_categories_for(check.resource, role_slugs),
            },
            data_filters=build_data_filters(principal, resolution),
        )

    def _conditions_hold(self, conditions: dict[str, Any], ctx: ConditionContext, label: str) -> bool:
        try:
            return evaluate_conditions(conditions, ctx)
        except ConditionError as exc:
            logger.warning("ignoring %s with malformed conditions: %s", label, exc)
            return False

    def _restrictions(
        self,
        session: Session,
        principal: User,
        branch_id: str | None,
    ) -> list[ResourceRestriction]:
        rows = session.exec(
            select(ResourceRestriction)
            .where(col(ResourceRestriction.is_active).is_(True))
            .where(
                (col(ResourceRestriction.tenant_id).is_(None))
                | (ResourceRestriction.tenant_id == principal.tenant_id)
            )
        ).all()
        applicable = [
            item for item in rows if item.scope != RestrictionScope.BRANCH or item.branch_id == branch_id
        ]
        return sorted(applicable, key=lambda item: (item.created_at, item.id))

    def _first_matching_restriction(
        self,
        restrictions: Iterable[ResourceRestriction],
        ctx: ConditionContext,
    ) -> ResourceRestriction | None:
        for restriction in restrictions:
            try:
                matched = evaluate_conditions(restriction.conditions, ctx)
            except ConditionError as exc:
                logger.warning("restriction %s has malformed conditions, enforcing: %s", restriction.name, exc)
                matched = True
            if matched:
                return restriction
        return None

    def _policy_targets(self, policy: AccessPolicy, ctx: ConditionContext, effective: EffectiveRoles) -> bool:
        if policy.target_type == PolicyTargetType.USER:
            return policy.target_id == ctx.user_id
        if policy.target_type == PolicyTargetType.ROLE:
            return policy.target_id in effective.role_ids()
        return policy.target_id == ctx.branch_id

    def _first_matching_policy(
        self,
        session: Session,
        principal: User,
        check: PermissionCheck,
        ctx: ConditionContext,
        effective: EffectiveRoles,
    ) -> AccessPolicy | None:
        policies = session.exec(
            select(AccessPolicy)
            .where(AccessPolicy.tenant_id == principal.tenant_id)
            .where(col(AccessPolicy.is_active).is_(True))
            .where(col(AccessPolicy.resource).in_([check.resource, WILDCARD]))
            .where(col(AccessPolicy.action).in_([check.action, WILDCARD]))
        ).all()
        ordered = sorted(policies, key=lambda item: (-item.priority, item.created_at, item.id))
        for policy in ordered:
            if not self._policy_targets(policy, ctx, effective):
                continue
            if self._conditions_hold(policy.conditions, ctx, f"policy {policy.name}"):
                return policy
        return None

    def _user_grant_rule(
        self,
        session: Session,
        principal: User,
        slug: str,
        ctx: ConditionContext,
        now: datetime,
    ) -> tuple[str | None, bool]:
        rows = session.exec(
            select(UserPermission)
            .join(Permission, col(Permission.id) == col(UserPermission.permission_id))
            .where(UserPermission.user_id == principal.id)
            .where(UserPermission.tenant_id == principal.tenant_id)
            .where(col(UserPermission.is_active).is_(True))
            .where(Permission.slug == slug)
        ).all()
        expired = False
        for grant in rows:
            if grant.expires_at is not None and ensure_utc(grant.expires_at) <= now:
                expired = True
                continue
            if self._conditions_hold(grant.conditions, ctx, f"user grant {grant.id}"):
                return f"user_grant:{slug}", expired
        return None, expired

    def _role_grant_rule(
        self,
        session: Session,
        effective: EffectiveRoles,
        slug: str,
        ctx: ConditionContext,
    ) -> str | None:
        roles_by_id = {role.id: role for role in effective.roles}
        for grant, permission in self.role_graph.grants_for_roles(session, roles_by_id):
            if permission.slug != slug:
                continue
            if self._conditions_hold(grant.conditions, ctx, f"role grant {grant.id}"):
                return f"role_grant:{roles_by_id[grant.role_id].slug}:{slug}"
        return None

    def _granted_by_expired_assignment(
        self,
        session: Session,
        principal: User,
        slug: str,
        ctx: ConditionContext,
        now: datetime,
    ) -> bool:
        try:
            roles = self.role_graph.expired_roles(session, principal, now)
        except RoleHierarchyError:
            return False
        expired = EffectiveRoles(roles=tuple(roles))
        return self._role_grant_rule(session, expired, slug, ctx) is not None

    def get_user_access_info(self, principal_id: str) -> UserAccessInfoRead | None:
        now = self.clock()
        try:
            with self._session() as session:
                principal = session.get(User, principal_id)
                if principal is None:
                    return None
                effective = self.role_graph.resolve(session, principal, now)
                held = self.role_graph.held_permission_slugs(session, principal, now)
                resources = sorted({item.resource for item in self.catalog.permissions if not item.is_system})
                scopes = {
                    resource: self.scope_resolver.resolve(
                        session,
                        principal,
                        resource,
                        effective=effective,
                    ).scope
                    for resource in resources
                }
        except SQLAlchemyError as exc:
            logger.exception("access store failure while describing access for %s", principal_id)
            raise AccessStoreError("access store unavailable") from exc

        role_slugs = [role.slug for role in effective.roles]
        return UserAccessInfoRead(
            user_id=principal.id,
            tenant_id=principal.tenant_id,
            branch_id=principal.branch_id,
            status=principal.status,
            roles=sorted(role_slugs),
            permissions=sorted(held),
            scopes=scopes,
            field_permissions={
                resource: self.catalog.field_categories_for(resource, role_slugs)
                for resource in sorted(self.catalog.field_categories)
            },
        )

    def accessible_branches(
        self,
        principal_id: str,
        resource_type: str,
        requested_scope: ScopeTag | None = None,
    ) -> ScopeResolution | None:
        try:
            with self._session() as session:
                principal = session.get(User, principal_id)
                if principal is None or principal.status != PrincipalStatus.ACTIVE:
                    return None
                return self.scope_resolver.resolve(
                    session,
                    principal,
                    resource_type,
                    requested_scope=requested_scope,
                    effective=self.role_graph.resolve(session, principal, self.clock()),
                )
        except SQLAlchemyError as exc:
            logger.exception("access store failure while resolving branches for %s", principal_id)
            raise AccessStoreError("access store unavailable") from exc
