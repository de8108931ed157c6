from __future__ import annotations

from dataclasses import dataclass

from sqlmodel import Session, col, select

from app.domain.models import (
    Branch,
    BranchAccessRule,
    BranchManager,
    Role,
    ScopeTag,
    User,
)
from app.domain.permissions import (
    PermissionCatalog,
    build_default_catalog,
    narrower_scope,
    widest_scope,
)
from app.services.role_graph_service import EffectiveRoles, RoleGraphService

WILDCARD = "*"


@dataclass(frozen=True)
class ScopeResolution:
    scope: ScopeTag | None
    branch_ids: frozenset[str] = frozenset()
    applied_rules: tuple[str, ...] = ()

    @property
    def narrowed(self) -> bool:
        return bool(self.applied_rules)


class ScopeResolverService:
    def __init__(
        self,
        catalog: PermissionCatalog | None = None,
        role_graph: RoleGraphService | None = None,
    ) -> None:
        self.catalog = catalog or build_default_catalog()
        self.role_graph = role_graph or RoleGraphService()

    def role_scope(self, role: Role, resource_type: str) -> ScopeTag:
        scope = self.catalog.scope_for(resource_type, role.slug, role.scope)
        if scope == ScopeTag.GLOBAL and role.tenant_id is not None:
            return ScopeTag.AGENCY
        return scope

    def _active_branch_ids(self, session: Session, tenant_id: str | None) -> set[str]:
        statement = select(Branch.id).where(col(Branch.is_active).is_(True))
        if tenant_id is not None:
            statement = statement.where(Branch.tenant_id == tenant_id)
        return set(session.exec(statement).all())

    def _with_descendants(self, session: Session, tenant_id: str, seeds: set[str]) -> set[str]:
        reached = set(seeds)
        frontier = set(seeds)
        while frontier:
            children = set(
                session.exec(
                    select(Branch.id)
                    .where(Branch.tenant_id == tenant_id)
                    .where(col(Branch.parent_id).in_(sorted(frontier)))
                    .where(col(Branch.is_active).is_(True))
                ).all()
            )
            frontier = children - reached
            reached |= frontier
        return reached

    def _branch_seeds(
        self,
        session: Session,
        principal: User,
        resource_type: str,
        effective: EffectiveRoles,
    ) -> set[str]:
        seeds: set[str] = set()
        if principal.branch_id is not None:
            seeds.add(principal.branch_id)
        managed = session.exec(
            select(BranchManager.branch_id)
            .where(BranchManager.tenant_id == principal.tenant_id)
            .where(BranchManager.user_id == principal.id)
        ).all()
        seeds.update(managed)
        for role in effective.assigned:
            if role.branch_id is not None and self.role_scope(role, resource_type) == ScopeTag.BRANCH:
                seeds.add(role.branch_id)
        for assignment in effective.assignments:
            if assignment.branch_id is not None:
                seeds.add(assignment.branch_id)
        active = self._active_branch_ids(session, principal.tenant_id)
        return seeds & active

    def _expand(
        self,
        session: Session,
        principal: User,
        scope: ScopeTag,
        resource_type: str,
        effective: EffectiveRoles,
    ) -> set[str]:
        if scope == ScopeTag.GLOBAL:
            return self._active_branch_ids(session, None)
        if scope == ScopeTag.AGENCY:
            return self._active_branch_ids(session, principal.tenant_id)
        if scope == ScopeTag.BRANCH:
            seeds = self._branch_seeds(session, principal, resource_type, effective)
            return self._with_descendants(session, principal.tenant_id, seeds)
        if principal.branch_id is None:
            return set()
        return {principal.branch_id} & self._active_branch_ids(session, principal.tenant_id)

    def applicable_rules(
        self,
        session: Session,
        principal: User,
        resource_type: str,
        action: str | None,
        role_ids: set[str],
    ) -> list[BranchAccessRule]:
        rules = session.exec(
            select(BranchAccessRule)
            .where(BranchAccessRule.tenant_id == principal.tenant_id)
            .where(col(BranchAccessRule.resource).in_([resource_type, WILDCARD]))
            .where(col(BranchAccessRule.is_active).is_(True))
        ).all()
        matched: list[BranchAccessRule] = []
        for rule in rules:
            if rule.action != WILDCARD and rule.action != action:
                continue
            if rule.role_id is not None and rule.role_id not in role_ids:
                continue
            matched.append(rule)
        return sorted(matched, key=lambda item: (item.name, item.id))

    def resolve(
        self,
        session: Session,
        principal: User,
        resource_type: str,
        *,
        action: str | None = None,
        requested_scope: ScopeTag | None = None,
        effective: EffectiveRoles | None = None,
    ) -> ScopeResolution:
        roles = effective if effective is not None else self.role_graph.resolve(session, principal)
        scoped = [(role, self.role_scope(role, resource_type)) for role in roles.assigned]
        widest = widest_scope(tag for _role, tag in scoped) if scoped else ScopeTag.OWN
        if widest is None:
            return ScopeResolution(scope=None)
        scope = widest if requested_scope is None else narrower_scope(widest, requested_scope)

        rules = self.applicable_rules(session, principal, resource_type, action, {role.id for role, _tag in scoped})
        expanded: dict[ScopeTag, set[str]] = {}

        def expand(tag: ScopeTag) -> set[str]:
            if tag not in expanded:
                expanded[tag] = self._expand(session, principal, tag, resource_type, roles)
            return expanded[tag]

        applied: list[str] = []
        if not scoped:
            branch_ids = set(expand(scope))
        else:
            # a role-bound rule narrows only the branches its own role contributes
            branch_ids = set()
            bound_applied: list[str] = []
            for role, tag in scoped:
                role_tag = tag if requested_scope is None else narrower_scope(tag, requested_scope)
                contributed = set(expand(role_tag))
                for rule in rules:
                    if rule.role_id == role.id:
                        contributed &= set(rule.branch_ids)
                        bound_applied.append(f"branch_rule:{rule.name}")
                branch_ids |= contributed
            if branch_ids != expand(scope):
                applied.extend(bound_applied)
        for rule in rules:
            if rule.role_id is None:
                branch_ids &= set(rule.branch_ids)
                applied.append(f"branch_rule:{rule.name}")
        return ScopeResolution(
            scope=scope,
            branch_ids=frozenset(branch_ids),
            applied_rules=tuple(applied),
        )

    def resolve_accessible_branches(
        self,
        session: Session,
        principal: User,
        resource_type: str,
        requested_scope: ScopeTag | None = None,
    ) -> frozenset[str]:
        resolution = self.resolve(
            session,
            principal,
            resource_type,
            requested_scope=requested_scope,
        )
        return resolution.branch_ids
