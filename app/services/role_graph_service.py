from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session, col, select

from app.domain.models import (
    Permission,
    Role,
    RolePermission,
    User,
    UserPermission,
    UserRoleAssignment,
    ensure_utc,
    now_utc,
)
from app.domain.permissions import PERM_ROLES_MANAGE

logger = logging.getLogger(__name__)


class RoleHierarchyError(Exception):
    def __init__(self, role_id: str, chain: list[str]) -> None:
        super().__init__(f"role parent cycle detected at {role_id}: {' -> '.join(chain)}")
        self.role_id = role_id
        self.chain = chain


@dataclass(frozen=True)
class EffectiveRoles:
    assigned: tuple[Role, ...] = ()
    roles: tuple[Role, ...] = ()
    assignments: tuple[UserRoleAssignment, ...] = ()

    def role_ids(self) -> frozenset[str]:
        return frozenset(role.id for role in self.roles)

    def assigned_slugs(self) -> frozenset[str]:
        return frozenset(role.slug for role in self.assigned)

    def highest_level(self) -> int:
        return max((role.level for role in self.assigned), default=-1)


def is_assignment_live(assignment: UserRoleAssignment, now: datetime) -> bool:
    if not assignment.is_active:
        return False
    return assignment.expires_at is None or ensure_utc(assignment.expires_at) > now


def is_higher_role(role_a: Role, role_b: Role) -> bool:
    return role_a.level > role_b.level


class RoleGraphService:
    def list_assignments(self, session: Session, principal: User) -> list[UserRoleAssignment]:
        statement = (
            select(UserRoleAssignment)
            .where(UserRoleAssignment.tenant_id == principal.tenant_id)
            .where(UserRoleAssignment.user_id == principal.id)
            .where(col(UserRoleAssignment.is_active).is_(True))
        )
        return list(session.exec(statement).all())

    def _role_visible_to(self, role: Role, principal: User) -> bool:
        return role.tenant_id is None or role.tenant_id == principal.tenant_id

    def _ancestor_chain(self, session: Session, role: Role, principal: User) -> list[Role]:
        chain: list[Role] = []
        visited: list[str] = []
        current: Role | None = role
        while current is not None:
            if current.id in visited:
                visited.append(current.id)
                raise RoleHierarchyError(current.id, visited)
            visited.append(current.id)
            if not current.is_active or not self._role_visible_to(current, principal):
                break
            chain.append(current)
            if current.parent_id is None:
                break
            current = session.get(Role, current.parent_id)
        return chain

    def expand_roles(self, session: Session, principal: User, roles: Iterable[Role]) -> list[Role]:
        expanded: dict[str, Role] = {}
        for role in roles:
            try:
                chain = self._ancestor_chain(session, role, principal)
            except RoleHierarchyError as exc:
                logger.error(
                    "role hierarchy integrity error for user %s: %s",
                    principal.id,
                    exc,
                )
                raise
            for item in chain:
                expanded.setdefault(item.id, item)
        return list(expanded.values())

    def resolve(self, session: Session, principal: User, now: datetime | None = None) -> EffectiveRoles:
        current = now or now_utc()
        live = [item for item in self.list_assignments(session, principal) if is_assignment_live(item, current)]
        assigned: dict[str, Role] = {}
        for assignment in live:
            role = session.get(Role, assignment.role_id)
            if role is None or not role.is_active or not self._role_visible_to(role, principal):
                continue
            assigned.setdefault(role.id, role)
        roles = self.expand_roles(session, principal, assigned.values())
        return EffectiveRoles(
            assigned=tuple(assigned.values()),
            roles=tuple(roles),
            assignments=tuple(live),
        )

    def expired_roles(self, session: Session, principal: User, now: datetime | None = None) -> list[Role]:
        current = now or now_utc()
        expired = [
            item
            for item in self.list_assignments(session, principal)
            if item.expires_at is not None and ensure_utc(item.expires_at) <= current
        ]
        roles = [session.get(Role, item.role_id) for item in expired]
        return self.expand_roles(session, principal, [role for role in roles if role is not None])

    def get_effective_roles(self, session: Session, principal: User, now: datetime | None = None) -> list[Role]:
        return list(self.resolve(session, principal, now).roles)

    def grants_for_roles(self, session: Session, role_ids: Iterable[str]) -> list[tuple[RolePermission, Permission]]:
        ids = list(role_ids)
        if not ids:
            return []
        statement = (
            select(RolePermission, Permission)
            .where(RolePermission.permission_id == Permission.id)
            .where(col(RolePermission.role_id).in_(ids))
            .where(col(RolePermission.is_active).is_(True))
        )
        return [(grant, permission) for grant, permission in session.exec(statement).all()]

    def get_effective_permissions(
        self,
        session: Session,
        principal: User,
        now: datetime | None = None,
    ) -> list[Permission]:
        effective = self.resolve(session, principal, now)
        permissions: dict[str, Permission] = {}
        for _grant, permission in self.grants_for_roles(session, effective.role_ids()):
            permissions.setdefault(permission.id, permission)
        return sorted(permissions.values(), key=lambda item: item.slug)

    def held_permission_slugs(self, session: Session, principal: User, now: datetime | None = None) -> set[str]:
        current = now or now_utc()
        slugs = {item.slug for item in self.get_effective_permissions(session, principal, current)}
        statement = (
            select(UserPermission, Permission)
            .where(UserPermission.permission_id == Permission.id)
            .where(UserPermission.user_id == principal.id)
            .where(col(UserPermission.is_active).is_(True))
        )
        for grant, permission in session.exec(statement).all():
            if grant.expires_at is None or ensure_utc(grant.expires_at) > current:
                slugs.add(permission.slug)
        return slugs

    def can_manage_role(
        self,
        session: Session,
        principal: User,
        target: Role,
        now: datetime | None = None,
    ) -> bool:
        current = now or now_utc()
        effective = self.resolve(session, principal, current)
        if effective.highest_level() > target.level:
            return True
        return PERM_ROLES_MANAGE in self.held_permission_slugs(session, principal, current)

    def creates_cycle(self, session: Session, role_id: str, parent_id: str | None) -> bool:
        visited: set[str] = set()
        current_id = parent_id
        while current_id is not None:
            if current_id == role_id or current_id in visited:
                return True
            visited.add(current_id)
            parent = session.get(Role, current_id)
            if parent is None:
                return False
            current_id = parent.parent_id
        return False
