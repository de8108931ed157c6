from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    SYSTEM_OWNER_KEY,
    CatalogStatusRead,
    Permission,
    Role,
    RolePermission,
    Tenant,
)
from app.domain.permissions import (
    PermissionCatalog,
    PermissionSpec,
    RoleTemplate,
    build_default_catalog,
)
from app.infra.db import get_engine

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    pass


class TenantNotFoundError(CatalogError):
    pass


@dataclass
class BootstrapSummary:
    permissions_created: int = 0
    roles_created: int = 0
    grants_created: int = 0


class CatalogService:
    def __init__(self, catalog: PermissionCatalog | None = None) -> None:
        self.catalog = catalog or build_default_catalog()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def list_default_permissions(self) -> list[PermissionSpec]:
        return list(self.catalog.permissions)

    def list_default_role_templates(self) -> list[RoleTemplate]:
        return list(self.catalog.role_templates)

    def _insert_if_absent(self, session: Session, row: Permission | Role | RolePermission) -> bool:
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            # another bootstrap won the race; the caller re-reads the winner
            session.rollback()
            return False
        return True

    def _get_permission(self, session: Session, slug: str) -> Permission | None:
        return session.exec(select(Permission).where(Permission.slug == slug)).first()

    def _upsert_permissions(self, session: Session, summary: BootstrapSummary) -> dict[str, Permission]:
        existing = {item.slug: item for item in session.exec(select(Permission)).all()}
        for definition in self.catalog.permissions:
            if definition.slug in existing:
                continue
            row = Permission(
                slug=definition.slug,
                name=definition.name,
                resource=definition.resource,
                action=definition.action,
                category=definition.category,
                is_system=definition.is_system,
            )
            if self._insert_if_absent(session, row):
                summary.permissions_created += 1
                existing[definition.slug] = row
                continue
            winner = self._get_permission(session, definition.slug)
            if winner is None:
                raise CatalogError(f"permission {definition.slug} could not be created")
            existing[definition.slug] = winner
        return existing

    def _get_role(self, session: Session, owner_key: str, slug: str) -> Role | None:
        statement = select(Role).where(Role.owner_key == owner_key).where(Role.slug == slug)
        return session.exec(statement).first()

    def _ensure_role(
        self,
        session: Session,
        tenant_id: str | None,
        template: RoleTemplate,
        summary: BootstrapSummary,
    ) -> Role:
        owner_key = tenant_id or SYSTEM_OWNER_KEY
        role = self._get_role(session, owner_key, template.slug)
        if role is not None:
            return role
        row = Role(
            tenant_id=tenant_id,
            owner_key=owner_key,
            slug=template.slug,
            name=template.name,
            description=template.description,
            level=template.level,
            scope=template.scope,
            is_system=template.is_system,
        )
        if self._insert_if_absent(session, row):
            summary.roles_created += 1
            return row
        winner = self._get_role(session, owner_key, template.slug)
        if winner is None:
            raise CatalogError(f"role {template.slug} could not be created")
        return winner

    def _ensure_grants(
        self,
        session: Session,
        role: Role,
        permission_ids: Iterable[str],
        summary: BootstrapSummary,
    ) -> None:
        granted = set(
            session.exec(select(RolePermission.permission_id).where(RolePermission.role_id == role.id)).all()
        )
        for permission_id in permission_ids:
            if permission_id in granted:
                continue
            if self._insert_if_absent(session, RolePermission(role_id=role.id, permission_id=permission_id)):
                summary.grants_created += 1
            granted.add(permission_id)

    def _seed_roles(
        self,
        session: Session,
        tenant_id: str | None,
        templates: Iterable[RoleTemplate],
        permissions: dict[str, Permission],
        summary: BootstrapSummary,
    ) -> None:
        for template in templates:
            role = self._ensure_role(session, tenant_id, template, summary)
            missing = [slug for slug in template.permissions if slug not in permissions]
            if missing:
                raise CatalogError(f"role template {template.slug} references unknown permissions: {missing}")
            self._ensure_grants(session, role, [permissions[slug].id for slug in template.permissions], summary)

    def initialize_rbac(self) -> BootstrapSummary:
        summary = BootstrapSummary()
        with self._session() as session:
            permissions = self._upsert_permissions(session, summary)
            self._seed_roles(session, None, self.catalog.system_templates(), permissions, summary)
        logger.info(
            "rbac catalog initialized permissions_created=%s roles_created=%s grants_created=%s",
            summary.permissions_created,
            summary.roles_created,
            summary.grants_created,
        )
        return summary

    def bootstrap_tenant(self, tenant_id: str) -> BootstrapSummary:
        summary = BootstrapSummary()
        with self._session() as session:
            if session.get(Tenant, tenant_id) is None:
                raise TenantNotFoundError("tenant not found")
            permissions = self._upsert_permissions(session, summary)
            self._seed_roles(session, tenant_id, self.catalog.tenant_templates(), permissions, summary)
        logger.info(
            "rbac tenant bootstrapped tenant=%s roles_created=%s grants_created=%s",
            tenant_id,
            summary.roles_created,
            summary.grants_created,
        )
        return summary

    def catalog_status(self) -> CatalogStatusRead:
        with self._session() as session:
            permission_count = session.exec(select(func.count()).select_from(Permission)).one()
            system_roles = session.exec(
                select(func.count()).select_from(Role).where(col(Role.tenant_id).is_(None))
            ).one()
            tenant_roles = session.exec(
                select(func.count()).select_from(Role).where(col(Role.tenant_id).is_not(None))
            ).one()
        expected_system = len(self.catalog.system_templates())
        return CatalogStatusRead(
            permission_count=permission_count,
            system_role_count=system_roles,
            tenant_role_count=tenant_roles,
            initialized=permission_count >= len(self.catalog.permissions) and system_roles >= expected_system,
        )
