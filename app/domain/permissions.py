from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from app.domain.models import ScopeTag

ACTION_READ = "read"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_MANAGE = "manage"
STANDARD_ACTIONS = (ACTION_READ, ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE, ACTION_MANAGE)
ROLE_MUTATING_ACTIONS = frozenset({ACTION_UPDATE, ACTION_DELETE, ACTION_MANAGE, "assign"})

PERM_USERS_READ = "users.read"
PERM_USERS_CREATE = "users.create"
PERM_USERS_UPDATE = "users.update"
PERM_USERS_MANAGE = "users.manage"
PERM_BRANCHES_READ = "branches.read"
PERM_BRANCHES_CREATE = "branches.create"
PERM_BRANCHES_MANAGE = "branches.manage"
PERM_ROLES_READ = "roles.read"
PERM_ROLES_CREATE = "roles.create"
PERM_ROLES_MANAGE = "roles.manage"
PERM_SECURITY_MANAGE = "security.manage"
PERM_SYSTEM_ADMIN = "system.admin"
PERM_SYSTEM_MONITOR = "system.monitor"

SCOPE_WIDTH: Mapping[ScopeTag, int] = MappingProxyType(
    {
        ScopeTag.GLOBAL: 5,
        ScopeTag.AGENCY: 4,
        ScopeTag.BRANCH: 3,
        ScopeTag.ASSIGNED: 2,
        ScopeTag.OWN: 1,
    }
)

DEFAULT_FIELD_KEY = "*"


def permission_slug(resource: str, action: str) -> str:
    return f"{resource}.{action}"


def widest_scope(scopes: Iterable[ScopeTag]) -> ScopeTag | None:
    ordered = sorted(scopes, key=lambda item: SCOPE_WIDTH[item], reverse=True)
    return ordered[0] if ordered else None


def narrower_scope(left: ScopeTag, right: ScopeTag) -> ScopeTag:
    return left if SCOPE_WIDTH[left] <= SCOPE_WIDTH[right] else right


@dataclass(frozen=True)
class PermissionSpec:
    slug: str
    name: str
    resource: str
    action: str
    category: str
    is_system: bool = False


@dataclass(frozen=True)
class RoleTemplate:
    slug: str
    name: str
    description: str
    level: int
    scope: ScopeTag
    permissions: tuple[str, ...]
    is_system: bool = False


@dataclass(frozen=True)
class PermissionCatalog:
    permissions: tuple[PermissionSpec, ...]
    role_templates: tuple[RoleTemplate, ...]
    resource_scopes: Mapping[str, Mapping[str, ScopeTag]] = field(default_factory=dict)
    field_categories: Mapping[str, Mapping[str, tuple[str, ...]]] = field(default_factory=dict)

    def permission_slugs(self) -> list[str]:
        return [item.slug for item in self.permissions]

    def system_templates(self) -> list[RoleTemplate]:
        return [item for item in self.role_templates if item.is_system]

    def tenant_templates(self) -> list[RoleTemplate]:
        return [item for item in self.role_templates if not item.is_system]

    def scope_for(self, resource: str, role_slug: str, role_scope: ScopeTag) -> ScopeTag:
        by_role = self.resource_scopes.get(resource, {})
        return by_role.get(role_slug, role_scope)

    def field_categories_for(self, resource: str, role_slugs: Iterable[str]) -> list[str]:
        table = self.field_categories.get(resource)
        if table is None:
            return ["basic"]
        visible: set[str] = set()
        matched = False
        for slug in role_slugs:
            categories = table.get(slug)
            if categories is None:
                continue
            matched = True
            visible.update(categories)
        if not matched:
            visible.update(table.get(DEFAULT_FIELD_KEY, ()))
        return sorted(visible)


def _crud(resource: str, category: str, actions: Iterable[str] = STANDARD_ACTIONS) -> list[PermissionSpec]:
    return [
        PermissionSpec(
            slug=permission_slug(resource, action),
            name=f"{action.capitalize()} {resource.capitalize()}",
            resource=resource,
            action=action,
            category=category,
        )
        for action in actions
    ]


def _system(resource: str, actions: Iterable[str]) -> list[PermissionSpec]:
    return [
        PermissionSpec(
            slug=permission_slug(resource, action),
            name=f"{action.capitalize()} {resource.capitalize()}",
            resource=resource,
            action=action,
            category="SYSTEM",
            is_system=True,
        )
        for action in actions
    ]


def default_permissions() -> tuple[PermissionSpec, ...]:
    items: list[PermissionSpec] = []
    items += _crud("users", "CORE")
    items += _crud("students", "CRM")
    items += _crud("branches", "CORE")
    items += _crud("applications", "CRM")
    items += _crud("invoices", "ACCOUNTING")
    items += _crud("transactions", "ACCOUNTING")
    items += _crud("tasks", "CRM")
    items += _crud("documents", "CRM")
    items += _crud("communications", "COMMUNICATIONS")
    items += _crud("events", "CRM")
    items += _crud("analytics", "ANALYTICS", (ACTION_READ, ACTION_MANAGE))
    items += _crud("settings", "ADMIN", (ACTION_READ, ACTION_UPDATE, ACTION_MANAGE))
    items += _crud("roles", "ADMIN")
    items += _system("system", ("admin", "monitor", "audit"))
    items += _system("agencies", STANDARD_ACTIONS)
    items += _system("billing", (ACTION_READ, ACTION_MANAGE))
    items += _crud("security", "SECURITY", (ACTION_READ, ACTION_MANAGE))
    return tuple(items)


_BRANCH_MANAGER_PERMISSIONS = (
    "users.read", "users.create", "users.update",
    "students.read", "students.create", "students.update", "students.manage",
    "applications.read", "applications.create", "applications.update", "applications.manage",
    "invoices.read", "invoices.create", "invoices.update",
    "transactions.read", "transactions.create", "transactions.update",
    "tasks.read", "tasks.create", "tasks.update", "tasks.manage",
    "documents.read", "documents.create", "documents.update", "documents.manage",
    "communications.read", "communications.create", "communications.update", "communications.manage",
    "events.read", "events.create", "events.update", "events.manage",
    "analytics.read",
    "settings.read",
)

_SENIOR_CONSULTANT_PERMISSIONS = (
    "users.read",
    "students.read", "students.create", "students.update", "students.manage",
    "applications.read", "applications.create", "applications.update", "applications.manage",
    "invoices.read", "invoices.create", "invoices.update",
    "transactions.read", "transactions.create", "transactions.update",
    "tasks.read", "tasks.create", "tasks.update", "tasks.manage",
    "documents.read", "documents.create", "documents.update", "documents.manage",
    "communications.read", "communications.create", "communications.update", "communications.manage",
    "events.read", "events.create", "events.update",
    "analytics.read",
)

_CONSULTANT_PERMISSIONS = (
    "users.read",
    "students.read", "students.create", "students.update",
    "applications.read", "applications.create", "applications.update",
    "invoices.read", "invoices.create",
    "transactions.read", "transactions.create",
    "tasks.read", "tasks.create", "tasks.update",
    "documents.read", "documents.create", "documents.update",
    "communications.read", "communications.create", "communications.update",
    "events.read", "events.create",
)

_SUPPORT_STAFF_PERMISSIONS = (
    "users.read",
    "students.read", "students.update",
    "applications.read", "applications.update",
    "tasks.read", "tasks.update",
    "documents.read", "documents.update",
    "communications.read", "communications.create", "communications.update",
)


def default_role_templates(permissions: tuple[PermissionSpec, ...]) -> tuple[RoleTemplate, ...]:
    agency_admin_permissions = tuple(
        item.slug for item in permissions if not item.is_system and item.resource != "roles"
    )
    return (
        RoleTemplate(
            slug="super_admin",
            name="Super Admin",
            description="system administrator with access to every agency",
            level=100,
            scope=ScopeTag.GLOBAL,
            permissions=tuple(item.slug for item in permissions),
            is_system=True,
        ),
        RoleTemplate(
            slug="agency_admin",
            name="Agency Admin",
            description="agency administrator with access to every branch",
            level=90,
            scope=ScopeTag.AGENCY,
            permissions=agency_admin_permissions,
        ),
        RoleTemplate(
            slug="branch_manager",
            name="Branch Manager",
            description="manages one or more branches",
            level=80,
            scope=ScopeTag.BRANCH,
            permissions=_BRANCH_MANAGER_PERMISSIONS,
        ),
        RoleTemplate(
            slug="senior_consultant",
            name="Senior Consultant",
            description="consultant with branch-wide case access",
            level=70,
            scope=ScopeTag.BRANCH,
            permissions=_SENIOR_CONSULTANT_PERMISSIONS,
        ),
        RoleTemplate(
            slug="consultant",
            name="Consultant",
            description="works the students and applications assigned to them",
            level=60,
            scope=ScopeTag.ASSIGNED,
            permissions=_CONSULTANT_PERMISSIONS,
        ),
        RoleTemplate(
            slug="support_staff",
            name="Support Staff",
            description="limited access to assigned work",
            level=50,
            scope=ScopeTag.ASSIGNED,
            permissions=_SUPPORT_STAFF_PERMISSIONS,
        ),
    )


def _case_scopes() -> dict[str, ScopeTag]:
    return {
        "super_admin": ScopeTag.GLOBAL,
        "agency_admin": ScopeTag.AGENCY,
        "branch_manager": ScopeTag.BRANCH,
        "senior_consultant": ScopeTag.BRANCH,
        "consultant": ScopeTag.ASSIGNED,
        "support_staff": ScopeTag.ASSIGNED,
    }


def _branch_record_scopes() -> dict[str, ScopeTag]:
    return {
        "super_admin": ScopeTag.GLOBAL,
        "agency_admin": ScopeTag.AGENCY,
        "branch_manager": ScopeTag.BRANCH,
        "senior_consultant": ScopeTag.BRANCH,
        "consultant": ScopeTag.BRANCH,
        "support_staff": ScopeTag.BRANCH,
    }


def default_resource_scopes() -> dict[str, Mapping[str, ScopeTag]]:
    scopes: dict[str, Mapping[str, ScopeTag]] = {}
    for resource in ("students", "applications", "tasks"):
        scopes[resource] = MappingProxyType(_case_scopes())
    for resource in ("invoices", "transactions", "documents", "events"):
        scopes[resource] = MappingProxyType(_branch_record_scopes())
    return scopes


def default_field_categories() -> dict[str, Mapping[str, tuple[str, ...]]]:
    full_student = ("personal", "academic", "financial", "contact")
    full_application = ("basic", "detailed", "financial", "documents")
    return {
        "students": MappingProxyType(
            {
                "super_admin": full_student,
                "agency_admin": full_student,
                "branch_manager": full_student,
                "senior_consultant": ("personal", "academic", "contact"),
                "consultant": ("personal", "academic"),
                "support_staff": ("personal", "contact"),
                DEFAULT_FIELD_KEY: ("personal",),
            }
        ),
        "users": MappingProxyType(
            {
                "super_admin": ("basic", "personal", "sensitive", "roles"),
                "agency_admin": ("basic", "personal", "sensitive", "roles"),
                "branch_manager": ("basic", "personal"),
                DEFAULT_FIELD_KEY: ("basic",),
            }
        ),
        "applications": MappingProxyType(
            {
                "super_admin": full_application,
                "agency_admin": full_application,
                "branch_manager": full_application,
                "senior_consultant": ("basic", "detailed", "documents"),
                "consultant": ("basic", "detailed", "documents"),
                "support_staff": ("basic",),
                DEFAULT_FIELD_KEY: ("basic",),
            }
        ),
    }


def build_default_catalog() -> PermissionCatalog:
    permissions = default_permissions()
    return PermissionCatalog(
        permissions=permissions,
        role_templates=default_role_templates(permissions),
        resource_scopes=MappingProxyType(default_resource_scopes()),
        field_categories=MappingProxyType(default_field_categories()),
    )
