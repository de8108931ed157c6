from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from app.domain.models import (
    AccessResult,
    PermissionCheck,
    Role,
    RoleAssignmentCreate,
    RoleCreate,
    RolePermissionGrantCreate,
    ScopeTag,
    TenantCreate,
    User,
    UserCreate,
    UserRoleAssignment,
    now_utc,
)
from app.infra import audit, db
from app.services.access_service import REASON_HIERARCHY, AccessEvaluator
from app.services.catalog_service import CatalogService
from app.services.rbac_admin_service import ConflictError, RbacAdminService
from app.services.role_graph_service import RoleGraphService, RoleHierarchyError, is_higher_role


@pytest.fixture()
def graph_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "role_graph_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    CatalogService().initialize_rbac()
    yield test_engine
    test_engine.dispose()


def _tenant_with_user(name: str) -> tuple[str, User]:
    admin = RbacAdminService()
    tenant = admin.create_tenant(TenantCreate(name=name))
    user = admin.create_user(tenant.id, UserCreate(username=f"{name}-user"))
    return tenant.id, user


def _role(tenant_id: str, slug: str, *, level: int = 10, parent_id: str | None = None, grants: tuple[str, ...] = ()) -> Role:
    admin = RbacAdminService()
    role = admin.create_role(
        tenant_id,
        RoleCreate(slug=slug, name=slug.title(), level=level, scope=ScopeTag.BRANCH, parent_id=parent_id),
    )
    for slug_name in grants:
        admin.grant_role_permission(tenant_id, role.id, RolePermissionGrantCreate(permission_slug=slug_name))
    return role


def _load_user(engine: Engine, user_id: str) -> User:
    with Session(engine, expire_on_commit=False) as session:
        user = session.get(User, user_id)
        assert user is not None
        return user


def test_roles_inherit_parent_and_grandparent_grants(graph_engine: Engine) -> None:
    tenant_id, user = _tenant_with_user("inherit-agency")
    grandparent = _role(tenant_id, "records-reader", level=10, grants=("tasks.read",))
    parent = _role(tenant_id, "student-reader", level=20, parent_id=grandparent.id, grants=("students.read",))
    child = _role(tenant_id, "intake-officer", level=30, parent_id=parent.id)
    RbacAdminService().assign_role(tenant_id, user.id, RoleAssignmentCreate(role_id=child.id))

    graph = RoleGraphService()
    with Session(graph_engine, expire_on_commit=False) as session:
        principal = session.get(User, user.id)
        assert principal is not None
        effective = graph.resolve(session, principal)
        slugs = {item.slug for item in graph.get_effective_permissions(session, principal)}

    assert {role.slug for role in effective.roles} == {"records-reader", "student-reader", "intake-officer"}
    assert [role.slug for role in effective.assigned] == ["intake-officer"]
    assert slugs == {"tasks.read", "students.read"}


def test_inactive_parent_stops_inheritance(graph_engine: Engine) -> None:
    tenant_id, user = _tenant_with_user("inactive-parent")
    parent = _role(tenant_id, "retired-parent", grants=("students.read",))
    child = _role(tenant_id, "active-child", parent_id=parent.id, grants=("tasks.read",))
    admin = RbacAdminService()
    admin.assign_role(tenant_id, user.id, RoleAssignmentCreate(role_id=child.id))
    admin.set_role_active(tenant_id, parent.id, False)

    with Session(graph_engine, expire_on_commit=False) as session:
        principal = session.get(User, user.id)
        assert principal is not None
        slugs = {item.slug for item in RoleGraphService().get_effective_permissions(session, principal)}
    assert slugs == {"tasks.read"}


def test_expired_assignment_contributes_nothing(graph_engine: Engine) -> None:
    tenant_id, user = _tenant_with_user("expiry-agency")
    role = _role(tenant_id, "temp-role", grants=("students.read",))
    RbacAdminService().assign_role(
        tenant_id,
        user.id,
        RoleAssignmentCreate(role_id=role.id, expires_at=now_utc() + timedelta(hours=1)),
    )

    graph = RoleGraphService()
    with Session(graph_engine, expire_on_commit=False) as session:
        principal = session.get(User, user.id)
        assert principal is not None
        assert [item.slug for item in graph.get_effective_roles(session, principal)] == ["temp-role"]
        later = now_utc() + timedelta(hours=2)
        assert graph.get_effective_roles(session, principal, later) == []
        assert [item.slug for item in graph.expired_roles(session, principal, later)] == ["temp-role"]


def test_parent_cycle_is_rejected_at_write_time(graph_engine: Engine) -> None:
    tenant_id, _user = _tenant_with_user("cycle-write")
    first = _role(tenant_id, "first")
    second = _role(tenant_id, "second", parent_id=first.id)
    third = _role(tenant_id, "third", parent_id=second.id)

    with pytest.raises(ConflictError):
        RbacAdminService().update_role_parent(tenant_id, first.id, third.id)
    with pytest.raises(ConflictError):
        RbacAdminService().update_role_parent(tenant_id, first.id, first.id)


def test_stored_cycle_is_logged_and_denies(graph_engine: Engine, caplog: pytest.LogCaptureFixture) -> None:
    tenant_id, user = _tenant_with_user("cycle-read")
    loop_a = _role(tenant_id, "loop-a", grants=("students.read",))
    loop_b = _role(tenant_id, "loop-b", parent_id=loop_a.id)
    with Session(graph_engine) as session:
        stored = session.get(Role, loop_a.id)
        assert stored is not None
        stored.parent_id = loop_b.id
        session.add(stored)
        session.add(UserRoleAssignment(tenant_id=tenant_id, user_id=user.id, role_id=loop_a.id))
        session.commit()

    principal = _load_user(graph_engine, user.id)
    caplog.set_level(logging.ERROR, logger="app.services.role_graph_service")
    with Session(graph_engine) as session:
        with pytest.raises(RoleHierarchyError):
            RoleGraphService().resolve(session, principal)
    assert any("role hierarchy integrity error" in record.getMessage() for record in caplog.records)

    decision = AccessEvaluator().check_permission(user.id, PermissionCheck(resource="students", action="read"))
    assert decision.allowed is False
    assert decision.result == AccessResult.DENIED
    assert decision.reason == REASON_HIERARCHY


def test_can_manage_role_compares_levels(graph_engine: Engine) -> None:
    tenant_id, user = _tenant_with_user("levels-agency")
    mine = _role(tenant_id, "mid-level", level=60)
    higher = _role(tenant_id, "higher-level", level=70)
    lower = _role(tenant_id, "lower-level", level=50)
    RbacAdminService().assign_role(tenant_id, user.id, RoleAssignmentCreate(role_id=mine.id))

    assert is_higher_role(higher, mine) is True
    assert is_higher_role(mine, mine) is False

    graph = RoleGraphService()
    with Session(graph_engine, expire_on_commit=False) as session:
        principal = session.get(User, user.id)
        assert principal is not None
        assert graph.can_manage_role(session, principal, lower) is True
        assert graph.can_manage_role(session, principal, mine) is False
        assert graph.can_manage_role(session, principal, higher) is False


def test_roles_manage_overrides_level(graph_engine: Engine) -> None:
    tenant_id, user = _tenant_with_user("manage-agency")
    manager = _role(tenant_id, "role-steward", level=5, grants=("roles.manage",))
    target = _role(tenant_id, "senior-role", level=95)
    RbacAdminService().assign_role(tenant_id, user.id, RoleAssignmentCreate(role_id=manager.id))

    with Session(graph_engine, expire_on_commit=False) as session:
        principal = session.get(User, user.id)
        assert principal is not None
        assert RoleGraphService().can_manage_role(session, principal, target) is True
