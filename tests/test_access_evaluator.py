from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, col, create_engine, select

from app.domain.models import (
    AccessAuditLog,
    AccessPolicyCreate,
    AccessResult,
    BranchCreate,
    Permission,
    PermissionCheck,
    PolicyEffect,
    PolicyTargetType,
    PrincipalStatus,
    RequestContext,
    ResourceRestriction,
    ResourceRestrictionCreate,
    RestrictionType,
    Role,
    RoleAssignmentCreate,
    RolePermission,
    ScopeTag,
    TenantCreate,
    UserCreate,
    UserPermissionGrantCreate,
    now_utc,
)
from app.infra import audit, db
from app.services.access_service import (
    REASON_ASSIGNMENT_EXPIRED,
    REASON_GRANT_EXPIRED,
    REASON_INACTIVE,
    REASON_INSUFFICIENT,
    REASON_NOT_FOUND,
    REASON_PENDING,
    REASON_TENANT_MISMATCH,
    AccessEvaluator,
    AccessStoreError,
)
from app.services.catalog_service import CatalogService
from app.services.rbac_admin_service import RbacAdminService

STUDENTS_READ = PermissionCheck(resource="students", action="read")


@pytest.fixture()
def evaluator_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "evaluator_test.db"
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


def _agency(name: str) -> tuple[str, str]:
    admin = RbacAdminService()
    tenant = admin.create_tenant(TenantCreate(name=name))
    CatalogService().bootstrap_tenant(tenant.id)
    branch = admin.create_branch(tenant.id, BranchCreate(name="Head Office", code="hq"))
    return tenant.id, branch.id


def _role_id(engine: Engine, tenant_id: str, slug: str) -> str:
    with Session(engine) as session:
        return session.exec(select(Role).where(Role.tenant_id == tenant_id).where(Role.slug == slug)).one().id


def _staff(
    engine: Engine,
    tenant_id: str,
    branch_id: str,
    username: str,
    role_slug: str | None = None,
    *,
    status: PrincipalStatus = PrincipalStatus.ACTIVE,
    expires_in: timedelta | None = None,
) -> str:
    admin = RbacAdminService()
    user = admin.create_user(tenant_id, UserCreate(username=username, branch_id=branch_id, status=status))
    if role_slug is not None:
        expires_at = now_utc() + expires_in if expires_in is not None else None
        admin.assign_role(
            tenant_id,
            user.id,
            RoleAssignmentCreate(role_id=_role_id(engine, tenant_id, role_slug), expires_at=expires_at),
        )
    return user.id


def _audit_rows(engine: Engine, user_id: str) -> list[AccessAuditLog]:
    with Session(engine) as session:
        return list(session.exec(select(AccessAuditLog).where(AccessAuditLog.user_id == user_id)).all())


def test_principal_without_grants_is_denied(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("deny-default-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "newcomer")

    decision = AccessEvaluator().check_permission(user_id, STUDENTS_READ)
    assert decision.allowed is False
    assert decision.result == AccessResult.DENIED
    assert decision.reason == REASON_INSUFFICIENT
    assert decision.accessible_branches == []
    assert decision.data_filters == {}


def test_consultant_read_is_allowed_and_audited(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("consultant-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "consultant", "consultant")

    decision = AccessEvaluator().check_permission(
        user_id,
        STUDENTS_READ,
        RequestContext(ip_address="203.0.113.7", user_agent="pytest"),
    )
    assert decision.allowed is True
    assert decision.result == AccessResult.ALLOWED
    assert decision.branch_scope == ScopeTag.ASSIGNED
    assert decision.accessible_branches == [branch_id]
    assert decision.applied_rules == ["role_grant:consultant:students.read"]
    assert decision.field_permissions == {"students": ["academic", "personal"]}
    assert decision.data_filters == {
        "tenant_id": tenant_id,
        "OR": [{"assigned_to": user_id}, {"branch_id": {"in": [branch_id]}}],
    }

    rows = _audit_rows(evaluator_engine, user_id)
    assert len(rows) == 1
    assert rows[0].result == AccessResult.ALLOWED
    assert rows[0].tenant_id == tenant_id
    assert rows[0].ip_address == "203.0.113.7"
    assert rows[0].context["accessible_branches"] == [branch_id]


def test_permission_slugs_must_match_exactly(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("exact-match-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "consultant", "consultant")

    decision = AccessEvaluator().check_permission(user_id, PermissionCheck(resource="students", action="delete"))
    assert decision.allowed is False
    assert decision.reason == REASON_INSUFFICIENT


def test_principal_status_is_checked_first(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("status-agency")
    inactive_id = _staff(
        evaluator_engine, tenant_id, branch_id, "inactive", "agency_admin", status=PrincipalStatus.INACTIVE
    )
    pending_id = _staff(evaluator_engine, tenant_id, branch_id, "pending", "agency_admin", status=PrincipalStatus.PENDING)
    evaluator = AccessEvaluator()

    missing = evaluator.check_permission("no-such-user", STUDENTS_READ)
    assert (missing.allowed, missing.reason) == (False, REASON_NOT_FOUND)

    inactive = evaluator.check_permission(inactive_id, STUDENTS_READ)
    assert (inactive.allowed, inactive.reason) == (False, REASON_INACTIVE)

    pending = evaluator.check_permission(pending_id, STUDENTS_READ)
    assert pending.allowed is False
    assert pending.result == AccessResult.PENDING_APPROVAL
    assert pending.reason == REASON_PENDING


def test_request_for_another_agency_is_denied(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("home-agency")
    other_tenant, _other_branch = _agency("other-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "admin", "agency_admin")

    decision = AccessEvaluator().check_permission(user_id, STUDENTS_READ, RequestContext(agency_id=other_tenant))
    assert decision.allowed is False
    assert decision.reason == REASON_TENANT_MISMATCH


def test_system_restriction_overrides_every_grant(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("restricted-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "admin", "agency_admin")
    admin = RbacAdminService()
    evaluator = AccessEvaluator()
    office_vpn = RequestContext(ip_address="10.20.30.40")

    assert evaluator.check_permission(user_id, STUDENTS_READ, office_vpn).allowed is True

    restriction = admin.create_resource_restriction(
        tenant_id,
        ResourceRestrictionCreate(
            name="vpn-block",
            restriction_type=RestrictionType.IP_BASED,
            conditions={"blocked_ips": ["10.0.0.0/8"]},
        ),
    )
    blocked = evaluator.check_permission(user_id, STUDENTS_READ, office_vpn)
    assert blocked.allowed is False
    assert blocked.result == AccessResult.RESTRICTED
    assert blocked.reason == "restricted: vpn-block"
    assert blocked.applied_rules == ["restriction:vpn-block"]

    outside = evaluator.check_permission(user_id, STUDENTS_READ, RequestContext(ip_address="198.51.100.1"))
    assert outside.allowed is True

    admin.set_restriction_active(tenant_id, restriction.id, False)
    assert evaluator.check_permission(user_id, STUDENTS_READ, office_vpn).allowed is True


def test_resource_restriction_only_covers_its_resource(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("resource-restriction-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "admin", "agency_admin")
    RbacAdminService().create_resource_restriction(
        tenant_id,
        ResourceRestrictionCreate(
            name="invoice-freeze",
            restriction_type=RestrictionType.CONDITIONAL,
            resource="invoices",
        ),
    )
    evaluator = AccessEvaluator()

    frozen = evaluator.check_permission(user_id, PermissionCheck(resource="invoices", action="update"))
    assert frozen.result == AccessResult.RESTRICTED
    assert frozen.applied_rules == ["role_grant:agency_admin:invoices.update", "restriction:invoice-freeze"]

    assert evaluator.check_permission(user_id, STUDENTS_READ).allowed is True


def test_malformed_restriction_is_enforced(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("malformed-restriction-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "admin", "agency_admin")
    with Session(evaluator_engine) as session:
        session.add(
            ResourceRestriction(
                tenant_id=tenant_id,
                name="broken",
                restriction_type=RestrictionType.CONDITIONAL,
                conditions={"unknown_key": 1},
            )
        )
        session.commit()

    decision = AccessEvaluator().check_permission(user_id, STUDENTS_READ)
    assert decision.result == AccessResult.RESTRICTED


def test_policies_apply_by_priority(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("policy-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "admin", "agency_admin")
    admin = RbacAdminService()
    evaluator = AccessEvaluator()

    admin.create_access_policy(
        tenant_id,
        AccessPolicyCreate(
            name="no-student-reads",
            resource="students",
            action="read",
            target_type=PolicyTargetType.USER,
            target_id=user_id,
            effect=PolicyEffect.DENY,
            priority=10,
        ),
    )
    denied = evaluator.check_permission(user_id, STUDENTS_READ)
    assert denied.allowed is False
    assert denied.reason == "policy no-student-reads denied access"
    assert denied.applied_rules == ["policy:no-student-reads"]

    admin.create_access_policy(
        tenant_id,
        AccessPolicyCreate(
            name="audit-override",
            resource="students",
            action="*",
            target_type=PolicyTargetType.BRANCH,
            target_id=branch_id,
            effect=PolicyEffect.ALLOW,
            priority=20,
        ),
    )
    allowed = evaluator.check_permission(user_id, STUDENTS_READ)
    assert allowed.allowed is True
    assert allowed.applied_rules[0] == "policy:audit-override"


def test_allow_policy_grants_without_role_grant(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("allow-policy-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "support", "support_staff")
    check = PermissionCheck(resource="analytics", action="read")
    evaluator = AccessEvaluator()
    assert evaluator.check_permission(user_id, check).allowed is False

    RbacAdminService().create_access_policy(
        tenant_id,
        AccessPolicyCreate(
            name="support-analytics",
            resource="analytics",
            action="read",
            target_type=PolicyTargetType.ROLE,
            target_id=_role_id(evaluator_engine, tenant_id, "support_staff"),
            effect=PolicyEffect.ALLOW,
        ),
    )
    decision = evaluator.check_permission(user_id, check)
    assert decision.allowed is True
    assert decision.applied_rules == ["policy:support-analytics"]


def test_user_grant_and_expiry(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("user-grant-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "support", "support_staff")
    check = PermissionCheck(resource="analytics", action="read")
    RbacAdminService().grant_user_permission(
        tenant_id,
        user_id,
        UserPermissionGrantCreate(permission_slug="analytics.read", expires_at=now_utc() + timedelta(hours=1)),
    )

    granted = AccessEvaluator().check_permission(user_id, check)
    assert granted.allowed is True
    assert granted.applied_rules == ["user_grant:analytics.read"]

    later = now_utc() + timedelta(hours=2)
    expired = AccessEvaluator(clock=lambda: later).check_permission(user_id, check)
    assert expired.allowed is False
    assert expired.result == AccessResult.EXPIRED
    assert expired.reason == REASON_GRANT_EXPIRED


def test_user_grant_conditions(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("conditional-grant-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "support", "support_staff")
    RbacAdminService().grant_user_permission(
        tenant_id,
        user_id,
        UserPermissionGrantCreate(
            permission_slug="events.read",
            conditions={"ip_address": {"op": "cidr", "value": ["192.0.2.0/24"]}},
        ),
    )
    check = PermissionCheck(resource="events", action="read")
    evaluator = AccessEvaluator()

    assert evaluator.check_permission(user_id, check, RequestContext(ip_address="192.0.2.10")).allowed is True
    assert evaluator.check_permission(user_id, check, RequestContext(ip_address="198.51.100.10")).allowed is False


def test_expired_role_assignment_reports_expiry(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("assignment-expiry-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "temp", "consultant", expires_in=timedelta(hours=1))

    later = now_utc() + timedelta(hours=2)
    decision = AccessEvaluator(clock=lambda: later).check_permission(user_id, STUDENTS_READ)
    assert decision.allowed is False
    assert decision.result == AccessResult.EXPIRED
    assert decision.reason == REASON_ASSIGNMENT_EXPIRED


def test_malformed_grant_conditions_never_allow(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("malformed-grant-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "consultant", "consultant")
    role_id = _role_id(evaluator_engine, tenant_id, "consultant")
    with Session(evaluator_engine) as session:
        grant = session.exec(
            select(RolePermission)
            .join(Permission, col(Permission.id) == col(RolePermission.permission_id))
            .where(RolePermission.role_id == role_id)
            .where(Permission.slug == "students.read")
        ).one()
        grant.conditions = {"hour": {"op": "between", "value": "nine-to-five"}}
        session.add(grant)
        session.commit()

    decision = AccessEvaluator().check_permission(user_id, STUDENTS_READ)
    assert decision.allowed is False
    assert decision.reason == REASON_INSUFFICIENT


def test_audit_failure_does_not_change_the_decision(
    evaluator_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    tenant_id, branch_id = _agency("audit-failure-agency")
    allowed_id = _staff(evaluator_engine, tenant_id, branch_id, "admin", "agency_admin")
    denied_id = _staff(evaluator_engine, tenant_id, branch_id, "nobody")
    monkeypatch.setattr(audit, "engine", create_engine(f"sqlite:///{tmp_path / 'no_tables.db'}"))
    caplog.set_level(logging.ERROR, logger="app.infra.audit")
    evaluator = AccessEvaluator()

    assert evaluator.check_permission(allowed_id, STUDENTS_READ).allowed is True
    assert evaluator.check_permission(denied_id, STUDENTS_READ).allowed is False
    assert any("access audit write failed" in record.getMessage() for record in caplog.records)


def test_store_failure_is_not_a_deny(evaluator_engine: Engine, monkeypatch: pytest.MonkeyPatch) -> None:
    tenant_id, branch_id = _agency("store-failure-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "admin", "agency_admin")
    evaluator = AccessEvaluator()

    def _fail(*_args: object, **_kwargs: object) -> None:
        raise OperationalError("SELECT 1", {}, Exception("connection reset"))

    monkeypatch.setattr(evaluator.role_graph, "resolve", _fail)
    with pytest.raises(AccessStoreError):
        evaluator.check_permission(user_id, STUDENTS_READ)
    assert _audit_rows(evaluator_engine, user_id) == []


def test_user_access_info(evaluator_engine: Engine) -> None:
    tenant_id, branch_id = _agency("access-info-agency")
    user_id = _staff(evaluator_engine, tenant_id, branch_id, "consultant", "consultant")

    info = AccessEvaluator().get_user_access_info(user_id)
    assert info is not None
    assert info.roles == ["consultant"]
    assert "students.read" in info.permissions
    assert "students.delete" not in info.permissions
    assert info.scopes["students"] == ScopeTag.ASSIGNED
    assert info.scopes["invoices"] == ScopeTag.BRANCH
    assert info.field_permissions["students"] == ["academic", "personal"]
    assert AccessEvaluator().get_user_access_info("no-such-user") is None
