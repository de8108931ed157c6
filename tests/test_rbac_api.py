from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import (
    AccessAuditLog,
    AuditLog,
    BranchCreate,
    Role,
    RoleAssignmentCreate,
    Student,
    TenantCreate,
    UserCreate,
)
from app.infra import audit, auth, db
from app.infra.auth import create_access_token
from app.services.catalog_service import CatalogService
from app.services.rbac_admin_service import RbacAdminService


@dataclass(frozen=True)
class Agency:
    tenant_id: str
    branch_id: str
    admin_id: str
    consultant_id: str


@pytest.fixture()
def rbac_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "rbac_api_test.db"
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
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(user_id: str, tenant_id: str) -> dict[str, str]:
    token = create_access_token(user_id=user_id, tenant_id=tenant_id)
    return {"Authorization": f"Bearer {token}"}


def _role_id(tenant_id: str | None, slug: str) -> str:
    with Session(db.get_engine()) as session:
        statement = select(Role).where(Role.slug == slug)
        statement = statement.where(Role.tenant_id == tenant_id) if tenant_id else statement
        return session.exec(statement).one().id


def _agency(name: str) -> Agency:
    service = RbacAdminService()
    tenant = service.create_tenant(TenantCreate(name=name))
    CatalogService().bootstrap_tenant(tenant.id)
    branch = service.create_branch(tenant.id, BranchCreate(name="Head Office", code="hq"))
    admin = service.create_user(tenant.id, UserCreate(username="admin", branch_id=branch.id))
    consultant = service.create_user(tenant.id, UserCreate(username="consultant", branch_id=branch.id))
    service.assign_role(tenant.id, admin.id, RoleAssignmentCreate(role_id=_role_id(tenant.id, "agency_admin")))
    service.assign_role(tenant.id, consultant.id, RoleAssignmentCreate(role_id=_role_id(tenant.id, "consultant")))
    return Agency(tenant_id=tenant.id, branch_id=branch.id, admin_id=admin.id, consultant_id=consultant.id)


def _operator(agency: Agency) -> str:
    service = RbacAdminService()
    operator = service.create_user(agency.tenant_id, UserCreate(username="operator", branch_id=agency.branch_id))
    service.assign_role(
        agency.tenant_id,
        operator.id,
        RoleAssignmentCreate(role_id=_role_id(None, "super_admin")),
        allow_system_role=True,
    )
    return operator.id


def test_requests_without_valid_token_are_rejected(rbac_client: TestClient) -> None:
    assert rbac_client.get("/api/rbac/me/access").status_code == 401
    response = rbac_client.get("/api/rbac/me/access", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


def test_check_endpoint_returns_decision(rbac_client: TestClient) -> None:
    agency = _agency("check-agency")
    headers = _auth_header(agency.consultant_id, agency.tenant_id)

    allowed = rbac_client.post("/api/rbac/check", json={"resource": "students", "action": "read"}, headers=headers)
    assert allowed.status_code == 200
    body = allowed.json()
    assert body["allowed"] is True
    assert body["branch_scope"] == "ASSIGNED"
    assert body["accessible_branches"] == [agency.branch_id]
    assert body["field_permissions"] == {"students": ["academic", "personal"]}

    denied = rbac_client.post("/api/rbac/check", json={"resource": "roles", "action": "manage"}, headers=headers)
    assert denied.status_code == 200
    assert denied.json()["allowed"] is False
    assert denied.json()["reason"] == "insufficient permissions"

    with Session(db.get_engine()) as session:
        rows = session.exec(select(AccessAuditLog).where(AccessAuditLog.user_id == agency.consultant_id)).all()
    assert len(rows) == 2


def test_guarded_routes_enforce_permissions(rbac_client: TestClient) -> None:
    agency = _agency("guard-agency")

    created = rbac_client.post(
        "/api/rbac/branches",
        json={"name": "Uptown", "code": "uptown"},
        headers=_auth_header(agency.admin_id, agency.tenant_id),
    )
    assert created.status_code == 201
    assert created.json()["tenant_id"] == agency.tenant_id

    forbidden = rbac_client.post(
        "/api/rbac/branches",
        json={"name": "Downtown", "code": "downtown"},
        headers=_auth_header(agency.consultant_id, agency.tenant_id),
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "insufficient permissions"

    listed = rbac_client.get("/api/rbac/branches", headers=_auth_header(agency.admin_id, agency.tenant_id))
    assert listed.status_code == 200
    assert [item["code"] for item in listed.json()] == ["hq", "uptown"]


def test_accessible_branches_and_access_summary(rbac_client: TestClient) -> None:
    agency = _agency("summary-agency")
    headers = _auth_header(agency.consultant_id, agency.tenant_id)

    branches = rbac_client.get("/api/rbac/branches/accessible", params={"resource": "invoices"}, headers=headers)
    assert branches.status_code == 200
    assert branches.json() == {
        "resource": "invoices",
        "scope": "BRANCH",
        "branch_ids": [agency.branch_id],
        "applied_rules": [],
    }

    narrowed = rbac_client.get(
        "/api/rbac/branches/accessible",
        params={"resource": "students", "scope": "OWN"},
        headers=headers,
    )
    assert narrowed.json()["scope"] == "OWN"

    summary = rbac_client.get("/api/rbac/me/access", headers=headers)
    assert summary.status_code == 200
    assert summary.json()["roles"] == ["consultant"]
    assert "students.read" in summary.json()["permissions"]

    other = _agency("summary-other-agency")
    mismatch = rbac_client.get("/api/rbac/me/access", headers=_auth_header(agency.consultant_id, other.tenant_id))
    assert mismatch.status_code == 404


def test_resource_access_endpoint(rbac_client: TestClient) -> None:
    agency = _agency("resource-agency")
    with Session(db.get_engine()) as session:
        mine = Student(
            tenant_id=agency.tenant_id,
            branch_id=agency.branch_id,
            full_name="Assigned Student",
            assigned_to=agency.consultant_id,
        )
        theirs = Student(tenant_id=agency.tenant_id, branch_id=agency.branch_id, full_name="Someone Else's")
        session.add(mine)
        session.add(theirs)
        session.commit()
        mine_id, theirs_id = mine.id, theirs.id
    headers = _auth_header(agency.consultant_id, agency.tenant_id)

    allowed = rbac_client.get(f"/api/rbac/resources/student/{mine_id}/access", headers=headers)
    assert allowed.status_code == 200
    assert allowed.json()["allowed"] is True

    denied = rbac_client.get(
        f"/api/rbac/resources/student/{theirs_id}/access",
        params={"action": "update"},
        headers=headers,
    )
    assert denied.status_code == 200
    assert denied.json()["allowed"] is False
    assert denied.json()["reason"] == "assignment mismatch: resource not assigned to principal"


def test_role_assignment_through_api(rbac_client: TestClient) -> None:
    agency = _agency("assign-agency")
    newcomer = RbacAdminService().create_user(agency.tenant_id, UserCreate(username="newcomer"))
    headers = _auth_header(agency.admin_id, agency.tenant_id)

    assigned = rbac_client.post(
        f"/api/rbac/users/{newcomer.id}/roles",
        json={"role_id": _role_id(agency.tenant_id, "support_staff")},
        headers=headers,
    )
    assert assigned.status_code == 201
    assert assigned.json()["assigned_by"] == agency.admin_id

    system_role = rbac_client.post(
        f"/api/rbac/users/{newcomer.id}/roles",
        json={"role_id": _role_id(None, "super_admin")},
        headers=headers,
    )
    assert system_role.status_code == 409

    listed = rbac_client.get(f"/api/rbac/users/{newcomer.id}/roles", headers=headers)
    assert [item["id"] for item in listed.json()] == [assigned.json()["id"]]

    with Session(db.get_engine()) as session:
        rows = session.exec(
            select(AuditLog)
            .where(AuditLog.tenant_id == agency.tenant_id)
            .where(AuditLog.method == "POST")
        ).all()
    by_status = {row.status_code: row for row in rows}
    assert by_status[201].action == "rbac.role.assign"
    assert by_status[201].actor_id == agency.admin_id
    assert by_status[201].detail["what"]["user_id"] == newcomer.id
    assert by_status[409].action == f"POST:/api/rbac/users/{newcomer.id}/roles"
    assert by_status[409].detail["outcome"] == "rejected"


def test_security_rules_through_api(rbac_client: TestClient) -> None:
    agency = _agency("security-agency")
    headers = _auth_header(agency.admin_id, agency.tenant_id)

    invalid = rbac_client.post(
        "/api/rbac/restrictions",
        json={"name": "broken", "restriction_type": "IP_BASED", "conditions": {"blocked_ips": ["nope"]}},
        headers=headers,
    )
    assert invalid.status_code == 400

    created = rbac_client.post(
        "/api/rbac/restrictions",
        json={"name": "lock-invoices", "restriction_type": "CONDITIONAL", "resource": "invoices"},
        headers=headers,
    )
    assert created.status_code == 201

    check = rbac_client.post("/api/rbac/check", json={"resource": "invoices", "action": "read"}, headers=headers)
    assert check.json()["result"] == "RESTRICTED"
    assert check.json()["reason"] == "restricted: lock-invoices"

    disabled = rbac_client.patch(
        f"/api/rbac/restrictions/{created.json()['id']}/active",
        json={"is_active": False},
        headers=headers,
    )
    assert disabled.status_code == 200
    check = rbac_client.post("/api/rbac/check", json={"resource": "invoices", "action": "read"}, headers=headers)
    assert check.json()["allowed"] is True


def test_system_endpoints_need_system_roles(rbac_client: TestClient) -> None:
    agency = _agency("system-agency")
    operator_id = _operator(agency)

    denied = rbac_client.post(
        "/api/rbac/bootstrap",
        json={},
        headers=_auth_header(agency.admin_id, agency.tenant_id),
    )
    assert denied.status_code == 403

    repeated = rbac_client.post(
        "/api/rbac/bootstrap",
        json={},
        headers=_auth_header(operator_id, agency.tenant_id),
    )
    assert repeated.status_code == 200
    assert repeated.json() == {"permissions_created": 0, "roles_created": 0, "grants_created": 0}

    status = rbac_client.get("/api/rbac/catalog/status", headers=_auth_header(operator_id, agency.tenant_id))
    assert status.status_code == 200
    assert status.json()["initialized"] is True


def test_role_updates_respect_rank(rbac_client: TestClient) -> None:
    agency = _agency("rank-api-agency")
    operator_id = _operator(agency)
    consultant_role = _role_id(agency.tenant_id, "consultant")

    demoted = rbac_client.patch(
        f"/api/rbac/roles/{consultant_role}/active",
        json={"is_active": False},
        headers=_auth_header(operator_id, agency.tenant_id),
    )
    assert demoted.status_code == 200
    assert demoted.json()["is_active"] is False

    blocked = rbac_client.patch(
        f"/api/rbac/roles/{consultant_role}/active",
        json={"is_active": True},
        headers=_auth_header(agency.consultant_id, agency.tenant_id),
    )
    assert blocked.status_code == 403


def test_dev_token_endpoint(rbac_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    agency = _agency("token-agency")
    payload = {"tenant_id": agency.tenant_id, "username": "consultant"}

    assert rbac_client.post("/api/rbac/dev-token", json=payload).status_code == 404

    monkeypatch.setattr(auth, "DEV_TOKENS_ENABLED", True)
    issued = rbac_client.post("/api/rbac/dev-token", json=payload)
    assert issued.status_code == 200
    token = issued.json()["access_token"]
    summary = rbac_client.get("/api/rbac/me/access", headers={"Authorization": f"Bearer {token}"})
    assert summary.json()["user_id"] == agency.consultant_id

    unknown = rbac_client.post("/api/rbac/dev-token", json={"tenant_id": agency.tenant_id, "username": "ghost"})
    assert unknown.status_code == 401
